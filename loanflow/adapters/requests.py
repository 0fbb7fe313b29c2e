"""Pydantic request models shared by the HTTP and CLI adapters.

Payloads are flat JSON objects. Dates accept either an ISO date
("2024-05-01") or an RFC 3339 timestamp, of which only the date is kept.
Amount scale and positivity are enforced by the core, so these models
only check shape and presence.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from loanflow.core.errors import (
    InvalidAmountError,
    InvalidStateError,
    LoanError,
    NotFoundError,
    OperationTimeoutError,
    OverFundingError,
    PersistenceError,
)
from loanflow.core.models import ExistingInvestor, InvestorContact, InvestorRef, LoanDraft


def parse_day(value: Any) -> Any:
    """Accept an ISO date ("2024-05-01") or an RFC 3339 timestamp."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(text).date()
        except ValueError as e:
            raise ValueError(
                f"invalid date {value!r}; expected YYYY-MM-DD or RFC 3339"
            ) from e
    return value


def _require_text(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value.strip()


class CreateLoanRequest(BaseModel):
    """Body of POST /loans."""

    borrower_id: str = Field(min_length=1, max_length=255)
    principal: Decimal
    rate: Decimal
    roi: Decimal
    agreement_letter_url: str | None = Field(None, max_length=2048)

    @field_validator("borrower_id")
    @classmethod
    def strip_borrower(cls, v: str) -> str:
        return _require_text(v)

    def to_draft(self) -> LoanDraft:
        return LoanDraft(
            borrower_id=self.borrower_id,
            principal=self.principal,
            rate=self.rate,
            roi=self.roi,
            agreement_letter_url=self.agreement_letter_url or None,
        )


class ApproveLoanRequest(BaseModel):
    """Body of POST /loans/{id}/approve."""

    picture_url: str = Field(min_length=1, max_length=2048)
    employee_id: str = Field(min_length=1, max_length=255)
    approval_date: date

    @field_validator("picture_url", "employee_id")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return _require_text(v)

    @field_validator("approval_date", mode="before")
    @classmethod
    def parse_approval_date(cls, v: Any) -> Any:
        return parse_day(v)


class InvestRequest(BaseModel):
    """Body of POST /loans/{id}/invest.

    Either ``investor_id`` names an existing investor, or
    ``investor_name``/``investor_email`` describe the contributor.
    """

    investor_id: str | None = Field(None, max_length=255)
    investor_name: str | None = Field(None, max_length=255)
    investor_email: str | None = Field(None, max_length=320)
    amount: Decimal

    @model_validator(mode="after")
    def check_investor(self) -> "InvestRequest":
        if self.investor_id is not None and not self.investor_id.strip():
            raise ValueError("investor_id must not be blank")
        if self.investor_id is None and not (self.investor_name or self.investor_email):
            raise ValueError("investor_id or investor_name/investor_email is required")
        if self.investor_email is not None and "@" not in self.investor_email:
            raise ValueError("investor_email is not a valid email address")
        return self

    def to_investor_ref(self) -> InvestorRef:
        if self.investor_id is not None:
            return ExistingInvestor(investor_id=self.investor_id.strip())
        return InvestorContact(name=self.investor_name, email=self.investor_email)


class DisburseLoanRequest(BaseModel):
    """Body of POST /loans/{id}/disburse."""

    agreement_url: str = Field(min_length=1, max_length=2048)
    employee_id: str = Field(min_length=1, max_length=255)
    disbursement_date: date

    @field_validator("agreement_url", "employee_id")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return _require_text(v)

    @field_validator("disbursement_date", mode="before")
    @classmethod
    def parse_disbursement_date(cls, v: Any) -> Any:
        return parse_day(v)


def format_validation_error(error: ValidationError) -> str:
    """Flatten pydantic's error list into one readable line."""
    parts = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        parts.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return "; ".join(parts)


def classify_error(error: Exception) -> tuple[int, str, str]:
    """Map any failure to (HTTP status, error code, client-safe message).

    Storage failures and unexpected errors get a generic message so
    internals never leak to callers.
    """
    if isinstance(error, ValidationError):
        return 400, "invalid_request", format_validation_error(error)
    if isinstance(error, NotFoundError):
        return 404, error.code, str(error)
    if isinstance(error, InvalidAmountError):
        return 400, error.code, str(error)
    if isinstance(error, (InvalidStateError, OverFundingError)):
        return 409, error.code, str(error)
    if isinstance(error, LoanError):
        return 400, error.code, str(error)
    if isinstance(error, OperationTimeoutError):
        return 504, error.code, str(error)
    if isinstance(error, ValueError):
        return 400, "invalid_request", str(error)
    if isinstance(error, PersistenceError):
        return 500, PersistenceError.code, "storage failure"
    return 500, "internal_error", "internal server error"
