"""Domain models for the loan lifecycle.

All models in this module use only Python standard library types,
ensuring zero external dependencies in the core domain. Monetary
values are Decimal throughout; floats never reach the ledger.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import TypeAlias

from .errors import (
    AlreadyApprovedError,
    AlreadyDisbursedError,
    InvalidAmountError,
    InvalidStateError,
)

# Storage scale is NUMERIC(14,2): amounts carry at most two fractional digits.
MONEY_PLACES = 2
_MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_PLACES)


def to_decimal(value: Decimal | int | float | str, field_name: str = "value") -> Decimal:
    """Convert caller input to a finite Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1"), not its binary
    expansion.

    Raises:
        InvalidAmountError: If the value cannot be parsed or is not finite.
    """
    if isinstance(value, bool):
        raise InvalidAmountError(f"{field_name} must be a number, got {value!r}")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidAmountError(f"{field_name} must be finite, got {value!r}")
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidAmountError(f"{field_name} must be a number, got {value!r}") from e
    if not result.is_finite():
        raise InvalidAmountError(f"{field_name} must be finite, got {value!r}")
    return result


def to_amount(value: Decimal | int | float | str, field_name: str = "amount") -> Decimal:
    """Convert caller input to a positive money amount.

    Raises:
        InvalidAmountError: If the amount is non-positive, non-finite, or has
            more fractional digits than the money scale allows.
    """
    amount = to_decimal(value, field_name)
    if amount <= 0:
        raise InvalidAmountError(f"{field_name} must be positive, got {amount}")
    try:
        quantized = amount.quantize(_MONEY_QUANTUM)
    except InvalidOperation as e:
        raise InvalidAmountError(f"{field_name} is out of range, got {amount}") from e
    if amount != quantized:
        raise InvalidAmountError(
            f"{field_name} supports at most {MONEY_PLACES} decimal places, got {amount}"
        )
    return quantized


class LoanState(Enum):
    """Lifecycle states for a loan.

    States only move forward, one step at a time:
    PROPOSED → APPROVED → INVESTED → DISBURSED.
    INVESTED is entered automatically by the ledger when the principal is
    reached; callers never request it directly.
    """

    PROPOSED = "proposed"
    APPROVED = "approved"
    INVESTED = "invested"
    DISBURSED = "disbursed"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    @property
    def previous(self) -> "LoanState | None":
        """The only state this one may be entered from."""
        if self.rank == 0:
            return None
        return _STATE_ORDER[self.rank - 1]

    def is_at_least(self, other: "LoanState") -> bool:
        return self.rank >= other.rank


_STATE_ORDER: tuple[LoanState, ...] = (
    LoanState.PROPOSED,
    LoanState.APPROVED,
    LoanState.INVESTED,
    LoanState.DISBURSED,
)


@dataclass(frozen=True)
class LoanDraft:
    """Caller-supplied fields for a new loan."""

    borrower_id: str
    principal: Decimal
    rate: Decimal
    roi: Decimal
    agreement_letter_url: str | None = None

    def __post_init__(self) -> None:
        """Normalize numeric fields and validate draft invariants."""
        if not self.borrower_id or not self.borrower_id.strip():
            raise ValueError("borrower_id must be a non-empty string")
        object.__setattr__(self, "principal", to_amount(self.principal, "principal"))
        object.__setattr__(self, "rate", to_decimal(self.rate, "rate"))
        object.__setattr__(self, "roi", to_decimal(self.roi, "roi"))


@dataclass(frozen=True)
class Approval:
    """Proof that field staff visited the borrower. One per loan."""

    id: str
    loan_id: str
    picture_url: str
    employee_id: str
    approval_date: date
    created_at: datetime


@dataclass(frozen=True)
class Investor:
    """An individual or entity contributing funds to loans."""

    id: str
    created_at: datetime
    name: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class Investment:
    """A single, append-only contribution toward a loan."""

    id: str
    loan_id: str
    investor_id: str
    amount: Decimal
    created_at: datetime

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError(f"amount must be positive, got {self.amount}")


@dataclass(frozen=True)
class Disbursement:
    """Hand-over of funds to the borrower. One per loan."""

    id: str
    loan_id: str
    agreement_url: str
    employee_id: str
    disbursement_date: date
    created_at: datetime


@dataclass(frozen=True)
class ExistingInvestor:
    """Identify the contributor by an investor id that must already exist."""

    investor_id: str


@dataclass(frozen=True)
class InvestorContact:
    """Identify the contributor by contact details.

    With an email, the same address always resolves to the same investor.
    Without one, every contribution creates a fresh investor record.
    """

    name: str | None = None
    email: str | None = None

    def __post_init__(self) -> None:
        """Normalize the email so lookups are case-insensitive."""
        if self.email is not None:
            normalized = self.email.strip().lower()
            object.__setattr__(self, "email", normalized or None)


InvestorRef: TypeAlias = ExistingInvestor | InvestorContact


@dataclass
class Loan:
    """The loan aggregate with its preloaded approval, investments and disbursement.

    State Transitions:
        - PROPOSED → APPROVED (mark_approved)
        - APPROVED → INVESTED (mark_invested, ledger only)
        - INVESTED → DISBURSED (mark_disbursed)

    Note: This dataclass is intentionally mutable so the lifecycle service
    can advance state in place before persisting it.
    """

    id: str
    borrower_id: str
    principal: Decimal
    rate: Decimal
    roi: Decimal
    state: LoanState
    created_at: datetime
    updated_at: datetime
    agreement_letter_url: str | None = None
    approval: Approval | None = None
    investments: list[Investment] = field(default_factory=list)
    disbursement: Disbursement | None = None

    def __post_init__(self) -> None:
        """Validate loan invariants on creation or deserialization."""
        if self.principal <= 0:
            raise ValueError(f"principal must be positive, got {self.principal}")
        if self.updated_at < self.created_at:
            raise ValueError(
                f"updated_at ({self.updated_at}) cannot be before "
                f"created_at ({self.created_at})"
            )

    @property
    def total_invested(self) -> Decimal:
        """Sum of the contributions currently attached to this aggregate."""
        return sum((inv.amount for inv in self.investments), Decimal("0"))

    def mark_approved(self, approval: Approval) -> None:
        """Transition to approved, attaching the approval record."""
        if self.approval is not None:
            raise AlreadyApprovedError(self.id, self.state, LoanState.PROPOSED)
        self._advance(LoanState.APPROVED, approval.created_at)
        self.approval = approval

    def add_investment(self, investment: Investment) -> Decimal:
        """Append a contribution and return the aggregate's new total."""
        if self.state is not LoanState.APPROVED:
            raise InvalidStateError(self.id, self.state, LoanState.APPROVED)
        self.investments.append(investment)
        return self.total_invested

    def mark_invested(self, at: datetime) -> None:
        """Transition to invested once the principal is fully funded."""
        self._advance(LoanState.INVESTED, at)

    def mark_disbursed(self, disbursement: Disbursement) -> None:
        """Transition to disbursed, attaching the disbursement record."""
        if self.disbursement is not None:
            raise AlreadyDisbursedError(self.id, self.state, LoanState.INVESTED)
        self._advance(LoanState.DISBURSED, disbursement.created_at)
        self.disbursement = disbursement

    def _advance(self, target: LoanState, at: datetime) -> None:
        required = target.previous
        if self.state is not required:
            raise InvalidStateError(self.id, self.state, required)
        self.state = target
        self.updated_at = max(at, self.updated_at)
