"""Error taxonomy for the loan lifecycle.

Business-rule failures derive from LoanError and are returned to the
immediate caller as-is; they describe caller or data errors and are never
retried. Infrastructure failures (PersistenceError, OperationTimeoutError)
sit outside that hierarchy so callers can tell them apart and decide
whether to retry.
"""

from decimal import Decimal
from typing import Any


class LoanError(Exception):
    """Base class for business-rule failures."""

    code = "loan_error"


class NotFoundError(LoanError):
    """Referenced loan or investor does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidStateError(LoanError):
    """Operation attempted from a lifecycle state that does not permit it."""

    code = "invalid_state"

    def __init__(
        self,
        loan_id: str,
        current: Any,
        required: Any,
        message: str | None = None,
    ):
        self.loan_id = loan_id
        self.current = current
        self.required = required
        current_value = getattr(current, "value", current)
        required_value = getattr(required, "value", required)
        if message is None:
            message = (
                f"loan {loan_id} must be in {required_value} state, "
                f"current state: {current_value}"
            )
        else:
            message = (
                f"{message} (current state: {current_value}, "
                f"required: {required_value})"
            )
        super().__init__(message)


class AlreadyApprovedError(InvalidStateError):
    """An approval record already exists for the loan."""

    code = "already_approved"

    def __init__(self, loan_id: str, current: Any, required: Any):
        super().__init__(
            loan_id, current, required, message=f"loan {loan_id} already approved"
        )


class AlreadyDisbursedError(InvalidStateError):
    """A disbursement record already exists for the loan."""

    code = "already_disbursed"

    def __init__(self, loan_id: str, current: Any, required: Any):
        super().__init__(
            loan_id, current, required, message=f"loan {loan_id} already disbursed"
        )


class AlreadyFundedError(InvalidStateError):
    """The loan reached its principal; no further contributions accepted."""

    code = "already_funded"

    def __init__(self, loan_id: str, current: Any, required: Any):
        super().__init__(
            loan_id, current, required, message=f"loan {loan_id} already fully funded"
        )


class OverFundingError(LoanError):
    """A contribution would push the loan's total above its principal."""

    code = "over_funding"

    def __init__(
        self,
        loan_id: str,
        current_total: Decimal,
        amount: Decimal,
        principal: Decimal,
    ):
        self.loan_id = loan_id
        self.current_total = current_total
        self.amount = amount
        self.principal = principal
        super().__init__(
            f"investment would exceed principal for loan {loan_id}; "
            f"current invested {current_total} + new {amount} > principal {principal}"
        )


class InvalidAmountError(LoanError, ValueError):
    """Amount is non-positive, non-finite, or finer than the money scale."""

    code = "invalid_amount"


class OperationTimeoutError(TimeoutError):
    """The caller's deadline expired before the unit of work committed.

    Nothing from the operation is visible when this is raised.
    """

    code = "timeout"

    def __init__(
        self,
        operation: str,
        timeout: float | None,
        loan_id: str | None = None,
    ):
        self.operation = operation
        self.timeout = timeout
        self.loan_id = loan_id
        target = f" on loan {loan_id}" if loan_id else ""
        super().__init__(f"{operation}{target} timed out after {timeout}s")


class PersistenceError(Exception):
    """Opaque failure raised by a storage adapter."""

    code = "persistence_failure"


class DuplicateRecordError(PersistenceError):
    """A uniqueness constraint at the storage boundary rejected a write."""

    code = "duplicate_record"

    def __init__(self, entity: str, detail: str = ""):
        self.entity = entity
        self.detail = detail
        message = f"duplicate {entity}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


__all__ = [
    "AlreadyApprovedError",
    "AlreadyDisbursedError",
    "AlreadyFundedError",
    "DuplicateRecordError",
    "InvalidAmountError",
    "InvalidStateError",
    "LoanError",
    "NotFoundError",
    "OperationTimeoutError",
    "OverFundingError",
    "PersistenceError",
]
