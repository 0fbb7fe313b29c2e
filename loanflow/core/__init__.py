"""Core domain logic for the loan lifecycle service.

This package contains zero external dependencies and represents
the pure business logic of the application: the state machine, the
investment ledger, and the orchestration that serializes mutations per
loan. Storage, notification and request handling live in the adapters
package.
"""

from .errors import (
    AlreadyApprovedError,
    AlreadyDisbursedError,
    AlreadyFundedError,
    DuplicateRecordError,
    InvalidAmountError,
    InvalidStateError,
    LoanError,
    NotFoundError,
    OperationTimeoutError,
    OverFundingError,
    PersistenceError,
)
from .lifecycle_service import LoanLifecycleService
from .models import (
    Approval,
    Disbursement,
    ExistingInvestor,
    Investment,
    Investor,
    InvestorContact,
    InvestorRef,
    Loan,
    LoanDraft,
    LoanState,
)

__all__ = [
    "AlreadyApprovedError",
    "AlreadyDisbursedError",
    "AlreadyFundedError",
    "Approval",
    "Disbursement",
    "DuplicateRecordError",
    "ExistingInvestor",
    "InvalidAmountError",
    "InvalidStateError",
    "Investment",
    "Investor",
    "InvestorContact",
    "InvestorRef",
    "Loan",
    "LoanDraft",
    "LoanError",
    "LoanLifecycleService",
    "LoanState",
    "NotFoundError",
    "OperationTimeoutError",
    "OverFundingError",
    "PersistenceError",
]
