"""Port interfaces for the loan lifecycle service.

These abstract base classes define the boundaries between core
domain logic and external adapters. Implementations live in the
adapters/ package.

Port Interface Categories:

1. **Driven Ports** (core calls out to adapters)
   - LoanStorePort: Persist loans, approvals, investors, investments
     and disbursements
   - NotificationPort: Tell investors a loan is fully funded

2. **Driving Ports** (adapters/external systems call into core)
   - LoanLifecyclePort: The four mutating intents and two queries the
     request layer (HTTP, CLI) is allowed to use. The request layer never
     reaches the store directly.

Deadlines and cancellation reach store methods through asyncio task
cancellation; no method takes an explicit context argument.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from datetime import date
from decimal import Decimal

from .models import (
    Approval,
    Disbursement,
    Investment,
    Investor,
    InvestorRef,
    Loan,
    LoanDraft,
)


# ============================================================================
# DRIVEN PORTS (Core calls out to adapters)
# ============================================================================


class LoanStorePort(ABC):
    """Port for durable storage of the loan aggregate and its children.

    Implementations must handle:
    - Unit-of-work semantics: every call made inside ``transaction()`` on
      the same task joins one atomic commit
    - Uniqueness at the storage boundary: one approval and one
      disbursement per loan, one investor per non-null email
    - Translating driver errors into PersistenceError

    "Not found" is reported by returning None, never by raising, so it
    stays distinct from storage failures.
    """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Open a unit of work bound to the current task.

        Commits on clean exit and rolls back on any exception, including
        cancellation. Nested calls join the outer unit of work. A COMMIT
        that has started completes; cancellation arriving during it is
        re-raised only if the commit fails.

        Raises:
            PersistenceError: If the transaction cannot be started or committed.
        """

    @abstractmethod
    async def create_loan(self, loan: Loan) -> None:
        """Insert a new loan row.

        Args:
            loan: Loan with caller-assigned id and timestamps.

        Raises:
            DuplicateRecordError: If a loan with the same id exists.
            PersistenceError: If the database is unavailable.
        """

    @abstractmethod
    async def get_loan_by_id(
        self, loan_id: str, for_update: bool = False
    ) -> Loan | None:
        """Load a loan with its approval, investments and disbursement.

        Args:
            loan_id: UUID of the loan.
            for_update: Lock the loan row until the surrounding transaction
                ends, where the engine supports row locks.

        Returns:
            Loan aggregate, or None if absent.

        Raises:
            PersistenceError: If the database is unavailable.
        """

    @abstractmethod
    async def update_loan(self, loan: Loan) -> None:
        """Persist the loan's top-level fields (state, updated_at, ...).

        Raises:
            PersistenceError: If the loan row does not exist or the database
                is unavailable.
        """

    @abstractmethod
    async def list_loans(self) -> list[Loan]:
        """Return every loan with children preloaded, oldest first.

        Raises:
            PersistenceError: If the database is unavailable.
        """

    @abstractmethod
    async def create_approval(self, approval: Approval) -> None:
        """Insert an approval row.

        Raises:
            DuplicateRecordError: If the loan already has an approval.
            PersistenceError: If the database is unavailable.
        """

    @abstractmethod
    async def create_investment(self, investment: Investment) -> None:
        """Append a ledger entry. Rows are never merged or updated.

        Raises:
            PersistenceError: If the loan or investor row is missing or the
                database is unavailable.
        """

    @abstractmethod
    async def create_disbursement(self, disbursement: Disbursement) -> None:
        """Insert a disbursement row.

        Raises:
            DuplicateRecordError: If the loan already has a disbursement.
            PersistenceError: If the database is unavailable.
        """

    @abstractmethod
    async def create_investor(self, investor: Investor) -> None:
        """Insert an investor row.

        Raises:
            DuplicateRecordError: If the email is already registered.
            PersistenceError: If the database is unavailable.
        """

    @abstractmethod
    async def get_investor_by_id(self, investor_id: str) -> Investor | None:
        """Look up an investor by id. Returns None when absent."""

    @abstractmethod
    async def find_investor_by_email(self, email: str) -> Investor | None:
        """Look up an investor by email. Returns None when absent."""

    @abstractmethod
    async def get_or_create_investor(self, candidate: Investor) -> Investor:
        """Atomically resolve an investor by the candidate's email.

        Inserts ``candidate`` unless an investor with the same email exists,
        in which case the existing record is returned. A concurrent insert of
        the same email counts as success: both callers get the same record.

        Args:
            candidate: Investor to insert; its email must be set.

        Returns:
            The stored investor for that email.

        Raises:
            ValueError: If candidate has no email.
            PersistenceError: If the database is unavailable.
        """

    @abstractmethod
    async def get_total_invested(self, loan_id: str) -> Decimal:
        """Sum of every investment amount for the loan (0 when none)."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections held by the adapter."""


class NotificationPort(ABC):
    """Port for telling investors that a loan reached its principal.

    Delivery is fire-and-forget from the core's point of view: failures
    are logged and never roll back the financial write.
    """

    @abstractmethod
    async def notify_funded(
        self, loan: Loan, investors: Sequence[Investor]
    ) -> None:
        """Announce that a loan is fully funded.

        Args:
            loan: The loan in INVESTED state, with its investments.
            investors: Distinct investors who contributed to the loan.

        Raises:
            Exception: If the notification channel is unavailable.
        """


# ============================================================================
# DRIVING PORTS (Adapters/external systems call into core)
# ============================================================================


class LoanLifecyclePort(ABC):
    """Port for every caller-initiated loan operation.

    Implementations live in the core (lifecycle_service.py). Each method
    accepts ``timeout`` in seconds; None falls back to the service default.
    """

    @abstractmethod
    async def create_loan(
        self, draft: LoanDraft, timeout: float | None = None
    ) -> Loan:
        """Create a loan in PROPOSED state."""

    @abstractmethod
    async def approve_loan(
        self,
        loan_id: str,
        picture_url: str,
        employee_id: str,
        approval_date: date,
        timeout: float | None = None,
    ) -> Loan:
        """Record the one-time approval and move the loan to APPROVED.

        Raises:
            NotFoundError, AlreadyApprovedError, InvalidStateError,
            OperationTimeoutError, PersistenceError.
        """

    @abstractmethod
    async def invest_in_loan(
        self,
        loan_id: str,
        investor: InvestorRef,
        amount: Decimal | int | float | str,
        timeout: float | None = None,
    ) -> Loan:
        """Record a contribution; move to INVESTED when principal is reached.

        Raises:
            InvalidAmountError, NotFoundError, AlreadyFundedError,
            InvalidStateError, OverFundingError, OperationTimeoutError,
            PersistenceError.
        """

    @abstractmethod
    async def disburse_loan(
        self,
        loan_id: str,
        agreement_url: str,
        employee_id: str,
        disbursement_date: date,
        timeout: float | None = None,
    ) -> Loan:
        """Record the one-time disbursement and move the loan to DISBURSED.

        Raises:
            NotFoundError, AlreadyDisbursedError, InvalidStateError,
            OperationTimeoutError, PersistenceError.
        """

    @abstractmethod
    async def get_loan(self, loan_id: str, timeout: float | None = None) -> Loan:
        """Return one loan with children populated.

        Raises:
            NotFoundError: If the loan does not exist.
        """

    @abstractmethod
    async def list_loans(self, timeout: float | None = None) -> Sequence[Loan]:
        """Return every loan with children populated."""
