"""Lifecycle service: implements LoanLifecyclePort.

This is the core service that sequences the approval recorder, the
investment ledger and the disbursement recorder. It is the single
gatekeeper for every loan mutation; the request layer talks to it and
never to the store.

Each mutating operation runs as one unit of work:
1. Enforce the caller's deadline
2. Take the per-loan lock
3. Open a store transaction and load the loan row-locked
4. Delegate to the matching recorder or the ledger
5. Commit, then return the updated aggregate

Reads skip the lock and may observe a slightly stale snapshot.
"""

import asyncio
import dataclasses
import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime
from decimal import Decimal

from .approval import ApprovalRecorder
from .disbursement import DisbursementRecorder
from .errors import LoanError, NotFoundError, OperationTimeoutError, PersistenceError
from .ledger import InvestmentLedger
from .locks import LoanLockRegistry
from .models import Investor, InvestorRef, Loan, LoanDraft, LoanState
from .ports import LoanLifecyclePort, LoanStorePort, NotificationPort

logger = logging.getLogger(__name__)

DEFAULT_OPERATION_TIMEOUT_SECONDS = 10.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LoanLifecycleService(LoanLifecyclePort):
    """Core implementation of LoanLifecyclePort.

    Coordinates the recorders, the ledger, the store and the
    funding-complete notification. All state changes are logged.
    """

    def __init__(
        self,
        store: LoanStorePort,
        notification: NotificationPort,
        locks: LoanLockRegistry | None = None,
        default_timeout: float | None = DEFAULT_OPERATION_TIMEOUT_SECONDS,
    ):
        """Initialize the lifecycle service.

        Args:
            store: LoanStorePort implementation for persistence.
            notification: NotificationPort used when a loan becomes funded.
            locks: Per-loan lock registry. A fresh one is created if omitted;
                share one registry between services bound to the same store.
            default_timeout: Deadline in seconds applied when a call passes
                no timeout. None means no deadline.
        """
        self.store = store
        self.notification = notification
        self.locks = locks or LoanLockRegistry()
        self.default_timeout = default_timeout
        self.approvals = ApprovalRecorder(store)
        self.ledger = InvestmentLedger(store)
        self.disbursements = DisbursementRecorder(store)
        self._pending_notifications: set[asyncio.Task[None]] = set()

    async def create_loan(
        self, draft: LoanDraft, timeout: float | None = None
    ) -> Loan:
        """Create a loan in PROPOSED state.

        Args:
            draft: Validated borrower, principal, rate, roi and agreement link.
            timeout: Deadline in seconds (service default if None).

        Returns:
            The persisted loan.

        Raises:
            OperationTimeoutError: If the deadline expires before commit.
            PersistenceError: If the store fails.
        """
        now = _utcnow()
        loan = Loan(
            id=str(uuid.uuid4()),
            borrower_id=draft.borrower_id,
            principal=draft.principal,
            rate=draft.rate,
            roi=draft.roi,
            agreement_letter_url=draft.agreement_letter_url,
            state=LoanState.PROPOSED,
            created_at=now,
            updated_at=now,
        )
        async with self._operation("create", loan.id, timeout):
            async with self.store.transaction():
                await self.store.create_loan(loan)

        logger.info(
            f"Loan {loan.id} created",
            extra={
                "loan_id": loan.id,
                "borrower_id": loan.borrower_id,
                "principal": str(loan.principal),
            },
        )
        return loan

    async def approve_loan(
        self,
        loan_id: str,
        picture_url: str,
        employee_id: str,
        approval_date: date,
        timeout: float | None = None,
    ) -> Loan:
        """Record the approval and move the loan to APPROVED.

        Raises:
            NotFoundError: If the loan does not exist.
            AlreadyApprovedError: If an approval already exists.
            InvalidStateError: If the loan is not PROPOSED.
            OperationTimeoutError: If the deadline expires before commit.
            PersistenceError: If the store fails.
        """
        async with self._operation("approve", loan_id, timeout):
            async with self.locks.hold(loan_id):
                async with self.store.transaction():
                    loan = await self._load_for_update(loan_id)
                    await self.approvals.record(
                        loan, picture_url, employee_id, approval_date, _utcnow()
                    )

        logger.info(
            f"Loan {loan_id} approved",
            extra={"loan_id": loan_id, "employee_id": employee_id, "state": loan.state.value},
        )
        return loan

    async def invest_in_loan(
        self,
        loan_id: str,
        investor: InvestorRef,
        amount: Decimal | int | float | str,
        timeout: float | None = None,
    ) -> Loan:
        """Record a contribution toward an approved loan.

        The amount is validated before any storage access. When the
        contribution brings the total exactly to the principal the loan
        moves to INVESTED and a funding notification is dispatched in the
        background after commit.

        Returns:
            The loan with the new contribution appended to its investments.

        Raises:
            InvalidAmountError: If the amount is non-positive or malformed.
            NotFoundError: If the loan or referenced investor does not exist.
            AlreadyFundedError: If the loan is INVESTED or later.
            InvalidStateError: If the loan is not APPROVED.
            OverFundingError: If the total would exceed the principal.
            OperationTimeoutError: If the deadline expires before commit.
            PersistenceError: If the store fails.
        """
        async with self._operation("invest", loan_id, timeout):
            validated = self.ledger.validate_amount(amount)
            async with self.locks.hold(loan_id):
                async with self.store.transaction():
                    loan = await self._load_for_update(loan_id)
                    _, funded = await self.ledger.record(
                        loan, investor, validated, _utcnow()
                    )

        if funded:
            logger.info(
                f"Loan {loan_id} fully funded",
                extra={"loan_id": loan_id, "total_invested": str(loan.total_invested)},
            )
            self._dispatch_funded(loan)
        return loan

    async def disburse_loan(
        self,
        loan_id: str,
        agreement_url: str,
        employee_id: str,
        disbursement_date: date,
        timeout: float | None = None,
    ) -> Loan:
        """Record the disbursement and move the loan to DISBURSED.

        Raises:
            NotFoundError: If the loan does not exist.
            AlreadyDisbursedError: If a disbursement already exists.
            InvalidStateError: If the loan is not INVESTED.
            OperationTimeoutError: If the deadline expires before commit.
            PersistenceError: If the store fails.
        """
        async with self._operation("disburse", loan_id, timeout):
            async with self.locks.hold(loan_id):
                async with self.store.transaction():
                    loan = await self._load_for_update(loan_id)
                    await self.disbursements.record(
                        loan, agreement_url, employee_id, disbursement_date, _utcnow()
                    )

        logger.info(
            f"Loan {loan_id} disbursed",
            extra={"loan_id": loan_id, "employee_id": employee_id, "state": loan.state.value},
        )
        return loan

    async def get_loan(self, loan_id: str, timeout: float | None = None) -> Loan:
        """Return one loan with approval, investments and disbursement.

        Raises:
            NotFoundError: If the loan does not exist.
        """
        async with self._operation("get", loan_id, timeout):
            loan = await self.store.get_loan_by_id(loan_id)
            if loan is None:
                raise NotFoundError("loan", loan_id)
        return loan

    async def list_loans(self, timeout: float | None = None) -> Sequence[Loan]:
        """Return every loan with children populated."""
        async with self._operation("list", None, timeout):
            loans = await self.store.list_loans()

        logger.debug("Listed loans", extra={"count": len(loans)})
        return loans

    async def drain_notifications(self) -> None:
        """Wait for every in-flight funding notification to finish."""
        while self._pending_notifications:
            await asyncio.gather(*self._pending_notifications, return_exceptions=True)

    async def close(self) -> None:
        """Flush pending notifications before shutdown."""
        await self.drain_notifications()

    async def _load_for_update(self, loan_id: str) -> Loan:
        loan = await self.store.get_loan_by_id(loan_id, for_update=True)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    @asynccontextmanager
    async def _operation(
        self, name: str, loan_id: str | None, timeout: float | None
    ) -> AsyncIterator[None]:
        """Apply the deadline and log the outcome of one operation."""
        effective = self.default_timeout if timeout is None else timeout
        try:
            async with asyncio.timeout(effective):
                yield
        except TimeoutError as e:
            logger.warning(
                f"{name} timed out after {effective}s",
                extra={"operation": name, "loan_id": loan_id, "timeout": effective},
            )
            raise OperationTimeoutError(name, effective, loan_id) from e
        except LoanError as e:
            logger.info(
                f"{name} rejected: {e}",
                extra={"operation": name, "loan_id": loan_id, "error": e.code},
            )
            raise
        except PersistenceError as e:
            logger.error(
                f"Storage failure during {name}: {e}",
                extra={"operation": name, "loan_id": loan_id},
                exc_info=True,
            )
            raise

    def _dispatch_funded(self, loan: Loan) -> None:
        """Send the funding notification without blocking the caller."""
        snapshot = dataclasses.replace(loan, investments=list(loan.investments))
        task = asyncio.create_task(self._notify_funded(snapshot))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _notify_funded(self, loan: Loan) -> None:
        # Failure here must NOT touch the committed funding
        try:
            investors: list[Investor] = []
            seen: set[str] = set()
            for investment in loan.investments:
                if investment.investor_id in seen:
                    continue
                seen.add(investment.investor_id)
                investor = await self.store.get_investor_by_id(investment.investor_id)
                if investor is not None:
                    investors.append(investor)
            await self.notification.notify_funded(loan, investors)
        except Exception as e:
            logger.error(
                f"Failed to send funding notification for loan {loan.id}: {e}",
                extra={"loan_id": loan.id},
                exc_info=True,
            )
