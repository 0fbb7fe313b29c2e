"""Investment aggregation for approved loans.

The ledger enforces the funding ceiling: for every loan, the sum of its
investment rows never exceeds the principal. The running total is
recomputed from the rows on each contribution. Callers serialize the
read-total, write-row, promote-state sequence per loan (see
LoanLockRegistry and LoanStorePort.transaction).
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from .errors import (
    AlreadyFundedError,
    InvalidStateError,
    NotFoundError,
    OverFundingError,
)
from .models import (
    ExistingInvestor,
    Investment,
    Investor,
    InvestorContact,
    InvestorRef,
    Loan,
    LoanState,
    to_amount,
)
from .ports import LoanStorePort

logger = logging.getLogger(__name__)


class InvestmentLedger:
    """Records contributions and promotes loans to INVESTED.

    Uses ports but contains no adapter-specific logic.
    """

    def __init__(self, store: LoanStorePort):
        self.store = store

    @staticmethod
    def validate_amount(amount: Decimal | int | float | str) -> Decimal:
        """Normalize a contribution amount before any storage access.

        Raises:
            InvalidAmountError: If the amount is non-positive or malformed.
        """
        return to_amount(amount)

    async def record(
        self,
        loan: Loan,
        investor_ref: InvestorRef,
        amount: Decimal,
        now: datetime,
    ) -> tuple[Investment, bool]:
        """Append a contribution and promote the loan when fully funded.

        Must run inside the caller's per-loan serialized unit of work.

        Steps:
        1. Reject loans that are already funded or not yet approved
        2. Resolve the investor
        3. Guard against over-funding using the stored total
        4. Write the investment row
        5. Promote to INVESTED on exact equality with the principal

        Returns:
            The recorded investment and whether this contribution completed
            the funding.

        Raises:
            AlreadyFundedError: If the loan is INVESTED or later.
            InvalidStateError: If the loan is not APPROVED.
            NotFoundError: If an ExistingInvestor reference is unknown.
            OverFundingError: If the contribution would exceed the principal.
        """
        # 1. State checks
        if loan.state.is_at_least(LoanState.INVESTED):
            raise AlreadyFundedError(loan.id, loan.state, LoanState.APPROVED)
        if loan.state is not LoanState.APPROVED:
            raise InvalidStateError(loan.id, loan.state, LoanState.APPROVED)

        # 2. Investor resolution
        investor = await self.resolve_investor(investor_ref, now)

        # 3. Over-funding guard against the confirmed total
        current_total = await self.store.get_total_invested(loan.id)
        if current_total + amount > loan.principal:
            logger.info(
                f"Rejected over-funding contribution to loan {loan.id}",
                extra={
                    "loan_id": loan.id,
                    "current_total": str(current_total),
                    "amount": str(amount),
                    "principal": str(loan.principal),
                },
            )
            raise OverFundingError(loan.id, current_total, amount, loan.principal)

        # 4. Ledger entry
        investment = Investment(
            id=str(uuid.uuid4()),
            loan_id=loan.id,
            investor_id=investor.id,
            amount=amount,
            created_at=now,
        )
        await self.store.create_investment(investment)
        loan.add_investment(investment)

        # 5. Promotion on exact equality; the guard makes overshoot impossible
        new_total = current_total + amount
        funded = new_total == loan.principal
        if funded:
            loan.mark_invested(now)
            await self.store.update_loan(loan)

        logger.info(
            f"Recorded investment of {amount} in loan {loan.id}",
            extra={
                "loan_id": loan.id,
                "investor_id": investor.id,
                "amount": str(amount),
                "total_invested": str(new_total),
                "principal": str(loan.principal),
                "funded": funded,
            },
        )
        return investment, funded

    async def resolve_investor(
        self, investor_ref: InvestorRef, now: datetime
    ) -> Investor:
        """Turn an investor reference into a stored investor.

        - ExistingInvestor: must already exist.
        - InvestorContact with email: atomic find-or-create on the email.
        - InvestorContact without email: always a new investor.

        Raises:
            NotFoundError: If an ExistingInvestor id is unknown.
        """
        if isinstance(investor_ref, ExistingInvestor):
            investor = await self.store.get_investor_by_id(investor_ref.investor_id)
            if investor is None:
                raise NotFoundError("investor", investor_ref.investor_id)
            return investor

        if not isinstance(investor_ref, InvestorContact):
            raise TypeError(f"Unsupported investor reference: {investor_ref!r}")

        candidate = Investor(
            id=str(uuid.uuid4()),
            created_at=now,
            name=investor_ref.name,
            email=investor_ref.email,
        )
        if candidate.email is None:
            await self.store.create_investor(candidate)
            return candidate

        investor = await self.store.get_or_create_investor(candidate)
        if investor.id != candidate.id:
            logger.debug(
                f"Reusing investor {investor.id} for {candidate.email}",
                extra={"investor_id": investor.id},
            )
        return investor
