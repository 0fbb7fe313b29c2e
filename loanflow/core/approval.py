"""Approval recording for proposed loans."""

import logging
import uuid
from datetime import date, datetime

from .errors import AlreadyApprovedError, DuplicateRecordError, InvalidStateError
from .models import Approval, Loan, LoanState
from .ports import LoanStorePort

logger = logging.getLogger(__name__)


class ApprovalRecorder:
    """Validates and writes the one-time approval of a loan.

    Stateless; the caller owns the lock and the transaction.
    """

    def __init__(self, store: LoanStorePort):
        self.store = store

    async def record(
        self,
        loan: Loan,
        picture_url: str,
        employee_id: str,
        approval_date: date,
        now: datetime,
    ) -> Approval:
        """Create the approval row and move the loan to APPROVED.

        The storage uniqueness constraint backs up the in-memory check, so
        a duplicate that slips past the loaded aggregate still fails with
        AlreadyApprovedError.

        Raises:
            AlreadyApprovedError: If the loan already has an approval.
            InvalidStateError: If the loan is not PROPOSED.
            ValueError: If picture_url or employee_id is blank.
        """
        if loan.approval is not None:
            raise AlreadyApprovedError(loan.id, loan.state, LoanState.PROPOSED)
        if loan.state is not LoanState.PROPOSED:
            raise InvalidStateError(loan.id, loan.state, LoanState.PROPOSED)
        if not picture_url or not picture_url.strip():
            raise ValueError("picture_url must be a non-empty string")
        if not employee_id or not employee_id.strip():
            raise ValueError("employee_id must be a non-empty string")

        approval = Approval(
            id=str(uuid.uuid4()),
            loan_id=loan.id,
            picture_url=picture_url,
            employee_id=employee_id,
            approval_date=approval_date,
            created_at=now,
        )
        try:
            await self.store.create_approval(approval)
        except DuplicateRecordError as e:
            raise AlreadyApprovedError(loan.id, loan.state, LoanState.PROPOSED) from e

        loan.mark_approved(approval)
        await self.store.update_loan(loan)
        logger.debug(
            f"Approval {approval.id} written for loan {loan.id}",
            extra={"loan_id": loan.id, "employee_id": employee_id},
        )
        return approval
