"""Disbursement recording for fully funded loans."""

import logging
import uuid
from datetime import date, datetime

from .errors import AlreadyDisbursedError, DuplicateRecordError, InvalidStateError
from .models import Disbursement, Loan, LoanState
from .ports import LoanStorePort

logger = logging.getLogger(__name__)


class DisbursementRecorder:
    """Validates and writes the final hand-off of a loan to its borrower."""

    def __init__(self, store: LoanStorePort):
        self.store = store

    async def record(
        self,
        loan: Loan,
        agreement_url: str,
        employee_id: str,
        disbursement_date: date,
        now: datetime,
    ) -> Disbursement:
        """Create the disbursement row and move the loan to DISBURSED.

        Raises:
            AlreadyDisbursedError: If the loan already has a disbursement.
            InvalidStateError: If the loan is not INVESTED.
            ValueError: If agreement_url or employee_id is blank.
        """
        if loan.disbursement is not None:
            raise AlreadyDisbursedError(loan.id, loan.state, LoanState.INVESTED)
        if loan.state is not LoanState.INVESTED:
            raise InvalidStateError(loan.id, loan.state, LoanState.INVESTED)
        if not agreement_url or not agreement_url.strip():
            raise ValueError("agreement_url must be a non-empty string")
        if not employee_id or not employee_id.strip():
            raise ValueError("employee_id must be a non-empty string")

        disbursement = Disbursement(
            id=str(uuid.uuid4()),
            loan_id=loan.id,
            agreement_url=agreement_url,
            employee_id=employee_id,
            disbursement_date=disbursement_date,
            created_at=now,
        )
        try:
            await self.store.create_disbursement(disbursement)
        except DuplicateRecordError as e:
            raise AlreadyDisbursedError(loan.id, loan.state, LoanState.INVESTED) from e

        loan.mark_disbursed(disbursement)
        await self.store.update_loan(loan)
        logger.debug(
            f"Disbursement {disbursement.id} written for loan {loan.id}",
            extra={"loan_id": loan.id, "employee_id": employee_id},
        )
        return disbursement
