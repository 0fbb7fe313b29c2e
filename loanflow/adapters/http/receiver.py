"""HTTP request handling for the loan API.

Validates JSON payloads with pydantic, forwards the request to the
LoanLifecyclePort and maps the outcome to a status code and JSON body.
This layer never touches the store.

Every handler returns ``(status_code, body)``. Error bodies always have
the shape ``{"status": "error", "error": <code>, "message": <text>}``.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from loanflow.adapters.payloads import loan_to_dict
from loanflow.adapters.requests import (
    ApproveLoanRequest,
    CreateLoanRequest,
    DisburseLoanRequest,
    InvestRequest,
    classify_error,
)
from loanflow.core.models import Loan
from loanflow.core.ports import LoanLifecyclePort

logger = logging.getLogger(__name__)

Response = tuple[int, dict[str, Any]]


class LoanRequestHandler:
    """Translates HTTP-shaped requests into LoanLifecyclePort calls."""

    def __init__(
        self,
        lifecycle: LoanLifecyclePort,
        operation_timeout: float | None = None,
    ):
        """Initialize the request handler.

        Args:
            lifecycle: LoanLifecyclePort implementation.
            operation_timeout: Deadline passed to every lifecycle call.
                None defers to the service default.
        """
        self.lifecycle = lifecycle
        self.operation_timeout = operation_timeout

    async def handle_create(self, body: Any) -> Response:
        try:
            draft = CreateLoanRequest.model_validate(body).to_draft()
        except ValueError as e:
            return self._invalid_request("create", e)
        return await self._execute(
            "create",
            lambda: self.lifecycle.create_loan(draft, timeout=self.operation_timeout),
            success_status=201,
        )

    async def handle_list(self) -> Response:
        try:
            loans = await self.lifecycle.list_loans(timeout=self.operation_timeout)
        except Exception as e:
            return self._map_error("list", None, e)
        logger.debug("Loans listed via HTTP", extra={"count": len(loans)})
        return 200, {
            "status": "success",
            "operation": "list",
            "loans": [loan_to_dict(loan) for loan in loans],
        }

    async def handle_get(self, loan_id: str) -> Response:
        return await self._execute(
            "get",
            lambda: self.lifecycle.get_loan(loan_id, timeout=self.operation_timeout),
            loan_id=loan_id,
        )

    async def handle_approve(self, loan_id: str, body: Any) -> Response:
        try:
            request = ApproveLoanRequest.model_validate(body)
        except ValueError as e:
            return self._invalid_request("approve", e)
        return await self._execute(
            "approve",
            lambda: self.lifecycle.approve_loan(
                loan_id,
                request.picture_url,
                request.employee_id,
                request.approval_date,
                timeout=self.operation_timeout,
            ),
            loan_id=loan_id,
        )

    async def handle_invest(self, loan_id: str, body: Any) -> Response:
        try:
            request = InvestRequest.model_validate(body)
            investor = request.to_investor_ref()
        except ValueError as e:
            return self._invalid_request("invest", e)
        return await self._execute(
            "invest",
            lambda: self.lifecycle.invest_in_loan(
                loan_id, investor, request.amount, timeout=self.operation_timeout
            ),
            loan_id=loan_id,
        )

    async def handle_disburse(self, loan_id: str, body: Any) -> Response:
        try:
            request = DisburseLoanRequest.model_validate(body)
        except ValueError as e:
            return self._invalid_request("disburse", e)
        return await self._execute(
            "disburse",
            lambda: self.lifecycle.disburse_loan(
                loan_id,
                request.agreement_url,
                request.employee_id,
                request.disbursement_date,
                timeout=self.operation_timeout,
            ),
            loan_id=loan_id,
        )

    async def _execute(
        self,
        operation: str,
        call: Callable[[], Awaitable[Loan]],
        loan_id: str | None = None,
        success_status: int = 200,
    ) -> Response:
        try:
            loan = await call()
        except Exception as e:
            return self._map_error(operation, loan_id, e)

        logger.info(
            f"Loan {operation} handled via HTTP",
            extra={"loan_id": loan.id, "state": loan.state.value},
        )
        return success_status, {
            "status": "success",
            "operation": operation,
            "loan": loan_to_dict(loan),
        }

    def _invalid_request(self, operation: str, error: ValueError) -> Response:
        status, code, message = classify_error(error)
        logger.info(
            f"Rejected {operation} payload: {message}",
            extra={"operation": operation, "error": code},
        )
        return status, self._error_body(code, message)

    def _map_error(
        self, operation: str, loan_id: str | None, error: Exception
    ) -> Response:
        """Map a lifecycle failure to (status, body)."""
        status, code, message = classify_error(error)
        if status >= 500 and status != 504:
            # Log full exception server-side; the client gets a generic message
            logger.error(
                f"Error handling {operation} request: {error}",
                extra={"operation": operation, "loan_id": loan_id},
                exc_info=error,
            )
        return status, self._error_body(code, message)

    @staticmethod
    def _error_body(code: str, message: str) -> dict[str, Any]:
        return {"status": "error", "error": code, "message": message}
