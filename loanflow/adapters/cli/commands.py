"""CLI command implementations for loan operations.

Provides operator-initiated actions through a command-line interface.

This adapter maps CLI commands (create, approve, invest, disburse, get,
list) to LoanLifecyclePort operations. It handles CLI-specific
formatting and error reporting.
"""

import logging
from decimal import Decimal
from typing import Any

from loanflow.adapters.payloads import loan_to_dict
from loanflow.adapters.requests import (
    ApproveLoanRequest,
    CreateLoanRequest,
    DisburseLoanRequest,
    InvestRequest,
    classify_error,
)
from loanflow.core.errors import LoanError, OperationTimeoutError
from loanflow.core.models import Loan
from loanflow.core.ports import LoanLifecyclePort

logger = logging.getLogger(__name__)

COMMANDS = ("create", "approve", "invest", "disburse", "get", "list")


class CLICommandHandler:
    """Handles CLI commands by delegating to LoanLifecyclePort.

    Business-rule rejections, bad input and timeouts come back as
    ``{"status": "error", ...}`` dictionaries. Storage failures propagate
    to the caller.
    """

    def __init__(
        self,
        lifecycle: LoanLifecyclePort,
        operation_timeout: float | None = None,
    ):
        """Initialize the CLI command handler.

        Args:
            lifecycle: LoanLifecyclePort implementation to execute commands.
            operation_timeout: Deadline passed to every lifecycle call.
        """
        self.lifecycle = lifecycle
        self.operation_timeout = operation_timeout

    async def create_loan(
        self,
        borrower_id: str,
        principal: Decimal | int | float | str,
        rate: Decimal | int | float | str,
        roi: Decimal | int | float | str,
        agreement_letter_url: str | None = None,
        verbose: bool = False,
    ) -> dict[str, Any]:
        """Create a proposed loan via CLI.

        Returns:
            Dictionary with status, message and the new loan.
        """
        try:
            draft = CreateLoanRequest.model_validate(
                {
                    "borrower_id": borrower_id,
                    "principal": principal,
                    "rate": rate,
                    "roi": roi,
                    "agreement_letter_url": agreement_letter_url,
                }
            ).to_draft()
            loan = await self.lifecycle.create_loan(draft, timeout=self.operation_timeout)
        except (LoanError, ValueError, OperationTimeoutError) as e:
            return self._error("create", None, e)

        if verbose:
            logger.info(
                f"Created loan {loan.id}",
                extra={"borrower_id": borrower_id, "verbose": True},
            )
        return self._success("create", loan, f"Loan {loan.id} created")

    async def approve_loan(
        self,
        loan_id: str,
        picture_url: str,
        employee_id: str,
        approval_date: str,
        verbose: bool = False,
    ) -> dict[str, Any]:
        """Approve a proposed loan via CLI."""
        try:
            request = ApproveLoanRequest.model_validate(
                {
                    "picture_url": picture_url,
                    "employee_id": employee_id,
                    "approval_date": approval_date,
                }
            )
            loan = await self.lifecycle.approve_loan(
                loan_id,
                request.picture_url,
                request.employee_id,
                request.approval_date,
                timeout=self.operation_timeout,
            )
        except (LoanError, ValueError, OperationTimeoutError) as e:
            return self._error("approve", loan_id, e)

        if verbose:
            logger.info(
                f"Approved loan {loan_id}",
                extra={"employee_id": employee_id, "verbose": True},
            )
        return self._success("approve", loan, f"Loan {loan_id} approved")

    async def invest_in_loan(
        self,
        loan_id: str,
        amount: Decimal | int | float | str,
        investor_id: str | None = None,
        investor_name: str | None = None,
        investor_email: str | None = None,
        verbose: bool = False,
    ) -> dict[str, Any]:
        """Record a contribution via CLI."""
        try:
            request = InvestRequest.model_validate(
                {
                    "investor_id": investor_id,
                    "investor_name": investor_name,
                    "investor_email": investor_email,
                    "amount": amount,
                }
            )
            loan = await self.lifecycle.invest_in_loan(
                loan_id,
                request.to_investor_ref(),
                request.amount,
                timeout=self.operation_timeout,
            )
        except (LoanError, ValueError, OperationTimeoutError) as e:
            return self._error("invest", loan_id, e)

        if verbose:
            logger.info(
                f"Invested {request.amount} in loan {loan_id}",
                extra={"total_invested": str(loan.total_invested), "verbose": True},
            )
        message = f"Invested {request.amount} in loan {loan_id}"
        if loan.total_invested == loan.principal:
            message += " (fully funded)"
        return self._success("invest", loan, message)

    async def disburse_loan(
        self,
        loan_id: str,
        agreement_url: str,
        employee_id: str,
        disbursement_date: str,
        verbose: bool = False,
    ) -> dict[str, Any]:
        """Disburse a fully funded loan via CLI."""
        try:
            request = DisburseLoanRequest.model_validate(
                {
                    "agreement_url": agreement_url,
                    "employee_id": employee_id,
                    "disbursement_date": disbursement_date,
                }
            )
            loan = await self.lifecycle.disburse_loan(
                loan_id,
                request.agreement_url,
                request.employee_id,
                request.disbursement_date,
                timeout=self.operation_timeout,
            )
        except (LoanError, ValueError, OperationTimeoutError) as e:
            return self._error("disburse", loan_id, e)

        if verbose:
            logger.info(
                f"Disbursed loan {loan_id}",
                extra={"employee_id": employee_id, "verbose": True},
            )
        return self._success("disburse", loan, f"Loan {loan_id} disbursed")

    async def get_loan(self, loan_id: str, output_format: str = "json") -> dict[str, Any]:
        """Show one loan via CLI.

        Args:
            loan_id: Loan to show.
            output_format: "json" for a structured dict, "text" for a summary.
        """
        if output_format not in ("json", "text"):
            return {
                "status": "error",
                "operation": "get",
                "message": f"Unsupported format: {output_format}",
            }

        try:
            loan = await self.lifecycle.get_loan(loan_id, timeout=self.operation_timeout)
        except (LoanError, OperationTimeoutError) as e:
            return self._error("get", loan_id, e)

        if output_format == "text":
            return {
                "status": "success",
                "operation": "get",
                "loan_id": loan_id,
                "data": self._format_loan_as_text(loan),
            }
        return {
            "status": "success",
            "operation": "get",
            "loan_id": loan_id,
            "data": loan_to_dict(loan),
        }

    async def list_loans(self, output_format: str = "json") -> dict[str, Any]:
        """List every loan via CLI."""
        if output_format not in ("json", "text"):
            return {
                "status": "error",
                "operation": "list",
                "message": f"Unsupported format: {output_format}",
            }

        try:
            loans = await self.lifecycle.list_loans(timeout=self.operation_timeout)
        except (LoanError, OperationTimeoutError) as e:
            return self._error("list", None, e)

        if output_format == "text":
            lines = [
                f"{loan.id}  {loan.state.value:<9}  "
                f"{loan.total_invested}/{loan.principal}  {loan.borrower_id}"
                for loan in loans
            ]
            return {
                "status": "success",
                "operation": "list",
                "count": len(loans),
                "data": "\n".join(lines) if lines else "No loans found",
            }
        return {
            "status": "success",
            "operation": "list",
            "count": len(loans),
            "loans": [loan_to_dict(loan) for loan in loans],
        }

    @staticmethod
    def _success(operation: str, loan: Loan, message: str) -> dict[str, Any]:
        return {
            "status": "success",
            "operation": operation,
            "loan_id": loan.id,
            "state": loan.state.value,
            "message": message,
            "loan": loan_to_dict(loan),
        }

    @staticmethod
    def _error(operation: str, loan_id: str | None, error: Exception) -> dict[str, Any]:
        _, code, message = classify_error(error)
        logger.error(f"Failed to {operation} loan: {message}")
        result: dict[str, Any] = {
            "status": "error",
            "operation": operation,
            "error": code,
            "message": message,
        }
        if loan_id is not None:
            result["loan_id"] = loan_id
        return result

    @staticmethod
    def _format_loan_as_text(loan: Loan) -> str:
        """Format a loan as human-readable text."""
        lines = [
            f"Loan ID: {loan.id}",
            f"Borrower: {loan.borrower_id}",
            f"State: {loan.state.value}",
            f"Principal: {loan.principal}",
            f"Invested: {loan.total_invested}",
            f"Rate: {loan.rate}",
            f"ROI: {loan.roi}",
        ]
        if loan.agreement_letter_url:
            lines.append(f"Agreement Letter: {loan.agreement_letter_url}")
        lines.append("")

        if loan.approval:
            lines.append(
                f"Approved: {loan.approval.approval_date.isoformat()} "
                f"by {loan.approval.employee_id} ({loan.approval.picture_url})"
            )
        if loan.investments:
            lines.append("Investments:")
            for investment in loan.investments:
                lines.append(f"  - {investment.amount} from {investment.investor_id}")
        if loan.disbursement:
            lines.append(
                f"Disbursed: {loan.disbursement.disbursement_date.isoformat()} "
                f"by {loan.disbursement.employee_id} ({loan.disbursement.agreement_url})"
            )

        return "\n".join(lines)


def _require(args: dict[str, Any], *names: str) -> None:
    for name in names:
        if name not in args:
            raise ValueError(f"Missing required parameter: {name}")


async def run_command(
    handler: CLICommandHandler,
    command: str,
    args: dict[str, Any],
) -> dict[str, Any]:
    """Run a CLI command.

    Entry point for executing CLI commands. Maps command names to handler methods.

    Args:
        handler: CLICommandHandler instance.
        command: Command name (see COMMANDS).
        args: Dictionary of command arguments.

    Returns:
        Dictionary with command result.

    Raises:
        ValueError: If command is not recognized or a required argument is missing.
    """
    verbose = bool(args.get("verbose", False))

    if command == "create":
        _require(args, "borrower_id", "principal", "rate", "roi")
        return await handler.create_loan(
            borrower_id=args["borrower_id"],
            principal=args["principal"],
            rate=args["rate"],
            roi=args["roi"],
            agreement_letter_url=args.get("agreement_letter_url"),
            verbose=verbose,
        )

    elif command == "approve":
        _require(args, "loan_id", "picture_url", "employee_id", "approval_date")
        return await handler.approve_loan(
            loan_id=args["loan_id"],
            picture_url=args["picture_url"],
            employee_id=args["employee_id"],
            approval_date=args["approval_date"],
            verbose=verbose,
        )

    elif command == "invest":
        _require(args, "loan_id", "amount")
        return await handler.invest_in_loan(
            loan_id=args["loan_id"],
            amount=args["amount"],
            investor_id=args.get("investor_id"),
            investor_name=args.get("investor_name"),
            investor_email=args.get("investor_email"),
            verbose=verbose,
        )

    elif command == "disburse":
        _require(args, "loan_id", "agreement_url", "employee_id", "disbursement_date")
        return await handler.disburse_loan(
            loan_id=args["loan_id"],
            agreement_url=args["agreement_url"],
            employee_id=args["employee_id"],
            disbursement_date=args["disbursement_date"],
            verbose=verbose,
        )

    elif command == "get":
        _require(args, "loan_id")
        return await handler.get_loan(
            loan_id=args["loan_id"],
            output_format=args.get("format", "json"),
        )

    elif command == "list":
        return await handler.list_loans(output_format=args.get("format", "json"))

    else:
        raise ValueError(f"Unknown command: {command}. Use 'help' for available commands.")
