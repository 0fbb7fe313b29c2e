"""Stdout notification adapter.

Implements NotificationPort by printing funding reports to the terminal
with human-readable formatting.
"""

import asyncio
import logging
from collections.abc import Sequence
from decimal import Decimal

from loanflow.core.models import Investor, Loan
from loanflow.core.ports import NotificationPort

logger = logging.getLogger(__name__)


class StdoutNotificationAdapter(NotificationPort):
    """Prints funding reports to stdout with human-readable formatting."""

    def __init__(self, verbose: bool = False):
        """Initialize stdout notification adapter.

        Args:
            verbose: If True, list every individual contribution.
        """
        self.verbose = verbose

    async def notify_funded(self, loan: Loan, investors: Sequence[Investor]) -> None:
        """Report a fully funded loan to stdout."""
        await asyncio.to_thread(print, self._format_header(loan))
        await asyncio.to_thread(print, self._format_investors(loan, investors))
        if self.verbose:
            await asyncio.to_thread(print, self._format_contributions(loan))
        await asyncio.to_thread(print, self._format_footer())
        logger.debug(
            f"Printed funding report for loan {loan.id}",
            extra={"loan_id": loan.id, "investor_count": len(investors)},
        )

    @staticmethod
    def _format_header(loan: Loan) -> str:
        """Format the report header."""
        lines = [
            "=" * 80,
            "LOAN FULLY FUNDED",
            "=" * 80,
            f"Loan: {loan.id}",
            f"Borrower: {loan.borrower_id}",
            f"Principal: {loan.principal}",
            f"Rate: {loan.rate}",
            f"ROI: {loan.roi}",
            f"Status: {loan.state.value.upper()}",
        ]
        if loan.agreement_letter_url:
            lines.append(f"Agreement Letter: {loan.agreement_letter_url}")
        return "\n".join(lines)

    @staticmethod
    def _format_investors(loan: Loan, investors: Sequence[Investor]) -> str:
        """Format the recipient list, one line per investor."""
        totals: dict[str, Decimal] = {}
        for investment in loan.investments:
            totals[investment.investor_id] = (
                totals.get(investment.investor_id, Decimal("0")) + investment.amount
            )

        lines = [
            "",
            "-" * 80,
            "INVESTORS",
            "-" * 80,
        ]
        for investor in investors:
            label = investor.name or investor.id
            contact = f" <{investor.email}>" if investor.email else ""
            invested = totals.get(investor.id, Decimal("0"))
            lines.append(f"  {label}{contact}: {invested}")
        return "\n".join(lines)

    @staticmethod
    def _format_contributions(loan: Loan) -> str:
        """Format every contribution in insertion order."""
        lines = ["", "CONTRIBUTIONS:"]
        for i, investment in enumerate(loan.investments, 1):
            lines.append(
                f"  {i}. {investment.amount} from {investment.investor_id} "
                f"at {investment.created_at.isoformat()}"
            )
        return "\n".join(lines)

    @staticmethod
    def _format_footer() -> str:
        """Format the report footer."""
        return "=" * 80
