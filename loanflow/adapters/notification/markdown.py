"""Markdown file notification adapter.

Implements NotificationPort by appending funding reports to a markdown
file per day (``<report_dir>/YYYY-MM-DD/funded_loans.md``). Useful as an
audit trail of which investors were sent which agreement.
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from loanflow.core.models import Investor, Loan
from loanflow.core.ports import NotificationPort

logger = logging.getLogger(__name__)

REPORT_FILENAME = "funded_loans.md"


class MarkdownNotificationAdapter(NotificationPort):
    """Appends funding reports to markdown files organized by date."""

    def __init__(self, report_dir: str):
        """Initialize markdown notification adapter.

        Args:
            report_dir: Base directory where date-based subdirectories will be created.

        Raises:
            ValueError: If report_dir is a filesystem root.
            OSError: If base directory cannot be created (permission denied, invalid path, etc.)
        """
        self.base_dir = Path(report_dir).resolve()

        if self.base_dir.parent == self.base_dir:
            raise ValueError(f"report_dir cannot be a filesystem root: {report_dir}")

        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OSError(f"Failed to create base directory {report_dir}: {e}") from e
        self._lock = asyncio.Lock()

    def report_path_for(self, loan: Loan) -> Path:
        """Daily report file the loan's funding is appended to (no I/O)."""
        date_str = loan.updated_at.astimezone(UTC).strftime("%Y-%m-%d")
        return self.base_dir / date_str / REPORT_FILENAME

    async def notify_funded(self, loan: Loan, investors: Sequence[Investor]) -> None:
        """Append a funding report for the loan to today's markdown file."""
        entry = self._format_report_entry(loan, investors)
        report_file = self.report_path_for(loan)

        async with self._lock:
            try:
                await asyncio.to_thread(
                    report_file.parent.mkdir, parents=True, exist_ok=True
                )
                await asyncio.to_thread(self._append, report_file, entry)

                logger.info(
                    f"Wrote funding report to {report_file}",
                    extra={"loan_id": loan.id, "investor_count": len(investors)},
                )

            except OSError as e:
                logger.error(
                    f"Failed to write markdown report: {e}",
                    extra={"path": str(report_file)},
                    exc_info=True,
                )
                raise

    @staticmethod
    def _append(path: Path, text: str) -> None:
        with path.open("a", encoding="utf-8") as fh:
            fh.write(text)

    @staticmethod
    def _format_report_entry(loan: Loan, investors: Sequence[Investor]) -> str:
        """Format a single funding report as markdown.

        Args:
            loan: The loan that reached its principal.
            investors: Distinct contributors to notify.

        Returns:
            Formatted markdown string ready to append to the daily file.
        """
        lines = []

        timestamp = datetime.now(UTC).isoformat()
        lines.append(f"## Loan Funded - {timestamp}")
        lines.append("")

        lines.append("### Loan")
        lines.append(f"- **Loan ID**: `{loan.id}`")
        lines.append(f"- **Borrower**: {loan.borrower_id}")
        lines.append(f"- **Principal**: {loan.principal}")
        lines.append(f"- **Rate**: {loan.rate}")
        lines.append(f"- **ROI**: {loan.roi}")
        lines.append(f"- **Funded At**: {loan.updated_at.isoformat()}")
        if loan.agreement_letter_url:
            lines.append(f"- **Agreement Letter**: {loan.agreement_letter_url}")
        lines.append("")

        lines.append("### Investors")
        for investor in investors:
            label = investor.name or investor.id
            if investor.email:
                lines.append(f"- {label} <{investor.email}>")
            else:
                lines.append(f"- {label}")
        lines.append("")

        lines.append("### Contributions")
        for i, investment in enumerate(loan.investments, 1):
            lines.append(f"{i}. {investment.amount} from `{investment.investor_id}`")
        lines.append("")

        lines.append("---")
        lines.append("")

        return "\n".join(lines)
