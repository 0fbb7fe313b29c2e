"""Notification adapter that discards funding events."""

import logging
from collections.abc import Sequence

from loanflow.core.models import Investor, Loan
from loanflow.core.ports import NotificationPort

logger = logging.getLogger(__name__)


class NullNotificationAdapter(NotificationPort):
    """Accepts funding notifications and does nothing with them."""

    async def notify_funded(self, loan: Loan, investors: Sequence[Investor]) -> None:
        logger.debug(f"Discarding funding notification for loan {loan.id}")
