"""Webhook notification adapter.

Implements NotificationPort by POSTing a JSON ``loan.funded`` event to a
configured URL, so an external mailer can send the agreement link to
each investor.
"""

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import httpx

from loanflow.adapters.payloads import investor_to_dict, loan_to_dict
from loanflow.core.models import Investor, Loan
from loanflow.core.ports import NotificationPort

logger = logging.getLogger(__name__)

EVENT_TYPE = "loan.funded"


class WebhookNotificationAdapter(NotificationPort):
    """Sends funding events to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize webhook notification adapter.

        Args:
            url: Endpoint that receives the JSON event.
            timeout_seconds: Per-request timeout.
            headers: Extra headers sent with every request (e.g. auth).
            transport: Optional httpx transport, mainly for tests.
        """
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = headers or {}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                headers={"Content-Type": "application/json", **self.headers},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def notify_funded(self, loan: Loan, investors: Sequence[Investor]) -> None:
        """POST the funding event.

        Non-2xx responses are logged. Transport errors are re-raised to the
        caller.
        """
        payload = self.build_payload(loan, investors)

        try:
            client = await self._get_client()
            response = await client.post(self.url, json=payload)

            if response.is_success:
                logger.info(
                    f"Delivered funding event for loan {loan.id}",
                    extra={"loan_id": loan.id, "status_code": response.status_code},
                )
            else:
                logger.error(
                    f"Funding webhook rejected: {response.status_code}",
                    extra={"loan_id": loan.id, "response": response.text},
                )

        except httpx.RequestError as e:
            logger.error(
                f"Failed to deliver funding event: {e}",
                extra={"loan_id": loan.id, "url": self.url},
            )
            raise

    @staticmethod
    def build_payload(loan: Loan, investors: Sequence[Investor]) -> dict[str, Any]:
        """Build the JSON event body."""
        return {
            "event": EVENT_TYPE,
            "sent_at": datetime.now(UTC).isoformat(),
            "loan": loan_to_dict(loan),
            "agreement_letter_url": loan.agreement_letter_url,
            "investors": [investor_to_dict(investor) for investor in investors],
        }
