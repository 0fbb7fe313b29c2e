"""Tests for WebhookNotificationAdapter using an httpx mock transport."""

import json
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest

from loanflow.adapters.notification.webhook import EVENT_TYPE, WebhookNotificationAdapter
from loanflow.core.models import Investment, Investor, Loan, LoanState

FUNDED_AT = datetime(2024, 3, 5, 10, 0, 0, tzinfo=UTC)


@pytest.fixture
def funded_loan() -> Loan:
    return Loan(
        id="loan-wh-1",
        borrower_id="borrower-5",
        principal=Decimal("100.00"),
        rate=Decimal("0.1"),
        roi=Decimal("0.08"),
        agreement_letter_url="https://docs.example.com/wh.pdf",
        state=LoanState.INVESTED,
        created_at=FUNDED_AT,
        updated_at=FUNDED_AT,
        investments=[Investment("inv-1", "loan-wh-1", "investor-a", Decimal("100.00"), FUNDED_AT)],
    )


@pytest.fixture
def investors() -> list[Investor]:
    return [Investor(id="investor-a", created_at=FUNDED_AT, name="Ann", email="ann@example.com")]


class TestWebhookNotificationAdapter:
    """Test suite for WebhookNotificationAdapter."""

    @pytest.mark.asyncio
    async def test_posts_funding_event(self, funded_loan: Loan, investors: list[Investor]) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(202)

        adapter = WebhookNotificationAdapter(
            url="https://hooks.example.com/funded",
            headers={"Authorization": "Bearer secret"},
            transport=httpx.MockTransport(handler),
        )
        try:
            await adapter.notify_funded(funded_loan, investors)
        finally:
            await adapter.close()

        assert len(captured) == 1
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == "https://hooks.example.com/funded"
        assert request.headers["Authorization"] == "Bearer secret"

        body = json.loads(request.content)
        assert body["event"] == EVENT_TYPE
        assert body["agreement_letter_url"] == "https://docs.example.com/wh.pdf"
        assert body["loan"]["state"] == "invested"
        assert body["loan"]["total_invested"] == "100.00"
        assert [i["email"] for i in body["investors"]] == ["ann@example.com"]

    @pytest.mark.asyncio
    async def test_non_2xx_is_logged_not_raised(
        self, funded_loan: Loan, investors: list[Investor], caplog
    ) -> None:
        adapter = WebhookNotificationAdapter(
            url="https://hooks.example.com/funded",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
        )

        await adapter.notify_funded(funded_loan, investors)
        await adapter.close()

        assert "Funding webhook rejected: 500" in caplog.text

    @pytest.mark.asyncio
    async def test_transport_error_is_raised(
        self, funded_loan: Loan, investors: list[Investor]
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = WebhookNotificationAdapter(
            url="https://hooks.example.com/funded",
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(httpx.ConnectError):
            await adapter.notify_funded(funded_loan, investors)
        await adapter.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        adapter = WebhookNotificationAdapter(url="https://hooks.example.com/funded")

        await adapter.close()
        await adapter.close()

        assert adapter._client is None
