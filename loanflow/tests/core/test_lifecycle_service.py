"""Unit tests for LoanLifecycleService.

Tests verify ordering of the lifecycle, the funding ceiling under
concurrency, atomicity on failure or deadline, and that funding
notifications never affect the committed write.
"""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from loanflow.core.errors import (
    AlreadyApprovedError,
    AlreadyDisbursedError,
    AlreadyFundedError,
    InvalidAmountError,
    InvalidStateError,
    NotFoundError,
    OperationTimeoutError,
    OverFundingError,
    PersistenceError,
)
from loanflow.core.lifecycle_service import LoanLifecycleService
from loanflow.core.models import (
    ExistingInvestor,
    InvestorContact,
    Loan,
    LoanDraft,
    LoanState,
)
from loanflow.tests.fakes import FakeLoanStorePort, FakeNotificationPort

# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def store() -> FakeLoanStorePort:
    """Create a fake store."""
    return FakeLoanStorePort()


@pytest.fixture
def notification() -> FakeNotificationPort:
    """Create a fake notification adapter."""
    return FakeNotificationPort()


@pytest.fixture
def service(store: FakeLoanStorePort, notification: FakeNotificationPort) -> LoanLifecycleService:
    """Create a lifecycle service wired to fakes."""
    return LoanLifecycleService(store=store, notification=notification, default_timeout=5.0)


def _draft(principal: str = "1000.00") -> LoanDraft:
    return LoanDraft(
        borrower_id="borrower-42",
        principal=principal,
        rate="0.12",
        roi="0.10",
        agreement_letter_url="https://docs.example.com/letter.pdf",
    )


async def _approved_loan(service: LoanLifecycleService, principal: str = "1000.00") -> Loan:
    loan = await service.create_loan(_draft(principal))
    return await service.approve_loan(
        loan.id, "https://img.example.com/visit.jpg", "emp-1", date(2024, 1, 10)
    )


async def _funded_loan(service: LoanLifecycleService, principal: str = "1000.00") -> Loan:
    loan = await _approved_loan(service, principal)
    return await service.invest_in_loan(
        loan.id, InvestorContact(name="Ann", email="ann@example.com"), principal
    )


# ============================================================================
# create / approve
# ============================================================================


class TestCreateAndApprove:
    """Test loan creation and approval."""

    @pytest.mark.asyncio
    async def test_create_loan_is_proposed(
        self, service: LoanLifecycleService, store: FakeLoanStorePort
    ) -> None:
        loan = await service.create_loan(_draft())

        assert loan.state == LoanState.PROPOSED
        assert loan.principal == Decimal("1000.00")
        assert loan.id in store.loans
        assert store.committed_transactions == 1

    @pytest.mark.asyncio
    async def test_approve_sets_state_and_record(
        self, service: LoanLifecycleService, store: FakeLoanStorePort
    ) -> None:
        loan = await _approved_loan(service)

        assert loan.state == LoanState.APPROVED
        assert loan.approval is not None
        assert loan.approval.employee_id == "emp-1"
        assert store.loans[loan.id].state == LoanState.APPROVED
        # The mutating load asks for a row lock
        assert (loan.id, True) in store.get_loan_calls

    @pytest.mark.asyncio
    async def test_approve_twice_rejected(self, service: LoanLifecycleService) -> None:
        loan = await _approved_loan(service)

        with pytest.raises(AlreadyApprovedError):
            await service.approve_loan(
                loan.id, "https://img.example.com/2.jpg", "emp-2", date(2024, 1, 11)
            )

        reloaded = await service.get_loan(loan.id)
        assert reloaded.approval is not None
        assert reloaded.approval.employee_id == "emp-1"

    @pytest.mark.asyncio
    async def test_approve_unknown_loan_not_found(self, service: LoanLifecycleService) -> None:
        with pytest.raises(NotFoundError):
            await service.approve_loan(
                "missing", "https://img.example.com/1.jpg", "emp-1", date(2024, 1, 10)
            )

    @pytest.mark.asyncio
    async def test_concurrent_approvals_one_wins(
        self, service: LoanLifecycleService, store: FakeLoanStorePort
    ) -> None:
        loan = await service.create_loan(_draft())

        results = await asyncio.gather(
            *(
                service.approve_loan(
                    loan.id, f"https://img.example.com/{i}.jpg", f"emp-{i}", date(2024, 1, 10)
                )
                for i in range(5)
            ),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, Loan)]
        failures = [r for r in results if isinstance(r, AlreadyApprovedError)]
        assert len(successes) == 1
        assert len(failures) == 4
        assert loan.id in store.approvals


# ============================================================================
# invest
# ============================================================================


class TestInvest:
    """Test the investment ledger through the service."""

    @pytest.mark.asyncio
    async def test_partial_then_exact_funding(
        self,
        service: LoanLifecycleService,
        notification: FakeNotificationPort,
    ) -> None:
        loan = await _approved_loan(service)

        after_first = await service.invest_in_loan(
            loan.id, InvestorContact(name="Ann", email="ann@example.com"), "400"
        )
        assert after_first.state == LoanState.APPROVED
        assert after_first.total_invested == Decimal("400.00")

        after_second = await service.invest_in_loan(
            loan.id, InvestorContact(name="Bo", email="bo@example.com"), "600"
        )
        assert after_second.state == LoanState.INVESTED
        assert after_second.total_invested == Decimal("1000.00")

        await service.drain_notifications()
        assert notification.notified_loan_ids() == [loan.id]

    @pytest.mark.asyncio
    async def test_over_funding_rejected_without_mutation(
        self, service: LoanLifecycleService, store: FakeLoanStorePort
    ) -> None:
        loan = await _approved_loan(service)
        await service.invest_in_loan(loan.id, InvestorContact(email="ann@example.com"), "400")

        with pytest.raises(OverFundingError):
            await service.invest_in_loan(loan.id, InvestorContact(email="bo@example.com"), "700")

        reloaded = await service.get_loan(loan.id)
        assert reloaded.state == LoanState.APPROVED
        assert reloaded.total_invested == Decimal("400.00")
        # The rejected contributor's investor row was rolled back too
        assert {i.email for i in store.investors.values()} == {"ann@example.com"}

    @pytest.mark.asyncio
    async def test_invest_after_funding_rejected(self, service: LoanLifecycleService) -> None:
        loan = await _funded_loan(service)

        with pytest.raises(AlreadyFundedError):
            await service.invest_in_loan(loan.id, InvestorContact(email="late@example.com"), "1")

    @pytest.mark.asyncio
    async def test_invest_in_proposed_loan_rejected(self, service: LoanLifecycleService) -> None:
        loan = await service.create_loan(_draft())

        with pytest.raises(InvalidStateError):
            await service.invest_in_loan(loan.id, InvestorContact(name="Ann"), "10")

    @pytest.mark.asyncio
    async def test_invalid_amount_touches_no_storage(
        self, service: LoanLifecycleService, store: FakeLoanStorePort
    ) -> None:
        loan = await _approved_loan(service)
        store.get_loan_calls.clear()
        committed = store.committed_transactions

        for amount in (0, "-5", "0.001"):
            with pytest.raises(InvalidAmountError):
                await service.invest_in_loan(loan.id, InvestorContact(name="Ann"), amount)

        assert store.get_loan_calls == []
        assert store.committed_transactions == committed
        assert store.rolled_back_transactions == 0

    @pytest.mark.asyncio
    async def test_invalid_amount_on_unknown_loan_is_still_invalid_amount(
        self, service: LoanLifecycleService
    ) -> None:
        with pytest.raises(InvalidAmountError):
            await service.invest_in_loan("missing", InvestorContact(name="Ann"), 0)

    @pytest.mark.asyncio
    async def test_unknown_existing_investor_not_found(
        self, service: LoanLifecycleService
    ) -> None:
        loan = await _approved_loan(service)

        with pytest.raises(NotFoundError) as exc_info:
            await service.invest_in_loan(loan.id, ExistingInvestor("nobody"), "10")

        assert exc_info.value.entity == "investor"

    @pytest.mark.asyncio
    async def test_repeat_email_reuses_investor(
        self, service: LoanLifecycleService, store: FakeLoanStorePort
    ) -> None:
        loan = await _approved_loan(service)

        await service.invest_in_loan(loan.id, InvestorContact(email="ann@example.com"), "100")
        updated = await service.invest_in_loan(
            loan.id, InvestorContact(email="Ann@Example.com"), "100"
        )

        assert len(store.investors) == 1
        assert len({inv.investor_id for inv in updated.investments}) == 1
        assert len(updated.investments) == 2

    @pytest.mark.asyncio
    async def test_concurrent_contributions_never_exceed_principal(
        self,
        service: LoanLifecycleService,
        store: FakeLoanStorePort,
        notification: FakeNotificationPort,
    ) -> None:
        """Ten racing 300.00 contributions against 1000.00: only three land."""
        loan = await _approved_loan(service)

        results = await asyncio.gather(
            *(
                service.invest_in_loan(
                    loan.id, InvestorContact(email=f"inv{i}@example.com"), "300.00"
                )
                for i in range(10)
            ),
            return_exceptions=True,
        )

        accepted = [r for r in results if isinstance(r, Loan)]
        rejected = [r for r in results if isinstance(r, OverFundingError)]
        assert len(accepted) == 3
        assert len(rejected) == 7

        total = sum((inv.amount for inv in store.investments_for(loan.id)), Decimal("0"))
        assert total == Decimal("900.00")
        assert total <= loan.principal
        await service.drain_notifications()
        assert notification.funded == []

    @pytest.mark.asyncio
    async def test_concurrent_exact_funding_promotes_once(
        self,
        service: LoanLifecycleService,
        store: FakeLoanStorePort,
        notification: FakeNotificationPort,
    ) -> None:
        loan = await _approved_loan(service)

        results = await asyncio.gather(
            *(
                service.invest_in_loan(
                    loan.id, InvestorContact(email=f"inv{i}@example.com"), "250.00"
                )
                for i in range(6)
            ),
            return_exceptions=True,
        )

        assert sum(isinstance(r, Loan) for r in results) == 4
        assert sum(isinstance(r, AlreadyFundedError) for r in results) == 2
        assert store.loans[loan.id].state == LoanState.INVESTED

        await service.drain_notifications()
        assert notification.notified_loan_ids() == [loan.id]


# ============================================================================
# disburse
# ============================================================================


class TestDisburse:
    """Test disbursement of funded loans."""

    @pytest.mark.asyncio
    async def test_disburse_funded_loan(self, service: LoanLifecycleService) -> None:
        loan = await _funded_loan(service)

        disbursed = await service.disburse_loan(
            loan.id, "https://docs.example.com/signed.pdf", "emp-9", date(2024, 2, 1)
        )

        assert disbursed.state == LoanState.DISBURSED
        assert disbursed.disbursement is not None
        assert disbursed.disbursement.disbursement_date == date(2024, 2, 1)

    @pytest.mark.asyncio
    async def test_disburse_approved_loan_rejected(
        self, service: LoanLifecycleService, store: FakeLoanStorePort
    ) -> None:
        loan = await _approved_loan(service)

        with pytest.raises(InvalidStateError) as exc_info:
            await service.disburse_loan(
                loan.id, "https://docs.example.com/signed.pdf", "emp-9", date(2024, 2, 1)
            )

        assert not isinstance(exc_info.value, AlreadyDisbursedError)
        assert store.loans[loan.id].state == LoanState.APPROVED
        assert loan.id not in store.disbursements

    @pytest.mark.asyncio
    async def test_disburse_twice_rejected(self, service: LoanLifecycleService) -> None:
        loan = await _funded_loan(service)
        await service.disburse_loan(
            loan.id, "https://docs.example.com/signed.pdf", "emp-9", date(2024, 2, 1)
        )

        with pytest.raises(AlreadyDisbursedError):
            await service.disburse_loan(
                loan.id, "https://docs.example.com/again.pdf", "emp-9", date(2024, 2, 2)
            )


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    """Test get_loan and list_loans."""

    @pytest.mark.asyncio
    async def test_get_missing_loan_not_found(self, service: LoanLifecycleService) -> None:
        with pytest.raises(NotFoundError):
            await service.get_loan("missing")

    @pytest.mark.asyncio
    async def test_list_returns_children(self, service: LoanLifecycleService) -> None:
        await service.create_loan(_draft())
        funded = await _funded_loan(service)

        loans = await service.list_loans()

        assert len(loans) == 2
        listed = next(loan for loan in loans if loan.id == funded.id)
        assert listed.approval is not None
        assert len(listed.investments) == 1


# ============================================================================
# Failures, deadlines and notifications
# ============================================================================


class TestAtomicity:
    """Test rollback on storage failure and deadline expiry."""

    @pytest.mark.asyncio
    async def test_storage_failure_rolls_back_investment(
        self, service: LoanLifecycleService, store: FakeLoanStorePort
    ) -> None:
        loan = await _approved_loan(service)
        store.fail_on.add("update_loan")

        with pytest.raises(PersistenceError):
            await service.invest_in_loan(loan.id, InvestorContact(email="a@example.com"), "1000")

        assert store.investments_for(loan.id) == []
        assert store.loans[loan.id].state == LoanState.APPROVED
        assert store.rolled_back_transactions == 1

    @pytest.mark.asyncio
    async def test_deadline_rolls_back_funding(
        self,
        service: LoanLifecycleService,
        store: FakeLoanStorePort,
        notification: FakeNotificationPort,
    ) -> None:
        """Deadline expiring mid-promotion leaves nothing behind."""
        loan = await _approved_loan(service)
        store.delays["update_loan"] = 1.0

        with pytest.raises(OperationTimeoutError) as exc_info:
            await service.invest_in_loan(
                loan.id, InvestorContact(email="a@example.com"), "1000", timeout=0.05
            )

        assert exc_info.value.operation == "invest"
        assert exc_info.value.loan_id == loan.id
        assert store.investments_for(loan.id) == []
        assert store.investors == {}
        assert store.loans[loan.id].state == LoanState.APPROVED

        await service.drain_notifications()
        assert notification.funded == []

    @pytest.mark.asyncio
    async def test_default_timeout_applies(
        self, store: FakeLoanStorePort, notification: FakeNotificationPort
    ) -> None:
        service = LoanLifecycleService(store=store, notification=notification, default_timeout=0.05)
        store.delays["create_loan"] = 1.0

        with pytest.raises(OperationTimeoutError):
            await service.create_loan(_draft())

        assert store.loans == {}

    @pytest.mark.asyncio
    async def test_deadline_during_commit_reports_committed_write(
        self,
        service: LoanLifecycleService,
        store: FakeLoanStorePort,
        notification: FakeNotificationPort,
    ) -> None:
        """A commit already under way finishes and the caller sees success."""
        loan = await _approved_loan(service)
        store.delays["commit"] = 0.2

        funded = await service.invest_in_loan(
            loan.id, InvestorContact(email="a@example.com"), "1000", timeout=0.05
        )

        assert funded.state == LoanState.INVESTED
        assert len(store.investments_for(loan.id)) == 1
        assert store.loans[loan.id].state == LoanState.INVESTED
        assert store.rolled_back_transactions == 0

        await service.drain_notifications()
        assert notification.notified_loan_ids() == [loan.id]

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back(
        self, service: LoanLifecycleService, store: FakeLoanStorePort
    ) -> None:
        loan = await _approved_loan(service)
        store.fail_on.add("commit")

        with pytest.raises(PersistenceError):
            await service.invest_in_loan(loan.id, InvestorContact(email="a@example.com"), "400")

        assert store.investments_for(loan.id) == []
        assert store.rolled_back_transactions == 1

    @pytest.mark.asyncio
    async def test_timeout_error_is_builtin_timeout(self, service: LoanLifecycleService) -> None:
        service.store.delays["list_loans"] = 1.0  # type: ignore[attr-defined]

        with pytest.raises(TimeoutError):
            await service.list_loans(timeout=0.01)


class TestNotifications:
    """Test funding notification dispatch."""

    @pytest.mark.asyncio
    async def test_notification_lists_distinct_investors(
        self, service: LoanLifecycleService, notification: FakeNotificationPort
    ) -> None:
        loan = await _approved_loan(service)
        await service.invest_in_loan(loan.id, InvestorContact(email="ann@example.com"), "300")
        await service.invest_in_loan(loan.id, InvestorContact(email="bo@example.com"), "300")
        await service.invest_in_loan(loan.id, InvestorContact(email="ann@example.com"), "400")

        await service.drain_notifications()

        last = notification.get_last_notification()
        assert last is not None
        notified_loan, investors = last
        assert notified_loan.state == LoanState.INVESTED
        assert len(notified_loan.investments) == 3
        assert sorted(i.email for i in investors) == ["ann@example.com", "bo@example.com"]

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_funding(
        self,
        service: LoanLifecycleService,
        store: FakeLoanStorePort,
        notification: FakeNotificationPort,
    ) -> None:
        notification.set_should_fail(True, "smtp down")

        loan = await _funded_loan(service)
        await service.drain_notifications()

        assert loan.state == LoanState.INVESTED
        assert store.loans[loan.id].state == LoanState.INVESTED
        assert notification.notify_call_count == 1
        assert notification.funded == []

    @pytest.mark.asyncio
    async def test_invest_returns_before_slow_notification(
        self, service: LoanLifecycleService, notification: FakeNotificationPort
    ) -> None:
        notification.delay_seconds = 0.2
        loan = await _approved_loan(service)

        async with asyncio.timeout(0.1):
            funded = await service.invest_in_loan(
                loan.id, InvestorContact(email="a@example.com"), "1000"
            )

        assert funded.state == LoanState.INVESTED
        assert notification.funded == []
        await service.close()
        assert notification.notified_loan_ids() == [loan.id]


# ============================================================================
# End-to-end scenario
# ============================================================================


@pytest.mark.asyncio
async def test_five_million_loan_lifecycle(
    service: LoanLifecycleService, notification: FakeNotificationPort
) -> None:
    """Propose, approve, fund with three investors, then disburse."""
    loan = await service.create_loan(_draft("5000000"))
    await service.approve_loan(
        loan.id, "https://img.example.com/visit.jpg", "field-7", date(2024, 3, 1)
    )

    await service.invest_in_loan(loan.id, InvestorContact("A", "a@example.com"), "2000000")
    await service.invest_in_loan(loan.id, InvestorContact("B", "b@example.com"), "1500000")

    with pytest.raises(OverFundingError):
        await service.invest_in_loan(loan.id, InvestorContact("C", "c@example.com"), "2000000")

    funded = await service.invest_in_loan(
        loan.id, InvestorContact("C", "c@example.com"), "1500000"
    )
    assert funded.state == LoanState.INVESTED
    assert funded.total_invested == Decimal("5000000.00")

    disbursed = await service.disburse_loan(
        loan.id, "https://docs.example.com/signed.pdf", "officer-2", date(2024, 3, 15)
    )
    assert disbursed.state == LoanState.DISBURSED

    await service.close()
    assert notification.notified_loan_ids() == [loan.id]
    _, investors = notification.funded[0]
    assert len(investors) == 3


@pytest.mark.asyncio
async def test_two_equal_contributions_fund_loan(
    service: LoanLifecycleService, store: FakeLoanStorePort
) -> None:
    loan = await service.create_loan(_draft("5000000"))
    await service.approve_loan(
        loan.id, "https://img.example.com/visit.jpg", "field-7", date(2024, 3, 1)
    )

    await service.invest_in_loan(loan.id, InvestorContact("A", "a@example.com"), "2500000")
    invested = await service.invest_in_loan(
        loan.id, InvestorContact("B", "b@example.com"), "2500000"
    )

    assert invested.state == LoanState.INVESTED
    assert len(invested.investments) == 2
    assert invested.approval is not None
    assert invested.disbursement is None

    disbursed = await service.disburse_loan(
        loan.id, "https://docs.example.com/signed.pdf", "officer-2", date(2024, 3, 15)
    )
    stored = await store.get_loan_by_id(loan.id)

    assert disbursed.state == LoanState.DISBURSED
    assert stored is not None
    assert stored.disbursement is not None
    await service.close()
