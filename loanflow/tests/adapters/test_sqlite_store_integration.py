"""Integration tests for the SQLite loan store."""

import asyncio
import tempfile
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from loanflow.adapters.store.sqlite import SQLiteLoanStore
from loanflow.core.errors import DuplicateRecordError, OperationTimeoutError, PersistenceError
from loanflow.core.lifecycle_service import LoanLifecycleService
from loanflow.core.models import (
    Approval,
    Disbursement,
    Investment,
    Investor,
    InvestorContact,
    Loan,
    LoanDraft,
    LoanState,
)
from loanflow.tests.fakes import FakeNotificationPort

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
async def temp_db() -> tuple[SQLiteLoanStore, Path]:
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        store = SQLiteLoanStore(str(db_path))
        await store._init_schema()
        yield store, db_path
        await store.close_pool()


def _loan(loan_id: str = "loan-1", principal: str = "1000.00") -> Loan:
    return Loan(
        id=loan_id,
        borrower_id="borrower-1",
        principal=Decimal(principal),
        rate=Decimal("0.12"),
        roi=Decimal("0.10"),
        agreement_letter_url="https://docs.example.com/letter.pdf",
        state=LoanState.PROPOSED,
        created_at=NOW,
        updated_at=NOW,
    )


def _approval(loan_id: str = "loan-1", approval_id: str = "approval-1") -> Approval:
    return Approval(
        id=approval_id,
        loan_id=loan_id,
        picture_url="https://img.example.com/a.jpg",
        employee_id="emp-1",
        approval_date=date(2024, 1, 2),
        created_at=NOW,
    )


# ============================================================================
# Basic CRUD
# ============================================================================


@pytest.mark.asyncio
async def test_create_and_get_loan_roundtrip(temp_db: tuple[SQLiteLoanStore, Path]) -> None:
    store, _ = temp_db
    loan = _loan()

    await store.create_loan(loan)
    loaded = await store.get_loan_by_id(loan.id)

    assert loaded is not None
    assert loaded.principal == Decimal("1000.00")
    assert loaded.rate == Decimal("0.12")
    assert loaded.state == LoanState.PROPOSED
    assert loaded.created_at == NOW
    assert loaded.approval is None
    assert loaded.investments == []


@pytest.mark.asyncio
async def test_missing_loan_returns_none(temp_db: tuple[SQLiteLoanStore, Path]) -> None:
    store, _ = temp_db

    assert await store.get_loan_by_id("nope") is None
    assert await store.get_investor_by_id("nope") is None
    assert await store.find_investor_by_email("nobody@example.com") is None


@pytest.mark.asyncio
async def test_children_are_preloaded(temp_db: tuple[SQLiteLoanStore, Path]) -> None:
    store, _ = temp_db
    await store.create_loan(_loan())
    await store.create_approval(_approval())
    investor = Investor(id="investor-1", created_at=NOW, name="Ann", email="ann@example.com")
    await store.create_investor(investor)
    for i, amount in enumerate(("400.00", "600.00")):
        await store.create_investment(
            Investment(
                id=f"inv-{i}",
                loan_id="loan-1",
                investor_id=investor.id,
                amount=Decimal(amount),
                created_at=NOW + timedelta(seconds=i),
            )
        )
    await store.create_disbursement(
        Disbursement(
            id="disb-1",
            loan_id="loan-1",
            agreement_url="https://docs.example.com/signed.pdf",
            employee_id="emp-2",
            disbursement_date=date(2024, 2, 1),
            created_at=NOW,
        )
    )

    loaded = await store.get_loan_by_id("loan-1")
    assert loaded is not None
    assert loaded.approval is not None
    assert loaded.approval.approval_date == date(2024, 1, 2)
    assert [inv.id for inv in loaded.investments] == ["inv-0", "inv-1"]
    assert loaded.total_invested == Decimal("1000.00")
    assert loaded.disbursement is not None

    listed = await store.list_loans()
    assert len(listed) == 1
    assert listed[0].total_invested == Decimal("1000.00")
    assert await store.get_total_invested("loan-1") == Decimal("1000.00")


@pytest.mark.asyncio
async def test_total_invested_is_zero_without_rows(
    temp_db: tuple[SQLiteLoanStore, Path],
) -> None:
    store, _ = temp_db
    await store.create_loan(_loan())

    assert await store.get_total_invested("loan-1") == Decimal("0")


@pytest.mark.asyncio
async def test_update_loan_persists_state(temp_db: tuple[SQLiteLoanStore, Path]) -> None:
    store, _ = temp_db
    loan = _loan()
    await store.create_loan(loan)

    loan.mark_approved(_approval())
    await store.update_loan(loan)

    loaded = await store.get_loan_by_id(loan.id)
    assert loaded is not None
    assert loaded.state == LoanState.APPROVED


@pytest.mark.asyncio
async def test_update_missing_loan_raises(temp_db: tuple[SQLiteLoanStore, Path]) -> None:
    store, _ = temp_db

    with pytest.raises(PersistenceError):
        await store.update_loan(_loan("ghost"))


# ============================================================================
# Uniqueness
# ============================================================================


@pytest.mark.asyncio
async def test_second_approval_is_duplicate(temp_db: tuple[SQLiteLoanStore, Path]) -> None:
    store, _ = temp_db
    await store.create_loan(_loan())
    await store.create_approval(_approval())

    with pytest.raises(DuplicateRecordError):
        await store.create_approval(_approval(approval_id="approval-2"))


@pytest.mark.asyncio
async def test_duplicate_investor_email_rejected(
    temp_db: tuple[SQLiteLoanStore, Path],
) -> None:
    store, _ = temp_db
    await store.create_investor(Investor(id="i-1", created_at=NOW, email="a@example.com"))

    with pytest.raises(DuplicateRecordError):
        await store.create_investor(Investor(id="i-2", created_at=NOW, email="a@example.com"))


@pytest.mark.asyncio
async def test_get_or_create_investor_returns_existing(
    temp_db: tuple[SQLiteLoanStore, Path],
) -> None:
    store, _ = temp_db
    first = await store.get_or_create_investor(
        Investor(id="i-1", created_at=NOW, name="Ann", email="a@example.com")
    )
    second = await store.get_or_create_investor(
        Investor(id="i-2", created_at=NOW, name="Other", email="a@example.com")
    )

    assert first.id == "i-1"
    assert second.id == "i-1"
    assert second.name == "Ann"


@pytest.mark.asyncio
async def test_investment_for_unknown_loan_fails(
    temp_db: tuple[SQLiteLoanStore, Path],
) -> None:
    store, _ = temp_db
    await store.create_investor(Investor(id="i-1", created_at=NOW))

    with pytest.raises(PersistenceError):
        await store.create_investment(
            Investment(
                id="inv-1",
                loan_id="missing",
                investor_id="i-1",
                amount=Decimal("1.00"),
                created_at=NOW,
            )
        )


# ============================================================================
# Transactions
# ============================================================================


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(
    temp_db: tuple[SQLiteLoanStore, Path],
) -> None:
    store, _ = temp_db

    with pytest.raises(RuntimeError):
        async with store.transaction():
            await store.create_loan(_loan())
            raise RuntimeError("abort")

    assert await store.get_loan_by_id("loan-1") is None


@pytest.mark.asyncio
async def test_transaction_commits(temp_db: tuple[SQLiteLoanStore, Path]) -> None:
    store, _ = temp_db

    async with store.transaction():
        await store.create_loan(_loan())
        # Nested block joins the outer unit of work
        async with store.transaction():
            await store.create_approval(_approval())

    loaded = await store.get_loan_by_id("loan-1")
    assert loaded is not None
    assert loaded.approval is not None


@pytest.mark.asyncio
async def test_cancelled_transaction_rolls_back(
    temp_db: tuple[SQLiteLoanStore, Path],
) -> None:
    store, _ = temp_db

    async def slow_write() -> None:
        async with store.transaction():
            await store.create_loan(_loan())
            await asyncio.sleep(10)

    with pytest.raises(TimeoutError):
        async with asyncio.timeout(0.1):
            await slow_write()

    assert await store.get_loan_by_id("loan-1") is None


@pytest.mark.asyncio
async def test_deadline_while_waiting_for_write_lock_keeps_store_usable(
    temp_db: tuple[SQLiteLoanStore, Path],
) -> None:
    """A writer that gives up on a busy database does not strand the lock."""
    store, _ = temp_db
    service = LoanLifecycleService(store=store, notification=FakeNotificationPort())
    first = await service.create_loan(
        LoanDraft(borrower_id="b-1", principal="1000", rate="0.1", roi="0.1")
    )
    second = await service.create_loan(
        LoanDraft(borrower_id="b-2", principal="1000", rate="0.1", roi="0.1")
    )
    holding = asyncio.Event()

    async def hold_write_lock() -> None:
        async with store.transaction():
            await store.get_loan_by_id(first.id, for_update=True)
            holding.set()
            await asyncio.sleep(0.5)

    holder = asyncio.create_task(hold_write_lock())
    await holding.wait()

    with pytest.raises(OperationTimeoutError):
        await service.approve_loan(
            second.id, "https://img.example.com/b.jpg", "emp-1", date(2024, 1, 2), timeout=0.1
        )
    await holder

    approved = await service.approve_loan(
        first.id, "https://img.example.com/a.jpg", "emp-1", date(2024, 1, 2), timeout=5
    )
    retried = await service.approve_loan(
        second.id, "https://img.example.com/b.jpg", "emp-1", date(2024, 1, 2), timeout=5
    )

    assert approved.state == LoanState.APPROVED
    assert retried.state == LoanState.APPROVED
    await service.close()


# ============================================================================
# Row parsing
# ============================================================================


@pytest.mark.asyncio
async def test_row_parsing_with_invalid_principal(
    temp_db: tuple[SQLiteLoanStore, Path],
) -> None:
    """Corrupt money columns surface as ValueError, not a bogus Decimal."""
    store, _ = temp_db

    conn = await store._get_connection()
    try:
        await conn.execute(
            """
            INSERT INTO loans
            (id, borrower_id, principal, rate, roi, state, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            ("bad-loan", "b", "lots", "0", "0", "proposed", NOW.isoformat(), NOW.isoformat()),
        )
    finally:
        await store._return_connection(conn)

    with pytest.raises(ValueError, match="Row parsing failed"):
        await store.get_loan_by_id("bad-loan")


# ============================================================================
# Service on SQLite
# ============================================================================


@pytest.mark.asyncio
async def test_concurrent_funding_on_sqlite(temp_db: tuple[SQLiteLoanStore, Path]) -> None:
    """The funding ceiling holds against a real database."""
    store, _ = temp_db
    notification = FakeNotificationPort()
    service = LoanLifecycleService(store=store, notification=notification)

    loan = await service.create_loan(
        LoanDraft(borrower_id="b-1", principal="1000", rate="0.1", roi="0.1")
    )
    await service.approve_loan(loan.id, "https://img.example.com/a.jpg", "emp-1", date(2024, 1, 2))

    results = await asyncio.gather(
        *(
            service.invest_in_loan(loan.id, InvestorContact(email=f"i{i}@example.com"), "250")
            for i in range(6)
        ),
        return_exceptions=True,
    )

    assert sum(isinstance(r, Loan) for r in results) == 4
    assert await store.get_total_invested(loan.id) == Decimal("1000.00")
    reloaded = await service.get_loan(loan.id)
    assert reloaded.state == LoanState.INVESTED

    await service.close()
    assert notification.notified_loan_ids() == [loan.id]
