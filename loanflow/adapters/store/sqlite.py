"""SQLite loan store adapter.

Implements LoanStorePort using SQLite with aiosqlite for async access.
Provides ACID guarantees for the loan lifecycle with zero operational
overhead.

Connections run in autocommit mode; ``transaction()`` opens an explicit
``BEGIN IMMEDIATE`` so a unit of work holds SQLite's write lock from its
first read. That serializes read-total-then-insert sequences across
processes sharing the database file, complementing the in-process
per-loan locks. Money is stored as TEXT and summed as Decimal in Python
so no value ever passes through a float.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import aiosqlite

from loanflow.core.errors import DuplicateRecordError, PersistenceError
from loanflow.core.models import (
    Approval,
    Disbursement,
    Investment,
    Investor,
    Loan,
    LoanState,
)
from loanflow.core.ports import LoanStorePort

logger = logging.getLogger(__name__)

_LOAN_COLUMNS = (
    "id, borrower_id, principal, rate, roi, agreement_letter_url, "
    "state, created_at, updated_at"
)


class SQLiteLoanStore(LoanStorePort):
    """SQLite-backed loan store with connection pooling and async access."""

    def __init__(self, db_path: str, pool_size: int = 5, busy_timeout: float = 5.0):
        """Initialize SQLite store with connection pooling.

        Args:
            db_path: Path to SQLite database file.
            pool_size: Number of connections to maintain in the pool.
            busy_timeout: Seconds a writer waits for another connection's
                write transaction before failing.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._pool_size = pool_size
        self._busy_timeout = busy_timeout
        self._schema_initialized = False
        self._closing: set[asyncio.Task[None]] = set()
        self._tx_conn: ContextVar[aiosqlite.Connection | None] = ContextVar(
            f"sqlite_tx_conn_{id(self)}", default=None
        )

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get a connection from the pool or create a new one."""
        async with self._pool_lock:
            if self._pool:
                return self._pool.pop()
        try:
            conn = await aiosqlite.connect(
                str(self.db_path),
                timeout=self._busy_timeout,
                isolation_level=None,
            )
            await conn.execute("PRAGMA foreign_keys = ON")
        except aiosqlite.Error as e:
            raise PersistenceError(f"Cannot open SQLite database {self.db_path}: {e}") from e
        return conn

    async def _return_connection(self, conn: aiosqlite.Connection) -> None:
        """Return a connection to the pool."""
        async with self._pool_lock:
            if len(self._pool) < self._pool_size:
                self._pool.append(conn)
                return
        await conn.close()

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            self._pool.clear()

    async def close(self) -> None:
        await self.close_pool()

    async def _init_schema(self) -> None:
        """Initialize database schema on first use.

        Only runs once per instance. Subsequent calls are no-ops.
        """
        if self._schema_initialized:
            return
        async with self._schema_lock:
            # Check again after acquiring lock to prevent race
            if self._schema_initialized:
                return

            conn = await self._get_connection()
            try:
                with self._translate_errors("schema"):
                    await conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS loans (
                            id TEXT PRIMARY KEY,
                            borrower_id TEXT NOT NULL,
                            principal TEXT NOT NULL,
                            rate TEXT NOT NULL,
                            roi TEXT NOT NULL,
                            agreement_letter_url TEXT,
                            state TEXT NOT NULL DEFAULT 'proposed',
                            created_at TIMESTAMP NOT NULL,
                            updated_at TIMESTAMP NOT NULL
                        )
                        """
                    )
                    await conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS approvals (
                            id TEXT PRIMARY KEY,
                            loan_id TEXT NOT NULL UNIQUE
                                REFERENCES loans(id) ON DELETE CASCADE,
                            picture_url TEXT NOT NULL,
                            employee_id TEXT NOT NULL,
                            approval_date DATE NOT NULL,
                            created_at TIMESTAMP NOT NULL
                        )
                        """
                    )
                    await conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS investors (
                            id TEXT PRIMARY KEY,
                            name TEXT,
                            email TEXT UNIQUE,
                            created_at TIMESTAMP NOT NULL
                        )
                        """
                    )
                    await conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS investments (
                            id TEXT PRIMARY KEY,
                            loan_id TEXT NOT NULL
                                REFERENCES loans(id) ON DELETE CASCADE,
                            investor_id TEXT NOT NULL
                                REFERENCES investors(id) ON DELETE CASCADE,
                            amount TEXT NOT NULL,
                            created_at TIMESTAMP NOT NULL
                        )
                        """
                    )
                    await conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS disbursements (
                            id TEXT PRIMARY KEY,
                            loan_id TEXT NOT NULL UNIQUE
                                REFERENCES loans(id) ON DELETE CASCADE,
                            agreement_url TEXT NOT NULL,
                            employee_id TEXT NOT NULL,
                            disbursement_date DATE NOT NULL,
                            created_at TIMESTAMP NOT NULL
                        )
                        """
                    )
                    # Index for common queries
                    await conn.execute(
                        "CREATE INDEX IF NOT EXISTS idx_loans_state ON loans(state)"
                    )
                    await conn.execute(
                        "CREATE INDEX IF NOT EXISTS idx_investments_loan ON investments(loan_id)"
                    )
                    await conn.execute(
                        "CREATE INDEX IF NOT EXISTS idx_investments_investor "
                        "ON investments(investor_id)"
                    )
                self._schema_initialized = True
            finally:
                await self._return_connection(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run the block as one write transaction.

        Nested calls on the same task join the outer transaction. The
        outermost block commits on clean exit and rolls back on any
        exception, cancellation included. Once COMMIT has started it runs
        to completion: a cancellation that arrives mid-commit is absorbed
        when the commit lands and re-raised when it fails.
        """
        if self._tx_conn.get() is not None:
            yield
            return

        await self._init_schema()
        conn = await self._get_connection()
        try:
            with self._translate_errors("transaction"):
                await conn.execute("BEGIN IMMEDIATE")
        except asyncio.CancelledError:
            # BEGIN may still be queued on the worker thread and could take
            # the write lock later; the connection must never be pooled again
            self._discard(conn)
            raise
        except BaseException:
            await self._return_connection(conn)
            raise

        token = self._tx_conn.set(conn)
        try:
            try:
                yield
            except BaseException:
                await self._rollback(conn)
                raise
            await self._commit(conn)
        finally:
            self._tx_conn.reset(token)

    async def _commit(self, conn: aiosqlite.Connection) -> None:
        commit = asyncio.ensure_future(conn.execute("COMMIT"))
        try:
            with self._translate_errors("transaction"):
                await asyncio.shield(commit)
        except asyncio.CancelledError:
            await asyncio.wait([commit])
            if commit.exception() is not None:
                await self._rollback(conn)
                raise
            logger.warning("Cancellation arrived during COMMIT; the commit completed")
        except BaseException:
            await self._rollback(conn)
            raise
        await self._return_connection(conn)

    def _discard(self, conn: aiosqlite.Connection) -> None:
        """Close a connection in the background without returning it to the pool."""
        task = asyncio.create_task(self._close_quietly(conn))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_quietly(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.close()
        except aiosqlite.Error as e:
            logger.warning(f"Error closing discarded SQLite connection: {e}")

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.execute("ROLLBACK")
        except aiosqlite.Error as e:
            # Connection state is unknown; drop it rather than pool it
            logger.warning(f"SQLite rollback failed, discarding connection: {e}")
            await conn.close()
            return
        await self._return_connection(conn)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the task's transaction connection, or a pooled autocommit one."""
        await self._init_schema()
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return

        conn = await self._get_connection()
        try:
            yield conn
        finally:
            await self._return_connection(conn)

    @contextmanager
    def _translate_errors(self, entity: str) -> Iterator[None]:
        """Turn driver errors into PersistenceError subclasses."""
        try:
            yield
        except aiosqlite.IntegrityError as e:
            if "UNIQUE" in str(e):
                raise DuplicateRecordError(entity, str(e)) from e
            raise PersistenceError(f"Integrity error on {entity}: {e}") from e
        except aiosqlite.Error as e:
            logger.error(f"SQLite error on {entity}: {e}", exc_info=True)
            raise PersistenceError(f"SQLite error on {entity}: {e}") from e

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    async def create_loan(self, loan: Loan) -> None:
        """Insert a new loan row."""
        async with self._connection() as conn:
            with self._translate_errors("loan"):
                await conn.execute(
                    f"INSERT INTO loans ({_LOAN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        loan.id,
                        loan.borrower_id,
                        str(loan.principal),
                        str(loan.rate),
                        str(loan.roi),
                        loan.agreement_letter_url,
                        loan.state.value,
                        loan.created_at.isoformat(),
                        loan.updated_at.isoformat(),
                    ),
                )

    async def get_loan_by_id(self, loan_id: str, for_update: bool = False) -> Loan | None:
        """Look up a loan with its children.

        ``for_update`` needs no extra SQL here: inside ``transaction()`` the
        connection already holds the database write lock.
        """
        async with self._connection() as conn:
            with self._translate_errors("loan"):
                cursor = await conn.execute(
                    f"SELECT {_LOAN_COLUMNS} FROM loans WHERE id = ?", (loan_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                loan = self._row_to_loan(row)

                cursor = await conn.execute(
                    "SELECT id, loan_id, picture_url, employee_id, approval_date, created_at "
                    "FROM approvals WHERE loan_id = ?",
                    (loan_id,),
                )
                approval_row = await cursor.fetchone()

                cursor = await conn.execute(
                    "SELECT id, loan_id, investor_id, amount, created_at "
                    "FROM investments WHERE loan_id = ? ORDER BY created_at, rowid",
                    (loan_id,),
                )
                investment_rows = await cursor.fetchall()

                cursor = await conn.execute(
                    "SELECT id, loan_id, agreement_url, employee_id, disbursement_date, "
                    "created_at FROM disbursements WHERE loan_id = ?",
                    (loan_id,),
                )
                disbursement_row = await cursor.fetchone()

        if approval_row is not None:
            loan.approval = self._row_to_approval(approval_row)
        loan.investments = [self._row_to_investment(r) for r in investment_rows]
        if disbursement_row is not None:
            loan.disbursement = self._row_to_disbursement(disbursement_row)
        return loan

    async def update_loan(self, loan: Loan) -> None:
        """Persist the mutable columns of an existing loan."""
        async with self._connection() as conn:
            with self._translate_errors("loan"):
                cursor = await conn.execute(
                    """
                    UPDATE loans
                    SET state = ?, updated_at = ?, agreement_letter_url = ?
                    WHERE id = ?
                    """,
                    (
                        loan.state.value,
                        loan.updated_at.isoformat(),
                        loan.agreement_letter_url,
                        loan.id,
                    ),
                )
            if cursor.rowcount == 0:
                raise PersistenceError(f"Cannot update missing loan {loan.id}")

    async def list_loans(self) -> list[Loan]:
        """Return all loans, oldest first, with children populated."""
        async with self._connection() as conn:
            with self._translate_errors("loan"):
                cursor = await conn.execute(
                    f"SELECT {_LOAN_COLUMNS} FROM loans ORDER BY created_at, id"
                )
                loan_rows = await cursor.fetchall()
                cursor = await conn.execute(
                    "SELECT id, loan_id, picture_url, employee_id, approval_date, created_at "
                    "FROM approvals"
                )
                approval_rows = await cursor.fetchall()
                cursor = await conn.execute(
                    "SELECT id, loan_id, investor_id, amount, created_at "
                    "FROM investments ORDER BY created_at, rowid"
                )
                investment_rows = await cursor.fetchall()
                cursor = await conn.execute(
                    "SELECT id, loan_id, agreement_url, employee_id, disbursement_date, "
                    "created_at FROM disbursements"
                )
                disbursement_rows = await cursor.fetchall()

        loans = [self._row_to_loan(row) for row in loan_rows]
        by_id = {loan.id: loan for loan in loans}
        for row in approval_rows:
            approval = self._row_to_approval(row)
            if approval.loan_id in by_id:
                by_id[approval.loan_id].approval = approval
        for row in investment_rows:
            investment = self._row_to_investment(row)
            if investment.loan_id in by_id:
                by_id[investment.loan_id].investments.append(investment)
        for row in disbursement_rows:
            disbursement = self._row_to_disbursement(row)
            if disbursement.loan_id in by_id:
                by_id[disbursement.loan_id].disbursement = disbursement
        return loans

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    async def create_approval(self, approval: Approval) -> None:
        """Insert the approval row; a second one for the loan is a duplicate."""
        async with self._connection() as conn:
            with self._translate_errors("approval"):
                await conn.execute(
                    """
                    INSERT INTO approvals
                    (id, loan_id, picture_url, employee_id, approval_date, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        approval.id,
                        approval.loan_id,
                        approval.picture_url,
                        approval.employee_id,
                        approval.approval_date.isoformat(),
                        approval.created_at.isoformat(),
                    ),
                )

    async def create_investment(self, investment: Investment) -> None:
        """Append an investment row."""
        async with self._connection() as conn:
            with self._translate_errors("investment"):
                await conn.execute(
                    """
                    INSERT INTO investments (id, loan_id, investor_id, amount, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        investment.id,
                        investment.loan_id,
                        investment.investor_id,
                        str(investment.amount),
                        investment.created_at.isoformat(),
                    ),
                )

    async def create_disbursement(self, disbursement: Disbursement) -> None:
        """Insert the disbursement row; a second one for the loan is a duplicate."""
        async with self._connection() as conn:
            with self._translate_errors("disbursement"):
                await conn.execute(
                    """
                    INSERT INTO disbursements
                    (id, loan_id, agreement_url, employee_id, disbursement_date, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        disbursement.id,
                        disbursement.loan_id,
                        disbursement.agreement_url,
                        disbursement.employee_id,
                        disbursement.disbursement_date.isoformat(),
                        disbursement.created_at.isoformat(),
                    ),
                )

    # ------------------------------------------------------------------
    # Investors
    # ------------------------------------------------------------------

    async def create_investor(self, investor: Investor) -> None:
        async with self._connection() as conn:
            with self._translate_errors("investor"):
                await conn.execute(
                    "INSERT INTO investors (id, name, email, created_at) VALUES (?, ?, ?, ?)",
                    (
                        investor.id,
                        investor.name,
                        investor.email,
                        investor.created_at.isoformat(),
                    ),
                )

    async def get_investor_by_id(self, investor_id: str) -> Investor | None:
        async with self._connection() as conn:
            with self._translate_errors("investor"):
                cursor = await conn.execute(
                    "SELECT id, name, email, created_at FROM investors WHERE id = ?",
                    (investor_id,),
                )
                row = await cursor.fetchone()
        return self._row_to_investor(row) if row is not None else None

    async def find_investor_by_email(self, email: str) -> Investor | None:
        async with self._connection() as conn:
            with self._translate_errors("investor"):
                cursor = await conn.execute(
                    "SELECT id, name, email, created_at FROM investors WHERE email = ?",
                    (email,),
                )
                row = await cursor.fetchone()
        return self._row_to_investor(row) if row is not None else None

    async def get_or_create_investor(self, candidate: Investor) -> Investor:
        """Insert the candidate unless its email is taken, then return the stored row."""
        if candidate.email is None:
            await self.create_investor(candidate)
            return candidate

        async with self._connection() as conn:
            with self._translate_errors("investor"):
                await conn.execute(
                    """
                    INSERT OR IGNORE INTO investors (id, name, email, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        candidate.id,
                        candidate.name,
                        candidate.email,
                        candidate.created_at.isoformat(),
                    ),
                )
                cursor = await conn.execute(
                    "SELECT id, name, email, created_at FROM investors WHERE email = ?",
                    (candidate.email,),
                )
                row = await cursor.fetchone()
        if row is None:
            raise PersistenceError(f"Investor for {candidate.email} vanished after insert")
        return self._row_to_investor(row)

    async def get_total_invested(self, loan_id: str) -> Decimal:
        """Sum the loan's investment rows exactly."""
        async with self._connection() as conn:
            with self._translate_errors("investment"):
                cursor = await conn.execute(
                    "SELECT amount FROM investments WHERE loan_id = ?", (loan_id,)
                )
                rows = await cursor.fetchall()
        return sum((Decimal(row[0]) for row in rows), Decimal("0"))

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_loan(self, row: tuple[Any, ...]) -> Loan:
        """Convert a database row to a Loan object.

        Raises:
            ValueError: If row is malformed or contains invalid data.
        """
        try:
            if not row or len(row) != 9:
                raise ValueError(f"Invalid row length: expected 9, got {len(row) if row else 0}")

            (
                loan_id,
                borrower_id,
                principal,
                rate,
                roi,
                agreement_letter_url,
                state,
                created_at,
                updated_at,
            ) = row

            if not loan_id:
                raise ValueError("Missing required field: id")

            return Loan(
                id=loan_id,
                borrower_id=borrower_id,
                principal=Decimal(principal),
                rate=Decimal(rate),
                roi=Decimal(roi),
                agreement_letter_url=agreement_letter_url,
                state=LoanState(state),
                created_at=datetime.fromisoformat(created_at),
                updated_at=datetime.fromisoformat(updated_at),
            )
        except ValueError as e:
            logger.error(f"Failed to parse loan row: {e}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error parsing loan row: {e}")
            raise ValueError(f"Row parsing failed: {e}") from e

    @staticmethod
    def _row_to_approval(row: tuple[Any, ...]) -> Approval:
        try:
            approval_id, loan_id, picture_url, employee_id, approval_date, created_at = row
            return Approval(
                id=approval_id,
                loan_id=loan_id,
                picture_url=picture_url,
                employee_id=employee_id,
                approval_date=date.fromisoformat(approval_date),
                created_at=datetime.fromisoformat(created_at),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Row parsing failed for approval: {e}") from e

    @staticmethod
    def _row_to_investment(row: tuple[Any, ...]) -> Investment:
        try:
            investment_id, loan_id, investor_id, amount, created_at = row
            return Investment(
                id=investment_id,
                loan_id=loan_id,
                investor_id=investor_id,
                amount=Decimal(amount),
                created_at=datetime.fromisoformat(created_at),
            )
        except (ArithmeticError, TypeError, ValueError) as e:
            raise ValueError(f"Row parsing failed for investment: {e}") from e

    @staticmethod
    def _row_to_disbursement(row: tuple[Any, ...]) -> Disbursement:
        try:
            (
                disbursement_id,
                loan_id,
                agreement_url,
                employee_id,
                disbursement_date,
                created_at,
            ) = row
            return Disbursement(
                id=disbursement_id,
                loan_id=loan_id,
                agreement_url=agreement_url,
                employee_id=employee_id,
                disbursement_date=date.fromisoformat(disbursement_date),
                created_at=datetime.fromisoformat(created_at),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Row parsing failed for disbursement: {e}") from e

    @staticmethod
    def _row_to_investor(row: tuple[Any, ...]) -> Investor:
        try:
            investor_id, name, email, created_at = row
            return Investor(
                id=investor_id,
                name=name,
                email=email,
                created_at=datetime.fromisoformat(created_at),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Row parsing failed for investor: {e}") from e
