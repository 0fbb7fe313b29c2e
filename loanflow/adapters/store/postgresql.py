"""PostgreSQL loan store adapter.

Implements LoanStorePort using PostgreSQL with asyncpg for async access.
Provides ACID guarantees for the loan lifecycle with row-level locking so
several service processes can share one database.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from decimal import Decimal
from typing import Any

import asyncpg

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
_APPROVAL_COLUMNS = "id, loan_id, picture_url, employee_id, approval_date, created_at"
_INVESTMENT_COLUMNS = "id, loan_id, investor_id, amount, created_at"
_DISBURSEMENT_COLUMNS = (
    "id, loan_id, agreement_url, employee_id, disbursement_date, created_at"
)
_INVESTOR_COLUMNS = "id, name, email, created_at"


class PostgreSQLLoanStore(LoanStorePort):
    """PostgreSQL-backed loan store with connection pooling and async access."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "loanflow",
        user: str = "loanflow",
        password: str = "",
        pool_size: int = 10,
    ):
        """Initialize PostgreSQL store with connection pooling.

        Args:
            host: PostgreSQL server hostname.
            port: PostgreSQL server port.
            database: Database name.
            user: Database user.
            password: Database password.
            pool_size: Number of connections to maintain in the pool.
        """
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self._pool: asyncpg.Pool | None = None
        self._pool_size = pool_size
        self._pool_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()
        self._schema_initialized = False
        self._tx_conn: ContextVar[asyncpg.Connection | None] = ContextVar(
            f"postgresql_tx_conn_{id(self)}", default=None
        )

    async def _init_pool(self) -> None:
        """Initialize the connection pool on first use."""
        if self._pool is not None:
            return

        async with self._pool_lock:
            if self._pool is not None:
                return
            with self._translate_errors("pool"):
                self._pool = await asyncpg.create_pool(
                    host=self.host,
                    port=self.port,
                    database=self.database,
                    user=self.user,
                    password=self.password,
                    min_size=1,
                    max_size=self._pool_size,
                )

    async def close_pool(self) -> None:
        """Close all pooled connections."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def close(self) -> None:
        await self.close_pool()

    async def _init_schema(self) -> None:
        """Initialize database schema on first use.

        Only runs once per instance. Subsequent calls are no-ops.
        Uses dedicated _schema_lock to avoid contention with pool operations.
        """
        # Check first without lock to avoid unnecessary locking
        if self._schema_initialized:
            return

        async with self._schema_lock:
            # Check again after acquiring lock to prevent race
            if self._schema_initialized:
                return

            await self._init_pool()
            assert self._pool is not None

            with self._translate_errors("schema"):
                async with self._pool.acquire() as conn:
                    await conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS loans (
                            id TEXT PRIMARY KEY,
                            borrower_id TEXT NOT NULL,
                            principal NUMERIC(14, 2) NOT NULL CHECK (principal > 0),
                            rate NUMERIC(7, 4) NOT NULL,
                            roi NUMERIC(7, 4) NOT NULL,
                            agreement_letter_url TEXT,
                            state TEXT NOT NULL DEFAULT 'proposed',
                            created_at TIMESTAMPTZ NOT NULL,
                            updated_at TIMESTAMPTZ NOT NULL
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
                            created_at TIMESTAMPTZ NOT NULL
                        )
                        """
                    )
                    await conn.execute(
                        """
                        CREATE TABLE IF NOT EXISTS investors (
                            id TEXT PRIMARY KEY,
                            name TEXT,
                            email TEXT UNIQUE,
                            created_at TIMESTAMPTZ NOT NULL
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
                            amount NUMERIC(14, 2) NOT NULL CHECK (amount > 0),
                            created_at TIMESTAMPTZ NOT NULL
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
                            created_at TIMESTAMPTZ NOT NULL
                        )
                        """
                    )

                    # Create indexes
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

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run the block inside one PostgreSQL transaction.

        Nested calls on the same task join the outer transaction. A COMMIT
        that has been sent runs to completion; a cancellation arriving
        meanwhile is absorbed when the commit lands. A cancelled BEGIN
        needs no cleanup here: the pool resets the connection on release.
        """
        if self._tx_conn.get() is not None:
            yield
            return

        await self._init_schema()
        assert self._pool is not None

        with self._translate_errors("transaction"):
            async with self._pool.acquire() as conn:
                tx = conn.transaction()
                await tx.start()
                token = self._tx_conn.set(conn)
                try:
                    try:
                        yield
                    except BaseException:
                        await tx.rollback()
                        raise
                    await self._commit(tx)
                finally:
                    self._tx_conn.reset(token)

    @staticmethod
    async def _commit(tx: Any) -> None:
        commit = asyncio.ensure_future(tx.commit())
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            await asyncio.wait([commit])
            if commit.exception() is not None:
                raise
            logger.warning("Cancellation arrived during COMMIT; the commit completed")

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield the task's transaction connection, or a pooled one."""
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return

        await self._init_schema()
        assert self._pool is not None
        async with self._pool.acquire() as conn:
            yield conn

    @contextmanager
    def _translate_errors(self, entity: str) -> Iterator[None]:
        """Turn driver and transport errors into PersistenceError subclasses."""
        try:
            yield
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRecordError(entity, str(e)) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"PostgreSQL error on {entity}: {e}", exc_info=True)
            raise PersistenceError(f"PostgreSQL error on {entity}: {e}") from e

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    async def create_loan(self, loan: Loan) -> None:
        """Insert a new loan row."""
        with self._translate_errors("loan"):
            async with self._connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO loans ({_LOAN_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    loan.id,
                    loan.borrower_id,
                    loan.principal,
                    loan.rate,
                    loan.roi,
                    loan.agreement_letter_url,
                    loan.state.value,
                    loan.created_at,
                    loan.updated_at,
                )

    async def get_loan_by_id(self, loan_id: str, for_update: bool = False) -> Loan | None:
        """Look up a loan with its children, row-locking it when asked."""
        query = f"SELECT {_LOAN_COLUMNS} FROM loans WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"

        with self._translate_errors("loan"):
            async with self._connection() as conn:
                row = await conn.fetchrow(query, loan_id)
                if row is None:
                    return None
                approval_row = await conn.fetchrow(
                    f"SELECT {_APPROVAL_COLUMNS} FROM approvals WHERE loan_id = $1",
                    loan_id,
                )
                investment_rows = await conn.fetch(
                    f"SELECT {_INVESTMENT_COLUMNS} FROM investments "
                    "WHERE loan_id = $1 ORDER BY created_at, id",
                    loan_id,
                )
                disbursement_row = await conn.fetchrow(
                    f"SELECT {_DISBURSEMENT_COLUMNS} FROM disbursements WHERE loan_id = $1",
                    loan_id,
                )

        loan = self._row_to_loan(row)
        if approval_row is not None:
            loan.approval = self._row_to_approval(approval_row)
        loan.investments = [self._row_to_investment(r) for r in investment_rows]
        if disbursement_row is not None:
            loan.disbursement = self._row_to_disbursement(disbursement_row)
        return loan

    async def update_loan(self, loan: Loan) -> None:
        """Persist the mutable columns of an existing loan."""
        with self._translate_errors("loan"):
            async with self._connection() as conn:
                status = await conn.execute(
                    """
                    UPDATE loans
                    SET state = $1, updated_at = $2, agreement_letter_url = $3
                    WHERE id = $4
                    """,
                    loan.state.value,
                    loan.updated_at,
                    loan.agreement_letter_url,
                    loan.id,
                )
        if status == "UPDATE 0":
            raise PersistenceError(f"Cannot update missing loan {loan.id}")

    async def list_loans(self) -> list[Loan]:
        """Return all loans, oldest first, with children populated."""
        with self._translate_errors("loan"):
            async with self._connection() as conn:
                loan_rows = await conn.fetch(
                    f"SELECT {_LOAN_COLUMNS} FROM loans ORDER BY created_at, id"
                )
                approval_rows = await conn.fetch(
                    f"SELECT {_APPROVAL_COLUMNS} FROM approvals"
                )
                investment_rows = await conn.fetch(
                    f"SELECT {_INVESTMENT_COLUMNS} FROM investments ORDER BY created_at, id"
                )
                disbursement_rows = await conn.fetch(
                    f"SELECT {_DISBURSEMENT_COLUMNS} FROM disbursements"
                )

        loans = [self._row_to_loan(row) for row in loan_rows]
        by_id = {loan.id: loan for loan in loans}
        for row in approval_rows:
            if row["loan_id"] in by_id:
                by_id[row["loan_id"]].approval = self._row_to_approval(row)
        for row in investment_rows:
            if row["loan_id"] in by_id:
                by_id[row["loan_id"]].investments.append(self._row_to_investment(row))
        for row in disbursement_rows:
            if row["loan_id"] in by_id:
                by_id[row["loan_id"]].disbursement = self._row_to_disbursement(row)
        return loans

    # ------------------------------------------------------------------
    # Children
    # ------------------------------------------------------------------

    async def create_approval(self, approval: Approval) -> None:
        with self._translate_errors("approval"):
            async with self._connection() as conn:
                await conn.execute(
                    f"INSERT INTO approvals ({_APPROVAL_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6)",
                    approval.id,
                    approval.loan_id,
                    approval.picture_url,
                    approval.employee_id,
                    approval.approval_date,
                    approval.created_at,
                )

    async def create_investment(self, investment: Investment) -> None:
        with self._translate_errors("investment"):
            async with self._connection() as conn:
                await conn.execute(
                    f"INSERT INTO investments ({_INVESTMENT_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5)",
                    investment.id,
                    investment.loan_id,
                    investment.investor_id,
                    investment.amount,
                    investment.created_at,
                )

    async def create_disbursement(self, disbursement: Disbursement) -> None:
        with self._translate_errors("disbursement"):
            async with self._connection() as conn:
                await conn.execute(
                    f"INSERT INTO disbursements ({_DISBURSEMENT_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6)",
                    disbursement.id,
                    disbursement.loan_id,
                    disbursement.agreement_url,
                    disbursement.employee_id,
                    disbursement.disbursement_date,
                    disbursement.created_at,
                )

    # ------------------------------------------------------------------
    # Investors
    # ------------------------------------------------------------------

    async def create_investor(self, investor: Investor) -> None:
        with self._translate_errors("investor"):
            async with self._connection() as conn:
                await conn.execute(
                    f"INSERT INTO investors ({_INVESTOR_COLUMNS}) VALUES ($1, $2, $3, $4)",
                    investor.id,
                    investor.name,
                    investor.email,
                    investor.created_at,
                )

    async def get_investor_by_id(self, investor_id: str) -> Investor | None:
        with self._translate_errors("investor"):
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_INVESTOR_COLUMNS} FROM investors WHERE id = $1",
                    investor_id,
                )
        return self._row_to_investor(row) if row is not None else None

    async def find_investor_by_email(self, email: str) -> Investor | None:
        with self._translate_errors("investor"):
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_INVESTOR_COLUMNS} FROM investors WHERE email = $1",
                    email,
                )
        return self._row_to_investor(row) if row is not None else None

    async def get_or_create_investor(self, candidate: Investor) -> Investor:
        """Insert the candidate unless its email is taken, then return the stored row.

        ON CONFLICT DO NOTHING waits out a concurrent insert of the same
        email instead of failing, so the transaction stays usable.
        """
        if candidate.email is None:
            await self.create_investor(candidate)
            return candidate

        with self._translate_errors("investor"):
            async with self._connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO investors ({_INVESTOR_COLUMNS})
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (email) DO NOTHING
                    """,
                    candidate.id,
                    candidate.name,
                    candidate.email,
                    candidate.created_at,
                )
                row = await conn.fetchrow(
                    f"SELECT {_INVESTOR_COLUMNS} FROM investors WHERE email = $1",
                    candidate.email,
                )
        if row is None:
            raise PersistenceError(f"Investor for {candidate.email} vanished after insert")
        return self._row_to_investor(row)

    async def get_total_invested(self, loan_id: str) -> Decimal:
        with self._translate_errors("investment"):
            async with self._connection() as conn:
                total = await conn.fetchval(
                    "SELECT COALESCE(SUM(amount), 0) FROM investments WHERE loan_id = $1",
                    loan_id,
                )
        return Decimal(total)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_loan(self, row: Any) -> Loan:
        """Convert a database row to a Loan object.

        Raises:
            ValueError: If row is malformed or contains invalid data.
        """
        try:
            if not row["id"]:
                raise ValueError("Missing required field: id")

            return Loan(
                id=row["id"],
                borrower_id=row["borrower_id"],
                principal=Decimal(row["principal"]),
                rate=Decimal(row["rate"]),
                roi=Decimal(row["roi"]),
                agreement_letter_url=row["agreement_letter_url"],
                state=LoanState(row["state"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
        except ValueError as e:
            logger.error(f"Failed to parse database row: {e}", exc_info=True)
            raise
        except Exception as e:
            logger.error(f"Unexpected error parsing database row: {e}", exc_info=True)
            raise ValueError(f"Row parsing failed: {e}") from e

    @staticmethod
    def _row_to_approval(row: Any) -> Approval:
        return Approval(
            id=row["id"],
            loan_id=row["loan_id"],
            picture_url=row["picture_url"],
            employee_id=row["employee_id"],
            approval_date=row["approval_date"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_investment(row: Any) -> Investment:
        return Investment(
            id=row["id"],
            loan_id=row["loan_id"],
            investor_id=row["investor_id"],
            amount=Decimal(row["amount"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_disbursement(row: Any) -> Disbursement:
        return Disbursement(
            id=row["id"],
            loan_id=row["loan_id"],
            agreement_url=row["agreement_url"],
            employee_id=row["employee_id"],
            disbursement_date=row["disbursement_date"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_investor(row: Any) -> Investor:
        return Investor(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            created_at=row["created_at"],
        )
