"""Per-loan mutual exclusion for mutating operations.

Serializes read-modify-write units of work that target the same loan
while letting different loans proceed in parallel. Locks are created
on demand and discarded once no task holds or waits on them, so the
registry does not grow with the number of loans ever touched.

The registry is bound to a single event loop. Cross-process
serialization is the store's job (row locks or an immediate write
transaction).
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class LoanLockRegistry:
    """Hands out one asyncio.Lock per loan id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, loan_id: str) -> AsyncIterator[None]:
        """Hold the loan's lock for the duration of the block.

        Acquisition is cancellable, so a caller's deadline also bounds the
        time spent waiting here.
        """
        lock = self._locks.setdefault(loan_id, asyncio.Lock())
        self._users[loan_id] = self._users.get(loan_id, 0) + 1
        try:
            if lock.locked():
                logger.debug(
                    f"Waiting for lock on loan {loan_id}",
                    extra={"loan_id": loan_id, "waiters": self._users[loan_id] - 1},
                )
            async with lock:
                yield
        finally:
            self._users[loan_id] -= 1
            if self._users[loan_id] == 0:
                del self._users[loan_id]
                del self._locks[loan_id]

    def active_count(self) -> int:
        """Number of loans with a holder or waiter."""
        return len(self._locks)
