"""
Per-key serialization for engine mutations.

Two layers guard every contended record:
1. An in-process lock keyed by record (this module), so one worker never
   interleaves two admissions for the same item, auction or invoice.
2. A database guard (row lock or conditional UPDATE) in the caller, so
   separate workers stay correct as well.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession


class KeyedLock:
    """
    Registry of asyncio locks, one per key, dropped when no longer held.

    Usage:
        async with record_locks.hold(f"item:{item_id}"):
            ...
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


record_locks = KeyedLock()


def item_key(item_id: int) -> str:
    return f"item:{item_id}"


def auction_key(auction_id: int) -> str:
    return f"auction:{auction_id}"


def invoice_key(invoice_id: int) -> str:
    return f"invoice:{invoice_id}"


def settlement_key(settlement_id: int) -> str:
    return f"settlement:{settlement_id}"


def seller_settlement_key(seller_id: int) -> str:
    return f"seller-settlement:{seller_id}"


async def compare_and_set(
    db: AsyncSession,
    model,
    record_id: int,
    expected,
    values: dict,
    status_column: str = "status",
) -> bool:
    """
    Conditionally update one row: UPDATE ... WHERE id = :id AND status IN :expected.

    Args:
        db: Database session (caller commits)
        model: Mapped class with an ``id`` and a status column
        record_id: Row to update
        expected: A status, or a collection of statuses, the row must be in
        values: Column values to write

    Returns:
        True if this call performed the transition, False if the row was
        missing or already elsewhere.
    """
    if not isinstance(expected, (list, tuple, set, frozenset)):
        expected = [expected]
    column = getattr(model, status_column)
    result = await db.execute(
        update(model)
        .where(model.id == record_id, column.in_(list(expected)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
