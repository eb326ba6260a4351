"""
Human-readable document numbers from monotonic counters.

The counter row is incremented with a single UPDATE, which holds the row
lock until the caller's transaction ends, so concurrent allocators queue up
instead of reading the same value. Both numbered columns are also unique.

Counters are kept per kind and year, so numbering restarts at 1 each January.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import StateConflictError
from backend.app.domain.clock import utcnow
from backend.app.models.number_sequence import NumberSequence

INVOICE_SEQUENCE = "invoice"
SETTLEMENT_SEQUENCE = "settlement"


async def next_value(db: AsyncSession, name: str) -> int:
    """Increment and return the named counter inside the caller's transaction."""
    result = await db.execute(
        update(NumberSequence)
        .where(NumberSequence.name == name)
        .values(value=NumberSequence.value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(NumberSequence(name=name, value=1))
        try:
            await db.flush()
        except IntegrityError:
            raise StateConflictError(
                f"Counter {name} was initialised concurrently, retry the operation"
            )
        return 1

    value = await db.execute(select(NumberSequence.value).where(NumberSequence.name == name))
    return value.scalar_one()


def sequence_name(kind: str, year: int) -> str:
    return f"{kind}-{year}"


async def ensure_sequences(db: AsyncSession, now: Optional[datetime] = None) -> None:
    """Create missing counter rows for the current year (run once at startup)."""
    year = (now or utcnow()).year
    for name in (sequence_name(INVOICE_SEQUENCE, year), sequence_name(SETTLEMENT_SEQUENCE, year)):
        existing = await db.get(NumberSequence, name)
        if existing is None:
            db.add(NumberSequence(name=name, value=0))
    await db.commit()


async def next_invoice_number(db: AsyncSession, now: datetime) -> str:
    value = await next_value(db, sequence_name(INVOICE_SEQUENCE, now.year))
    return f"{settings.invoice_number_prefix}-{now.year}-{value:06d}"


async def next_settlement_reference(db: AsyncSession, now: datetime) -> str:
    value = await next_value(db, sequence_name(SETTLEMENT_SEQUENCE, now.year))
    return f"{settings.settlement_reference_prefix}-{now.year}-{value:04d}"
