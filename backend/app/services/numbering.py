"""Human-readable document numbers: ``PREFIX-YYYY-NNNNNN``."""
from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession


async def next_document_number(db: AsyncSession, model, column, prefix: str, year: int) -> str:
    """Next number in ``prefix``'s sequence for ``year``.

    Two concurrent callers can draw the same number; the unique constraint on
    ``column`` rejects the second insert.
    """
    stem = f"{prefix}-{year}-"
    result = await db.execute(
        select(func.count()).select_from(model).where(column.like(f"{stem}%"))
    )
    return f"{stem}{result.scalar_one() + 1:06d}"
