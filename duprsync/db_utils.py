"""Database utility functions for cross-database compatibility."""

import logging
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return bind.dialect.name if bind is not None else ""


async def upsert(
    session: AsyncSession,
    model: type[T],
    values: dict[str, Any],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> None:
    """
    Database-agnostic upsert operation (last writer wins).

    Uses native INSERT ... ON CONFLICT for PostgreSQL and SQLite, and falls
    back to SELECT + INSERT/UPDATE for other dialects.

    Args:
        session: AsyncSession instance
        model: SQLModel table class
        values: Dictionary of column values to insert/update
        conflict_columns: Columns that define uniqueness (for conflict detection)
        update_columns: Columns to update on conflict (defaults to all non-conflict columns)

    Example:
        await upsert(
            session,
            RatingSnapshot,
            {"dupr_id": "ABC123", "doubles_rating": 4.12, "source": "webhook"},
            conflict_columns=["dupr_id"],
        )
    """
    if update_columns is None:
        update_columns = [k for k in values.keys() if k not in conflict_columns]

    dialect = _dialect_name(session)
    if dialect in ("postgresql", "sqlite"):
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_fn(model).values(**values)
        if update_columns:
            update_dict = {col: getattr(stmt.excluded, col) for col in update_columns}
            stmt = stmt.on_conflict_do_update(
                index_elements=conflict_columns,
                set_=update_dict,
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
        await session.execute(stmt)
        return

    logger.debug(f"Native upsert unavailable for dialect={dialect!r}, using fallback")
    filters = [getattr(model, col) == values[col] for col in conflict_columns]
    result = await session.execute(select(model).where(*filters))
    existing = result.scalar_one_or_none()

    if existing:
        for col in update_columns:
            if col in values:
                setattr(existing, col, values[col])
    else:
        session.add(model(**values))
