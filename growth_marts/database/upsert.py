"""
Dialect-portable upserts.

PostgreSQL and SQLite both support ``INSERT ... ON CONFLICT DO UPDATE`` with
the same construct shape, so every pipeline write goes through here and stays
idempotent on its natural key regardless of the backing store.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from growth_marts.database.models import Base

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    try:
        return _DIALECT_INSERTS[dialect]
    except KeyError:
        raise NotImplementedError(f"Upsert not supported for dialect: {dialect}") from None


async def upsert_many(
    session: AsyncSession,
    model: Type[Base],
    rows: List[Dict[str, Any]],
    conflict_columns: Sequence[str],
    update_columns: Optional[Iterable[str]] = None,
    chunk_size: int = 500,
) -> int:
    """
    Insert rows, updating in place any whose natural key already exists.
    Rows are sent in chunks of ``chunk_size``.

    Rows must not repeat a natural key: PostgreSQL refuses to touch the same
    row twice in one statement.

    Returns:
        Number of rows sent to the database
    """
    if not rows:
        return 0

    insert = _insert_for(session)
    if update_columns is None:
        update_columns = [c for c in rows[0] if c not in conflict_columns]
    update_columns = list(update_columns)

    for start in range(0, len(rows), chunk_size):
        stmt = insert(model).values(rows[start:start + chunk_size])
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(conflict_columns),
                set_={col: stmt.excluded[col] for col in update_columns},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
        await session.execute(stmt)

    return len(rows)


async def prune_missing(
    session: AsyncSession,
    model: Type[Base],
    key_columns: Sequence[str],
    keep: Iterable[Tuple[Any, ...]],
    chunk_size: int = 500,
) -> int:
    """
    Delete rows whose natural key is not in ``keep``.

    Keys are compared as tuples over ``key_columns``; stale rows are removed
    by primary key in chunks of ``chunk_size``.

    Returns:
        Number of rows deleted
    """
    keep = set(keep)
    pk = model.__mapper__.primary_key[0]
    columns = [getattr(model, name) for name in key_columns]

    result = await session.execute(select(pk, *columns))
    stale = [row[0] for row in result.all() if tuple(row[1:]) not in keep]

    for start in range(0, len(stale), chunk_size):
        await session.execute(delete(model).where(pk.in_(stale[start:start + chunk_size])))

    return len(stale)
