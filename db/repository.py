from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Iterable

import sqlalchemy as sa


def update_if_current(
    session,
    model,
    entity_id,
    expected_statuses: Iterable[str],
    values: dict[str, Any],
    guards: dict[str, Any] | None = None,
) -> bool:
    """Apply ``values`` only while the row is still in one of ``expected_statuses``.

    ``guards`` adds equality checks on other columns (``None`` means IS NULL).
    Returns True when exactly one row changed.
    """

    conditions = [model.id == entity_id, model.status.in_(list(expected_statuses))]
    for column_name, expected in (guards or {}).items():
        column = getattr(model, column_name)
        if expected is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == expected)

    payload = dict(values)
    payload.setdefault("updated_at", datetime.now(UTC))
    stmt = (
        sa.update(model)
        .where(*conditions)
        .values(**payload)
        .execution_options(synchronize_session="fetch")
    )
    result = session.execute(stmt)
    return result.rowcount == 1


def find_by_column(session, model, column_name: str, value, limit: int = 2) -> list:
    column = getattr(model, column_name)
    stmt = sa.select(model).where(column == value).limit(limit)
    return list(session.execute(stmt).scalars().all())
