"""Persistence for system settings.

Settings are keyed rows with a JSON value.  Writing a key that does not
exist yet creates it.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reform_tracker.models.base import utcnow
from reform_tracker.models.setting import SystemSetting


async def list_settings(db: AsyncSession, category: str | None = None) -> list[SystemSetting]:
    stmt = select(SystemSetting).order_by(SystemSetting.category, SystemSetting.key)
    if category:
        stmt = stmt.where(SystemSetting.category == category)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_setting(db: AsyncSession, key: str) -> SystemSetting | None:
    result = await db.execute(select(SystemSetting).where(SystemSetting.key == key))
    return result.scalar_one_or_none()


async def update_setting(
    db: AsyncSession,
    key: str,
    value: Any,
    *,
    updated_by: str,
    category: str | None = None,
    description: str | None = None,
) -> tuple[SystemSetting, Any]:
    """Upsert *key* and commit.  Returns the row and the previous value
    (``None`` for a new key)."""
    row = await get_setting(db, key)
    previous = None
    if row is None:
        row = SystemSetting(key=key, category=category or "general")
        db.add(row)
    else:
        previous = row.value
        if category:
            row.category = category

    row.value = value
    if description is not None:
        row.description = description
    row.updated_by = updated_by
    row.updated_at = utcnow()
    await db.commit()
    return row, previous
