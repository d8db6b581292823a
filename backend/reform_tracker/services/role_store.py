"""Persistence for role definitions.

The ``roles`` table is the single source of truth for role grants.  Startup
seeds the built-in roles; the guards build an immutable ``RoleTable`` from
the table on every request, so enforcement always reflects what was
committed, whichever worker committed it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reform_tracker.models.role import RoleDefinition
from reform_tracker.rbac import (
    DEFAULT_ROLES,
    SUPER_ROLE,
    VALID_ROLES,
    RoleTable,
    validate_permissions,
)

logger = logging.getLogger(__name__)


class RoleUpdateError(ValueError):
    """Raised for role updates that are not allowed."""


async def seed_default_roles(db: AsyncSession) -> list[str]:
    """Insert any built-in role that is missing.  Returns the names added."""
    result = await db.execute(select(RoleDefinition.name))
    existing = set(result.scalars().all())

    added: list[str] = []
    for name, data in DEFAULT_ROLES.items():
        if name in existing:
            continue
        db.add(RoleDefinition(
            name=name,
            display_name=data["display_name"],
            description=data["description"],
            permissions=list(data["permissions"]),
        ))
        added.append(name)

    if added:
        await db.commit()
        logger.info("Seeded default roles: %s", ", ".join(added))
    return added


async def load_role_table(db: AsyncSession) -> RoleTable:
    """Build a ``RoleTable`` from the persisted role definitions."""
    result = await db.execute(select(RoleDefinition))
    grants = {
        row.name: row.permissions or []
        for row in result.scalars().all()
        if row.name in VALID_ROLES
    }
    return RoleTable(grants)


async def list_role_definitions(db: AsyncSession) -> list[RoleDefinition]:
    result = await db.execute(select(RoleDefinition).order_by(RoleDefinition.name))
    return list(result.scalars().all())


async def update_role_permissions(
    db: AsyncSession,
    role: str,
    permissions: Iterable[str],
) -> tuple[RoleDefinition, list[str], list[str]]:
    """Replace a role's grants and commit.

    Returns the updated row plus the keys added and removed.  The super-role
    always holds every permission and cannot be edited.
    """
    if role not in VALID_ROLES:
        raise RoleUpdateError(f"Unknown role '{role}'")
    if role == SUPER_ROLE:
        raise RoleUpdateError("The super-role's permissions cannot be changed")

    new_keys = validate_permissions(permissions)

    result = await db.execute(select(RoleDefinition).where(RoleDefinition.name == role))
    row = result.scalar_one_or_none()
    if row is None:
        data = DEFAULT_ROLES[role]
        row = RoleDefinition(
            name=role,
            display_name=data["display_name"],
            description=data["description"],
            permissions=[],
        )
        db.add(row)

    old_keys = set(row.permissions or [])
    row.permissions = sorted(new_keys)
    await db.commit()

    added = sorted(new_keys - old_keys)
    removed = sorted(old_keys - new_keys)
    return row, added, removed
