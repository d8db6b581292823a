"""Session introspection routes.

Sign-in itself (OAuth, local credentials, OTP) lives in the authentication
layer; these routes only describe the principal behind a bearer token.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reform_tracker.database import get_db
from reform_tracker.middleware.auth import get_current_principal, get_role_table
from reform_tracker.rbac import RoleTable
from reform_tracker.services.authorization import Principal, effective_permissions

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.get("/user")
async def get_me(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    role_table: RoleTable = Depends(get_role_table),
):
    from reform_tracker.models.user import User

    result = await db.execute(select(User).where(User.id == principal.id))
    user = result.scalar_one()

    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "display_name": user.display_name,
        "role": user.role,
        "security_level": principal.clearance.value,
        "is_active": user.is_active,
        "permissions": sorted(effective_permissions(principal, role_table)),
    }
