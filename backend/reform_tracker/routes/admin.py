"""Administration routes --- Users, sessions, roles, settings, audit log."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reform_tracker.database import get_db
from reform_tracker.middleware.auth import (
    get_recorder,
    get_role_table,
    require_permission,
    require_security_level,
    write_audit_log,
)
from reform_tracker.rbac import (
    ALL_PERMISSIONS,
    DEFAULT_ROLES,
    VALID_ROLES,
    VALID_SECURITY_LEVELS,
    Permission,
    RoleTable,
    SecurityLevel,
    UnknownPermissionError,
    permission_description,
)
from reform_tracker.services.audit_service import (
    MAX_AUDIT_LIMIT,
    AccountStatusDetails,
    AuditRecorder,
    AuditSeverity,
    RoleChangeDetails,
    RoleDefinitionDetails,
    SessionDetails,
    SettingChangeDetails,
    list_audit,
)
from reform_tracker.services.authorization import Principal, effective_permissions
from reform_tracker.services.role_store import (
    RoleUpdateError,
    list_role_definitions,
    update_role_permissions,
)
from reform_tracker.services.session_store import (
    end_session,
    get_session,
    list_active_sessions,
)
from reform_tracker.services.settings_store import get_setting, list_settings, update_setting

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    role: str = "member"
    security_level: str = SecurityLevel.STANDARD.value
    permissions: dict[str, bool] = {}


class UserRoleUpdate(BaseModel):
    role: str
    permissions: dict[str, bool] | None = None
    security_level: str | None = None


class RoleUpdate(BaseModel):
    permissions: list[str]


class SettingUpdate(BaseModel):
    value: Any
    category: str | None = None
    description: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _validate_role(role: str) -> None:
    if role not in VALID_ROLES:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid role '{role}'. Valid roles: {', '.join(VALID_ROLES)}",
        )


def _validate_security_level(level: str) -> None:
    if level not in VALID_SECURITY_LEVELS:
        raise HTTPException(
            status_code=422,
            detail=f"Invalid security level '{level}'. "
            f"Valid levels: {', '.join(VALID_SECURITY_LEVELS)}",
        )


def _validate_overrides(overrides: dict[str, bool]) -> None:
    unknown = sorted(set(overrides) - ALL_PERMISSIONS)
    if unknown:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown permission(s): {', '.join(unknown)}.",
        )


def _user_out(u, role_table=None) -> dict:
    item = {
        "id": u.id,
        "email": u.email,
        "first_name": u.first_name,
        "last_name": u.last_name,
        "display_name": u.display_name,
        "role": u.role,
        "security_level": u.security_level,
        "permissions": dict(u.permissions or {}),
        "is_active": u.is_active,
        "created_at": u.created_at.isoformat() if u.created_at else None,
        "updated_at": u.updated_at.isoformat() if u.updated_at else None,
    }
    if role_table is not None:
        item["effective_permissions"] = sorted(
            effective_permissions(Principal.from_user(u), role_table)
        )
    return item


async def _get_user_or_404(db: AsyncSession, user_id: str):
    from reform_tracker.models.user import User

    result = await db.execute(select(User).where(User.id == user_id))
    u = result.scalar_one_or_none()
    if not u:
        raise HTTPException(status_code=404, detail="User not found")
    return u


# ---------------------------------------------------------------------------
# USER MANAGEMENT
# ---------------------------------------------------------------------------


@router.get("/users")
async def list_users(
    role: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.MANAGE_USERS)),
):
    """List all users, optionally filtered by role."""
    from reform_tracker.models.user import User

    stmt = select(User).order_by(User.id)
    if role:
        stmt = stmt.where(User.role == role)
    result = await db.execute(stmt)
    items = [_user_out(u) for u in result.scalars().all()]

    return {"items": items, "total": len(items)}


@router.get("/users/{user_id}")
async def get_user(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    role_table: RoleTable = Depends(get_role_table),
    principal: Principal = Depends(require_permission(Permission.MANAGE_USERS)),
):
    """Get a single user with effective permissions."""
    u = await _get_user_or_404(db, user_id)
    return _user_out(u, role_table)


@router.post("/users", status_code=201)
async def create_user(
    body: UserCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
    role_table: RoleTable = Depends(get_role_table),
    principal: Principal = Depends(
        require_permission(Permission.MANAGE_USERS, security_level=SecurityLevel.HIGH)
    ),
):
    """Create a user record ahead of their first sign-in."""
    from reform_tracker.models.user import User

    _validate_role(body.role)
    _validate_security_level(body.security_level)
    _validate_overrides(body.permissions)

    existing = await db.execute(select(User).where(User.id == body.id))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="User already exists")

    new_user = User(
        id=body.id,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
        security_level=body.security_level,
        permissions=dict(body.permissions),
        is_active=True,
    )
    db.add(new_user)
    await db.commit()

    await write_audit_log(
        recorder,
        request,
        principal,
        action="create_user",
        resource="users",
        resource_id=new_user.id,
        details={"role": body.role, "securityLevel": body.security_level},
        severity=AuditSeverity.HIGH,
    )

    return _user_out(new_user, role_table)


@router.put("/users/{user_id}/role")
async def update_user_role(
    user_id: str,
    body: UserRoleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
    role_table: RoleTable = Depends(get_role_table),
    principal: Principal = Depends(
        require_permission(Permission.MANAGE_ROLES, security_level=SecurityLevel.HIGH)
    ),
):
    """Change a user's role and replace their permission overrides."""
    _validate_role(body.role)
    if body.security_level is not None:
        _validate_security_level(body.security_level)
    new_permissions = dict(body.permissions or {})
    _validate_overrides(new_permissions)

    target = await _get_user_or_404(db, user_id)

    details = RoleChangeDetails(
        target_user_id=user_id,
        previous_role=target.role,
        new_role=body.role,
        previous_permissions=dict(target.permissions or {}),
        new_permissions=new_permissions,
        security_level=body.security_level,
    )

    target.role = body.role
    target.permissions = new_permissions
    if body.security_level is not None:
        target.security_level = body.security_level
    await db.commit()

    await write_audit_log(
        recorder,
        request,
        principal,
        action="update_user_role",
        resource="users",
        resource_id=user_id,
        details=details,
        severity=AuditSeverity.HIGH,
    )

    return _user_out(target, role_table)


@router.post("/users/{user_id}/deactivate")
async def deactivate_user(
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
    principal: Principal = Depends(
        require_permission(Permission.MANAGE_USERS, security_level=SecurityLevel.HIGH)
    ),
):
    """Deactivate a user.  Users are never deleted."""
    if user_id == principal.id:
        raise HTTPException(status_code=400, detail="Cannot deactivate your own account")

    target = await _get_user_or_404(db, user_id)
    target.is_active = False
    await db.commit()

    await write_audit_log(
        recorder,
        request,
        principal,
        action="deactivate_user",
        resource="users",
        resource_id=user_id,
        details=AccountStatusDetails(target_user_id=user_id, is_active=False),
        severity=AuditSeverity.HIGH,
    )

    return {"status": "deactivated", "id": user_id}


# ---------------------------------------------------------------------------
# SESSIONS
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}/sessions")
async def list_user_sessions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.MANAGE_USERS)),
    _cleared: Principal = Depends(require_security_level(SecurityLevel.HIGH)),
):
    """A user's live sign-in sessions, most recent first."""
    await _get_user_or_404(db, user_id)
    items = [s.to_dict() for s in await list_active_sessions(db, user_id)]
    return {"items": items, "total": len(items)}


@router.post("/sessions/{session_id}/end")
async def end_user_session(
    session_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
    principal: Principal = Depends(require_permission(Permission.MANAGE_USERS)),
    _cleared: Principal = Depends(require_security_level(SecurityLevel.HIGH)),
):
    """End a session.  Tokens issued for it stop authenticating."""
    session = await get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    if not session.is_active:
        raise HTTPException(status_code=409, detail="Session already ended")

    session = await end_session(db, session)

    await write_audit_log(
        recorder,
        request,
        principal,
        action="end_session",
        resource="sessions",
        resource_id=session_id,
        details=SessionDetails(session_id=session_id, target_user_id=session.user_id),
        severity=AuditSeverity.HIGH,
    )

    return session.to_dict()


# ---------------------------------------------------------------------------
# ROLES
# ---------------------------------------------------------------------------


@router.get("/roles")
async def list_roles(
    db: AsyncSession = Depends(get_db),
    role_table: RoleTable = Depends(get_role_table),
    principal: Principal = Depends(require_permission(Permission.MANAGE_ROLES)),
):
    """List all roles with the grants currently enforced."""
    rows = {r.name: r for r in await list_role_definitions(db)}

    roles = []
    for name in role_table.roles():
        row = rows.get(name)
        defaults = DEFAULT_ROLES.get(name, {})
        roles.append({
            "name": name,
            "display_name": row.display_name if row else defaults.get("display_name", name),
            "description": row.description if row else defaults.get("description"),
            "permissions": sorted(role_table.permissions_for(name)),
        })

    return {"roles": roles}


@router.put("/roles/{role}")
async def update_role(
    role: str,
    body: RoleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
    principal: Principal = Depends(
        require_permission(Permission.MANAGE_ROLES, security_level=SecurityLevel.HIGH)
    ),
):
    """Replace a role's permission grants.  Takes effect immediately."""
    try:
        row, added, removed = await update_role_permissions(db, role, body.permissions)
    except (RoleUpdateError, UnknownPermissionError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    await write_audit_log(
        recorder,
        request,
        principal,
        action="update_role",
        resource="roles",
        resource_id=role,
        details=RoleDefinitionDetails(role=role, added=added, removed=removed),
        severity=AuditSeverity.HIGH,
    )

    return {"name": row.name, "permissions": list(row.permissions)}


@router.get("/permissions")
async def list_permissions(
    principal: Principal = Depends(require_permission(Permission.MANAGE_ROLES)),
):
    """The permission catalogue with descriptions."""
    return {
        "permissions": [
            {"key": key, "description": permission_description(key)}
            for key in sorted(ALL_PERMISSIONS)
        ]
    }


# ---------------------------------------------------------------------------
# SYSTEM SETTINGS
# ---------------------------------------------------------------------------


@router.get("/settings")
async def list_system_settings(
    category: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.MANAGE_SETTINGS)),
    _cleared: Principal = Depends(require_security_level(SecurityLevel.HIGH)),
):
    """All system settings, optionally for one category."""
    items = [s.to_dict() for s in await list_settings(db, category)]
    return {"items": items, "total": len(items)}


@router.get("/settings/{key}")
async def get_system_setting(
    key: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_permission(Permission.MANAGE_SETTINGS)),
    _cleared: Principal = Depends(require_security_level(SecurityLevel.HIGH)),
):
    setting = await get_setting(db, key)
    if setting is None:
        raise HTTPException(status_code=404, detail="Setting not found")
    return setting.to_dict()


@router.patch("/settings/{key}")
async def update_system_setting(
    body: SettingUpdate,
    request: Request,
    key: str = Path(..., min_length=1, max_length=100),
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
    principal: Principal = Depends(require_permission(Permission.MANAGE_SETTINGS)),
    _cleared: Principal = Depends(require_security_level(SecurityLevel.HIGH)),
):
    """Set a setting's value, creating the key if needed."""
    setting, previous = await update_setting(
        db,
        key,
        body.value,
        updated_by=principal.id,
        category=body.category,
        description=body.description,
    )

    await write_audit_log(
        recorder,
        request,
        principal,
        action="update_setting",
        resource="settings",
        resource_id=key,
        details=SettingChangeDetails(key=key, previous_value=previous, new_value=body.value),
        severity=AuditSeverity.HIGH,
    )

    return setting.to_dict()


# ---------------------------------------------------------------------------
# AUDIT LOG
# ---------------------------------------------------------------------------


@router.get("/audit-logs")
async def list_audit_logs(
    user_id: str | None = Query(None, alias="userId"),
    action: str | None = Query(None),
    severity: AuditSeverity | None = Query(None),
    limit: int = Query(100, ge=1, le=MAX_AUDIT_LIMIT),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(
        require_permission(Permission.VIEW_AUDIT_LOGS, security_level=SecurityLevel.HIGH)
    ),
):
    """Audit trail, newest first."""
    entries = await list_audit(
        db,
        user_id=user_id,
        action=action,
        severity=severity,
        limit=limit,
    )
    items = [e.to_dict() for e in entries]
    return {"items": items, "total": len(items)}
