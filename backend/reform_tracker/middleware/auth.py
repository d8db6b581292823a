"""Authentication and authorization guards for the Reform Tracker.

Provides:
- JWT creation / validation (tokens are issued by the sign-in layer; the
  ``sub`` claim is the user id)
- ``get_current_principal()`` dependency
- ``require_permission()`` and ``require_security_level()`` guards
- Role-table and audit-recorder dependencies
- Audit-log helper for handlers
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reform_tracker.config import settings
from reform_tracker.database import get_db
from reform_tracker.rbac import Permission, RoleTable, SecurityLevel
from reform_tracker.services.audit_service import (
    AuditDetails,
    AuditEntry,
    AuditRecorder,
    AuditSeverity,
    classify_severity,
    get_audit_recorder,
)
from reform_tracker.services.authorization import (
    AccessDecision,
    AccessDenied,
    AuthenticationRequired,
    Principal,
    RequestContext,
    check_permission,
    check_security_level,
    raise_for_decision,
)
from reform_tracker.services.role_store import load_role_table
from reform_tracker.services.session_store import is_session_active

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------


def create_access_token(data: dict[str, Any]) -> str:
    """Create a signed JWT containing *sub* (user id) and *exp*."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    to_encode.update({"exp": expire})
    if "sub" in to_encode and not isinstance(to_encode["sub"], str):
        to_encode["sub"] = str(to_encode["sub"])

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


# ---------------------------------------------------------------------------
# Shared dependencies
# ---------------------------------------------------------------------------

bearer_scheme = HTTPBearer(auto_error=False)


def get_recorder() -> AuditRecorder:
    return get_audit_recorder()


async def get_role_table(db: AsyncSession = Depends(get_db)) -> RoleTable:
    """The role table as currently persisted.

    Read once per request from the ``roles`` table, so an edit committed by
    any worker is enforced on the next request everywhere.
    """
    return await load_role_table(db)


# ---------------------------------------------------------------------------
# Current-principal dependency
# ---------------------------------------------------------------------------


async def get_current_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    """Decode the bearer token and load the user it names.

    Raises ``HTTPException(401)`` when the token is missing or invalid, the
    user cannot be found, or the token's ``sid`` names a session that has
    ended.  Inactive users are returned as-is; refusing them is the guards'
    job so the refusal is audited.

    Also stores the principal on ``request.state._audit_user`` so the
    read-access audit middleware can correlate requests to users.
    """
    try:
        claims = decode_claims(credentials.credentials if credentials else None)
        principal = await _load_principal(db, claims["sub"])
        sid = claims.get("sid")
        if sid is not None and not await is_session_active(db, str(sid), principal.id):
            raise AuthenticationRequired(f"session {sid!r} has ended")
    except AuthenticationRequired as exc:
        logger.debug("Authentication failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state._audit_user = principal
    return principal


def decode_claims(token: str | None) -> dict[str, Any]:
    """Return the claims of a valid token or raise AuthenticationRequired.

    ``sub`` is always present, and a string, in the result.
    """
    if not token:
        raise AuthenticationRequired("missing bearer token")
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise AuthenticationRequired("invalid token") from exc

    if not payload.get("sub"):
        raise AuthenticationRequired("token has no subject")
    payload["sub"] = str(payload["sub"])
    return payload


def decode_subject(token: str | None) -> str:
    """Return the ``sub`` claim of a valid token or raise AuthenticationRequired."""
    return decode_claims(token)["sub"]


async def _load_principal(db: AsyncSession, user_id: str) -> Principal:
    from reform_tracker.models.user import User

    result = await db.execute(select(User).where(User.id == user_id))
    user: User | None = result.scalar_one_or_none()
    if user is None:
        raise AuthenticationRequired(f"unknown user {user_id!r}")
    return Principal.from_user(user)


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def _enforce(decision: AccessDecision) -> None:
    try:
        raise_for_decision(decision)
    except AccessDenied as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.public_message,
        ) from exc


def require_permission(
    permission: Permission | str,
    *,
    security_level: SecurityLevel | str | None = None,
):
    """Return a FastAPI dependency that ensures the principal holds
    *permission* and, when given, at least *security_level*.

    The permission check runs first; the clearance check only runs when it
    allowed.

    Usage::

        @router.put("/users/{user_id}/role")
        async def update_user_role(
            user_id: str,
            principal: Principal = Depends(
                require_permission(Permission.MANAGE_ROLES, security_level="high")
            ),
        ):
            ...
    """
    key = Permission(permission).value
    level = SecurityLevel(security_level) if security_level is not None else None

    async def _check_permission(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        recorder: AuditRecorder = Depends(get_recorder),
        role_table: RoleTable = Depends(get_role_table),
    ) -> Principal:
        context = RequestContext.from_request(request)
        decision = await check_permission(
            principal,
            key,
            role_table=role_table,
            recorder=recorder,
            context=context,
        )
        _enforce(decision)

        if level is not None:
            decision = await check_security_level(
                principal, level, recorder=recorder, context=context
            )
            _enforce(decision)

        return principal

    return _check_permission


def require_security_level(security_level: SecurityLevel | str):
    """Return a FastAPI dependency that only checks the clearance tier.

    Declared after a ``require_permission`` dependency on the same route it
    runs second, so a permission denial stops the request first::

        principal: Principal = Depends(require_permission(Permission.MANAGE_SETTINGS)),
        _cleared: Principal = Depends(require_security_level(SecurityLevel.HIGH)),
    """
    level = SecurityLevel(security_level)

    async def _check_security_level(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        recorder: AuditRecorder = Depends(get_recorder),
    ) -> Principal:
        decision = await check_security_level(
            principal,
            level,
            recorder=recorder,
            context=RequestContext.from_request(request),
        )
        _enforce(decision)
        return principal

    return _check_security_level


# ---------------------------------------------------------------------------
# Audit-log helper
# ---------------------------------------------------------------------------


async def write_audit_log(
    recorder: AuditRecorder,
    request: Request,
    principal: Principal | None,
    action: str,
    resource: str,
    resource_id: str | int | None = None,
    details: AuditDetails | dict | None = None,
    severity: AuditSeverity | str | None = None,
) -> None:
    """Record a domain or administrative event.  Never raises."""
    context = RequestContext.from_request(request)
    await recorder.record(AuditEntry(
        user_id=principal.id if principal else None,
        action=action,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details,
        severity=AuditSeverity(severity) if severity else classify_severity(action),
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    ))
