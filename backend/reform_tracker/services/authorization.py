"""Permission resolution and security-level gating.

Two decision functions, each consulted by the request guards in
``middleware/auth.py``:

- ``check_permission()`` -- may this principal perform *permission*?
  Evaluated in order, short-circuiting: inactive account (deny), super-role
  ``sp`` (allow), role table grant (allow), per-user override set to ``true``
  (allow), otherwise deny.  A ``false`` override never revokes a role grant.
- ``check_security_level()`` -- does the principal's clearance tier reach the
  required one under ``limited < standard < high``?  Inactive accounts are
  denied before the tiers are compared.

Both append exactly one audit entry per evaluation, allow or deny, and both
await that write before returning.  An audit failure never changes the
decision.
"""
from __future__ import annotations

import dataclasses
import enum
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from reform_tracker.rbac import SUPER_ROLE, Permission, RoleTable, SecurityLevel
from reform_tracker.services.audit_service import (
    AuditEntry,
    AuditRecorder,
    AuditSeverity,
    PermissionCheckDetails,
    SecurityCheckDetails,
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AuthenticationRequired(Exception):
    """No principal could be resolved for the request."""


class AccessDenied(Exception):
    """Base class for authorization denials."""

    public_message = "Insufficient permissions"


class AccountInactive(AccessDenied):
    public_message = "User account inactive"


class PermissionDenied(AccessDenied):
    public_message = "Insufficient permissions"


class SecurityLevelDenied(AccessDenied):
    public_message = "Insufficient security clearance"


# ---------------------------------------------------------------------------
# Principal and request context
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Principal:
    id: str
    role: str
    security_level: str | None = SecurityLevel.STANDARD.value
    permissions: Mapping[str, bool] = dataclasses.field(default_factory=dict)
    is_active: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "permissions", MappingProxyType(dict(self.permissions or {}))
        )

    @classmethod
    def from_user(cls, user: Any) -> Principal:
        return cls(
            id=user.id,
            role=user.role,
            security_level=user.security_level,
            permissions=user.permissions or {},
            is_active=bool(user.is_active),
        )

    @property
    def clearance(self) -> SecurityLevel:
        return SecurityLevel.coerce(self.security_level)


@dataclasses.dataclass(frozen=True)
class RequestContext:
    """Client metadata copied onto audit entries."""

    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def from_request(cls, request: Any) -> RequestContext:
        return cls(
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class DecisionReason(str, enum.Enum):
    ACCOUNT_INACTIVE = "account_inactive"
    SUPER_ROLE = "super_role"
    ROLE = "role"
    OVERRIDE = "override"
    NOT_GRANTED = "not_granted"
    CLEARANCE = "clearance"
    INSUFFICIENT_CLEARANCE = "insufficient_clearance"


@dataclasses.dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: DecisionReason

    def __bool__(self) -> bool:
        return self.allowed


def _key(permission: Permission | str) -> str:
    return permission.value if isinstance(permission, Permission) else str(permission)


def evaluate_permission(
    principal: Principal,
    permission: Permission | str,
    role_table: RoleTable,
) -> AccessDecision:
    """Pure permission decision; no side effects."""
    key = _key(permission)

    if not principal.is_active:
        return AccessDecision(False, DecisionReason.ACCOUNT_INACTIVE)
    if principal.role == SUPER_ROLE:
        return AccessDecision(True, DecisionReason.SUPER_ROLE)
    if role_table.grants(principal.role, key):
        return AccessDecision(True, DecisionReason.ROLE)
    if principal.permissions.get(key) is True:
        return AccessDecision(True, DecisionReason.OVERRIDE)
    return AccessDecision(False, DecisionReason.NOT_GRANTED)


def evaluate_security_level(
    principal: Principal,
    required: SecurityLevel | str,
) -> AccessDecision:
    """Pure clearance decision; no side effects."""
    required_level = SecurityLevel(required)
    if not principal.is_active:
        return AccessDecision(False, DecisionReason.ACCOUNT_INACTIVE)
    if principal.clearance.rank >= required_level.rank:
        return AccessDecision(True, DecisionReason.CLEARANCE)
    return AccessDecision(False, DecisionReason.INSUFFICIENT_CLEARANCE)


def effective_permissions(principal: Principal, role_table: RoleTable) -> set[str]:
    """Every key ``check_permission`` would allow for *principal*."""
    if not principal.is_active:
        return set()
    granted = set(role_table.permissions_for(principal.role))
    if principal.role == SUPER_ROLE:
        return granted
    granted.update(k for k, v in principal.permissions.items() if v is True)
    return granted


async def check_permission(
    principal: Principal,
    permission: Permission | str,
    *,
    role_table: RoleTable,
    recorder: AuditRecorder,
    context: RequestContext | None = None,
) -> AccessDecision:
    """Decide and audit a permission check."""
    key = _key(permission)
    decision = evaluate_permission(principal, key, role_table)
    context = context or RequestContext()

    await recorder.record(AuditEntry(
        user_id=principal.id,
        action="permission_granted" if decision.allowed else "access_denied",
        resource=key,
        severity=AuditSeverity.INFO if decision.allowed else AuditSeverity.MEDIUM,
        details=PermissionCheckDetails(
            permission=key,
            user_role=principal.role,
            reason=decision.reason.value,
        ),
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    ))
    return decision


async def check_security_level(
    principal: Principal,
    required: SecurityLevel | str,
    *,
    recorder: AuditRecorder,
    context: RequestContext | None = None,
) -> AccessDecision:
    """Decide and audit a clearance check."""
    required_level = SecurityLevel(required)
    decision = evaluate_security_level(principal, required_level)
    context = context or RequestContext()

    if decision.allowed:
        action, severity = "security_level_granted", AuditSeverity.INFO
    elif decision.reason is DecisionReason.ACCOUNT_INACTIVE:
        action, severity = "access_denied", AuditSeverity.MEDIUM
    else:
        action, severity = "security_level_denied", AuditSeverity.HIGH

    await recorder.record(AuditEntry(
        user_id=principal.id,
        action=action,
        resource="security_check",
        severity=severity,
        details=SecurityCheckDetails(
            required_level=required_level.value,
            user_level=principal.clearance.value,
            reason=(
                decision.reason.value
                if decision.reason is DecisionReason.ACCOUNT_INACTIVE
                else None
            ),
        ),
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    ))
    return decision


def raise_for_decision(decision: AccessDecision) -> None:
    """Turn a deny decision into the matching ``AccessDenied`` subclass."""
    if decision.allowed:
        return
    if decision.reason is DecisionReason.ACCOUNT_INACTIVE:
        raise AccountInactive()
    if decision.reason is DecisionReason.INSUFFICIENT_CLEARANCE:
        raise SecurityLevelDenied()
    raise PermissionDenied()
