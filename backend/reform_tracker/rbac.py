"""
RBAC Permission Registry for the Reform Tracker

Defines the closed set of permission keys, the named roles, the security
clearance tiers, and the built-in role-to-permission grants used to seed the
``roles`` table.  At runtime the enforcement path reads a ``RoleTable``
built from the persisted roles, never the defaults below directly.

Permission string format: {resource}:{action}
"""
from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from types import MappingProxyType


# ---------------------------------------------------------------------------
# Permission keys
# ---------------------------------------------------------------------------


class Permission(str, enum.Enum):
    # System administration
    SYSTEM_ADMIN = "system:admin"
    MANAGE_USERS = "users:manage"
    MANAGE_ROLES = "roles:manage"
    VIEW_AUDIT_LOGS = "audit:view"
    MANAGE_SETTINGS = "settings:manage"
    # Teams
    MANAGE_TEAMS = "teams:manage"
    VIEW_TEAMS = "teams:view"
    # Tasks
    CREATE_TASKS = "tasks:create"
    EDIT_TASKS = "tasks:edit"
    DELETE_TASKS = "tasks:delete"
    VIEW_TASKS = "tasks:view"
    ASSIGN_TASKS = "tasks:assign"
    # Reports
    CREATE_REPORTS = "reports:create"
    EDIT_REPORTS = "reports:edit"
    VIEW_REPORTS = "reports:view"
    # Budget
    MANAGE_BUDGET = "budget:manage"
    VIEW_BUDGET = "budget:view"
    APPROVE_BUDGET = "budget:approve"
    # Documents
    UPLOAD_DOCUMENTS = "documents:upload"
    EDIT_DOCUMENTS = "documents:edit"
    DELETE_DOCUMENTS = "documents:delete"
    VIEW_DOCUMENTS = "documents:view"
    # Feedback
    MANAGE_FEEDBACK = "feedback:manage"
    RESPOND_FEEDBACK = "feedback:respond"
    VIEW_FEEDBACK = "feedback:view"
    # AI assistant
    USE_AI_ASSISTANT = "ai:use"
    ADMIN_AI_ASSISTANT = "ai:admin"


ALL_PERMISSIONS: frozenset[str] = frozenset(p.value for p in Permission)


# ---------------------------------------------------------------------------
# Roles and clearance tiers
# ---------------------------------------------------------------------------


class Role(str, enum.Enum):
    SP = "sp"
    TEAM_LEADER = "team_leader"
    MEMBER = "member"
    VIEWER = "viewer"


SUPER_ROLE = Role.SP.value

VALID_ROLES: list[str] = sorted(r.value for r in Role)


class SecurityLevel(str, enum.Enum):
    LIMITED = "limited"
    STANDARD = "standard"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SECURITY_RANK[self]

    @classmethod
    def coerce(cls, value: str | None) -> SecurityLevel:
        """Return the tier for a stored value.

        Missing values mean ``standard`` (the column default); anything
        unrecognised ranks as ``limited``.
        """
        if value is None:
            return cls.STANDARD
        try:
            return cls(value)
        except ValueError:
            return cls.LIMITED


_SECURITY_RANK: dict[SecurityLevel, int] = {
    SecurityLevel.LIMITED: 0,
    SecurityLevel.STANDARD: 1,
    SecurityLevel.HIGH: 2,
}

VALID_SECURITY_LEVELS: list[str] = [lvl.value for lvl in SecurityLevel]


# ---------------------------------------------------------------------------
# Built-in role grants (seed data for the ``roles`` table)
# ---------------------------------------------------------------------------

DEFAULT_ROLES: dict[str, dict] = {
    # ── Superintendent of Police ─────────────────────────────────────────
    # Full system access.  Always holds every permission.
    "sp": {
        "display_name": "SP (Superintendent of Police)",
        "description": "Full system access for the Superintendent of Police",
        "permissions": sorted(ALL_PERMISSIONS),
    },

    # ── Team Leader ──────────────────────────────────────────────────────
    # Coordinates a reform team: creates and assigns tasks, writes reports.
    "team_leader": {
        "display_name": "Team Leader",
        "description": "Team management and coordination access",
        "permissions": [
            "teams:view",
            "tasks:create", "tasks:edit", "tasks:view", "tasks:assign",
            "reports:create", "reports:edit", "reports:view",
            "budget:view",
            "documents:upload", "documents:view",
            "feedback:respond", "feedback:view",
            "ai:use",
        ],
    },

    # ── Team Member ──────────────────────────────────────────────────────
    "member": {
        "display_name": "Team Member",
        "description": "Standard team member access",
        "permissions": [
            "teams:view",
            "tasks:view",
            "reports:create", "reports:view",
            "budget:view",
            "documents:view",
            "feedback:view",
            "ai:use",
        ],
    },

    # ── Viewer ───────────────────────────────────────────────────────────
    # Read-only access for monitoring.
    "viewer": {
        "display_name": "Viewer",
        "description": "Read-only access for monitoring",
        "permissions": [
            "teams:view",
            "tasks:view",
            "reports:view",
            "budget:view",
            "documents:view",
            "feedback:view",
        ],
    },
}


# ---------------------------------------------------------------------------
# Immutable role table (what the enforcement path reads)
# ---------------------------------------------------------------------------


class UnknownPermissionError(ValueError):
    """Raised when a permission key is not part of the closed set."""


def validate_permissions(permissions: Iterable[str]) -> frozenset[str]:
    keys = frozenset(str(getattr(p, "value", p)) for p in permissions)
    unknown = keys - ALL_PERMISSIONS
    if unknown:
        raise UnknownPermissionError(
            f"Unknown permission(s): {', '.join(sorted(unknown))}"
        )
    return keys


class RoleTable:
    """Read-only role -> permission-key mapping.

    ``sp`` is always mapped to the full permission set, so it is a superset
    of every other role.  Replacing grants produces a new table; instances
    are never mutated.
    """

    __slots__ = ("_grants",)

    def __init__(self, grants: Mapping[str, Iterable[str]]) -> None:
        built: dict[str, frozenset[str]] = {}
        for role, perms in grants.items():
            if role not in VALID_ROLES:
                raise ValueError(f"Unknown role '{role}'")
            built[role] = validate_permissions(perms)
        built[SUPER_ROLE] = ALL_PERMISSIONS
        object.__setattr__(self, "_grants", MappingProxyType(built))

    def __setattr__(self, name, value):
        raise AttributeError("RoleTable is immutable")

    @classmethod
    def defaults(cls) -> RoleTable:
        return cls({name: data["permissions"] for name, data in DEFAULT_ROLES.items()})

    def permissions_for(self, role: str) -> frozenset[str]:
        """Return the permission set for a role, or an empty set if unknown."""
        return self._grants.get(role, frozenset())

    def grants(self, role: str, permission: str) -> bool:
        return permission in self.permissions_for(role)

    def replace(self, role: str, permissions: Iterable[str]) -> RoleTable:
        """Return a new table with *role*'s grants replaced."""
        grants = dict(self._grants)
        grants[role] = permissions
        return RoleTable(grants)

    def roles(self) -> list[str]:
        return sorted(self._grants.keys())

    def as_dict(self) -> dict[str, list[str]]:
        return {role: sorted(perms) for role, perms in self._grants.items()}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def permission_description(permission: str) -> str:
    """Return a human-readable description for a permission string."""
    _DESCRIPTIONS: dict[str, str] = {
        "system:admin": "Full system administration rights",
        "users:manage": "Create, edit and deactivate users",
        "roles:manage": "Assign and modify roles and permissions",
        "audit:view": "View system audit logs",
        "settings:manage": "Modify system-wide settings",
        "teams:manage": "Create, edit and delete teams",
        "teams:view": "View team information",
        "tasks:create": "Create new tasks",
        "tasks:edit": "Edit existing tasks",
        "tasks:delete": "Delete tasks",
        "tasks:view": "View task information",
        "tasks:assign": "Assign tasks to users",
        "reports:create": "Submit progress reports",
        "reports:edit": "Edit progress reports",
        "reports:view": "View progress reports",
        "budget:manage": "Manage budget items",
        "budget:view": "View budget items",
        "budget:approve": "Approve budget items",
        "documents:upload": "Upload documents",
        "documents:edit": "Edit document metadata",
        "documents:delete": "Delete documents",
        "documents:view": "View documents",
        "feedback:manage": "Manage citizen feedback",
        "feedback:respond": "Respond to citizen feedback",
        "feedback:view": "View citizen feedback",
        "ai:use": "Use the AI assistant",
        "ai:admin": "Administer the AI assistant",
    }
    return _DESCRIPTIONS.get(permission, permission)
