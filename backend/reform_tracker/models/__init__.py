from reform_tracker.models.audit import AuditLog, ImmutableAuditLogError
from reform_tracker.models.role import RoleDefinition
from reform_tracker.models.session import UserSession
from reform_tracker.models.setting import SystemSetting
from reform_tracker.models.task import Task
from reform_tracker.models.user import User

__all__ = [
    # Principals and roles
    "User",
    "RoleDefinition",
    "UserSession",
    # Audit trail
    "AuditLog",
    "ImmutableAuditLogError",
    # Administration
    "SystemSetting",
    # Domain resources
    "Task",
]
