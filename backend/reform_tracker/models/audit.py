"""SQLAlchemy model for the append-only audit trail."""
from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from reform_tracker.database import Base
from reform_tracker.models.base import utcnow


class ImmutableAuditLogError(RuntimeError):
    """Raised when something tries to update or delete an audit row."""


class AuditLog(Base):
    """Immutable record of an access decision or administrative action.

    ``user_id`` is a weak reference (no foreign key): deactivating a user
    leaves past entries untouched.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_logs_timestamp", "timestamp"),
        Index("idx_audit_logs_user_id", "user_id"),
        Index("idx_audit_logs_action", "action"),
        Index("idx_audit_logs_severity", "severity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(64))
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(200))
    details: Mapped[dict | None] = mapped_column(JSON)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)
    timestamp: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "action": self.action,
            "resource": self.resource,
            "resourceId": self.resource_id,
            "details": self.details,
            "severity": self.severity,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self) -> str:
        return f"<AuditLog {self.action!r} by {self.user_id!r} [{self.severity}]>"


@event.listens_for(AuditLog, "before_update")
def _reject_update(mapper, connection, target) -> None:
    raise ImmutableAuditLogError(f"Audit entry {target.id} cannot be modified")


@event.listens_for(AuditLog, "before_delete")
def _reject_delete(mapper, connection, target) -> None:
    raise ImmutableAuditLogError(f"Audit entry {target.id} cannot be deleted")
