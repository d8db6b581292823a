"""Append-only audit recording service.

Every access decision made by the guards, and every administrative or domain
event a handler chooses to log, is written to the ``audit_logs`` table through
the ``AuditRecorder``.  Each entry carries a severity:

* **critical** -- reserved for security incidents
* **high** -- clearance denials, role and account changes
* **medium** -- permission denials
* **low** -- routine mutations and sensitive reads
* **info** -- grants and informational events

The recorder writes each entry in its own transaction so that an entry
survives even when the request that produced it is rejected.  Writes are
bounded by a timeout; failures are logged and never propagate to the guarded
operation.  The ``fire_and_forget`` method schedules the write without
awaiting it, for events that describe something that already happened.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reform_tracker.config import settings
from reform_tracker.models.audit import AuditLog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Severity
# ---------------------------------------------------------------------------


class AuditSeverity(str, enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# ---------------------------------------------------------------------------
# Structured ``details`` payloads, one per kind of event
# ---------------------------------------------------------------------------


class AuditDetails(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PermissionCheckDetails(AuditDetails):
    permission: str
    user_role: str
    reason: str | None = None


class SecurityCheckDetails(AuditDetails):
    required_level: str
    user_level: str
    reason: str | None = None


class RequestDetails(AuditDetails):
    method: str
    path: str
    body: Any = None
    query_params: dict[str, str] | None = None
    status_code: int | None = None


class RoleChangeDetails(AuditDetails):
    target_user_id: str
    previous_role: str
    new_role: str
    previous_permissions: dict[str, bool]
    new_permissions: dict[str, bool]
    security_level: str | None = None


class RoleDefinitionDetails(AuditDetails):
    role: str
    added: list[str]
    removed: list[str]


class AccountStatusDetails(AuditDetails):
    target_user_id: str
    is_active: bool


class SettingChangeDetails(AuditDetails):
    key: str
    previous_value: Any = None
    new_value: Any = None


class SessionDetails(AuditDetails):
    session_id: str
    target_user_id: str


# ---------------------------------------------------------------------------
# Canonical audit entry (input to the recorder)
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class AuditEntry:
    user_id: str | None
    action: str
    resource: str
    severity: AuditSeverity
    resource_id: str | None = None
    details: AuditDetails | dict | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def details_json(self) -> dict | None:
        if isinstance(self.details, AuditDetails):
            return self.details.to_json()
        return self.details

    def to_model(self) -> AuditLog:
        return AuditLog(
            user_id=self.user_id,
            action=self.action,
            resource=self.resource,
            resource_id=self.resource_id,
            details=self.details_json(),
            severity=AuditSeverity(self.severity).value,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )


# ---------------------------------------------------------------------------
# Action → severity classifier (for events logged without an explicit one)
# ---------------------------------------------------------------------------

_HIGH_KEYWORDS = {
    "deactivate",
    "delete",
    "role",
    "permission",
    "permissions",
    "revoke",
}

_LOW_KEYWORDS = {
    "create",
    "update",
    "edit",
    "approve",
    "assign",
    "upload",
    "respond",
    "submit",
}


def classify_severity(action: str) -> AuditSeverity:
    """Map an action string to a default severity."""
    parts = action.lower().replace(".", "_").replace(":", "_").split("_")

    for part in parts:
        if part in _HIGH_KEYWORDS:
            return AuditSeverity.HIGH
    for part in parts:
        if part in _LOW_KEYWORDS:
            return AuditSeverity.LOW

    return AuditSeverity.INFO


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class AuditRecorder:
    """Appends entries to ``audit_logs``.

    Insert-only: it exposes no update or delete.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: float = 2.0,
    ) -> None:
        self.session_factory = session_factory
        self.timeout = timeout
        self._pending: set[asyncio.Task] = set()

    async def _write(self, entry: AuditEntry) -> AuditLog:
        row = entry.to_model()
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
        return row

    async def record(self, entry: AuditEntry) -> AuditLog | None:
        """Persist *entry* and return the stored row, or ``None`` on failure."""
        try:
            return await asyncio.wait_for(self._write(entry), timeout=self.timeout)
        except Exception:
            logger.exception(
                "Audit write failed for action %r (user=%s)", entry.action, entry.user_id
            )
            return None

    def fire_and_forget(self, entry: AuditEntry) -> None:
        """Schedule the write without awaiting.  Failures are logged only."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("No running event loop; audit entry %r dropped", entry.action)
            return
        task = loop.create_task(self.record(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for scheduled fire-and-forget writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


_recorder: AuditRecorder | None = None


def get_audit_recorder() -> AuditRecorder:
    global _recorder
    if _recorder is None:
        from reform_tracker.database import AsyncSessionLocal

        _recorder = AuditRecorder(
            AsyncSessionLocal,
            timeout=settings.AUDIT_WRITE_TIMEOUT_SECONDS,
        )
    return _recorder


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------

DEFAULT_AUDIT_LIMIT = 100
MAX_AUDIT_LIMIT = 500


async def list_audit(
    db: AsyncSession,
    *,
    user_id: str | None = None,
    action: str | None = None,
    severity: AuditSeverity | str | None = None,
    limit: int | None = None,
) -> list[AuditLog]:
    """Return audit entries matching the filters, newest first."""
    stmt = select(AuditLog)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if severity:
        stmt = stmt.where(AuditLog.severity == AuditSeverity(severity).value)

    if limit is None:
        limit = DEFAULT_AUDIT_LIMIT
    limit = max(1, min(limit, MAX_AUDIT_LIMIT))

    stmt = stmt.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
