"""Middleware that logs read-access events for sensitive endpoints.

Intercepts successful GET requests to configurable route prefixes and
appends a ``read_access`` audit entry.  The entry is written asynchronously
(fire-and-forget) so it does not slow down the response.

User information is read from ``request.state._audit_user``, which is
set by ``get_current_principal()`` in ``middleware/auth.py``.
"""

from __future__ import annotations

import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from reform_tracker.services.audit_service import (
    AuditEntry,
    AuditRecorder,
    AuditSeverity,
    RequestDetails,
)

logger = logging.getLogger(__name__)


class AuditReadAccessMiddleware(BaseHTTPMiddleware):
    """Log read-access events for sensitive data views."""

    def __init__(
        self,
        app,
        recorder: AuditRecorder,
        prefixes: list[str],
    ) -> None:
        super().__init__(app)
        self.recorder = recorder
        self.prefixes = prefixes

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.method != "GET":
            return await call_next(request)

        path = request.url.path
        if not any(path.startswith(p) for p in self.prefixes):
            return await call_next(request)

        response = await call_next(request)

        # Only log successful responses (2xx)
        if 200 <= response.status_code < 300:
            principal = getattr(request.state, "_audit_user", None)

            self.recorder.fire_and_forget(AuditEntry(
                user_id=principal.id if principal else None,
                action="read_access",
                resource="endpoint",
                resource_id=path,
                severity=AuditSeverity.LOW,
                details=RequestDetails(
                    method=request.method,
                    path=path,
                    query_params=dict(request.query_params),
                    status_code=response.status_code,
                ),
                ip_address=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
            ))

        return response
