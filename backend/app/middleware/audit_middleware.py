"""Middleware that logs read-access events for sensitive ledger views.

Intercepts successful GET requests to configurable route prefixes (student
statements, trial balance, aging) and fires a ``READ_ACCESS`` audit event to
the mirror writer. The event is written fire-and-forget so it does not slow
down the response.

User information is read from ``request.state._audit_user``, which is set by
``get_current_user()`` in ``middleware/auth.py``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from app.services.audit_service import AuditEvent, AuditEventCategory, AuditMirrorWriter

logger = logging.getLogger(__name__)


class AuditReadAccessMiddleware(BaseHTTPMiddleware):
    """Log read-access events for sensitive data views."""

    def __init__(self, app, writer: AuditMirrorWriter, prefixes: list[str]) -> None:
        super().__init__(app)
        self.writer = writer
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

        if 200 <= response.status_code < 300:
            user_info = getattr(request.state, "_audit_user", None)
            self.writer.fire_and_forget(AuditEvent(
                id=uuid4(),
                timestamp=datetime.now(timezone.utc),
                category=AuditEventCategory.READ_ACCESS,
                actor=user_info.get("username") if user_info else None,
                action=f"read.{path.strip('/').replace('/', '.')}",
                table_name=None,
                record_id=path,
                new_value={
                    "query_params": dict(request.query_params),
                    "status_code": response.status_code,
                },
            ))

        return response
