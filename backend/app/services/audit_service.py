"""Ledger audit trail.

Every posting, reversal, subledger record, period lock/reopen and
reconciliation resolution is recorded twice:

* an ``audit_log`` row added to the caller's session, so it commits (or
  rolls back) together with the change it describes;
* a mirror copy appended to a daily JSONL file and a local SQLite file,
  written fire-and-forget on the default thread pool once the row exists.

Events are categorised by origin:

* **MUTATION** -- ledger changes
* **READ_ACCESS** -- sensitive report views (student statements, trial balance)
* **SYSTEM** -- scheduler runs, startup/shutdown
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings

logger = logging.getLogger(__name__)


class AuditEventCategory(str, enum.Enum):
    MUTATION = "mutation"
    READ_ACCESS = "read_access"
    SYSTEM = "system"


@dataclasses.dataclass(frozen=True)
class AuditEvent:
    id: UUID
    timestamp: datetime
    category: AuditEventCategory
    actor: str | None
    action: str
    table_name: str | None
    record_id: str | None
    old_value: dict | None = None
    new_value: dict | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "actor": self.actor,
            "action": self.action,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


_SYSTEM_PREFIXES = ("system.", "scheduler.")
_READ_PREFIXES = ("read.",)


def classify_action(action: str) -> AuditEventCategory:
    """Map an action string to its event category."""
    action_lower = action.lower()
    if action_lower.startswith(_SYSTEM_PREFIXES):
        return AuditEventCategory.SYSTEM
    if action_lower.startswith(_READ_PREFIXES):
        return AuditEventCategory.READ_ACCESS
    # Unknown actions count as mutations
    return AuditEventCategory.MUTATION


# ---------------------------------------------------------------------------
# Mirror writer (JSONL + SQLite)
# ---------------------------------------------------------------------------


class AuditMirrorWriter:
    """Appends audit events to daily JSONL files and a SQLite table."""

    def __init__(self, base_path: str) -> None:
        self.base_path = Path(base_path)
        self.jsonl_dir = self.base_path / "jsonl"
        self.sqlite_path = self.base_path / "audit.db"

        self.jsonl_dir.mkdir(parents=True, exist_ok=True)
        self._init_sqlite()

    def _init_sqlite(self) -> None:
        conn = sqlite3.connect(str(self.sqlite_path))
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id          TEXT PRIMARY KEY,
                    timestamp   TEXT NOT NULL,
                    category    TEXT NOT NULL,
                    actor       TEXT,
                    action      TEXT NOT NULL,
                    table_name  TEXT,
                    record_id   TEXT,
                    old_value   TEXT,
                    new_value   TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ae_record "
                "ON audit_events(table_name, record_id)"
            )
            conn.commit()
        finally:
            conn.close()

    def _get_jsonl_path(self, dt: datetime) -> Path:
        return self.jsonl_dir / f"{dt.strftime('%Y-%m-%d')}.jsonl"

    def write_sync(self, event: AuditEvent) -> None:
        with open(self._get_jsonl_path(event.timestamp), "a", encoding="utf-8") as f:
            f.write(event.to_json_line() + "\n")

        conn = sqlite3.connect(str(self.sqlite_path))
        try:
            conn.execute(
                """INSERT OR IGNORE INTO audit_events
                   (id, timestamp, category, actor, action, table_name,
                    record_id, old_value, new_value)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    str(event.id),
                    event.timestamp.isoformat(),
                    event.category.value,
                    event.actor,
                    event.action,
                    event.table_name,
                    event.record_id,
                    json.dumps(event.old_value, default=str) if event.old_value else None,
                    json.dumps(event.new_value, default=str) if event.new_value else None,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    async def write_async(self, event: AuditEvent) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.write_sync, event)

    def fire_and_forget(self, event: AuditEvent) -> None:
        """Schedule the write without awaiting. Failures are logged only."""
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(self._safe_write(event))
        except RuntimeError:
            # No running loop (e.g. during shutdown)
            try:
                self.write_sync(event)
            except Exception:
                logger.exception("Audit mirror write failed (sync fallback)")

    async def _safe_write(self, event: AuditEvent) -> None:
        try:
            await self.write_async(event)
        except Exception:
            logger.exception("Audit mirror write failed for event %s", event.id)


_mirror_writer: AuditMirrorWriter | None = None


def get_audit_writer() -> AuditMirrorWriter:
    global _mirror_writer
    if _mirror_writer is None:
        _mirror_writer = AuditMirrorWriter(base_path=settings.AUDIT_STORAGE_PATH)
    return _mirror_writer


def system_event(action: str, details: dict | None = None) -> None:
    """Mirror-only SYSTEM event (startup, scheduler runs)."""
    get_audit_writer().fire_and_forget(AuditEvent(
        id=uuid4(),
        timestamp=datetime.now(timezone.utc),
        category=AuditEventCategory.SYSTEM,
        actor="system",
        action=action,
        table_name=None,
        record_id=None,
        new_value=details,
    ))


# ---------------------------------------------------------------------------
# Primary write
# ---------------------------------------------------------------------------


async def record_audit(
    db: AsyncSession,
    actor: str | None,
    action: str,
    table_name: str,
    record_id: Any = None,
    old_value: dict | None = None,
    new_value: dict | None = None,
) -> None:
    """Add an ``audit_log`` row to the session, then mirror it."""
    from app.models.audit import AuditLog

    category = classify_action(action)
    entry = AuditLog(
        id=uuid4(),
        actor=actor,
        action=action,
        table_name=table_name,
        record_id=str(record_id) if record_id is not None else None,
        old_value=_jsonable(old_value),
        new_value=_jsonable(new_value),
        event_category=category.value,
    )
    db.add(entry)
    await db.flush()

    get_audit_writer().fire_and_forget(AuditEvent(
        id=entry.id,
        timestamp=datetime.now(timezone.utc),
        category=category,
        actor=actor,
        action=action,
        table_name=table_name,
        record_id=entry.record_id,
        old_value=entry.old_value,
        new_value=entry.new_value,
    ))


def _jsonable(value: dict | None) -> dict | None:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))
