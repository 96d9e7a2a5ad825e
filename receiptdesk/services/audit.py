"""
Audit Trail

Append-only record of every stage a file passes through:
- when the stage ran
- what it decided (status, provider, matched rule)
- why it failed, when it did
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from receiptdesk.models.documents import IngestStage
from receiptdesk.services.db import DB

logger = logging.getLogger(__name__)

AUDIT_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        event_id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL,
        user_id TEXT,
        stage TEXT NOT NULL,
        summary TEXT NOT NULL,
        details TEXT,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_document ON audit_events(document_id)",
]


@dataclass
class AuditEvent:
    """A single event in the audit trail."""
    document_id: str
    stage: IngestStage
    summary: str
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: f"AUD-{uuid.uuid4().hex[:12]}")
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "document_id": self.document_id,
            "user_id": self.user_id,
            "stage": self.stage.value,
            "summary": self.summary,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class AuditTrailService:
    """Keeps recent events in memory and, when a DB is given, mirrors them there.

    DB writes run in a worker thread. The in-memory trail is bounded; the DB
    copy is the complete one.
    """

    def __init__(self, db: Optional[DB] = None, max_events: int = 10000) -> None:
        self.db = db
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        if self.db is not None:
            self.db.executescript(AUDIT_SCHEMA)

    async def record_event(
        self,
        document_id: str,
        stage: IngestStage,
        summary: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        event = AuditEvent(
            document_id=document_id,
            stage=stage,
            summary=summary,
            user_id=user_id,
            details=dict(details or {}),
        )
        self._events.append(event)
        if self.db is not None:
            try:
                await asyncio.to_thread(self._insert, event)
            except Exception as exc:
                logger.warning(f"Could not persist audit event {event.event_id}: {exc}")
        return event.event_id

    def _insert(self, event: AuditEvent) -> None:
        self.db.execute(
            "INSERT INTO audit_events (event_id, document_id, user_id, stage, summary, details, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (event.event_id, event.document_id, event.user_id, event.stage.value, event.summary,
             json.dumps(event.details, default=str), event.timestamp),
        )

    def get_trail(self, document_id: str) -> List[AuditEvent]:
        return [e for e in self._events if e.document_id == document_id]

    def stages_for(self, document_id: str) -> List[IngestStage]:
        return [e.stage for e in self.get_trail(document_id)]

    async def load_trail(self, document_id: str) -> List[Dict[str, Any]]:
        """Full trail for one document, from the DB when there is one."""
        if self.db is None:
            return [e.to_dict() for e in self.get_trail(document_id)]
        rows = await asyncio.to_thread(
            self.db.fetchall_dict,
            "SELECT event_id, document_id, user_id, stage, summary, details, timestamp "
            "FROM audit_events WHERE document_id = ? ORDER BY timestamp, rowid",
            (document_id,),
        )
        for row in rows:
            row["details"] = json.loads(row["details"]) if row.get("details") else {}
        return rows
