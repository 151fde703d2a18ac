"""Telemetry sink: sync events and audit log entries."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from services.database import (
    Clock,
    Database,
    dump_json,
    from_db_time,
    load_json,
    to_db_time,
    utc_now,
)

logger = logging.getLogger(__name__)

SYNC_RUN = "SYNC_RUN"
SYNC_COLUMNS_CHANGED = "SYNC_COLUMNS_CHANGED"
SERIAL_AUDIT = "SERIAL_AUDIT"


@dataclass
class SyncEvent:
    id: int
    event_type: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    route: Optional[str] = None
    method: Optional[str] = None
    reason: Optional[str] = None
    request_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "eventType": self.event_type,
            "route": self.route,
            "method": self.method,
            "reason": self.reason,
            "requestId": self.request_id,
            "createdAt": to_db_time(self.created_at),
            "metadata": self.metadata,
        }


@dataclass
class AuditLogEntry:
    id: int
    action: str
    status: str
    created_at: datetime
    event_type: str = "sync"
    actor: Optional[str] = None
    error_code: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "eventType": self.event_type,
            "action": self.action,
            "actor": self.actor,
            "status": self.status,
            "errorCode": self.error_code,
            "context": self.context,
            "createdAt": to_db_time(self.created_at),
        }


def _row_to_event(row) -> SyncEvent:
    return SyncEvent(
        id=row["id"],
        event_type=row["event_type"],
        route=row["route"],
        method=row["method"],
        reason=row["reason"],
        request_id=row["request_id"],
        created_at=from_db_time(row["created_at"]),
        metadata=load_json(row["metadata"], default={}),
    )


class SyncEventStore:
    """Append-only sync event log."""

    def __init__(self, database: Database, clock: Clock = utc_now):
        self.database = database
        self.clock = clock

    def record(
        self,
        event_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        route: Optional[str] = None,
        method: Optional[str] = None,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> SyncEvent:
        created_at = self.clock()
        metadata = metadata or {}
        with self.database.connection() as conn:
            cursor = conn.execute(
                """INSERT INTO sync_events
                   (event_type, route, method, reason, request_id, created_at, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (event_type, route, method, reason, request_id, to_db_time(created_at), dump_json(metadata)),
            )
            conn.commit()
            event_id = cursor.lastrowid
        logger.debug(f"Recorded {event_type} event {event_id}")
        return SyncEvent(
            id=event_id,
            event_type=event_type,
            route=route,
            method=method,
            reason=reason,
            request_id=request_id,
            created_at=created_at,
            metadata=metadata,
        )

    def latest(self, event_type: str = SYNC_RUN) -> Optional[SyncEvent]:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_events WHERE event_type = ? ORDER BY id DESC LIMIT 1",
                (event_type,),
            ).fetchone()
        return _row_to_event(row) if row else None

    def latest_run(self, trigger: Optional[str] = None, include_skipped: bool = True) -> Optional[SyncEvent]:
        """Most recent SYNC_RUN event, optionally filtered by trigger and status."""
        query = "SELECT * FROM sync_events WHERE event_type = ?"
        params: list = [SYNC_RUN]
        if trigger:
            query += " AND json_extract(metadata, '$.trigger') = ?"
            params.append(trigger)
        if not include_skipped:
            query += " AND json_extract(metadata, '$.status') != 'skipped'"
        query += " ORDER BY id DESC LIMIT 1"
        with self.database.connection() as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_event(row) if row else None

    def list_recent(self, event_type: Optional[str] = None, limit: int = 20) -> List[SyncEvent]:
        with self.database.connection() as conn:
            if event_type:
                rows = conn.execute(
                    "SELECT * FROM sync_events WHERE event_type = ? ORDER BY id DESC LIMIT ?",
                    (event_type, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sync_events ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        return [_row_to_event(row) for row in rows]


class AuditLogStore:
    """Audit trail of sync actions."""

    def __init__(self, database: Database, clock: Clock = utc_now):
        self.database = database
        self.clock = clock

    def record(
        self,
        action: str,
        status: str,
        actor: Optional[str] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        event_type: str = "sync",
    ) -> AuditLogEntry:
        created_at = self.clock()
        context = context or {}
        with self.database.connection() as conn:
            cursor = conn.execute(
                """INSERT INTO audit_logs
                   (event_type, action, actor, status, error_code, context, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (event_type, action, actor, status, error_code, dump_json(context), to_db_time(created_at)),
            )
            conn.commit()
            entry_id = cursor.lastrowid
        return AuditLogEntry(
            id=entry_id,
            event_type=event_type,
            action=action,
            actor=actor,
            status=status,
            error_code=error_code,
            context=context,
            created_at=created_at,
        )

    def list_recent(self, limit: int = 20) -> List[AuditLogEntry]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_logs ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [
            AuditLogEntry(
                id=row["id"],
                event_type=row["event_type"],
                action=row["action"],
                actor=row["actor"],
                status=row["status"],
                error_code=row["error_code"],
                context=load_json(row["context"], default={}),
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]
