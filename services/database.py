"""SQLite store handle shared by the sync stores and the sync lock."""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Seconds a connection waits on another writer before raising "database is locked"
BUSY_TIMEOUT_SECONDS = 30.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


def load_json(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return default
    return json.loads(value)


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sheet_id TEXT NOT NULL,
        serial TEXT NOT NULL,
        legacy_device_id TEXT,
        assigned_to TEXT NOT NULL,
        status TEXT NOT NULL,
        condition TEXT NOT NULL,
        offboarding_status TEXT,
        offboarding_metadata TEXT,
        last_seen TEXT,
        last_transfer_notes TEXT,
        last_synced_at TEXT NOT NULL,
        dynamic_attributes TEXT,
        column_definitions_version TEXT,
        content_hash TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (sheet_id, serial)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS column_definitions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sheet_id TEXT NOT NULL,
        column_key TEXT NOT NULL,
        label TEXT NOT NULL,
        display_order INTEGER NOT NULL,
        data_type TEXT NOT NULL,
        nullable INTEGER NOT NULL,
        detected_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        removed_at TEXT,
        source_version TEXT NOT NULL,
        UNIQUE (sheet_id, column_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_locks (
        key TEXT PRIMARY KEY,
        locked INTEGER NOT NULL DEFAULT 0,
        lock_id TEXT,
        locked_at INTEGER,
        release_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        route TEXT,
        method TEXT,
        reason TEXT,
        request_id TEXT,
        created_at TEXT NOT NULL,
        metadata TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        action TEXT NOT NULL,
        actor TEXT,
        status TEXT NOT NULL,
        error_code TEXT,
        context TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sync_events_type_created ON sync_events (event_type, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_created ON audit_logs (created_at)",
)


class Database:
    """Explicit handle to the SQLite file backing the sync worker.

    Constructed once by the caller and passed to every store. Each
    ``connection()`` opens a fresh connection, so the handle is safe to
    share across threads.
    """

    def __init__(self, db_path: Union[str, Path] = "data/device_roster.db", busy_timeout: float = BUSY_TIMEOUT_SECONDS):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_schema()

    def init_schema(self):
        with self.connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            conn.commit()
        logger.debug(f"Database schema ready at {self.db_path}")

    @contextmanager
    def connection(self):
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()
