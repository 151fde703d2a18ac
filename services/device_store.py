"""Device and column-definition persistence."""
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from models.device import (
    ColumnDataType,
    ColumnDefinition,
    HeaderDiff,
    NormalizedDevice,
    OffboardingMetadata,
)
from services.database import (
    Database,
    dump_json,
    from_db_time,
    load_json,
    to_db_time,
    utc_now,
)

logger = logging.getLogger(__name__)

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER is 999 on older builds
_SERIAL_CHUNK = 500


class UpsertAction(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class UpsertResult:
    action: UpsertAction
    previous_legacy_device_id: Optional[str] = None

    @property
    def written(self) -> bool:
        return self.action != UpsertAction.UNCHANGED


def _metadata_to_dict(metadata: Optional[OffboardingMetadata]) -> Optional[dict]:
    if metadata is None:
        return None
    return {
        "last_actor": metadata.last_actor,
        "last_action": metadata.last_action,
        "last_transfer_at": to_db_time(metadata.last_transfer_at),
    }


def _metadata_from_dict(data: Optional[dict]) -> Optional[OffboardingMetadata]:
    if not data:
        return None
    return OffboardingMetadata(
        last_actor=data.get("last_actor"),
        last_action=data.get("last_action"),
        last_transfer_at=from_db_time(data.get("last_transfer_at")),
    )


def _row_to_device(row: sqlite3.Row) -> NormalizedDevice:
    return NormalizedDevice(
        serial=row["serial"],
        legacy_device_id=row["legacy_device_id"],
        sheet_id=row["sheet_id"],
        assigned_to=row["assigned_to"],
        status=row["status"],
        condition=row["condition"],
        offboarding_status=row["offboarding_status"],
        offboarding_metadata=_metadata_from_dict(load_json(row["offboarding_metadata"])),
        last_seen=from_db_time(row["last_seen"]),
        last_transfer_notes=row["last_transfer_notes"],
        last_synced_at=from_db_time(row["last_synced_at"]),
        dynamic_attributes=load_json(row["dynamic_attributes"], default={}),
        column_definitions_version=row["column_definitions_version"],
        content_hash=row["content_hash"],
    )


def _device_params(device: NormalizedDevice) -> dict:
    return {
        "sheet_id": device.sheet_id,
        "serial": device.serial,
        "legacy_device_id": device.legacy_device_id,
        "assigned_to": device.assigned_to,
        "status": device.status,
        "condition": device.condition,
        "offboarding_status": device.offboarding_status,
        "offboarding_metadata": dump_json(_metadata_to_dict(device.offboarding_metadata)),
        "last_seen": to_db_time(device.last_seen),
        "last_transfer_notes": device.last_transfer_notes,
        "last_synced_at": to_db_time(device.last_synced_at),
        "dynamic_attributes": dump_json(device.dynamic_attributes),
        "column_definitions_version": device.column_definitions_version,
        "content_hash": device.content_hash,
    }


class DeviceStore:
    """Devices keyed by (sheet_id, serial)."""

    def __init__(self, database: Database):
        self.database = database

    def find(self, sheet_id: str, serial: str) -> Optional[NormalizedDevice]:
        """Look up one device; serials are stored lower-cased."""
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM devices WHERE sheet_id = ? AND serial = ?",
                (sheet_id, serial.lower()),
            ).fetchone()
        return _row_to_device(row) if row else None

    def find_by_serials(self, sheet_id: str, serials: Iterable[str]) -> Dict[str, NormalizedDevice]:
        serials = list(dict.fromkeys(serial.lower() for serial in serials))
        found: Dict[str, NormalizedDevice] = {}
        with self.database.connection() as conn:
            for start in range(0, len(serials), _SERIAL_CHUNK):
                chunk = serials[start:start + _SERIAL_CHUNK]
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT * FROM devices WHERE sheet_id = ? AND serial IN ({placeholders})",
                    (sheet_id, *chunk),
                ).fetchall()
                for row in rows:
                    found[row["serial"]] = _row_to_device(row)
        return found

    def list_devices(self, sheet_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[NormalizedDevice]:
        query = "SELECT * FROM devices"
        params: list = []
        if sheet_id:
            query += " WHERE sheet_id = ?"
            params.append(sheet_id)
        query += " ORDER BY serial LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self.database.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_device(row) for row in rows]

    def count(self, sheet_id: Optional[str] = None) -> int:
        with self.database.connection() as conn:
            if sheet_id:
                row = conn.execute("SELECT COUNT(*) FROM devices WHERE sheet_id = ?", (sheet_id,)).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM devices").fetchone()
        return row[0]

    def upsert(self, device: NormalizedDevice, now: Optional[datetime] = None) -> UpsertResult:
        """Insert or update one device; identical content hashes are not written."""
        now_text = to_db_time(now or utc_now())
        params = _device_params(device)

        with self.database.connection() as conn:
            existing = conn.execute(
                "SELECT content_hash, legacy_device_id FROM devices WHERE sheet_id = ? AND serial = ?",
                (device.sheet_id, device.serial),
            ).fetchone()

            if existing is None:
                try:
                    conn.execute(
                        """INSERT INTO devices
                           (sheet_id, serial, legacy_device_id, assigned_to, status, condition,
                            offboarding_status, offboarding_metadata, last_seen, last_transfer_notes,
                            last_synced_at, dynamic_attributes, column_definitions_version,
                            content_hash, created_at, updated_at)
                           VALUES (:sheet_id, :serial, :legacy_device_id, :assigned_to, :status, :condition,
                                   :offboarding_status, :offboarding_metadata, :last_seen, :last_transfer_notes,
                                   :last_synced_at, :dynamic_attributes, :column_definitions_version,
                                   :content_hash, :now, :now)""",
                        {**params, "now": now_text},
                    )
                    conn.commit()
                    return UpsertResult(UpsertAction.ADDED)
                except sqlite3.IntegrityError:
                    # Inserted concurrently by another writer
                    conn.rollback()
                    existing = conn.execute(
                        "SELECT content_hash, legacy_device_id FROM devices WHERE sheet_id = ? AND serial = ?",
                        (device.sheet_id, device.serial),
                    ).fetchone()

            if existing["content_hash"] == device.content_hash:
                return UpsertResult(UpsertAction.UNCHANGED, existing["legacy_device_id"])

            conn.execute(
                """UPDATE devices SET
                       legacy_device_id = :legacy_device_id,
                       assigned_to = :assigned_to,
                       status = :status,
                       condition = :condition,
                       offboarding_status = :offboarding_status,
                       offboarding_metadata = :offboarding_metadata,
                       last_seen = :last_seen,
                       last_transfer_notes = :last_transfer_notes,
                       last_synced_at = :last_synced_at,
                       dynamic_attributes = :dynamic_attributes,
                       column_definitions_version = :column_definitions_version,
                       content_hash = :content_hash,
                       updated_at = :now
                   WHERE sheet_id = :sheet_id AND serial = :serial""",
                {**params, "now": now_text},
            )
            conn.commit()
            return UpsertResult(UpsertAction.UPDATED, existing["legacy_device_id"])


def _row_to_column(row: sqlite3.Row) -> ColumnDefinition:
    return ColumnDefinition(
        sheet_id=row["sheet_id"],
        column_key=row["column_key"],
        label=row["label"],
        display_order=row["display_order"],
        data_type=ColumnDataType(row["data_type"]),
        nullable=bool(row["nullable"]),
        detected_at=from_db_time(row["detected_at"]),
        last_seen_at=from_db_time(row["last_seen_at"]),
        removed_at=from_db_time(row["removed_at"]),
        source_version=row["source_version"],
    )


class ColumnDefinitionStore:
    """Column definitions keyed by (sheet_id, column_key), soft-deleted via removed_at."""

    def __init__(self, database: Database):
        self.database = database

    def list_active(self, sheet_id: str) -> List[ColumnDefinition]:
        with self.database.connection() as conn:
            rows = conn.execute(
                """SELECT * FROM column_definitions
                   WHERE sheet_id = ? AND removed_at IS NULL
                   ORDER BY display_order, column_key""",
                (sheet_id,),
            ).fetchall()
        return [_row_to_column(row) for row in rows]

    def list_all(self, sheet_id: str) -> List[ColumnDefinition]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM column_definitions WHERE sheet_id = ? ORDER BY display_order, column_key",
                (sheet_id,),
            ).fetchall()
        return [_row_to_column(row) for row in rows]

    def apply_diff(self, sheet_id: str, diff: HeaderDiff, source_version: str, now: Optional[datetime] = None):
        """Upsert added/unchanged columns and stamp removed_at on removed ones.

        Runs in one transaction.
        """
        now_text = to_db_time(now or utc_now())
        with self.database.connection() as conn:
            for entry in [*diff.added, *diff.unchanged]:
                conn.execute(
                    """INSERT INTO column_definitions
                       (sheet_id, column_key, label, display_order, data_type, nullable,
                        detected_at, last_seen_at, removed_at, source_version)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)
                       ON CONFLICT (sheet_id, column_key) DO UPDATE SET
                           label = excluded.label,
                           display_order = excluded.display_order,
                           data_type = excluded.data_type,
                           nullable = excluded.nullable,
                           last_seen_at = excluded.last_seen_at,
                           removed_at = NULL,
                           source_version = excluded.source_version""",
                    (
                        sheet_id,
                        entry.key,
                        entry.label,
                        entry.display_order,
                        entry.data_type.value,
                        int(entry.nullable),
                        now_text,
                        now_text,
                        source_version,
                    ),
                )
            for entry in diff.removed:
                conn.execute(
                    """UPDATE column_definitions SET removed_at = ?, source_version = ?
                       WHERE sheet_id = ? AND column_key = ? AND removed_at IS NULL""",
                    (now_text, source_version, sheet_id, entry.key),
                )
            conn.commit()
        logger.debug(
            f"Column definitions updated for {sheet_id}: "
            f"+{len(diff.added)} -{len(diff.removed)} ={len(diff.unchanged)}"
        )
