"""Data models for the device roster sync."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

# Typed cell as produced by the sheet reader
CellValue = Union[str, int, float, bool, datetime, None]
TypedRow = Dict[str, CellValue]

# Scalars allowed inside dynamic_attributes
DynamicValue = Union[str, int, float, bool, None]

DEFAULT_LOCK_KEY = "device-sync"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ColumnDataType(Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    NULL = "null"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SheetHeader:
    """A header cell from the source sheet."""
    name: str
    normalized_name: str
    position: int  # 0-based column index


@dataclass(frozen=True)
class HeaderDefinition:
    """A column in the header registry."""
    key: str
    label: str
    display_order: int
    data_type: ColumnDataType = ColumnDataType.UNKNOWN
    nullable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "displayOrder": self.display_order,
            "dataType": self.data_type.value,
            "nullable": self.nullable,
        }


@dataclass
class HeaderDiff:
    """Registry changes between two sync runs, keyed by column key."""
    added: List[HeaderDefinition] = field(default_factory=list)
    removed: List[HeaderDefinition] = field(default_factory=list)
    unchanged: List[HeaderDefinition] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed)


@dataclass
class ColumnDefinition:
    """Persisted column definition for a sheet."""
    sheet_id: str
    column_key: str
    label: str
    display_order: int
    data_type: ColumnDataType
    nullable: bool
    detected_at: datetime
    last_seen_at: datetime
    source_version: str
    removed_at: Optional[datetime] = None

    def to_header_definition(self) -> HeaderDefinition:
        return HeaderDefinition(
            key=self.column_key,
            label=self.label,
            display_order=self.display_order,
            data_type=self.data_type,
            nullable=self.nullable,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sheetId": self.sheet_id,
            "columnKey": self.column_key,
            "label": self.label,
            "displayOrder": self.display_order,
            "dataType": self.data_type.value,
            "nullable": self.nullable,
            "detectedAt": _iso(self.detected_at),
            "lastSeenAt": _iso(self.last_seen_at),
            "removedAt": _iso(self.removed_at),
            "sourceVersion": self.source_version,
        }


@dataclass(frozen=True)
class OffboardingMetadata:
    """Last hand-off details recorded on the sheet."""
    last_actor: Optional[str] = None
    last_action: Optional[str] = None
    last_transfer_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastActor": self.last_actor,
            "lastAction": self.last_action,
            "lastTransferAt": _iso(self.last_transfer_at),
        }


@dataclass
class NormalizedDevice:
    """Canonical device record produced from one sheet row."""
    serial: str
    sheet_id: str
    last_synced_at: datetime
    assigned_to: str = "Unassigned"
    status: str = "Unknown"
    condition: str = "Unknown"
    legacy_device_id: Optional[str] = None
    offboarding_status: Optional[str] = None
    offboarding_metadata: Optional[OffboardingMetadata] = None
    last_seen: Optional[datetime] = None
    last_transfer_notes: Optional[str] = None
    dynamic_attributes: Dict[str, DynamicValue] = field(default_factory=dict)
    column_definitions_version: Optional[str] = None
    content_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serial": self.serial,
            "legacyDeviceId": self.legacy_device_id,
            "sheetId": self.sheet_id,
            "assignedTo": self.assigned_to,
            "status": self.status,
            "condition": self.condition,
            "offboardingStatus": self.offboarding_status,
            "offboardingMetadata": (
                self.offboarding_metadata.to_dict() if self.offboarding_metadata else None
            ),
            "lastSeen": _iso(self.last_seen),
            "lastTransferNotes": self.last_transfer_notes,
            "lastSyncedAt": _iso(self.last_synced_at),
            "dynamicAttributes": dict(self.dynamic_attributes),
            "columnDefinitionsVersion": self.column_definitions_version,
            "contentHash": self.content_hash,
        }


@dataclass
class NormalizationResult:
    """Output of normalizing a batch of sheet rows."""
    devices: List[NormalizedDevice]
    row_count: int
    skipped: int
    anomalies: List[str]


@dataclass(frozen=True)
class SyncLockState:
    """Snapshot of the singleton lock document."""
    key: str
    locked: bool
    lock_id: Optional[str] = None
    locked_at: Optional[datetime] = None
    release_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "locked": self.locked,
            "lockId": self.lock_id,
            "lockedAt": _iso(self.locked_at),
            "releaseAt": _iso(self.release_at),
        }


@dataclass(frozen=True)
class LockAcquisition:
    acquired: bool
    lock: Optional[SyncLockState]


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    SYSTEM = "system"


@dataclass(frozen=True)
class TriggerContext:
    """Who or what started a sync run."""
    type: TriggerType = TriggerType.SYSTEM
    requested_by: Optional[str] = None
    anonymized: bool = False
    queue_latency_ms: Optional[int] = None


class SyncRunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SyncRunResult:
    """Telemetry record for one sync invocation. Immutable once built."""
    run_id: str
    sheet_id: str
    status: SyncRunStatus
    trigger: TriggerContext
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    row_count: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    anomalies: Tuple[str, ...] = ()
    legacy_ids_updated: int = 0
    serial_conflicts: int = 0
    rows_audited: int = 0
    missing_serial_count: int = 0
    skipped_rows: Tuple[Dict[str, Any], ...] = ()
    columns_added: int = 0
    columns_removed: int = 0
    column_total: int = 0
    column_version: Optional[str] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    reference_id: Optional[str] = None

    @property
    def conflicts(self) -> int:
        return self.serial_conflicts

    def to_metadata(self) -> Dict[str, Any]:
        """Serialize for the telemetry sink."""
        return {
            "runId": self.run_id,
            "sheetId": self.sheet_id,
            "trigger": self.trigger.type.value,
            "requestedBy": self.trigger.requested_by,
            "anonymized": self.trigger.anonymized,
            "queueLatencyMs": self.trigger.queue_latency_ms,
            "status": self.status.value,
            "reason": self.reason,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "duration": self.duration_ms,
            "durationMs": self.duration_ms,
            "rowCount": self.row_count,
            "rowsProcessed": self.added + self.updated + self.unchanged,
            "added": self.added,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "rowsSkipped": self.skipped,
            "anomalies": list(self.anomalies),
            "legacyIdsUpdated": self.legacy_ids_updated,
            "serialConflicts": self.serial_conflicts,
            "conflicts": self.conflicts,
            "rowsAudited": self.rows_audited,
            "missingSerialCount": self.missing_serial_count,
            "skippedRows": list(self.skipped_rows),
            "columnsAdded": self.columns_added,
            "columnsRemoved": self.columns_removed,
            "columnTotal": self.column_total,
            "columnVersion": self.column_version,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "referenceId": self.reference_id,
        }
