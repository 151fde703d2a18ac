"""Services for the device roster sync."""

from services.database import Database
from services.device_store import ColumnDefinitionStore, DeviceStore, UpsertAction
from services.header_registry import (
    build_header_registry,
    derive_registry_version,
    diff_header_registry,
    normalize_header_key,
    unique_header_keys,
)
from services.orchestrator import SyncOrchestrator, run_sync
from services.serial_audit import SerialAuditResult, run_serial_audit
from services.sheets_source import (
    AUDIT_RETRY_POLICY,
    DEFAULT_RETRY_POLICY,
    FetchSheetDataResult,
    RetryPolicy,
    SheetsSource,
)
from services.sync_events import AuditLogStore, SyncEventStore
from services.sync_lock import SyncLock
from services.transform import compute_content_hash, normalize_sheet_rows

__all__ = [
    # Storage
    "Database",
    "DeviceStore",
    "ColumnDefinitionStore",
    "UpsertAction",
    "SyncEventStore",
    "AuditLogStore",
    # Header registry
    "build_header_registry",
    "diff_header_registry",
    "derive_registry_version",
    "normalize_header_key",
    "unique_header_keys",
    # Normalizer
    "normalize_sheet_rows",
    "compute_content_hash",
    # Lock
    "SyncLock",
    # Google Sheets
    "SheetsSource",
    "FetchSheetDataResult",
    "RetryPolicy",
    "DEFAULT_RETRY_POLICY",
    "AUDIT_RETRY_POLICY",
    # Audit
    "run_serial_audit",
    "SerialAuditResult",
    # Orchestration
    "SyncOrchestrator",
    "run_sync",
]
