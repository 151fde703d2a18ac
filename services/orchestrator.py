"""
Sync orchestrator for the device roster.

Flow for one run:
1. Acquire the sync lock (skipped run if another holder has the lease)
2. Fetch rows from the Devices sheet (or use override rows)
3. Serial audit over the fetched rows
4. Build the header registry and diff it against stored column definitions
5. Normalize rows into devices
6. Upsert devices keyed by (sheet_id, serial), skipping unchanged hashes
7. Persist the column diff (soft-deleting removed columns)
8. Release the lock, then record one SYNC_RUN event and audit entry
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from core.config import AppConfig, get_config
from core.errors import AppError, SyncErrorCode, map_to_app_error
from core.logging_config import LogContext, generate_run_id, get_logger, log_event
from models.device import (
    SheetHeader,
    SyncRunResult,
    SyncRunStatus,
    TriggerContext,
    TriggerType,
    TypedRow,
)
from services.database import Clock, Database, utc_now
from services.device_store import ColumnDefinitionStore, DeviceStore, UpsertAction
from services.header_registry import (
    build_header_registry,
    derive_registry_version,
    diff_header_registry,
    headers_from_names,
)
from services.serial_audit import SerialAuditResult, run_serial_audit
from services.sheets_source import (
    AUDIT_RETRY_POLICY,
    FetchSheetDataResult,
    SheetsSource,
)
from services.sync_events import (
    SERIAL_AUDIT,
    SYNC_COLUMNS_CHANGED,
    SYNC_RUN,
    AuditLogStore,
    SyncEventStore,
)
from services.sync_lock import SyncLock
from services.transform import normalize_sheet_rows

logger = get_logger(__name__)

SYNC_ROUTE = "workers/sync"
AUDIT_ROUTE = "workers/sync/audit"
TASK_METHOD = "TASK"

_AUDIT_STATUS = {
    SyncRunStatus.SUCCESS: "success",
    SyncRunStatus.FAILED: "error",
    SyncRunStatus.SKIPPED: "skipped",
}


@dataclass
class _RunCounters:
    """Mutable tally for a run in progress; frozen into a SyncRunResult at the end."""

    row_count: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    anomalies: List[str] = field(default_factory=list)
    legacy_ids_updated: int = 0
    serial_conflicts: int = 0
    rows_audited: int = 0
    missing_serial_count: int = 0
    skipped_rows: List[Dict[str, Any]] = field(default_factory=list)
    columns_added: int = 0
    columns_removed: int = 0
    column_total: int = 0
    column_version: Optional[str] = None


def _headers_from_rows(rows: Sequence[TypedRow]) -> List[SheetHeader]:
    names: Dict[str, None] = {}
    for row in rows:
        for column in row:
            names.setdefault(str(column), None)
    return headers_from_names(list(names))


class SyncOrchestrator:
    """Runs device syncs against one Devices sheet."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        database: Optional[Database] = None,
        source: Optional[SheetsSource] = None,
        clock: Clock = utc_now,
    ):
        self.config = config or get_config()
        self.database = database or Database(self.config.storage.database_path)
        self.clock = clock
        self._source = source

        self.lock = SyncLock(self.database, clock=clock)
        self.devices = DeviceStore(self.database)
        self.columns = ColumnDefinitionStore(self.database)
        self.events = SyncEventStore(self.database, clock=clock)
        self.audit_log = AuditLogStore(self.database, clock=clock)

    @property
    def source(self) -> SheetsSource:
        """Lazy-load the Sheets source."""
        if self._source is None:
            self._source = SheetsSource(self.config.sheets)
        return self._source

    @property
    def sheet_id(self) -> str:
        return self.config.sheets.spreadsheet_id

    # -------------------------------------------------------------------------
    # Public entry points
    # -------------------------------------------------------------------------

    def run(
        self,
        trigger: Optional[TriggerContext] = None,
        request_id: Optional[str] = None,
        override_rows: Optional[Sequence[TypedRow]] = None,
        override_headers: Optional[Sequence[SheetHeader]] = None,
    ) -> SyncRunResult:
        """Run one sync pass. Never raises; failures come back as status=failed."""
        trigger = trigger or TriggerContext()
        run_id = generate_run_id()
        lock_id = generate_run_id()
        started_at = self.clock()
        started = time.monotonic()
        counters = _RunCounters()

        with LogContext(run_id=run_id, request_id=request_id, sheet_id=self.sheet_id, lock_id=lock_id):
            try:
                acquisition = self.lock.acquire(lock_id, self.config.sync.lock_ttl_ms)
            except Exception as e:
                result = self._failed_result(e, run_id, trigger, started_at, started, counters)
                self._emit(result, request_id)
                return result

            if not acquisition.acquired:
                holder = acquisition.lock.lock_id if acquisition.lock else None
                log_event(
                    logger, logging.INFO, "DEVICE_SYNC_INFLIGHT",
                    "Sync skipped because another run holds the lock",
                    holder=holder, trigger=trigger.type.value,
                )
                result = self._build_result(
                    run_id, trigger, started_at, started, counters,
                    SyncRunStatus.SKIPPED, reason="inflight",
                )
                self._emit(result, request_id)
                return result

            try:
                self._execute(lock_id, counters, request_id, override_rows, override_headers)
                result = self._build_result(run_id, trigger, started_at, started, counters, SyncRunStatus.SUCCESS)
                log_event(
                    logger, logging.INFO, "DEVICE_SYNC_COMPLETED",
                    f"Device sync completed: +{result.added} ~{result.updated} ={result.unchanged} "
                    f"skipped={result.skipped}",
                    **self._summary_fields(result),
                )
            except Exception as e:
                result = self._failed_result(e, run_id, trigger, started_at, started, counters)
            finally:
                self._release(lock_id)

            self._emit(result, request_id)
            return result

    def run_scheduled(self, request_id: Optional[str] = None) -> SyncRunResult:
        """Scheduler entry point: honors the enabled flag and the cadence window."""
        trigger = TriggerContext(type=TriggerType.SCHEDULED)

        if not self.config.sync.enabled:
            logger.info("Scheduled sync skipped: sync disabled by configuration")
            return self._record_skip(trigger, "config_disabled", request_id)

        last = self.events.latest_run(trigger=TriggerType.SCHEDULED.value, include_skipped=False)
        window = timedelta(minutes=self.config.sync.interval_minutes)
        if last is not None and self.clock() - last.created_at < window:
            logger.info(
                f"Scheduled sync skipped: last run at {last.created_at.isoformat()} "
                f"is inside the {self.config.sync.interval_minutes} minute cadence window"
            )
            return self._record_skip(trigger, "cadence_window", request_id)

        return self.run(trigger=trigger, request_id=request_id)

    def run_audit(
        self,
        request_id: Optional[str] = None,
        persist: bool = True,
        trigger: Optional[TriggerContext] = None,
    ) -> SerialAuditResult:
        """Fetch the sheet and report rows missing a serial.

        Raises:
            AppError: when the fetch fails or the sheet has no identifier column
        """
        trigger = trigger or TriggerContext()
        tab_name = self.config.sheets.tab_name

        with LogContext(request_id=request_id, sheet_id=self.sheet_id):
            try:
                data = self.source.fetch_sheet_data(
                    sheet_id=self.sheet_id,
                    tab_name=tab_name,
                    include_empty_rows=True,
                    retry_policy=AUDIT_RETRY_POLICY,
                    request_id=request_id,
                )
                result = run_serial_audit(data, self.sheet_id, tab_name)
            except Exception as e:
                error = map_to_app_error(e)
                log_event(
                    logger, logging.ERROR, "SERIAL_AUDIT_FAILURE",
                    f"Serial audit failed: {error.message}",
                    error_code=error.code.value, reference_id=error.reference_id,
                )
                if error is e:
                    raise
                raise error from e

            log_event(
                logger,
                logging.WARNING if result.blocked else logging.INFO,
                "SERIAL_AUDIT_FAILURE" if result.blocked else "SERIAL_AUDIT_SUCCESS",
                f"Serial audit {result.status}: {result.missing_serial_count} of "
                f"{result.rows_audited} rows missing serial",
                rows_audited=result.rows_audited,
                missing_serial_count=result.missing_serial_count,
            )

            if persist:
                metadata = {
                    **result.to_dict(),
                    "trigger": trigger.type.value,
                    "requestedBy": trigger.requested_by,
                }
                self.events.record(
                    SERIAL_AUDIT, metadata=metadata, route=AUDIT_ROUTE,
                    method=TASK_METHOD, request_id=request_id,
                )
                self.audit_log.record(
                    action=SERIAL_AUDIT,
                    status="error" if result.blocked else "success",
                    actor=trigger.requested_by,
                    error_code=SyncErrorCode.SERIAL_AUDIT_FAILED.value if result.blocked else None,
                    context={"sheetId": self.sheet_id, "missingSerialCount": result.missing_serial_count},
                )
        return result

    def get_status(self) -> Dict[str, Any]:
        """Lock snapshot, latest run and device count for status reporting."""
        lock = self.lock.get_current()
        latest = self.events.latest(SYNC_RUN)
        return {
            "sheetId": self.sheet_id,
            "enabled": self.config.sync.enabled,
            "intervalMinutes": self.config.sync.interval_minutes,
            "lock": lock.to_dict() if lock else None,
            "running": bool(lock and lock.locked and lock.release_at and lock.release_at > self.clock()),
            "latestRun": latest.to_dict() if latest else None,
            "deviceCount": self.devices.count(self.sheet_id or None),
        }

    # -------------------------------------------------------------------------
    # Run phases
    # -------------------------------------------------------------------------

    def _execute(
        self,
        lock_id: str,
        counters: _RunCounters,
        request_id: Optional[str],
        override_rows: Optional[Sequence[TypedRow]],
        override_headers: Optional[Sequence[SheetHeader]],
    ) -> None:
        sheet_id = self.sheet_id
        if not sheet_id:
            raise AppError(SyncErrorCode.CONFIG_MISSING, message="DEVICES_SHEET_ID is not configured")

        data = self._load_rows(request_id, override_rows, override_headers)
        log_event(
            logger, logging.INFO, "DEVICE_SYNC_FETCH",
            f"Fetched {len(data.rows)} rows from sheet",
            row_count=len(data.rows), header_count=len(data.ordered_headers),
        )

        audit = run_serial_audit(data, sheet_id, self.config.sheets.tab_name, require_identifier=False)
        counters.rows_audited = audit.rows_audited
        counters.missing_serial_count = audit.missing_serial_count
        counters.skipped_rows = [row.to_dict() for row in audit.missing_serial_rows]

        previous = [column.to_header_definition() for column in self.columns.list_active(sheet_id)]
        registry = build_header_registry(data.ordered_headers, data.rows[: self.config.sync.sample_size])
        diff = diff_header_registry(registry, previous)
        version = derive_registry_version(registry)
        counters.columns_added = len(diff.added)
        counters.columns_removed = len(diff.removed)
        counters.column_total = len(registry)
        counters.column_version = version

        now = self.clock()
        normalization = normalize_sheet_rows(
            data.rows,
            sheet_id=sheet_id,
            now=now,
            headers=data.ordered_headers,
            column_definitions_version=version,
            max_dynamic_columns=self.config.sync.max_dynamic_columns,
        )
        counters.row_count = normalization.row_count
        counters.skipped = normalization.skipped
        counters.anomalies.extend(normalization.anomalies)

        self._ensure_lock(lock_id)
        seen = set()
        for device in normalization.devices:
            if device.serial in seen:
                counters.serial_conflicts += 1
                counters.anomalies.append(f"Duplicate row detected for {device.serial} in sheet {sheet_id}")
                continue
            seen.add(device.serial)

            outcome = self.devices.upsert(device, now=now)
            if outcome.action == UpsertAction.ADDED:
                counters.added += 1
            elif outcome.action == UpsertAction.UPDATED:
                counters.updated += 1
                if outcome.previous_legacy_device_id != device.legacy_device_id:
                    counters.legacy_ids_updated += 1
            else:
                counters.unchanged += 1

        log_event(
            logger, logging.INFO, "DEVICE_SYNC_SUMMARY",
            "Device sync upsert phase completed",
            added=counters.added, updated=counters.updated, unchanged=counters.unchanged,
            serial_conflicts=counters.serial_conflicts, anomalies=len(counters.anomalies),
        )

        self._ensure_lock(lock_id)
        self.columns.apply_diff(sheet_id, diff, version, now=now)
        if diff.has_changes:
            self.events.record(
                SYNC_COLUMNS_CHANGED,
                metadata={
                    "sheetId": sheet_id,
                    "columnVersion": version,
                    "added": [entry.key for entry in diff.added],
                    "removed": [entry.key for entry in diff.removed],
                    "columnTotal": len(registry),
                },
                route=SYNC_ROUTE,
                method=TASK_METHOD,
                request_id=request_id,
            )

    def _load_rows(
        self,
        request_id: Optional[str],
        override_rows: Optional[Sequence[TypedRow]],
        override_headers: Optional[Sequence[SheetHeader]],
    ) -> FetchSheetDataResult:
        if override_rows is None:
            return self.source.fetch_sheet_data(
                sheet_id=self.sheet_id,
                tab_name=self.config.sheets.tab_name,
                request_id=request_id,
            )

        rows = list(override_rows)
        headers = list(override_headers) if override_headers else _headers_from_rows(rows)
        return FetchSheetDataResult(
            headers=[header.name for header in headers],
            ordered_headers=headers,
            rows=rows,
            row_metadata=[],
        )

    def _ensure_lock(self, lock_id: str) -> None:
        if not self.lock.is_held(lock_id):
            raise AppError(SyncErrorCode.SYNC_LOCK_LOST)

    def _release(self, lock_id: str) -> None:
        try:
            self.lock.release(lock_id)
        except Exception as e:
            log_event(
                logger, logging.ERROR, "SYNC_LOCK_RELEASE_FAILED",
                f"Failed to release sync lock: {e}",
                lock_id=lock_id,
            )

    # -------------------------------------------------------------------------
    # Telemetry
    # -------------------------------------------------------------------------

    def _build_result(
        self,
        run_id: str,
        trigger: TriggerContext,
        started_at: datetime,
        started: float,
        counters: _RunCounters,
        status: SyncRunStatus,
        reason: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        reference_id: Optional[str] = None,
    ) -> SyncRunResult:
        return SyncRunResult(
            run_id=run_id,
            sheet_id=self.sheet_id,
            status=status,
            trigger=trigger,
            started_at=started_at,
            completed_at=self.clock(),
            duration_ms=int((time.monotonic() - started) * 1000),
            row_count=counters.row_count,
            added=counters.added,
            updated=counters.updated,
            unchanged=counters.unchanged,
            skipped=counters.skipped,
            anomalies=tuple(counters.anomalies),
            legacy_ids_updated=counters.legacy_ids_updated,
            serial_conflicts=counters.serial_conflicts,
            rows_audited=counters.rows_audited,
            missing_serial_count=counters.missing_serial_count,
            skipped_rows=tuple(counters.skipped_rows),
            columns_added=counters.columns_added,
            columns_removed=counters.columns_removed,
            column_total=counters.column_total,
            column_version=counters.column_version,
            reason=reason,
            error_code=error_code,
            error_message=error_message,
            reference_id=reference_id,
        )

    def _failed_result(
        self,
        exc: Exception,
        run_id: str,
        trigger: TriggerContext,
        started_at: datetime,
        started: float,
        counters: _RunCounters,
    ) -> SyncRunResult:
        error = map_to_app_error(exc)
        log_event(
            logger, logging.ERROR, "DEVICE_SYNC_FAILED",
            f"Device sync failed: {error.message}",
            error_code=error.code.value, reference_id=error.reference_id,
        )
        logger.debug("Device sync failure traceback", exc_info=True)
        return self._build_result(
            run_id, trigger, started_at, started, counters, SyncRunStatus.FAILED,
            error_code=error.code.value,
            error_message=error.message,
            reference_id=error.reference_id,
        )

    def _record_skip(self, trigger: TriggerContext, reason: str, request_id: Optional[str]) -> SyncRunResult:
        now = self.clock()
        result = SyncRunResult(
            run_id=generate_run_id(),
            sheet_id=self.sheet_id,
            status=SyncRunStatus.SKIPPED,
            trigger=trigger,
            started_at=now,
            completed_at=now,
            duration_ms=0,
            reason=reason,
        )
        self._emit(result, request_id)
        return result

    @staticmethod
    def _summary_fields(result: SyncRunResult) -> Dict[str, Any]:
        return {
            "row_count": result.row_count,
            "added": result.added,
            "updated": result.updated,
            "unchanged": result.unchanged,
            "skipped": result.skipped,
            "serial_conflicts": result.serial_conflicts,
            "legacy_ids_updated": result.legacy_ids_updated,
            "duration_ms": result.duration_ms,
            "trigger": result.trigger.type.value,
        }

    def _emit(self, result: SyncRunResult, request_id: Optional[str]) -> None:
        """Write the SYNC_RUN event and audit entry for a finished run."""
        try:
            self.events.record(
                SYNC_RUN,
                metadata=result.to_metadata(),
                route=SYNC_ROUTE,
                method=TASK_METHOD,
                reason=result.reason,
                request_id=request_id,
            )
            self.audit_log.record(
                action=SYNC_RUN,
                status=_AUDIT_STATUS[result.status],
                actor=result.trigger.requested_by,
                error_code=result.error_code,
                context={
                    "runId": result.run_id,
                    "sheetId": result.sheet_id,
                    "trigger": result.trigger.type.value,
                    "reason": result.reason,
                    "added": result.added,
                    "updated": result.updated,
                    "unchanged": result.unchanged,
                    "skipped": result.skipped,
                    "referenceId": result.reference_id,
                },
            )
        except Exception:
            logger.exception(f"Failed to record telemetry for sync run {result.run_id}")


def run_sync(config: Optional[AppConfig] = None, trigger: Optional[TriggerContext] = None) -> SyncRunResult:
    """Convenience function to run one sync."""
    return SyncOrchestrator(config).run(trigger=trigger)
