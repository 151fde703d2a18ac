"""
Tests for the sync orchestrator.

Runs go through a fake sheet source and a manually advanced clock against
a per-test SQLite database.
"""

import dataclasses
import logging
import sqlite3
from unittest.mock import patch

import pytest

from core.errors import AppError, SheetErrorCode, SheetFetchError, SyncErrorCode
from models.device import SyncRunStatus, TriggerContext, TriggerType
from services.device_store import UpsertAction, UpsertResult
from services.sheets_source import AUDIT_RETRY_POLICY
from services.sync_events import SERIAL_AUDIT, SYNC_COLUMNS_CHANGED, SYNC_RUN

MANUAL = TriggerContext(type=TriggerType.MANUAL, requested_by="ops@nyu.edu")


class TestRun:
    """Tests for a single sync pass."""

    def test_first_run_adds_devices(self, orchestrator, fake_source):
        result = orchestrator.run(trigger=MANUAL)

        assert result.status == SyncRunStatus.SUCCESS
        assert result.row_count == 3
        assert (result.added, result.updated, result.unchanged) == (3, 0, 0)
        assert result.skipped == 0
        assert result.anomalies == ()
        assert result.column_total == 7
        assert result.columns_added == 7
        assert result.column_version.startswith("registry-7-")
        assert len(fake_source.calls) == 1

        device = orchestrator.devices.find("sheet-123", "SN-002")
        assert device.status == "In Repair"
        assert device.condition == "Fair"
        assert device.legacy_device_id == "device-002"
        assert device.dynamic_attributes == {"color": "Black"}
        assert device.column_definitions_version == result.column_version

    def test_lock_is_released(self, orchestrator):
        orchestrator.run()

        assert orchestrator.lock.get_current().locked is False

    def test_records_telemetry(self, orchestrator):
        result = orchestrator.run(trigger=MANUAL, request_id="req-1")

        event = orchestrator.events.latest(SYNC_RUN)
        assert event.request_id == "req-1"
        assert event.metadata["runId"] == result.run_id
        assert event.metadata["status"] == "success"
        assert event.metadata["trigger"] == "manual"
        assert event.metadata["added"] == 3

        entry = orchestrator.audit_log.list_recent()[0]
        assert entry.action == SYNC_RUN
        assert entry.status == "success"
        assert entry.actor == "ops@nyu.edu"

    def test_rerun_is_unchanged(self, orchestrator):
        """Re-syncing identical rows writes nothing."""
        orchestrator.run()
        result = orchestrator.run()

        assert (result.added, result.updated, result.unchanged) == (0, 0, 3)
        assert result.columns_added == 0
        assert result.columns_removed == 0
        assert len(orchestrator.events.list_recent(event_type=SYNC_COLUMNS_CHANGED)) == 1

    def test_changed_row_is_updated(self, orchestrator, fake_source):
        orchestrator.run()
        fake_source.rows[0]["Status"] = "lost"

        result = orchestrator.run()

        assert (result.added, result.updated, result.unchanged) == (0, 1, 2)
        assert result.legacy_ids_updated == 0
        assert orchestrator.devices.find("sheet-123", "SN-001").status == "Lost"

    def test_legacy_id_change_is_counted(self, orchestrator, fake_source):
        orchestrator.run()
        fake_source.rows[0]["Device ID"] = "device-101"

        result = orchestrator.run()

        assert result.updated == 1
        assert result.legacy_ids_updated == 1

    def test_duplicate_serial_is_a_conflict(self, orchestrator, fake_source, device_rows):
        """Only the first row for a serial is written."""
        duplicate = dict(device_rows[0], **{"Assigned To": "someone@nyu.edu"})
        fake_source.rows.append(duplicate)

        result = orchestrator.run()

        assert result.added == 3
        assert result.serial_conflicts == 1
        assert result.conflicts == 1
        assert "Duplicate row detected for sn-001 in sheet sheet-123" in result.anomalies
        assert orchestrator.devices.find("sheet-123", "SN-001").assigned_to == "alex@nyu.edu"

    def test_missing_serial_row(self, orchestrator, fake_source, device_headers):
        fake_source.rows.append({name: None for name in device_headers})

        result = orchestrator.run()

        assert result.status == SyncRunStatus.SUCCESS
        assert result.added == 3
        assert result.skipped == 1
        assert result.anomalies == ("row 4: missing serial – row skipped",)
        assert result.rows_audited == 4
        assert result.missing_serial_count == 1
        assert result.skipped_rows[0]["rowNumber"] == 5

    def test_override_rows_skip_the_source(self, orchestrator, fake_source):
        result = orchestrator.run(override_rows=[{"serial": "X1", "status": "active"}])

        assert result.status == SyncRunStatus.SUCCESS
        assert result.added == 1
        assert fake_source.calls == []
        assert orchestrator.devices.find("sheet-123", "X1").status == "Active"

    def test_serials_differing_in_case_are_one_device(self, orchestrator):
        result = orchestrator.run(override_rows=[{"serial": "ABC"}, {"serial": "abc"}])

        assert result.added == 1
        assert result.serial_conflicts == 1
        assert "Duplicate row detected for abc in sheet sheet-123" in result.anomalies
        assert orchestrator.devices.count() == 1

    def test_rows_without_identifier_column_are_skipped(self, orchestrator):
        """A sheet with no serial or deviceId column skips every row but still succeeds."""
        result = orchestrator.run(override_rows=[{"Owner": "x"}, {"Owner": "y"}])

        assert result.status == SyncRunStatus.SUCCESS
        assert result.row_count == 2
        assert result.skipped == 2
        assert result.added == 0
        assert result.missing_serial_count == 2
        assert result.anomalies == (
            "row 1: missing serial – row skipped",
            "row 2: missing serial – row skipped",
        )

    def test_empty_sheet_is_a_no_op(self, orchestrator, fake_source, device_headers):
        fake_source.set_data(device_headers, [])

        result = orchestrator.run()

        assert result.status == SyncRunStatus.SUCCESS
        assert result.row_count == 0
        assert (result.added, result.skipped) == (0, 0)
        assert orchestrator.lock.get_current().locked is False

    def test_result_is_immutable(self, orchestrator):
        result = orchestrator.run()

        with pytest.raises(dataclasses.FrozenInstanceError):
            result.added = 99


class TestLocking:
    """Tests for single-flight behavior."""

    def test_inflight_run_is_skipped(self, orchestrator, fake_source):
        orchestrator.lock.acquire("other-run", 60_000)

        result = orchestrator.run()

        assert result.status == SyncRunStatus.SKIPPED
        assert result.reason == "inflight"
        assert fake_source.calls == []
        assert orchestrator.lock.get_current().lock_id == "other-run"
        assert orchestrator.events.latest(SYNC_RUN).metadata["status"] == "skipped"
        assert orchestrator.audit_log.list_recent()[0].status == "skipped"

    def test_inflight_event_is_logged(self, orchestrator, caplog):
        orchestrator.lock.acquire("other-run", 60_000)

        with caplog.at_level(logging.INFO, logger="services.orchestrator"):
            orchestrator.run()

        events = [getattr(record, "extra_fields", {}).get("event") for record in caplog.records]
        assert "DEVICE_SYNC_INFLIGHT" in events

    def test_expired_lease_does_not_block(self, orchestrator, clock):
        orchestrator.lock.acquire("crashed-run", 1_000)
        clock.advance(seconds=2)

        result = orchestrator.run()

        assert result.status == SyncRunStatus.SUCCESS

    def test_lost_lease_fails_the_run(self, orchestrator):
        with patch.object(orchestrator.lock, "is_held", return_value=False):
            result = orchestrator.run()

        assert result.status == SyncRunStatus.FAILED
        assert result.error_code == SyncErrorCode.SYNC_LOCK_LOST.value
        assert orchestrator.devices.count() == 0

    def test_acquire_failure_fails_the_run(self, orchestrator, fake_source):
        """A store error while taking the lock still yields one failed run record."""
        with patch.object(orchestrator.lock, "acquire", side_effect=sqlite3.OperationalError("database is locked")), \
                patch.object(orchestrator.lock, "release") as release:
            result = orchestrator.run(trigger=MANUAL)

        assert result.status == SyncRunStatus.FAILED
        assert result.error_code == SyncErrorCode.DB_WRITE_FAILED.value
        assert "database is locked" in result.error_message
        assert fake_source.calls == []
        release.assert_not_called()

        event = orchestrator.events.latest(SYNC_RUN)
        assert event.metadata["status"] == "failed"
        assert event.metadata["referenceId"] == result.reference_id
        assert orchestrator.audit_log.list_recent()[0].status == "error"

    def test_release_failure_does_not_fail_the_run(self, orchestrator):
        with patch.object(orchestrator.lock, "release", side_effect=sqlite3.OperationalError("database is locked")):
            result = orchestrator.run()

        assert result.status == SyncRunStatus.SUCCESS


class TestFailures:
    """Tests for failed runs."""

    def test_fetch_failure(self, orchestrator, fake_source):
        fake_source.error = SheetFetchError(SheetErrorCode.RATE_LIMIT, "quota exceeded", status=429)

        result = orchestrator.run(trigger=MANUAL)

        assert result.status == SyncRunStatus.FAILED
        assert result.error_code == SyncErrorCode.SHEETS_RATE_LIMIT.value
        assert result.error_message == "quota exceeded"
        assert result.reference_id
        assert orchestrator.lock.get_current().locked is False

        event = orchestrator.events.latest(SYNC_RUN)
        assert event.metadata["status"] == "failed"
        assert event.metadata["errorCode"] == "SHEETS_RATE_LIMIT"
        entry = orchestrator.audit_log.list_recent()[0]
        assert entry.status == "error"
        assert entry.error_code == "SHEETS_RATE_LIMIT"

    def test_write_failure_mid_run_keeps_partial_counts(self, orchestrator):
        """A store failure after one write reports the partial count and frees the lock."""
        outcomes = [UpsertResult(UpsertAction.ADDED), sqlite3.OperationalError("disk I/O error")]

        with patch.object(orchestrator.devices, "upsert", side_effect=outcomes):
            result = orchestrator.run()

        assert result.status == SyncRunStatus.FAILED
        assert result.error_code == SyncErrorCode.DB_WRITE_FAILED.value
        assert result.added == 1
        assert orchestrator.lock.get_current().locked is False
        assert orchestrator.columns.list_active("sheet-123") == []
        assert orchestrator.events.latest(SYNC_RUN).metadata["added"] == 1

    def test_missing_sheet_id(self, orchestrator, app_config, fake_source):
        app_config.sheets.spreadsheet_id = ""

        result = orchestrator.run()

        assert result.status == SyncRunStatus.FAILED
        assert result.error_code == SyncErrorCode.CONFIG_MISSING.value
        assert fake_source.calls == []

    def test_telemetry_failure_is_not_raised(self, orchestrator):
        with patch.object(orchestrator.audit_log, "record", side_effect=sqlite3.OperationalError("readonly")):
            result = orchestrator.run()

        assert result.status == SyncRunStatus.SUCCESS

    def test_next_run_after_failure_succeeds(self, orchestrator, fake_source):
        fake_source.error = SheetFetchError(SheetErrorCode.UNKNOWN, "boom")
        orchestrator.run()
        fake_source.error = None

        result = orchestrator.run()

        assert result.status == SyncRunStatus.SUCCESS
        assert result.added == 3


class TestColumns:
    """Tests for column definition tracking across runs."""

    def test_removed_column_is_soft_deleted(self, orchestrator, fake_source, device_headers, device_rows):
        orchestrator.run()
        headers = [name for name in device_headers if name != "Color"]
        rows = [{key: value for key, value in row.items() if key != "Color"} for row in device_rows]
        fake_source.set_data(headers, rows)

        result = orchestrator.run()

        assert result.columns_removed == 1
        assert result.column_total == 6
        active = [column.column_key for column in orchestrator.columns.list_active("sheet-123")]
        assert "color" not in active
        color = [c for c in orchestrator.columns.list_all("sheet-123") if c.column_key == "color"][0]
        assert color.removed_at is not None

        event = orchestrator.events.latest(SYNC_COLUMNS_CHANGED)
        assert event.metadata["removed"] == ["color"]
        assert event.metadata["added"] == []
        assert event.metadata["columnVersion"] == result.column_version

    def test_new_version_restamps_devices(self, orchestrator, fake_source, device_headers, device_rows):
        """A registry change alters every device hash."""
        orchestrator.run()
        fake_source.set_data(device_headers + ["Warranty"], [dict(row, Warranty=None) for row in device_rows])

        result = orchestrator.run()

        assert result.columns_added == 1
        assert result.updated == 3
        assert orchestrator.devices.find("sheet-123", "SN-001").column_definitions_version == result.column_version

    def test_reappearing_column_is_active_again(self, orchestrator, fake_source, device_headers, device_rows):
        orchestrator.run()
        fake_source.set_data(
            [name for name in device_headers if name != "Color"],
            [{key: value for key, value in row.items() if key != "Color"} for row in device_rows],
        )
        orchestrator.run()
        fake_source.set_data(device_headers, device_rows)

        result = orchestrator.run()

        assert result.columns_added == 1
        color = [c for c in orchestrator.columns.list_active("sheet-123") if c.column_key == "color"]
        assert len(color) == 1
        assert color[0].removed_at is None


class TestScheduled:
    """Tests for scheduler gating."""

    def test_disabled(self, orchestrator, app_config, fake_source):
        app_config.sync.enabled = False

        result = orchestrator.run_scheduled()

        assert result.status == SyncRunStatus.SKIPPED
        assert result.reason == "config_disabled"
        assert result.trigger.type == TriggerType.SCHEDULED
        assert fake_source.calls == []
        event = orchestrator.events.latest(SYNC_RUN)
        assert event.reason == "config_disabled"
        assert event.metadata["trigger"] == "scheduled"

    def test_cadence_window(self, orchestrator, clock):
        assert orchestrator.run_scheduled().status == SyncRunStatus.SUCCESS

        clock.advance(minutes=1)
        skipped = orchestrator.run_scheduled()
        assert skipped.status == SyncRunStatus.SKIPPED
        assert skipped.reason == "cadence_window"

        clock.advance(minutes=1)
        assert orchestrator.run_scheduled().status == SyncRunStatus.SUCCESS

    def test_manual_runs_do_not_open_the_window(self, orchestrator):
        orchestrator.run(trigger=MANUAL)

        assert orchestrator.run_scheduled().status == SyncRunStatus.SUCCESS


class TestAudit:
    """Tests for the standalone serial audit."""

    def test_audit_blocked(self, orchestrator, fake_source, device_headers):
        fake_source.rows.append({name: None for name in device_headers})

        result = orchestrator.run_audit(request_id="req-9")

        assert result.blocked is True
        assert result.missing_serial_count == 1
        assert fake_source.calls[0]["include_empty_rows"] is True
        assert fake_source.calls[0]["retry_policy"] == AUDIT_RETRY_POLICY

        event = orchestrator.events.latest(SERIAL_AUDIT)
        assert event.request_id == "req-9"
        assert event.metadata["status"] == "blocked"
        entry = orchestrator.audit_log.list_recent()[0]
        assert entry.error_code == SyncErrorCode.SERIAL_AUDIT_FAILED.value

    def test_audit_without_persist(self, orchestrator):
        result = orchestrator.run_audit(persist=False)

        assert result.status == "passed"
        assert orchestrator.events.latest(SERIAL_AUDIT) is None
        assert orchestrator.audit_log.list_recent() == []

    def test_audit_fetch_failure_raises(self, orchestrator, fake_source):
        fake_source.error = SheetFetchError(SheetErrorCode.SHEET_NOT_FOUND, "missing", status=404)

        with pytest.raises(AppError) as exc_info:
            orchestrator.run_audit()

        assert exc_info.value.code == SyncErrorCode.SHEET_NOT_FOUND
        assert isinstance(exc_info.value.__cause__, SheetFetchError)

    def test_audit_without_identifier_raises(self, orchestrator, fake_source):
        fake_source.set_data(["Status"], [{"Status": "active"}])

        with pytest.raises(AppError) as exc_info:
            orchestrator.run_audit()

        assert exc_info.value.code == SyncErrorCode.INVALID_SYNC_CONFIGURATION


class TestStatus:
    """Tests for get_status."""

    def test_status_before_any_run(self, orchestrator):
        status = orchestrator.get_status()

        assert status["sheetId"] == "sheet-123"
        assert status["lock"] is None
        assert status["running"] is False
        assert status["latestRun"] is None
        assert status["deviceCount"] == 0

    def test_status_after_run(self, orchestrator):
        orchestrator.run()

        status = orchestrator.get_status()

        assert status["deviceCount"] == 3
        assert status["running"] is False
        assert status["lock"]["locked"] is False
        assert status["latestRun"]["metadata"]["status"] == "success"

    def test_status_while_locked(self, orchestrator):
        orchestrator.lock.acquire("other-run", 60_000)

        assert orchestrator.get_status()["running"] is True
