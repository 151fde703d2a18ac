"""
Tests for the serial audit.
"""

import pytest

from core.errors import AppError, SyncErrorCode
from services.header_registry import headers_from_names
from services.serial_audit import SKIPPED_ROW_SAMPLE_LIMIT, find_identifier_column, run_serial_audit
from services.sheets_source import FetchSheetDataResult, RowMetadata


def _data(headers, rows, row_numbers=None):
    metadata = [RowMetadata(row_number=number) for number in row_numbers] if row_numbers else []
    return FetchSheetDataResult(
        headers=headers,
        ordered_headers=headers_from_names(headers),
        rows=rows,
        row_metadata=metadata,
    )


class TestFindIdentifierColumn:
    """Tests for identifier column detection."""

    def test_serial_aliases(self):
        assert find_identifier_column(["Name", "Serial Number"]) == "Serial Number"
        assert find_identifier_column(["serial_no"]) == "serial_no"

    def test_serial_preferred_over_device_id(self):
        assert find_identifier_column(["Device ID", "Serial"]) == "Serial"

    def test_device_id_fallback(self):
        assert find_identifier_column(["Device ID", "Status"]) == "Device ID"

    def test_no_identifier(self):
        assert find_identifier_column(["Status", "Owner"]) is None


class TestRunSerialAudit:
    """Tests for run_serial_audit."""

    def test_passes_when_all_rows_have_serials(self):
        result = run_serial_audit(
            _data(["Serial"], [{"Serial": "A1"}, {"Serial": 1234}], [2, 3]),
            "sheet-123", "Devices",
        )

        assert result.status == "passed"
        assert result.blocked is False
        assert result.rows_audited == 2
        assert result.missing_serial_count == 0
        assert result.identifier_column == "Serial"

    def test_blocked_rows_use_sheet_row_numbers(self):
        rows = [{"Serial": "A1"}, {"Serial": None}, {"Serial": "  "}]

        result = run_serial_audit(_data(["Serial"], rows, [2, 5, 9]), "sheet-123", "Devices")

        assert result.blocked is True
        assert result.missing_serial_count == 2
        assert [row.row_number for row in result.missing_serial_rows] == [5, 9]
        assert result.missing_serial_rows[1].serial_value == "  "

    def test_row_number_fallback_without_metadata(self):
        """Without metadata, row numbers assume the header is row 1."""
        result = run_serial_audit(_data(["Serial"], [{"Serial": "A1"}, {"Serial": None}]), "sheet-123", "Devices")

        assert [row.row_number for row in result.missing_serial_rows] == [3]

    def test_sample_is_capped_but_count_is_complete(self):
        rows = [{"Serial": None} for _ in range(SKIPPED_ROW_SAMPLE_LIMIT + 5)]

        result = run_serial_audit(_data(["Serial"], rows), "sheet-123", "Devices")

        assert result.missing_serial_count == SKIPPED_ROW_SAMPLE_LIMIT + 5
        assert len(result.missing_serial_rows) == SKIPPED_ROW_SAMPLE_LIMIT

    def test_missing_identifier_column_raises(self):
        with pytest.raises(AppError) as exc_info:
            run_serial_audit(_data(["Status"], [{"Status": "active"}]), "sheet-123", "Devices")

        assert exc_info.value.code == SyncErrorCode.INVALID_SYNC_CONFIGURATION
        assert exc_info.value.http_status == 400

    def test_missing_identifier_column_counts_every_row(self):
        """During a sync an absent identifier column means every row lacks a serial."""
        rows = [{"Status": "active"}, {"Status": "lost"}]

        result = run_serial_audit(
            _data(["Status"], rows, [2, 3]), "sheet-123", "Devices", require_identifier=False,
        )

        assert result.blocked is True
        assert result.identifier_column == ""
        assert result.missing_serial_count == 2
        assert [row.row_number for row in result.missing_serial_rows] == [2, 3]
        assert result.missing_serial_rows[0].serial_value is None

    def test_empty_sheet_passes(self):
        result = run_serial_audit(_data([], []), "sheet-123", "Devices", require_identifier=False)

        assert result.status == "passed"
        assert result.rows_audited == 0

    def test_to_dict(self):
        result = run_serial_audit(_data(["Serial"], [{"Serial": None}], [7]), "sheet-123", "Devices")

        data = result.to_dict()

        assert data["status"] == "blocked"
        assert data["missingSerialCount"] == 1
        assert data["skippedRows"] == [{"rowNumber": 7, "serialValue": None, "row": {"Serial": None}}]
