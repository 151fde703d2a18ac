"""Serial audit: report sheet rows that have no serial number."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from core.errors import AppError, SyncErrorCode
from models.device import CellValue, TypedRow
from schemas.device_schema import FIELD_ALIASES, canonicalize_header
from services.sheets_source import FetchSheetDataResult

logger = logging.getLogger(__name__)

SKIPPED_ROW_SAMPLE_LIMIT = 25


@dataclass
class MissingSerialRow:
    row_number: int
    serial_value: Any
    row: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"rowNumber": self.row_number, "serialValue": self.serial_value, "row": self.row}


@dataclass
class SerialAuditResult:
    sheet_id: str
    tab_name: str
    identifier_column: str
    rows_audited: int
    missing_serial_count: int
    missing_serial_rows: List[MissingSerialRow]  # first SKIPPED_ROW_SAMPLE_LIMIT only
    status: str  # "passed" | "blocked"
    started_at: datetime
    completed_at: datetime

    @property
    def blocked(self) -> bool:
        return self.status == "blocked"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sheetId": self.sheet_id,
            "tabName": self.tab_name,
            "identifierColumn": self.identifier_column,
            "rowsAudited": self.rows_audited,
            "missingSerialCount": self.missing_serial_count,
            "skippedRows": [row.to_dict() for row in self.missing_serial_rows],
            "status": self.status,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat(),
        }


def _serialize(value: CellValue) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _has_value(value: CellValue) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def find_identifier_column(headers: Sequence[str]) -> Optional[str]:
    """First header matching a serial alias, else the first deviceId alias."""
    for aliases in (FIELD_ALIASES["serial"], FIELD_ALIASES["legacy_device_id"]):
        for header in headers:
            if canonicalize_header(header) in aliases:
                return header
    return None


def run_serial_audit(
    data: FetchSheetDataResult,
    sheet_id: str,
    tab_name: str,
    require_identifier: bool = True,
) -> SerialAuditResult:
    """Count rows whose identifier column is blank.

    With require_identifier=False a sheet without an identifier column is
    audited as if every row were missing its serial.

    Raises:
        AppError: INVALID_SYNC_CONFIGURATION when the sheet has no serial or deviceId
            column and require_identifier is set
    """
    started_at = data.metrics.started_at if data.metrics else datetime.now(timezone.utc)

    identifier = find_identifier_column(data.headers)
    if identifier is None and require_identifier:
        raise AppError(
            SyncErrorCode.INVALID_SYNC_CONFIGURATION,
            message="Devices sheet must include a Serial column before running the audit",
        )

    metadata = data.row_metadata or []
    missing: List[MissingSerialRow] = []
    rows: Sequence[TypedRow] = data.rows
    for index, record in enumerate(rows):
        value = record.get(identifier) if identifier else None
        if _has_value(value):
            continue
        row_number = metadata[index].row_number if index < len(metadata) else index + 2
        missing.append(
            MissingSerialRow(
                row_number=row_number,
                serial_value=_serialize(value),
                row={key: _serialize(value) for key, value in record.items()},
            )
        )

    completed_at = data.metrics.completed_at if data.metrics else datetime.now(timezone.utc)
    status = "blocked" if missing else "passed"
    logger.debug(f"Serial audit on {sheet_id}: {len(missing)}/{len(rows)} rows missing {identifier}")

    return SerialAuditResult(
        sheet_id=sheet_id,
        tab_name=tab_name,
        identifier_column=identifier or "",
        rows_audited=len(rows),
        missing_serial_count=len(missing),
        missing_serial_rows=missing[:SKIPPED_ROW_SAMPLE_LIMIT],
        status=status,
        started_at=started_at,
        completed_at=completed_at,
    )
