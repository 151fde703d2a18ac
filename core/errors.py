"""Application error catalog for sync failures."""
import sqlite3
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from core.config import ConfigurationError


class SyncErrorCode(str, Enum):
    """Error codes surfaced in run telemetry and API responses."""
    CONFIG_MISSING = "CONFIG_MISSING"
    SHEET_NOT_FOUND = "SHEET_NOT_FOUND"
    SHEETS_RATE_LIMIT = "SHEETS_RATE_LIMIT"
    SHEETS_AUTH_REVOKED = "SHEETS_AUTH_REVOKED"
    INVALID_SYNC_CONFIGURATION = "INVALID_SYNC_CONFIGURATION"
    SERIAL_AUDIT_FAILED = "SERIAL_AUDIT_FAILED"
    SYNC_DISABLED = "SYNC_DISABLED"
    SYNC_TIMEOUT = "SYNC_TIMEOUT"
    TRANSFORM_VALIDATION_FAILED = "TRANSFORM_VALIDATION_FAILED"
    DB_WRITE_FAILED = "DB_WRITE_FAILED"
    SYNC_LOCK_LOST = "SYNC_LOCK_LOST"
    UNAUTHORIZED_CRON = "UNAUTHORIZED_CRON"
    UNKNOWN_FAILURE = "UNKNOWN_FAILURE"


class SheetErrorCode(str, Enum):
    """Failure classes for Google Sheets reads."""
    SHEET_NOT_FOUND = "SHEET_NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    OAUTH_REVOKED = "OAUTH_REVOKED"
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class _CatalogEntry:
    http_status: int
    default_message: str
    recommendation: str


ERROR_CATALOG: Dict[SyncErrorCode, _CatalogEntry] = {
    SyncErrorCode.CONFIG_MISSING: _CatalogEntry(
        503,
        "Sync configuration is unavailable",
        "Set DEVICES_SHEET_ID and Sheets credentials in the environment, then retry.",
    ),
    SyncErrorCode.SHEET_NOT_FOUND: _CatalogEntry(
        502,
        "Source Google Sheet was not found",
        "Verify the sheet ID and sharing permissions for the service account.",
    ),
    SyncErrorCode.SHEETS_RATE_LIMIT: _CatalogEntry(
        429,
        "Sheets API throttled the sync request",
        "Retry after a minute; consider lowering cadence if throttling persists.",
    ),
    SyncErrorCode.SHEETS_AUTH_REVOKED: _CatalogEntry(
        401,
        "Sheets service account lost access",
        "Rotate the Sheets service credential and retry.",
    ),
    SyncErrorCode.INVALID_SYNC_CONFIGURATION: _CatalogEntry(
        400,
        "Sync configuration is invalid",
        "Fix invalid sync settings (sheet ID, tab name, identifier column) and retry.",
    ),
    SyncErrorCode.SERIAL_AUDIT_FAILED: _CatalogEntry(
        409,
        "Serial audit blocked the sync run",
        "Fill in missing serial numbers in Google Sheets and re-run the audit.",
    ),
    SyncErrorCode.SYNC_DISABLED: _CatalogEntry(
        202,
        "Scheduled sync is disabled",
        "Set SYNC_ENABLED=true to resume cadence.",
    ),
    SyncErrorCode.SYNC_TIMEOUT: _CatalogEntry(
        504,
        "Sync exceeded SLA window",
        "Check worker logs to determine the bottleneck.",
    ),
    SyncErrorCode.TRANSFORM_VALIDATION_FAILED: _CatalogEntry(
        422,
        "Sheet rows failed validation",
        "Fix the highlighted rows in Google Sheets and retry sync.",
    ),
    SyncErrorCode.DB_WRITE_FAILED: _CatalogEntry(
        500,
        "Database write failed; previously synced rows were preserved",
        "Inspect database logs, then rerun sync.",
    ),
    SyncErrorCode.SYNC_LOCK_LOST: _CatalogEntry(
        409,
        "Sync lease expired before the run finished",
        "Raise SYNC_LOCK_TTL_SECONDS above the worst-case run duration.",
    ),
    SyncErrorCode.UNAUTHORIZED_CRON: _CatalogEntry(
        401,
        "Scheduler headers were missing or invalid",
        "Update the scheduler token header to match SYNC_SCHEDULER_TOKEN.",
    ),
    SyncErrorCode.UNKNOWN_FAILURE: _CatalogEntry(
        500,
        "Unexpected sync failure occurred",
        "Check sync logs with the reference ID for detailed diagnostics.",
    ),
}


class SheetFetchError(Exception):
    """Raised when reading rows from Google Sheets fails."""

    def __init__(
        self,
        code: SheetErrorCode,
        message: str,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.code = code
        self.status = status
        self.cause = cause


class AppError(Exception):
    """Error with a catalog code, HTTP status and operator recommendation."""

    def __init__(
        self,
        code: SyncErrorCode,
        message: Optional[str] = None,
        http_status: Optional[int] = None,
        recommendation: Optional[str] = None,
        reference_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        entry = ERROR_CATALOG[code]
        super().__init__(message or entry.default_message)
        self.code = code
        self.message = message or entry.default_message
        self.http_status = http_status or entry.http_status
        self.recommendation = recommendation or entry.recommendation
        self.reference_id = reference_id or str(uuid.uuid4())
        self.cause = cause
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "recommendation": self.recommendation,
            "referenceId": self.reference_id,
        }


_SHEET_CODE_MAP = {
    SheetErrorCode.SHEET_NOT_FOUND: SyncErrorCode.SHEET_NOT_FOUND,
    SheetErrorCode.RATE_LIMIT: SyncErrorCode.SHEETS_RATE_LIMIT,
    SheetErrorCode.OAUTH_REVOKED: SyncErrorCode.SHEETS_AUTH_REVOKED,
    SheetErrorCode.INVALID_CONFIGURATION: SyncErrorCode.INVALID_SYNC_CONFIGURATION,
}


def map_to_app_error(
    error: BaseException,
    fallback_code: SyncErrorCode = SyncErrorCode.UNKNOWN_FAILURE,
) -> AppError:
    """Translate any exception raised during a sync into an AppError."""
    if isinstance(error, AppError):
        return error

    if isinstance(error, SheetFetchError):
        code = _SHEET_CODE_MAP.get(error.code, fallback_code)
        return AppError(code, message=str(error), cause=error)

    if isinstance(error, ConfigurationError):
        return AppError(SyncErrorCode.CONFIG_MISSING, message=str(error), cause=error)

    if isinstance(error, sqlite3.Error):
        return AppError(
            SyncErrorCode.DB_WRITE_FAILED,
            message=f"Database operation failed: {error}",
            cause=error,
        )

    return AppError(fallback_code, message=str(error) or None, cause=error)
