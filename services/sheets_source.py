"""
Google Sheets Source - Read device rows from the roster sheet

Reads the Devices tab page by page through the Sheets v4 API and converts
raw cells into typed values.

Features:
1. Service account auth (file or inline JSON/base64 credentials)
2. Paged reads: header row 1, then fixed-size row ranges
3. Typed cell inference (numbers, ISO-8601 dates, trimmed strings)
4. Retries with exponential backoff on transient failures
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

from googleapiclient.errors import HttpError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from core.config import SheetsConfig
from core.errors import SheetErrorCode, SheetFetchError
from core.logging_config import log_event
from core.secrets import get_sheets_service_account
from models.device import CellValue, SheetHeader, TypedRow
from services.header_registry import headers_from_names

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets.readonly"]

DEFAULT_PAGE_SIZE = 500
DEFAULT_MAX_PAGES = 50

ISO_8601_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d{1,6})?)?(?:Z|[+-]\d{2}:\d{2})?)?$"
)
NUMERIC_RE = re.compile(r"^[+-]?\d+(?:\.\d+)?$")

RETRYABLE_CODES = frozenset({
    SheetErrorCode.RATE_LIMIT,
    SheetErrorCode.OAUTH_REVOKED,
    SheetErrorCode.UNKNOWN,
})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 8000


DEFAULT_RETRY_POLICY = RetryPolicy()
AUDIT_RETRY_POLICY = RetryPolicy(max_attempts=5, base_delay_ms=750, max_delay_ms=8000)


@dataclass
class RowMetadata:
    row_number: int  # 1-based row in the sheet
    raw: List[Any] = field(default_factory=list)


@dataclass
class FetchMetrics:
    sheet_id: str
    tab_name: str
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    row_count: int
    page_count: int
    header_count: int
    retry_count: int
    request_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "sheetId": self.sheet_id,
            "tabName": self.tab_name,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat(),
            "durationMs": self.duration_ms,
            "rowCount": self.row_count,
            "pageCount": self.page_count,
            "headerCount": self.header_count,
            "retryCount": self.retry_count,
            "requestId": self.request_id,
        }


@dataclass
class FetchSheetDataResult:
    headers: List[str]
    ordered_headers: List[SheetHeader]
    rows: List[TypedRow]
    row_metadata: List[RowMetadata]
    metrics: Optional[FetchMetrics] = None


# =============================================================================
# CELL HELPERS
# =============================================================================

def infer_value(value: Any) -> CellValue:
    """Convert a raw Sheets cell into a typed value."""
    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return value

    trimmed = str(value).strip()
    if not trimmed:
        return None

    if NUMERIC_RE.match(trimmed):
        return float(trimmed) if "." in trimmed else int(trimmed)

    if ISO_8601_RE.match(trimmed):
        text = trimmed[:-1] + "+00:00" if trimmed.endswith("Z") else trimmed
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return trimmed
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return trimmed


def normalize_header_label(value: Any, position: int) -> str:
    text = "" if value is None else str(value).strip()
    return text or f"column_{position}"


def build_ordered_headers(headers: List[str]) -> List[SheetHeader]:
    return headers_from_names(headers)


def map_status_to_code(status: Optional[int]) -> SheetErrorCode:
    if not status:
        return SheetErrorCode.UNKNOWN
    if status == 404:
        return SheetErrorCode.SHEET_NOT_FOUND
    if status == 429:
        return SheetErrorCode.RATE_LIMIT
    if status in (401, 403):
        return SheetErrorCode.OAUTH_REVOKED
    if 400 <= status < 500:
        return SheetErrorCode.INVALID_CONFIGURATION
    return SheetErrorCode.UNKNOWN


def to_sheet_fetch_error(error: BaseException) -> SheetFetchError:
    if isinstance(error, SheetFetchError):
        return error
    if isinstance(error, HttpError):
        status = int(error.resp.status) if error.resp is not None else None
        return SheetFetchError(map_status_to_code(status), str(error), status=status, cause=error)
    return SheetFetchError(
        SheetErrorCode.UNKNOWN,
        str(error) or "Google Sheets fetch failed",
        cause=error,
    )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, SheetFetchError) and error.code in RETRYABLE_CODES


def _rows_to_records(headers: List[str], raw_rows: List[List[Any]], include_empty_rows: bool, start_row: int):
    records: List[TypedRow] = []
    metadata: List[RowMetadata] = []
    for offset, raw in enumerate(raw_rows):
        record: TypedRow = {}
        meaningful = 0
        for column, header in enumerate(headers):
            value = infer_value(raw[column]) if column < len(raw) else None
            record[header] = value
            if value is not None and value != "":
                meaningful += 1
        if include_empty_rows or meaningful:
            records.append(record)
            metadata.append(RowMetadata(row_number=start_row + offset, raw=list(raw)))
    return records, metadata


# =============================================================================
# SOURCE
# =============================================================================

class SheetsSource:
    """Reads typed rows from the roster sheet."""

    def __init__(self, config: SheetsConfig, service=None):
        self.config = config
        self._service = service

    def _get_service(self):
        """Get or create the Sheets API service."""
        if self._service is not None:
            return self._service

        from google.oauth2 import service_account
        from googleapiclient.discovery import build

        info = get_sheets_service_account(self.config)
        creds = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
        self._service = build("sheets", "v4", credentials=creds, cache_discovery=False)
        return self._service

    def _fetch_range(self, sheet_id: str, range_name: str, policy: RetryPolicy, counter: List[int]) -> List[List[Any]]:
        def before_sleep(retry_state: RetryCallState):
            counter[0] += 1
            error = retry_state.outcome.exception()
            log_event(
                logger, logging.WARNING, "SHEETS_FETCH_RETRY",
                f"Retrying Google Sheets fetch after transient failure ({error.code.value})",
                attempt=retry_state.attempt_number,
                range=range_name,
                code=error.code.value,
                delay_ms=int(retry_state.next_action.sleep * 1000) if retry_state.next_action else None,
            )

        retryer = Retrying(
            stop=stop_after_attempt(max(1, policy.max_attempts)),
            wait=wait_exponential(
                multiplier=policy.base_delay_ms / 1000,
                max=policy.max_delay_ms / 1000,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep,
            reraise=True,
        )

        for attempt in retryer:
            with attempt:
                try:
                    response = self._get_service().spreadsheets().values().get(
                        spreadsheetId=sheet_id,
                        range=range_name,
                        majorDimension="ROWS",
                        valueRenderOption="UNFORMATTED_VALUE",
                        dateTimeRenderOption="FORMATTED_STRING",
                    ).execute()
                except Exception as e:
                    raise to_sheet_fetch_error(e) from e
                return response.get("values", []) or []

    def fetch_sheet_data(
        self,
        sheet_id: Optional[str] = None,
        tab_name: Optional[str] = None,
        include_empty_rows: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        request_id: Optional[str] = None,
    ) -> FetchSheetDataResult:
        """Fetch the header row and all data rows of a tab.

        Raises:
            SheetFetchError: on configuration or API failure
        """
        sheet_id = (sheet_id or self.config.spreadsheet_id or "").strip()
        if not sheet_id:
            raise SheetFetchError(SheetErrorCode.INVALID_CONFIGURATION, "Google Sheets sheetId is required")
        tab_name = (tab_name if tab_name is not None else self.config.tab_name).strip()
        if not tab_name:
            raise SheetFetchError(SheetErrorCode.INVALID_CONFIGURATION, "Google Sheets tabName cannot be empty")

        policy = retry_policy or DEFAULT_RETRY_POLICY
        page_size = max(1, self.config.page_size or DEFAULT_PAGE_SIZE)
        max_pages = max(1, self.config.max_pages or DEFAULT_MAX_PAGES)
        retry_counter = [0]
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()

        logger.debug(f"Starting Google Sheets fetch: {sheet_id} '{tab_name}' (page size {page_size})")

        try:
            header_values = self._fetch_range(sheet_id, f"'{tab_name}'!1:1", policy, retry_counter)
            first_row = header_values[0] if header_values else []
            headers = [normalize_header_label(value, index + 1) for index, value in enumerate(first_row)]
            ordered_headers = build_ordered_headers(headers)

            rows: List[TypedRow] = []
            row_metadata: List[RowMetadata] = []
            page_count = 0
            next_row = 2

            while page_count < max_pages:
                range_name = f"'{tab_name}'!{next_row}:{next_row + page_size - 1}"
                raw_rows = self._fetch_range(sheet_id, range_name, policy, retry_counter)
                if not raw_rows:
                    break
                records, metadata = _rows_to_records(headers, raw_rows, include_empty_rows, next_row)
                rows.extend(records)
                row_metadata.extend(metadata)
                page_count += 1
                next_row += page_size
                if len(raw_rows) < page_size:
                    break
        except SheetFetchError as e:
            log_event(
                logger, logging.ERROR, "SHEETS_FETCH_FAILURE",
                f"Google Sheets fetch failed: {e}",
                sheet_id=sheet_id, tab_name=tab_name, code=e.code.value, status=e.status,
            )
            raise

        metrics = FetchMetrics(
            sheet_id=sheet_id,
            tab_name=tab_name,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            duration_ms=int((time.monotonic() - started) * 1000),
            row_count=len(rows),
            page_count=page_count,
            header_count=len(ordered_headers),
            retry_count=retry_counter[0],
            request_id=request_id,
        )
        log_event(logger, logging.INFO, "SHEETS_FETCH_SUCCESS", "Google Sheets fetch completed", **metrics.to_dict())

        return FetchSheetDataResult(
            headers=headers,
            ordered_headers=ordered_headers,
            rows=rows,
            row_metadata=row_metadata,
            metrics=metrics,
        )
