"""
Pytest configuration and shared fixtures.
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set environment variables BEFORE any imports that might use them
TEST_DB_PATH = os.path.join(tempfile.mkdtemp(), "device_roster_test.db")

os.environ["DATABASE_PATH"] = TEST_DB_PATH
os.environ["DEVICES_SHEET_ID"] = "sheet-123"
os.environ["SYNC_SCHEDULER_TOKEN"] = "test-scheduler-token"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["LOG_FORMAT"] = "text"

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from core.config import AppConfig, SheetsConfig, StorageConfig, SyncConfig, reset_config
from services.database import Database
from services.header_registry import headers_from_names
from services.sheets_source import FetchSheetDataResult, RowMetadata

SHEET_ID = "sheet-123"
T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSheetSource:
    """Stands in for SheetsSource; serves fixed headers and rows."""

    def __init__(self, headers=None, rows=None):
        self.headers = list(headers or [])
        self.rows = list(rows or [])
        self.error = None
        self.calls = []

    def set_data(self, headers, rows):
        self.headers = list(headers)
        self.rows = list(rows)

    def fetch_sheet_data(self, sheet_id=None, tab_name=None, include_empty_rows=False,
                         retry_policy=None, request_id=None):
        self.calls.append({
            "sheet_id": sheet_id,
            "tab_name": tab_name,
            "include_empty_rows": include_empty_rows,
            "retry_policy": retry_policy,
        })
        if self.error is not None:
            raise self.error
        return FetchSheetDataResult(
            headers=list(self.headers),
            ordered_headers=headers_from_names(self.headers),
            rows=[dict(row) for row in self.rows],
            row_metadata=[RowMetadata(row_number=index + 2) for index in range(len(self.rows))],
        )


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables (already set at module level)."""
    yield
    # Cleanup
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def fresh_config():
    """Drop the cached config so env changes in a test take effect."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path):
    """Empty database in a per-test directory."""
    return Database(tmp_path / "roster.db")


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(
        sheets=SheetsConfig(spreadsheet_id=SHEET_ID, tab_name="Devices", credentials_json="{}"),
        sync=SyncConfig(scheduler_token="test-scheduler-token"),
        storage=StorageConfig(database_path=str(tmp_path / "roster.db")),
        log_level="WARNING",
        log_format="text",
    )


@pytest.fixture
def device_headers():
    return ["Serial", "Device ID", "Assigned To", "Status", "Condition", "Last Seen", "Color"]


@pytest.fixture
def device_rows():
    return [
        {
            "Serial": "SN-001",
            "Device ID": "device-001",
            "Assigned To": "alex@nyu.edu",
            "Status": "active",
            "Condition": "good",
            "Last Seen": "2025-01-02T10:00:00Z",
            "Color": "Silver",
        },
        {
            "Serial": "SN-002",
            "Device ID": "device-002",
            "Assigned To": "sam@nyu.edu",
            "Status": "in repair",
            "Condition": "fair",
            "Last Seen": None,
            "Color": "Black",
        },
        {
            "Serial": "SN-003",
            "Device ID": "device-003",
            "Assigned To": None,
            "Status": None,
            "Condition": None,
            "Last Seen": None,
            "Color": None,
        },
    ]


@pytest.fixture
def fake_source(device_headers, device_rows):
    return FakeSheetSource(device_headers, device_rows)


@pytest.fixture
def orchestrator(app_config, database, fake_source, clock):
    from services.orchestrator import SyncOrchestrator

    return SyncOrchestrator(app_config, database=database, source=fake_source, clock=clock)
