"""Health check endpoints."""
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import APIRouter
from pydantic import BaseModel

from core.config import get_config

router = APIRouter()

APP_VERSION = "1.0.0"
BUILD_TIME = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    build_time: str
    checks: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
def health_check():
    """
    Health check endpoint.

    Reports:
    - Database file presence
    - Sheets configuration status
    - Sync enabled flag
    """
    config = get_config()
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    db_path = Path(config.storage.database_path)
    checks["database"] = {
        "status": "ok" if db_path.exists() else "not_initialized",
        "path": str(db_path),
    }

    sheet_errors = config.sheets.validate()
    checks["sheets"] = {
        "status": "ok" if not sheet_errors else "misconfigured",
        "errors": sheet_errors,
    }
    if sheet_errors:
        overall_status = "degraded"

    checks["sync"] = {
        "enabled": config.sync.enabled,
        "interval_minutes": config.sync.interval_minutes,
    }

    return HealthResponse(
        status=overall_status,
        version=APP_VERSION,
        build_time=BUILD_TIME,
        checks=checks,
    )
