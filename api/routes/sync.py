"""Device sync endpoints."""

import hmac
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.config import get_config
from core.errors import ERROR_CATALOG, AppError, SyncErrorCode
from core.logging_config import get_logger
from models.device import SyncRunResult, SyncRunStatus, TriggerContext, TriggerType
from services.orchestrator import SyncOrchestrator

logger = get_logger(__name__)

router = APIRouter()

_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator, built on first use from the environment config."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator(get_config())
    return _orchestrator


# ----- Pydantic Models -----


class ManualSyncRequest(BaseModel):
    """Manual sync request."""

    requested_by: Optional[str] = None
    anonymized: bool = False


class SyncRunResponse(BaseModel):
    """Outcome of a sync trigger."""

    status: str
    reason: Optional[str] = None
    run: dict[str, Any]


class ColumnListResponse(BaseModel):
    """Active column definitions for the sheet."""

    sheet_id: str
    columns: list[dict[str, Any]]
    total: int


class AuditRequest(BaseModel):
    """Serial audit request."""

    persist: bool = True
    requested_by: Optional[str] = None


# ----- Helpers -----


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def _run_response(result: SyncRunResult):
    body = SyncRunResponse(status=result.status.value, reason=result.reason, run=result.to_metadata())
    if result.status == SyncRunStatus.SUCCESS:
        return body
    if result.status == SyncRunStatus.SKIPPED:
        return JSONResponse(status_code=202, content=body.model_dump())

    code = SyncErrorCode(result.error_code) if result.error_code else SyncErrorCode.UNKNOWN_FAILURE
    entry = ERROR_CATALOG[code]
    return JSONResponse(
        status_code=entry.http_status,
        content={
            **body.model_dump(),
            "error": {
                "code": code.value,
                "message": result.error_message or entry.default_message,
                "recommendation": entry.recommendation,
                "referenceId": result.reference_id,
            },
        },
    )


def _verify_scheduler(cron_header: Optional[str], token_header: Optional[str]) -> None:
    expected = get_config().sync.scheduler_token
    if not expected:
        raise AppError(
            SyncErrorCode.CONFIG_MISSING,
            message="Sync scheduler token is not configured",
        )
    if (cron_header or "").lower() != "true" or not hmac.compare_digest(token_header or "", expected):
        raise AppError(SyncErrorCode.UNAUTHORIZED_CRON)


# ----- Endpoints -----


@router.post("/run", response_model=SyncRunResponse)
def run_scheduled_sync(
    request: Request,
    x_appengine_cron: Optional[str] = Header(default=None),
    x_internal_service_token: Optional[str] = Header(default=None),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Scheduler-triggered sync. Requires the cron and service-token headers."""
    _verify_scheduler(x_appengine_cron, x_internal_service_token)
    result = orchestrator.run_scheduled(request_id=_request_id(request))
    return _run_response(result)


@router.post("/manual", response_model=SyncRunResponse)
def run_manual_sync(
    request: Request,
    body: Optional[ManualSyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Operator-triggered sync."""
    body = body or ManualSyncRequest()
    trigger = TriggerContext(
        type=TriggerType.MANUAL,
        requested_by=body.requested_by,
        anonymized=body.anonymized,
    )
    result = orchestrator.run(trigger=trigger, request_id=_request_id(request))
    return _run_response(result)


@router.get("/status")
def get_sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Lock state and most recent run."""
    return orchestrator.get_status()


@router.get("/columns", response_model=ColumnListResponse)
def list_columns(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Active (not removed) column definitions."""
    columns = orchestrator.columns.list_active(orchestrator.sheet_id)
    return ColumnListResponse(
        sheet_id=orchestrator.sheet_id,
        columns=[column.to_dict() for column in columns],
        total=len(columns),
    )


@router.post("/audit")
def run_serial_audit(
    request: Request,
    body: Optional[AuditRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Report rows missing a serial number."""
    body = body or AuditRequest()
    trigger = TriggerContext(type=TriggerType.MANUAL, requested_by=body.requested_by)
    result = orchestrator.run_audit(request_id=_request_id(request), persist=body.persist, trigger=trigger)
    return result.to_dict()
