"""FastAPI control surface for the device roster sync.

Run with: uvicorn api.main:app --port 8000

Endpoints:
- /api/health - Health check
- /api/sync/run - Scheduled sync (cron + service token headers)
- /api/sync/manual - Manual sync
- /api/sync/status - Lock state and latest run
- /api/sync/columns - Active column definitions
- /api/sync/audit - Serial audit
"""
import sys
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from api.routes import health, sync
from core.config import get_config
from core.errors import AppError
from core.logging_config import LogContext, get_logger, setup_logging

logger = get_logger(__name__)

# Context variable for request ID - accessible throughout the request lifecycle
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a unique request ID to each request.

    - Uses the client's X-Request-ID when present, otherwise generates one
    - Binds it to the logging context for the request
    - Adds X-Request-ID header to responses
    """
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        request_id_var.set(request_id)
        request.state.request_id = request_id

        with LogContext(request_id=request_id):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        return response


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_var.get()


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = get_config()
    setup_logging(level=config.log_level, format_type=config.log_format)
    logger.info(f"Device roster sync API started (sheet={config.sheets.spreadsheet_id or '<unset>'})")
    yield


app = FastAPI(
    title="Device Roster Sync",
    description="Google Sheets to device store sync worker",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestIDMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    logger.warning(f"{request.method} {request.url.path} failed: {exc.code.value} ({exc.reference_id})")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
