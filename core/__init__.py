"""Core modules for configuration, logging and errors."""

from core.config import (
    AppConfig,
    ConfigurationError,
    SheetsConfig,
    StorageConfig,
    SyncConfig,
    get_config,
    load_config_from_env,
    reset_config,
)
from core.errors import (
    AppError,
    SheetErrorCode,
    SheetFetchError,
    SyncErrorCode,
    map_to_app_error,
)
from core.logging_config import (
    LogContext,
    clear_context,
    generate_run_id,
    get_logger,
    log_event,
    set_context,
    setup_logging,
)

__all__ = [
    "AppConfig",
    "SheetsConfig",
    "SyncConfig",
    "StorageConfig",
    "ConfigurationError",
    "load_config_from_env",
    "get_config",
    "reset_config",
    "AppError",
    "SheetErrorCode",
    "SheetFetchError",
    "SyncErrorCode",
    "map_to_app_error",
    "setup_logging",
    "get_logger",
    "log_event",
    "LogContext",
    "generate_run_id",
    "set_context",
    "clear_context",
]
