"""Centralized configuration management with validation."""
import os
from dataclasses import dataclass, field
from typing import Optional, List
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _mask_secret(value: str, visible_chars: int = 4) -> str:
    """Mask a secret value for logging, showing only first few chars."""
    if not value:
        return "<empty>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class SheetsConfig:
    """Google Sheets source configuration."""
    spreadsheet_id: str = ""
    tab_name: str = "Devices"
    credentials_file: str = "credentials.json"
    credentials_json: Optional[str] = None  # raw JSON or base64-encoded JSON
    page_size: int = 500
    max_pages: int = 50

    def validate(self) -> List[str]:
        """Validate sheets configuration, return list of errors."""
        errors = []
        if not self.spreadsheet_id:
            errors.append("DEVICES_SHEET_ID is required")
        if not self.tab_name.strip():
            errors.append("SHEETS_TAB_NAME cannot be empty")
        if not self.credentials_json and not Path(self.credentials_file).exists():
            errors.append(
                f"Sheets credentials not found: set SHEETS_CREDENTIALS_JSON or "
                f"provide {self.credentials_file}"
            )
        if self.page_size < 1:
            errors.append("SHEETS_PAGE_SIZE must be at least 1")
        if self.max_pages < 1:
            errors.append("SHEETS_MAX_PAGES must be at least 1")
        return errors

    def __repr__(self) -> str:
        return (f"SheetsConfig(spreadsheet_id={self.spreadsheet_id}, tab_name={self.tab_name}, "
                f"credentials_file={self.credentials_file}, "
                f"credentials_json={_mask_secret(self.credentials_json or '')})")


@dataclass
class SyncConfig:
    """Sync worker configuration."""
    enabled: bool = True
    interval_minutes: int = 2
    lock_ttl_seconds: int = 600
    sample_size: int = 32
    max_dynamic_columns: int = 100
    scheduler_token: str = ""

    @property
    def lock_ttl_ms(self) -> int:
        """Lease length; never shorter than the scheduling cadence."""
        return max(self.lock_ttl_seconds, self.interval_minutes * 60) * 1000

    def validate(self) -> List[str]:
        """Validate sync configuration, return list of errors."""
        errors = []
        if self.interval_minutes < 1:
            errors.append("SYNC_INTERVAL_MINUTES must be at least 1")
        if self.lock_ttl_seconds < 1:
            errors.append("SYNC_LOCK_TTL_SECONDS must be at least 1")
        if self.sample_size < 1:
            errors.append("SYNC_SAMPLE_SIZE must be at least 1")
        if self.max_dynamic_columns < 0:
            errors.append("SYNC_MAX_DYNAMIC_COLUMNS cannot be negative")
        return errors

    def __repr__(self) -> str:
        return (f"SyncConfig(enabled={self.enabled}, interval_minutes={self.interval_minutes}, "
                f"lock_ttl_seconds={self.lock_ttl_seconds}, "
                f"scheduler_token={_mask_secret(self.scheduler_token)})")


@dataclass
class StorageConfig:
    """Storage/persistence configuration."""
    database_path: str = "data/device_roster.db"

    def validate(self) -> List[str]:
        """Validate storage configuration, return list of errors."""
        errors = []
        # Ensure parent directory exists or can be created
        db_parent = Path(self.database_path).parent
        if str(db_parent) != "." and not db_parent.exists():
            try:
                db_parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory: {e}")
        return errors


@dataclass
class AppConfig:
    """Main application configuration."""
    sheets: SheetsConfig = field(default_factory=SheetsConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    # Runtime settings
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"

    def validate(self, require_sheets: bool = True) -> None:
        """Validate all configuration, raise ConfigurationError if invalid."""
        errors = []

        if require_sheets:
            errors.extend(self.sheets.validate())

        errors.extend(self.sync.validate())
        errors.extend(self.storage.validate())

        if errors:
            raise ConfigurationError("Configuration errors:\n  - " + "\n  - ".join(errors))

    def __repr__(self) -> str:
        return (f"AppConfig(\n  sheets={self.sheets},\n  sync={self.sync},\n  "
                f"storage={self.storage},\n  log_level={self.log_level}\n)")


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables."""
    from dotenv import load_dotenv
    load_dotenv()

    try:
        config = AppConfig(
            sheets=SheetsConfig(
                spreadsheet_id=os.getenv("DEVICES_SHEET_ID", "").strip(),
                tab_name=os.getenv("SHEETS_TAB_NAME", "Devices"),
                credentials_file=os.getenv("SHEETS_CREDENTIALS_FILE", "credentials.json"),
                credentials_json=os.getenv("SHEETS_CREDENTIALS_JSON"),
                page_size=int(os.getenv("SHEETS_PAGE_SIZE", "500")),
                max_pages=int(os.getenv("SHEETS_MAX_PAGES", "50")),
            ),
            sync=SyncConfig(
                enabled=_env_bool("SYNC_ENABLED", "true"),
                interval_minutes=int(os.getenv("SYNC_INTERVAL_MINUTES", "2")),
                lock_ttl_seconds=int(os.getenv("SYNC_LOCK_TTL_SECONDS", "600")),
                sample_size=int(os.getenv("SYNC_SAMPLE_SIZE", "32")),
                max_dynamic_columns=int(os.getenv("SYNC_MAX_DYNAMIC_COLUMNS", "100")),
                scheduler_token=os.getenv("SYNC_SCHEDULER_TOKEN", ""),
            ),
            storage=StorageConfig(
                database_path=os.getenv("DATABASE_PATH", "data/device_roster.db"),
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric configuration value: {e}") from e

    return config


# Singleton config instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config_from_env()
    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
