"""
Secrets Management Module

Resolves the Google Sheets service account used by the sync worker.

Sources, in priority order:
- SheetsConfig.credentials_json: raw JSON or base64-encoded JSON
  (populated from SHEETS_CREDENTIALS_JSON)
- SheetsConfig.credentials_file: path to a service account JSON file
"""

import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Optional

from core.config import ConfigurationError, SheetsConfig

logger = logging.getLogger(__name__)

REQUIRED_SERVICE_ACCOUNT_FIELDS = ("client_email", "private_key")


def _decode_inline_credentials(raw: str) -> dict:
    """Accept either a JSON document or its base64 encoding."""
    text = raw.strip()
    if not text.startswith("{"):
        try:
            text = base64.b64decode(text, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigurationError(f"SHEETS_CREDENTIALS_JSON is not valid base64: {e}") from e
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"SHEETS_CREDENTIALS_JSON is not valid JSON: {e}") from e


def _validate_service_account(info: dict, source: str) -> dict:
    missing = [key for key in REQUIRED_SERVICE_ACCOUNT_FIELDS if not info.get(key)]
    if missing:
        raise ConfigurationError(
            f"Service account from {source} is missing fields: {', '.join(missing)}"
        )
    return info


def get_sheets_service_account(config: SheetsConfig) -> dict:
    """Get Google Sheets service account credentials.

    Raises:
        ConfigurationError: if no usable credentials are configured
    """
    if config.credentials_json:
        info = _decode_inline_credentials(config.credentials_json)
        logger.debug("Sheets service account loaded from SHEETS_CREDENTIALS_JSON")
        return _validate_service_account(info, "SHEETS_CREDENTIALS_JSON")

    creds_path = Path(config.credentials_file)
    if creds_path.exists():
        try:
            info = json.loads(creds_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Credentials file {creds_path} is not valid JSON: {e}") from e
        logger.debug(f"Sheets service account loaded from {creds_path}")
        return _validate_service_account(info, str(creds_path))

    raise ConfigurationError(
        f"Sheets credentials not found: set SHEETS_CREDENTIALS_JSON or provide {creds_path}"
    )


def service_account_email(config: SheetsConfig) -> Optional[str]:
    """Return the service account email for diagnostics, or None if unavailable."""
    try:
        return get_sheets_service_account(config).get("client_email")
    except ConfigurationError:
        return None
