"""
Device Schema - canonical fields for the Devices sheet

Defines how sheet columns map onto canonical device fields, the known
status/condition vocabularies, and the validation applied to every
normalized device before it is written.

Header matching is done on a canonical form of the column name:
lower-case with every non-alphanumeric character removed, so
"Serial Number", "serial_number" and "SERIALNUMBER" are the same column.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Generic, List, Tuple, TypeVar, Union

from models.device import NormalizedDevice

T = TypeVar("T")

_CANONICAL_RE = re.compile(r"[^a-z0-9]")


def canonicalize_header(value: str) -> str:
    """Canonical comparison form for a header label."""
    return _CANONICAL_RE.sub("", value.lower())


# =============================================================================
# FIELD ALIASES
# =============================================================================

FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "serial": ("serial", "serialnumber", "serialno"),
    "legacy_device_id": ("deviceid", "legacydeviceid"),
    "sheet_id": ("sheetid",),
    "assigned_to": ("assignedto",),
    "status": ("status",),
    "condition": ("condition",),
    "offboarding_status": ("offboardingstatus",),
    "last_seen": ("lastseen",),
    "last_transfer_notes": ("lasttransfernotes",),
}

OFFBOARDING_METADATA_ALIASES: Dict[str, Tuple[str, ...]] = {
    "last_actor": ("offboardingactor", "transferactor"),
    "last_action": ("offboardingaction", "transferaction"),
    "last_transfer_at": ("offboardingtimestamp", "transfertimestamp"),
}

# Columns that never become dynamic attributes
RESERVED_COLUMNS = frozenset(
    [alias for aliases in FIELD_ALIASES.values() for alias in aliases]
    + [alias for aliases in OFFBOARDING_METADATA_ALIASES.values() for alias in aliases]
    + ["lastsyncedat", "contenthash", "columndefinitionsversion"]
)

IDENTIFIER_ALIASES = FIELD_ALIASES["serial"] + FIELD_ALIASES["legacy_device_id"]


# =============================================================================
# VOCABULARIES
# =============================================================================

STATUS_VOCABULARY = (
    "Active",
    "Inactive",
    "In Repair",
    "Lost",
    "Retired",
    "Offboarded",
    "Unknown",
)

CONDITION_VOCABULARY = (
    "Excellent",
    "Good",
    "Fair",
    "Poor",
    "Damaged",
    "Unknown",
)

STATUS_LOOKUP = {canonicalize_header(v): v for v in STATUS_VOCABULARY}
CONDITION_LOOKUP = {canonicalize_header(v): v for v in CONDITION_VOCABULARY}


# =============================================================================
# VALIDATION
# =============================================================================

@dataclass(frozen=True)
class Ok(Generic[T]):
    """Validation passed."""
    value: T


@dataclass(frozen=True)
class Invalid:
    """Validation failed; errors grouped by field name."""
    field_errors: Dict[str, List[str]] = field(default_factory=dict)

    def message(self) -> str:
        return "; ".join(
            f"{name}: {', '.join(errors)}" for name, errors in self.field_errors.items()
        )


ValidationResult = Union[Ok[NormalizedDevice], Invalid]


def _check_text(errors: Dict[str, List[str]], name: str, value, required: bool = True):
    if value is None:
        if required:
            errors.setdefault(name, []).append("is required")
        return
    if not isinstance(value, str):
        errors.setdefault(name, []).append("must be a string")
        return
    if required and not value.strip():
        errors.setdefault(name, []).append("is required")


def _check_datetime(errors: Dict[str, List[str]], name: str, value):
    if value is None:
        return
    if not isinstance(value, datetime):
        errors.setdefault(name, []).append("must be a datetime")
    elif value.tzinfo is None:
        errors.setdefault(name, []).append("must be timezone-aware")


def validate_device(device: NormalizedDevice) -> ValidationResult:
    """Validate a normalized device, returning Ok(device) or Invalid(field_errors)."""
    errors: Dict[str, List[str]] = {}

    _check_text(errors, "serial", device.serial)
    _check_text(errors, "sheetId", device.sheet_id)
    _check_text(errors, "assignedTo", device.assigned_to)
    _check_text(errors, "status", device.status)
    _check_text(errors, "condition", device.condition)
    _check_text(errors, "legacyDeviceId", device.legacy_device_id, required=False)
    _check_text(errors, "offboardingStatus", device.offboarding_status, required=False)

    _check_datetime(errors, "lastSeen", device.last_seen)
    _check_datetime(errors, "lastSyncedAt", device.last_synced_at)
    if device.offboarding_metadata:
        _check_datetime(errors, "offboardingMetadata.lastTransferAt",
                        device.offboarding_metadata.last_transfer_at)

    for key, value in device.dynamic_attributes.items():
        if not key:
            errors.setdefault("dynamicAttributes", []).append("keys must be non-empty")
        elif value is not None and not isinstance(value, (str, int, float, bool)):
            errors.setdefault("dynamicAttributes", []).append(f"{key} must be a scalar")
        elif isinstance(value, float) and not math.isfinite(value):
            errors.setdefault("dynamicAttributes", []).append(f"{key} must be finite")

    if errors:
        return Invalid(errors)
    return Ok(device)
