"""
Row Normalizer

Converts typed sheet rows into canonical NormalizedDevice records.

Per row, in input order:
1. Resolve serial (serial column, else deviceId). Missing serial skips the row.
2. Map status/condition onto the known vocabularies (title case otherwise).
3. Parse lastSeen leniently (ISO string, epoch millis, datetime).
4. Capture unrecognized columns as scalar dynamic attributes.
5. Validate, then stamp the content hash used for no-op detection.

Only a missing serial or a failed validation drops a row; every other
field degrades to its default.
"""

import hashlib
import json
import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from models.device import (
    CellValue,
    DynamicValue,
    NormalizationResult,
    NormalizedDevice,
    OffboardingMetadata,
    SheetHeader,
    TypedRow,
)
from schemas.device_schema import (
    CONDITION_LOOKUP,
    FIELD_ALIASES,
    OFFBOARDING_METADATA_ALIASES,
    RESERVED_COLUMNS,
    STATUS_LOOKUP,
    Invalid,
    canonicalize_header,
    validate_device,
)
from services.header_registry import normalize_header_key

logger = logging.getLogger(__name__)

MAX_DYNAMIC_COLUMNS = 100

# Marks a dynamic value that must be dropped rather than stored as null
_DROP = object()


# =============================================================================
# VALUE COERCION
# =============================================================================

def to_iso(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def coerce_string(value: CellValue) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if value.is_integer() else str(value)
    if isinstance(value, datetime):
        return to_iso(value)
    return str(value)


def coerce_datetime(value) -> Optional[datetime]:
    """Lenient datetime parsing; anything unparseable becomes None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def title_case(value: str) -> str:
    return " ".join(
        segment[0].upper() + segment[1:] for segment in value.lower().split()
    )


def _normalize_vocabulary(value: Optional[str], lookup: Dict[str, str]) -> str:
    if not value:
        return "Unknown"
    return lookup.get(canonicalize_header(value)) or title_case(value)


def normalize_status(value: Optional[str]) -> str:
    return _normalize_vocabulary(value, STATUS_LOOKUP)


def normalize_condition(value: Optional[str]) -> str:
    return _normalize_vocabulary(value, CONDITION_LOOKUP)


def normalize_dynamic_value(value):
    """Scalar dynamic value, or _DROP for unsupported types."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, str):
        return value.strip() or None
    return _DROP


# =============================================================================
# CONTENT HASH
# =============================================================================

def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value is not None else None


def compute_content_hash(device: NormalizedDevice) -> str:
    """SHA-256 over the normalized fields, excluding last_synced_at."""
    metadata = device.offboarding_metadata
    payload = {
        "serial": device.serial.lower(),
        "legacyDeviceId": _lower(device.legacy_device_id),
        "assignedTo": device.assigned_to.lower(),
        "status": device.status.lower(),
        "condition": device.condition.lower(),
        "offboardingStatus": _lower(device.offboarding_status),
        "lastTransferNotes": _lower(device.last_transfer_notes),
        "lastSeen": to_iso(device.last_seen) if device.last_seen else None,
        "sheetId": device.sheet_id.lower(),
        "offboardingMetadata": {
            "lastActor": _lower(metadata.last_actor),
            "lastAction": _lower(metadata.last_action),
            "lastTransferAt": to_iso(metadata.last_transfer_at) if metadata.last_transfer_at else None,
        } if metadata else None,
        "dynamicAttributes": (
            {key: device.dynamic_attributes[key] for key in sorted(device.dynamic_attributes)}
            if device.dynamic_attributes else None
        ),
        "columnDefinitionsVersion": device.column_definitions_version,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# =============================================================================
# NORMALIZATION
# =============================================================================

def _canonical_value_map(row: TypedRow) -> Dict[str, CellValue]:
    values: Dict[str, CellValue] = {}
    for column, value in row.items():
        values.setdefault(canonicalize_header(str(column)), value)
    return values


def _extract(values: Dict[str, CellValue], aliases: Sequence[str]) -> CellValue:
    for alias in aliases:
        if alias in values:
            return values[alias]
    return None


def _dynamic_attributes(
    row: TypedRow,
    header_lookup: Dict[str, SheetHeader],
) -> List[Tuple[str, DynamicValue]]:
    entries = []
    for column_index, (column, value) in enumerate(row.items()):
        column = str(column)
        canonical = canonicalize_header(column)
        if not canonical or canonical in RESERVED_COLUMNS:
            continue
        header = header_lookup.get(column.lower())
        key = header.normalized_name if header else normalize_header_key(column, column_index + 1)
        normalized = normalize_dynamic_value(value)
        if normalized is _DROP:
            continue
        entries.append((key, normalized))
    return entries


def _offboarding_metadata(values: Dict[str, CellValue]) -> Optional[OffboardingMetadata]:
    actor = coerce_string(_extract(values, OFFBOARDING_METADATA_ALIASES["last_actor"]))
    action = coerce_string(_extract(values, OFFBOARDING_METADATA_ALIASES["last_action"]))
    timestamp_raw = _extract(values, OFFBOARDING_METADATA_ALIASES["last_transfer_at"])
    if not (actor or action or coerce_string(timestamp_raw)):
        return None
    return OffboardingMetadata(
        last_actor=actor,
        last_action=action,
        last_transfer_at=coerce_datetime(timestamp_raw),
    )


def normalize_sheet_rows(
    raw_rows: Sequence[TypedRow],
    sheet_id: str,
    now: Optional[datetime] = None,
    headers: Optional[Sequence[SheetHeader]] = None,
    column_definitions_version: Optional[str] = None,
    max_dynamic_columns: int = MAX_DYNAMIC_COLUMNS,
) -> NormalizationResult:
    """Normalize raw rows into devices, collecting anomalies for skipped rows.

    Args:
        raw_rows: Rows keyed by the sheet's header labels
        sheet_id: Source sheet, stamped on every device
        now: Run timestamp for last_synced_at (defaults to current UTC time)
        headers: Sheet headers, used to key dynamic attributes
        column_definitions_version: Registry version stamped on every device
        max_dynamic_columns: Per-row cap on dynamic attributes

    Returns:
        NormalizationResult with devices in input order
    """
    now = now or datetime.now(timezone.utc)
    header_lookup = {header.name.lower(): header for header in headers or []}
    devices: List[NormalizedDevice] = []
    anomalies: List[str] = []

    for index, row in enumerate(raw_rows):
        row_label = f"row {index + 1}"
        values = _canonical_value_map(row)

        legacy_device_id = coerce_string(_extract(values, FIELD_ALIASES["legacy_device_id"]))
        serial = coerce_string(_extract(values, FIELD_ALIASES["serial"])) or legacy_device_id
        if not serial:
            anomalies.append(f"{row_label}: missing serial – row skipped")
            continue
        serial = serial.lower()

        dynamic_entries = _dynamic_attributes(row, header_lookup)
        if len(dynamic_entries) > max_dynamic_columns:
            anomalies.append(
                f"{row_label}: dynamic attribute count {len(dynamic_entries)} "
                f"exceeds limit {max_dynamic_columns}"
            )
            dynamic_entries = dynamic_entries[:max_dynamic_columns]

        device = NormalizedDevice(
            serial=serial,
            legacy_device_id=legacy_device_id,
            sheet_id=sheet_id,
            assigned_to=coerce_string(_extract(values, FIELD_ALIASES["assigned_to"])) or "Unassigned",
            status=normalize_status(coerce_string(_extract(values, FIELD_ALIASES["status"]))),
            condition=normalize_condition(coerce_string(_extract(values, FIELD_ALIASES["condition"]))),
            offboarding_status=coerce_string(_extract(values, FIELD_ALIASES["offboarding_status"])),
            offboarding_metadata=_offboarding_metadata(values),
            last_seen=coerce_datetime(_extract(values, FIELD_ALIASES["last_seen"])),
            last_transfer_notes=coerce_string(_extract(values, FIELD_ALIASES["last_transfer_notes"])),
            last_synced_at=now,
            dynamic_attributes=dict(dynamic_entries),
            column_definitions_version=column_definitions_version,
        )

        validation = validate_device(device)
        if isinstance(validation, Invalid):
            anomalies.append(f"{row_label}: {validation.message()}")
            continue

        device.content_hash = compute_content_hash(device)
        devices.append(device)

    if anomalies:
        logger.debug(f"Normalized {len(devices)}/{len(raw_rows)} rows with {len(anomalies)} anomalies")

    return NormalizationResult(
        devices=devices,
        row_count=len(raw_rows),
        skipped=len(raw_rows) - len(devices),
        anomalies=anomalies,
    )
