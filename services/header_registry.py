"""
Header Registry

Builds the column registry for a sheet from its header row plus a sample of
data rows, diffs it against the previously persisted registry, and derives a
stable version string for the registry.

The registry is a pure function of its inputs: same headers and samples give
the same ordered output.
"""

import hashlib
import re
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from models.device import (
    CellValue,
    ColumnDataType,
    HeaderDefinition,
    HeaderDiff,
    SheetHeader,
    TypedRow,
)

COLUMN_SAMPLE_LIMIT = 32

_HEADER_KEY_RE = re.compile(r"[^a-z0-9]+")


def normalize_header_key(label: str, fallback_index: int) -> str:
    """Slugify a header label into a registry key.

    >>> normalize_header_key("Purchase Date (UTC)", 3)
    'purchase_date_utc'
    >>> normalize_header_key("???", 3)
    'column_3'
    """
    slug = _HEADER_KEY_RE.sub("_", label.strip().lower()).strip("_")
    return slug or f"column_{fallback_index}"


def unique_header_keys(labels: Sequence[str]) -> List[str]:
    """Registry keys for a header row; later collisions get a numeric suffix.

    >>> unique_header_keys(["Serial #", "serial", "Serial"])
    ['serial', 'serial_2', 'serial_3']
    """
    keys: List[str] = []
    taken = set()
    for index, label in enumerate(labels):
        base = normalize_header_key(label, index + 1)
        key, suffix = base, 2
        while key in taken:
            key = f"{base}_{suffix}"
            suffix += 1
        taken.add(key)
        keys.append(key)
    return keys


def _is_blank(value: CellValue) -> bool:
    return value is None or value == ""


def _classify(value: CellValue) -> ColumnDataType:
    # bool first: bool is a subclass of int
    if isinstance(value, bool):
        return ColumnDataType.BOOLEAN
    if isinstance(value, (int, float)):
        return ColumnDataType.NUMBER
    if isinstance(value, datetime):
        return ColumnDataType.DATE
    return ColumnDataType.STRING


def _infer_column_profile(header: SheetHeader, rows: Optional[Sequence[TypedRow]]):
    """Return (data_type, nullable) for one column."""
    if not rows:
        return ColumnDataType.UNKNOWN, True

    samples: List[CellValue] = []
    nullable = False
    for row in rows:
        value = row.get(header.name)
        if _is_blank(value):
            nullable = True
            continue
        samples.append(value)
        if len(samples) >= COLUMN_SAMPLE_LIMIT:
            break

    if not samples:
        return ColumnDataType.UNKNOWN, True

    detected = {_classify(value) for value in samples}

    if ColumnDataType.DATE in detected:
        return ColumnDataType.DATE, nullable
    if detected == {ColumnDataType.NUMBER}:
        return ColumnDataType.NUMBER, nullable
    if detected == {ColumnDataType.BOOLEAN}:
        return ColumnDataType.BOOLEAN, nullable
    if ColumnDataType.STRING in detected:
        return ColumnDataType.STRING, nullable
    return ColumnDataType.UNKNOWN, nullable


def build_header_registry(
    headers: Sequence[SheetHeader],
    sample_rows: Optional[Sequence[TypedRow]] = None,
) -> List[HeaderDefinition]:
    """Build registry entries in header order."""
    registry = []
    keys = unique_header_keys([header.name for header in headers])
    for header, key in zip(headers, keys):
        data_type, nullable = _infer_column_profile(header, sample_rows)
        registry.append(
            HeaderDefinition(
                key=key,
                label=header.name,
                display_order=header.position,
                data_type=data_type,
                nullable=nullable,
            )
        )
    return registry


def diff_header_registry(
    current: Sequence[HeaderDefinition],
    previous: Sequence[HeaderDefinition],
) -> HeaderDiff:
    """Set-difference by key.

    added/unchanged follow the order of ``current``; removed follows
    ``previous``. Unchanged entries carry the current definition.
    """
    current_keys = {entry.key for entry in current}
    previous_keys = {entry.key for entry in previous}

    return HeaderDiff(
        added=[entry for entry in current if entry.key not in previous_keys],
        removed=[entry for entry in previous if entry.key not in current_keys],
        unchanged=[entry for entry in current if entry.key in previous_keys],
    )


def derive_registry_version(entries: Iterable[HeaderDefinition]) -> str:
    """Stable version id for a registry, stamped onto synced devices."""
    ordered = sorted(entries, key=lambda entry: entry.display_order)
    if not ordered:
        return "registry-empty"

    digest = hashlib.sha1()
    for entry in ordered:
        nullable = "true" if entry.nullable else "false"
        digest.update(
            f"{entry.key}:{entry.label}:{entry.data_type.value}:{nullable}".encode("utf-8")
        )
    return f"registry-{len(ordered)}-{digest.hexdigest()}"


def headers_from_names(names: Sequence[str]) -> List[SheetHeader]:
    """Build SheetHeader entries from a plain list of column names."""
    return [
        SheetHeader(
            name=name,
            normalized_name=key,
            position=index,
        )
        for index, (name, key) in enumerate(zip(names, unique_header_keys(names)))
    ]
