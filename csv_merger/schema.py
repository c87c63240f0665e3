"""Unified column schema and row projection."""

import csv
from pathlib import Path
from typing import Iterable

SOURCE_COLUMN = "SourceFile"
TIMESTAMP_COLUMN = "CaptureTime"

# Declared order of metadata columns at the front of the schema.
METADATA_COLUMNS = (SOURCE_COLUMN, TIMESTAMP_COLUMN)


def metadata_columns(add_source: bool, add_timestamp: bool) -> list[str]:
    """Enabled metadata columns, in declared order."""
    enabled = {SOURCE_COLUMN: add_source, TIMESTAMP_COLUMN: add_timestamp}
    return [name for name in METADATA_COLUMNS if enabled[name]]


def merge_schema(
    existing: Iterable[str],
    new: Iterable[str],
    metadata: Iterable[str] = (),
) -> list[str]:
    """
    Union two column lists without ever dropping a column.

    Metadata columns missing from ``existing`` go first, in declared order.
    Existing columns keep their position and unseen columns from ``new`` are
    appended in the order they are met. Names are compared exactly.
    """
    existing = list(existing)
    seen = set(existing)
    merged = [name for name in metadata if name not in seen]
    seen.update(merged)
    merged.extend(existing)
    for name in new:
        if name not in seen:
            merged.append(name)
            seen.add(name)
    return merged


def project_row(
    row: dict[str, str],
    schema: list[str],
    metadata: dict[str, str] | None = None,
) -> dict[str, str]:
    """Map a source row onto the schema, filling absent columns with ''."""
    metadata = metadata or {}
    projected = {}
    for column in schema:
        if column in metadata:
            projected[column] = metadata[column]
        else:
            value = row.get(column)
            projected[column] = "" if value is None else value
    return projected


def read_header(path: Path, encoding: str = "utf-8") -> list[str]:
    """Return the header row of a CSV file, or [] if it has none."""
    with open(path, newline="", encoding=read_encoding(encoding)) as f:
        return next(csv.reader(f), [])


def read_encoding(encoding: str) -> str:
    # Tolerate a byte order mark written by spreadsheet tools.
    return "utf-8-sig" if encoding.lower().replace("_", "-") == "utf-8" else encoding
