"""Core merge logic."""

import csv
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from .backup import BackupError, slot_path, write_master
from .clock import Clock
from .config import Settings
from .dedupe import deduplicate
from .models import SourceFileRecord
from .scanner import parse_name_timestamp
from .schema import (
    SOURCE_COLUMN,
    TIMESTAMP_COLUMN,
    merge_schema,
    metadata_columns,
    project_row,
    read_encoding,
)

logger = logging.getLogger(__name__)


class SourceFileError(Exception):
    """A source file could not be read or parsed this cycle."""


class SourceFileGone(SourceFileError):
    """The source file disappeared between listing and reading."""


class SkippedFile:
    """Record of a source file that was left out of a merge."""

    def __init__(self, name: str, path: str, error: str):
        self.name = name
        self.path = path
        self.error = error


@dataclass
class MergeResult:
    """Outcome of one merge pass."""
    schema: list[str]
    rows_written: int = 0
    merged: list[SourceFileRecord] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)
    duplicates_removed: int = 0
    output: Optional[Path] = None


def format_timestamp(timestamp: float) -> str:
    """Format a Unix timestamp as a human-readable string."""
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def capture_time(record: SourceFileRecord) -> str:
    """Timestamp encoded in the file name, falling back to its modification time."""
    parsed = parse_name_timestamp(record.name)
    if parsed is not None:
        return parsed.strftime("%Y-%m-%d %H:%M:%S")
    return format_timestamp(record.modified_time)


def _clean(row: dict) -> dict[str, str]:
    return {k: ("" if v is None else v) for k, v in row.items()}


def _parse_csv(path: Path, encoding: str) -> tuple[list[str], list[dict[str, str]]]:
    with open(path, newline="", encoding=read_encoding(encoding)) as f:
        reader = csv.DictReader(f)
        header = reader.fieldnames
        if not header or all(not name.strip() for name in header):
            raise SourceFileError("missing header row")
        if any(not name.strip() for name in header):
            raise SourceFileError("header has an empty column name")
        if len(set(header)) != len(header):
            raise SourceFileError("header has duplicate column names")

        rows = []
        for row in reader:
            if None in row:
                raise SourceFileError(f"line {reader.line_num}: more fields than header columns")
            rows.append(_clean(row))
    return list(header), rows


def read_source_rows(
    path: Path,
    encoding: str = "utf-8",
    max_retries: int = 3,
    retry_delay: float = 0.5,
    clock: Optional[Clock] = None,
) -> tuple[list[str], list[dict[str, str]]]:
    """
    Read a source CSV into its header and rows.

    A file held open by another process (PermissionError) is retried up to
    ``max_retries`` times, ``retry_delay`` seconds apart.

    Raises:
        SourceFileError: Malformed content or retries exhausted
        SourceFileGone: The file no longer exists
    """
    clock = clock or Clock()
    attempt = 0
    while True:
        try:
            return _parse_csv(path, encoding)
        except FileNotFoundError as e:
            raise SourceFileGone(str(e)) from e
        except PermissionError as e:
            if attempt >= max_retries:
                raise SourceFileError(f"still locked after {max_retries} retries: {e}") from e
            attempt += 1
            logger.warning("%s is locked, retry %d/%d", path.name, attempt, max_retries)
            clock.wait(retry_delay)
        except (UnicodeDecodeError, csv.Error) as e:
            raise SourceFileError(str(e)) from e
        except OSError as e:
            raise SourceFileError(str(e)) from e


def load_master(output_folder: Path, base: str, encoding: str = "utf-8") -> tuple[list[str], list[dict[str, str]]]:
    """Header and rows of the current master ``{base}_1.csv`` (empty if none)."""
    path = slot_path(output_folder, base, 1)
    if not path.exists():
        return [], []
    try:
        with open(path, newline="", encoding=read_encoding(encoding)) as f:
            reader = csv.DictReader(f)
            header = list(reader.fieldnames or [])
            rows = [_clean(row) for row in reader]
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise BackupError(f"Cannot read existing master {path}: {e}") from e
    return header, rows


def merge_files(
    candidates: list[SourceFileRecord],
    settings: Settings,
    schema: list[str],
    modified: tuple[str, ...] = (),
    clock: Optional[Clock] = None,
) -> MergeResult:
    """
    Fold stable candidate files into the master.

    Existing master rows are kept (additive processing). Rows of a modified
    file replace that file's earlier rows when the master carries a
    SourceFile column; otherwise they are appended again.

    Args:
        candidates: Stable files to merge, in processing order
        settings: Settings snapshot
        schema: Unified schema carried over from the previous cycle
        modified: Names of candidates that were merged before
        clock: Clock used for lock retry delays

    Returns:
        MergeResult with the updated schema. ``output`` is None when nothing
        could be read and no new master was written.

    Raises:
        BackupError: The new master could not be committed
    """
    meta = metadata_columns(settings.add_source_column, settings.add_timestamp_column)
    master_header, master_rows = load_master(settings.output_folder, settings.output_base, settings.encoding)
    schema = merge_schema(schema, master_header, meta)
    result = MergeResult(schema=schema)

    loaded = []
    for record in tqdm(candidates, desc="Merging", unit="file", disable=not settings.show_progress):
        try:
            header, rows = read_source_rows(
                Path(record.path),
                encoding=settings.encoding,
                max_retries=settings.max_retries,
                retry_delay=settings.retry_delay,
                clock=clock,
            )
        except SourceFileGone:
            logger.debug("%s vanished before it could be read", record.name)
            result.skipped.append(SkippedFile(record.name, record.path, "file vanished"))
            continue
        except SourceFileError as e:
            logger.warning("Skipping %s this cycle: %s", record.name, e)
            result.skipped.append(SkippedFile(record.name, record.path, str(e)))
            continue
        logger.debug("Read %s: %d rows, %d columns", record.name, len(rows), len(header))
        loaded.append((record, header, rows))

    if not loaded:
        return result

    replaced = {record.name for record, _, _ in loaded if record.name in modified}
    if replaced:
        if SOURCE_COLUMN in schema:
            before = len(master_rows)
            master_rows = [r for r in master_rows if r.get(SOURCE_COLUMN) not in replaced]
            logger.info("Replacing %d rows from modified files: %s",
                        before - len(master_rows), ", ".join(sorted(replaced)))
        else:
            logger.warning("Master has no %s column; rows of modified files are appended again: %s",
                           SOURCE_COLUMN, ", ".join(sorted(replaced)))

    for _, header, _ in loaded:
        schema = merge_schema(schema, header, meta)

    merged_rows = [project_row(row, schema) for row in master_rows]
    for record, _, rows in loaded:
        values = {}
        if SOURCE_COLUMN in meta:
            values[SOURCE_COLUMN] = record.name
        if TIMESTAMP_COLUMN in meta:
            values[TIMESTAMP_COLUMN] = capture_time(record)
        merged_rows.extend(project_row(row, schema, values) for row in rows)

    if settings.dedupe != "none":
        merged_rows, removed = deduplicate(
            merged_rows,
            mode=settings.dedupe,
            key_columns=settings.dedupe_keys,
            metadata_columns=meta,
            strip_chars=settings.dedupe_strip,
        )
        result.duplicates_removed = removed
        if removed:
            logger.info("Removed %d duplicate rows", removed)

    result.output = write_master(
        settings.output_folder,
        settings.output_base,
        schema,
        merged_rows,
        settings.max_backups,
        encoding=settings.encoding,
    )
    result.schema = schema
    result.rows_written = len(merged_rows)
    result.merged = [record for record, _, _ in loaded]
    return result
