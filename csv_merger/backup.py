"""Numbered master file family: atomic write and backup rotation."""

import csv
import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a new master could not be committed. Prior versions are intact."""


def slot_path(output_folder: Path, base: str, slot: int) -> Path:
    return output_folder / f"{base}_{slot}.csv"


def existing_slots(output_folder: Path, base: str) -> list[int]:
    """Contiguous occupied slots starting at 1."""
    slots = []
    slot = 1
    while slot_path(output_folder, base, slot).exists():
        slots.append(slot)
        slot += 1
    return slots


def copy_file(src: Path, dst: Path) -> None:
    """Copy a file, creating parent directories if needed."""
    os.makedirs(dst.parent, exist_ok=True)
    shutil.copy2(src, dst)


def rotate_backups(output_folder: Path, base: str, max_backups: int) -> None:
    """
    Shift the family down one slot to make room for a new ``_1``.

    ``_k`` becomes ``_{k+1}`` from the highest slot down; slots that would end
    up beyond ``max_backups`` are deleted. ``_1`` is copied rather than moved,
    so the current master is never missing. ``max_backups`` 0 keeps every
    version, 1 keeps none.
    """
    slots = existing_slots(output_folder, base)
    if not slots:
        return

    # Stale slots left over from a larger retention limit.
    if max_backups > 0:
        for slot in [s for s in slots if s > max_backups]:
            stale = slot_path(output_folder, base, slot)
            stale.unlink()
            logger.debug("Deleted %s (beyond retention of %d)", stale.name, max_backups)
        slots = [s for s in slots if s <= max_backups]

    for slot in sorted(slots, reverse=True):
        src = slot_path(output_folder, base, slot)
        dst = slot_path(output_folder, base, slot + 1)
        if max_backups and slot + 1 > max_backups:
            if slot > 1:
                src.unlink()
                logger.debug("Discarded %s", src.name)
            continue
        if slot == 1:
            copy_file(src, dst)
        else:
            os.replace(src, dst)
        logger.debug("Rotated %s -> %s", src.name, dst.name)


def _write_csv(path: Path, schema: list[str], rows: list[dict[str, str]], encoding: str) -> None:
    with open(path, "w", newline="", encoding=encoding) as f:
        writer = csv.DictWriter(f, fieldnames=schema, extrasaction="raise")
        writer.writeheader()
        writer.writerows(rows)
        f.flush()
        os.fsync(f.fileno())


def _validate_csv(path: Path, schema: list[str], expected_rows: int, encoding: str) -> None:
    with open(path, newline="", encoding=encoding) as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header != schema:
            raise BackupError(f"{path.name}: header does not match the schema")
        count = sum(1 for _ in reader)
    if count != expected_rows:
        raise BackupError(f"{path.name}: wrote {count} rows, expected {expected_rows}")


def write_master(
    output_folder: Path,
    base: str,
    schema: list[str],
    rows: list[dict[str, str]],
    max_backups: int,
    encoding: str = "utf-8",
) -> Path:
    """
    Commit a new master as ``{base}_1.csv``.

    The content is written and verified in a temporary file first; only then
    are the backups rotated and the temporary file moved into slot 1.

    Returns:
        Path of the new master
    """
    output_folder.mkdir(parents=True, exist_ok=True)
    target = slot_path(output_folder, base, 1)
    tmp = target.with_name(f"{target.name}.{os.getpid()}.tmp")

    try:
        _write_csv(tmp, schema, rows, encoding)
        _validate_csv(tmp, schema, len(rows), encoding)
        rotate_backups(output_folder, base, max_backups)
        os.replace(tmp, target)
    except BackupError:
        _discard(tmp)
        raise
    except (OSError, csv.Error, ValueError) as e:
        _discard(tmp)
        raise BackupError(f"Could not write {target}: {e}") from e

    logger.info("Wrote %s (%d rows, %d columns)", target.name, len(rows), len(schema))
    return target


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
