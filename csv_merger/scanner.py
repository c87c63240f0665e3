"""Input folder scanning and stability detection."""

import logging
import os
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

import xxhash

from .models import SourceFileRecord

logger = logging.getLogger(__name__)

TIMESTAMP_NAME = re.compile(r"^(\d{14})\.csv$", re.IGNORECASE)
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def _long_path(path: Path) -> str:
    """Convert path to long path format on Windows to handle paths > 260 chars."""
    path_str = str(path.resolve())
    if os.name == 'nt' and not path_str.startswith('\\\\?\\'):
        return '\\\\?\\' + path_str
    return path_str


class ScanError:
    """Record of a file that could not be inspected."""

    def __init__(self, name: str, path: str, error: str):
        self.name = name
        self.path = path
        self.error = error


def compute_file_hash(file_path: Path, chunk_size: int = 65536) -> str:
    """Compute hash of a file using xxhash (fast hashing algorithm)."""
    hasher = xxhash.xxh64()
    with open(_long_path(file_path), 'rb') as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
    return hasher.hexdigest()


def parse_name_timestamp(name: str) -> Optional[datetime]:
    """Return the timestamp encoded in a YYYYMMDDHHMMSS.csv name, or None."""
    match = TIMESTAMP_NAME.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def is_valid_filename(name: str) -> bool:
    """Strict name check used when filename validation is enabled."""
    return parse_name_timestamp(name) is not None


def get_file_record(file_path: Path, use_hash: bool = False) -> SourceFileRecord:
    """Get file identity (size, mtime and optional content hash)."""
    stat = os.stat(_long_path(file_path))
    return SourceFileRecord(
        name=file_path.name,
        path=str(file_path),
        size=stat.st_size,
        modified_time=stat.st_mtime,
        hash=compute_file_hash(file_path) if use_hash else None,
    )


def scan_folder(
    folder_path: Path,
    use_hash: bool = False,
    validate_names: bool = False,
    exclude: tuple[str, ...] = (),
) -> tuple[dict[str, SourceFileRecord], list[ScanError]]:
    """
    List the CSV files directly inside a folder.

    Args:
        folder_path: Folder to list (not recursive)
        use_hash: Also compute a content hash for each file
        validate_names: Skip files whose name is not YYYYMMDDHHMMSS.csv
        exclude: File names to ignore (the master family when it shares the folder)

    Returns:
        Tuple of (records by file name, list of scan errors)
    """
    files = {}
    errors = []

    with os.scandir(folder_path) as it:
        entries = sorted(it, key=lambda e: e.name)

    for entry in entries:
        if not entry.is_file() or not entry.name.lower().endswith(".csv"):
            continue
        if entry.name in exclude:
            continue
        if validate_names and not is_valid_filename(entry.name):
            logger.debug("Skipping %s: name does not match YYYYMMDDHHMMSS.csv", entry.name)
            continue
        try:
            files[entry.name] = get_file_record(Path(entry.path), use_hash)
        except FileNotFoundError:
            # Removed between listing and stat; it will simply be absent next cycle.
            logger.debug("%s disappeared while scanning", entry.name)
        except OSError as e:
            errors.append(ScanError(entry.name, entry.path, str(e)))
            logger.warning("Could not inspect %s: %s", entry.name, e)

    return files, errors


class StabilityGate:
    """
    Confirms a file is no longer being written.

    The file is sampled, the gate waits ``wait_seconds`` on the clock, and the
    file is sampled again. Only identical samples count as stable. A file that
    cannot be read (locked by its producer, or gone) is unstable, not an error.
    """

    def __init__(self, clock, wait_seconds: float, use_hash: bool = False,
                 stop_event: Optional[threading.Event] = None):
        self.clock = clock
        self.wait_seconds = wait_seconds
        self.use_hash = use_hash
        self.stop_event = stop_event or threading.Event()

    def _sample(self, path: Path) -> Optional[tuple[int, Optional[str]]]:
        try:
            size = os.stat(_long_path(path)).st_size
            digest = compute_file_hash(path) if self.use_hash else None
        except OSError as e:
            logger.debug("Cannot sample %s: %s", path.name, e)
            return None
        return size, digest

    def check(self, path: Path) -> bool:
        """Return True if two samples taken ``wait_seconds`` apart are identical."""
        return path in self.check_many([path])

    def check_many(self, paths: list[Path]) -> list[Path]:
        """
        Gate several files with a single observation window.

        Returns:
            The stable paths, in input order. Empty if the wait was interrupted.
        """
        first = {path: self._sample(path) for path in paths}
        if not any(sample is not None for sample in first.values()):
            return []
        if self.clock.wait(self.wait_seconds, self.stop_event):
            logger.debug("Stability wait interrupted")
            return []

        stable = []
        for path in paths:
            if first[path] is None:
                continue
            second = self._sample(path)
            if second != first[path]:
                logger.debug("%s is still changing (%s -> %s)", path.name, first[path], second)
                continue
            stable.append(path)
        return stable
