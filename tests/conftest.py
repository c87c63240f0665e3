"""Shared test fixtures."""

import csv
import logging
import tempfile
import threading
from pathlib import Path

import pytest

from csv_merger.clock import Clock
from csv_merger.config import Settings
from csv_merger.db import StateDB
from csv_merger.models import SourceFileRecord


class FakeClock(Clock):
    """Clock that advances instantly and records every wait."""

    def __init__(self, start: float = 1700000000.0):
        self.current = start
        self.waits = []
        self.on_wait = None

    def now(self) -> float:
        return self.current

    def wait(self, seconds, stop_event: threading.Event = None) -> bool:
        self.waits.append(seconds)
        self.current += seconds
        if self.on_wait is not None:
            self.on_wait(seconds)
        return stop_event.is_set() if stop_event is not None else False


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo setup_logging changes to the root logger."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def folders(temp_dir):
    """Empty input and output folders."""
    incoming = temp_dir / "incoming"
    output = temp_dir / "output"
    incoming.mkdir()
    output.mkdir()
    return incoming, output


@pytest.fixture
def sample_inputs(folders):
    """Two input files with overlapping columns."""
    incoming, output = folders
    (incoming / "a.csv").write_text("Name,Age\nJohn,30\nJane,25\n")
    (incoming / "b.csv").write_text("Name,City\nBob,NYC\n")
    return incoming, output


@pytest.fixture
def settings(folders):
    """Single-run settings with no waiting and no progress bar."""
    incoming, output = folders
    return Settings(
        input_folder=incoming,
        output_folder=output,
        run_once=True,
        poll_interval=0,
        stability_wait=0,
        max_retries=2,
        retry_delay=0,
        show_progress=False,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def db_path(temp_dir):
    """Create a temporary database path."""
    return temp_dir / "state.db"


@pytest.fixture
def state_db(db_path):
    """Create a StateDB instance."""
    db = StateDB(db_path)
    yield db
    try:
        db.close()
    except Exception:
        pass


@pytest.fixture
def sample_record():
    """Create a sample SourceFileRecord for testing."""
    return SourceFileRecord(
        name="20250825160159.csv",
        path="/incoming/20250825160159.csv",
        size=1024,
        modified_time=1700000000.0,
        hash="abc123def456",
    )


def read_rows(path: Path) -> list[list[str]]:
    """All rows of a CSV file, header included."""
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.reader(f))
