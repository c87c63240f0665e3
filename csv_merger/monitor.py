"""Polling loop that drives scanning, stabilization and merging."""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from .backup import BackupError, existing_slots, slot_path
from .clock import Clock
from .config import Settings
from .db import StateDB
from .lock import ProcessLock
from .merger import merge_files
from .models import ChangeKind, CycleResult, LoopState
from .scanner import StabilityGate, get_file_record, scan_folder
from .schema import read_header
from .tracker import FileStateTracker

logger = logging.getLogger(__name__)


class MonitoringLoop:
    """
    Watches the input folder and folds changed CSV files into the master.

    States: initializing -> scanning -> stabilizing -> merging -> sleeping ->
    scanning ..., ending in stopped. The stop event is only honored between
    states, never in the middle of a merge.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Optional[Clock] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.settings = settings
        self.clock = clock or Clock()
        self.stop_event = stop_event or threading.Event()
        self.state = LoopState.INITIALIZING
        self.schema: list[str] = []
        self.tracker = FileStateTracker()
        self.lock = ProcessLock(settings.lock_path)
        self.gate = StabilityGate(self.clock, settings.stability_wait, settings.use_hash, self.stop_event)
        self.db: Optional[StateDB] = None
        self.cycles = 0

    def _transition(self, state: LoopState) -> None:
        if state != self.state:
            logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def stop(self) -> None:
        """Ask the loop to stop at its next checkpoint."""
        self.stop_event.set()

    def initialize(self) -> None:
        """Take the lock, then restore the schema and tracked files."""
        self._transition(LoopState.INITIALIZING)
        self.lock.try_acquire()

        master = slot_path(self.settings.output_folder, self.settings.output_base, 1)
        if master.exists():
            try:
                self.schema = read_header(master, self.settings.encoding)
            except (OSError, UnicodeDecodeError) as e:
                raise BackupError(f"Cannot read existing master {master}: {e}") from e
            logger.info("Loaded schema from %s (%d columns)", master.name, len(self.schema))

        self.db = StateDB(self.settings.state_db_path)
        records = self.db.load_records()
        if records and not master.exists():
            # Tracked rows live only in the master, so they must be rebuilt.
            logger.warning("%s is missing; merging all %d tracked files again",
                           master.name, len(records))
            records = {}
        self.tracker = FileStateTracker(records)
        if records:
            logger.info("Restored %d previously merged files", len(records))

    def shutdown(self) -> None:
        if self.db is not None:
            self.db.close()
            self.db = None
        self.lock.release()
        self._transition(LoopState.STOPPED)

    def _excluded_names(self) -> tuple[str, ...]:
        """Master family file names, when the output lives in the input folder."""
        settings = self.settings
        if settings.input_folder.resolve() != settings.output_folder.resolve():
            return ()
        slots = existing_slots(settings.output_folder, settings.output_base) or [1]
        return tuple(slot_path(settings.output_folder, settings.output_base, s).name
                     for s in slots + [slots[-1] + 1])

    def _persist(self) -> None:
        if self.db is None:
            return
        self.db.save_records(self.tracker.merged_records())
        self.db.set_metadata("last_cycle", datetime.fromtimestamp(self.clock.now()).isoformat())

    def run_cycle(self) -> CycleResult:
        """One pass through scanning, stabilizing and merging."""
        settings = self.settings
        result = CycleResult()

        self._transition(LoopState.SCANNING)
        try:
            snapshots, errors = scan_folder(
                settings.input_folder,
                use_hash=settings.use_hash,
                validate_names=settings.validate_filenames,
                exclude=self._excluded_names(),
            )
        except OSError as e:
            logger.error("Cannot list %s: %s", settings.input_folder, e)
            result.error = str(e)
            return result
        result.skipped.extend(error.name for error in errors)

        changes = self.tracker.classify(snapshots)
        result.removed = [record.name for record in changes.removed]
        candidates = changes.candidates
        result.candidates = len(candidates)
        logger.debug("Scan: %d new, %d modified, %d unchanged, %d removed",
                     len(changes.new), len(changes.modified), len(changes.unchanged), len(changes.removed))

        if changes.removed:
            self._persist()
        if not candidates or self.stop_event.is_set():
            return result

        self._transition(LoopState.STABILIZING)
        stable_paths = set(self.gate.check_many([Path(r.path) for r in candidates]))
        stable = []
        for record in candidates:
            if Path(record.path) not in stable_paths:
                result.deferred.append(record.name)
                continue
            try:
                refreshed = get_file_record(Path(record.path), settings.use_hash)
            except OSError as e:
                logger.debug("%s unavailable after stabilizing: %s", record.name, e)
                result.deferred.append(record.name)
                continue
            self.tracker.mark_stable(refreshed)
            stable.append(refreshed)
        if result.deferred:
            logger.debug("Deferred until next cycle (still changing): %s", ", ".join(result.deferred))
        if not stable or self.stop_event.is_set():
            return result

        self._transition(LoopState.MERGING)
        modified = tuple(record.name for record in stable
                         if changes.kind_of(record.name) == ChangeKind.MODIFIED)
        try:
            merge = merge_files(stable, settings, self.schema, modified=modified, clock=self.clock)
        except (BackupError, OSError) as e:
            logger.error("Could not update the master: %s", e)
            result.error = str(e)
            return result

        result.skipped.extend(skip.name for skip in merge.skipped)
        self.schema = merge.schema
        if merge.output is None:
            return result

        for record in merge.merged:
            self.tracker.mark_processed(record)
        self._persist()
        result.merged = [record.name for record in merge.merged]
        result.rows_written = merge.rows_written
        result.committed = True
        logger.info("Merged %d files into %s", len(result.merged), merge.output.name)
        return result

    def run(self) -> int:
        """
        Run until stopped, or once in single-run mode.

        Returns:
            Process exit code: 0 on success, 1 when single-run mode could not
            update the master

        Raises:
            AlreadyRunningError: Another live monitor owns the output target
        """
        try:
            self.initialize()
            while not self.stop_event.is_set():
                result = self.run_cycle()
                self.cycles += 1

                if self.settings.single_run:
                    if result.error:
                        logger.error("Single run failed: %s", result.error)
                        return 1
                    if result.deferred:
                        logger.warning("Files still being written were not merged: %s",
                                       ", ".join(result.deferred))
                    return 0

                if result.error:
                    logger.warning("Cycle failed, retrying in %.1fs", self.settings.poll_interval)

                self._transition(LoopState.SLEEPING)
                if self.clock.wait(self.settings.poll_interval, self.stop_event):
                    break
            logger.info("Stop requested, shutting down")
            return 0
        finally:
            self.shutdown()
