"""Per-file state tracking between polling cycles."""

import logging
from dataclasses import replace
from typing import Optional

from .models import FileChanges, FileState, SourceFileRecord

logger = logging.getLogger(__name__)


class FileStateTracker:
    """
    Classifies files as new, modified, unchanged or removed.

    ``records`` holds the last known record per file name. ``processed`` holds
    the identity each file had when its rows were last folded into the master;
    modification is always judged against that identity.
    """

    def __init__(self, records: Optional[dict[str, SourceFileRecord]] = None):
        self.records: dict[str, SourceFileRecord] = {}
        self.processed: dict[str, SourceFileRecord] = {}
        for record in (records or {}).values():
            self.records[record.name] = record
            if record.state in (FileState.PROCESSED.value, FileState.REMOVED.value):
                self.processed[record.name] = record

    def classify(self, snapshots: dict[str, SourceFileRecord]) -> FileChanges:
        """Compare a fresh listing with the tracked records and update them."""
        changes = FileChanges()

        for name, snapshot in snapshots.items():
            previous = self.processed.get(name)
            if previous is None:
                changes.new.append(snapshot)
                state = FileState.NEW.value
                known = self.records.get(name)
                if known is not None and known.state == FileState.STABLE.value:
                    state = known.state
            elif previous.same_identity(snapshot):
                changes.unchanged.append(snapshot)
                state = FileState.PROCESSED.value
            else:
                changes.modified.append(snapshot)
                state = FileState.NEW.value
            self.records[name] = replace(snapshot, state=state)

        for name, record in list(self.records.items()):
            if name in snapshots or record.state == FileState.REMOVED.value:
                continue
            removed = replace(self.processed.get(name, record), state=FileState.REMOVED.value)
            changes.removed.append(removed)
            if name in self.processed:
                # Its rows stay in the master; remember what was merged.
                self.processed[name] = removed
                self.records[name] = removed
            else:
                del self.records[name]
            logger.info("%s was removed from the input folder", name)

        return changes

    def mark_stable(self, record: SourceFileRecord) -> None:
        self.records[record.name] = replace(record, state=FileState.STABLE.value)

    def mark_processed(self, record: SourceFileRecord) -> None:
        processed = replace(record, state=FileState.PROCESSED.value)
        self.records[record.name] = processed
        self.processed[record.name] = processed

    def merged_records(self) -> list[SourceFileRecord]:
        """Records whose rows are in the master; this is what survives a restart."""
        return [self.processed[name] for name in sorted(self.processed)]

    def state_of(self, name: str) -> Optional[str]:
        record = self.records.get(name)
        return record.state if record else None
