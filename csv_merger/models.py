"""Data models for the CSV merge monitor."""

from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Optional


class FileState(Enum):
    """Lifecycle of a tracked source file."""
    NEW = "new"
    STABLE = "stable"
    PROCESSED = "processed"
    REMOVED = "removed"


class ChangeKind(Enum):
    """Classification of a file between two polling cycles."""
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"
    REMOVED = "removed"


class LoopState(Enum):
    """States of the monitoring loop."""
    INITIALIZING = "initializing"
    SCANNING = "scanning"
    STABILIZING = "stabilizing"
    MERGING = "merging"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


@dataclass
class SourceFileRecord:
    """Identity of a source CSV file as seen on one listing."""
    name: str
    path: str
    size: int
    modified_time: float
    hash: Optional[str] = None
    state: str = FileState.NEW.value

    def same_identity(self, other: "SourceFileRecord") -> bool:
        """Compare content identity. Hashes win over size/mtime when both exist."""
        if self.hash is not None and other.hash is not None:
            return self.hash == other.hash
        return self.size == other.size and self.modified_time == other.modified_time

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SourceFileRecord":
        return cls(**data)


@dataclass
class FileChanges:
    """Result of classifying one directory listing."""
    new: list[SourceFileRecord] = field(default_factory=list)
    modified: list[SourceFileRecord] = field(default_factory=list)
    unchanged: list[SourceFileRecord] = field(default_factory=list)
    removed: list[SourceFileRecord] = field(default_factory=list)

    @property
    def candidates(self) -> list[SourceFileRecord]:
        """Files that need to go through stabilization and merging, by name."""
        return sorted(self.new + self.modified, key=lambda r: r.name)

    def kind_of(self, name: str) -> Optional[ChangeKind]:
        for kind, records in (
            (ChangeKind.NEW, self.new),
            (ChangeKind.MODIFIED, self.modified),
            (ChangeKind.UNCHANGED, self.unchanged),
            (ChangeKind.REMOVED, self.removed),
        ):
            if any(r.name == name for r in records):
                return kind
        return None


@dataclass
class CycleResult:
    """Summary of one polling cycle."""
    candidates: int = 0
    deferred: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    rows_written: int = 0
    committed: bool = False
    error: Optional[str] = None
