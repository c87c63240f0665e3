"""SQLite-backed store for tracker records, so restarts do not re-ingest files."""

import sqlite3
from pathlib import Path
from typing import Optional

from .models import SourceFileRecord


class StateDB:
    """SQLite-backed persistence of merged source file records."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), isolation_level=None)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the tables on first use."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS source_files (
                name TEXT PRIMARY KEY,
                path TEXT NOT NULL,
                size INTEGER NOT NULL,
                modified_time REAL NOT NULL,
                hash TEXT,
                state TEXT NOT NULL
            );
        """)

    def close(self) -> None:
        self.conn.close()

    def get_metadata(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Read a bookkeeping value such as the last cycle time."""
        cursor = self.conn.execute(
            "SELECT value FROM metadata WHERE key = ?", (key,)
        )
        row = cursor.fetchone()
        return row[0] if row else default

    def set_metadata(self, key: str, value: str) -> None:
        """Store a bookkeeping value, replacing any earlier one."""
        self.conn.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            (key, value)
        )

    def save_records(self, records: list[SourceFileRecord]) -> None:
        """Replace the stored records in a single transaction."""
        self.conn.execute("BEGIN")
        try:
            self.conn.execute("DELETE FROM source_files")
            self.conn.executemany(
                """INSERT INTO source_files
                   (name, path, size, modified_time, hash, state)
                   VALUES (:name, :path, :size, :modified_time, :hash, :state)""",
                [record.to_dict() for record in records]
            )
            self.conn.execute("COMMIT")
        except sqlite3.Error:
            self.conn.execute("ROLLBACK")
            raise

    def load_records(self) -> dict[str, SourceFileRecord]:
        """Get all stored records keyed by file name."""
        cursor = self.conn.execute(
            """SELECT name, path, size, modified_time, hash, state
               FROM source_files ORDER BY name"""
        )
        columns = [d[0] for d in cursor.description]
        records = {}
        for row in cursor:
            record = SourceFileRecord.from_dict(dict(zip(columns, row)))
            records[record.name] = record
        return records

    def get_record_count(self) -> int:
        """Get the count of stored records."""
        cursor = self.conn.execute("SELECT COUNT(*) FROM source_files")
        return cursor.fetchone()[0]


def delete_db_files(db_path: Path) -> None:
    """Remove a state database with its WAL sidecars, even if it is corrupt."""
    for suffix in ("", "-wal", "-shm"):
        path = Path(str(db_path) + suffix)
        if path.exists():
            path.unlink()
