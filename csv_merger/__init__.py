"""
CSV Merge Monitor - Watch a folder and fold its CSV files into a master CSV.

Features:
- Unified column schema across files with different columns
- Stability check so files still being written are not ingested
- Change detection by size/time or xxhash content hash
- Optional duplicate row removal (full row or key columns)
- Numbered backups of previous masters, written atomically
- Single-instance PID lock per output target
"""

__version__ = "1.0.0"
