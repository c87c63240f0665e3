"""Command-line interface for the CSV merge monitor."""

import argparse
import logging
import signal
import sqlite3
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .backup import BackupError
from .config import DEDUPE_MODES, ConfigError, Settings, load_settings
from .db import delete_db_files
from .lock import AlreadyRunningError
from .monitor import MonitoringLoop

EXIT_OK = 0
EXIT_WRITE_FAILED = 1
EXIT_CONFIG = 2
EXIT_ALREADY_RUNNING = 3

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Watch a folder for CSV files and merge them into a master CSV.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s /path/to/incoming /path/to/output
  %(prog)s --config monitor.ini --once
  %(prog)s --dedupe key --dedupe-keys OrderId incoming output
        """
    )

    parser.add_argument("input_folder", type=Path, nargs="?", help="Folder to watch for CSV files")
    parser.add_argument("output_folder", type=Path, nargs="?", help="Folder for the master CSV family")

    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="INI file with a [monitor] section; command-line flags take precedence"
    )
    parser.add_argument("--base", dest="output_base", help="Base name of the master files (default: master)")
    parser.add_argument(
        "--once",
        dest="run_once",
        action="store_const",
        const=True,
        help="Run a single merge pass and exit"
    )
    parser.add_argument("--interval", dest="poll_interval", type=float, help="Polling interval in seconds")
    parser.add_argument("--stability-wait", type=float, help="Seconds between stability samples")
    parser.add_argument("--max-backups", type=int, help="Master versions to keep (0 = unlimited)")
    parser.add_argument("--max-retries", type=int, help="Retries for files locked by another process")
    parser.add_argument("--hash", dest="use_hash", action="store_const", const=True,
                        help="Detect changes by content hash (xxhash) instead of size/time")
    parser.add_argument("--validate-names", dest="validate_filenames", action="store_const", const=True,
                        help="Only accept files named YYYYMMDDHHMMSS.csv")
    parser.add_argument("--no-source-column", dest="add_source_column", action="store_const", const=False,
                        help="Do not add the SourceFile column")
    parser.add_argument("--timestamp-column", dest="add_timestamp_column", action="store_const", const=True,
                        help="Add the CaptureTime column")
    parser.add_argument("--dedupe", choices=DEDUPE_MODES, help="Duplicate row removal mode")
    parser.add_argument("--dedupe-keys", help="Comma-separated key columns for --dedupe key")
    parser.add_argument("--state-db", type=Path, help="SQLite file tracking merged files")
    parser.add_argument("--reset", action="store_true", help="Forget merged files and re-merge everything")
    parser.add_argument("--no-progress", dest="show_progress", action="store_const", const=False,
                        help="Hide the progress bar")
    parser.add_argument("--log-file", type=Path, help="Also write the log to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log debug messages")

    return parser.parse_args(argv)


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Console logging plus an optional rotating log file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)


def build_settings(args: argparse.Namespace) -> Settings:
    """Resolve the settings snapshot from the INI file and the flags."""
    dedupe_keys = None
    if args.dedupe_keys is not None:
        dedupe_keys = tuple(k.strip() for k in args.dedupe_keys.split(",") if k.strip())

    return load_settings(
        args.config,
        input_folder=args.input_folder,
        output_folder=args.output_folder,
        output_base=args.output_base,
        run_once=args.run_once,
        poll_interval=args.poll_interval,
        stability_wait=args.stability_wait,
        max_backups=args.max_backups,
        max_retries=args.max_retries,
        use_hash=args.use_hash,
        validate_filenames=args.validate_filenames,
        add_source_column=args.add_source_column,
        add_timestamp_column=args.add_timestamp_column,
        dedupe=args.dedupe,
        dedupe_keys=dedupe_keys,
        state_db=args.state_db,
        show_progress=args.show_progress,
        log_file=args.log_file,
        log_level="DEBUG" if args.verbose else None,
    )


def install_signal_handlers(stop_event: threading.Event) -> dict:
    """Turn SIGINT/SIGTERM into a stop request honored at the next checkpoint."""
    def handler(signum, frame):
        logging.getLogger(__name__).info("Received signal %d, stopping after the current step", signum)
        stop_event.set()

    previous = {}
    for name in ("SIGINT", "SIGTERM"):
        if hasattr(signal, name):
            signum = getattr(signal, name)
            previous[signum] = signal.signal(signum, handler)
    return previous


def run(args: argparse.Namespace) -> int:
    """Resolve settings, run the monitor and map failures to an exit code."""
    try:
        settings = build_settings(args)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(settings.log_level, settings.log_file)
    logger = logging.getLogger(__name__)

    if args.reset and settings.state_db_path.exists():
        print("Resetting merged-file state...")
        delete_db_files(settings.state_db_path)

    print("=" * 60)
    print("CSV MERGE MONITOR")
    print("=" * 60)
    print(f"Input:  {settings.input_folder.absolute()}")
    print(f"Output: {settings.output_folder.absolute() / settings.output_base}_1.csv")
    if settings.single_run:
        print("Mode:   single run")
    else:
        print(f"Mode:   every {settings.poll_interval:g}s")

    stop_event = threading.Event()
    previous_handlers = install_signal_handlers(stop_event)
    loop = MonitoringLoop(settings, stop_event=stop_event)

    try:
        return loop.run()
    except AlreadyRunningError as e:
        logger.error("%s", e)
        return EXIT_ALREADY_RUNNING
    except (BackupError, OSError, sqlite3.Error) as e:
        logger.error("Fatal: %s", e)
        return EXIT_WRITE_FAILED
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    code = run(parse_args(argv))
    if code != EXIT_OK:
        sys.exit(code)
