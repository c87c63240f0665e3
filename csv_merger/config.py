"""Settings snapshot: defaults, INI file and command-line overrides."""

import configparser
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

SECTION = "monitor"
DEDUPE_MODES = ("none", "full", "key")


class ConfigError(Exception):
    """Raised when the configuration cannot be used to start the monitor."""


@dataclass(frozen=True)
class Settings:
    """Immutable configuration resolved once at startup."""
    input_folder: Path
    output_folder: Path
    output_base: str = "master"
    add_source_column: bool = True
    add_timestamp_column: bool = False
    validate_filenames: bool = False
    poll_interval: float = 60.0
    run_once: bool = False
    use_hash: bool = False
    stability_wait: float = 2.0
    max_retries: int = 3
    retry_delay: float = 0.5
    max_backups: int = 5
    dedupe: str = "none"
    dedupe_keys: tuple[str, ...] = ()
    dedupe_strip: str = "- "
    encoding: str = "utf-8"
    state_db: Optional[Path] = None
    log_file: Optional[Path] = None
    log_level: str = "INFO"
    show_progress: bool = True

    @property
    def single_run(self) -> bool:
        return self.run_once or self.poll_interval == 0

    @property
    def state_db_path(self) -> Path:
        if self.state_db is not None:
            return self.state_db
        return self.output_folder / f".{self.output_base}_state.db"

    @property
    def lock_path(self) -> Path:
        return self.output_folder / f"{self.output_base}.pid"

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self) -> None:
        """Check the snapshot and make sure the output folder is usable."""
        if not self.input_folder.exists():
            raise ConfigError(f"Input folder does not exist: {self.input_folder}")
        if not self.input_folder.is_dir():
            raise ConfigError(f"Input folder is not a directory: {self.input_folder}")
        if not self.output_base:
            raise ConfigError("Output base name must not be empty")
        for name in ("poll_interval", "stability_wait", "retry_delay"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        for name in ("max_retries", "max_backups"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if self.dedupe not in DEDUPE_MODES:
            raise ConfigError(
                f"Unknown dedupe mode {self.dedupe!r} (expected one of {', '.join(DEDUPE_MODES)})"
            )
        if self.dedupe == "key" and not self.dedupe_keys:
            raise ConfigError("dedupe mode 'key' requires at least one key column")

        try:
            self.output_folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create output folder {self.output_folder}: {e}") from e
        if not os.access(self.output_folder, os.W_OK):
            raise ConfigError(f"Output folder is not writable: {self.output_folder}")


def _split_keys(value: str) -> tuple[str, ...]:
    return tuple(k.strip() for k in value.split(",") if k.strip())


def _convert(name: str, raw: str, section: configparser.SectionProxy):
    """Convert one INI value to the type of the matching Settings field."""
    if name in ("input_folder", "output_folder", "state_db", "log_file"):
        return Path(raw) if raw else None
    if name in ("add_source_column", "add_timestamp_column", "validate_filenames",
                "run_once", "use_hash", "show_progress"):
        return section.getboolean(name)
    if name in ("poll_interval", "stability_wait", "retry_delay"):
        return section.getfloat(name)
    if name in ("max_retries", "max_backups"):
        return section.getint(name)
    if name == "dedupe_keys":
        return _split_keys(raw)
    if name == "dedupe_strip":
        # Quotes let an INI value keep leading/trailing spaces.
        return raw.strip('"')
    return raw


def read_ini(config_path: Path) -> dict:
    """Read the [monitor] section of an INI file into Settings keyword arguments."""
    if not config_path.exists():
        raise ConfigError(f"Configuration file does not exist: {config_path}")

    parser = configparser.ConfigParser()
    try:
        parser.read(config_path, encoding="utf-8")
    except configparser.Error as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}") from e
    if not parser.has_section(SECTION):
        raise ConfigError(f"{config_path} has no [{SECTION}] section")

    section = parser[SECTION]
    known = {f.name for f in fields(Settings)}
    values = {}
    for key, raw in section.items():
        if key not in known:
            raise ConfigError(f"Unknown setting {key!r} in {config_path}")
        try:
            values[key] = _convert(key, raw.strip(), section)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {key!r}: {e}") from e
    return values


def load_settings(config_path: Optional[Path] = None, **overrides) -> Settings:
    """
    Build the settings snapshot.

    Args:
        config_path: Optional INI file with a [monitor] section
        **overrides: Values from the command line; None means "not given"

    Returns:
        Validated Settings
    """
    values = read_ini(config_path) if config_path is not None else {}
    values.update({k: v for k, v in overrides.items() if v is not None})

    for required in ("input_folder", "output_folder"):
        if values.get(required) is None:
            raise ConfigError(f"Missing required setting: {required}")

    settings = Settings(**values)
    settings.validate()
    return settings
