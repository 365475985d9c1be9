"""
Configuration management for kvnotes.

Settings live in an optional TOML file: ``./kvnotes.toml``,
``./config/kvnotes.toml`` or ``<home>/kvnotes.toml`` (first found wins),
or an explicit ``--config`` path. Missing sections and keys fall back to
defaults. Namespaces and their file locations are resolved here too.
"""

import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import tomli_w

from .errors import InvalidInputError, KvIOError

CONFIG_FILENAME = "kvnotes.toml"
DEFAULT_NAMESPACE = "default"
NAMESPACES_DIR = "namespaces"
DATA_FILE_NAME = "data.db"
RECENT_FILE_NAME = "recent.log"

_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass
class LoggingSettings:
    """``[logging]``: level name and optional log file."""
    level: Optional[str] = None
    file: Optional[str] = None

    def level_value(self) -> Optional[int]:
        """The stdlib logging level for ``level``, or None if unset/unknown."""
        if not self.level:
            return None
        return _LEVELS.get(self.level.strip().upper())


@dataclass
class HistorySettings:
    """``[history]``: recent-log file override and size (0 disables)."""
    file: Optional[str] = None
    limit: int = 25


@dataclass
class ServerSettings:
    """``[server]``: bind address and gateway limits."""
    host: str = "127.0.0.1"
    port: int = 7878
    max_body_bytes: int = 128 * 1024
    sweep_interval_seconds: float = 3600
    sweep_grace_seconds: float = 3600
    request_timeout_seconds: float = 30


@dataclass
class AppSettings:
    """Complete application settings."""
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    source: Optional[Path] = None


# -----------------------------------------------------------------------------
# Loading and saving
# -----------------------------------------------------------------------------

def default_home() -> Path:
    """Root directory for namespaces and logs, respecting KVNOTES_HOME."""
    home = os.environ.get("KVNOTES_HOME", "").strip()
    if home:
        return Path(home)
    return Path.home() / ".kvnotes"


def config_search_paths() -> list[Path]:
    return [
        Path(CONFIG_FILENAME),
        Path("config") / CONFIG_FILENAME,
        default_home() / CONFIG_FILENAME,
    ]


def _typed(section: dict, name: str, kind: Union[type, tuple], default: Any) -> Any:
    value = section.get(name, default)
    if value is None:
        return None
    # bool is an int subclass; never accept it where a number is expected
    if isinstance(value, bool) or not isinstance(value, kind):
        raise InvalidInputError(f"setting '{name}' has the wrong type: {value!r}")
    return value


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise InvalidInputError(f"[{name}] must be a table")
    return section


def parse_settings(data: dict, source: Optional[Path] = None) -> AppSettings:
    """
    Build settings from a parsed TOML document.

    Raises:
        InvalidInputError: If a value has the wrong type or is out of range
    """
    log_data = _section(data, "logging")
    history_data = _section(data, "history")
    server_data = _section(data, "server")
    defaults = ServerSettings()
    number = (int, float)

    limit = _typed(history_data, "limit", int, HistorySettings.limit)
    if limit is None or limit < 0:
        raise InvalidInputError(f"setting 'limit' must be zero or positive: {limit!r}")

    server = ServerSettings(
        host=_typed(server_data, "host", str, defaults.host),
        port=_typed(server_data, "port", int, defaults.port),
        max_body_bytes=_typed(server_data, "max_body_bytes", int, defaults.max_body_bytes),
        sweep_interval_seconds=_typed(
            server_data, "sweep_interval_seconds", number, defaults.sweep_interval_seconds),
        sweep_grace_seconds=_typed(
            server_data, "sweep_grace_seconds", number, defaults.sweep_grace_seconds),
        request_timeout_seconds=_typed(
            server_data, "request_timeout_seconds", number, defaults.request_timeout_seconds),
    )
    for name in ("port", "max_body_bytes", "request_timeout_seconds"):
        if getattr(server, name) is None or getattr(server, name) <= 0:
            raise InvalidInputError(f"setting '{name}' must be greater than 0")
    for name in ("sweep_interval_seconds", "sweep_grace_seconds"):
        if getattr(server, name) is None or getattr(server, name) < 0:
            raise InvalidInputError(f"setting '{name}' must be zero or positive")

    return AppSettings(
        logging=LoggingSettings(
            level=_typed(log_data, "level", str, None),
            file=_typed(log_data, "file", str, None),
        ),
        history=HistorySettings(
            file=_typed(history_data, "file", str, None),
            limit=limit,
        ),
        server=server,
        source=source,
    )


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """
    Load settings from ``path`` or the first default location that exists.

    A file that fails to read or parse is reported on stderr and defaults
    are used instead. An explicit path that does not exist is an error.
    """
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise InvalidInputError(f"config file not found: {path}")
        candidates = [path]
    else:
        candidates = [p for p in config_search_paths() if p.exists()]

    for candidate in candidates:
        try:
            with open(candidate, "rb") as f:
                data = tomllib.load(f)
            return parse_settings(data, source=candidate)
        except (OSError, tomllib.TOMLDecodeError, InvalidInputError) as e:
            print(f"Failed to parse settings from '{candidate}': {e}", file=sys.stderr)

    return AppSettings()


def settings_to_dict(settings: AppSettings) -> dict:
    """TOML-ready dict; unset optional values are omitted."""
    logging_data = {"level": settings.logging.level or "warn"}
    if settings.logging.file:
        logging_data["file"] = settings.logging.file

    history_data: dict[str, Any] = {"limit": settings.history.limit}
    if settings.history.file:
        history_data["file"] = settings.history.file

    server = settings.server
    return {
        "logging": logging_data,
        "history": history_data,
        "server": {
            "host": server.host,
            "port": server.port,
            "max_body_bytes": server.max_body_bytes,
            "sweep_interval_seconds": server.sweep_interval_seconds,
            "sweep_grace_seconds": server.sweep_grace_seconds,
            "request_timeout_seconds": server.request_timeout_seconds,
        },
    }


def save_settings(settings: AppSettings, path: Path) -> Path:
    """
    Write settings as TOML to ``path``.

    Creates the parent directory if it doesn't exist.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(settings_to_dict(settings), f)
    except OSError as e:
        raise KvIOError("writing config file", path, e) from e
    return path


# -----------------------------------------------------------------------------
# Namespaces and paths
# -----------------------------------------------------------------------------

def validate_namespace(namespace: str) -> str:
    """Reject names that are not safe as a single directory component."""
    if namespace in (".", ".."):
        raise InvalidInputError(
            f"invalid namespace '{namespace}'; '.' and '..' are not allowed"
        )
    if not namespace or not all(
        (ch.isascii() and ch.isalnum()) or ch in "_-." for ch in namespace
    ):
        raise InvalidInputError(
            f"invalid namespace '{namespace}'; use letters, numbers, '_', '-', or '.'"
        )
    return namespace


def resolve_namespace(raw: Optional[str] = None) -> str:
    """Explicit value, then KVNOTES_NAMESPACE, then ``default``; validated."""
    namespace = (raw or "").strip()
    if not namespace:
        namespace = os.environ.get("KVNOTES_NAMESPACE", "").strip()
    return validate_namespace(namespace or DEFAULT_NAMESPACE)


@dataclass(frozen=True)
class NamespacePaths:
    """Where one namespace keeps its files."""
    namespace: str
    directory: Path
    data_file: Path
    recent_file: Path


def _env_path(name: str) -> Optional[Path]:
    value = os.environ.get(name, "").strip()
    return Path(value) if value else None


def resolve_paths(
    namespace: str,
    settings: Optional[AppSettings] = None,
    data_file: Optional[Path] = None,
    home: Optional[Path] = None,
) -> NamespacePaths:
    """
    Compute the namespace directory, database file and recent log.

    Precedence for the database: ``data_file``, KVNOTES_DATA_FILE, then
    ``<home>/namespaces/<ns>/data.db``. For the recent log: the
    ``[history] file`` setting, KVNOTES_RECENT_FILE, then
    ``<home>/namespaces/<ns>/logs/recent.log``.
    """
    settings = settings or AppSettings()
    directory = (home or default_home()) / NAMESPACES_DIR / validate_namespace(namespace)

    db_path = Path(data_file) if data_file else _env_path("KVNOTES_DATA_FILE")
    if db_path is None:
        db_path = directory / DATA_FILE_NAME

    if settings.history.file:
        recent = Path(settings.history.file)
    else:
        recent = _env_path("KVNOTES_RECENT_FILE") or directory / "logs" / RECENT_FILE_NAME

    return NamespacePaths(
        namespace=namespace,
        directory=directory,
        data_file=db_path,
        recent_file=recent,
    )
