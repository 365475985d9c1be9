"""
Logging configuration for kvnotes.

Quiet by default: only warnings reach stderr unless the config file or
--verbose asks for more. Every namespace also keeps an operations log.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import AppSettings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
OPS_LOG_NAME = "kvnotes-ops.log"
ROTATE_MAX_BYTES = 1_000_000
ROTATE_BACKUPS = 3

_STDERR_HANDLER = "kvnotes-stderr"
_FILE_HANDLER = "kvnotes-file"


def _replace_handler(logger: logging.Logger, handler: logging.Handler, name: str) -> None:
    """Install ``handler`` under ``name``, dropping any earlier one of that name."""
    for existing in list(logger.handlers):
        if existing.get_name() == name:
            logger.removeHandler(existing)
            existing.close()
    handler.set_name(name)
    logger.addHandler(handler)


def _stderr_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    return handler


def configure_logging(settings: Optional[AppSettings] = None, verbose: bool = False) -> None:
    """
    Set up the ``kvnotes`` logger from settings.

    Args:
        settings: Source of ``[logging] level`` and ``[logging] file``
        verbose: Force DEBUG output to stderr
    """
    settings = settings or AppSettings()
    if verbose:
        enable_debug_mode()
        level = logging.DEBUG
    else:
        level = settings.logging.level_value() or logging.WARNING
        kv_logger = logging.getLogger("kvnotes")
        kv_logger.setLevel(level)
        _replace_handler(kv_logger, _stderr_handler(level), _STDERR_HANDLER)

    if settings.logging.file:
        kv_logger = logging.getLogger("kvnotes")
        log_path = Path(settings.logging.file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                str(log_path), maxBytes=ROTATE_MAX_BYTES, backupCount=ROTATE_BACKUPS,
            )
        except OSError as e:
            kv_logger.warning("cannot open log file '%s': %s", log_path, e)
            return
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        _replace_handler(kv_logger, file_handler, _FILE_HANDLER)


def enable_debug_mode() -> None:
    """Enable debug-level logging to stderr."""
    kv_logger = logging.getLogger("kvnotes")
    kv_logger.setLevel(logging.DEBUG)
    _replace_handler(kv_logger, _stderr_handler(logging.DEBUG), _STDERR_HANDLER)


def configure_ops_log(directory) -> Optional[logging.Handler]:
    """Configure a persistent operations log for a namespace.

    Writes to {directory}/kvnotes-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so the caller can remove it when done, or None
    when the directory is not writable.
    """
    log_path = Path(directory) / OPS_LOG_NAME
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            str(log_path), maxBytes=ROTATE_MAX_BYTES, backupCount=ROTATE_BACKUPS,
        )
    except OSError as e:
        logging.getLogger(__name__).warning("cannot open ops log '%s': %s", log_path, e)
        return None

    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    kv_logger = logging.getLogger("kvnotes")
    kv_logger.addHandler(handler)
    # The kvnotes logger must pass INFO through even in quiet mode
    if kv_logger.level == logging.NOTSET or kv_logger.level > logging.INFO:
        kv_logger.setLevel(logging.INFO)
    return handler


def remove_handler(handler: Optional[logging.Handler]) -> None:
    """Detach and close a handler returned by ``configure_ops_log``."""
    if handler is None:
        return
    logging.getLogger("kvnotes").removeHandler(handler)
    handler.close()
