"""
Error types and error logging for kvnotes.

Every failure a user can see is a KvError subclass. The CLI shows the
message; the HTTP gateway maps the class to a status code. Full stack
traces go to an error log file instead of the terminal.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Union


class KvError(Exception):
    """Base class for all kvnotes errors."""


class NotFoundError(KvError):
    """A key (or a tag on a key) does not exist."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"key not found: {identifier}")


class InvalidInputError(KvError):
    """Validation failure: empty fields, bad TTL, malformed JSON, bad namespace."""


class PayloadTooLargeError(KvError):
    """HTTP request body over the configured limit."""

    def __init__(self, size: int):
        self.size = size
        super().__init__(f"request body too large: {size} bytes")


class StorageError(KvError):
    """Underlying database or transaction failure."""


class StorageOpenError(StorageError):
    """The database file could not be opened or initialized."""

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"database error while opening '{self.path}': {reason}")


class SchemaError(StorageOpenError):
    """The database carries an unsupported or legacy schema version."""


class KvIOError(KvError):
    """Filesystem access failure, with the action and path that failed."""

    def __init__(self, action: str, path: Union[str, Path], error: OSError):
        self.action = action
        self.path = Path(path)
        self.error = error
        super().__init__(f"I/O error while {action} '{self.path}': {error}")


# HTTP status lines for the error taxonomy. Anything unlisted is a 500.
_STATUS_BY_ERROR = (
    (NotFoundError, "404 Not Found"),
    (PayloadTooLargeError, "413 Payload Too Large"),
    (InvalidInputError, "400 Bad Request"),
)

INTERNAL_ERROR_STATUS = "500 Internal Server Error"


def status_for_error(exc: BaseException) -> str:
    """Map an exception to the HTTP status line the gateway answers with."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return INTERNAL_ERROR_STATUS


def _error_log_path() -> Path:
    """Resolve error log path, respecting KVNOTES_HOME."""
    home = os.environ.get("KVNOTES_HOME")
    if home:
        return Path(home) / "kvnotes-errors.log"
    return Path.home() / ".kvnotes" / "kvnotes-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Never crash over the error log itself
    return log_path
