"""
Embedded HTTP gateway for the live viewer.

A deliberately small HTTP/1.1 server: one request per connection, one
connection at a time, no keep-alive. Reads go to ``GET /`` (HTML page)
and ``GET /data`` (JSON records); writes go to ``POST /api/...`` with a
JSON body and answer with a one-line plain-text confirmation.

The database is the only shared state. Every request loads a fresh
Notebook snapshot from it, so changes made by other processes (the CLI)
show up on the next poll.
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Annotated, BinaryIO, Callable, Optional

from pydantic import BaseModel, Field, StringConstraints, ValidationError

from .config import ServerSettings
from .entry_store import EntryStore
from .errors import (
    INTERNAL_ERROR_STATUS,
    InvalidInputError,
    KvError,
    KvIOError,
    PayloadTooLargeError,
    status_for_error,
)
from .notebook import Notebook
from .types import MAX_TTL_MINUTES
from .viewer import render_html

logger = logging.getLogger(__name__)

MAX_LINE_BYTES = 8192
MAX_HEADER_LINES = 100
ACCEPT_POLL_SECONDS = 0.5

TEXT = "text/plain; charset=utf-8"
HTML = "text/html; charset=utf-8"
JSON = "application/json; charset=utf-8"


# -----------------------------------------------------------------------------
# Request framing
# -----------------------------------------------------------------------------

@dataclass
class HttpRequest:
    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass
class HttpResponse:
    status: str
    content_type: str
    body: str = ""


def _read_line(reader: BinaryIO, what: str) -> bytes:
    line = reader.readline(MAX_LINE_BYTES + 1)
    if len(line) > MAX_LINE_BYTES:
        raise InvalidInputError(f"{what} too long")
    return line


def read_request(reader: BinaryIO, max_body_bytes: int) -> Optional[HttpRequest]:
    """
    Read one request from ``reader``.

    Returns:
        The request, or None if the client closed before sending anything

    Raises:
        InvalidInputError: Malformed framing or Content-Length
        PayloadTooLargeError: Content-Length over ``max_body_bytes``; the
            body is not read
    """
    request_line = _read_line(reader, "request line")
    if not request_line:
        return None

    headers: dict[str, str] = {}
    for _ in range(MAX_HEADER_LINES):
        line = _read_line(reader, "header line")
        if not line or line in (b"\r\n", b"\n"):
            break
        name, sep, value = line.decode("latin-1").partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    else:
        raise InvalidInputError("too many header lines")

    content_length = 0
    raw_length = headers.get("content-length")
    if raw_length is not None:
        if not (raw_length.isascii() and raw_length.isdigit()):
            raise InvalidInputError("invalid content-length header")
        content_length = int(raw_length)

    if content_length > max_body_bytes:
        raise PayloadTooLargeError(content_length)

    body = reader.read(content_length) if content_length > 0 else b""
    if len(body) < content_length:
        raise InvalidInputError("request body shorter than content-length")

    parts = request_line.decode("latin-1").split()
    method = parts[0] if parts else ""
    raw_path = parts[1] if len(parts) > 1 else "/"
    path = raw_path.split("?", 1)[0] or "/"

    return HttpRequest(method=method, path=path, headers=headers, body=body)


def encode_response(response: HttpResponse) -> bytes:
    """Status line, fixed headers and body as raw bytes."""
    payload = response.body.encode("utf-8")
    head = (
        f"HTTP/1.1 {response.status}\r\n"
        f"Content-Type: {response.content_type}\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "Cache-Control: no-store\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("latin-1") + payload


def write_response(writer: BinaryIO, response: HttpResponse) -> None:
    writer.write(encode_response(response))
    writer.flush()


def error_response(exc: BaseException) -> HttpResponse:
    return HttpResponse(status_for_error(exc), TEXT, f"{exc}\n")


# -----------------------------------------------------------------------------
# Mutation payloads
# -----------------------------------------------------------------------------

NonEmpty = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Minutes = Annotated[int, Field(gt=0, le=MAX_TTL_MINUTES)]


class RecordUpsertPayload(BaseModel):
    key: Annotated[NonEmpty, Field(description="Record key.")]
    value: Annotated[str, Field(description="New value.")]
    tags: Annotated[list[str], Field(
        default_factory=list,
        description="Replacement tag set (empty clears tags).",
    )]
    ttl_minutes: Annotated[Optional[Minutes], Field(
        default=None,
        description="Expire this many minutes from now. Omit to keep the current expiry.",
    )]


class RecordDeletePayload(BaseModel):
    key: NonEmpty


class RecordTagPayload(BaseModel):
    key: NonEmpty
    tag: NonEmpty


class RecordTtlExtendPayload(BaseModel):
    key: NonEmpty
    ttl_minutes: Minutes


class TagRenamePayload(BaseModel):
    from_: Annotated[NonEmpty, Field(alias="from")]
    to: NonEmpty


class TagDeletePayload(BaseModel):
    tag: NonEmpty


def _describe_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    kind = first.get("type", "")
    if kind == "json_invalid":
        return f"invalid json body: {first.get('ctx', {}).get('error', first.get('msg'))}"
    name = ".".join(str(part) for part in first.get("loc", ())) or "body"
    if kind == "string_too_short":
        return f"field '{name}' cannot be empty"
    if kind == "greater_than":
        return f"field '{name}' must be greater than 0"
    if kind == "less_than_equal":
        return f"field '{name}' must be at most {first.get('ctx', {}).get('le')}"
    if kind == "missing":
        return f"missing field '{name}'"
    return f"field '{name}': {first.get('msg')}"


def parse_payload(model: type, request: HttpRequest):
    """Validate the JSON body against ``model``; failures are InvalidInputError."""
    try:
        return model.model_validate_json(request.body or b"null")
    except ValidationError as e:
        raise InvalidInputError(_describe_validation_error(e)) from e


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------

Handler = Callable[[EntryStore, HttpRequest], HttpResponse]


def handle_index(store: EntryStore, request: HttpRequest) -> HttpResponse:
    notebook = Notebook.snapshot(store)
    return HttpResponse("200 OK", HTML, render_html(notebook.records_json(), "/data", "/api"))


def handle_data(store: EntryStore, request: HttpRequest) -> HttpResponse:
    return HttpResponse("200 OK", JSON, Notebook.snapshot(store).records_json())


def handle_health(store: EntryStore, request: HttpRequest) -> HttpResponse:
    return HttpResponse("200 OK", TEXT, "ok\n")


def handle_favicon(store: EntryStore, request: HttpRequest) -> HttpResponse:
    return HttpResponse("204 No Content", TEXT, "")


def api_handler(fn: Callable[[EntryStore, HttpRequest], str]) -> Handler:
    """Wrap a mutation that returns a confirmation line."""
    def handler(store: EntryStore, request: HttpRequest) -> HttpResponse:
        return HttpResponse("200 OK", TEXT, f"{fn(store, request)}\n")
    handler.__name__ = fn.__name__
    handler.__doc__ = fn.__doc__
    return handler


@api_handler
def api_record_upsert(store: EntryStore, request: HttpRequest) -> str:
    payload = parse_payload(RecordUpsertPayload, request)
    result = Notebook.snapshot(store).upsert(
        payload.key, payload.value, payload.tags, payload.ttl_minutes,
    )
    return f"created '{payload.key}'" if result.created else f"updated '{payload.key}'"


@api_handler
def api_record_delete(store: EntryStore, request: HttpRequest) -> str:
    payload = parse_payload(RecordDeletePayload, request)
    Notebook.snapshot(store).delete(payload.key)
    return f"deleted '{payload.key}'"


@api_handler
def api_record_tag_add(store: EntryStore, request: HttpRequest) -> str:
    payload = parse_payload(RecordTagPayload, request)
    if Notebook.snapshot(store).add_tag(payload.key, payload.tag):
        return f"added tag '{payload.tag}' to '{payload.key}'"
    return f"tag '{payload.tag}' already exists on '{payload.key}'"


@api_handler
def api_record_tag_remove(store: EntryStore, request: HttpRequest) -> str:
    payload = parse_payload(RecordTagPayload, request)
    Notebook.snapshot(store).remove_tag(payload.key, payload.tag)
    return f"removed tag '{payload.tag}' from '{payload.key}'"


@api_handler
def api_record_ttl_extend(store: EntryStore, request: HttpRequest) -> str:
    payload = parse_payload(RecordTtlExtendPayload, request)
    Notebook.snapshot(store).extend_ttl(payload.key, payload.ttl_minutes)
    return f"extended ttl for '{payload.key}' by {payload.ttl_minutes} minute(s)"


@api_handler
def api_tag_rename(store: EntryStore, request: HttpRequest) -> str:
    payload = parse_payload(TagRenamePayload, request)
    changed = Notebook.snapshot(store).rename_tag(payload.from_, payload.to)
    return f"renamed tag '{payload.from_}' to '{payload.to}' on {changed} record(s)"


@api_handler
def api_tag_delete(store: EntryStore, request: HttpRequest) -> str:
    payload = parse_payload(TagDeletePayload, request)
    changed = Notebook.snapshot(store).delete_tag(payload.tag)
    return f"deleted tag '{payload.tag}' from {changed} record(s)"


ROUTES: dict[tuple[str, str], Handler] = {
    ("GET", "/"): handle_index,
    ("GET", "/data"): handle_data,
    ("GET", "/health"): handle_health,
    ("GET", "/favicon.ico"): handle_favicon,
    ("POST", "/api/records/upsert"): api_record_upsert,
    ("POST", "/api/records/delete"): api_record_delete,
    ("POST", "/api/records/tags/add"): api_record_tag_add,
    ("POST", "/api/records/tags/remove"): api_record_tag_remove,
    ("POST", "/api/records/ttl/extend"): api_record_ttl_extend,
    ("POST", "/api/tags/rename"): api_tag_rename,
    ("POST", "/api/tags/delete"): api_tag_delete,
}


def dispatch(store: EntryStore, request: HttpRequest) -> HttpResponse:
    """Route ``request`` and turn any failure into an error response."""
    handler = ROUTES.get((request.method, request.path))
    if handler is None:
        return HttpResponse("404 Not Found", TEXT, "not found\n")

    try:
        return handler(store, request)
    except Exception as e:
        if status_for_error(e) == INTERNAL_ERROR_STATUS:
            logger.exception("%s %s failed", request.method, request.path)
        else:
            logger.warning("%s %s rejected: %s", request.method, request.path, e)
        return error_response(e)


# -----------------------------------------------------------------------------
# Listener
# -----------------------------------------------------------------------------

class ViewerServer:
    """
    Blocking single-connection listener over one EntryStore.

    Expired rows are swept at most once per sweep interval, checked as
    connections arrive; the first connection always sweeps.
    """

    def __init__(
        self,
        store: EntryStore,
        settings: Optional[ServerSettings] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        self._store = store
        self._settings = settings or ServerSettings()
        self._host = host or self._settings.host
        self._port = self._settings.port if port is None else port
        self._last_sweep: Optional[float] = None
        self._closing = threading.Event()
        self._socket = self._bind()

    def _bind(self) -> socket.socket:
        try:
            sock = socket.create_server((self._host, self._port))
        except OSError as e:
            raise KvIOError("binding viewer server", f"{self._host}:{self._port}", e) from e
        sock.settimeout(ACCEPT_POLL_SECONDS)
        logger.info("viewer listening on %s:%d", *sock.getsockname()[:2])
        return sock

    @property
    def server_address(self) -> tuple[str, int]:
        host, port = self._socket.getsockname()[:2]
        return host, port

    @property
    def url(self) -> str:
        host, port = self.server_address
        return f"http://{host}:{port}"

    def serve_forever(self) -> None:
        """Accept and answer connections until ``shutdown()``."""
        try:
            while not self._closing.is_set():
                try:
                    conn, _ = self._socket.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._closing.is_set():
                        break
                    logger.warning("failed to accept viewer connection: %s", e)
                    continue

                self.maybe_sweep()
                with conn:
                    self.handle_connection(conn)
        finally:
            self._socket.close()
            logger.info("viewer stopped")

    def shutdown(self) -> None:
        """Stop the loop; takes effect within one accept poll."""
        self._closing.set()

    def maybe_sweep(self, now: Optional[float] = None) -> Optional[int]:
        """
        Sweep expired rows if the sweep interval has passed.

        Returns:
            Rows deleted, or None when no sweep ran or it failed
        """
        now = time.monotonic() if now is None else now
        if self._last_sweep is not None and now - self._last_sweep < self._settings.sweep_interval_seconds:
            return None

        # A failed sweep waits for the next interval like a successful one
        self._last_sweep = now
        try:
            return self._store.sweep_expired()
        except KvError as e:
            logger.warning("ttl sweep failed: %s", e)
            return None

    def handle_connection(self, conn: socket.socket) -> None:
        """Frame, route and answer a single request on ``conn``."""
        conn.settimeout(self._settings.request_timeout_seconds)
        with conn.makefile("rb") as reader:
            try:
                try:
                    request = read_request(reader, self._settings.max_body_bytes)
                except KvError as e:
                    logger.warning("viewer request rejected: %s", e)
                    response = error_response(e)
                else:
                    if request is None:
                        return
                    response = dispatch(self._store, request)
                conn.sendall(encode_response(response))
            except OSError as e:
                logger.warning("viewer request failed: %s", e)

    def close(self) -> None:
        self.shutdown()
        self._socket.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
