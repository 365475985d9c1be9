"""
Shared pytest fixtures for kvnotes tests.

Everything runs against temporary directories: stores live under
``tmp_path`` and KVNOTES_HOME is pointed there so nothing touches the
real home directory.
"""

import threading
from datetime import datetime

import pytest

from kvnotes.config import ServerSettings
from kvnotes.entry_store import EntryStore
from kvnotes.server import ViewerServer
from kvnotes.types import Entry

_ENV_VARS = (
    "KVNOTES_HOME",
    "KVNOTES_NAMESPACE",
    "KVNOTES_DATA_FILE",
    "KVNOTES_RECENT_FILE",
)


@pytest.fixture(autouse=True)
def kv_home(tmp_path, monkeypatch):
    """Isolate every test in its own KVNOTES_HOME."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    home = tmp_path / "home"
    monkeypatch.setenv("KVNOTES_HOME", str(home))
    return home


@pytest.fixture
def store(tmp_path):
    """A fresh EntryStore in a temp directory."""
    s = EntryStore.connect(tmp_path / "db" / "data.db")
    yield s
    s.close()


def _make_entry(value: str, tags=(), *, created: str = "2026-01-01T00:00:00+00:00",
               updated: str = None, expires: str = None) -> Entry:
    """Entry with fixed timestamps, for stable comparisons."""
    created_at = datetime.fromisoformat(created)
    return Entry(
        value=value,
        tags=sorted(set(tags)),
        created_at=created_at,
        updated_at=datetime.fromisoformat(updated) if updated else created_at,
        expires_at=datetime.fromisoformat(expires) if expires else None,
    )


@pytest.fixture
def entry_factory():
    """Build entries with fixed timestamps: entry_factory("v", ["tag"], expires=...)."""
    return _make_entry


@pytest.fixture
def sample_entries():
    return [
        ("alpha", _make_entry("first value", ["a", "shared"])),
        ("beta", _make_entry("second value", ["shared"])),
        ("project-notes", _make_entry("call the printer people", ["@work"])),
    ]


@pytest.fixture
def live_server(store):
    """A ViewerServer on an ephemeral port, serving from a background thread."""
    settings = ServerSettings(host="127.0.0.1", port=0, request_timeout_seconds=5)
    server = ViewerServer(store, settings)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    thread.join(timeout=5)
