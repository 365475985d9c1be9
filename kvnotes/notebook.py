"""
Notebook: the store and the cache kept in step.

Every change is expressed as a mutation and goes through
``Notebook.apply``, which commits to the durable store first and only then
makes the identical change to the cache. A failed commit leaves the cache
untouched.

Used by the CLI (one long-lived notebook per invocation) and by the HTTP
gateway (a fresh snapshot per request).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional, Union

from .cache import EntryCache, SearchResult
from .config import AppSettings, NamespacePaths
from .entry_store import EntryStore
from .errors import InvalidInputError, KvIOError, NotFoundError
from .export import export_document, parse_import, records_json
from .recent import RecentConfig
from .types import MAX_TTL_MINUTES, Entry, SearchScope, normalize_tags
from .viewer import render_html

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Mutations
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Upsert:
    key: str
    entry: Entry


@dataclass(frozen=True)
class Delete:
    key: str


@dataclass(frozen=True)
class ReplaceAll:
    entries: tuple[tuple[str, Entry], ...]

    @classmethod
    def of(cls, entries: Iterable[tuple[str, Entry]]) -> "ReplaceAll":
        return cls(tuple(entries))


Mutation = Union[Upsert, Delete, ReplaceAll]


@dataclass
class UpsertResult:
    """Outcome of an upsert: the entry before (None if new) and after."""
    previous: Optional[Entry]
    entry: Entry

    @property
    def created(self) -> bool:
        return self.previous is None


# -----------------------------------------------------------------------------
# Input helpers
# -----------------------------------------------------------------------------

def require_non_empty(value: str, field: str) -> str:
    """Trim ``value``; reject it if nothing is left."""
    trimmed = value.strip()
    if not trimmed:
        raise InvalidInputError(f"field '{field}' cannot be empty")
    return trimmed


def require_positive_minutes(value: int, field: str = "ttl_minutes") -> int:
    if value <= 0:
        raise InvalidInputError(f"field '{field}' must be greater than 0")
    if value > MAX_TTL_MINUTES:
        raise InvalidInputError(f"field '{field}' must be at most {MAX_TTL_MINUTES}")
    return value


def validate_markdown_path(path: Path, any_file: bool, label: str) -> None:
    """Only ``.md`` files are accepted unless ``any_file`` is set."""
    if any_file:
        return
    if Path(path).suffix.lower() != ".md":
        raise InvalidInputError(
            f"{label} must end with '.md' (or pass --any-file): {path}"
        )


def _ensure_parent(path: Path, action: str) -> None:
    parent = Path(path).parent
    if str(parent) in ("", "."):
        return
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise KvIOError(action, parent, e) from e


def _write_text(path: Path, contents: str, action: str) -> None:
    try:
        Path(path).write_text(contents, encoding="utf-8")
    except OSError as e:
        raise KvIOError(action, path, e) from e


def _read_text(path: Path, action: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise KvIOError(action, path, OSError(f"not valid UTF-8 text: {e.reason}")) from e
    except OSError as e:
        raise KvIOError(action, path, e) from e


# -----------------------------------------------------------------------------
# Notebook
# -----------------------------------------------------------------------------

class Notebook:
    """
    A namespace's entries, durable and cached.

    The store is authoritative; the cache mirrors it and is only changed
    through ``apply`` after the store has committed.
    """

    def __init__(self, store: EntryStore, cache: EntryCache):
        self._store = store
        self._cache = cache

    @classmethod
    def open(cls, paths: NamespacePaths, settings: Optional[AppSettings] = None) -> "Notebook":
        """
        Open the namespace database, sweep expired rows, and load the cache.

        Recent history is enabled when ``[history] limit`` is positive.
        """
        settings = settings or AppSettings()
        store = EntryStore.connect(
            paths.data_file,
            sweep_grace=timedelta(seconds=settings.server.sweep_grace_seconds),
        )
        try:
            store.sweep_expired()
            cache = EntryCache.from_entries(store.load_all())
        except Exception:
            store.close()
            raise

        if settings.history.limit > 0:
            cache.enable_recent_history(
                RecentConfig(paths.recent_file, settings.history.limit)
            )
        logger.info("opened namespace '%s' (%d entries)", paths.namespace, len(cache))
        return cls(store, cache)

    @classmethod
    def snapshot(cls, store: EntryStore) -> "Notebook":
        """A throwaway notebook over a fresh load of ``store``."""
        return cls(store, EntryCache.from_entries(store.load_all()))

    @property
    def store(self) -> EntryStore:
        return self._store

    @property
    def cache(self) -> EntryCache:
        return self._cache

    def __len__(self) -> int:
        return len(self._cache)

    def close(self) -> None:
        self._store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def apply(self, mutation: Mutation) -> Optional[Entry]:
        """
        Commit ``mutation`` to the store, then mirror it in the cache.

        Returns:
            The entry that was replaced or removed, if any
        """
        if isinstance(mutation, Upsert):
            self._store.upsert(mutation.key, mutation.entry)
            return self._cache.insert(mutation.key, mutation.entry)
        if isinstance(mutation, Delete):
            self._store.delete(mutation.key)
            return self._cache.remove(mutation.key)
        if isinstance(mutation, ReplaceAll):
            self._store.replace_all(mutation.entries)
            self._cache.reset(mutation.entries)
            return None
        raise TypeError(f"unknown mutation: {mutation!r}")

    def _existing(self, key: str) -> Entry:
        entry = self._cache.get(key)
        if entry is None:
            raise NotFoundError(key)
        return entry

    # -------------------------------------------------------------------------
    # Record operations
    # -------------------------------------------------------------------------

    def get(self, key: str) -> Entry:
        key = require_non_empty(key, "key")
        entry = self._existing(key)
        self._cache.record_access(key)
        return entry

    def upsert(
        self,
        key: str,
        value: str,
        tags: Optional[Iterable[str]] = None,
        ttl_minutes: Optional[int] = None,
        keep_tags: bool = False,
        now: Optional[datetime] = None,
    ) -> UpsertResult:
        """
        Insert or update ``key``.

        Args:
            tags: New tag set. With ``keep_tags``, an empty set keeps the
                existing tags instead of clearing them.
            ttl_minutes: Expire this many minutes from now. When None the
                existing expiry (if any) is kept.
        """
        key = require_non_empty(key, "key")
        if ttl_minutes is not None:
            require_positive_minutes(ttl_minutes)

        existing = self._cache.get(key)
        tags = normalize_tags(tags or [])
        if keep_tags and not tags and existing is not None:
            tags = list(existing.tags)

        entry = Entry.for_update(existing, value, tags, now=now)
        if ttl_minutes is not None:
            entry.set_ttl_minutes(ttl_minutes, now=entry.updated_at)

        previous = self.apply(Upsert(key, entry))
        self._cache.record_access(key)
        return UpsertResult(previous=previous, entry=entry)

    def delete(self, key: str) -> Entry:
        """Remove ``key``; returns the entry that was stored."""
        key = require_non_empty(key, "key")
        existing = self._existing(key)
        self.apply(Delete(key))
        return existing

    def add_tag(self, key: str, tag: str) -> bool:
        """Add ``tag`` to ``key``. Returns False (and writes nothing) if already there."""
        key = require_non_empty(key, "key")
        tag = require_non_empty(tag, "tag")
        existing = self._existing(key)

        tags = normalize_tags([*existing.tags, tag])
        if tags == existing.tags:
            return False
        self.apply(Upsert(key, Entry.for_update(existing, existing.value, tags)))
        return True

    def remove_tag(self, key: str, tag: str) -> None:
        key = require_non_empty(key, "key")
        tag = require_non_empty(tag, "tag")
        existing = self._existing(key)

        if tag not in existing.tags:
            raise NotFoundError(f"tag '{tag}' on '{key}'")
        tags = [t for t in existing.tags if t != tag]
        self.apply(Upsert(key, Entry.for_update(existing, existing.value, tags)))

    def extend_ttl(self, key: str, minutes: int, now: Optional[datetime] = None) -> Entry:
        """Push the expiry of ``key`` out to max(expiry, now) + ``minutes``."""
        key = require_non_empty(key, "key")
        require_positive_minutes(minutes)
        existing = self._existing(key)

        entry = Entry.for_update(existing, existing.value, existing.tags, now=now)
        entry.extend_ttl_minutes(minutes, now=entry.updated_at)
        self.apply(Upsert(key, entry))
        return entry

    # -------------------------------------------------------------------------
    # Bulk tag operations
    # -------------------------------------------------------------------------

    def _rewrite_tags(self, target: str, replacement: Optional[str]) -> int:
        """Replace (or drop, when ``replacement`` is None) ``target`` on every entry."""
        changed = 0
        next_entries = []
        for key, entry in self._cache.ordered():
            if target in entry.tags:
                tags = [
                    replacement if tag == target else tag
                    for tag in entry.tags
                    if tag != target or replacement is not None
                ]
                entry = Entry.for_update(entry, entry.value, tags)
                changed += 1
            next_entries.append((key, entry))

        if changed:
            self.apply(ReplaceAll.of(next_entries))
        return changed

    def rename_tag(self, from_tag: str, to_tag: str) -> int:
        """Rename a tag across all entries; returns the number of entries changed."""
        from_tag = require_non_empty(from_tag, "from")
        to_tag = require_non_empty(to_tag, "to")
        if from_tag == to_tag:
            raise InvalidInputError("field 'from' and 'to' must differ")

        changed = self._rewrite_tags(from_tag, to_tag)
        if changed == 0:
            raise NotFoundError(f"tag '{from_tag}'")
        logger.info("renamed tag %r to %r on %d entries", from_tag, to_tag, changed)
        return changed

    def delete_tag(self, tag: str) -> int:
        """Remove a tag from all entries; returns the number of entries changed."""
        tag = require_non_empty(tag, "tag")
        changed = self._rewrite_tags(tag, None)
        if changed == 0:
            raise NotFoundError(f"tag '{tag}'")
        logger.info("deleted tag %r from %d entries", tag, changed)
        return changed

    def import_entries(self, entries: Iterable[tuple[str, Entry]]) -> int:
        """Replace everything in the namespace with ``entries``."""
        mutation = ReplaceAll.of(entries)
        self.apply(mutation)
        return len(mutation.entries)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def search(
        self,
        pattern: str,
        limit: int = 10,
        scope: SearchScope = SearchScope.ALL,
    ) -> list[SearchResult]:
        return self._cache.search(pattern, limit, scope)

    def recent(self, limit: int = 10) -> list[str]:
        return self._cache.recent(limit)

    def records_json(self) -> str:
        return records_json(self._cache.ordered())

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def export_to(self, path: Path) -> int:
        """Write all entries as a JSON export; returns the entry count."""
        _ensure_parent(path, "creating export directory")
        _write_text(path, export_document(self._cache.ordered()), "writing export file")
        return len(self._cache)

    def import_from(self, path: Path) -> int:
        """Replace the namespace with the contents of a JSON export."""
        contents = _read_text(path, "reading import file")
        return self.import_entries(parse_import(contents, source=str(path)))

    def put_file(
        self,
        key: str,
        path: Path,
        tags: Optional[Iterable[str]] = None,
        any_file: bool = False,
    ) -> UpsertResult:
        """Store the text of ``path`` as the value of ``key``."""
        validate_markdown_path(path, any_file, "source file")
        contents = _read_text(path, "reading source file")
        return self.upsert(key, contents, tags, keep_tags=True)

    def get_file(self, key: str, path: Path, any_file: bool = False) -> Entry:
        """Write the value of ``key`` to ``path``."""
        validate_markdown_path(path, any_file, "destination file")
        key = require_non_empty(key, "key")
        entry = self._existing(key)
        _ensure_parent(path, "creating destination directory")
        _write_text(path, entry.value, "writing destination file")
        self._cache.record_access(key)
        return entry

    def write_html(self, path: Path) -> None:
        """Write a static, read-only HTML view of all entries."""
        _ensure_parent(path, "creating html output directory")
        _write_text(path, render_html(self.records_json()), "writing html output file")

    # Last in the class body so the name doesn't shadow the builtin in the
    # annotations above
    def list(self) -> list[tuple[str, Entry]]:
        """All entries in key order."""
        return self._cache.ordered()
