"""
In-memory cache and index over the entries of one namespace.

The cache mirrors the durable store: it is filled from ``load_all()`` and
afterwards changed only alongside a committed store write (see
``Notebook.apply``). It never reads the store on its own.

A sorted key list is kept next to the key -> Entry map so that listing is
in key order and fuzzy search walks keys deterministically.
"""

import bisect
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .fuzzy import fuzzy_match
from .recent import RecentConfig, RecentHistory
from .types import Entry, SearchScope

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """One fuzzy search hit."""
    key: str
    entry: Entry
    score: int


class EntryCache:
    """
    Cached entries plus pre-computed key ordering for listing and search.

    Also owns the recently-accessed key log, which it keeps pruned against
    the live key set.
    """

    def __init__(self):
        self._entries: dict[str, Entry] = {}
        self._keys: list[str] = []
        self._recent = RecentHistory()

    @classmethod
    def from_entries(cls, entries: Iterable[tuple[str, Entry]]) -> "EntryCache":
        cache = cls()
        cache.load(entries)
        return cache

    def load(self, entries: Iterable[tuple[str, Entry]]) -> None:
        """Fill the map and the sorted key list from ``(key, entry)`` pairs."""
        self._entries = {}
        for key, entry in entries:
            self._entries[key] = entry
        self._keys = sorted(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        return list(self._keys)

    def get(self, key: str) -> Optional[Entry]:
        return self._entries.get(key)

    def insert(self, key: str, entry: Entry) -> Optional[Entry]:
        """Insert or replace ``key``; returns the previous entry, if any."""
        if key not in self._entries:
            bisect.insort(self._keys, key)
        previous = self._entries.get(key)
        self._entries[key] = entry
        logger.info("cache updated; total_entries=%d", len(self._entries))
        return previous

    def remove(self, key: str) -> Optional[Entry]:
        """Remove ``key``; also evicts it from the recent history."""
        removed = self._entries.pop(key, None)
        if removed is None:
            return None
        position = bisect.bisect_left(self._keys, key)
        if position < len(self._keys) and self._keys[position] == key:
            del self._keys[position]
        else:
            # Key list out of step with the map; rebuild it
            self._keys = sorted(self._entries)
        self._recent.discard(key)
        logger.info("cache removed key=%s; total_entries=%d", key, len(self._entries))
        return removed

    def reset(self, entries: Iterable[tuple[str, Entry]]) -> None:
        """Replace the whole working set (import, bulk tag edits)."""
        self.load(entries)
        logger.info("cache reset; total_entries=%d", len(self._entries))
        self._recent.prune(self._entries)

    def ordered(self) -> list[tuple[str, Entry]]:
        """All entries in ascending key order."""
        return [(key, self._entries[key]) for key in self._keys if key in self._entries]

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    def search(
        self,
        pattern: str,
        limit: int,
        scope: SearchScope = SearchScope.ALL,
    ) -> list[SearchResult]:
        """
        Fuzzy search keys and/or tags.

        Args:
            pattern: Text to match; empty returns no results
            limit: Maximum number of results; 0 returns no results
            scope: Whether to score keys, tags, or both

        Returns:
            Hits sorted by score, best first. Hits with equal scores come
            in no promised order.
        """
        if not pattern or limit <= 0:
            return []

        scored: list[SearchResult] = []
        for key in self._keys:
            entry = self._entries.get(key)
            if entry is None:
                continue

            key_score = fuzzy_match(pattern, key) if scope.matches_keys else None

            tag_score = None
            if scope.matches_tags:
                tag_scores = [
                    s for s in (fuzzy_match(pattern, tag) for tag in entry.tags)
                    if s is not None
                ]
                tag_score = max(tag_scores) if tag_scores else None

            candidates = [s for s in (key_score, tag_score) if s is not None]
            if candidates:
                scored.append(SearchResult(key=key, entry=entry, score=max(candidates)))

        scored.sort(key=lambda result: result.score, reverse=True)
        results = scored[:limit]
        logger.debug(
            "fuzzy search pattern=%r scope=%s results=%d",
            pattern, scope.value, len(results),
        )
        return results

    # -------------------------------------------------------------------------
    # Recent history
    # -------------------------------------------------------------------------

    def enable_recent_history(self, config: RecentConfig) -> None:
        """Back the recent log with a file and prune it against live keys."""
        self._recent = RecentHistory.from_config(config)
        self._recent.prune(self._entries)

    def record_access(self, key: str) -> None:
        if key not in self._entries:
            return
        self._recent.record(key)

    def recent(self, limit: int) -> list[str]:
        return self._recent.items(limit)
