"""
Recently-accessed key log.

A small most-recent-first list of keys, persisted to a side file next to
the namespace database (one key per line). The file is rewritten in full
on every change so it always mirrors the in-memory list exactly.

The log never references keys that are gone: the owning cache prunes it
on load, on removal, and on reset.
"""

import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50


@dataclass(frozen=True)
class RecentConfig:
    """Where the recent log lives and how many keys it keeps (at least 1)."""
    path: Path
    capacity: int

    def __post_init__(self):
        object.__setattr__(self, "path", Path(self.path))
        object.__setattr__(self, "capacity", max(1, int(self.capacity)))


class RecentHistory:
    """Bounded, optionally file-backed, most-recent-first key log."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, path: Optional[Path] = None):
        self._capacity = max(1, capacity)
        self._path = Path(path) if path is not None else None
        self._keys: deque[str] = deque()

    @classmethod
    def from_config(cls, config: RecentConfig) -> "RecentHistory":
        history = cls(config.capacity, config.path)
        history._keys = load_recent_file(config.path)
        return history

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def items(self, limit: Optional[int] = None) -> list[str]:
        keys = list(self._keys)
        return keys if limit is None else keys[:limit]

    def record(self, key: str) -> None:
        """Move ``key`` to the front, trim to capacity, and persist."""
        try:
            self._keys.remove(key)
        except ValueError:
            pass
        self._keys.appendleft(key)
        while len(self._keys) > self._capacity:
            self._keys.pop()
        self._persist()

    def discard(self, key: str) -> None:
        """Drop ``key`` if present and persist."""
        if key in self._keys:
            self._keys = deque(k for k in self._keys if k != key)
        self._persist()

    def clear(self) -> None:
        self._keys.clear()

    def prune(self, live_keys: Iterable[str]) -> None:
        """Keep only keys still present, first occurrence wins, then persist."""
        live = live_keys if isinstance(live_keys, (set, frozenset, dict)) else set(live_keys)
        seen: set[str] = set()
        kept: deque[str] = deque()
        for key in self._keys:
            if key in live and key not in seen:
                seen.add(key)
                kept.append(key)
            if len(kept) >= self._capacity:
                break
        self._keys = kept
        self._persist()

    def _persist(self) -> None:
        if self._path is None:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(
                "failed to create recent history directory '%s': %s",
                self._path.parent, e,
            )
            return
        payload = "\n".join(self._keys)
        try:
            self._path.write_text(payload, encoding="utf-8")
        except OSError as e:
            logger.warning("failed to write recent history file '%s': %s", self._path, e)


def load_recent_file(path: Path) -> deque[str]:
    """Read a recent log file, deduplicating by first occurrence.

    A missing file is an empty history. Any other read failure is logged
    and also treated as empty.
    """
    try:
        contents = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return deque()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("failed to read recent history file '%s': %s", path, e)
        return deque()

    keys: deque[str] = deque()
    seen: set[str] = set()
    for line in contents.splitlines():
        key = line.strip()
        if not key or key in seen:
            continue
        seen.add(key)
        keys.append(key)
    return keys
