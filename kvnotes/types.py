"""
Data types for the note store.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from .errors import InvalidInputError, StorageError


# About a century; keeps expiry arithmetic well inside datetime range
MAX_TTL_MINUTES = 100 * 365 * 24 * 60


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format a datetime in the canonical persisted form.

    Always UTC, always microsecond precision, always a ``+00:00`` suffix,
    e.g. ``2026-10-19T08:15:00.000000+00:00``. The fixed width keeps SQL
    text comparison in step with time order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(ts: str) -> datetime:
    """Parse an RFC 3339 timestamp to a timezone-aware UTC datetime.

    Accepts a 'Z' suffix, any offset, and naive timestamps (taken as UTC).
    """
    ts = ts.strip().replace("Z", "+00:00").replace("z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _add_minutes(base: datetime, minutes: int) -> datetime:
    try:
        return base + timedelta(minutes=minutes)
    except OverflowError as e:
        raise InvalidInputError(f"ttl of {minutes} minute(s) is out of range") from e


def normalize_tags(raw: Iterable[str]) -> list[str]:
    """Trim each tag, drop empties, dedupe, and return in sorted order."""
    return sorted({tag.strip() for tag in raw if tag.strip()})


class SearchScope(Enum):
    """Determines which parts of an entry a fuzzy search looks at."""
    ALL = "all"
    KEYS_ONLY = "keys"
    TAGS_ONLY = "tags"

    @property
    def matches_keys(self) -> bool:
        return self in (SearchScope.ALL, SearchScope.KEYS_ONLY)

    @property
    def matches_tags(self) -> bool:
        return self in (SearchScope.ALL, SearchScope.TAGS_ONLY)

    @classmethod
    def from_flags(cls, tags_only: bool = False, keys_only: bool = False) -> "SearchScope":
        if tags_only and keys_only:
            raise InvalidInputError(
                "Cannot search keys-only and tags-only at the same time."
            )
        if tags_only:
            return cls.TAGS_ONLY
        if keys_only:
            return cls.KEYS_ONLY
        return cls.ALL


@dataclass
class Entry:
    """
    A stored value plus its tags and timestamps.

    ``created_at`` is fixed at first insertion; ``updated_at`` moves on
    every write; ``expires_at`` is optional and marks the entry dead once
    it has passed.
    """
    value: str
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    @classmethod
    def new(cls, value: str, tags: Iterable[str] = (), now: Optional[datetime] = None) -> "Entry":
        now = now or utc_now()
        return cls(value=value, tags=normalize_tags(tags), created_at=now, updated_at=now)

    @classmethod
    def for_update(
        cls,
        existing: Optional["Entry"],
        value: str,
        tags: Iterable[str],
        now: Optional[datetime] = None,
    ) -> "Entry":
        """Build the next version of an entry.

        Carries ``created_at`` and ``expires_at`` over from ``existing``
        (when there is one) and stamps ``updated_at`` with now.
        """
        now = now or utc_now()
        return cls(
            value=value,
            tags=normalize_tags(tags),
            created_at=existing.created_at if existing else now,
            updated_at=now,
            expires_at=existing.expires_at if existing else None,
        )

    @classmethod
    def from_persisted(
        cls,
        value: str,
        tags_json: str,
        created_at: str,
        updated_at: str,
        expires_at: Optional[str],
    ) -> "Entry":
        """Rebuild an entry from its database columns."""
        try:
            tags = json.loads(tags_json) if tags_json.strip() else []
            if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
                raise ValueError(f"tags must be a JSON array of strings: {tags_json!r}")
            return cls(
                value=value,
                tags=tags,
                created_at=parse_timestamp(created_at),
                updated_at=parse_timestamp(updated_at),
                expires_at=(
                    parse_timestamp(expires_at)
                    if expires_at and expires_at.strip() else None
                ),
            )
        except ValueError as e:
            raise StorageError(f"data format error: {e}") from e

    def copy(self) -> "Entry":
        return replace(self, tags=list(self.tags))

    def tags_json(self) -> str:
        return json.dumps(self.tags, ensure_ascii=False)

    def summary(self, key: str) -> str:
        suffix = f" [tags: {', '.join(self.tags)}]" if self.tags else ""
        return f"{key} = {self.value}{suffix}"

    def describe(self) -> str:
        if self.tags:
            return f"'{self.value}' (tags: {', '.join(self.tags)})"
        return f"'{self.value}'"

    # -------------------------------------------------------------------------
    # Expiry
    # -------------------------------------------------------------------------

    def set_ttl_minutes(self, ttl_minutes: Optional[int], now: Optional[datetime] = None) -> None:
        """Expire ``ttl_minutes`` from now, or never when None."""
        if ttl_minutes is None:
            self.expires_at = None
            return
        now = now or utc_now()
        self.expires_at = _add_minutes(now, ttl_minutes)

    def extend_ttl_minutes(self, ttl_minutes: int, now: Optional[datetime] = None) -> None:
        """Push expiry out by ``ttl_minutes``.

        Extension starts from the current expiry, or from now if the entry
        has no expiry or has already expired.
        """
        now = now or utc_now()
        base = max(self.expires_at, now) if self.expires_at else now
        self.expires_at = _add_minutes(base, ttl_minutes)

    def ttl_remaining_minutes(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.expires_at is None:
            return None
        now = now or utc_now()
        # Whole minutes, truncated toward zero
        return int((self.expires_at - now).total_seconds() / 60)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now())

    def to_record(self, key: str) -> dict[str, Any]:
        """JSON-ready view used by /data, the HTML viewer and export."""
        return {
            "key": key,
            "value": self.value,
            "tags": list(self.tags),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "expires_at": format_timestamp(self.expires_at) if self.expires_at else None,
        }
