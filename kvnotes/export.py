"""
JSON export and import formats.

Export is a pretty-printed object keyed by entry key. Import reads the
same shape with most fields optional; a bare string is taken as a value
with no tags.
"""

import json
import logging
from typing import Any, Iterable, Optional

from .errors import InvalidInputError
from .types import Entry, format_timestamp, normalize_tags, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


def records_json(entries: Iterable[tuple[str, Entry]]) -> str:
    """Compact JSON array of records, in the order given (key order)."""
    return json.dumps([entry.to_record(key) for key, entry in entries], ensure_ascii=False)


def export_document(entries: Iterable[tuple[str, Entry]]) -> str:
    """Pretty JSON object ``{key: {value, tags, created_at, ...}}`` with a trailing newline."""
    document = {}
    for key, entry in entries:
        record = entry.to_record(key)
        del record["key"]
        document[key] = record
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


def _optional_timestamp(item: dict, name: str, key: str):
    raw = item.get(name)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise InvalidInputError(f"entry '{key}': '{name}' must be a string")
    try:
        return parse_timestamp(raw)
    except ValueError as e:
        raise InvalidInputError(f"entry '{key}': invalid '{name}': {e}") from e


def _import_entry(key: str, item: Any, now) -> Entry:
    if isinstance(item, str):
        return Entry.new(item, now=now)
    if not isinstance(item, dict):
        raise InvalidInputError(f"entry '{key}' must be an object or a string")

    value = item.get("value")
    if not isinstance(value, str):
        raise InvalidInputError(f"entry '{key}': 'value' must be a string")

    tags = item.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise InvalidInputError(f"entry '{key}': 'tags' must be a list of strings")

    return Entry(
        value=value,
        tags=normalize_tags(tags),
        created_at=_optional_timestamp(item, "created_at", key) or now,
        updated_at=_optional_timestamp(item, "updated_at", key) or now,
        expires_at=_optional_timestamp(item, "expires_at", key),
    )


def parse_import(contents: str, source: Optional[str] = None) -> list[tuple[str, Entry]]:
    """
    Parse an import document into ``(key, entry)`` pairs sorted by key.

    Whitespace-only contents yield an empty list, which clears the
    namespace on import.

    Raises:
        InvalidInputError: On malformed JSON or an unexpected shape
    """
    if not contents.strip():
        logger.warning("import file %s is empty; clearing database", source or "<input>")
        return []

    try:
        document = json.loads(contents)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"invalid import file: {e}") from e

    if not isinstance(document, dict):
        raise InvalidInputError("import file must contain a JSON object keyed by entry key")

    now = utc_now()
    entries = []
    seen: set[str] = set()
    for raw_key, item in document.items():
        key = raw_key.strip()
        if not key:
            raise InvalidInputError("import file contains an empty key")
        if key in seen:
            raise InvalidInputError(f"import file contains duplicate key '{key}'")
        seen.add(key)
        entries.append((key, _import_entry(key, item, now)))

    entries.sort(key=lambda pair: pair[0])
    logger.debug("parsed %d entries for import (now=%s)", len(entries), format_timestamp(now))
    return entries
