"""Tests for the entry model and its helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from kvnotes.errors import InvalidInputError, StorageError
from kvnotes.types import (
    MAX_TTL_MINUTES,
    Entry,
    SearchScope,
    format_timestamp,
    normalize_tags,
    parse_timestamp,
)

NOW = datetime(2026, 10, 19, 8, 15, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


class TestNormalizeTags:
    def test_trims_dedupes_and_sorts(self):
        assert normalize_tags([" b", "a ", "b", "a"]) == ["a", "b"]

    def test_drops_empty_and_whitespace(self):
        assert normalize_tags(["", "   ", "\t", "x"]) == ["x"]

    def test_case_sensitive(self):
        assert normalize_tags(["Work", "work"]) == ["Work", "work"]

    def test_idempotent(self):
        once = normalize_tags(["z", " y ", "z", ""])
        assert normalize_tags(once) == once


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


class TestTimestamps:
    def test_format_is_fixed_width_utc(self):
        assert format_timestamp(NOW) == "2026-10-19T08:15:00.000000+00:00"

    def test_format_converts_offsets_to_utc(self):
        local = datetime(2026, 10, 19, 10, 15, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(local) == "2026-10-19T08:15:00.000000+00:00"

    def test_naive_taken_as_utc(self):
        assert format_timestamp(datetime(2026, 10, 19, 8, 15)) == format_timestamp(NOW)

    def test_parse_accepts_z_suffix(self):
        assert parse_timestamp("2026-10-19T08:15:00Z") == NOW

    def test_text_order_matches_time_order(self):
        earlier = format_timestamp(NOW)
        later = format_timestamp(NOW + timedelta(microseconds=1))
        assert earlier < later

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


class TestEntry:
    def test_new_sets_both_timestamps(self):
        entry = Entry.new("v", ["t", "t"], now=NOW)
        assert entry.created_at == entry.updated_at == NOW
        assert entry.tags == ["t"]
        assert entry.expires_at is None

    def test_for_update_keeps_created_and_expiry(self):
        original = Entry.new("v1", now=NOW)
        original.set_ttl_minutes(30, now=NOW)
        later = NOW + timedelta(minutes=5)

        updated = Entry.for_update(original, "v2", ["x"], now=later)

        assert updated.created_at == NOW
        assert updated.updated_at == later
        assert updated.expires_at == original.expires_at
        assert updated.value == "v2"

    def test_for_update_without_existing_is_new(self):
        entry = Entry.for_update(None, "v", [], now=NOW)
        assert entry.created_at == NOW
        assert entry.expires_at is None

    def test_set_ttl_none_clears_expiry(self):
        entry = Entry.new("v", now=NOW)
        entry.set_ttl_minutes(10, now=NOW)
        entry.set_ttl_minutes(None)
        assert entry.expires_at is None

    def test_extend_ttl_from_future_expiry(self):
        entry = Entry.new("v", now=NOW)
        entry.set_ttl_minutes(10, now=NOW)
        entry.extend_ttl_minutes(5, now=NOW)
        assert entry.expires_at == NOW + timedelta(minutes=15)

    def test_extend_ttl_past_datetime_range_is_invalid(self):
        entry = Entry.new("v", now=NOW)
        entry.expires_at = datetime.max.replace(tzinfo=timezone.utc) - timedelta(days=1)
        with pytest.raises(InvalidInputError, match="out of range"):
            entry.extend_ttl_minutes(MAX_TTL_MINUTES, now=NOW)

    def test_extend_ttl_from_now_when_expired(self):
        entry = Entry.new("v", now=NOW)
        entry.expires_at = NOW - timedelta(hours=1)
        entry.extend_ttl_minutes(5, now=NOW)
        assert entry.expires_at == NOW + timedelta(minutes=5)

    def test_is_expired_at_boundary(self):
        entry = Entry.new("v", now=NOW)
        entry.expires_at = NOW
        assert entry.is_expired(now=NOW)
        assert not entry.is_expired(now=NOW - timedelta(seconds=1))

    def test_ttl_remaining_minutes(self):
        entry = Entry.new("v", now=NOW)
        entry.set_ttl_minutes(90, now=NOW)
        assert entry.ttl_remaining_minutes(now=NOW + timedelta(minutes=30)) == 60

    def test_summary_and_describe(self):
        entry = Entry.new("hello", ["a", "b"], now=NOW)
        assert entry.summary("k") == "k = hello [tags: a, b]"
        assert entry.describe() == "'hello' (tags: a, b)"
        assert Entry.new("bare", now=NOW).summary("k") == "k = bare"

    def test_to_record(self):
        record = Entry.new("v", ["t"], now=NOW).to_record("k")
        assert record == {
            "key": "k",
            "value": "v",
            "tags": ["t"],
            "created_at": "2026-10-19T08:15:00.000000+00:00",
            "updated_at": "2026-10-19T08:15:00.000000+00:00",
            "expires_at": None,
        }


class TestFromPersisted:
    def test_valid_row(self):
        entry = Entry.from_persisted(
            "v", '["a"]', "2026-10-19T08:15:00+00:00", "2026-10-19T08:15:00+00:00", None,
        )
        assert entry.tags == ["a"]
        assert entry.created_at == NOW

    def test_bad_tags_json(self):
        with pytest.raises(StorageError):
            Entry.from_persisted("v", "{not json", "2026-10-19T08:15:00+00:00",
                                 "2026-10-19T08:15:00+00:00", None)

    def test_tags_must_be_strings(self):
        with pytest.raises(StorageError):
            Entry.from_persisted("v", "[1, 2]", "2026-10-19T08:15:00+00:00",
                                 "2026-10-19T08:15:00+00:00", None)

    def test_bad_timestamp(self):
        with pytest.raises(StorageError):
            Entry.from_persisted("v", "[]", "garbage", "2026-10-19T08:15:00+00:00", None)


class TestSearchScope:
    def test_from_flags(self):
        assert SearchScope.from_flags() is SearchScope.ALL
        assert SearchScope.from_flags(tags_only=True) is SearchScope.TAGS_ONLY
        assert SearchScope.from_flags(keys_only=True) is SearchScope.KEYS_ONLY

    def test_both_flags_rejected(self):
        with pytest.raises(InvalidInputError):
            SearchScope.from_flags(tags_only=True, keys_only=True)

    def test_scope_properties(self):
        assert SearchScope.ALL.matches_keys and SearchScope.ALL.matches_tags
        assert not SearchScope.KEYS_ONLY.matches_tags
        assert not SearchScope.TAGS_ONLY.matches_keys
