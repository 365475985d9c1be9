"""Tests for the in-memory entry cache and its search."""

import pytest

from kvnotes.cache import EntryCache
from kvnotes.recent import RecentConfig
from kvnotes.types import SearchScope


@pytest.fixture
def cache(sample_entries):
    return EntryCache.from_entries(sample_entries)


class TestOrdering:
    def test_ordered_by_key(self, entry_factory):
        cache = EntryCache.from_entries([
            ("zeta", entry_factory("z")),
            ("alpha", entry_factory("a")),
            ("mid", entry_factory("m")),
        ])
        assert [key for key, _ in cache.ordered()] == ["alpha", "mid", "zeta"]

    def test_insert_keeps_order_and_returns_previous(self, cache, entry_factory):
        assert cache.insert("aardvark", entry_factory("new")) is None
        previous = cache.insert("beta", entry_factory("changed"))

        assert previous.value == "second value"
        assert cache.get("beta").value == "changed"
        assert cache.keys() == ["aardvark", "alpha", "beta", "project-notes"]

    def test_remove(self, cache):
        removed = cache.remove("alpha")
        assert removed.value == "first value"
        assert "alpha" not in cache
        assert cache.keys() == ["beta", "project-notes"]
        assert cache.remove("alpha") is None

    def test_reset_replaces_everything(self, cache, entry_factory):
        cache.reset([("only", entry_factory("v"))])
        assert cache.keys() == ["only"]
        assert len(cache) == 1


class TestSearch:
    def test_scoping_on_keys_and_tags(self, cache):
        # "project-notes" is tagged "@work"
        assert [r.key for r in cache.search("work", 10, SearchScope.ALL)] == ["project-notes"]
        assert [r.key for r in cache.search("work", 10, SearchScope.TAGS_ONLY)] == ["project-notes"]
        assert cache.search("work", 10, SearchScope.KEYS_ONLY) == []

        assert [r.key for r in cache.search("proj", 10, SearchScope.KEYS_ONLY)] == ["project-notes"]
        assert cache.search("proj", 10, SearchScope.TAGS_ONLY) == []

    def test_empty_pattern_or_zero_limit(self, cache):
        assert cache.search("", 10) == []
        assert cache.search("a", 0) == []

    def test_limit_truncates(self, cache):
        assert len(cache.search("e", 10)) == 3
        assert len(cache.search("e", 2)) == 2

    def test_sorted_best_first(self, cache):
        scores = [r.score for r in cache.search("a", 10)]
        assert scores == sorted(scores, reverse=True)

    def test_combined_score_is_the_better_of_key_and_tag(self, cache):
        from kvnotes.fuzzy import fuzzy_match
        (hit,) = [r for r in cache.search("shared", 10) if r.key == "alpha"]
        assert hit.score == fuzzy_match("shared", "shared")


class TestRecentHistory:
    def test_record_access_only_for_present_keys(self, cache):
        cache.record_access("alpha")
        cache.record_access("missing")
        assert cache.recent(10) == ["alpha"]

    def test_remove_evicts_from_recent(self, cache):
        cache.record_access("alpha")
        cache.record_access("beta")
        cache.remove("alpha")
        assert cache.recent(10) == ["beta"]

    def test_enable_prunes_dead_keys_from_file(self, cache, tmp_path):
        path = tmp_path / "recent.log"
        path.write_text("gone\nbeta\nalpha\n", encoding="utf-8")

        cache.enable_recent_history(RecentConfig(path, 10))

        assert cache.recent(10) == ["beta", "alpha"]
        assert path.read_text(encoding="utf-8").splitlines() == ["beta", "alpha"]

    def test_reset_prunes_recent(self, cache, entry_factory, tmp_path):
        cache.enable_recent_history(RecentConfig(tmp_path / "recent.log", 10))
        cache.record_access("alpha")
        cache.record_access("beta")
        cache.reset([("beta", entry_factory("v"))])
        assert cache.recent(10) == ["beta"]
