"""
Tests for pagination parameters and the cursor cache.
"""

import pytest

from sources.base import SourceRule
from sources.cache import CursorCache
from sources.pagination import PaginationStrategy


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def strategy():
    return PaginationStrategy(CursorCache())


def offset_rule(page_size=None, fixed=None):
    pagination = {"mode": "offset", "param": "offset"}
    if page_size:
        pagination["page_size"] = page_size
    return SourceRule.from_dict({
        "id": "off", "url": "https://x/api",
        "fixed_params": fixed or {},
        "pagination": pagination,
    })


class TestPageAndOffset:
    """Test page-number and offset modes."""

    def test_page_mode(self, strategy, json_rule):
        assert strategy.apply(json_rule, {"q": "x"}, 3) == {"q": "x", "page": 3}

    def test_page_below_one_clamped(self, strategy, json_rule):
        assert strategy.apply(json_rule, {}, 0)["page"] == 1

    def test_custom_page_param(self, strategy):
        rule = SourceRule.from_dict({"id": "p", "url": "https://x", "params": {"page": "p"}})
        assert strategy.apply(rule, {}, 2) == {"p": 2}

    def test_offset_with_page_size(self, strategy):
        assert strategy.apply(offset_rule(page_size=30), {}, 3)["offset"] == 60

    def test_offset_guesses_size_from_params(self, strategy):
        params = {"limit": "25"}
        assert strategy.apply(offset_rule(), params, 2)["offset"] == 25

    def test_offset_default_size(self, strategy):
        assert strategy.apply(offset_rule(), {}, 2)["offset"] == 20
        assert strategy.apply(offset_rule(), {}, 1)["offset"] == 0

    def test_random_mode_untouched(self, strategy, random_rule):
        assert strategy.apply(random_rule, {"a": 1}, 5) == {"a": 1}

    def test_input_not_mutated(self, strategy, json_rule):
        params = {"q": "x"}
        strategy.apply(json_rule, params, 2)
        assert params == {"q": "x"}


class TestCursorMode:
    """Test cursor token replay."""

    def test_first_page_has_no_cursor(self, strategy, cursor_rule):
        assert strategy.apply(cursor_rule, {}, 1) == {}

    def test_recorded_token_used_for_next_page(self, strategy, cursor_rule):
        token = strategy.record(cursor_rule, {"items": [], "meta": {"next": "abc"}}, "cats", {})
        assert token == "abc"
        assert strategy.apply(cursor_rule, {}, 2, "cats", {})["cursor"] == "abc"

    def test_token_scoped_by_query_and_filters(self, strategy, cursor_rule):
        strategy.record(cursor_rule, {"meta": {"next": "abc"}}, "cats", {"sort": "new"})
        assert "cursor" not in strategy.apply(cursor_rule, {}, 2, "dogs", {"sort": "new"})
        assert "cursor" not in strategy.apply(cursor_rule, {}, 2, "cats", {"sort": "top"})
        assert strategy.apply(cursor_rule, {}, 2, " cats ", {"sort": "new"})["cursor"] == "abc"

    def test_missing_token_omits_param(self, strategy, cursor_rule, caplog):
        params = strategy.apply(cursor_rule, {"cursor": "stale"}, 4, "cats", {})
        assert "cursor" not in params
        assert "No cursor cached" in caplog.text

    def test_page_one_evicts(self, strategy, cursor_rule):
        strategy.record(cursor_rule, {"meta": {"next": "abc"}}, "cats", {})
        strategy.apply(cursor_rule, {}, 1, "cats", {})
        assert "cursor" not in strategy.apply(cursor_rule, {}, 2, "cats", {})

    def test_newer_token_overwrites(self, strategy, cursor_rule):
        strategy.record(cursor_rule, {"meta": {"next": "one"}}, None, None)
        strategy.record(cursor_rule, {"meta": {"next": "two"}}, None, None)
        assert strategy.apply(cursor_rule, {}, 3)["cursor"] == "two"

    def test_response_without_token_keeps_old(self, strategy, cursor_rule):
        strategy.record(cursor_rule, {"meta": {"next": "one"}}, None, None)
        assert strategy.record(cursor_rule, {"meta": {"next": ""}}, None, None) is None
        assert strategy.apply(cursor_rule, {}, 2)["cursor"] == "one"

    def test_numeric_token(self, strategy, cursor_rule):
        strategy.record(cursor_rule, {"meta": {"next": 4821}}, None, None)
        assert strategy.apply(cursor_rule, {}, 2)["cursor"] == 4821

    def test_page_mode_never_records(self, strategy, json_rule):
        assert strategy.record(json_rule, {"meta": {"next": "x"}}) is None
        assert len(strategy.cursor_cache) == 0


class TestCursorCache:
    """Test cache bounds."""

    def test_lru_eviction(self):
        cache = CursorCache(max_entries=2)
        cache.set(("a", "", "{}"), 1)
        cache.set(("b", "", "{}"), 2)
        cache.get(("a", "", "{}"))  # a is now most recent
        cache.set(("c", "", "{}"), 3)

        assert ("a", "", "{}") in cache
        assert ("b", "", "{}") not in cache
        assert len(cache) == 2

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = CursorCache(ttl_seconds=60, clock=clock)
        cache.set(("a", "", "{}"), "tok")

        clock.now += 59
        assert cache.get(("a", "", "{}")) == "tok"
        clock.now += 2
        assert cache.get(("a", "", "{}")) is None
        assert len(cache) == 0

    def test_key_normalization(self):
        assert CursorCache.make_key("r", " a   b ", {"y": 1, "x": 2}) == \
            CursorCache.make_key("r", "a b", {"x": 2, "y": 1})
