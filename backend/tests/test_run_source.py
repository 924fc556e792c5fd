"""
Tests for the command-line source runner.
"""

import asyncio

import pytest

from sources.run_source import parse_filters, run_fetch


class TestParseFilters:
    """Test `-f key=value` parsing."""

    def test_single_and_list_values(self):
        filters = parse_filters(["sorting=toplist", "categories=100,010", "ratios=16x9,"])
        assert filters == {"sorting": "toplist", "categories": ["100", "010"], "ratios": "16x9"}

    def test_no_filters(self):
        assert parse_filters(None) == {}

    def test_missing_equals_exits(self):
        with pytest.raises(SystemExit):
            parse_filters(["sorting"])


class TestRunFetch:
    """Test page output."""

    def test_prints_images_and_stops_on_empty_page(self, manager, capsys):
        asyncio.run(run_fetch(manager, "wallhaven", "forest", {}, pages=1, limit=1, as_json=False))

        out = capsys.readouterr().out
        assert "Page 1: 2 image(s)" in out
        assert "abc123" in out
        assert "and 1 more images" in out
