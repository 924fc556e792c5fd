"""
Tests for request building (keyword, API key, filter encoding).
"""

import pytest

from sources.base import SourceRule
from sources.errors import InvalidConfiguration
from sources.request_builder import RequestBuilder


@pytest.fixture
def builder():
    return RequestBuilder()


class TestKeyword:
    """Test keyword resolution and placement."""

    def test_keyword_goes_to_keyword_param(self, builder, json_rule):
        built = builder.build(json_rule, "  mountains ")
        assert built.params["q"] == "mountains"
        assert built.keyword == "mountains"

    def test_no_keyword_no_param(self, builder, json_rule):
        built = builder.build(json_rule, None)
        assert "q" not in built.params

    def test_default_keyword_used(self, builder):
        rule = SourceRule.from_dict({
            "id": "d", "url": "https://x/api",
            "params": {"keyword": "tags"},
            "keyword": {"default": "scenery"},
        })
        assert builder.build(rule, "").params["tags"] == "scenery"

    def test_required_keyword_missing(self, builder):
        rule = SourceRule.from_dict({"id": "r", "url": "https://x/api", "keyword": {"required": True}})
        with pytest.raises(InvalidConfiguration):
            builder.build(rule, "   ")

    def test_template_filled_and_encoded(self, builder, template_rule):
        built = builder.build(template_rule, "blue sky/night")
        assert built.url == "https://api.example.com/search/blue%20sky%2Fnight/images"
        assert "q" not in built.params

    def test_template_without_keyword(self, builder, template_rule):
        """Fails before any network access."""
        with pytest.raises(InvalidConfiguration):
            builder.build(template_rule, None)

    @pytest.mark.parametrize("token", ["{keyword}", "{word}", "{q}"])
    def test_all_template_tokens(self, builder, token):
        rule = SourceRule.from_dict({"id": "t", "url": f"https://x/s/{token}"})
        assert builder.build(rule, "cat").url == "https://x/s/cat"


class TestApiKey:
    """Test API key injection."""

    def test_query_key_default_name(self, builder):
        rule = SourceRule.from_dict({"id": "k", "url": "https://x/api", "api_key": "secret"})
        assert builder.build(rule).params["apikey"] == "secret"

    def test_query_key_custom_name(self, builder):
        rule = SourceRule.from_dict({
            "id": "k", "url": "https://x/api",
            "api_key": {"value": "secret", "name": "access_token", "in": "query"},
        })
        assert builder.build(rule).params == {"access_token": "secret"}

    def test_header_key_with_prefix(self, builder):
        rule = SourceRule.from_dict({
            "id": "k", "url": "https://x/api",
            "headers": {"Accept": "application/json"},
            "api_key": {"value": "secret", "in": "header", "prefix": "Bearer "},
        })
        built = builder.build(rule)
        assert built.headers == {"Accept": "application/json", "Authorization": "Bearer secret"}
        assert "apikey" not in built.params

    def test_blank_api_key_ignored(self, builder):
        rule = SourceRule.from_dict({"id": "k", "url": "https://x/api", "api_key": {"value": "  "}})
        assert rule.api_key is None
        assert builder.build(rule).params == {}


class TestFilters:
    """Test filter encoding strategies."""

    def test_join_with_separator(self, builder, json_rule):
        built = builder.build(json_rule, filters={"ratios": ["16x9", "21x9"]})
        assert built.params["ratios"] == "16x9,21x9"

    def test_custom_separator(self, builder):
        rule = SourceRule.from_dict({
            "id": "s", "url": "https://x/api",
            "filters": [{"key": "tags", "encode": "join", "separator": "+"}],
        })
        assert builder.build(rule, filters={"tags": ["a", "b"]}).params["tags"] == "a+b"

    def test_repeat_keeps_list(self, builder, json_rule):
        built = builder.build(json_rule, filters={"tags": ["a", "b"]})
        assert built.params["tags"] == ["a", "b"]

    def test_merge_collected_not_in_params(self, builder, json_rule):
        built = builder.build(json_rule, filters={"categories": ["100", "010", "100"]})
        assert "categories" not in built.params
        assert built.merge_values == {"categories": ["100", "010"]}
        assert built.fan_out == 2

    def test_merge_scalar_passes_through(self, builder, json_rule):
        built = builder.build(json_rule, filters={"categories": "100"})
        assert built.params["categories"] == "100"
        assert built.merge_values == {}

    def test_unknown_filter_list_is_joined(self, builder, json_rule):
        built = builder.build(json_rule, filters={"colors": ["red", "blue"]})
        assert built.params["colors"] == "red,blue"

    def test_blank_values_dropped(self, builder, json_rule):
        built = builder.build(json_rule, filters={
            "ratios": ["", "  ", "16x9"],
            "tags": [],
            "sorting": "  ",
            "order": None,
        })
        assert built.params == {"ratios": "16x9"}

    def test_blank_fixed_params_dropped(self, builder):
        rule = SourceRule.from_dict({
            "id": "f", "url": "https://x/api",
            "fixed_params": {"limit": 20, "sort": "", "nsfw": None},
        })
        assert builder.build(rule).params == {"limit": 20}
