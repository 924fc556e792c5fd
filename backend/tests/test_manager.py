"""
Tests for engine dispatch, the rule registry and manager collaborators.
"""

import asyncio
import json

import httpx
import pytest

from sources.base import CanonicalImage, SourceRule
from sources.cache import LoginStatusCache
from sources.config import load_rules_dir
from sources.engine import RuleEngine
from sources.errors import (
    ErrorMapper,
    FetchCancelled,
    HttpClientError,
    HttpServerError,
    InvalidConfiguration,
    NetworkError,
    NetworkTimeout,
)
from sources.headers import ImageHeaderPolicy
from sources.manager import SourceManager
from sources.sites.pixiv import PixivClient, PixivSource
from sources.store import JsonFilePreferencesStore, MemoryPreferencesStore

from conftest import wallhaven_item


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def build_manager(fake_api, handler, rules, prefs=None):
    recorder, crawler = fake_api(handler)
    engines = [PixivSource(PixivClient(crawler)), RuleEngine(crawler, random_stagger=0.0)]
    return recorder, SourceManager(engines=engines, prefs=prefs or MemoryPreferencesStore(), rules=rules)


class TestDispatch:
    """Test engine selection."""

    def test_first_supporting_engine_wins(self, fake_api, json_rule, pixiv_rule):
        recorder, manager = build_manager(fake_api, lambda r: httpx.Response(200), [json_rule, pixiv_rule])
        assert isinstance(manager.get_engine("demo"), RuleEngine)
        assert isinstance(manager.get_engine("pixiv"), PixivSource)

    def test_no_engine_for_rule(self, pixiv_rule):
        manager = SourceManager(engines=[RuleEngine()], rules=[pixiv_rule])
        with pytest.raises(InvalidConfiguration):
            manager.get_engine(pixiv_rule)
        assert manager.list_rules()[0]["implemented"] is False

    def test_unknown_rule_id(self):
        manager = SourceManager(engines=[RuleEngine()], rules=[])
        with pytest.raises(InvalidConfiguration):
            asyncio.run(manager.fetch("nope"))

    def test_fetch_uses_saved_filters(self, fake_api, json_rule):
        handler = lambda r: httpx.Response(200, json={"data": [wallhaven_item("aaa111")]})
        recorder, manager = build_manager(fake_api, handler, [json_rule])
        manager.save_filters("demo", {"ratios": ["16x9", "21x9"]})

        images = asyncio.run(manager.fetch("demo", query="sea"))

        assert [i.id for i in images] == ["aaa111"]
        assert recorder.params()["ratios"] == "16x9,21x9"

    def test_explicit_filters_override_saved(self, fake_api, json_rule):
        handler = lambda r: httpx.Response(200, json={"data": []})
        recorder, manager = build_manager(fake_api, handler, [json_rule])
        manager.save_filters("demo", {"ratios": "16x9"})

        asyncio.run(manager.fetch("demo", filters={}))
        assert "ratios" not in recorder.params()

    def test_cookie_applied_before_fetch(self, fake_api, pixiv_rule):
        def handler(request):
            if request.url.path == "/ajax/user/extra":
                return httpx.Response(200, json={"error": False, "body": {}})
            return httpx.Response(404)

        recorder, manager = build_manager(fake_api, handler, [pixiv_rule])
        manager.set_cookie("pixiv", "PHPSESSID=abc")

        assert asyncio.run(manager.check_login("pixiv")) is True
        assert recorder.requests[0].headers["Cookie"] == "PHPSESSID=abc"

    def test_generic_rules_are_always_logged_in(self, fake_api, json_rule):
        recorder, manager = build_manager(fake_api, lambda r: httpx.Response(500), [json_rule])
        assert asyncio.run(manager.check_login("demo")) is True
        assert recorder.requests == []


class TestRegistry:
    """Test rule registration and loading."""

    def test_default_rules_loaded(self):
        manager = SourceManager(engines=[])
        assert {"wallhaven", "pixiv", "civitai", "picsum", "yandere"} <= set(manager.rules)

    def test_add_rule_json_replaces_same_id(self):
        manager = SourceManager(engines=[RuleEngine()], rules=[])
        manager.add_rule_json(json.dumps({"id": "mine", "name": "Old", "url": "https://x/a"}))
        manager.add_rule_json(json.dumps({"id": "mine", "name": "New", "url": "https://x/b"}))

        assert len(manager.rules) == 1
        assert manager.get_rule("mine").name == "New"

    @pytest.mark.parametrize("text", [
        "[]",
        "{not json",
        json.dumps({"name": "no id"}),
        json.dumps({"id": "x", "engine": "quantum"}),
    ])
    def test_invalid_rule_json(self, text):
        manager = SourceManager(engines=[], rules=[])
        with pytest.raises(InvalidConfiguration):
            manager.add_rule_json(text)

    def test_remove_rule(self, json_rule):
        manager = SourceManager(engines=[], rules=[json_rule])
        assert manager.remove_rule("demo") is True
        assert manager.remove_rule("demo") is False

    def test_load_rules_dir_skips_invalid(self, tmp_path):
        (tmp_path / "a.json").write_text(json.dumps({"id": "a", "url": "https://x"}), encoding="utf-8")
        (tmp_path / "b.json").write_text("{broken", encoding="utf-8")
        (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

        rules = load_rules_dir(tmp_path)
        assert [r.id for r in rules] == ["a"]
        assert load_rules_dir(tmp_path / "missing") == []


class TestImageHeaders:
    """Test the image header policy and engine headers."""

    def image(self, url, source_id="x"):
        return CanonicalImage(id="1", source_id=source_id, thumb_url=url, full_url=url)

    def test_pximg_headers(self):
        headers = ImageHeaderPolicy().headers_for(self.image("https://i.pximg.net/a.jpg"))
        assert headers["Referer"] == "https://www.pixiv.net/"
        assert "User-Agent" in headers

    def test_wallhaven_headers(self):
        headers = ImageHeaderPolicy().headers_for(self.image("https://w.wallhaven.cc/full/a.jpg"))
        assert headers["Referer"] == "https://wallhaven.cc/"
        assert headers["Accept"].startswith("image/")

    def test_rule_headers_win(self):
        rule = SourceRule.from_dict({"id": "r", "url": "https://x", "headers": {"referer": "https://mine/"}})
        headers = ImageHeaderPolicy().headers_for(self.image("https://i.pximg.net/a.jpg"), rule)
        assert headers["referer"] == "https://mine/"
        assert "Referer" not in headers

    def test_other_hosts_untouched(self):
        assert ImageHeaderPolicy().headers_for(self.image("https://cdn.example.com/a.jpg")) == {}

    def test_manager_adds_engine_headers(self, pixiv_rule):
        client = PixivClient(cookie="PHPSESSID=abc")
        manager = SourceManager(engines=[PixivSource(client)], rules=[pixiv_rule])
        headers = manager.image_headers(self.image("https://i.pximg.net/a.jpg", source_id="pixiv"))

        assert headers["Referer"] == "https://www.pixiv.net/"
        assert headers["Cookie"] == "PHPSESSID=abc"

    def test_manager_adds_api_key_header(self):
        rule = SourceRule.from_dict({
            "id": "keyed", "url": "https://x",
            "api_key": {"value": "k", "in": "header", "prefix": "Token "},
        })
        manager = SourceManager(engines=[RuleEngine()], rules=[rule])
        headers = manager.image_headers(self.image("https://cdn.example.com/a.jpg"), "keyed")
        assert headers == {"Authorization": "Token k"}


class TestPreferencesStore:
    """Test preferences persistence."""

    def test_memory_store(self):
        store = MemoryPreferencesStore()
        store.save_filters("r", {"a": 1})
        store.save_cookie("r", "  c=1 ")
        assert store.load_filters("r") == {"a": 1}
        assert store.load_cookie("r") == "c=1"

        store.save_filters("r", {})
        store.save_cookie("r", "")
        assert store.load_filters("r") == {}
        assert store.load_cookie("r") is None

    def test_json_file_store_persists(self, tmp_path):
        path = tmp_path / "data" / "preferences.json"
        store = JsonFilePreferencesStore(path)
        store.save_cookie("pixiv", "PHPSESSID=abc")
        store.save_filters("wallhaven", {"sorting": "toplist"})
        store.save_preferences("pixiv", {"show_ai": False})

        reopened = JsonFilePreferencesStore(path)
        assert reopened.load_cookie("pixiv") == "PHPSESSID=abc"
        assert reopened.load_filters("wallhaven") == {"sorting": "toplist"}
        assert reopened.load_preferences("pixiv") == {"show_ai": False}

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "preferences.json"
        path.write_text("{oops", encoding="utf-8")
        store = JsonFilePreferencesStore(path)
        assert store.load_cookie("pixiv") is None
        assert store.load_preferences("pixiv") is None


class TestLoginStatusCache:
    """Test TTL and state reporting."""

    def test_ttl_expiry(self):
        clock = FakeClock()
        cache = LoginStatusCache(ttl_seconds=300, clock=clock)

        async def checker():
            return True

        assert asyncio.run(cache.resolve("cookie", checker)) is True
        assert cache.get("cookie") is True
        clock.now += 301
        assert cache.get("cookie") is None

    def test_failed_check_not_cached(self):
        cache = LoginStatusCache()

        async def checker():
            raise NetworkError("offline")

        with pytest.raises(NetworkError):
            asyncio.run(cache.resolve("cookie", checker))
        assert cache.get("cookie") is None

    def test_invalidate(self):
        cache = LoginStatusCache()

        async def checker():
            return False

        asyncio.run(cache.resolve("cookie", checker))
        cache.invalidate()
        assert cache.get("cookie") is None


class TestErrorMapper:
    """Test user-facing error mapping."""

    @pytest.mark.parametrize("error,status", [
        (InvalidConfiguration("Source 'x' requires a search keyword"), 400),
        (FetchCancelled("stop"), 499),
        (HttpClientError(403, "https://x"), 502),
        (HttpClientError(404, "https://x"), 502),
        (HttpServerError(503, "https://x"), 502),
        (NetworkTimeout("slow"), 504),
        (NetworkError("down"), 502),
        (RuntimeError("bug"), 500),
    ])
    def test_status_codes(self, error, status):
        assert ErrorMapper().map(error).status_code == status

    def test_access_denied_message(self):
        mapped = ErrorMapper().map(HttpClientError(401, "https://x"))
        assert "Access denied" in mapped.user_message
        assert "401" in mapped.debug_message

    def test_configuration_message_passed_through(self):
        mapped = ErrorMapper().map(InvalidConfiguration("Source 'x' requires a search keyword"))
        assert mapped.user_message == "Source 'x' requires a search keyword"
