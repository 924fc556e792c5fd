"""
Pytest configuration and fixtures for source engine tests.

HTTP never leaves the process: every crawler is built on an
httpx.MockTransport that routes requests to a FakeApi handler.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from sources.base import SourceRule
from sources.config import RULES
from sources.crawlers.http import HttpCrawler
from sources.engine import RuleEngine
from sources.manager import SourceManager
from sources.sites.pixiv import PixivClient, PixivSource
from sources.store import MemoryPreferencesStore


class FakeApi:
    """Records every request and answers it with `handler(request)`."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        return self.handler(request)

    def params(self, index: int = -1) -> dict:
        return dict(self.requests[index].url.params)

    def paths(self) -> list:
        return [r.url.path for r in self.requests]

    def count(self, path_fragment: str) -> int:
        return sum(1 for r in self.requests if path_fragment in r.url.path)


def wallhaven_item(image_id: str, **extra) -> dict:
    item = {
        "id": image_id,
        "path": f"https://w.wallhaven.cc/full/{image_id[:2]}/wallhaven-{image_id}.jpg",
        "thumbs": {"large": f"https://th.wallhaven.cc/lg/{image_id[:2]}/{image_id}.jpg"},
        "dimension_x": 1920,
        "dimension_y": 1080,
        "purity": "sfw",
        "file_type": "image/jpeg",
        "views": 120,
        "favorites": 7,
        "uploader": {"username": "alice"},
    }
    item.update(extra)
    return item


def make_crawler(handler) -> HttpCrawler:
    """Crawler over a mock transport with retries and backoff disabled."""
    return HttpCrawler(
        timeout=5.0,
        max_retries=1,
        retry_backoff=0.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def fake_api():
    """Factory: fake_api(handler) -> (FakeApi, HttpCrawler)."""
    def _make(handler):
        api = FakeApi(handler)
        return api, make_crawler(api)
    return _make


@pytest.fixture
def json_rule() -> SourceRule:
    """Page-numbered rule with the list at data[*]."""
    return SourceRule.from_dict({
        "id": "demo",
        "name": "Demo",
        "url": "https://api.example.com/search",
        "params": {"page": "page", "keyword": "q"},
        "filters": [
            {"key": "categories", "encode": "merge"},
            {"key": "purity", "encode": "merge"},
            {"key": "ratios", "encode": "join", "separator": ","},
            {"key": "tags", "encode": "repeat"},
        ],
        "parser": {
            "list": "$.data[*]",
            "id": "id",
            "thumb": "thumbs.large",
            "full": "path",
            "width": "dimension_x",
            "height": "dimension_y",
            "grade": "purity",
        },
        "similar_id_pattern": "^[a-z0-9]{6}$",
    })


@pytest.fixture
def cursor_rule() -> SourceRule:
    return SourceRule.from_dict({
        "id": "cursored",
        "name": "Cursored",
        "url": "https://api.example.com/feed",
        "pagination": {"mode": "cursor", "param": "cursor", "cursor_path": "meta.next"},
        "parser": {"list": "items", "id": "id", "thumb": "thumb", "full": "url"},
    })


@pytest.fixture
def template_rule() -> SourceRule:
    """URL with a keyword placeholder and no default keyword."""
    return SourceRule.from_dict({
        "id": "templated",
        "name": "Templated",
        "url": "https://api.example.com/search/{keyword}/images",
        "parser": {"list": "results", "id": "id", "thumb": "src", "full": "src"},
    })


@pytest.fixture
def random_rule() -> SourceRule:
    return SourceRule.from_dict({
        "id": "shuffle",
        "name": "Shuffle",
        "url": "https://random.example.com/image",
        "response_type": "random",
    })


@pytest.fixture
def pixiv_rule() -> SourceRule:
    return SourceRule.from_dict({
        "id": "pixiv",
        "name": "Pixiv",
        "url": "https://www.pixiv.net",
        "engine": "pixiv",
        "keyword": {"required": True},
    })


@pytest.fixture
def prefs():
    return MemoryPreferencesStore()


def api_handler(request: httpx.Request) -> httpx.Response:
    """Upstream used by the API tests (built-in wallhaven rule)."""
    if request.url.host == "wallhaven.cc":
        if request.url.params.get("q") == "boom":
            return httpx.Response(500, json={"error": "down"})
        return httpx.Response(200, json={
            "data": [wallhaven_item("abc123"), wallhaven_item("def456", purity="nsfw")],
            "meta": {"current_page": 1},
        })
    return httpx.Response(404)


@pytest.fixture
def manager():
    """Manager with built-in rules and a mocked upstream."""
    crawler = make_crawler(FakeApi(api_handler))
    engines = [
        PixivSource(PixivClient(crawler)),
        RuleEngine(crawler, random_stagger=0.0),
    ]
    return SourceManager(engines=engines, prefs=MemoryPreferencesStore(), rules=list(RULES.values()))


@pytest.fixture(scope="function")
def client(manager):
    """Create a test client with the manager dependency overridden."""
    from api.main import app, get_manager

    app.dependency_overrides[get_manager] = lambda: manager

    # Use TestClient directly without context manager for compatibility
    test_client = TestClient(app)
    yield test_client

    app.dependency_overrides.clear()
