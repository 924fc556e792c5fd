"""
Source Manager - dispatches rules to engines.

Holds the ordered engine list and the rule registry. A rule is handled
by the first engine whose `supports` accepts it, so specialized engines
must be listed before the generic one.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from .base import BaseImageSource, CanonicalImage, FilterSelection, SourceRule
from .cache import CursorCache, LoginStatusCache
from .config import RULES, get_rule_summary, load_rules_dir, parse_rule
from .context import FetchContext
from .crawlers.http import HttpCrawler
from .engine import RuleEngine
from .errors import InvalidConfiguration
from .headers import ImageHeaderPolicy
from .pagination import PaginationStrategy
from .sites.pixiv import PixivClient, PixivSource
from .store import MemoryPreferencesStore, PreferencesStore

logger = logging.getLogger(__name__)

RuleRef = Union[str, SourceRule]


def create_default_engines(crawler: Optional[HttpCrawler] = None) -> List[BaseImageSource]:
    """Specialized engines first, the generic rule engine last."""
    crawler = crawler or HttpCrawler()
    return [
        PixivSource(PixivClient(crawler)),
        RuleEngine(crawler),
    ]


class SourceManager:
    """
    Manages rules and routes requests to engines.

    Usage:
        manager = SourceManager.from_settings(settings)

        images = await manager.fetch('wallhaven', page=1, query='forest')
        similar = await manager.similar('wallhaven', images[0])
        logged_in = await manager.check_login('pixiv')

        await manager.close()
    """

    def __init__(
        self,
        engines: Optional[List[BaseImageSource]] = None,
        prefs: Optional[PreferencesStore] = None,
        rules: Optional[List[SourceRule]] = None,
        header_policy: Optional[ImageHeaderPolicy] = None,
    ):
        """
        Initialize the manager.

        Args:
            engines: Ordered engines (defaults to Pixiv + generic rule engine)
            prefs: Preferences store for cookies and saved filters
            rules: Initial rules (defaults to the built-in rules)
            header_policy: Image header policy
        """
        self.engines = engines if engines is not None else create_default_engines()
        self.prefs = prefs or MemoryPreferencesStore()
        self.header_policy = header_policy or ImageHeaderPolicy()
        self.rules: Dict[str, SourceRule] = {}
        for rule in (rules if rules is not None else RULES.values()):
            self.register_rule(rule)

    @classmethod
    def from_settings(cls, settings, prefs: Optional[PreferencesStore] = None,
                      transport=None) -> 'SourceManager':
        """
        Build a fully wired manager from application settings.

        Args:
            settings: api.config.Settings
            prefs: Preferences store (defaults to the JSON file in the data dir)
            transport: Optional httpx transport shared by every engine
        """
        from .store import JsonFilePreferencesStore

        crawler = HttpCrawler(
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            headers={
                'User-Agent': settings.user_agent,
                'Accept': 'application/json, text/plain, */*',
            },
            transport=transport,
        )
        cursor_cache = CursorCache(
            max_entries=settings.cursor_cache_size,
            ttl_seconds=settings.cursor_cache_ttl,
        )
        engines: List[BaseImageSource] = [
            PixivSource(
                PixivClient(crawler, timeout=settings.pixiv_timeout),
                login_cache=LoginStatusCache(ttl_seconds=settings.login_cache_ttl),
                enrich_concurrency=settings.enrich_concurrency,
                detail_timeout=settings.detail_timeout,
            ),
            RuleEngine(
                crawler,
                pagination=PaginationStrategy(cursor_cache),
                request_timeout=settings.request_timeout,
                probe_timeout=settings.probe_timeout,
                random_batch_size=settings.random_batch_size,
                random_stagger=settings.random_stagger,
            ),
        ]

        if prefs is None:
            prefs = JsonFilePreferencesStore(settings.data_dir / 'preferences.json')

        rules = list(RULES.values()) + load_rules_dir(settings.rules_dir)
        return cls(engines=engines, prefs=prefs, rules=rules)

    # -------------------- rule registry --------------------

    def register_rule(self, rule: SourceRule) -> SourceRule:
        """Add or replace a rule (same id replaces)."""
        if rule.id in self.rules:
            logger.info(f"Replacing rule '{rule.id}'")
        self.rules[rule.id] = rule
        return rule

    def add_rule_json(self, text: Union[str, bytes]) -> SourceRule:
        """
        Parse and register a rule from JSON text.

        Raises:
            InvalidConfiguration: If the JSON is not a valid rule
        """
        try:
            rule = parse_rule(text)
        except ValueError as e:
            raise InvalidConfiguration(f"Invalid rule: {e}") from e
        return self.register_rule(rule)

    def remove_rule(self, rule_id: str) -> bool:
        return self.rules.pop(rule_id, None) is not None

    def get_rule(self, rule_id: str) -> Optional[SourceRule]:
        return self.rules.get(rule_id)

    def list_rules(self) -> List[Dict[str, Any]]:
        summary = get_rule_summary(self.rules)
        for item in summary:
            rule = self.rules[item['id']]
            item['implemented'] = self.find_engine(rule) is not None
        return summary

    def _resolve(self, rule: RuleRef) -> SourceRule:
        if isinstance(rule, SourceRule):
            return rule
        found = self.rules.get(rule)
        if found is None:
            raise InvalidConfiguration(f"Unknown source '{rule}'")
        return found

    # -------------------- dispatch --------------------

    def find_engine(self, rule: SourceRule) -> Optional[BaseImageSource]:
        for engine in self.engines:
            if engine.supports(rule):
                return engine
        return None

    def get_engine(self, rule: RuleRef) -> BaseImageSource:
        """
        Get the engine for a rule.

        Raises:
            InvalidConfiguration: If no engine supports the rule
        """
        rule = self._resolve(rule)
        engine = self.find_engine(rule)
        if engine is None:
            raise InvalidConfiguration(f"No engine supports source '{rule.id}' ({rule.engine.value})")
        return engine

    async def _prepare(self, rule: SourceRule) -> BaseImageSource:
        engine = self.get_engine(rule)
        await engine.restore_session(self.prefs, rule)
        return engine

    async def fetch(
        self,
        rule: RuleRef,
        page: int = 1,
        query: Optional[str] = None,
        filters: Optional[FilterSelection] = None,
        context: Optional[FetchContext] = None,
    ) -> List[CanonicalImage]:
        """
        Fetch one page from a source.

        Args:
            rule: Rule or rule id
            page: 1-based page number
            query: Search text
            filters: Filter selection; None uses the saved selection

        Returns:
            Ordered, deduplicated images (empty = no more results)
        """
        rule = self._resolve(rule)
        if filters is None:
            filters = self.prefs.load_filters(rule.id)
        engine = await self._prepare(rule)
        return await engine.fetch(rule, page=page, query=query, filters=filters, context=context)

    async def similar(
        self,
        rule: RuleRef,
        seed: CanonicalImage,
        page: int = 1,
        context: Optional[FetchContext] = None,
    ) -> List[CanonicalImage]:
        rule = self._resolve(rule)
        engine = await self._prepare(rule)
        return await engine.similar(rule, seed, page=page, context=context)

    async def check_login(self, rule: RuleRef, context: Optional[FetchContext] = None) -> bool:
        rule = self._resolve(rule)
        engine = await self._prepare(rule)
        return await engine.check_login_status(rule, context)

    # -------------------- preferences --------------------

    def save_filters(self, rule_id: str, filters: Optional[FilterSelection]):
        self.prefs.save_filters(rule_id, filters)

    def set_cookie(self, rule_id: str, cookie: Optional[str]):
        """Store (or clear) the session cookie for a rule; applied on next use."""
        self.prefs.save_cookie(rule_id, cookie)

    def image_headers(self, image: CanonicalImage, rule: Optional[RuleRef] = None) -> Dict[str, str]:
        """
        Headers to reuse when downloading `image`.

        Host policy and rule headers first, then whatever the engine adds
        (API key header, session cookie).
        """
        resolved = self._resolve(rule) if rule is not None else self.rules.get(image.source_id)
        headers = self.header_policy.headers_for(image, resolved)
        if resolved is not None:
            engine = self.find_engine(resolved)
            if engine is not None:
                present = {k.lower() for k in headers}
                for key, value in engine.request_headers(resolved).items():
                    if key.lower() not in present:
                        headers[key] = value
        return headers

    async def close(self):
        """Close every HTTP client owned by the engines."""
        crawlers = []
        for engine in self.engines:
            crawler = getattr(engine, 'crawler', None)
            client = getattr(engine, 'client', None)
            if crawler is None and client is not None:
                crawler = getattr(client, 'crawler', None)
            if crawler is not None and crawler not in crawlers:
                crawlers.append(crawler)
        for crawler in crawlers:
            await crawler.close()


# Convenience function for standalone usage

async def fetch_source(rule_id: str, page: int = 1, query: Optional[str] = None,
                       filters: Optional[FilterSelection] = None) -> List[CanonicalImage]:
    """
    Fetch one page from a built-in source with default engines.

    Args:
        rule_id: Rule identifier
        page: 1-based page number
        query: Search text
        filters: Filter selection

    Returns:
        List of CanonicalImage
    """
    manager = SourceManager()
    try:
        return await manager.fetch(rule_id, page=page, query=query, filters=filters or {})
    finally:
        await manager.close()
