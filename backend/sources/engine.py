"""
Generic rule engine.

Executes a SourceRule against its API in one of three modes:

- json:        one GET, parse the list
- json merge:  one GET per combination of `merge` filter values, results
               merged and deduplicated by id
- random:      a small staggered batch of redirect probes against an
               endpoint that redirects to a random image
"""

import asyncio
import itertools
import logging
import random
import time
from typing import Any, Dict, Iterator, List, Optional

from .base import (
    BaseImageSource,
    CanonicalImage,
    Colors,
    EngineType,
    FilterSelection,
    ResponseMode,
    SourceRule,
    dedupe_by_id,
)
from .context import FetchContext
from .crawlers.http import HttpCrawler
from .errors import HttpError, NetworkError
from .pagination import PaginationStrategy
from .parser import ResponseParser
from .request_builder import BuiltRequest, RequestBuilder
from .utils.normalizers import build_similar_query, strip_cache_busters

logger = logging.getLogger(__name__)


def expand_merge(params: Dict[str, Any], merge_values: Dict[str, List[Any]]) -> Iterator[Dict[str, Any]]:
    """
    Yield one parameter set per combination of merge filter values.

    Example:
        ({'q': 'x'}, {'tags': ['a', 'b']}) -> {'q': 'x', 'tags': 'a'}, {'q': 'x', 'tags': 'b'}
    """
    keys = list(merge_values.keys())
    for combo in itertools.product(*(merge_values[k] for k in keys)):
        expanded = dict(params)
        expanded.update(zip(keys, combo))
        yield expanded


class RuleEngine(BaseImageSource):
    """
    Fetches images for declarative (non-specialized) source rules.

    Usage:
        engine = RuleEngine(HttpCrawler())
        images = await engine.fetch(rule, page=1, query='cats')
    """

    RANDOM_BATCH_SIZE = 6
    RANDOM_STAGGER_SECONDS = 0.3

    def __init__(
        self,
        crawler: Optional[HttpCrawler] = None,
        builder: Optional[RequestBuilder] = None,
        pagination: Optional[PaginationStrategy] = None,
        parser: Optional[ResponseParser] = None,
        request_timeout: float = 15.0,
        probe_timeout: float = 10.0,
        random_batch_size: int = RANDOM_BATCH_SIZE,
        random_stagger: float = RANDOM_STAGGER_SECONDS,
    ):
        """
        Initialize the engine.

        Args:
            crawler: Shared HTTP crawler
            builder: Request builder
            pagination: Pagination strategy (owns the cursor cache)
            parser: Response parser
            request_timeout: Timeout for JSON requests
            probe_timeout: Timeout for each random-mode probe
            random_batch_size: Number of probes per random-mode page
            random_stagger: Delay between probe starts, in seconds
        """
        self.crawler = crawler or HttpCrawler(timeout=request_timeout)
        self.builder = builder or RequestBuilder()
        self.pagination = pagination or PaginationStrategy()
        self.parser = parser or ResponseParser()
        self.request_timeout = request_timeout
        self.probe_timeout = probe_timeout
        self.random_batch_size = random_batch_size
        self.random_stagger = random_stagger

    def supports(self, rule: SourceRule) -> bool:
        return rule.engine == EngineType.RULE

    def request_headers(self, rule: SourceRule) -> Dict[str, str]:
        return self.builder.request_headers(rule)

    async def fetch(
        self,
        rule: SourceRule,
        page: int = 1,
        query: Optional[str] = None,
        filters: Optional[FilterSelection] = None,
        context: Optional[FetchContext] = None,
    ) -> List[CanonicalImage]:
        context = context or FetchContext()
        rule_logger = logging.getLogger(f"source.{rule.id}")

        # Configuration errors surface here, before any request is made
        built = self.builder.build(rule, query, filters)

        if rule.response_mode == ResponseMode.RANDOM:
            rule_logger.info(f"{Colors.cyan('❯')} {rule.name}: random batch of {self.random_batch_size}")
            images = await self._fetch_random(rule, built, context)
        else:
            params = self.pagination.apply(rule, built.params, page, query, filters)
            if built.merge_values:
                rule_logger.info(
                    f"{Colors.cyan('❯')} {rule.name} page {page}: "
                    f"merging {built.fan_out} requests over {sorted(built.merge_values)}"
                )
                images = await self._fetch_merged(rule, built, params, query, filters, context)
            else:
                rule_logger.info(f"{Colors.cyan('❯')} {rule.name} page {page}")
                images = await self._fetch_json(rule, built, params, query, filters, context)

        images = dedupe_by_id(images)
        rule_logger.info(f"   {Colors.green('✓')} {len(images)} image(s)")
        return images

    async def _fetch_json(
        self,
        rule: SourceRule,
        built: BuiltRequest,
        params: Dict[str, Any],
        query: Optional[str],
        filters: Optional[FilterSelection],
        context: FetchContext,
    ) -> List[CanonicalImage]:
        body = await self.crawler.get_json(
            built.url, params=params, headers=built.headers,
            context=context, timeout=self.request_timeout,
        )
        self.pagination.record(rule, body, query, filters)
        return self.parser.parse(rule, body)

    async def _fetch_merged(
        self,
        rule: SourceRule,
        built: BuiltRequest,
        params: Dict[str, Any],
        query: Optional[str],
        filters: Optional[FilterSelection],
        context: FetchContext,
    ) -> List[CanonicalImage]:
        """
        Run every merge combination sequentially.

        The first failing sub-request aborts the call; nothing gathered so
        far is returned and no cursor is recorded.
        """
        bodies = []
        for sub_params in expand_merge(params, built.merge_values):
            body = await self.crawler.get_json(
                built.url, params=sub_params, headers=built.headers,
                context=context, timeout=self.request_timeout,
            )
            bodies.append(body)

        images: List[CanonicalImage] = []
        for body in bodies:
            images.extend(self.parser.parse(rule, body))
        for body in bodies:
            if self.pagination.record(rule, body, query, filters) is not None:
                break
        return images

    async def _fetch_random(
        self,
        rule: SourceRule,
        built: BuiltRequest,
        context: FetchContext,
    ) -> List[CanonicalImage]:
        probes = [
            self._probe(rule, built, index, context)
            for index in range(self.random_batch_size)
        ]
        urls = await asyncio.gather(*probes)

        images = []
        seen = set()
        for url in urls:
            if not url or url in seen:
                continue
            seen.add(url)
            images.append(CanonicalImage(id=url, source_id=rule.id, thumb_url=url, full_url=url))
        return images

    async def _probe(
        self,
        rule: SourceRule,
        built: BuiltRequest,
        index: int,
        context: FetchContext,
    ) -> Optional[str]:
        """
        Resolve one random image URL.

        HEAD first (no body); on failure a streamed GET whose body is never
        read. A failed probe returns None.
        """
        await context.sleep(index * self.random_stagger)

        params = dict(built.params)
        params['_t'] = str(int(time.time() * 1000))
        params['_r'] = str(random.randint(0, 1_000_000))

        try:
            final_url = await self.crawler.head_final_url(
                built.url, params=params, headers=built.headers,
                context=context, timeout=self.probe_timeout,
            )
        except (NetworkError, HttpError) as e:
            logger.debug(f"[{rule.id}] HEAD probe {index} failed ({e}), trying streamed GET")
            try:
                final_url = await self.crawler.stream_final_url(
                    built.url, params=params, headers=built.headers,
                    context=context, timeout=self.probe_timeout,
                )
            except (NetworkError, HttpError) as e2:
                logger.debug(f"[{rule.id}] probe {index} failed: {e2}")
                return None

        final_url = strip_cache_busters(final_url)
        if not final_url.startswith('http'):
            return None
        return final_url

    async def similar(
        self,
        rule: SourceRule,
        seed: CanonicalImage,
        page: int = 1,
        context: Optional[FetchContext] = None,
    ) -> List[CanonicalImage]:
        """Search the same source for images similar to `seed`."""
        query = build_similar_query(seed, rule.similar_id_pattern)
        if not query:
            return []
        return await self.fetch(rule, page=page, query=query, context=context)
