"""
Pixiv scraper (web ajax API, no API key).

Endpoints:
- Search:          /ajax/search/artworks/{word}?order=date_d&mode=all&s_mode=s_tag&p=1
- Pages (full):    /ajax/illust/{id}/pages
- Recommendations: /ajax/illust/{id}/recommend/init?limit=30
- Login check:     /ajax/user/extra

Site notes:
- i.pximg.net images require `Referer: https://www.pixiv.net/`
- Some content (popular ordering, R-18) needs a logged-in cookie; without
  a confirmed login those options are downgraded to safe defaults
- Search only returns square thumbnails; full URLs come from a second,
  bounded-concurrency pass over the pages endpoint
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from ..base import (
    BaseImageSource,
    CanonicalImage,
    Colors,
    EngineType,
    FilterSelection,
    SourceRule,
    dedupe_by_id,
)
from ..cache import LoginState, LoginStatusCache
from ..context import FetchContext
from ..crawlers.http import HttpCrawler
from ..errors import FetchCancelled, HttpClientError, SourceError
from ..request_builder import RequestBuilder
from ..store import PreferencesStore
from ..utils.normalizers import (
    build_similar_query,
    grade_from_restriction,
    normalize_tags,
    to_int,
    to_meta_string,
)

logger = logging.getLogger(__name__)

PIXIV_BASE_URL = 'https://www.pixiv.net'
PIXIV_USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64)'

DEFAULT_FILTERS = {
    'order': 'date_d',
    'mode': 'all',
    's_mode': 's_tag',
}

# Options that need a logged-in account, and what they fall back to
PRIVILEGED_OPTIONS = {
    'order': {
        'popular_d': 'date_d',
        'popular_male_d': 'date_d',
        'popular_female_d': 'date_d',
    },
    'mode': {
        'r18': 'safe',
    },
}

ILLUST_TYPE_UGOIRA = 2
AI_TYPE_GENERATED = 2


@dataclass(frozen=True)
class PixivIllustBrief:
    """One search/recommendation hit (square thumbnail only)."""
    id: str
    title: str
    thumb_url: str
    width: int = 0
    height: int = 0
    x_restrict: int = 0         # 0 = all ages, 1 = R-18, 2 = R-18G
    illust_type: int = 0        # 2 = ugoira
    ai_type: int = 0            # 2 = AI generated
    tags: tuple = ()
    user_name: str = ''
    create_date: str = ''
    bookmark_count: str = ''

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> Optional['PixivIllustBrief']:
        illust_id = to_meta_string(item.get('id'))
        if not illust_id:
            return None
        return cls(
            id=illust_id,
            title=to_meta_string(item.get('title')),
            thumb_url=to_meta_string(item.get('url')),
            width=to_int(item.get('width')),
            height=to_int(item.get('height')),
            x_restrict=to_int(item.get('xRestrict')),
            illust_type=to_int(item.get('illustType')),
            ai_type=to_int(item.get('aiType')),
            tags=normalize_tags(item.get('tags')),
            user_name=to_meta_string(item.get('userName')),
            create_date=to_meta_string(item.get('createDate')),
            bookmark_count=to_meta_string(item.get('bookmarkCount')),
        )


@dataclass(frozen=True)
class PixivPageUrls:
    original: str = ''
    regular: str = ''
    small: str = ''
    thumb_mini: str = ''


@dataclass
class PixivPreferences:
    """User preferences applied to Pixiv results."""
    image_quality: str = 'original'     # original | regular
    show_ai: bool = True
    muted_tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'PixivPreferences':
        data = data or {}
        return cls(
            image_quality=data.get('quality') or 'original',
            show_ai=data.get('show_ai', True) is not False,
            muted_tags=[str(t) for t in data.get('muted_tags') or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'quality': self.image_quality,
            'show_ai': self.show_ai,
            'muted_tags': list(self.muted_tags),
        }


def derive_regular_url(thumb_url: str) -> Optional[str]:
    """
    Derive the 1200px master URL from a search thumbnail.

    Examples:
        https://i.pximg.net/c/250x250_80_a2/img-master/img/2024/01/02/03/04/05/123_p0_square1200.jpg
            -> https://i.pximg.net/img-master/img/2024/01/02/03/04/05/123_p0_master1200.jpg
        https://i.pximg.net/c/250x250_80_a2/custom-thumb/img/2024/01/02/03/04/05/123_p0_custom1200.jpg
            -> https://i.pximg.net/img-master/img/2024/01/02/03/04/05/123_p0_master1200.jpg
        https://example.com/a.jpg -> None
    """
    if not thumb_url or 'pximg.net' not in thumb_url:
        return None
    url = re.sub(r'/c/[^/]+/', '/', thumb_url, count=1)
    url = url.replace('/custom-thumb/', '/img-master/')
    url = re.sub(r'_(?:square|custom)1200(\.\w+)$', r'_master1200\1', url)
    if '/img-master/' not in url or not re.search(r'_p\d+_master1200\.\w+$', url):
        return None
    return url


def _pick_best(*candidates: str) -> str:
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return ''


class PixivClient:
    """
    Thin client for the Pixiv ajax endpoints.

    Holds the session cookie; everything else is stateless.
    """

    def __init__(self, crawler: Optional[HttpCrawler] = None, cookie: Optional[str] = None,
                 base_url: str = PIXIV_BASE_URL, timeout: float = 15.0):
        self.crawler = crawler or HttpCrawler(timeout=timeout)
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._cookie = (cookie or '').strip() or None

    @property
    def cookie(self) -> Optional[str]:
        return self._cookie

    def set_cookie(self, cookie: Optional[str]):
        self._cookie = (cookie or '').strip() or None

    def api_headers(self) -> Dict[str, str]:
        headers = {
            'User-Agent': PIXIV_USER_AGENT,
            'Referer': f'{self.base_url}/',
            'Accept': 'application/json',
        }
        if self._cookie:
            headers['Cookie'] = self._cookie
        return headers

    def build_image_headers(self) -> Dict[str, str]:
        """Headers for loading/downloading i.pximg.net images."""
        headers = {
            'User-Agent': PIXIV_USER_AGENT,
            'Referer': f'{self.base_url}/',
        }
        if self._cookie:
            headers['Cookie'] = self._cookie
        return headers

    async def _get_body(self, path: str, params: Optional[Dict[str, Any]] = None,
                        context: Optional[FetchContext] = None) -> Any:
        data = await self.crawler.get_json(
            f'{self.base_url}{path}', params=params, headers=self.api_headers(),
            context=context, timeout=self.timeout,
        )
        if not isinstance(data, dict):
            return None
        return data.get('body')

    async def search_artworks(
        self,
        word: str,
        page: int = 1,
        order: str = 'date_d',
        mode: str = 'all',
        s_mode: str = 's_tag',
        context: Optional[FetchContext] = None,
    ) -> List[PixivIllustBrief]:
        """
        Search artworks by tag/keyword.

        Returns:
            Briefs with square thumbnails, in search order
        """
        word = word.strip()
        if not word:
            return []
        body = await self._get_body(
            f'/ajax/search/artworks/{quote(word, safe="")}',
            params={'order': order, 'mode': mode, 's_mode': s_mode, 'p': page},
            context=context,
        )
        # { error: false, body: { illustManga: { data: [...] } } }
        if not isinstance(body, dict):
            return []
        illust_manga = body.get('illustManga')
        if not isinstance(illust_manga, dict):
            return []
        return self._briefs(illust_manga.get('data'))

    async def get_illust_pages(self, illust_id: str,
                               context: Optional[FetchContext] = None) -> List[PixivPageUrls]:
        """Get every page's URLs for an artwork."""
        illust_id = illust_id.strip()
        if not illust_id:
            return []
        body = await self._get_body(f'/ajax/illust/{illust_id}/pages', context=context)
        if not isinstance(body, list):
            return []
        pages = []
        for item in body:
            urls = item.get('urls') if isinstance(item, dict) else None
            if not isinstance(urls, dict):
                continue
            pages.append(PixivPageUrls(
                original=to_meta_string(urls.get('original')),
                regular=to_meta_string(urls.get('regular')),
                small=to_meta_string(urls.get('small')),
                thumb_mini=to_meta_string(urls.get('thumb_mini')),
            ))
        return pages

    async def get_recommendations(self, illust_id: str, limit: int = 30,
                                  context: Optional[FetchContext] = None) -> List[PixivIllustBrief]:
        body = await self._get_body(
            f'/ajax/illust/{illust_id}/recommend/init', params={'limit': limit}, context=context,
        )
        if not isinstance(body, dict):
            return []
        return self._briefs(body.get('illusts'))

    async def check_login(self, context: Optional[FetchContext] = None) -> bool:
        """Ask Pixiv whether the current cookie is a logged-in session."""
        if not self._cookie:
            return False
        try:
            data = await self.crawler.get_json(
                f'{self.base_url}/ajax/user/extra', headers=self.api_headers(),
                context=context, timeout=self.timeout,
            )
        except HttpClientError as e:
            if e.status_code in (401, 403):
                return False
            raise
        return isinstance(data, dict) and data.get('error') is False and isinstance(data.get('body'), dict)

    @staticmethod
    def _briefs(items: Any) -> List[PixivIllustBrief]:
        if not isinstance(items, list):
            return []
        briefs = []
        for item in items:
            if not isinstance(item, dict):
                continue
            brief = PixivIllustBrief.from_item(item)
            if brief is not None and brief.thumb_url:
                briefs.append(brief)
        return briefs


class PixivSource(BaseImageSource):
    """
    Pixiv engine.

    Two-phase fetch: a search returns ids and thumbnails, then a worker
    pool upgrades each item via the pages endpoint. Items whose detail
    request fails keep a URL derived from the thumbnail.
    """

    def __init__(
        self,
        client: Optional[PixivClient] = None,
        login_cache: Optional[LoginStatusCache] = None,
        enrich_concurrency: int = 4,
        detail_timeout: float = 8.0,
        recommend_limit: int = 30,
        preferences: Optional[PixivPreferences] = None,
    ):
        """
        Initialize the Pixiv engine.

        Args:
            client: Pixiv ajax client
            login_cache: Login status cache (5 minute TTL by default)
            enrich_concurrency: Max parallel detail requests
            detail_timeout: Per-item timeout for detail requests
            recommend_limit: Items requested from the recommendation endpoint
            preferences: Quality/AI/muted-tag preferences
        """
        self.client = client or PixivClient()
        self.login_cache = login_cache or LoginStatusCache()
        self.enrich_concurrency = max(1, enrich_concurrency)
        self.detail_timeout = detail_timeout
        self.recommend_limit = recommend_limit
        self.preferences = preferences or PixivPreferences()
        self.builder = RequestBuilder()
        self.logger = logging.getLogger('source.pixiv')

    def supports(self, rule: SourceRule) -> bool:
        return rule.engine == EngineType.PIXIV

    def request_headers(self, rule: SourceRule) -> Dict[str, str]:
        return self.client.build_image_headers()

    # -------------------- session --------------------

    def set_cookie(self, cookie: Optional[str]):
        """Replace the session cookie; a change invalidates the login cache."""
        cookie = (cookie or '').strip() or None
        if cookie != self.client.cookie:
            self.client.set_cookie(cookie)
            self.login_cache.invalidate()
            self.logger.info('Pixiv cookie cleared' if cookie is None else 'Pixiv cookie updated')

    async def restore_session(self, prefs: PreferencesStore, rule: SourceRule) -> None:
        """
        Load cookie and preferences for a rule.

        The stored cookie wins; otherwise a `Cookie` header on the rule is
        used and backfilled into the store.
        """
        cookie = prefs.load_cookie(rule.id)
        if not cookie:
            from_headers = (rule.headers.get('Cookie') or rule.headers.get('cookie') or '').strip()
            if from_headers:
                cookie = from_headers
                prefs.save_cookie(rule.id, cookie)
                self.logger.debug(f"Backfilled Pixiv cookie from rule headers for {rule.id}")
        self.set_cookie(cookie)

        raw = prefs.load_preferences('pixiv')
        if raw:
            self.preferences = PixivPreferences.from_dict(raw)

    @property
    def login_state(self) -> LoginState:
        return self.login_cache.state(self.client.cookie)

    async def check_login_status(self, rule: SourceRule, context: Optional[FetchContext] = None) -> bool:
        """
        Whether the current cookie is logged in.

        No cookie -> False without a network call. Results are cached per
        cookie and concurrent checks share one request, which runs under its
        own context so cancelling one caller leaves the others waiting.
        """
        cookie = self.client.cookie
        if not cookie:
            return False
        return await self.login_cache.resolve(
            cookie,
            lambda: self.client.check_login(FetchContext(timeout=self.client.timeout)),
            context,
        )

    async def effective_filters(self, rule: SourceRule, filters: Optional[FilterSelection],
                                context: Optional[FetchContext] = None) -> Dict[str, Any]:
        """
        Apply defaults and downgrade privileged options without a confirmed login.

        The login check only runs when a privileged option was requested.
        """
        effective = dict(DEFAULT_FILTERS)
        for key, value in (filters or {}).items():
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            effective[key] = value

        requested = {
            key: effective[key] for key, options in PRIVILEGED_OPTIONS.items()
            if effective.get(key) in options
        }
        if not requested:
            return effective

        try:
            logged_in = await self.check_login_status(rule, context)
        except FetchCancelled:
            raise
        except SourceError as e:
            self.logger.warning(f"Login check failed, treating as logged out: {e}")
            logged_in = False

        if not logged_in:
            for key, value in requested.items():
                effective[key] = PRIVILEGED_OPTIONS[key][value]
            downgraded = {key: effective[key] for key in requested}
            self.logger.info(f"Not logged in, downgraded {requested} -> {downgraded}")
        return effective

    # -------------------- fetch --------------------

    async def fetch(
        self,
        rule: SourceRule,
        page: int = 1,
        query: Optional[str] = None,
        filters: Optional[FilterSelection] = None,
        context: Optional[FetchContext] = None,
    ) -> List[CanonicalImage]:
        context = context or FetchContext()
        keyword = self.builder.resolve_keyword(rule, query)
        if not keyword:
            return []

        effective = await self.effective_filters(rule, filters, context)
        self.logger.info(
            f"{Colors.cyan('❯')} Pixiv search '{keyword}' page {page} "
            f"(order={effective['order']}, mode={effective['mode']})"
        )
        briefs = await self.client.search_artworks(
            keyword, page=page,
            order=str(effective['order']), mode=str(effective['mode']), s_mode=str(effective['s_mode']),
            context=context,
        )
        images = await self._finish(rule, briefs, context)
        self.logger.info(f"   {Colors.green('✓')} {len(images)} image(s)")
        return images

    async def similar(
        self,
        rule: SourceRule,
        seed: CanonicalImage,
        page: int = 1,
        context: Optional[FetchContext] = None,
    ) -> List[CanonicalImage]:
        """
        Images similar to `seed`.

        Page 1 tries the recommendation endpoint first; any failure or an
        empty answer falls back to a search built from the seed's tags or
        uploader.
        """
        context = context or FetchContext()
        if page <= 1 and seed.id.isdigit():
            try:
                briefs = await self.client.get_recommendations(
                    seed.id, limit=self.recommend_limit, context=context,
                )
            except FetchCancelled:
                raise
            except SourceError as e:
                self.logger.warning(f"Recommendations for {seed.id} failed: {e}")
                briefs = []
            if briefs:
                return await self._finish(rule, briefs, context)

        query = build_similar_query(seed, rule.similar_id_pattern)
        if not query:
            return []
        return await self.fetch(rule, page=page, query=query, context=context)

    async def _finish(self, rule: SourceRule, briefs: List[PixivIllustBrief],
                      context: FetchContext) -> List[CanonicalImage]:
        images = [self._to_image(rule, brief) for brief in briefs]
        images = [image for image in images if self._allowed(image)]
        images = await self.enrich(dedupe_by_id(images), context)
        return images

    def _to_image(self, rule: SourceRule, brief: PixivIllustBrief) -> CanonicalImage:
        return CanonicalImage(
            id=brief.id,
            source_id=rule.id,
            thumb_url=brief.thumb_url,
            full_url=brief.thumb_url,
            width=brief.width,
            height=brief.height,
            grade=grade_from_restriction(brief.x_restrict),
            tags=brief.tags,
            uploader=brief.user_name,
            favorites=brief.bookmark_count,
            created_at=brief.create_date,
            is_ugoira=brief.illust_type == ILLUST_TYPE_UGOIRA,
            is_ai=brief.ai_type == AI_TYPE_GENERATED,
        )

    def _allowed(self, image: CanonicalImage) -> bool:
        if image.is_ai and not self.preferences.show_ai:
            return False
        muted = {t.lower() for t in self.preferences.muted_tags}
        return not any(tag.lower() in muted for tag in image.tags)

    # -------------------- enrichment --------------------

    async def enrich(self, images: List[CanonicalImage], context: FetchContext) -> List[CanonicalImage]:
        """
        Upgrade thumbnails to full URLs with at most `enrich_concurrency`
        detail requests in flight.
        """
        if not images:
            return []
        semaphore = asyncio.Semaphore(self.enrich_concurrency)

        async def worker(image: CanonicalImage) -> CanonicalImage:
            async with semaphore:
                return await self._enrich_one(image, context)

        return list(await asyncio.gather(*(worker(image) for image in images)))

    async def _enrich_one(self, image: CanonicalImage, context: FetchContext) -> CanonicalImage:
        item_context = context.with_timeout(self.detail_timeout)
        try:
            pages = await self.client.get_illust_pages(image.id, context=item_context)
        except SourceError as e:
            if context.cancelled:
                raise FetchCancelled("Fetch cancelled") from e
            self.logger.debug(f"Detail for {image.id} failed ({e}), deriving from thumbnail")
            pages = []

        if pages:
            first = pages[0]
            if self.preferences.image_quality == 'regular':
                full = _pick_best(first.regular, first.original, first.small, image.full_url)
            else:
                full = _pick_best(first.original, first.regular, first.small, image.full_url)
            thumb = _pick_best(first.regular, first.small, first.thumb_mini, image.thumb_url)
            upgraded = replace(image, thumb_url=thumb, full_url=full)
            extension = full.rsplit('.', 1)[-1].lower() if '.' in full.rsplit('/', 1)[-1] else ''
            return upgraded.merge_metadata(replace(upgraded, mime_type=extension))

        derived = derive_regular_url(image.thumb_url)
        if derived:
            return replace(image, full_url=derived)
        return image
