"""
Pagination parameter computation.

Modes:
    page   -> param = page number
    offset -> param = (page - 1) * page_size
    cursor -> param = token cached from the previous page's response

Cursor tokens live in a CursorCache owned by the strategy. Requesting
page <= 1 always starts over and drops the cached token.
"""

import logging
from typing import Any, Dict, Optional

from .base import FilterSelection, PaginationMode, ResponseMode, SourceRule
from .cache import CursorCache, CursorKey
from .utils.normalizers import to_int
from .utils.paths import resolve, is_empty

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
PAGE_SIZE_PARAMS = ('per_page', 'limit', 'rows', 'count', 'page_size')


class PaginationStrategy:
    """Adds the page token to a parameter set and tracks cursor tokens."""

    def __init__(self, cursor_cache: Optional[CursorCache] = None):
        self.cursor_cache = cursor_cache if cursor_cache is not None else CursorCache()

    def cursor_key(self, rule: SourceRule, query: Optional[str],
                   filters: Optional[FilterSelection]) -> CursorKey:
        return CursorCache.make_key(rule.id, query, filters)

    def guess_page_size(self, rule: SourceRule, params: Dict[str, Any]) -> int:
        if rule.pagination.page_size:
            return rule.pagination.page_size
        for name in PAGE_SIZE_PARAMS:
            if name in params:
                size = to_int(params[name])
                if size > 0:
                    return size
        return DEFAULT_PAGE_SIZE

    def apply(
        self,
        rule: SourceRule,
        params: Dict[str, Any],
        page: int,
        query: Optional[str] = None,
        filters: Optional[FilterSelection] = None,
    ) -> Dict[str, Any]:
        """
        Return a copy of `params` with the pagination param set.

        In cursor mode a missing token for page > 1 leaves the param out
        (best-effort mode) instead of failing.
        """
        result = dict(params)
        if rule.response_mode == ResponseMode.RANDOM:
            return result

        config = rule.pagination
        page = max(1, int(page or 1))

        if config.mode == PaginationMode.PAGE:
            result[config.param] = page
        elif config.mode == PaginationMode.OFFSET:
            result[config.param] = (page - 1) * self.guess_page_size(rule, result)
        else:
            key = self.cursor_key(rule, query, filters)
            if page <= 1:
                self.cursor_cache.invalidate(key)
                result.pop(config.param, None)
            else:
                token = self.cursor_cache.get(key)
                if token is None:
                    logger.warning(
                        f"No cursor cached for '{rule.id}' page {page}, requesting without cursor"
                    )
                    result.pop(config.param, None)
                else:
                    result[config.param] = token
        return result

    def record(
        self,
        rule: SourceRule,
        body: Any,
        query: Optional[str] = None,
        filters: Optional[FilterSelection] = None,
    ) -> Optional[Any]:
        """
        Store the next-page cursor found in a successful response.

        Returns:
            The stored token, or None if the response had none
        """
        config = rule.pagination
        if config.mode != PaginationMode.CURSOR or not config.cursor_path:
            return None
        token = resolve(config.cursor_path, body)
        if is_empty(token) or isinstance(token, (dict, list)):
            return None
        self.cursor_cache.set(self.cursor_key(rule, query, filters), token)
        return token
