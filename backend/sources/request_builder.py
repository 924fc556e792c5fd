"""
Turns a rule plus the caller's query and filter selection into request
parameters.

The output is one base parameter set. Filters encoded with `merge` are
returned separately so the engine can fan them out into one request per
value combination.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .base import ApiKeyPlacement, EncodeStrategy, FilterSelection, SourceRule
from .errors import InvalidConfiguration

logger = logging.getLogger(__name__)

TEMPLATE_TOKEN_RE = re.compile(r'\{(keyword|word|q)\}')


@dataclass
class BuiltRequest:
    """Concrete request parts for one fetch call (before pagination)."""
    url: str
    params: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    merge_values: Dict[str, List[Any]] = field(default_factory=dict)
    keyword: Optional[str] = None

    @property
    def fan_out(self) -> int:
        """Number of sub-requests the merge filters expand to."""
        count = 1
        for values in self.merge_values.values():
            count *= len(values)
        return count


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class RequestBuilder:
    """Builds parameter sets from a SourceRule."""

    def resolve_keyword(self, rule: SourceRule, query: Optional[str]) -> Optional[str]:
        """
        Pick the keyword: explicit query, then the rule default.

        Raises:
            InvalidConfiguration: If the rule requires a keyword and none resolved
        """
        keyword = (query or '').strip() or (rule.default_keyword or '').strip()
        if not keyword and rule.keyword_required:
            raise InvalidConfiguration(f"Source '{rule.id}' requires a search keyword")
        return keyword or None

    def request_headers(self, rule: SourceRule) -> Dict[str, str]:
        """Headers sent with every request of this rule (API key included)."""
        headers = {k: v for k, v in rule.headers.items() if not _is_blank(v)}
        api_key = rule.api_key
        if api_key and api_key.placement == ApiKeyPlacement.HEADER:
            headers[api_key.name or 'Authorization'] = f"{api_key.prefix}{api_key.value}"
        return headers

    def build(
        self,
        rule: SourceRule,
        query: Optional[str] = None,
        filters: Optional[FilterSelection] = None,
    ) -> BuiltRequest:
        """
        Build the base request for a rule.

        Args:
            rule: Source rule
            query: Caller's search text (may be None)
            filters: Filter selection, key -> scalar or list

        Returns:
            BuiltRequest with URL, params, headers and merge values

        Raises:
            InvalidConfiguration: Missing required keyword or unfillable URL template
        """
        keyword = self.resolve_keyword(rule, query)

        params: Dict[str, Any] = {
            k: v for k, v in rule.fixed_params.items() if not _is_blank(v)
        }
        headers = self.request_headers(rule)

        api_key = rule.api_key
        if api_key and api_key.placement == ApiKeyPlacement.QUERY:
            params[api_key.name or 'apikey'] = f"{api_key.prefix}{api_key.value}"

        merge_values: Dict[str, List[Any]] = {}
        for key, value in (filters or {}).items():
            encoded = self._encode_filter(rule, key, value)
            if encoded is None:
                continue
            strategy, encoded_value = encoded
            if strategy == EncodeStrategy.MERGE:
                merge_values[key] = encoded_value
                params.pop(key, None)
            else:
                params[key] = encoded_value

        url = rule.url
        if TEMPLATE_TOKEN_RE.search(url):
            if not keyword:
                raise InvalidConfiguration(
                    f"Source '{rule.id}' URL has a keyword placeholder but no keyword was given"
                )
            url = TEMPLATE_TOKEN_RE.sub(lambda _: quote(keyword, safe=''), url)
        elif keyword:
            params[rule.keyword_param] = keyword

        return BuiltRequest(
            url=url,
            params=params,
            headers=headers,
            merge_values=merge_values,
            keyword=keyword,
        )

    def _encode_filter(self, rule: SourceRule, key: str, value: Any):
        """
        Encode one filter selection.

        Returns:
            (strategy, value) or None when the selection is empty
        """
        definition = rule.get_filter(key)
        strategy = definition.encode if definition else EncodeStrategy.JOIN
        separator = definition.separator if definition else ','

        if isinstance(value, (list, tuple, set)):
            items = [v.strip() if isinstance(v, str) else v for v in value]
            items = [v for v in items if not _is_blank(v)]
            if not items:
                return None
            if strategy == EncodeStrategy.MERGE:
                # Keep first occurrence order, drop duplicate values
                unique = list(dict.fromkeys(items))
                return strategy, unique
            if strategy == EncodeStrategy.REPEAT:
                return strategy, items
            return EncodeStrategy.JOIN, separator.join(str(v) for v in items)

        if _is_blank(value):
            return None
        if isinstance(value, str):
            value = value.strip()
        # Scalars pass through unchanged, even for merge filters
        return EncodeStrategy.JOIN, value
