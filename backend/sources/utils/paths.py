"""
Path expressions over decoded JSON documents.

Two syntaxes are supported:
    "."                 -> the whole document
    "data.0.url"        -> dot segments (dict keys / list indexes)
    "$.data[*].url"     -> JSONPath (via jsonpath-ng)

A path that does not match is not an error: every function here returns
None (or an empty list) instead of raising.
"""

import logging
from functools import lru_cache
from typing import Any, Iterable, List, Optional

from jsonpath_ng.ext import parse as jsonpath_parse

logger = logging.getLogger(__name__)

QUERY_SIGIL = '$'


@lru_cache(maxsize=512)
def _compile(expression: str):
    try:
        return jsonpath_parse(expression)
    except Exception as e:
        # jsonpath-ng raises lexer/parser errors of several types
        logger.debug(f"Invalid JSONPath '{expression}': {e}")
        return None


def _walk(path: str, value: Any) -> Any:
    current = value
    for segment in path.split('.'):
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list):
            if not segment.isdigit():
                return None
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def resolve_all(path: Optional[str], value: Any) -> List[Any]:
    """
    Return every value matched by `path`.

    Dot paths match at most one value; JSONPath expressions may match many.
    """
    if not path:
        return []
    if path == '.':
        return [value]
    if path.startswith(QUERY_SIGIL):
        expr = _compile(path)
        if expr is None:
            return []
        try:
            return [match.value for match in expr.find(value)]
        except Exception as e:
            logger.debug(f"JSONPath '{path}' failed: {e}")
            return []
    found = _walk(path, value)
    return [] if found is None else [found]


def resolve(path: Optional[str], value: Any) -> Any:
    """
    Evaluate `path` against a JSON value.

    Returns:
        The (first) matched value, or None on any miss/type mismatch
    """
    if not path:
        return None
    if path == '.':
        return value
    if path.startswith(QUERY_SIGIL):
        matches = resolve_all(path, value)
        return matches[0] if matches else None
    return _walk(path, value)


def resolve_list(path: Optional[str], value: Any) -> List[Any]:
    """
    Resolve a list-valued path.

    A single match that is itself a list is returned as the list
    (`data`, `$.data`); several matches are returned as-is
    (`$.data[*]`). Anything else yields [].
    """
    matches = resolve_all(path, value)
    if len(matches) == 1:
        only = matches[0]
        if isinstance(only, list):
            return only
        # `$.data[*]` over a one-element array
        if path and path.startswith(QUERY_SIGIL) and ('*' in path or '..' in path):
            return [only]
        return []
    return matches


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


def resolve_first(paths: Iterable[str], value: Any) -> Any:
    """Try candidate paths in order; the first non-empty value wins."""
    for path in paths:
        found = resolve(path, value)
        if not is_empty(found):
            return found
    return None
