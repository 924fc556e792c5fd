"""
Data normalization utilities for source engines.

These functions standardize values pulled out of third-party payloads
into consistent formats. None of them raise on bad input.
"""

import re
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import unquote_plus, urlsplit, urlunsplit

from ..base import Grade

TAG_SPLIT_RE = re.compile(r'[,;|\s]+')
CACHE_BUSTER_PARAMS = ('_t', '_r')

SECRET_HEADERS = {'cookie', 'authorization', 'x-api-key', 'api-key', 'apikey', 'x-csrf-token'}
SECRET_PARAMS = {'apikey', 'api_key', 'access_token', 'token', 'key'}


def normalize_tags(value: Any) -> Tuple[str, ...]:
    """
    Normalize tags to a deduplicated tuple, order preserved.

    Examples:
        "a, b;c|d e"                  -> ('a', 'b', 'c', 'd', 'e')
        ["x", " x ", ""]              -> ('x',)
        [{"name": "cat"}, {"tag": 1}] -> ('cat', '1')
    """
    if value is None:
        return ()
    if isinstance(value, str):
        raw = TAG_SPLIT_RE.split(value)
    elif isinstance(value, (list, tuple)):
        raw = []
        for item in value:
            if isinstance(item, dict):
                item = item.get('name') or item.get('tag') or item.get('value')
            if item is None:
                continue
            raw.append(str(item))
    else:
        raw = [str(value)]

    seen = set()
    out = []
    for tag in raw:
        tag = tag.strip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        out.append(tag)
    return tuple(out)


def to_int(value: Any) -> int:
    """
    Best-effort integer coercion, 0 when unknown.

    Examples:
        1920     -> 1920
        "1080"   -> 1080
        "1080.0" -> 1080
        "abc"    -> 0
        -5       -> 0
        NaN      -> 0
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        try:
            number = int(value)
        except (ValueError, OverflowError):
            return 0
    else:
        text = str(value).strip()
        try:
            number = int(text)
        except ValueError:
            try:
                number = int(float(text))
            except (ValueError, OverflowError):
                return 0
    return number if number > 0 else 0


def to_meta_string(value: Any) -> str:
    """Render a metadata value as a string; '' for missing/containers."""
    if value is None or isinstance(value, (dict, list)):
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def is_absolute_url(url: str) -> bool:
    return bool(re.match(r'^[a-zA-Z][a-zA-Z0-9+.-]*://', url)) or url.startswith('//')


def apply_prefix(url: str, prefix: Optional[str]) -> str:
    """
    Prefix a relative URL with the rule's image prefix.

    Examples:
        ("a/b.jpg", "https://cdn.x/") -> "https://cdn.x/a/b.jpg"
        ("https://y/b.jpg", "https://cdn.x/") -> "https://y/b.jpg"
        ("a/b.jpg", None) -> "a/b.jpg"
    """
    url = (url or '').strip()
    if not url or is_absolute_url(url) or not prefix:
        return url
    return prefix + url


GRADE_ALIASES = {
    'safe': Grade.SAFE, 'sfw': Grade.SAFE, 'general': Grade.SAFE, 'g': Grade.SAFE, 's': Grade.SAFE,
    'sketchy': Grade.SKETCHY, 'questionable': Grade.SKETCHY, 'q': Grade.SKETCHY,
    'nsfw': Grade.NSFW, 'explicit': Grade.NSFW, 'e': Grade.NSFW, 'r18': Grade.NSFW, 'r-18': Grade.NSFW,
}


def grade_from_restriction(flag: Any) -> Optional[Grade]:
    """
    Map a numeric restriction flag to a grade.

    Examples:
        0 -> None
        1 -> Grade.SKETCHY
        2 -> Grade.NSFW
    """
    level = to_int(flag)
    if level <= 0:
        return None
    if level == 1:
        return Grade.SKETCHY
    return Grade.NSFW


def normalize_grade(value: Any) -> Optional[Grade]:
    """Normalize textual or numeric grade values."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return grade_from_restriction(value)
    text = str(value).strip().lower()
    if text.isdigit():
        return grade_from_restriction(text)
    return GRADE_ALIASES.get(text)


def strip_cache_busters(url: str, names: Iterable[str] = CACHE_BUSTER_PARAMS) -> str:
    """
    Remove cache-busting query params from a URL.

    Examples:
        "https://x/a.jpg?_t=1&_r=2"    -> "https://x/a.jpg"
        "https://x/a.jpg?w=1&_t=1"     -> "https://x/a.jpg?w=1"
        "https://x/a.jpg?x&s=%2F&_r=3" -> "https://x/a.jpg?x&s=%2F"

    Kept pieces are copied byte for byte.
    """
    parts = urlsplit(url)
    if not parts.query:
        return url
    names = set(names)
    pieces = parts.query.split('&')
    kept = [p for p in pieces if unquote_plus(p.split('=', 1)[0]) not in names]
    if len(kept) == len(pieces):
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, '&'.join(kept), parts.fragment))


def _mask(value: Any) -> str:
    text = str(value)
    if len(text) <= 8:
        return '***'
    return f"{text[:4]}***{text[-2:]}"


def mask_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Copy of headers safe for logging (credentials masked)."""
    return {
        k: _mask(v) if k.lower() in SECRET_HEADERS else str(v)
        for k, v in (headers or {}).items()
    }


def mask_params(params: Optional[Mapping[str, Any]], extra: Iterable[str] = ()) -> Dict[str, Any]:
    """Copy of query params safe for logging."""
    secret = SECRET_PARAMS | {e.lower() for e in extra}
    return {
        k: _mask(v) if k.lower() in secret else v
        for k, v in (params or {}).items()
    }


# Tags that say nothing about the picture itself
AI_TAGS = {'ai', 'ai生成', 'aiイラスト', 'ai-generated', 'ai_generated', 'aiart', 'ai art', 'novelai',
           'stable diffusion', 'stablediffusion'}
RATING_PREFIXES = ('r-18', 'r18', 'rating:', 'r-15', 'r15')


def clean_similar_tags(tags: Iterable[str], limit: int = 4) -> Tuple[str, ...]:
    """Pick up to `limit` tags usable as a similarity query."""
    out = []
    for tag in tags:
        tag = (tag or '').strip()
        lower = tag.lower()
        if len(tag) < 2 or lower in AI_TAGS or lower.startswith(RATING_PREFIXES):
            continue
        if tag in out:
            continue
        out.append(tag)
        if len(out) >= limit:
            break
    return tuple(out)


def build_similar_query(image, id_pattern: Optional[str] = None) -> str:
    """
    Build a search query for items similar to `image`.

    Priority:
        1. "like:<id>" when the id matches the platform id shape
        2. up to 4 cleaned tags joined by spaces
        3. "@<uploader>"
        4. "" (nothing to search for)
    """
    if id_pattern and re.fullmatch(id_pattern, image.id or ''):
        return f"like:{image.id}"
    tags = clean_similar_tags(image.tags)
    if tags:
        return ' '.join(tags)
    uploader = (image.uploader or '').strip()
    if uploader:
        return f"@{uploader}"
    return ''
