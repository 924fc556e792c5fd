"""
Base classes for the rule-driven image source system.

This module defines the data structures shared by every engine
(source rules, filters, canonical images) and the abstract interface
that each engine implementation provides.
"""

from abc import ABC, abstractmethod
from typing import List, Dict, Optional, Any, Union, TYPE_CHECKING
from dataclasses import dataclass, field, replace
from enum import Enum
import logging
import re

if TYPE_CHECKING:
    from .context import FetchContext
    from .store import PreferencesStore

logger = logging.getLogger(__name__)

# Decoded JSON document: dict / list / str / int / float / bool / None
JsonValue = Union[Dict[str, Any], List[Any], str, int, float, bool, None]

# Filter selection passed by callers: key -> scalar or list of scalars
FilterSelection = Dict[str, Any]


# ANSI color codes for terminal output
class Colors:
    """ANSI color codes for colorized logging."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'

    @staticmethod
    def green(text):
        return f"{Colors.GREEN}{text}{Colors.RESET}"

    @staticmethod
    def yellow(text):
        return f"{Colors.YELLOW}{text}{Colors.RESET}"

    @staticmethod
    def red(text):
        return f"{Colors.RED}{text}{Colors.RESET}"

    @staticmethod
    def blue(text):
        return f"{Colors.BLUE}{text}{Colors.RESET}"

    @staticmethod
    def cyan(text):
        return f"{Colors.CYAN}{text}{Colors.RESET}"

    @staticmethod
    def gray(text):
        return f"{Colors.GRAY}{text}{Colors.RESET}"

    @staticmethod
    def bold(text):
        return f"{Colors.BOLD}{text}{Colors.RESET}"


class EngineType(Enum):
    """Which engine implementation handles a rule."""
    RULE = "rule"       # Generic declarative JSON engine
    PIXIV = "pixiv"     # Specialized Pixiv ajax client


class ResponseMode(Enum):
    """How the upstream delivers images."""
    JSON = "json"       # Structured JSON list
    RANDOM = "random"   # Endpoint redirects to a random image


class PaginationMode(Enum):
    PAGE = "page"
    OFFSET = "offset"
    CURSOR = "cursor"


class EncodeStrategy(Enum):
    """How a multi-value filter selection becomes request parameters."""
    JOIN = "join"       # a,b,c in a single param
    MERGE = "merge"     # one request per value (cartesian fan-out)
    REPEAT = "repeat"   # ?k=a&k=b


class ApiKeyPlacement(Enum):
    HEADER = "header"
    QUERY = "query"


class Grade(Enum):
    """Coarse content-sensitivity classification."""
    SAFE = "safe"
    SKETCHY = "sketchy"
    NSFW = "nsfw"


@dataclass(frozen=True)
class FilterOption:
    """A selectable value of a filter."""
    name: str           # Display name (e.g., "Popular")
    value: str          # Parameter value (e.g., "toplist")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FilterOption':
        value = data.get('value', '')
        return cls(name=str(data.get('name', value)), value=str(value))

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'value': self.value}


@dataclass(frozen=True)
class SourceFilter:
    """A user-facing filter and how its selection is encoded."""
    key: str                                    # Request parameter name
    name: str = ''                              # Display name
    type: str = 'radio'                         # radio | checkbox (display only)
    encode: EncodeStrategy = EncodeStrategy.JOIN
    separator: str = ','
    options: tuple = ()                         # Tuple[FilterOption, ...]
    default: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceFilter':
        options = tuple(FilterOption.from_dict(o) for o in data.get('options') or [])
        return cls(
            key=str(data['key']),
            name=str(data.get('name', data['key'])),
            type=data.get('type') or 'radio',
            encode=EncodeStrategy(data.get('encode') or 'join'),
            separator=data.get('separator') or ',',
            options=options,
            default=data.get('default'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'name': self.name,
            'type': self.type,
            'encode': self.encode.value,
            'separator': self.separator,
            'options': [o.to_dict() for o in self.options],
            'default': self.default,
        }


@dataclass(frozen=True)
class ApiKeyConfig:
    """API key injection settings."""
    value: str
    name: Optional[str] = None                  # Header or query param name
    placement: ApiKeyPlacement = ApiKeyPlacement.QUERY
    prefix: str = ''                            # e.g. "Bearer "

    @classmethod
    def from_dict(cls, data: Union[str, Dict[str, Any], None]) -> Optional['ApiKeyConfig']:
        if not data:
            return None
        # Shorthand: "api_key": "abc123"
        if isinstance(data, str):
            return cls(value=data)
        value = str(data.get('value') or '').strip()
        if not value:
            return None
        return cls(
            value=value,
            name=data.get('name'),
            placement=ApiKeyPlacement(data.get('in') or 'query'),
            prefix=data.get('prefix') or '',
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'value': self.value,
            'name': self.name,
            'in': self.placement.value,
            'prefix': self.prefix,
        }


@dataclass(frozen=True)
class PaginationConfig:
    """Pagination settings for JSON mode."""
    mode: PaginationMode = PaginationMode.PAGE
    param: str = 'page'
    page_size: Optional[int] = None
    cursor_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], default_param: str = 'page') -> 'PaginationConfig':
        data = data or {}
        page_size = data.get('page_size')
        return cls(
            mode=PaginationMode(data.get('mode') or 'page'),
            param=data.get('param') or default_param,
            page_size=int(page_size) if page_size else None,
            cursor_path=data.get('cursor_path'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'mode': self.mode.value,
            'param': self.param,
            'page_size': self.page_size,
            'cursor_path': self.cursor_path,
        }


# Ordered candidate paths for best-effort metadata; first non-empty wins
DEFAULT_META_PATHS: Dict[str, tuple] = {
    'uploader': ('uploader.username', 'uploader.name', 'user.name', 'user.username',
                 'userName', 'author', 'artist', 'owner', 'uploader'),
    'views': ('views', 'view_count', 'viewCount', 'stats.views'),
    'favorites': ('favorites', 'favourites', 'fav_count', 'bookmarkCount', 'likes',
                  'stats.favorites'),
    'file_size': ('file_size', 'filesize', 'size', 'file.size'),
    'created_at': ('created_at', 'createdAt', 'createDate', 'created', 'upload_date', 'date'),
    'mime_type': ('file_type', 'mime_type', 'mimeType', 'mime', 'file.ext', 'ext'),
    'tags': ('tags', 'tag_string', 'tag_list', 'keywords'),
}


@dataclass(frozen=True)
class ParserRules:
    """Paths used to pull fields out of each list item."""
    list_path: str = '$'
    id_path: Optional[str] = 'id'
    thumb_path: str = 'url'
    full_path: str = 'url'
    width_path: Optional[str] = None
    height_path: Optional[str] = None
    grade_path: Optional[str] = None
    detail_paths: tuple = ()                    # Fallback candidates for the full URL
    image_prefix: Optional[str] = None
    meta_paths: Dict[str, tuple] = field(default_factory=dict)

    def candidates(self, field_name: str) -> tuple:
        """Candidate paths for a metadata field (rule overrides, then defaults)."""
        return self.meta_paths.get(field_name) or DEFAULT_META_PATHS.get(field_name, ())

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ParserRules':
        data = data or {}
        meta = {
            k: tuple([v] if isinstance(v, str) else v)
            for k, v in (data.get('meta') or {}).items()
        }
        return cls(
            list_path=data.get('list') or '$',
            id_path=data.get('id', 'id'),
            thumb_path=data.get('thumb') or 'url',
            full_path=data.get('full') or 'url',
            width_path=data.get('width'),
            height_path=data.get('height'),
            grade_path=data.get('grade'),
            detail_paths=tuple(data.get('detail') or ()),
            image_prefix=data.get('image_prefix'),
            meta_paths=meta,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'list': self.list_path,
            'id': self.id_path,
            'thumb': self.thumb_path,
            'full': self.full_path,
            'width': self.width_path,
            'height': self.height_path,
            'grade': self.grade_path,
            'detail': list(self.detail_paths),
            'image_prefix': self.image_prefix,
            'meta': {k: list(v) for k, v in self.meta_paths.items()},
        }


@dataclass(frozen=True)
class SourceRule:
    """
    Declarative description of a third-party image API.

    Rules are loaded from JSON (see `from_dict`) and never mutated;
    use `dataclasses.replace` to derive a modified copy.
    """
    id: str
    name: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    fixed_params: Dict[str, Any] = field(default_factory=dict)
    keyword_param: str = 'q'
    default_keyword: Optional[str] = None
    keyword_required: bool = False
    api_key: Optional[ApiKeyConfig] = None
    filters: tuple = ()                         # Tuple[SourceFilter, ...]
    pagination: PaginationConfig = field(default_factory=PaginationConfig)
    parser: ParserRules = field(default_factory=ParserRules)
    response_mode: ResponseMode = ResponseMode.JSON
    engine: EngineType = EngineType.RULE
    similar_id_pattern: Optional[str] = None    # e.g. wallhaven ids for "like:<id>"

    def get_filter(self, key: str) -> Optional[SourceFilter]:
        for f in self.filters:
            if f.key == key:
                return f
        return None

    @property
    def image_prefix(self) -> Optional[str]:
        return self.parser.image_prefix

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceRule':
        """
        Build a rule from its JSON form.

        Args:
            data: Decoded rule document

        Returns:
            SourceRule

        Raises:
            KeyError/ValueError: If required fields are missing or enums are invalid
        """
        params = data.get('params') or {}
        keyword = data.get('keyword') or {}
        similar_id_pattern = data.get('similar_id_pattern')
        if similar_id_pattern:
            try:
                re.compile(similar_id_pattern)
            except re.error as e:
                raise ValueError(f"Invalid similar_id_pattern {similar_id_pattern!r}: {e}") from e
        return cls(
            id=str(data['id']),
            name=data.get('name') or str(data['id']),
            url=data.get('url') or '',
            headers={str(k): str(v) for k, v in (data.get('headers') or {}).items() if v is not None},
            fixed_params=dict(data.get('fixed_params') or {}),
            keyword_param=params.get('keyword') or 'q',
            default_keyword=keyword.get('default'),
            keyword_required=bool(keyword.get('required', False)),
            api_key=ApiKeyConfig.from_dict(data.get('api_key')),
            filters=tuple(SourceFilter.from_dict(f) for f in data.get('filters') or []),
            pagination=PaginationConfig.from_dict(
                data.get('pagination'), default_param=params.get('page') or 'page'
            ),
            parser=ParserRules.from_dict(data.get('parser')),
            response_mode=ResponseMode(data.get('response_type') or 'json'),
            engine=EngineType(data.get('engine') or 'rule'),
            similar_id_pattern=similar_id_pattern,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'url': self.url,
            'headers': dict(self.headers),
            'fixed_params': dict(self.fixed_params),
            'params': {'page': self.pagination.param, 'keyword': self.keyword_param},
            'keyword': {'default': self.default_keyword, 'required': self.keyword_required},
            'api_key': self.api_key.to_dict() if self.api_key else None,
            'filters': [f.to_dict() for f in self.filters],
            'pagination': self.pagination.to_dict(),
            'parser': self.parser.to_dict(),
            'response_type': self.response_mode.value,
            'engine': self.engine.value,
            'similar_id_pattern': self.similar_id_pattern,
        }


# Values treated as "not set" when merging metadata
UNSET_SENTINELS = {'', 'unknown', '0', 'null', 'none', '-', 'n/a'}

METADATA_FIELDS = ('uploader', 'views', 'favorites', 'file_size', 'created_at', 'mime_type')


def _is_unset(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value <= 0
    if isinstance(value, (tuple, list)):
        return len(value) == 0
    return str(value).strip().lower() in UNSET_SENTINELS


@dataclass(frozen=True)
class CanonicalImage:
    """Normalized image record every upstream schema is mapped into."""
    id: str
    source_id: str
    thumb_url: str
    full_url: str
    width: int = 0                  # 0 = unknown
    height: int = 0
    grade: Optional[Grade] = None
    tags: tuple = ()

    # Best-effort metadata, empty string = unknown
    uploader: str = ''
    views: str = ''
    favorites: str = ''
    file_size: str = ''
    created_at: str = ''
    mime_type: str = ''

    is_ugoira: bool = False
    is_ai: bool = False

    @property
    def aspect_ratio(self) -> float:
        if self.width <= 0 or self.height <= 0:
            return 0.0
        return self.width / self.height

    def merge_metadata(self, other: 'CanonicalImage') -> 'CanonicalImage':
        """
        Combine with metadata from another pass over the same item.

        Populated values on `self` are never overwritten; only empty or
        sentinel values take the value from `other`. Tags are unioned.
        """
        updates: Dict[str, Any] = {}
        for name in METADATA_FIELDS + ('thumb_url', 'full_url', 'width', 'height', 'grade'):
            mine = getattr(self, name)
            theirs = getattr(other, name)
            if _is_unset(mine) and not _is_unset(theirs):
                updates[name] = theirs
        if other.tags:
            merged = list(self.tags)
            seen = set(merged)
            for tag in other.tags:
                if tag not in seen:
                    seen.add(tag)
                    merged.append(tag)
            if len(merged) != len(self.tags):
                updates['tags'] = tuple(merged)
        if other.is_ugoira and not self.is_ugoira:
            updates['is_ugoira'] = True
        if other.is_ai and not self.is_ai:
            updates['is_ai'] = True
        return replace(self, **updates) if updates else self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'source_id': self.source_id,
            'thumb_url': self.thumb_url,
            'full_url': self.full_url,
            'width': self.width,
            'height': self.height,
            'aspect_ratio': self.aspect_ratio,
            'grade': self.grade.value if self.grade else None,
            'tags': list(self.tags),
            'uploader': self.uploader,
            'views': self.views,
            'favorites': self.favorites,
            'file_size': self.file_size,
            'created_at': self.created_at,
            'mime_type': self.mime_type,
            'is_ugoira': self.is_ugoira,
            'is_ai': self.is_ai,
        }


def dedupe_by_id(images: List[CanonicalImage]) -> List[CanonicalImage]:
    """Drop later entries whose id was already seen (first occurrence wins)."""
    seen = set()
    out = []
    for image in images:
        if image.id in seen:
            continue
        seen.add(image.id)
        out.append(image)
    return out


class BaseImageSource(ABC):
    """
    Abstract base class for all image source engines.

    Subclasses must implement:
    - supports(): Whether this engine handles a rule
    - fetch(): Fetch one page of canonical images
    - similar(): Fetch items similar to a seed image

    Optional overrides:
    - restore_session(): Hydrate cookies/state from the preferences store
    - check_login_status(): Engines that need auth report login state
    - request_headers(): Headers reused for image downloads
    """

    @abstractmethod
    def supports(self, rule: SourceRule) -> bool:
        pass

    async def restore_session(self, prefs: 'PreferencesStore', rule: SourceRule) -> None:
        """Restore cookies/context for a rule. No-op by default."""
        return None

    @abstractmethod
    async def fetch(
        self,
        rule: SourceRule,
        page: int = 1,
        query: Optional[str] = None,
        filters: Optional[FilterSelection] = None,
        context: Optional['FetchContext'] = None,
    ) -> List[CanonicalImage]:
        """
        Fetch a page of images.

        Returns:
            Ordered list of CanonicalImage. An empty list means no more results.

        Raises:
            SourceError: On configuration, network or HTTP failures
        """
        pass

    @abstractmethod
    async def similar(
        self,
        rule: SourceRule,
        seed: CanonicalImage,
        page: int = 1,
        context: Optional['FetchContext'] = None,
    ) -> List[CanonicalImage]:
        pass

    async def check_login_status(self, rule: SourceRule, context: Optional['FetchContext'] = None) -> bool:
        """Engines without authentication are always usable."""
        return True

    def request_headers(self, rule: SourceRule) -> Dict[str, str]:
        return dict(rule.headers)
