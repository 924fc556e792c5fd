"""Shared utilities for source engines."""

from .paths import (
    resolve,
    resolve_all,
    resolve_list,
    resolve_first,
)
from .normalizers import (
    normalize_tags,
    normalize_grade,
    grade_from_restriction,
    to_int,
    to_meta_string,
    apply_prefix,
    strip_cache_busters,
    mask_headers,
    mask_params,
    build_similar_query,
)

__all__ = [
    'resolve',
    'resolve_all',
    'resolve_list',
    'resolve_first',
    'normalize_tags',
    'normalize_grade',
    'grade_from_restriction',
    'to_int',
    'to_meta_string',
    'apply_prefix',
    'strip_cache_busters',
    'mask_headers',
    'mask_params',
    'build_similar_query',
]
