"""
Maps JSON response bodies to CanonicalImage records.

Third-party schemas are not trusted to be stable, so nothing in here
raises on a missing or oddly-typed field: the item is mapped with
whatever could be found, and items without any usable URL are skipped.
"""

import logging
from typing import Any, List, Optional

from .base import CanonicalImage, SourceRule
from .utils.normalizers import (
    apply_prefix,
    normalize_grade,
    normalize_tags,
    to_int,
    to_meta_string,
)
from .utils.paths import resolve, resolve_first, resolve_list

logger = logging.getLogger(__name__)


def _as_url(value: Any) -> str:
    if value is None or isinstance(value, (dict, list, bool)):
        return ''
    return str(value).strip()


class ResponseParser:
    """Extracts canonical images from a decoded JSON body."""

    def parse(self, rule: SourceRule, body: Any) -> List[CanonicalImage]:
        """
        Parse a response body according to the rule's parser paths.

        Args:
            rule: Source rule
            body: Decoded JSON document (None if the body was not JSON)

        Returns:
            List of CanonicalImage (empty when the list path misses)
        """
        items = resolve_list(rule.parser.list_path, body)
        if not items:
            logger.debug(f"[{rule.id}] list path '{rule.parser.list_path}' matched no items")
            return []

        images = []
        skipped = 0
        for item in items:
            image = self.parse_item(rule, item)
            if image is None:
                skipped += 1
                continue
            images.append(image)
        if skipped:
            logger.debug(f"[{rule.id}] skipped {skipped} item(s) without image URLs")
        return images

    def resolve_urls(self, rule: SourceRule, item: Any):
        """Return (thumb, full) for an item, prefixed where relative."""
        parser = rule.parser
        thumb = _as_url(resolve(parser.thumb_path, item))
        full = _as_url(resolve(parser.full_path, item))
        if not full and parser.detail_paths:
            full = _as_url(resolve_first(parser.detail_paths, item))
        thumb = thumb or full
        full = full or thumb
        return apply_prefix(thumb, parser.image_prefix), apply_prefix(full, parser.image_prefix)

    def parse_item(self, rule: SourceRule, item: Any) -> Optional[CanonicalImage]:
        parser = rule.parser
        thumb, full = self.resolve_urls(rule, item)
        if not thumb and not full:
            return None

        image_id = to_meta_string(resolve(parser.id_path, item)) if parser.id_path else ''
        if not image_id:
            image_id = full or thumb

        tags = ()
        for path in parser.candidates('tags'):
            tags = normalize_tags(resolve(path, item))
            if tags:
                break

        meta = {}
        for name in ('uploader', 'views', 'favorites', 'file_size', 'created_at', 'mime_type'):
            meta[name] = to_meta_string(resolve_first(parser.candidates(name), item))

        return CanonicalImage(
            id=image_id,
            source_id=rule.id,
            thumb_url=thumb,
            full_url=full,
            width=to_int(resolve(parser.width_path, item)),
            height=to_int(resolve(parser.height_path, item)),
            grade=normalize_grade(resolve(parser.grade_path, item)),
            tags=tags,
            **meta,
        )
