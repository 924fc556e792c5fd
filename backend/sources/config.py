"""
Built-in source rules.

Each rule is written in the same JSON form users import (see
SourceRule.from_dict), so every built-in doubles as a format example:
- json rules with page and cursor pagination
- a random-redirect rule
- the Pixiv rule, handled by the specialized engine
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

from .base import SourceRule

logger = logging.getLogger(__name__)


# ============================================================
# RULE DEFINITIONS (JSON form)
# ============================================================

RULE_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    # ========== JSON, page-numbered ==========

    'wallhaven': {
        'id': 'wallhaven',
        'name': 'Wallhaven',
        'url': 'https://wallhaven.cc/api/v1/search',
        'params': {'page': 'page', 'keyword': 'q'},
        'filters': [
            {
                'key': 'sorting', 'name': 'Sort', 'type': 'radio', 'default': 'date_added',
                'options': [
                    {'name': 'Latest', 'value': 'date_added'},
                    {'name': 'Top', 'value': 'toplist'},
                    {'name': 'Views', 'value': 'views'},
                    {'name': 'Favorites', 'value': 'favorites'},
                    {'name': 'Random', 'value': 'random'},
                ],
            },
            {
                'key': 'categories', 'name': 'Categories', 'type': 'checkbox', 'encode': 'merge',
                'options': [
                    {'name': 'General', 'value': '100'},
                    {'name': 'Anime', 'value': '010'},
                    {'name': 'People', 'value': '001'},
                ],
            },
            {
                'key': 'ratios', 'name': 'Ratios', 'type': 'checkbox', 'encode': 'join',
                'options': [
                    {'name': '16x9', 'value': '16x9'},
                    {'name': '16x10', 'value': '16x10'},
                    {'name': '9x16', 'value': '9x16'},
                ],
            },
        ],
        'parser': {
            'list': 'data',
            'id': 'id',
            'thumb': 'thumbs.large',
            'full': 'path',
            'width': 'dimension_x',
            'height': 'dimension_y',
            'grade': 'purity',
            'meta': {
                'uploader': ['uploader.username'],
                'views': ['views'],
                'favorites': ['favorites'],
                'file_size': ['file_size'],
                'created_at': ['created_at'],
                'mime_type': ['file_type'],
            },
        },
        'similar_id_pattern': '^[a-z0-9]{6}$',
    },

    'yandere': {
        'id': 'yandere',
        'name': 'yande.re',
        'url': 'https://yande.re/post.json',
        'fixed_params': {'limit': 40},
        'params': {'page': 'page', 'keyword': 'tags'},
        'parser': {
            'list': '$',
            'id': 'id',
            'thumb': 'preview_url',
            'full': 'file_url',
            'detail': ['jpeg_url', 'sample_url'],
            'width': 'width',
            'height': 'height',
            'grade': 'rating',
            'meta': {
                'uploader': ['author'],
                'favorites': ['score'],
                'file_size': ['file_size'],
                'mime_type': ['file_ext'],
            },
        },
    },

    # ========== JSON, cursor-paginated ==========

    'civitai': {
        'id': 'civitai',
        'name': 'Civitai Images',
        'url': 'https://civitai.com/api/v1/images',
        'fixed_params': {'limit': 20, 'nsfw': 'None'},
        'params': {'page': 'cursor', 'keyword': 'username'},
        'pagination': {'mode': 'cursor', 'param': 'cursor', 'cursor_path': 'metadata.nextCursor'},
        'filters': [
            {
                'key': 'sort', 'name': 'Sort', 'type': 'radio', 'default': 'Newest',
                'options': [
                    {'name': 'Newest', 'value': 'Newest'},
                    {'name': 'Most Reactions', 'value': 'Most Reactions'},
                    {'name': 'Most Comments', 'value': 'Most Comments'},
                ],
            },
            {
                'key': 'period', 'name': 'Period', 'type': 'radio', 'default': 'Week',
                'options': [
                    {'name': 'Day', 'value': 'Day'},
                    {'name': 'Week', 'value': 'Week'},
                    {'name': 'Month', 'value': 'Month'},
                    {'name': 'All time', 'value': 'AllTime'},
                ],
            },
        ],
        'parser': {
            'list': '$.items[*]',
            'id': 'id',
            'thumb': 'url',
            'full': 'url',
            'width': 'width',
            'height': 'height',
            'meta': {
                'uploader': ['username'],
                'created_at': ['createdAt'],
                'favorites': ['stats.heartCount'],
            },
        },
    },

    # ========== RANDOM redirect ==========

    'picsum': {
        'id': 'picsum',
        'name': 'Lorem Picsum (random)',
        'url': 'https://picsum.photos/1920/1080',
        'response_type': 'random',
    },

    # ========== SPECIALIZED ==========

    'pixiv': {
        'id': 'pixiv',
        'name': 'Pixiv',
        'url': 'https://www.pixiv.net',
        'engine': 'pixiv',
        'keyword': {'default': 'オリジナル', 'required': True},
        'filters': [
            {
                'key': 'order', 'name': 'Order', 'type': 'radio', 'default': 'date_d',
                'options': [
                    {'name': 'Newest', 'value': 'date_d'},
                    {'name': 'Oldest', 'value': 'date'},
                    {'name': 'Popular', 'value': 'popular_d'},
                    {'name': 'Popular (male)', 'value': 'popular_male_d'},
                    {'name': 'Popular (female)', 'value': 'popular_female_d'},
                ],
            },
            {
                'key': 'mode', 'name': 'Mode', 'type': 'radio', 'default': 'all',
                'options': [
                    {'name': 'All', 'value': 'all'},
                    {'name': 'Safe', 'value': 'safe'},
                    {'name': 'R-18', 'value': 'r18'},
                ],
            },
            {
                'key': 's_mode', 'name': 'Match', 'type': 'radio', 'default': 's_tag',
                'options': [
                    {'name': 'Tags (partial)', 'value': 's_tag'},
                    {'name': 'Tags (exact)', 'value': 's_tag_full'},
                    {'name': 'Title/caption', 'value': 's_tc'},
                ],
            },
        ],
    },
}

RULES: Dict[str, SourceRule] = {
    key: SourceRule.from_dict(definition) for key, definition in RULE_DEFINITIONS.items()
}


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def get_rule_config(rule_id: str) -> SourceRule:
    """
    Get a built-in rule by its id.

    Args:
        rule_id: Rule identifier (e.g., 'wallhaven', 'pixiv')

    Returns:
        SourceRule for the id

    Raises:
        ValueError: If rule_id is not found
    """
    if rule_id not in RULES:
        valid_keys = ', '.join(sorted(RULES.keys()))
        raise ValueError(f"Unknown rule: '{rule_id}'. Valid rules: {valid_keys}")
    return RULES[rule_id]


def list_rules() -> list:
    """List all built-in rule ids."""
    return list(RULES.keys())


def get_rule_summary(rules: Dict[str, SourceRule] = None) -> list:
    """Get a summary of rules for display."""
    summary = []
    for key, rule in (rules if rules is not None else RULES).items():
        summary.append({
            'id': key,
            'name': rule.name,
            'engine': rule.engine.value,
            'response_type': rule.response_mode.value,
            'pagination': rule.pagination.mode.value,
            'url': rule.url,
            'filters': [f.key for f in rule.filters],
        })
    return summary


def parse_rule(text: Union[str, bytes]) -> SourceRule:
    """
    Parse one rule from its JSON text.

    Raises:
        ValueError: If the text is not a JSON object or not a valid rule
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Rule root is not a JSON object")
    try:
        return SourceRule.from_dict(data)
    except KeyError as e:
        raise ValueError(f"Rule is missing required field {e}") from e
    except (TypeError, AttributeError) as e:
        raise ValueError(f"Rule has a malformed field: {e}") from e


def load_rules_dir(path: Union[str, Path]) -> List[SourceRule]:
    """
    Load every `*.json` rule in a directory, sorted by filename.

    Invalid files are logged and skipped.
    """
    directory = Path(path)
    if not directory.is_dir():
        return []

    rules = []
    for file in sorted(directory.glob('*.json')):
        try:
            rules.append(parse_rule(file.read_text(encoding='utf-8')))
        except (OSError, ValueError) as e:
            logger.warning(f"Skipping invalid rule file {file.name}: {e}")
    logger.info(f"Loaded {len(rules)} rule(s) from {directory}")
    return rules
