"""
Rule-driven image source engines.

This package provides a unified fetch framework supporting:
- Declarative JSON APIs described by SourceRule (page/offset/cursor pagination)
- Merge fan-out over multi-valued filters
- Random-redirect endpoints probed with HEAD / streamed GET
- Pixiv (session cookie, login cache, detail enrichment)
"""

from .base import BaseImageSource, CanonicalImage, EngineType, Grade, SourceRule
from .config import RULES, get_rule_config, list_rules
from .context import FetchContext
from .engine import RuleEngine
from .errors import ErrorMapper, SourceError
from .manager import SourceManager

__all__ = [
    'BaseImageSource',
    'CanonicalImage',
    'EngineType',
    'Grade',
    'SourceRule',
    'RULES',
    'get_rule_config',
    'list_rules',
    'FetchContext',
    'RuleEngine',
    'ErrorMapper',
    'SourceError',
    'SourceManager',
]
