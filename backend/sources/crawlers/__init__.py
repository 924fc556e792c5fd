"""HTTP crawler used by the source engines."""

from .http import HttpCrawler

__all__ = ['HttpCrawler']
