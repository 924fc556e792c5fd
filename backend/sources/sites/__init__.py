"""Specialized per-site engines."""

from .pixiv import PixivClient, PixivSource, derive_regular_url

__all__ = ['PixivClient', 'PixivSource', 'derive_regular_url']
