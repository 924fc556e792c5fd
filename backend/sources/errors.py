"""
Error taxonomy for the source engines.

Configuration errors are raised before any network access. Network and
HTTP errors propagate unchanged from the engines; turning them into
user-facing text is the job of `ErrorMapper`.

Malformed or unexpected payloads are NOT errors: path misses resolve to
None / empty lists.
"""

from dataclasses import dataclass
from typing import Optional

import httpx


class SourceError(Exception):
    """Base class for every error raised by the source engines."""


class InvalidConfiguration(SourceError):
    """Rule/query combination cannot produce a valid request."""


class AuthRequired(SourceError):
    """A privileged option was requested without a confirmed login."""


class FetchCancelled(SourceError):
    """The fetch context was cancelled while a request was in flight."""


class NetworkError(SourceError):
    """Transport-level failure (DNS, connection reset, ...)."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class NetworkTimeout(NetworkError):
    """Request or fetch deadline exceeded."""


class HttpError(SourceError):
    """Upstream answered with an error status."""

    def __init__(self, status_code: int, url: str, message: Optional[str] = None):
        super().__init__(message or f"HTTP {status_code} for {url}")
        self.status_code = status_code
        self.url = url

    @classmethod
    def from_status(cls, status_code: int, url: str) -> 'HttpError':
        if status_code >= 500:
            return HttpServerError(status_code, url)
        return HttpClientError(status_code, url)


class HttpClientError(HttpError):
    """4xx response."""


class HttpServerError(HttpError):
    """5xx response."""


@dataclass(frozen=True)
class MappedError:
    """User-facing view of an error."""
    user_message: str
    debug_message: str
    status_code: int


class ErrorMapper:
    """Turns engine errors into messages suitable for API responses."""

    def map(self, error: BaseException) -> MappedError:
        debug = str(error) or error.__class__.__name__

        if isinstance(error, InvalidConfiguration):
            # Configuration messages are written for users already
            return MappedError(debug, debug, 400)

        if isinstance(error, FetchCancelled):
            return MappedError('The request was cancelled.', debug, 499)

        if isinstance(error, HttpClientError):
            if error.status_code in (401, 403):
                return MappedError(
                    'Access denied (the source may need a login or extra headers).', debug, 502
                )
            return MappedError('The source rejected the request.', debug, 502)

        if isinstance(error, HttpServerError):
            return MappedError('The source is temporarily unavailable, try again later.', debug, 502)

        if isinstance(error, (NetworkTimeout, httpx.TimeoutException)):
            return MappedError('Network timeout, check your connection and retry.', debug, 504)

        if isinstance(error, (NetworkError, httpx.HTTPError)):
            return MappedError('Network request failed, try again later.', debug, 502)

        return MappedError('Loading failed, try again later.', debug, 500)
