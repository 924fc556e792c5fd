"""
Async JSON HTTP crawler built on httpx.

Wraps a reusable httpx.AsyncClient and provides the request shapes the
engines need: JSON GET, redirect-resolving HEAD and a body-less streamed
GET. Transport failures are retried; HTTP error statuses are not.
"""

import logging
import time
from typing import Any, Dict, Optional

import httpx

from ..context import FetchContext
from ..errors import HttpError, NetworkError, NetworkTimeout
from ..utils.normalizers import mask_headers, mask_params

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)


class HttpCrawler:
    """
    Wrapper for fetching JSON APIs.

    Uses httpx for async HTTP requests. Provides connection pooling,
    optional rate limiting, retries on transport errors and error-status
    classification.
    """

    def __init__(
        self,
        timeout: float = 15.0,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        rate_limit: float = 0.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the crawler.

        Args:
            timeout: Default request timeout in seconds
            max_retries: Attempts per request on transport errors
            retry_backoff: Base delay for exponential backoff between attempts
            rate_limit: Minimum seconds between requests (0 disables)
            headers: Default headers sent with every request
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.rate_limit = rate_limit
        self.headers = headers or {
            'User-Agent': DEFAULT_USER_AGENT,
            'Accept': 'application/json, text/plain, */*',
            'Accept-Language': 'en-US,en;q=0.9',
        }
        self._transport = transport
        self._last_request_time = 0.0
        # Reusable HTTP client with connection pooling
        self._client: Optional[httpx.AsyncClient] = None

    async def _wait_for_rate_limit(self, context: FetchContext):
        """Wait to respect rate limit."""
        if self.rate_limit <= 0:
            return
        now = time.monotonic()
        elapsed = now - self._last_request_time
        if elapsed < self.rate_limit:
            await context.sleep(self.rate_limit - elapsed)
        self._last_request_time = time.monotonic()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create reusable HTTP client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                    keepalive_expiry=30.0
                )
            )
        return self._client

    async def close(self):
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> 'HttpCrawler':
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    @staticmethod
    def _check_status(response: httpx.Response):
        if response.status_code >= 400:
            raise HttpError.from_status(response.status_code, str(response.request.url))

    async def _send(self, method: str, url: str, context: FetchContext, **kwargs) -> httpx.Response:
        """Send a request with retries on transport errors."""
        client = await self._get_client()
        last_error: Optional[NetworkError] = None

        for attempt in range(self.max_retries):
            await self._wait_for_rate_limit(context)
            try:
                return await context.run(client.request(method, url, **kwargs))
            except httpx.TimeoutException as e:
                last_error = NetworkTimeout(f"{method} {url} timed out: {e}", url=url)
            except httpx.TransportError as e:
                last_error = NetworkError(f"{method} {url} failed: {e}", url=url)
            except httpx.RequestError as e:
                # Not retried (redirect loops, undecodable bodies)
                raise NetworkError(f"{method} {url} failed: {e}", url=url) from e
            logger.warning(f"Attempt {attempt + 1}/{self.max_retries} failed for {url}: {last_error}")
            if attempt < self.max_retries - 1:
                await context.sleep(self.retry_backoff * (2 ** attempt))

        raise last_error

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        context: Optional[FetchContext] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        GET a URL and decode the JSON body.

        Returns:
            Decoded JSON, or None when the body is not valid JSON

        Raises:
            HttpClientError/HttpServerError: On status >= 400
            NetworkError/NetworkTimeout: On transport failure after retries
        """
        context = context or FetchContext()
        logger.debug(f"GET {url} params={mask_params(params)} headers={mask_headers(headers)}")
        response = await self._send(
            'GET', url, context,
            params=params, headers=headers,
            timeout=timeout or self.timeout,
            follow_redirects=True,
        )
        logger.debug(f"<= {response.status_code} {url}")
        self._check_status(response)
        try:
            return response.json()
        except ValueError:
            logger.debug(f"Non-JSON body from {url} ({len(response.content)} bytes)")
            return None

    async def head_final_url(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        context: Optional[FetchContext] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Resolve redirects with a HEAD request and return the final URL."""
        context = context or FetchContext()
        response = await self._send(
            'HEAD', url, context,
            params=params, headers=headers,
            timeout=timeout or self.timeout,
            follow_redirects=True,
        )
        self._check_status(response)
        return str(response.url)

    async def stream_final_url(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        context: Optional[FetchContext] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Resolve redirects with a streamed GET.

        The response body is never read; the stream is closed as soon as
        the headers arrive.
        """
        context = context or FetchContext()
        client = await self._get_client()

        async def _open() -> str:
            async with client.stream(
                'GET', url,
                params=params, headers=headers,
                timeout=timeout or self.timeout,
                follow_redirects=True,
            ) as response:
                self._check_status(response)
                return str(response.url)

        try:
            return await context.run(_open())
        except httpx.TimeoutException as e:
            raise NetworkTimeout(f"GET {url} timed out: {e}", url=url) from e
        except httpx.RequestError as e:
            raise NetworkError(f"GET {url} failed: {e}", url=url) from e
