"""
In-memory caches shared by fetch calls on one engine instance.

- CursorCache: opaque pagination tokens per (rule, query, filters),
  bounded in size (LRU) and age (TTL).
- LoginStatusCache: login check results per credential with a TTL and
  single-flight coalescing of concurrent checks.

Both are created by their owning engine; there are no module-level
instances.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .context import FetchContext

logger = logging.getLogger(__name__)

CursorKey = Tuple[str, str, str]


def normalize_query(query: Optional[str]) -> str:
    """Collapse whitespace so "a  b " and "a b" share a cursor."""
    return ' '.join((query or '').split())


def serialize_filters(filters: Optional[Dict[str, Any]]) -> str:
    """Stable serialization of a filter selection (key order independent)."""
    return json.dumps(filters or {}, sort_keys=True, ensure_ascii=False, default=str)


class CursorCache:
    """
    Cursor tokens for cursor-paginated rules.

    Tokens are opaque: they are stored and replayed, never inspected.
    """

    def __init__(self, max_entries: int = 256, ttl_seconds: float = 1800.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: 'OrderedDict[CursorKey, Tuple[Any, float]]' = OrderedDict()

    @staticmethod
    def make_key(rule_id: str, query: Optional[str], filters: Optional[Dict[str, Any]]) -> CursorKey:
        return (rule_id, normalize_query(query), serialize_filters(filters))

    def get(self, key: CursorKey) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        token, stored_at = entry
        if self.ttl_seconds and self._clock() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return token

    def set(self, key: CursorKey, token: Any):
        self._entries[key] = (token, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Cursor cache full, evicted {evicted[0]}")

    def invalidate(self, key: CursorKey):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, key):
        return self.get(key) is not None


class LoginState(Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    LOGGED_IN = "logged_in"
    LOGGED_OUT = "logged_out"


def _credential_key(credential: str) -> str:
    # Never keep the raw cookie as a dict key (it shows up in reprs/dumps)
    return hashlib.sha256(credential.encode('utf-8')).hexdigest()


class LoginStatusCache:
    """
    Login status per credential, cached for `ttl_seconds`.

    Concurrent `resolve` calls for the same credential share one
    in-flight check.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._results: Dict[str, Tuple[bool, float]] = {}
        self._inflight: Dict[str, 'asyncio.Task[bool]'] = {}

    def get(self, credential: str) -> Optional[bool]:
        key = _credential_key(credential)
        entry = self._results.get(key)
        if entry is None:
            return None
        value, checked_at = entry
        if self._clock() - checked_at > self.ttl_seconds:
            del self._results[key]
            return None
        return value

    def state(self, credential: Optional[str]) -> LoginState:
        if not credential:
            return LoginState.LOGGED_OUT
        cached = self.get(credential)
        if cached is not None:
            return LoginState.LOGGED_IN if cached else LoginState.LOGGED_OUT
        if _credential_key(credential) in self._inflight:
            return LoginState.CHECKING
        return LoginState.UNKNOWN

    def invalidate(self):
        """Forget every cached result (called when the credential changes)."""
        self._results.clear()

    async def resolve(self, credential: str, checker: Callable[[], Awaitable[bool]],
                      context: Optional[FetchContext] = None) -> bool:
        """
        Return the cached status or run `checker` once for all concurrent callers.

        Args:
            credential: Cookie/token being checked
            checker: Coroutine factory performing the network check; it must
                not depend on any single caller's context
            context: This caller's context; cancelling it only stops this
                caller from waiting
        """
        cached = self.get(credential)
        if cached is not None:
            return cached

        key = _credential_key(credential)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_check(key, checker))
            self._inflight[key] = task
        # shield: one caller giving up must not cancel the shared check
        if context is None:
            return await asyncio.shield(task)
        return await context.run(asyncio.shield(task))

    async def _run_check(self, key: str, checker: Callable[[], Awaitable[bool]]) -> bool:
        try:
            value = bool(await checker())
            self._results[key] = (value, self._clock())
            return value
        finally:
            self._inflight.pop(key, None)
