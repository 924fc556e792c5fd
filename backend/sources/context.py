"""
Cancellation/deadline token threaded through every fetch.

A superseded request (e.g. the user starts a new search while the old one
is still loading) is aborted by calling `cancel()`; every HTTP call and
worker awaits through `FetchContext.run`, so the abort takes effect at the
next suspension point.
"""

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

from .errors import FetchCancelled, NetworkTimeout

T = TypeVar('T')


class FetchContext:
    """Cancel flag plus an optional absolute deadline (monotonic clock)."""

    def __init__(self, timeout: Optional[float] = None, *, _event: Optional[asyncio.Event] = None,
                 _deadline: Optional[float] = None):
        self._event = _event or asyncio.Event()
        if _deadline is not None:
            self.deadline = _deadline
        elif timeout is not None:
            self.deadline = time.monotonic() + timeout
        else:
            self.deadline = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def with_timeout(self, seconds: float) -> 'FetchContext':
        """Child context sharing the cancel flag with a tighter deadline."""
        deadline = time.monotonic() + seconds
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        return FetchContext(_event=self._event, _deadline=deadline)

    def check(self):
        """Raise if the context is already cancelled or past its deadline."""
        if self.cancelled:
            raise FetchCancelled("Fetch cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise NetworkTimeout("Fetch deadline exceeded")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the context is cancelled or expires first.

        Raises:
            FetchCancelled: If cancel() was called before completion
            NetworkTimeout: If the deadline passed before completion
        """
        task = asyncio.ensure_future(awaitable)
        try:
            self.check()
        except Exception:
            task.cancel()
            raise

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()

        # Let the cancelled request unwind (closes its connection)
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            pass
        if self.cancelled:
            raise FetchCancelled("Fetch cancelled")
        raise NetworkTimeout("Fetch deadline exceeded")

    async def sleep(self, delay: float):
        if delay > 0:
            await self.run(asyncio.sleep(delay))
        else:
            self.check()
