"""Fixed-window publish throttling backed by pyrate-limiter.

The follower hands every change to downstream resolution, which hits the
upstream registry API; this caps how fast it does so.
"""

from __future__ import annotations

import asyncio

from pyrate_limiter import Duration, Limiter, Rate

# Allow an acquisition to wait far longer than any sane window before
# pyrate-limiter reports failure; `acquire` loops on failure anyway.
_MAX_DELAY_MS = int(Duration.HOUR)


class WindowRateLimiter:
    """Admit at most `limit` acquisitions per `window_s` seconds.

    pyrate-limiter's in-memory bucket sleeps synchronously while waiting,
    so acquisitions run in a worker thread to keep the event loop free.
    """

    def __init__(self, limit: int, window_s: float, *, name: str = "publish") -> None:
        if limit <= 0 or window_s <= 0:
            raise ValueError("limit and window_s must be > 0")
        self.limit = limit
        self.window_s = window_s
        self._name = name
        self._limiter = Limiter(
            Rate(limit, max(1, int(window_s * 1000))),
            raise_when_fail=False,
            max_delay=_MAX_DELAY_MS,
        )

    async def acquire(self) -> None:
        while not await asyncio.to_thread(self._limiter.try_acquire, self._name):
            await asyncio.sleep(0)
