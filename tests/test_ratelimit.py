import asyncio
import time

import pytest

from frea.core.interfaces import IRateLimiter
from frea.ratelimit import WindowRateLimiter


@pytest.mark.asyncio
async def test_limiter_admits_burst_then_waits_for_window() -> None:
    limiter = WindowRateLimiter(2, 0.5)
    assert isinstance(limiter, IRateLimiter)

    start = time.monotonic()
    await limiter.acquire()
    await limiter.acquire()
    burst = time.monotonic() - start
    await asyncio.wait_for(limiter.acquire(), timeout=10)
    total = time.monotonic() - start

    assert burst < 0.4
    assert total >= 0.3


@pytest.mark.parametrize(("limit", "window"), [(0, 1.0), (1, 0.0), (-1, 2.0)])
def test_limiter_rejects_non_positive_settings(limit: int, window: float) -> None:
    with pytest.raises(ValueError):
        WindowRateLimiter(limit, window)
