"""
Per-provider request quota over a fixed rolling window.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from ..api.schemas import RateLimitStatus
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class RateLimiter:
    """Blocking request quota shared by every caller of one provider.

    The window holds at most ``max_requests`` acquisitions. Once the quota is
    spent, ``acquire`` sleeps until the window resets instead of rejecting the
    call. The check-and-increment runs under a lock, so concurrent callers can
    never both take the last slot.
    """

    def __init__(
        self,
        name: str,
        max_requests: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.name = name
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._request_count = 0
        self._reset_time = clock() + window_seconds
        self._lock = asyncio.Lock()

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def reset_time(self) -> float:
        return self._reset_time

    async def acquire(self) -> None:
        """Take one slot from the current window, waiting for a reset if needed."""
        async with self._lock:
            now = self._clock()

            if now >= self._reset_time:
                if self._request_count > 0:
                    logger.debug("Rate limit window reset", extra={
                        "provider": self.name,
                        "used": self._request_count,
                        "limit": self.max_requests
                    })
                self._request_count = 0
                self._reset_time = now + self.window_seconds

            if self._request_count >= self.max_requests:
                wait_time = max(0.0, self._reset_time - now)
                logger.info("Rate limit reached, waiting for window reset", extra={
                    "provider": self.name,
                    "limit": self.max_requests,
                    "wait_time": round(wait_time, 3)
                })
                await self._sleep(wait_time)
                self._request_count = 0
                self._reset_time = self._clock() + self.window_seconds

            self._request_count += 1

            logger.debug("Rate limit slot acquired", extra={
                "provider": self.name,
                "used": self._request_count,
                "remaining": self.max_requests - self._request_count
            })

    def status(self) -> RateLimitStatus:
        """Snapshot of the remaining quota."""
        used = 0 if self._clock() >= self._reset_time else self._request_count
        return RateLimitStatus(
            remaining=self.max_requests - used,
            total=self.max_requests,
            reset_time=datetime.fromtimestamp(self._reset_time, tz=timezone.utc)
        )
