"""
Periodic update scheduler for Token Aggregator.
Runs the cache-aware bulk aggregation on an interval and hands each
result to the broadcaster.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, Optional

from ..api.schemas import utcnow
from ..core.logging_config import create_logger
from .aggregator import TokenAggregationService
from .broadcaster import BroadcastService
from .cache import CacheService

logger = create_logger(__name__)

DEFAULT_INTERVAL = 120
MIN_INTERVAL = 1


class SchedulerService:
    """Background update loop with Stopped / Running states."""

    def __init__(self, aggregator: TokenAggregationService, broadcaster: Optional[BroadcastService],
                 cache_service: CacheService, cache_ttl: int = 300):
        self._aggregator = aggregator
        self._broadcaster = broadcaster
        self._cache_service = cache_service
        self.cache_ttl = cache_ttl
        self.interval = DEFAULT_INTERVAL
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._update_lock = asyncio.Lock()
        self._last_update: Optional[datetime] = None
        self._last_duration: Optional[float] = None
        self._last_token_count = 0

    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_seconds: int = DEFAULT_INTERVAL) -> None:
        """Start the loop. The first update runs immediately."""
        if self.is_active():
            logger.warning("Scheduler is already running")
            return

        self.interval = max(MIN_INTERVAL, int(interval_seconds))
        self._cache_service.set_default_ttl(self.cache_ttl)

        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._shutdown_event))

        logger.info("Scheduler started", extra={
            "interval": self.interval,
            "cache_ttl": self.cache_ttl
        })

    async def stop(self) -> None:
        """Stop the loop. Safe to call when not running."""
        if self._task is None:
            return

        if self._shutdown_event is not None:
            self._shutdown_event.set()

        task = self._task
        self._task = None
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def restart(self, interval_seconds: int = DEFAULT_INTERVAL) -> None:
        logger.info("Restarting scheduler", extra={"interval": interval_seconds})
        await self.stop()
        self.start(interval_seconds)

    async def _run(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            await self.perform_update()

            # Wait for next update cycle
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
                break  # Shutdown event was set
            except asyncio.TimeoutError:
                continue

    async def perform_update(self) -> int:
        """Aggregate every token and broadcast the result. Returns the token count.

        Errors are logged, never raised, so a failed tick does not stop the loop.
        """
        async with self._update_lock:
            start = time.monotonic()
            try:
                logger.info("Starting scheduled token update")
                tokens = await self._aggregator.aggregate_all_tokens()

                if self._broadcaster is not None:
                    await self._broadcaster.broadcast_price_updates(tokens)

                self._last_update = utcnow()
                self._last_duration = time.monotonic() - start
                self._last_token_count = len(tokens)

                logger.info("Scheduled token update completed", extra={
                    "duration_seconds": self._last_duration,
                    "tokens": len(tokens)
                })
                return len(tokens)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error during scheduled update", extra={"error": str(e)})
                return 0

    async def trigger_manual_update(self) -> int:
        logger.info("Manual update triggered")
        return await self.perform_update()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_active(),
            "interval_seconds": self.interval,
            "cache_ttl": self.cache_ttl,
            "last_update": self._last_update.isoformat() if self._last_update else None,
            "last_duration_seconds": self._last_duration,
            "token_count": self._last_token_count
        }
