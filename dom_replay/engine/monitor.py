"""
Feed liveness and latency tracking.

A live feed is "stale" once more than stale_threshold_ms passes without an
accepted snapshot. This is display-only; nothing stops computing when stale.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from ..config import EngineConfig
from ..datafeed.normalizer import now_ms

logger = logging.getLogger(__name__)


class StalenessMonitor:
    """
    Tracks last update time, latency and update rate for one live context.

    check() is driven by a 1 Hz asyncio task (start/stop), or called directly.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        config = config or EngineConfig()
        self.stale_threshold_ms = config.stale_threshold_ms
        self.check_interval_sec = config.stale_check_interval_sec
        self._clock = clock

        self.last_update_ms: int = clock()
        self.latency_ms: int = 0
        self.is_stale: bool = False

        # Rolling update rate
        self._update_count: int = 0
        self._update_count_last: int = 0
        self._rate_calc_ms: int = self.last_update_ms
        self.updates_per_sec: float = 0.0

        self._task: Optional[asyncio.Task] = None

    def mark_connected(self, now: Optional[int] = None) -> None:
        """Restart the staleness clock when a connection opens."""
        self.last_update_ms = self._clock() if now is None else now
        self.is_stale = False

    def record_update(self, receive_ms: int, server_ms: Optional[int] = None) -> None:
        """Register an accepted snapshot. Latency = receive time - server timestamp."""
        self.last_update_ms = receive_ms
        self.is_stale = False
        self._update_count += 1
        if server_ms is not None:
            self.latency_ms = receive_ms - server_ms

    def check(self, now: Optional[int] = None) -> bool:
        """Reclassify staleness and refresh the update rate. Returns is_stale."""
        now = self._clock() if now is None else now
        self.is_stale = now - self.last_update_ms > self.stale_threshold_ms

        elapsed_ms = now - self._rate_calc_ms
        if elapsed_ms >= 1000:
            self.updates_per_sec = (self._update_count - self._update_count_last) * 1000.0 / elapsed_ms
            self._update_count_last = self._update_count
            self._rate_calc_ms = now

        return self.is_stale

    # -- Periodic task ------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start the periodic check. Must be called from a running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval_sec)
            was_stale = self.is_stale
            if self.check() and not was_stale:
                logger.warning(f"[MONITOR] Feed stale: no update for {self.stale_threshold_ms}ms")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
