"""
Replay controller: deterministic playback over a bounded snapshot history.

States:
    IDLE -> LOADING -> READY | EMPTY | ERROR
    READY <-> PLAYING            (play / pause, end of history pauses)
    any   -> LOADING             (symbol or time range change)

The history is fetched once per (symbol, range) through an injected async
history source, downsampled by stride to at most max_replay_snapshots, and
then walked with seek / jump / play. Playback is an asyncio task ticking every
replay_tick_sec / speed seconds.

Replay never touches live detection state; it only emits frames for display.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional, Sequence

from ..config import PLAYBACK_SPEEDS, EngineConfig
from ..datafeed.normalizer import now_ms
from ..errors import FetchError
from ..types import OrderbookSnapshot, ReplayProgress, ReplayState

logger = logging.getLogger(__name__)

# (symbol, from_ms, to_ms) -> snapshots ascending by timestamp
HistorySource = Callable[[str, int, int], Awaitable[Sequence[OrderbookSnapshot]]]
FrameCallback = Callable[[OrderbookSnapshot], None]


def downsample(snapshots: Sequence[OrderbookSnapshot], cap: int) -> list[OrderbookSnapshot]:
    """
    Keep every ceil(n / cap)-th snapshot when there are more than cap.

    Lossy: preserves the first snapshot and chronological coverage, not the
    full record. Never feed the result to analytics.
    """
    if len(snapshots) <= cap:
        return list(snapshots)
    step = math.ceil(len(snapshots) / cap)
    return list(snapshots[::step])


class ReplayController:
    """
    Replay session for one symbol.

    Thread-safety: NOT thread-safe. Designed for single-threaded async use.
    """

    def __init__(
        self,
        history_source: HistorySource,
        symbol: str,
        config: Optional[EngineConfig] = None,
        on_frame: Optional[FrameCallback] = None,
        speed: float = 1.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config or EngineConfig()
        self.symbol = symbol
        self.on_frame = on_frame
        self._history_source = history_source
        self._clock = clock

        self.state = ReplayState.IDLE
        self.history: list[OrderbookSnapshot] = []
        self.index: int = 0
        self.speed: float = 1.0
        self.set_speed(speed)
        self.error: Optional[FetchError] = None

        self.start_ms: Optional[int] = None
        self.end_ms: Optional[int] = None
        self.raw_count: int = 0

        self._fetch_task: Optional[asyncio.Task] = None
        self._play_task: Optional[asyncio.Task] = None
        self._generation: int = 0

    # -- Loading ------------------------------------------------------------

    async def load(self, start_ms: Optional[int] = None, end_ms: Optional[int] = None) -> ReplayState:
        """
        (Re)load history for [start_ms, end_ms]; defaults to the last 24h.

        Cancels any in-flight fetch. A fetch superseded by a newer load()
        finishes silently without touching state.
        """
        self.cancel_fetch()
        self._stop_playback()

        self._generation += 1
        generation = self._generation

        end = end_ms if end_ms is not None else self._clock()
        start = start_ms if start_ms is not None else end - self.config.replay_lookback_ms
        self.start_ms, self.end_ms = start, end

        self.index = 0
        self.history = []
        self.raw_count = 0
        self.error = None
        self.state = ReplayState.LOADING

        logger.info(f"[REPLAY] Loading {self.symbol} history {start} -> {end}")
        task = asyncio.ensure_future(self._history_source(self.symbol, start, end))
        self._fetch_task = task

        try:
            snapshots = await asyncio.wait_for(task, timeout=self.config.fetch_timeout_sec)
        except asyncio.CancelledError:
            if generation != self._generation:
                logger.debug(f"[REPLAY] Fetch for {self.symbol} superseded")
                return self.state
            raise
        except asyncio.TimeoutError:
            if generation != self._generation:
                return self.state
            return self._fail(FetchError(f"History request timed out after {self.config.fetch_timeout_sec}s"))
        except Exception as e:
            if generation != self._generation:
                return self.state
            return self._fail(e if isinstance(e, FetchError) else FetchError(f"Failed to load history: {e}"))
        finally:
            if self._fetch_task is task:
                self._fetch_task = None

        if generation != self._generation:
            return self.state

        self.raw_count = len(snapshots)
        self.history = downsample(snapshots, self.config.max_replay_snapshots)
        if len(self.history) < self.raw_count:
            logger.info(
                f"[REPLAY] Downsampled {self.raw_count} snapshots to {len(self.history)} for smooth playback"
            )

        if not self.history:
            self.state = ReplayState.EMPTY
            logger.info(f"[REPLAY] No history for {self.symbol} in range")
            return self.state

        self.state = ReplayState.READY
        self._set_index(0)
        return self.state

    def _fail(self, error: FetchError) -> ReplayState:
        logger.error(f"[REPLAY] {error}")
        self.error = error
        self.state = ReplayState.ERROR
        return self.state

    def cancel_fetch(self) -> None:
        """Abort an in-flight fetch. Its outcome will not affect state."""
        if self._fetch_task is not None and not self._fetch_task.done():
            self._generation += 1
            self._fetch_task.cancel()
            if self.state is ReplayState.LOADING:
                self.state = ReplayState.IDLE
        self._fetch_task = None

    @property
    def loading(self) -> bool:
        return self.state is ReplayState.LOADING

    # -- Playback -----------------------------------------------------------

    @property
    def playing(self) -> bool:
        return self.state is ReplayState.PLAYING

    @property
    def current(self) -> Optional[OrderbookSnapshot]:
        if not self.history:
            return None
        return self.history[self.index]

    @property
    def tick_interval_sec(self) -> float:
        return self.config.replay_tick_sec / self.speed

    def play(self) -> bool:
        """Start the playback timer. Must be called from a running event loop."""
        if self.state is ReplayState.PLAYING:
            return True
        if self.state is not ReplayState.READY or not self.history:
            return False

        self.state = ReplayState.PLAYING
        self._play_task = asyncio.get_running_loop().create_task(self._run_playback())
        return True

    def pause(self) -> None:
        self._stop_playback()

    def toggle(self) -> bool:
        """Play/pause. Returns True if now playing."""
        if self.playing:
            self.pause()
            return False
        return self.play()

    async def _run_playback(self) -> None:
        try:
            while self.state is ReplayState.PLAYING:
                await asyncio.sleep(self.tick_interval_sec)
                if self.state is not ReplayState.PLAYING:
                    break
                self.advance()
        finally:
            if self._play_task is asyncio.current_task():
                self._play_task = None

    def advance(self) -> bool:
        """
        One playback tick: move to the next snapshot.

        At the end of history playback pauses instead of looping.
        """
        if not self.history:
            return False
        next_index = self.index + 1
        if next_index >= len(self.history):
            self._stop_playback()
            return False
        self._set_index(next_index)
        return True

    def _stop_playback(self) -> None:
        if self.state is ReplayState.PLAYING:
            self.state = ReplayState.READY
        task = self._play_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            self._play_task = None

    def set_speed(self, speed: float) -> None:
        """Change playback speed. Applies from the next tick on."""
        if speed not in PLAYBACK_SPEEDS:
            raise ValueError(f"Unsupported playback speed {speed}, expected one of {PLAYBACK_SPEEDS}")
        self.speed = float(speed)

    def cycle_speed(self) -> float:
        speeds = [float(s) for s in PLAYBACK_SPEEDS]
        position = speeds.index(self.speed)
        self.set_speed(speeds[(position + 1) % len(speeds)])
        return self.speed

    # -- Navigation ---------------------------------------------------------

    def _set_index(self, index: int) -> None:
        self.index = index
        if self.on_frame is not None:
            self.on_frame(self.history[index])

    def seek(self, index: int) -> bool:
        """Jump to an explicit index, clamped to the history. Works while playing."""
        if not self.history:
            return False
        self._set_index(min(max(index, 0), len(self.history) - 1))
        return True

    def step(self, delta: int) -> bool:
        """Move delta frames from the current index."""
        if not self.history:
            return False
        return self.seek(self.index + delta)

    def jump(self, delta_ms: int) -> bool:
        """
        Move to the nearest snapshot at least |delta_ms| away in time.

        Backward stops at the first snapshot (walking from the current index)
        with timestamp <= target, forward at the first with timestamp >= target.
        If no snapshot qualifies nothing changes.
        """
        if not self.history or delta_ms == 0:
            return False

        target = self.history[self.index].timestamp_ms + delta_ms
        if delta_ms < 0:
            candidates = range(self.index - 1, -1, -1)
            found = next((i for i in candidates if self.history[i].timestamp_ms <= target), None)
        else:
            candidates = range(self.index + 1, len(self.history))
            found = next((i for i in candidates if self.history[i].timestamp_ms >= target), None)

        if found is None:
            return False
        self._set_index(found)
        return True

    def jump_back(self) -> bool:
        return self.jump(-self.config.replay_jump_ms)

    def jump_forward(self) -> bool:
        return self.jump(self.config.replay_jump_ms)

    # -- Status -------------------------------------------------------------

    def progress(self) -> ReplayProgress:
        current = self.current
        return ReplayProgress(
            state=self.state,
            index=self.index,
            length=len(self.history),
            playing=self.playing,
            speed=self.speed,
            timestamp_ms=current.timestamp_ms if current is not None else None,
            error=str(self.error) if self.error is not None else None,
        )

    def close(self) -> None:
        """Cancel fetch and playback timers. The controller is unusable afterwards."""
        self.cancel_fetch()
        self._stop_playback()
        self._generation += 1
        self.state = ReplayState.IDLE
