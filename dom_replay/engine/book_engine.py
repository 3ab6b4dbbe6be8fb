"""
Book engine: owns all per-(instrument, mode) state and builds the view-model.

Exactly one context is alive at a time:
- LiveContext      - rolling stats, anomaly detector, heatmap, staleness monitor
- ReplayController - fetched history and playback

Switching symbol or mode tears the current context down (cancelling its
timers and fetches) and builds a fresh one, bumping context_id. Producers tag
their events with the context_id they started under; anything tagged with an
older id, or carrying another symbol, is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Callable, Optional

from ..config import DEFAULT_SYMBOL, PLAYBACK_SPEEDS, EngineConfig, get_price_decimals
from ..datafeed.normalizer import now_ms
from ..errors import DomReplayError
from ..types import BookView, ConnectionStatus, LevelFlash, Mode, OrderbookSnapshot, ReplayState
from .aggregator import build_ladders, compute_imbalance, summarize
from .detectors import AnomalyDetector
from .heatmap import HeatmapTracker
from .monitor import StalenessMonitor
from .replay import HistorySource, ReplayController

logger = logging.getLogger(__name__)


class LiveContext:
    """State for one live (instrument) session. Discarded on any context switch."""

    def __init__(
        self,
        symbol: str,
        config: EngineConfig,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.symbol = symbol
        self.detector = AnomalyDetector(config)
        self.heatmap = HeatmapTracker(config)
        self.monitor = StalenessMonitor(config, clock)

        self.current: Optional[OrderbookSnapshot] = None
        self.previous: Optional[OrderbookSnapshot] = None

    def accept(self, snapshot: OrderbookSnapshot, receive_ms: int) -> bool:
        """
        Apply one live snapshot to every live tracker.

        A repeat of the current snapshot object only refreshes liveness.
        """
        self.monitor.record_update(receive_ms, snapshot.timestamp_ms)
        if snapshot is self.current:
            return False

        self.previous, self.current = self.current, snapshot
        self.detector.process(self.current, self.previous, receive_ms)
        self.heatmap.capture(snapshot, receive_ms)
        return True

    def close(self) -> None:
        self.monitor.stop()
        self.detector.clear()
        self.heatmap.clear()
        self.current = self.previous = None


class BookEngine:
    """
    Orderbook analytics and replay engine for one instrument at a time.

    Thread-safety: NOT thread-safe. Designed for single-threaded async use.
    """

    def __init__(
        self,
        symbol: str = DEFAULT_SYMBOL,
        mode: Mode = Mode.LIVE,
        config: Optional[EngineConfig] = None,
        history_source: Optional[HistorySource] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config or EngineConfig()
        self.symbol = symbol
        self.mode = Mode(mode)
        self._history_source = history_source
        self._clock = clock

        self.context_id: int = 0
        self.connected: bool = False
        self.ever_connected: bool = False
        self.error: Optional[str] = None

        self._replay_start_ms: Optional[int] = None
        self._replay_end_ms: Optional[int] = None
        self._replay_speed: float = 1.0
        self._started: bool = False

        self._live: Optional[LiveContext] = None
        self._replay: Optional[ReplayController] = None
        self._build_context()

    # -- Context lifecycle --------------------------------------------------

    def _build_context(self) -> None:
        self.context_id += 1
        self.connected = False
        self.ever_connected = False
        self.error = None

        if self.mode is Mode.LIVE:
            self._live = LiveContext(self.symbol, self.config, self._clock)
            self._replay = None
            if self._started:
                self._start_monitor()
        else:
            if self._history_source is None:
                raise DomReplayError("Replay mode requires a history source")
            self._live = None
            self._replay = ReplayController(
                self._history_source, self.symbol, self.config,
                speed=self._replay_speed, clock=self._clock,
            )
        logger.debug(f"[ENGINE] Context #{self.context_id}: {self.symbol} {self.mode.value}")

    def _teardown(self) -> None:
        if self._live is not None:
            self._live.close()
            self._live = None
        if self._replay is not None:
            self._replay_speed = self._replay.speed
            self._replay.close()
            self._replay = None

    def _rebuild(self) -> None:
        self._teardown()
        self._build_context()

    async def switch_symbol(self, symbol: str) -> None:
        """Discard all state for the old symbol. In replay mode, reload history."""
        if symbol == self.symbol:
            return
        logger.info(f"[ENGINE] Switching symbol {self.symbol} -> {symbol}")
        self.symbol = symbol
        self._rebuild()
        if self._replay is not None:
            await self._replay.load(self._replay_start_ms, self._replay_end_ms)

    async def enter_replay(
        self,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> ReplayState:
        """Switch to replay mode (dropping live state) and load [start_ms, end_ms]."""
        self._replay_start_ms, self._replay_end_ms = start_ms, end_ms
        if self.mode is not Mode.REPLAY:
            logger.info(f"[ENGINE] Entering replay for {self.symbol}")
            self.mode = Mode.REPLAY
            self._rebuild()
        if self._replay is None:
            raise DomReplayError("Replay context was not built")
        return await self._replay.load(start_ms, end_ms)

    async def set_replay_range(
        self,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> ReplayState:
        return await self.enter_replay(start_ms, end_ms)

    def exit_replay(self) -> None:
        """Back to live mode with fresh live state."""
        if self.mode is Mode.LIVE:
            return
        logger.info(f"[ENGINE] Leaving replay for {self.symbol}")
        self.mode = Mode.LIVE
        self._rebuild()

    def set_replay_speed(self, speed: float) -> None:
        """Playback speed for the current and every later replay context."""
        if speed not in PLAYBACK_SPEEDS:
            raise ValueError(f"Unsupported playback speed {speed}, expected one of {PLAYBACK_SPEEDS}")
        self._replay_speed = float(speed)
        if self._replay is not None:
            self._replay.set_speed(speed)

    def start(self) -> None:
        """
        Start the live staleness timer. Call from a running event loop.

        Live contexts built by later symbol or mode switches start their own.
        """
        self._started = True
        if self._live is not None:
            self._live.monitor.start()

    def _start_monitor(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("[ENGINE] No running loop, staleness timer not started")
            return
        self._live.monitor.start()

    def close(self) -> None:
        self._started = False
        self._teardown()

    # -- Inputs -------------------------------------------------------------

    def on_snapshot(
        self,
        snapshot: OrderbookSnapshot,
        context_id: Optional[int] = None,
        receive_ms: Optional[int] = None,
    ) -> bool:
        """
        Accept a live snapshot. Returns False if it was dropped.

        Dropped: replay mode, a stale context_id, or a snapshot for another symbol.
        """
        if self._live is None:
            return False
        if context_id is not None and context_id != self.context_id:
            return False
        if snapshot.symbol and snapshot.symbol != self.symbol:
            return False

        receive = receive_ms if receive_ms is not None else self._clock()
        self._live.accept(snapshot, receive)
        return True

    def set_connection(
        self,
        connected: bool,
        error: Optional[str] = None,
        context_id: Optional[int] = None,
    ) -> None:
        """Transport status input. Stale-context reports are ignored."""
        if context_id is not None and context_id != self.context_id:
            return
        self.connected = connected
        self.error = error
        if connected:
            self.ever_connected = True
            if self._live is not None:
                self._live.monitor.mark_connected(self._clock())

    # -- Queries ------------------------------------------------------------

    @property
    def live(self) -> Optional[LiveContext]:
        return self._live

    @property
    def replay(self) -> Optional[ReplayController]:
        return self._replay

    @property
    def current(self) -> Optional[OrderbookSnapshot]:
        """Snapshot currently on display (live head or replay frame)."""
        if self._live is not None:
            return self._live.current
        if self._replay is not None:
            return self._replay.current
        return None

    @property
    def status(self) -> ConnectionStatus:
        if self.mode is Mode.REPLAY:
            return ConnectionStatus.REPLAY
        if not self.connected:
            if self.ever_connected or self.error:
                return ConnectionStatus.DISCONNECTED
            return ConnectionStatus.CONNECTING
        if self._live is not None and self._live.monitor.is_stale:
            return ConnectionStatus.STALE
        return ConnectionStatus.LIVE

    def heat_score(self, price: Decimal, tick_size: float | Decimal) -> float:
        """Persistence 0-1 of a price over recent live snapshots. Always 0 in replay."""
        if self._live is None:
            return 0.0
        return self._live.heatmap.persistence(price, tick_size)

    def is_sticky(self, price: Decimal, tick_size: float | Decimal) -> bool:
        if self._live is None:
            return False
        return self._live.heatmap.is_sticky(price, tick_size)

    def is_whale(self, price: Decimal) -> bool:
        return self._live is not None and self._live.detector.is_whale(price)

    def has_spoof_alert(self, price: Decimal, tick_size: float | Decimal) -> bool:
        return self._live is not None and self._live.detector.has_spoof_alert(price, tick_size)

    def flash_for(self, price: Decimal, now: Optional[int] = None) -> Optional[LevelFlash]:
        if self._live is None:
            return None
        return self._live.detector.flash_for(price, self._clock() if now is None else now)

    def view(
        self,
        tick_size: float | Decimal = 1,
        depth: int = 20,
        depth_range_percent: Optional[float] = 5,
        imbalance_depth: int = 10,
        now: Optional[int] = None,
    ) -> BookView:
        """Build the render view-model for the snapshot currently on display."""
        now = self._clock() if now is None else now
        snapshot = self.current

        ladders = build_ladders(snapshot, tick_size, depth, depth_range_percent)
        summary = summarize(ladders.bids, ladders.asks, get_price_decimals(self.symbol))

        live = self._live
        replay = self._replay
        error = self.error
        if replay is not None and replay.error is not None:
            error = str(replay.error)

        return BookView(
            symbol=self.symbol,
            mode=self.mode,
            bids=ladders.bids,
            asks=ladders.asks,
            best_bid=summary.best_bid,
            best_ask=summary.best_ask,
            spread=summary.spread,
            mid_price=summary.mid_price,
            max_total=ladders.max_total,
            imbalance=compute_imbalance(snapshot, imbalance_depth),
            whales=live.detector.whales if live is not None else frozenset(),
            spoof_alerts=live.detector.spoof_alerts if live is not None else [],
            flashes=live.detector.flashes(now) if live is not None else {},
            replay=replay.progress() if replay is not None else None,
            status=self.status,
            latency_ms=live.monitor.latency_ms if live is not None else 0,
            updates_per_sec=live.monitor.updates_per_sec if live is not None else 0.0,
            timestamp_ms=snapshot.timestamp_ms if snapshot is not None else None,
            error=error,
        )
