"""
Live anomaly detection: large-order changes, whales and spoofing.

HOT PATH: process() runs once per live snapshot (several per second).

Three heuristics, each against a different baseline:
1. Large-order change - per-snapshot average level size of the current side
2. Whale            - rolling average of the last N volumes on that side
3. Spoof            - mean of both rolling averages, over a short per-price history

None of this runs in replay mode. The engine owns one detector per live
context and drops it on symbol or mode change.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, NamedTuple, Optional, Sequence

from ..config import EngineConfig, to_decimal
from ..types import FlashKind, LevelFlash, OrderbookSnapshot, PriceLevel, Side, SpoofAlert
from .rolling import RollingStats

logger = logging.getLogger(__name__)

ZERO = Decimal(0)


class DetectionResult(NamedTuple):
    """Output of one detector pass."""
    flashes: dict[Decimal, LevelFlash]   # Changes found in this pass (may be empty)
    whales: frozenset[Decimal]
    spoofs: list[SpoofAlert]             # Alerts raised in this pass
    bid_average: Decimal
    ask_average: Decimal


def detect_changes(
    current: Sequence[PriceLevel],
    previous: Sequence[PriceLevel],
    side: Side,
    threshold_multiplier: Decimal,
) -> dict[Decimal, LevelFlash]:
    """
    Compare one side of two consecutive snapshots.

    A price whose volume moved by more than threshold_multiplier x the current
    side's average level size is flagged. A vanished level counts as volume 0.
    """
    current_map = {level.price: level.volume for level in current}
    prev_map = {level.price: level.volume for level in previous}

    avg_size = sum(current_map.values(), ZERO) / len(current_map) if current_map else ZERO
    threshold = avg_size * threshold_multiplier

    changes: dict[Decimal, LevelFlash] = {}

    for price, volume in current_map.items():
        if volume - prev_map.get(price, ZERO) > threshold:
            changes[price] = LevelFlash(side, FlashKind.ADDED)

    for price, volume in prev_map.items():
        if volume - current_map.get(price, ZERO) > threshold:
            changes[price] = LevelFlash(side, FlashKind.REMOVED)

    return changes


def find_whales(
    levels: Iterable[PriceLevel],
    rolling_average: Decimal,
    threshold_multiplier: Decimal,
) -> set[Decimal]:
    """Prices whose volume exceeds threshold_multiplier x the rolling average."""
    limit = rolling_average * threshold_multiplier
    return {level.price for level in levels if level.volume > limit}


class AnomalyDetector:
    """
    Stateful detector for one live (instrument, mode) context.

    Thread-safety: NOT thread-safe. Designed for single-threaded async use.
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or EngineConfig()

        self._large_order_mult = to_decimal(self.config.large_order_threshold)
        self._whale_mult = to_decimal(self.config.whale_threshold)
        self._spoof_max_mult = to_decimal(self.config.spoof_max_ratio)
        self._spoof_min_mult = to_decimal(self.config.spoof_min_ratio)

        self.rolling = RollingStats(self.config.rolling_window_size)

        # price -> [(time_ms, volume), ...] within the spoof window
        self._liquidity: dict[Decimal, list[tuple[int, Decimal]]] = {}

        self._flashes: dict[Decimal, LevelFlash] = {}
        self._flash_expires_ms: int = 0
        self._whales: frozenset[Decimal] = frozenset()
        self._spoof_alerts: list[SpoofAlert] = []

        self._last_processed: Optional[OrderbookSnapshot] = None

    def process(
        self,
        current: Optional[OrderbookSnapshot],
        previous: Optional[OrderbookSnapshot],
        now_ms: int,
    ) -> Optional[DetectionResult]:
        """
        Run all detectors for a new snapshot against its predecessor.

        Returns None (and changes nothing) when either snapshot is missing or
        `current` is the same object that was processed last time.
        """
        if current is None or previous is None:
            return None
        if current is self._last_processed:
            return None
        self._last_processed = current

        # 1. Large-order changes (per-snapshot baseline)
        changes = detect_changes(current.bids, previous.bids, Side.BID, self._large_order_mult)
        changes.update(detect_changes(current.asks, previous.asks, Side.ASK, self._large_order_mult))
        if changes:
            self._flashes = changes
            self._flash_expires_ms = now_ms + self.config.flash_duration_ms

        # 2. Whales (rolling baseline, replaced every pass)
        bid_avg, ask_avg = self.rolling.update(current.bids, current.asks)
        whales = find_whales(current.bids, bid_avg, self._whale_mult)
        whales |= find_whales(current.asks, ask_avg, self._whale_mult)
        self._whales = frozenset(whales)

        # 3. Spoofing (per-price short history)
        spoofs = self._track_liquidity((*current.bids, *current.asks), now_ms)
        if spoofs:
            self._spoof_alerts = (spoofs + self._spoof_alerts)[:self.config.spoof_alert_cap]
            logger.debug(f"[DETECT] {len(spoofs)} spoof alert(s) at {now_ms}")

        return DetectionResult(changes, self._whales, spoofs, bid_avg, ask_avg)

    def _track_liquidity(self, levels: Sequence[PriceLevel], now_ms: int) -> list[SpoofAlert]:
        """
        Record (time, volume) per price and flag fast large-then-small swings.

        Every tracked price is purged of samples older than the window; prices
        left with no samples are dropped from the map.
        """
        window_ms = self.config.spoof_window_ms
        avg_vol = self.rolling.combined_average
        max_bar = avg_vol * self._spoof_max_mult
        min_bar = avg_vol * self._spoof_min_mult

        detected: list[SpoofAlert] = []
        touched: set[Decimal] = set()

        for level in levels:
            history = self._liquidity.get(level.price, [])
            history.append((now_ms, level.volume))
            history = [sample for sample in history if now_ms - sample[0] < window_ms]
            touched.add(level.price)

            if not history:
                self._liquidity.pop(level.price, None)
                continue
            self._liquidity[level.price] = history

            if len(history) < 2:
                continue

            volumes = [volume for _, volume in history]
            max_vol = max(volumes)
            min_vol = min(volumes)
            if max_vol > max_bar and min_vol < min_bar:
                span_ms = history[-1][0] - history[0][0]
                if span_ms < window_ms:
                    detected.append(SpoofAlert(level.price, max_vol, now_ms))

        # Expire prices that are no longer quoted
        for price in [p for p in self._liquidity if p not in touched]:
            history = [sample for sample in self._liquidity[price] if now_ms - sample[0] < window_ms]
            if history:
                self._liquidity[price] = history
            else:
                del self._liquidity[price]

        return detected

    # -- Queries -----------------------------------------------------------

    def flashes(self, now_ms: int) -> dict[Decimal, LevelFlash]:
        """Active large-order flashes; cleared once flash_duration_ms has passed."""
        if self._flashes and now_ms >= self._flash_expires_ms:
            self._flashes = {}
        return dict(self._flashes)

    def flash_for(self, price: Decimal, now_ms: int) -> Optional[LevelFlash]:
        return self.flashes(now_ms).get(price)

    @property
    def whales(self) -> frozenset[Decimal]:
        return self._whales

    def is_whale(self, price: Decimal) -> bool:
        return price in self._whales

    @property
    def spoof_alerts(self) -> list[SpoofAlert]:
        return list(self._spoof_alerts)

    def has_spoof_alert(self, price: Decimal, tick_size: float | Decimal) -> bool:
        tick = to_decimal(tick_size)
        return any(abs(alert.price - price) < tick for alert in self._spoof_alerts)

    def liquidity_history(self, price: Decimal) -> list[tuple[int, Decimal]]:
        return list(self._liquidity.get(price, ()))

    @property
    def tracked_prices(self) -> int:
        return len(self._liquidity)

    def clear(self) -> None:
        self.rolling.clear()
        self._liquidity.clear()
        self._flashes = {}
        self._flash_expires_ms = 0
        self._whales = frozenset()
        self._spoof_alerts = []
        self._last_processed = None
