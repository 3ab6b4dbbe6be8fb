"""
Rolling per-side volume statistics.

Each side keeps the most recent N raw level volumes (default 100) seen across
live snapshots. The mean of that window is the cross-time baseline used by
whale and spoof detection.
"""

from __future__ import annotations

from collections import deque
from decimal import Decimal
from typing import Iterable

from ..types import PriceLevel, Side

ZERO = Decimal(0)


class RollingWindow:
    """Bounded FIFO of volume samples with a cached mean."""

    __slots__ = ('_samples', '_average')

    def __init__(self, size: int = 100) -> None:
        self._samples: deque[Decimal] = deque(maxlen=size)
        self._average: Decimal = ZERO

    def extend(self, volumes: Iterable[Decimal]) -> Decimal:
        """Append samples, drop the oldest past capacity, return the new mean."""
        self._samples.extend(volumes)
        if self._samples:
            self._average = sum(self._samples, ZERO) / len(self._samples)
        else:
            self._average = ZERO
        return self._average

    @property
    def average(self) -> Decimal:
        return self._average

    def __len__(self) -> int:
        return len(self._samples)

    def samples(self) -> list[Decimal]:
        return list(self._samples)

    def clear(self) -> None:
        self._samples.clear()
        self._average = ZERO


class RollingStats:
    """
    Bid and ask rolling windows for one (instrument, mode) context.

    Thread-safety: NOT thread-safe. Designed for single-threaded async use.
    """

    __slots__ = ('bids', 'asks')

    def __init__(self, window_size: int = 100) -> None:
        self.bids = RollingWindow(window_size)
        self.asks = RollingWindow(window_size)

    def window(self, side: Side) -> RollingWindow:
        return self.bids if side is Side.BID else self.asks

    def update(self, bids: Iterable[PriceLevel], asks: Iterable[PriceLevel]) -> tuple[Decimal, Decimal]:
        """Feed one snapshot's levels. Returns (bid_average, ask_average)."""
        bid_avg = self.bids.extend(level.volume for level in bids)
        ask_avg = self.asks.extend(level.volume for level in asks)
        return bid_avg, ask_avg

    def average(self, side: Side) -> Decimal:
        return self.window(side).average

    @property
    def combined_average(self) -> Decimal:
        """Mean of the two side averages, the spoof detection baseline."""
        return (self.bids.average + self.asks.average) / 2

    def clear(self) -> None:
        self.bids.clear()
        self.asks.clear()
