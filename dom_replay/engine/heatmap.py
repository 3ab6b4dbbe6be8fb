"""
Price-level persistence ("heatmap") tracking.

Keeps the top levels of the last N live snapshots and scores a price by the
fraction of those snapshots that quoted a level within one tick of it.
A score above 0.5 marks "sticky" liquidity: resting size that keeps showing
up rather than flickering in and out.

Performance strategy:
1. Each frame stores its prices once as a numpy array of Decimals
2. A query is one vectorized |prices - p| < tick test per frame, exact at
   the one-tick boundary like the rest of the Decimal engine
3. No global cache; the UI queries per displayed row
"""

from __future__ import annotations

from collections import deque
from decimal import Decimal
from typing import TYPE_CHECKING, NamedTuple, Optional, Sequence

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

from ..config import EngineConfig, to_decimal
from ..types import OrderbookSnapshot, PriceLevel


class HeatFrame(NamedTuple):
    """Top-of-book capture for one live snapshot."""
    time_ms: int
    bids: tuple[PriceLevel, ...]
    asks: tuple[PriceLevel, ...]
    prices: NDArray[np.object_]   # bids + asks Decimal prices, for vectorized lookup


def _price_array(levels: Sequence[PriceLevel]) -> NDArray[np.object_]:
    prices = np.empty(len(levels), dtype=object)
    prices[:] = [level.price for level in levels]
    return prices


class HeatmapTracker:
    """
    Bounded FIFO window of top-of-book frames.

    Thread-safety: NOT thread-safe. Designed for single-threaded async use.
    """

    __slots__ = ('levels', 'sticky_threshold', '_frames')

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        config = config or EngineConfig()
        self.levels = config.heatmap_levels
        self.sticky_threshold = config.sticky_threshold
        self._frames: deque[HeatFrame] = deque(maxlen=config.heatmap_history_size)

    def capture(self, snapshot: OrderbookSnapshot, now_ms: int) -> HeatFrame:
        """Append the snapshot's top levels, evicting the oldest frame past capacity."""
        bids = snapshot.bids[:self.levels]
        asks = snapshot.asks[:self.levels]
        frame = HeatFrame(now_ms, bids, asks, _price_array((*bids, *asks)))
        self._frames.append(frame)
        return frame

    def persistence(self, price: Decimal | float, tick_size: Decimal | float) -> float:
        """Fraction of frames (0-1) holding a level strictly within tick_size of price."""
        if not self._frames:
            return 0.0

        target = to_decimal(price)
        tick = to_decimal(tick_size)
        hits = 0
        for frame in self._frames:
            if frame.prices.size and bool(np.any(np.abs(frame.prices - target) < tick)):
                hits += 1
        return hits / len(self._frames)

    def is_sticky(self, price: Decimal | float, tick_size: Decimal | float) -> bool:
        return self.persistence(price, tick_size) > self.sticky_threshold

    @property
    def frames(self) -> list[HeatFrame]:
        return list(self._frames)

    def __len__(self) -> int:
        return len(self._frames)

    def clear(self) -> None:
        self._frames.clear()
