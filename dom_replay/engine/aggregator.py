"""
Tick-size aggregation into cumulative depth ladders.

Called once per render with the current (live or replayed) snapshot.

Rounding is directional so the displayed spread is never tighter than the
real one:
- bids round DOWN to the tick boundary
- asks round UP to the tick boundary

All arithmetic is Decimal, so aggregating an already aggregated ladder at the
same tick size returns the same buckets.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Iterable, NamedTuple, Optional, Sequence

from ..config import DEPTH_RANGES, to_decimal
from ..types import AggregatedLevel, Imbalance, OrderbookSnapshot, PriceLevel

ZERO = Decimal(0)
TWO = Decimal(2)
HUNDRED = Decimal(100)

# Range filter at or beyond this percentage is disabled
NO_RANGE_LIMIT = DEPTH_RANGES[-1]


class Ladders(NamedTuple):
    bids: list[AggregatedLevel]
    asks: list[AggregatedLevel]
    max_total: Decimal


class BookSummary(NamedTuple):
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]
    spread: str
    mid_price: str


def _tick(tick_size: float | Decimal) -> Decimal:
    tick = to_decimal(tick_size)
    if tick <= 0:
        raise ValueError(f"tick_size must be positive, got {tick_size}")
    return tick


def round_to_tick(price: Decimal, tick: Decimal, is_bid: bool) -> Decimal:
    """Bucket a price: floor for bids, ceil for asks."""
    rounding = ROUND_FLOOR if is_bid else ROUND_CEILING
    return (price / tick).to_integral_value(rounding=rounding) * tick


def best_price(levels: Sequence[PriceLevel]) -> Decimal:
    """First level's price, 0 for an empty side."""
    return levels[0].price if levels else ZERO


def snapshot_mid(snapshot: OrderbookSnapshot) -> Decimal:
    """Raw mid-price used by the depth range filter. Missing sides count as 0."""
    return (best_price(snapshot.bids) + best_price(snapshot.asks)) / TWO


def filter_by_range(
    levels: Iterable[PriceLevel],
    mid_price: Decimal,
    depth_range_percent: Optional[float],
) -> list[PriceLevel]:
    """Keep levels within depth_range_percent of mid. None or >= 20 disables the filter."""
    if depth_range_percent is None or depth_range_percent >= NO_RANGE_LIMIT:
        return list(levels)

    limit = mid_price * to_decimal(depth_range_percent) / HUNDRED
    return [level for level in levels if abs(level.price - mid_price) <= limit]


def aggregate_side(
    levels: Iterable[PriceLevel],
    tick_size: float | Decimal,
    is_bid: bool,
    depth_limit: Optional[int] = None,
) -> list[AggregatedLevel]:
    """
    Bucket one side of the book by tick size.

    Returns levels sorted best first (bids descending, asks ascending),
    truncated to depth_limit, with cumulative volume from the best price out.
    """
    tick = _tick(tick_size)

    buckets: dict[Decimal, Decimal] = {}
    for level in levels:
        bucket = round_to_tick(level.price, tick, is_bid)
        buckets[bucket] = buckets.get(bucket, ZERO) + level.volume

    ordered = sorted(buckets.items(), reverse=is_bid)
    if depth_limit is not None:
        ordered = ordered[:max(depth_limit, 0)]

    result: list[AggregatedLevel] = []
    cumulative = ZERO
    for price, volume in ordered:
        cumulative += volume
        result.append(AggregatedLevel(price, volume, cumulative))
    return result


def build_ladders(
    snapshot: Optional[OrderbookSnapshot],
    tick_size: float | Decimal,
    depth: int = 20,
    depth_range_percent: Optional[float] = None,
) -> Ladders:
    """Aggregate both sides of a snapshot for display."""
    if snapshot is None:
        return Ladders([], [], ZERO)

    mid = snapshot_mid(snapshot)
    bids = aggregate_side(
        filter_by_range(snapshot.bids, mid, depth_range_percent), tick_size, True, depth
    )
    asks = aggregate_side(
        filter_by_range(snapshot.asks, mid, depth_range_percent), tick_size, False, depth
    )

    max_total = max(
        bids[-1].cumulative if bids else ZERO,
        asks[-1].cumulative if asks else ZERO,
    )
    return Ladders(bids, asks, max_total)


def format_price(value: Decimal, decimals: int) -> str:
    return f"{value:.{decimals}f}"


def summarize(
    bids: Sequence[AggregatedLevel],
    asks: Sequence[AggregatedLevel],
    decimals: int,
) -> BookSummary:
    """Best bid/ask, spread and mid from the aggregated ladders."""
    best_bid = bids[0].price if bids else None
    best_ask = asks[0].price if asks else None

    if best_bid is not None and best_ask is not None:
        spread = format_price(best_ask - best_bid, decimals)
        mid = format_price((best_ask + best_bid) / TWO, decimals)
    else:
        spread = mid = "N/A"
    return BookSummary(best_bid, best_ask, spread, mid)


def compute_imbalance(snapshot: Optional[OrderbookSnapshot], depth: int = 10) -> Imbalance:
    """
    Bid share of resting volume across the first `depth` raw levels per side.

    > 0.5 means more volume on the bid side. Both sides empty gives 0.5.
    """
    if snapshot is None:
        return Imbalance(0.5, ZERO, ZERO)

    bid_total = sum((level.volume for level in snapshot.bids[:depth]), ZERO)
    ask_total = sum((level.volume for level in snapshot.asks[:depth]), ZERO)
    total = bid_total + ask_total

    ratio = float(bid_total / total) if total > 0 else 0.5
    return Imbalance(ratio, bid_total, ask_total)
