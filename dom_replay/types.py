"""
Data types for DOM Replay.

Notes:
- Using NamedTuple for immutable, memory-efficient structures
- Prices and volumes are Decimal so tick bucketing is exact
- Timestamps are integer milliseconds since the epoch
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import NamedTuple, Optional


class Side(str, Enum):
    BID = "bid"
    ASK = "ask"


class Mode(str, Enum):
    LIVE = "live"
    REPLAY = "replay"


class FlashKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"


class ReplayState(str, Enum):
    """Replay controller states."""
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"        # History loaded, paused
    PLAYING = "playing"
    EMPTY = "empty"        # Fetch returned no snapshots
    ERROR = "error"        # Fetch failed


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    LIVE = "live"
    STALE = "stale"
    DISCONNECTED = "disconnected"
    REPLAY = "replay"


class PriceLevel(NamedTuple):
    """Single price level from one side of the order book."""
    price: Decimal
    volume: Decimal


class OrderbookSnapshot(NamedTuple):
    """
    Full book state at one instant.

    bids are descending by price, asks ascending. Source order is trusted.
    """
    bids: tuple[PriceLevel, ...]
    asks: tuple[PriceLevel, ...]
    timestamp_ms: int
    symbol: str = ""


class AggregatedLevel(NamedTuple):
    """Price level bucketed to a tick boundary."""
    price: Decimal         # Tick boundary (bids floored, asks ceiled)
    volume: Decimal        # Sum of contributing raw volumes
    cumulative: Decimal    # Running total from best price outward


class LevelFlash(NamedTuple):
    """Transient large-order change marker for one price."""
    side: Side
    kind: FlashKind


class SpoofAlert(NamedTuple):
    price: Decimal
    max_volume: Decimal
    time_ms: int


class Imbalance(NamedTuple):
    ratio: float           # bid_total / (bid_total + ask_total), 0.5 when empty
    bid_total: Decimal
    ask_total: Decimal


class ReplayProgress(NamedTuple):
    state: ReplayState
    index: int
    length: int
    playing: bool
    speed: float
    timestamp_ms: Optional[int]
    error: Optional[str]


class BookView(NamedTuple):
    """
    Complete view-model for one render.

    This is what the UI consumes. Contains everything needed to draw the ladder,
    except heat scores which are queried per row from the engine.
    """
    symbol: str
    mode: Mode
    bids: list[AggregatedLevel]      # Best (highest) first
    asks: list[AggregatedLevel]      # Best (lowest) first
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]
    spread: str                      # Formatted to symbol precision, "N/A" if one side is empty
    mid_price: str
    max_total: Decimal               # For depth bar scaling
    imbalance: Imbalance
    whales: frozenset[Decimal]
    spoof_alerts: list[SpoofAlert]   # Newest first
    flashes: dict[Decimal, LevelFlash]
    replay: Optional[ReplayProgress]
    status: ConnectionStatus
    latency_ms: int
    updates_per_sec: float
    timestamp_ms: Optional[int]
    error: Optional[str]
