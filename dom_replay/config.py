"""
Engine configuration.

Module constants are the choices offered to the user (tick sizes, depths,
speeds). EngineConfig carries the detection thresholds and window sizes; the
defaults are the empirically chosen values the viewer has always shipped with.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

TICK_SIZES = (0.01, 0.1, 1, 5, 10, 50, 100)
IMBALANCE_DEPTHS = (5, 10, 20, 50)
DEPTH_RANGES = (1, 2, 5, 10, 20)  # Percent from mid-price, 20 = no limit
PLAYBACK_SPEEDS = (0.5, 1, 2, 4)

DEFAULT_SYMBOL = "XBT/USD"
DEFAULT_API_URL = "http://localhost:3033"

# Per-pair price formatting (decimals based on typical price range)
PAIR_DECIMALS = {
    "XBT/USD": 2,
    "ETH/USD": 2,
    "SOL/USD": 3,
}
DEFAULT_PRICE_DECIMALS = 2


def get_price_decimals(symbol: str) -> int:
    return PAIR_DECIMALS.get(symbol, DEFAULT_PRICE_DECIMALS)


def to_decimal(value: float | int | str | Decimal) -> Decimal:
    """Convert a config number to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class EngineConfig:
    """Thresholds, windows and caps for one engine instance."""

    # Large-order change: diff > current side average * this
    large_order_threshold: float = 2.0
    flash_duration_ms: int = 600

    # Whale: level volume > rolling side average * this
    whale_threshold: float = 5.0
    rolling_window_size: int = 100

    # Spoofing heuristic
    spoof_window_ms: int = 3000
    spoof_max_ratio: float = 3.0
    spoof_min_ratio: float = 0.5
    spoof_alert_cap: int = 10

    # Heatmap persistence
    heatmap_history_size: int = 30
    heatmap_levels: int = 15
    sticky_threshold: float = 0.5

    # Staleness / latency
    stale_threshold_ms: int = 5000
    stale_check_interval_sec: float = 1.0

    # Replay
    max_replay_snapshots: int = 300
    replay_lookback_ms: int = 24 * 60 * 60 * 1000
    replay_jump_ms: int = 10_000
    replay_tick_sec: float = 1.0   # Playback period at speed 1
    fetch_timeout_sec: float = 30.0

    def __post_init__(self) -> None:
        if self.rolling_window_size <= 0:
            raise ValueError("rolling_window_size must be positive")
        if self.heatmap_history_size <= 0:
            raise ValueError("heatmap_history_size must be positive")
        if self.max_replay_snapshots <= 0:
            raise ValueError("max_replay_snapshots must be positive")
