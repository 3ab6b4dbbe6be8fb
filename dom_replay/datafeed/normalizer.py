"""
Snapshot normalization.

Turns raw backend payloads into typed OrderbookSnapshot objects.

Accepted level formats:
- {"price": "67000.1", "volume": "0.5", ...}   (backend JSON)
- ["67000.1", "0.5", ...]                      (exchange style arrays)

Source order is trusted: bids are expected descending, asks ascending.
Nothing here raises for missing or malformed data; bad levels are skipped and
missing sides come back empty.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from ..types import OrderbookSnapshot, PriceLevel

# Epoch values above this are milliseconds, below are seconds
_MS_CUTOFF = 10_000_000_000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)

# RFC 3339 fraction longer than datetime supports (chrono emits nanoseconds)
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def now_ms() -> int:
    return int(time.time() * 1000)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(value) if isinstance(value, (str, int)) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not result.is_finite():
        return None
    return result


def parse_level(raw: Any) -> Optional[PriceLevel]:
    """Parse one level, returning None if it is unusable."""
    if isinstance(raw, dict):
        price = _to_decimal(raw.get("price"))
        volume = _to_decimal(raw.get("volume"))
    elif isinstance(raw, (list, tuple)) and len(raw) >= 2:
        price = _to_decimal(raw[0])
        volume = _to_decimal(raw[1])
    else:
        return None

    if price is None or volume is None or volume < 0:
        return None
    return PriceLevel(price, volume)


def normalize_levels(raw_levels: Optional[Iterable[Any]]) -> tuple[PriceLevel, ...]:
    """Parse a side's level list. Absent input gives an empty side."""
    if not raw_levels or isinstance(raw_levels, (str, bytes, dict)):
        return ()
    levels = []
    for raw in raw_levels:
        level = parse_level(raw)
        if level is not None:
            levels.append(level)
    return tuple(levels)


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """
    Parse a timestamp into epoch milliseconds.

    Accepts RFC 3339 strings, epoch seconds and epoch milliseconds.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return int(value) if value > _MS_CUTOFF else int(value * 1000)

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        text = _FRACTION_RE.sub(r"\1", text)
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // _ONE_MS


def format_timestamp(timestamp_ms: int) -> str:
    """Epoch milliseconds to RFC 3339 UTC, as the backend expects in queries."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_snapshot(
    data: Any,
    receive_ms: Optional[int] = None,
    symbol: str = "",
) -> OrderbookSnapshot:
    """
    Build an OrderbookSnapshot from a raw payload.

    Expected format: {symbol, timestamp, bids: [...], asks: [...]}
    A payload that is not a mapping yields an empty snapshot.
    """
    if not isinstance(data, dict):
        data = {}

    timestamp_ms = parse_timestamp_ms(data.get("timestamp"))
    if timestamp_ms is None:
        timestamp_ms = receive_ms if receive_ms is not None else now_ms()

    raw_symbol = data.get("symbol")
    return OrderbookSnapshot(
        bids=normalize_levels(data.get("bids")),
        asks=normalize_levels(data.get("asks")),
        timestamp_ms=timestamp_ms,
        symbol=raw_symbol if isinstance(raw_symbol, str) else symbol,
    )
