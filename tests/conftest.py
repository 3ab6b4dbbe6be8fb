"""Shared builders for DOM Replay tests."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

import pytest

from dom_replay.types import OrderbookSnapshot, PriceLevel

BASE_TS_MS = 1_714_564_800_000  # 2024-05-01T12:00:00Z


def D(value) -> Decimal:
    return Decimal(str(value))


def levels(pairs: Iterable[tuple]) -> tuple[PriceLevel, ...]:
    return tuple(PriceLevel(D(price), D(volume)) for price, volume in pairs)


def build_snapshot(bids=(), asks=(), timestamp_ms: int = BASE_TS_MS, symbol: str = "") -> OrderbookSnapshot:
    return OrderbookSnapshot(levels(bids), levels(asks), timestamp_ms, symbol)


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = BASE_TS_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def make_snapshot():
    return build_snapshot


@pytest.fixture
def clock():
    return FakeClock()
