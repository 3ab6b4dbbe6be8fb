#!/usr/bin/env python3
"""
Micro-benchmark for DOM Replay performance.

Tests:
1. Normalization of raw backend payloads
2. Tick aggregation into ladders
3. Anomaly detection per live snapshot
4. Heat score queries for a full ladder
5. Replay downsampling

Usage:
    python -m dom_replay.benchmark
"""

from __future__ import annotations

import random
import time
from statistics import mean, stdev

from .datafeed.normalizer import normalize_snapshot
from .engine.aggregator import build_ladders
from .engine.detectors import AnomalyDetector
from .engine.heatmap import HeatmapTracker
from .engine.replay import downsample
from .types import OrderbookSnapshot


def generate_mock_payload(base_price: float = 67000.0, levels: int = 25, timestamp_ms: int = 0) -> dict:
    """Generate a mock backend snapshot payload."""
    tick_size = 0.1

    bids = []
    asks = []

    for i in range(levels):
        bid_price = base_price - (i + 1) * tick_size
        ask_price = base_price + (i + 1) * tick_size

        bids.append({"price": f"{bid_price:.1f}", "volume": f"{random.uniform(0.01, 5):.8f}"})
        asks.append({"price": f"{ask_price:.1f}", "volume": f"{random.uniform(0.01, 5):.8f}"})

    return {
        "symbol": "XBT/USD",
        "timestamp": timestamp_ms,
        "bids": bids,
        "asks": asks,
    }


def generate_mock_snapshots(count: int, levels: int = 25) -> list[OrderbookSnapshot]:
    base_ts = int(time.time() * 1000)
    snapshots = []
    price = 67000.0
    for i in range(count):
        price += random.uniform(-2, 2)
        payload = generate_mock_payload(price, levels, base_ts + i * 100)
        snapshots.append(normalize_snapshot(payload))
    return snapshots


def _report(name: str, times: list[float]) -> None:
    avg_time = mean(times) * 1000
    std_time = stdev(times) * 1000 if len(times) > 1 else 0.0
    print(f"  Iterations: {len(times)}")
    print(f"  Avg time: {avg_time:.3f}ms")
    print(f"  Std dev: {std_time:.3f}ms")
    print(f"  Rate: {1000/avg_time:,.0f} {name}/sec")


def benchmark_normalize(iterations: int = 2000) -> None:
    print("\n=== Normalization Benchmark ===")
    payloads = [generate_mock_payload() for _ in range(iterations)]

    times = []
    for payload in payloads:
        start = time.perf_counter()
        normalize_snapshot(payload)
        times.append(time.perf_counter() - start)
    _report("snapshots", times)


def benchmark_aggregation(iterations: int = 2000) -> None:
    print("\n=== Tick Aggregation Benchmark ===")
    snapshot = generate_mock_snapshots(1, levels=500)[0]

    # Warm up
    for _ in range(10):
        build_ladders(snapshot, 1, 20, 5)

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        build_ladders(snapshot, 1, 20, 5)
        times.append(time.perf_counter() - start)
    _report("ladders", times)


def benchmark_detection(iterations: int = 2000) -> None:
    print("\n=== Anomaly Detection Benchmark ===")
    snapshots = generate_mock_snapshots(iterations + 1)
    detector = AnomalyDetector()

    times = []
    for i in range(1, len(snapshots)):
        start = time.perf_counter()
        detector.process(snapshots[i], snapshots[i - 1], snapshots[i].timestamp_ms)
        times.append(time.perf_counter() - start)
    _report("snapshots", times)
    print(f"  Tracked prices: {detector.tracked_prices}")


def benchmark_heatmap(iterations: int = 500) -> None:
    print("\n=== Heat Score Benchmark (40 rows per render) ===")
    snapshots = generate_mock_snapshots(30)
    heatmap = HeatmapTracker()
    for snap in snapshots:
        heatmap.capture(snap, snap.timestamp_ms)

    rows = [level.price for level in (*snapshots[-1].bids[:20], *snapshots[-1].asks[:20])]

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        for price in rows:
            heatmap.persistence(price, 1)
        times.append(time.perf_counter() - start)
    _report("renders", times)


def benchmark_downsample(iterations: int = 200) -> None:
    print("\n=== Replay Downsampling Benchmark (10k -> 300) ===")
    snapshots = generate_mock_snapshots(10_000, levels=5)

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        downsample(snapshots, 300)
        times.append(time.perf_counter() - start)
    _report("loads", times)


def main() -> None:
    """Run all benchmarks."""
    print("=" * 60)
    print("DOM Replay Performance Benchmark")
    print("=" * 60)

    benchmark_normalize()
    benchmark_aggregation()
    benchmark_detection()
    benchmark_heatmap()
    benchmark_downsample()

    print("\n" + "=" * 60)
    print("Benchmark complete.")
    print("=" * 60)


if __name__ == "__main__":
    main()
