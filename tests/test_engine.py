"""Tests for the book engine: live flow, context switches and replay."""

import asyncio

import pytest

from dom_replay.config import EngineConfig
from dom_replay.engine.book_engine import BookEngine
from dom_replay.errors import DomReplayError, FetchError
from dom_replay.types import ConnectionStatus, Mode, ReplayState

from conftest import BASE_TS_MS, D, FakeClock, build_snapshot

T0 = BASE_TS_MS


def xbt(bids=(), asks=(), timestamp_ms=T0, symbol="XBT/USD"):
    return build_snapshot(bids=bids, asks=asks, timestamp_ms=timestamp_ms, symbol=symbol)


def feed_whale(engine, clock):
    """Three updates ending with a 10-lot bid at 95 against a window of 1-lots."""
    flat = [(100 - i, 1) for i in range(9)]
    for snap in (xbt(bids=flat), xbt(bids=flat), xbt(bids=[(95, 10)])):
        clock.advance(100)
        engine.on_snapshot(snap)


def test_live_flow_builds_view():
    clock = FakeClock(T0 + 50)
    engine = BookEngine("XBT/USD", clock=clock)
    assert engine.status is ConnectionStatus.CONNECTING

    engine.set_connection(True)
    assert engine.status is ConnectionStatus.LIVE

    snap = xbt(bids=[(100, 1), (99, 2)], asks=[(101, 1), (102, 3)])
    assert engine.on_snapshot(snap) is True

    view = engine.view(tick_size=1, depth=20, depth_range_percent=5, imbalance_depth=10)
    assert view.symbol == "XBT/USD"
    assert view.mode is Mode.LIVE
    assert [lvl.price for lvl in view.bids] == [D(100), D(99)]
    assert [lvl.price for lvl in view.asks] == [D(101), D(102)]
    assert view.best_bid == D(100)
    assert view.spread == "1.00"
    assert view.mid_price == "100.50"
    assert view.max_total == D(4)
    assert view.imbalance.ratio == pytest.approx(3 / 7)
    assert view.latency_ms == 50
    assert view.timestamp_ms == T0
    assert view.replay is None
    assert view.error is None


def test_empty_engine_view():
    view = BookEngine("XBT/USD", clock=FakeClock()).view()

    assert view.bids == [] and view.asks == []
    assert view.spread == "N/A"
    assert view.mid_price == "N/A"
    assert view.imbalance.ratio == 0.5
    assert view.timestamp_ms is None
    assert view.whales == frozenset()


def test_stale_and_disconnected_status():
    clock = FakeClock(T0)
    engine = BookEngine("XBT/USD", clock=clock)
    engine.set_connection(True)
    engine.on_snapshot(xbt(bids=[(100, 1)]))

    clock.advance(5001)
    engine.live.monitor.check()
    assert engine.status is ConnectionStatus.STALE

    engine.set_connection(False, error="connection reset")
    assert engine.status is ConnectionStatus.DISCONNECTED
    assert engine.view().error == "connection reset"


def test_repeated_snapshot_only_refreshes_liveness():
    clock = FakeClock(T0)
    engine = BookEngine("XBT/USD", clock=clock)
    snap = xbt(bids=[(100, 1)])
    engine.on_snapshot(snap)

    clock.advance(4000)
    engine.on_snapshot(snap)
    clock.advance(4000)

    assert engine.live.monitor.check() is False
    assert len(engine.live.heatmap) == 1


def test_live_detection_reaches_view():
    clock = FakeClock(T0)
    engine = BookEngine("XBT/USD", clock=clock)
    feed_whale(engine, clock)

    assert engine.is_whale(D(95))
    assert engine.view().whales == frozenset({D(95)})
    assert engine.heat_score(D(95), 1) == 1.0
    assert engine.heat_score(D(100), 1) == pytest.approx(2 / 3)
    assert len(engine.live.heatmap) == 3


def test_switch_symbol_discards_state():
    clock = FakeClock(T0)
    engine = BookEngine("XBT/USD", clock=clock)
    engine.set_connection(True)
    feed_whale(engine, clock)
    old_context = engine.context_id

    asyncio.run(engine.switch_symbol("ETH/USD"))

    assert engine.symbol == "ETH/USD"
    assert engine.context_id == old_context + 1
    assert engine.current is None
    assert not engine.is_whale(D(95))
    assert engine.heat_score(D(95), 1) == 0.0
    assert engine.view().spoof_alerts == []
    assert engine.status is ConnectionStatus.CONNECTING


def test_late_events_from_old_context_are_dropped():
    clock = FakeClock(T0)
    engine = BookEngine("XBT/USD", clock=clock)
    old_context = engine.context_id
    asyncio.run(engine.switch_symbol("ETH/USD"))

    assert engine.on_snapshot(xbt(bids=[(100, 1)], symbol="ETH/USD"), context_id=old_context) is False
    assert engine.on_snapshot(xbt(bids=[(100, 1)], symbol="XBT/USD")) is False
    assert engine.current is None

    engine.set_connection(True, context_id=old_context)
    assert engine.status is ConnectionStatus.CONNECTING

    eth = xbt(bids=[(3000, 1)], symbol="ETH/USD")
    assert engine.on_snapshot(eth, context_id=engine.context_id) is True
    assert engine.current is eth


def test_switch_to_same_symbol_keeps_state():
    clock = FakeClock(T0)
    engine = BookEngine("XBT/USD", clock=clock)
    feed_whale(engine, clock)
    context = engine.context_id

    asyncio.run(engine.switch_symbol("XBT/USD"))
    assert engine.context_id == context
    assert engine.is_whale(D(95))


def replay_source(snapshots):
    async def source(symbol, start_ms, end_ms):
        return snapshots
    return source


def test_replay_bypasses_live_detection():
    frames = [xbt(bids=[(95, 10)], asks=[(101, 1)], timestamp_ms=T0 + i * 1000) for i in range(3)]
    clock = FakeClock(T0)
    engine = BookEngine("XBT/USD", history_source=replay_source(frames), clock=clock)
    feed_whale(engine, clock)
    live_context = engine.context_id

    state = asyncio.run(engine.enter_replay(T0, T0 + 3000))

    assert state is ReplayState.READY
    assert engine.mode is Mode.REPLAY
    assert engine.context_id == live_context + 1
    assert engine.status is ConnectionStatus.REPLAY
    assert engine.live is None
    assert engine.on_snapshot(xbt(bids=[(100, 1)])) is False

    view = engine.view()
    assert view.best_bid == D(95)
    assert view.whales == frozenset()
    assert view.flashes == {}
    assert view.replay.length == 3
    assert view.replay.index == 0
    assert view.timestamp_ms == T0
    assert engine.heat_score(D(95), 1) == 0.0
    assert not engine.is_whale(D(95))

    engine.replay.seek(2)
    assert engine.view().timestamp_ms == T0 + 2000


def test_replay_error_surfaces_in_view():
    async def failing(symbol, start_ms, end_ms):
        raise FetchError("HTTP 503")

    engine = BookEngine("XBT/USD", history_source=failing, clock=FakeClock())
    asyncio.run(engine.enter_replay(T0, T0 + 1000))

    view = engine.view()
    assert view.replay.state is ReplayState.ERROR
    assert view.error == "HTTP 503"
    assert view.bids == []


def test_switch_symbol_in_replay_reloads_history():
    calls = []

    async def source(symbol, start_ms, end_ms):
        calls.append((symbol, start_ms, end_ms))
        return [xbt(bids=[(100, 1)], symbol=symbol)]

    engine = BookEngine("XBT/USD", history_source=source, clock=FakeClock())

    async def scenario():
        await engine.enter_replay(T0, T0 + 1000)
        await engine.switch_symbol("ETH/USD")

    asyncio.run(scenario())

    assert calls == [("XBT/USD", T0, T0 + 1000), ("ETH/USD", T0, T0 + 1000)]
    assert engine.mode is Mode.REPLAY
    assert engine.current.symbol == "ETH/USD"


def test_exit_replay_starts_fresh_live_context():
    engine = BookEngine("XBT/USD", history_source=replay_source([xbt(bids=[(100, 1)])]), clock=FakeClock())
    asyncio.run(engine.enter_replay(T0, T0 + 1000))
    context = engine.context_id

    engine.exit_replay()

    assert engine.mode is Mode.LIVE
    assert engine.context_id == context + 1
    assert engine.replay is None
    assert engine.live is not None
    assert engine.current is None
    assert engine.status is ConnectionStatus.CONNECTING


def test_replay_mode_requires_history_source():
    with pytest.raises(DomReplayError):
        BookEngine("XBT/USD", mode=Mode.REPLAY)


def test_staleness_timer_follows_context_switches():
    clock = FakeClock(T0)
    engine = BookEngine(
        "XBT/USD",
        config=EngineConfig(stale_check_interval_sec=0.01),
        history_source=replay_source([xbt(bids=[(100, 1)])]),
        clock=clock,
    )

    async def scenario():
        engine.start()
        await engine.switch_symbol("ETH/USD")
        after_switch = engine.live.monitor.running

        await engine.enter_replay(T0, T0 + 1000)
        engine.exit_replay()
        after_replay = engine.live.monitor.running

        engine.set_connection(True)
        clock.advance(6000)
        for _ in range(100):
            if engine.status is ConnectionStatus.STALE:
                break
            await asyncio.sleep(0.01)
        status = engine.status
        engine.close()
        return after_switch, after_replay, status

    after_switch, after_replay, status = asyncio.run(scenario())

    assert after_switch
    assert after_replay
    assert status is ConnectionStatus.STALE


def test_unstarted_engine_leaves_new_contexts_idle():
    engine = BookEngine("XBT/USD", clock=FakeClock())
    asyncio.run(engine.switch_symbol("ETH/USD"))
    assert not engine.live.monitor.running


def test_replay_speed_survives_context_switches():
    engine = BookEngine("XBT/USD", history_source=replay_source([xbt(bids=[(100, 1)])]), clock=FakeClock())

    async def scenario():
        await engine.enter_replay(T0, T0 + 1000)
        engine.set_replay_speed(4)
        await engine.switch_symbol("ETH/USD")
        after_switch = engine.replay.speed

        engine.replay.cycle_speed()
        engine.exit_replay()
        await engine.enter_replay(T0, T0 + 1000)
        return after_switch, engine.replay.speed

    after_switch, after_reentry = asyncio.run(scenario())

    assert after_switch == 4.0
    assert after_reentry == 0.5


def test_set_replay_speed_before_replay_and_validation():
    engine = BookEngine("XBT/USD", history_source=replay_source([xbt(bids=[(100, 1)])]), clock=FakeClock())
    engine.set_replay_speed(2)
    asyncio.run(engine.enter_replay(T0, T0 + 1000))
    assert engine.replay.speed == 2.0

    with pytest.raises(ValueError):
        engine.set_replay_speed(3)
