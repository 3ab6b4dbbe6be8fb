"""Tests for replay loading, navigation and playback."""

import asyncio

import pytest

from dom_replay.config import EngineConfig
from dom_replay.engine.replay import ReplayController, downsample
from dom_replay.errors import FetchError
from dom_replay.types import ReplayState

from conftest import BASE_TS_MS, FakeClock, build_snapshot

T0 = BASE_TS_MS
DAY_MS = 24 * 60 * 60 * 1000


def series(n, start=T0, step_ms=1000):
    return [
        build_snapshot(bids=[(100 + i, 1)], asks=[(101 + i, 1)], timestamp_ms=start + i * step_ms, symbol="XBT/USD")
        for i in range(n)
    ]


def history_of(snapshots):
    calls = []

    async def source(symbol, start_ms, end_ms):
        calls.append((symbol, start_ms, end_ms))
        return snapshots

    source.calls = calls
    return source


def loaded(snapshots, config=None):
    frames = []
    controller = ReplayController(
        history_of(snapshots), "XBT/USD", config, on_frame=frames.append, clock=FakeClock(),
    )
    asyncio.run(controller.load(T0, T0 + DAY_MS))
    return controller, frames


def test_downsample_keeps_first_and_order():
    snaps = series(900)
    result = downsample(snaps, 300)

    assert len(result) == 300
    assert result[0] is snaps[0]
    assert result[1] is snaps[3]
    stamps = [s.timestamp_ms for s in result]
    assert stamps == sorted(stamps)


def test_downsample_uneven_stride_stays_under_cap():
    result = downsample(series(1000), 300)
    assert len(result) == 250
    assert downsample(series(10), 300) == series(10)


def test_load_defaults_to_last_24h():
    clock = FakeClock(T0 + DAY_MS)
    source = history_of(series(3))
    controller = ReplayController(source, "XBT/USD", clock=clock)

    state = asyncio.run(controller.load())

    assert state is ReplayState.READY
    assert source.calls == [("XBT/USD", T0, T0 + DAY_MS)]


def test_load_ready_shows_first_snapshot():
    snaps = series(5)
    controller, frames = loaded(snaps)

    assert controller.state is ReplayState.READY
    assert controller.index == 0
    assert controller.current is snaps[0]
    assert frames == [snaps[0]]


def test_load_downsamples_large_history():
    controller, _ = loaded(series(900))
    assert controller.raw_count == 900
    assert len(controller.history) == 300


def test_empty_history():
    controller, frames = loaded([])

    assert controller.state is ReplayState.EMPTY
    assert controller.current is None
    assert frames == []
    assert controller.play() is False
    assert controller.seek(3) is False
    assert controller.jump_forward() is False


def test_fetch_error_sets_error_state():
    async def failing(symbol, start_ms, end_ms):
        raise FetchError("HTTP 500")

    controller = ReplayController(failing, "XBT/USD", clock=FakeClock())
    state = asyncio.run(controller.load(T0, T0 + 1000))

    assert state is ReplayState.ERROR
    assert str(controller.error) == "HTTP 500"
    assert controller.progress().error == "HTTP 500"


def test_unexpected_exception_is_wrapped():
    async def failing(symbol, start_ms, end_ms):
        raise RuntimeError("boom")

    controller = ReplayController(failing, "XBT/USD", clock=FakeClock())
    asyncio.run(controller.load(T0, T0 + 1000))

    assert controller.state is ReplayState.ERROR
    assert isinstance(controller.error, FetchError)
    assert "boom" in str(controller.error)


def test_fetch_timeout():
    async def hanging(symbol, start_ms, end_ms):
        await asyncio.sleep(10)
        return []

    controller = ReplayController(hanging, "XBT/USD", EngineConfig(fetch_timeout_sec=0.01), clock=FakeClock())
    state = asyncio.run(controller.load(T0, T0 + 1000))

    assert state is ReplayState.ERROR
    assert "timed out" in str(controller.error)


def test_superseded_fetch_is_discarded():
    first = series(5)
    second = series(3, start=T0 + 100_000)

    async def scenario():
        gate = asyncio.Event()

        async def source(symbol, start_ms, end_ms):
            if start_ms == 1:
                await gate.wait()
                return first
            return second

        controller = ReplayController(source, "XBT/USD", clock=FakeClock())
        stale = asyncio.create_task(controller.load(1, 2))
        await asyncio.sleep(0)
        assert controller.loading

        state = await controller.load(3, 4)
        gate.set()
        await stale
        return controller, state

    controller, state = asyncio.run(scenario())

    assert state is ReplayState.READY
    assert controller.history == second
    assert controller.error is None


def test_close_while_loading_returns_to_idle():
    async def scenario():
        async def hanging(symbol, start_ms, end_ms):
            await asyncio.sleep(10)
            return series(3)

        controller = ReplayController(hanging, "XBT/USD", clock=FakeClock())
        task = asyncio.create_task(controller.load(T0, T0 + 1000))
        await asyncio.sleep(0)
        controller.close()
        return controller, await task

    controller, state = asyncio.run(scenario())
    assert state is ReplayState.IDLE
    assert controller.history == []


def test_seek_clamps_to_history():
    controller, frames = loaded(series(5))

    assert controller.seek(3)
    assert controller.index == 3
    controller.seek(-4)
    assert controller.index == 0
    controller.seek(99)
    assert controller.index == 4
    assert frames[-1] is controller.history[4]


def test_step_moves_relative():
    controller, _ = loaded(series(5))
    controller.step(2)
    controller.step(-1)
    assert controller.index == 1


def test_jump_back_from_first_is_noop():
    controller, frames = loaded(series(20))

    assert controller.jump_back() is False
    assert controller.index == 0
    assert len(frames) == 1


def test_jump_forward_ten_seconds():
    controller, _ = loaded(series(20))

    assert controller.jump_forward() is True
    assert controller.index == 10


def test_jump_back_ten_seconds():
    controller, _ = loaded(series(20))
    controller.seek(15)

    assert controller.jump_back() is True
    assert controller.index == 5


def test_jump_forward_with_nothing_far_enough_is_noop():
    controller, _ = loaded(series(20))
    controller.seek(15)

    assert controller.jump_forward() is False
    assert controller.index == 15


def test_jump_lands_on_first_snapshot_past_gap():
    snaps = series(3) + series(3, start=T0 + 60_000)
    controller, _ = loaded(snaps)
    controller.seek(1)

    controller.jump_forward()
    assert controller.current is snaps[3]


def test_index_stays_in_bounds():
    controller, _ = loaded(series(5))
    for _ in range(10):
        controller.step(3)
        assert 0 <= controller.index < len(controller.history)
    for _ in range(10):
        controller.jump_back()
        assert 0 <= controller.index < len(controller.history)


def test_advance_at_end_pauses():
    async def scenario():
        controller = ReplayController(history_of(series(3)), "XBT/USD", clock=FakeClock())
        await controller.load(T0, T0 + 1000)
        assert controller.play()
        controller.seek(2)
        moved = controller.advance()
        return controller, moved

    controller, moved = asyncio.run(scenario())
    assert moved is False
    assert controller.index == 2
    assert controller.state is ReplayState.READY
    assert not controller.playing


def test_playback_walks_to_end_and_pauses():
    config = EngineConfig(replay_tick_sec=0.001)

    async def scenario():
        frames = []
        controller = ReplayController(
            history_of(series(5)), "XBT/USD", config, on_frame=frames.append, clock=FakeClock(),
        )
        await controller.load(T0, T0 + 1000)
        controller.play()
        for _ in range(200):
            if not controller.playing:
                break
            await asyncio.sleep(0.01)
        return controller, frames

    controller, frames = asyncio.run(scenario())
    assert controller.state is ReplayState.READY
    assert controller.index == 4
    assert [f.timestamp_ms for f in frames] == [T0 + i * 1000 for i in range(5)]


def test_pause_and_toggle():
    async def scenario():
        controller = ReplayController(history_of(series(5)), "XBT/USD", clock=FakeClock())
        await controller.load(T0, T0 + 1000)

        assert controller.toggle() is True
        assert controller.playing
        assert controller.play() is True
        controller.pause()
        assert controller.state is ReplayState.READY
        assert controller.toggle() is True
        assert controller.toggle() is False
        return controller

    controller = asyncio.run(scenario())
    assert controller.index == 0


def test_speed_validation_and_cycle():
    controller, _ = loaded(series(3))

    with pytest.raises(ValueError):
        controller.set_speed(3)
    with pytest.raises(ValueError):
        ReplayController(history_of([]), "XBT/USD", speed=8)

    controller.set_speed(2)
    assert controller.tick_interval_sec == pytest.approx(0.5)
    assert [controller.cycle_speed() for _ in range(4)] == [4.0, 0.5, 1.0, 2.0]


def test_progress_reports_position():
    snaps = series(5)
    controller, _ = loaded(snaps)
    controller.seek(2)

    progress = controller.progress()
    assert progress.state is ReplayState.READY
    assert progress.index == 2
    assert progress.length == 5
    assert progress.playing is False
    assert progress.speed == 1.0
    assert progress.timestamp_ms == snaps[2].timestamp_ms
    assert progress.error is None
