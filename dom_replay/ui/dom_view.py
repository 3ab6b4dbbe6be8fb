"""
DOM Ladder TUI using Textual.

Displays:
- Status bar: symbol, best bid/ask, spread, mid, imbalance, latency, feed status
- Ladder: asks on top, bids below, with cumulative depth bars and markers
  (W whale, S spoof alert, * sticky liquidity, +/- large order flash)
- Replay bar: position, timestamp, speed, state

Performance notes:
- Renders at max ~10 FPS from a timer, reading engine.view()
- Heat scores are queried only for the rows on screen
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from rich.console import RenderableType
from rich.style import Style
from rich.table import Table
from rich.text import Text

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import Footer, Static

from ..config import DEPTH_RANGES, TICK_SIZES, get_price_decimals
from ..types import AggregatedLevel, BookView, ConnectionStatus, FlashKind, Mode

if TYPE_CHECKING:
    from ..engine.book_engine import BookEngine

# Color scheme (dark theme)
BID_COLOR = "#22c55e"      # Green
ASK_COLOR = "#ef4444"      # Red
PRICE_COLOR = "#f8fafc"
HEADER_COLOR = "#94a3b8"
WHALE_COLOR = "#a855f7"
SPOOF_COLOR = "#f59e0b"
HEAT_COLOR = "#fb923c"
BAR_BG = "#1e293b"

STATUS_STYLES = {
    ConnectionStatus.LIVE: "bold green",
    ConnectionStatus.STALE: "bold yellow",
    ConnectionStatus.CONNECTING: "dim",
    ConnectionStatus.DISCONNECTED: "bold red",
    ConnectionStatus.REPLAY: "bold cyan",
}

REFRESH_INTERVAL_SEC = 0.1


def format_qty(qty: Decimal, tiny: bool = False) -> str:
    """Format volume for display. Tiny volumes collapse to a dot."""
    if tiny:
        return "·"
    if qty >= 100:
        return f"{qty:.1f}"
    elif qty >= 10:
        return f"{qty:.2f}"
    elif qty >= 1:
        return f"{qty:.3f}"
    return f"{qty:.4f}"


def make_bar(value: Decimal, max_value: Decimal, width: int, color: str) -> Text:
    """Create a horizontal bar using block characters."""
    if max_value <= 0:
        return Text(" " * width)

    fill_ratio = min(1.0, float(value / max_value))
    fill_width = int(fill_ratio * width)

    bar = "█" * fill_width + " " * (width - fill_width)
    return Text(bar, style=Style(color=color, bgcolor=BAR_BG))


def format_time(timestamp_ms: Optional[int]) -> str:
    if timestamp_ms is None:
        return "--:--:--"
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class DOMTable(Static):
    """Main DOM ladder display widget."""

    DEFAULT_CSS = """
    DOMTable {
        width: 100%;
        height: 100%;
    }
    """

    def __init__(self, engine: BookEngine) -> None:
        super().__init__()
        self.engine = engine
        self._view: Optional[BookView] = None
        self.tick_size: float = 1

    def update_view(self, view: BookView, tick_size: float) -> None:
        self._view = view
        self.tick_size = tick_size
        self.refresh()

    def _markers(self, level: AggregatedLevel, view: BookView) -> Text:
        marks = Text()
        if level.price in view.whales:
            marks.append("W", style=WHALE_COLOR)
        if self.engine.has_spoof_alert(level.price, self.tick_size):
            marks.append("S", style=SPOOF_COLOR)
        if self.engine.is_sticky(level.price, self.tick_size):
            marks.append("*", style=HEAT_COLOR)
        flash = view.flashes.get(level.price)
        if flash is not None:
            marks.append("+" if flash.kind is FlashKind.ADDED else "-", style="bold")
        return marks

    def render(self) -> RenderableType:
        """Render the DOM ladder as a Rich Table."""
        view = self._view
        if view is None:
            return Text("Waiting for data...", style="dim")

        if view.mode is Mode.REPLAY and view.replay is not None:
            if view.replay.length == 0:
                return Text(f"Replay: {view.replay.state.value}", style="dim")

        if not view.bids and not view.asks:
            return Text("No levels", style="dim")

        decimals = get_price_decimals(view.symbol)
        max_volume = max([lvl.volume for lvl in (*view.bids, *view.asks)] + [Decimal("0.001")])
        tiny_threshold = max_volume * Decimal("0.08")

        table = Table(
            show_header=True,
            header_style=HEADER_COLOR,
            box=None,
            padding=(0, 1),
            collapse_padding=True,
        )

        table.add_column("Mk", justify="left", width=4)
        table.add_column("Price", justify="right", width=14)
        table.add_column("Size", justify="right", width=10)
        table.add_column("Total", justify="right", width=10)
        table.add_column("Depth", justify="left", width=20, no_wrap=True)

        # Asks on top, best ask closest to the spread
        for level in reversed(view.asks):
            table.add_row(
                self._markers(level, view),
                Text(f"{level.price:.{decimals}f}", style=ASK_COLOR),
                Text(format_qty(level.volume, level.volume < tiny_threshold), style=PRICE_COLOR),
                Text(format_qty(level.cumulative)),
                make_bar(level.cumulative, view.max_total, 20, ASK_COLOR),
            )

        table.add_row(
            Text(""),
            Text(view.mid_price, style="bold"),
            Text(f"spr {view.spread}", style="dim"),
            Text(""),
            Text(""),
        )

        for level in view.bids:
            table.add_row(
                self._markers(level, view),
                Text(f"{level.price:.{decimals}f}", style=BID_COLOR),
                Text(format_qty(level.volume, level.volume < tiny_threshold), style=PRICE_COLOR),
                Text(format_qty(level.cumulative)),
                make_bar(level.cumulative, view.max_total, 20, BID_COLOR),
            )

        return table


class StatusBar(Static):
    """Status bar showing symbol, spread, imbalance and feed health."""

    DEFAULT_CSS = """
    StatusBar {
        dock: top;
        height: 3;
        padding: 0 2;
        background: #0f172a;
    }
    """

    def __init__(self) -> None:
        super().__init__()
        self._view: Optional[BookView] = None
        self.settings: str = ""

    def update_view(self, view: BookView, settings: str) -> None:
        self._view = view
        self.settings = settings
        self.refresh()

    def render(self) -> RenderableType:
        if self._view is None:
            return Text("Connecting...", style="dim")

        view = self._view
        decimals = get_price_decimals(view.symbol)
        best_bid = f"{view.best_bid:.{decimals}f}" if view.best_bid is not None else "N/A"
        best_ask = f"{view.best_ask:.{decimals}f}" if view.best_ask is not None else "N/A"

        parts = [
            Text(f" {view.symbol} ", style="bold white on #1e40af"),
            Text("  "),
            Text(view.status.value.upper(), style=STATUS_STYLES[view.status]),
            Text("  Bid: ", style="dim"),
            Text(best_bid, style=BID_COLOR),
            Text("  Ask: ", style="dim"),
            Text(best_ask, style=ASK_COLOR),
            Text("  Spread: ", style="dim"),
            Text(view.spread, style="yellow"),
            Text("  Mid: ", style="dim"),
            Text(view.mid_price),
            Text("  Imb: ", style="dim"),
            Text(f"{view.imbalance.ratio * 100:.0f}%", style=BID_COLOR if view.imbalance.ratio > 0.5 else ASK_COLOR),
        ]
        if view.mode is Mode.LIVE:
            parts += [
                Text("  │  ", style="dim"),
                Text("Latency: ", style="dim"),
                Text(f"{view.latency_ms}ms", style="cyan"),
                Text("  Updates/s: ", style="dim"),
                Text(f"{view.updates_per_sec:.1f}", style="cyan"),
                Text("  Spoofs: ", style="dim"),
                Text(str(len(view.spoof_alerts)), style=SPOOF_COLOR),
            ]
        elif view.replay is not None:
            replay = view.replay
            position = f"{replay.index + 1}/{replay.length}" if replay.length else "0/0"
            parts += [
                Text("  │  ", style="dim"),
                Text(f"{replay.state.value} ", style="bold"),
                Text(position),
                Text(f"  {format_time(replay.timestamp_ms)}", style="dim"),
                Text(f"  {replay.speed:g}x", style="cyan"),
            ]

        result = Text()
        for p in parts:
            result.append(p)
        result.append(f"\n{self.settings}", style="dim")
        if view.error:
            result.append(f"  Error: {view.error}", style="red")
        return result


class DOMApp(App):
    """Main DOM Replay application."""

    CSS = """
    Screen {
        background: #0f172a;
    }

    #main-container {
        width: 100%;
        height: 100%;
        padding: 1 2;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("t", "cycle_tick", "Tick"),
        ("d", "cycle_range", "Range"),
        ("space", "play_pause", "Play/Pause"),
        ("left", "jump_back", "-10s"),
        ("right", "jump_forward", "+10s"),
        ("comma", "step_back", "Prev"),
        ("full_stop", "step_forward", "Next"),
        ("s", "cycle_speed", "Speed"),
    ]

    def __init__(
        self,
        engine: BookEngine,
        tick_size: float = 1,
        depth: int = 20,
        depth_range_percent: float = 5,
        imbalance_depth: int = 10,
    ) -> None:
        super().__init__()
        self.engine = engine
        self.tick_size = tick_size
        self.depth = depth
        self.depth_range_percent = depth_range_percent
        self.imbalance_depth = imbalance_depth
        self._status_bar: Optional[StatusBar] = None
        self._dom_table: Optional[DOMTable] = None

    def compose(self) -> ComposeResult:
        self._status_bar = StatusBar()
        self._dom_table = DOMTable(self.engine)

        yield self._status_bar
        yield Container(self._dom_table, id="main-container")
        yield Footer()

    async def on_mount(self) -> None:
        """Start the render timer."""
        self.set_interval(REFRESH_INTERVAL_SEC, self._refresh_view)

    def _settings_text(self) -> str:
        range_text = "no limit" if self.depth_range_percent >= DEPTH_RANGES[-1] else f"±{self.depth_range_percent}%"
        return f"Tick {self.tick_size:g}  Depth {self.depth}  Range {range_text}  Imbalance@{self.imbalance_depth}"

    def _refresh_view(self) -> None:
        view = self.engine.view(
            tick_size=self.tick_size,
            depth=self.depth,
            depth_range_percent=self.depth_range_percent,
            imbalance_depth=self.imbalance_depth,
        )
        if self._status_bar:
            self._status_bar.update_view(view, self._settings_text())
        if self._dom_table:
            self._dom_table.update_view(view, self.tick_size)

    def action_cycle_tick(self) -> None:
        sizes = list(TICK_SIZES)
        position = sizes.index(self.tick_size) if self.tick_size in sizes else -1
        self.tick_size = sizes[(position + 1) % len(sizes)]

    def action_cycle_range(self) -> None:
        ranges = list(DEPTH_RANGES)
        position = ranges.index(self.depth_range_percent) if self.depth_range_percent in ranges else -1
        self.depth_range_percent = ranges[(position + 1) % len(ranges)]

    def action_play_pause(self) -> None:
        if self.engine.replay is not None:
            self.engine.replay.toggle()

    def action_jump_back(self) -> None:
        if self.engine.replay is not None:
            self.engine.replay.jump_back()

    def action_jump_forward(self) -> None:
        if self.engine.replay is not None:
            self.engine.replay.jump_forward()

    def action_step_back(self) -> None:
        if self.engine.replay is not None:
            self.engine.replay.step(-1)

    def action_step_forward(self) -> None:
        if self.engine.replay is not None:
            self.engine.replay.step(1)

    def action_cycle_speed(self) -> None:
        if self.engine.replay is not None:
            self.engine.replay.cycle_speed()


async def run_ui(engine: BookEngine, **settings) -> None:
    """Run the TUI application."""
    app = DOMApp(engine, **settings)
    await app.run_async()
