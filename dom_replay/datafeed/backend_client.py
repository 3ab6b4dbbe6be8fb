"""
Orderbook backend client with async orchestration.

Handles:
1. WebSocket stream of full book snapshots per instrument
2. REST history range queries for replay
3. Reconnect loop that follows the engine's context (symbol/mode) changes

Wire formats:
- WS  {api}/ws/orderbook/{base}/{quote}
      {"type": "snapshot", "data": {symbol, timestamp, bids, asks}}
      {"type": "error", "message": "..."}
- GET {api}/api/orderbook/{base}/{quote}/history?from=<RFC3339>&to=<RFC3339>
      [{symbol, timestamp, bids, asks}, ...]  ascending by timestamp

Notes:
- Uses orjson for fast JSON parsing
- Minimal logging in hot path
- All I/O is non-blocking (pure asyncio)
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

import aiohttp
import orjson

from ..config import DEFAULT_API_URL
from ..errors import FetchError, TransportError
from ..types import Mode, OrderbookSnapshot
from .normalizer import format_timestamp, normalize_snapshot, now_ms

if TYPE_CHECKING:
    from ..engine.book_engine import BookEngine

logger = logging.getLogger(__name__)

RECONNECT_DELAY_SEC = 2.0
HISTORY_TIMEOUT_SEC = 30.0


def split_symbol(symbol: str) -> tuple[str, str]:
    """'XBT/USD' -> ('XBT', 'USD')"""
    base, sep, quote = symbol.partition("/")
    if not sep or not base or not quote:
        raise ValueError(f"Symbol must be BASE/QUOTE, got {symbol!r}")
    return base, quote


def parse_message(raw: str | bytes, receive_ms: int, symbol: str = "") -> Optional[OrderbookSnapshot]:
    """
    Decode one WebSocket message.

    Returns a snapshot, None for messages that carry no book, and raises
    TransportError for unparseable payloads and server-reported errors.
    """
    try:
        message = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise TransportError(f"Unparseable message: {e}") from e

    if not isinstance(message, dict):
        return None

    kind = message.get("type")
    if kind == "snapshot":
        return normalize_snapshot(message.get("data"), receive_ms=receive_ms, symbol=symbol)
    if kind == "error":
        raise TransportError(str(message.get("message", "unknown server error")))
    return None


class BackendClient:
    """
    Async client for the orderbook backend.

    Usage:
        client = BackendClient("http://localhost:3033")
        engine = BookEngine("XBT/USD", history_source=client.history)
        await client.run(engine)
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        reconnect_delay_sec: float = RECONNECT_DELAY_SEC,
        history_timeout_sec: float = HISTORY_TIMEOUT_SEC,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.reconnect_delay_sec = reconnect_delay_sec
        self.history_timeout_sec = history_timeout_sec

        self._session: Optional[aiohttp.ClientSession] = None
        self._running = False
        self.messages_received: int = 0

    def ws_url(self, symbol: str) -> str:
        base, quote = split_symbol(symbol)
        if self.api_url.startswith("https"):
            host = self.api_url[len("https://"):]
            scheme = "wss"
        else:
            host = self.api_url.split("://", 1)[-1]
            scheme = "ws"
        return f"{scheme}://{host}/ws/orderbook/{base}/{quote}"

    def history_url(self, symbol: str) -> str:
        base, quote = split_symbol(symbol)
        return f"{self.api_url}/api/orderbook/{base}/{quote}/history"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def history(self, symbol: str, start_ms: int, end_ms: int) -> list[OrderbookSnapshot]:
        """
        Fetch snapshots for [start_ms, end_ms], ascending by timestamp.

        Raises FetchError on HTTP or payload failure. Cancellation propagates.
        """
        session = await self._get_session()
        params = {"from": format_timestamp(start_ms), "to": format_timestamp(end_ms)}
        timeout = aiohttp.ClientTimeout(total=self.history_timeout_sec)

        try:
            async with session.get(self.history_url(symbol), params=params, timeout=timeout) as resp:
                if resp.status >= 400:
                    raise FetchError(f"HTTP {resp.status}")
                payload: Any = orjson.loads(await resp.read())
        except aiohttp.ClientError as e:
            raise FetchError(f"History request failed: {e}") from e
        except orjson.JSONDecodeError as e:
            raise FetchError(f"History response is not JSON: {e}") from e

        if isinstance(payload, dict) and "error" in payload:
            raise FetchError(str(payload["error"]))
        if not isinstance(payload, list):
            raise FetchError("History response is not a list")

        received = now_ms()
        return [normalize_snapshot(item, receive_ms=received, symbol=symbol) for item in payload]

    async def _stream(self, engine: BookEngine, symbol: str, context_id: int) -> None:
        """One WebSocket connection, until it drops or the engine context changes."""
        session = await self._get_session()
        async with session.ws_connect(self.ws_url(symbol), heartbeat=30.0) as ws:
            logger.info(f"[FEED] Connected to {symbol} orderbook stream")
            engine.set_connection(True, context_id=context_id)

            async for msg in ws:
                if not self._running or engine.context_id != context_id:
                    break

                if msg.type == aiohttp.WSMsgType.TEXT or msg.type == aiohttp.WSMsgType.BINARY:
                    self.messages_received += 1
                    try:
                        snapshot = parse_message(msg.data, now_ms(), symbol)
                    except TransportError as e:
                        # Bad message or server-side error; the stream itself is fine
                        logger.warning(f"[FEED] {symbol}: {e}")
                        engine.set_connection(True, error=str(e), context_id=context_id)
                        continue
                    if snapshot is not None:
                        engine.on_snapshot(snapshot, context_id=context_id)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise TransportError(f"WebSocket error: {ws.exception()}")

        if self._running and engine.context_id == context_id:
            raise TransportError(f"WebSocket closed for {symbol}")

    async def run(self, engine: BookEngine) -> None:
        """
        Feed the engine with live snapshots until stop() is called.

        Follows the engine: reconnects on symbol change and idles in replay mode.
        Transport failures become a connection status and are retried.
        """
        self._running = True
        try:
            while self._running:
                if engine.mode is Mode.REPLAY:
                    await asyncio.sleep(0.25)
                    continue

                symbol, context_id = engine.symbol, engine.context_id
                try:
                    await self._stream(engine, symbol, context_id)
                except (TransportError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                    if engine.context_id != context_id:
                        continue
                    logger.warning(f"[FEED] {symbol}: {e}; reconnecting in {self.reconnect_delay_sec}s")
                    engine.set_connection(False, error=str(e), context_id=context_id)
                    await asyncio.sleep(self.reconnect_delay_sec)
        finally:
            await self.close()

    def stop(self) -> None:
        """Signal the client to stop."""
        self._running = False

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
