"""
feeds/binance.py

Binance miniTicker WebSocket ingestor.

Connects to the all-market miniTicker stream, decodes each message into a
batch of RawTick, and writes every tick through the TickerStore.

Binance docs: https://developers.binance.com/docs/derivatives/usds-margined-futures/websocket-market-streams/All-Market-Mini-Tickers-Stream
Message format: [{"e":"24hrMiniTicker","E":123456789,"s":"BTCUSDT","c":"0.0025","o":"0.0010","h":"0.0025","l":"0.0010","v":"10000","q":"18"}, ...]

Usage:
    feed = BinanceFeed(url=settings.feed_url, store=store)
    await feed.start()            # spawns the reconnecting supervisor task
    await feed.stop()             # clean shutdown

run_once() is a single connection attempt with no retry: the supervisor
loop (_connection_loop) owns reconnect and backoff.
"""

import asyncio
import logging
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ticker_relay.feeds.store import StoreError, TickerStore
from ticker_relay.format.schema import decode_batch

logger = logging.getLogger(__name__)

BINANCE_MINI_TICKER_WSS = "wss://fstream.binance.com/ws/!miniTicker@arr"

# How long to wait before reconnecting after a drop
RECONNECT_DELAY_SECONDS = 3
MAX_RECONNECT_DELAY_SECONDS = 60

PING_INTERVAL_SECONDS = 20


class BinanceFeed:
    """
    Manages the upstream WebSocket connection lifecycle.

    Designed to run as a long-lived asyncio task. Handles:
      - Connecting and pumping messages into the store
      - Discarding messages that don't decode as a ticker batch
      - Logging (not raising) individual store write failures
      - Automatic reconnection with backoff, outside the single attempt
    """

    def __init__(self, url: str, store: TickerStore):
        self._url = url
        self._store = store
        self._ws = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._reconnect_delay = RECONNECT_DELAY_SECONDS

        # Counters: logged on disconnect, handy in tests
        self.messages_received = 0
        self.messages_discarded = 0
        self.ticks_written = 0
        self.write_failures = 0

    # --- Public API ---

    async def start(self) -> None:
        """
        Start the feed. Runs the connection loop in the background.
        Call this once: it spawns an asyncio task that manages reconnection.
        """
        self._running = True
        self._task = asyncio.create_task(self._connection_loop(), name="binance_feed")
        logger.info("BinanceFeed started")

    async def stop(self) -> None:
        """Graceful shutdown. Safe to call more than once."""
        self._running = False
        if self._ws is not None:
            await self._ws.close()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("BinanceFeed stopped")

    async def run(self) -> None:
        """Run the reconnecting loop in the current task until stop() or cancellation."""
        self._running = True
        await self._connection_loop()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # --- Connection lifecycle ---

    async def _connection_loop(self) -> None:
        """
        Supervisor: restarts run_once() whenever the connection drops.
        Backs off exponentially up to 60 seconds between attempts.
        """
        attempt = 0
        while self._running:
            try:
                attempt += 1
                logger.info("connecting to %s (attempt %d)", self._url, attempt)
                await self.run_once()
                # Clean exit: reset backoff
                attempt = 0
                self._reconnect_delay = RECONNECT_DELAY_SECONDS
            except ConnectionClosed as e:
                logger.warning("connection closed: %s", e)
            except OSError as e:
                logger.error("feed transport error: %s", e)
            except Exception as e:
                logger.error("feed error: %s", e, exc_info=True)

            if self._running:
                logger.info("reconnecting in %ds", self._reconnect_delay)
                await asyncio.sleep(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, MAX_RECONNECT_DELAY_SECONDS)

    async def run_once(self) -> None:
        """
        Single connection session: connect, then pump messages until the
        connection drops. Connection errors propagate to the caller.
        """
        async with websockets.connect(
            self._url,
            ping_interval=PING_INTERVAL_SECONDS,
            ping_timeout=10,
            max_size=2**22,  # the all-market array runs to a few hundred KB
        ) as ws:
            self._ws = ws
            logger.info("connected to upstream feed")
            try:
                async for raw in ws:
                    await self._handle_message(raw)
            finally:
                self._ws = None
                logger.info(
                    "upstream session ended: %d messages, %d discarded, %d ticks written, %d write failures",
                    self.messages_received,
                    self.messages_discarded,
                    self.ticks_written,
                    self.write_failures,
                )

    # --- Message handling ---

    async def _handle_message(self, raw: str | bytes) -> None:
        """
        Decode one upstream message and persist every tick in it.
        A message that isn't a ticker batch is dropped; the feed carries on.
        """
        self.messages_received += 1
        result = decode_batch(raw)
        if not result.ok:
            self.messages_discarded += 1
            logger.warning("discarding undecodable message (%s): %.100s", result.error, raw)
            return

        for tick in result.value:
            try:
                await self._store.insert(tick)
                self.ticks_written += 1
            except StoreError as e:
                self.write_failures += 1
                logger.error("could not store %s @ %d: %s", tick.symbol, tick.event_time, e)
