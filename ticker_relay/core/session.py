"""
core/session.py

Per-connection state machine for downstream subscribers.

    CONNECTING ──run()──▶ STREAMING ──close / error──▶ CLOSED

One Session exists per accepted WebSocket. It pushes an initial snapshot,
then waits on two event sources at once:
  - the next inbound client message
  - the next tick of a fixed-schedule timer
and pushes a fresh query result whenever either one calls for it.

Sessions share nothing but the store. The cursor (page or symbol) is
private to the session.
"""

import asyncio
import logging
from enum import Enum, auto
from typing import Optional

from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from ticker_relay.feeds.store import MAX_OFFSET, StoreError, TickerStore
from ticker_relay.format.schema import decode_page_request, encode_symbol_rows

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 30
ALL_SYMBOLS_INTERVAL_SECONDS = 60.0
SYMBOL_INTERVAL_SECONDS = 10.0


class SessionState(Enum):
    CONNECTING = auto()  # constructed, handshake not yet confirmed
    STREAMING  = auto()  # snapshot sent, serving pushes
    CLOSED     = auto()  # terminal: no further I/O


class Ticker:
    """
    Fixed-schedule timer. Deadlines advance by exactly one interval per tick,
    so time spent pushing in between never shifts the schedule.
    """

    def __init__(self, interval: float):
        self.interval = interval
        self._next: Optional[float] = None

    async def wait(self) -> None:
        loop = asyncio.get_running_loop()
        if self._next is None:
            self._next = loop.time() + self.interval
        delay = self._next - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        self._next += self.interval


class Session:
    """
    Base state machine. Subclasses decide what a snapshot is and how an
    inbound message moves the cursor.

    connection is an already-upgraded websockets ServerConnection (anything
    with async recv/send/close works: tests pass a fake).
    """

    def __init__(self, connection, store: TickerStore, interval: float):
        self._connection = connection
        self._store = store
        self._ticker = Ticker(interval)
        self.state = SessionState.CONNECTING
        self.pushes = 0
        self.close_reason: Optional[str] = None

    # --- To override ---

    async def snapshot(self) -> str:
        """Query the store for the current cursor and return the JSON payload."""
        raise NotImplementedError

    def on_message(self, message: str) -> bool:
        """Handle one inbound text message. Return True if it warrants a push."""
        raise NotImplementedError

    # --- Lifecycle ---

    async def run(self) -> None:
        """
        Drive the session until the client goes away or a push fails.
        Never raises for transport or store failures: they close the session.
        """
        if self.state is not SessionState.CONNECTING:
            raise RuntimeError(f"session already {self.state.name.lower()}")
        self.state = SessionState.STREAMING
        logger.info("%s streaming", self)

        try:
            if await self._push():
                await self._stream()
        finally:
            self.state = SessionState.CLOSED
            logger.info("%s closed (%s) after %d pushes", self, self.close_reason, self.pushes)

    async def _stream(self) -> None:
        """
        Multiplexed wait. Both waits stay pending across iterations: a
        message arriving never cancels or resets the timer, and a tick that
        lands with a message is served in the same pass.
        """
        inbound: Optional[asyncio.Task] = None
        tick: Optional[asyncio.Task] = None
        try:
            while self.state is SessionState.STREAMING:
                if inbound is None:
                    inbound = asyncio.create_task(self._connection.recv())
                if tick is None:
                    tick = asyncio.create_task(self._ticker.wait())

                done, _ = await asyncio.wait({inbound, tick}, return_when=asyncio.FIRST_COMPLETED)

                if inbound in done:
                    task, inbound = inbound, None
                    if not await self._handle_inbound(task):
                        return

                if tick in done:
                    tick = None
                    if not await self._push():
                        return
        finally:
            pending = [task for task in (inbound, tick) if task is not None and not task.done()]
            for task in pending:
                task.cancel()
            # Cancelling this task while it waits here still propagates
            await asyncio.gather(*pending, return_exceptions=True)

    async def _handle_inbound(self, task: asyncio.Task) -> bool:
        try:
            message = task.result()
        except ConnectionClosedOK:
            self.close_reason = "client closed"
            return False
        except ConnectionClosed as e:
            self.close_reason = "transport error"
            logger.warning("%s receive failed: %s", self, e)
            return False

        if isinstance(message, bytes):
            logger.debug("%s ignoring binary frame", self)
            return True
        if self.on_message(message):
            return await self._push()
        return True

    async def _push(self) -> bool:
        """Send one fresh snapshot. False means the session is over."""
        try:
            payload = await self.snapshot()
        except StoreError as e:
            self.close_reason = "store error"
            logger.error("%s query failed: %s", self, e)
            await self._connection.close(1011, "store unavailable")
            return False

        try:
            await self._connection.send(payload)
        except ConnectionClosed as e:
            self.close_reason = "send failed"
            logger.warning("%s push failed: %s", self, e)
            return False

        self.pushes += 1
        logger.debug("%s pushed %d bytes", self, len(payload))
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.state.name})"


class AllSymbolsSession(Session):
    """Volume-ranked view of every symbol, paginated. Cursor = page number."""

    def __init__(
        self,
        connection,
        store: TickerStore,
        interval: float = ALL_SYMBOLS_INTERVAL_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        super().__init__(connection, store, interval)
        self.page = 1
        self.page_size = page_size

    async def snapshot(self) -> str:
        page = await self._store.latest_by_volume(self.page, self.page_size)
        return page.model_dump_json()

    def on_message(self, message: str) -> bool:
        result = decode_page_request(message)
        if not result.ok:
            logger.warning("%s discarding bad page request (%s)", self, result.error)
            return False
        if result.value.page is None:
            return False
        if (result.value.page - 1) * self.page_size > MAX_OFFSET:
            logger.warning("%s discarding out-of-range page %d", self, result.value.page)
            return False
        self.page = result.value.page
        return True

    def __repr__(self) -> str:
        return f"AllSymbolsSession(page={self.page}, {self.state.name})"


class SymbolSession(Session):
    """Recent history for one symbol. Nothing to paginate: any message re-pushes."""

    def __init__(self, connection, store: TickerStore, symbol: str, interval: float = SYMBOL_INTERVAL_SECONDS):
        super().__init__(connection, store, interval)
        self.symbol = symbol

    async def snapshot(self) -> str:
        rows = await self._store.recent_for_symbol(self.symbol)
        return encode_symbol_rows(rows)

    def on_message(self, message: str) -> bool:
        return True

    def __repr__(self) -> str:
        return f"SymbolSession({self.symbol}, {self.state.name})"
