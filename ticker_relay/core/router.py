"""
core/router.py

Routes each incoming WebSocket connection to a Session, before and after the
handshake:

  process_request() : runs on the raw HTTP upgrade request, before any
                       handshake. Unknown paths and symbols with no stored
                       data are answered with a plain HTTP error and the
                       connection is closed: no channel is ever opened.
  handle()          : runs on the upgraded connection and drives the
                       matching Session until it closes.

Path grammar:
  /                      → all-symbols session
  /currency/<SYMBOL>     → single-symbol session (SYMBOL = [A-Z]+)
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from typing import Optional
from urllib.parse import urlsplit

from ticker_relay.core.session import (
    ALL_SYMBOLS_INTERVAL_SECONDS,
    DEFAULT_PAGE_SIZE,
    SYMBOL_INTERVAL_SECONDS,
    AllSymbolsSession,
    Session,
    SymbolSession,
)
from ticker_relay.feeds.store import StoreError, TickerStore

logger = logging.getLogger(__name__)

SYMBOL_PATH = re.compile(r"/currency/([A-Z]+)")


class RouteKind(str, Enum):
    ALL_SYMBOLS = "all_symbols"
    SINGLE_SYMBOL = "single_symbol"


@dataclass(frozen=True)
class Route:
    kind: RouteKind
    symbol: Optional[str] = None


def classify(path: str) -> Optional[Route]:
    """Map a request path onto a Route, or None if nothing serves it."""
    path = urlsplit(path).path
    if path == "/":
        return Route(RouteKind.ALL_SYMBOLS)
    match = SYMBOL_PATH.fullmatch(path)
    if match:
        return Route(RouteKind.SINGLE_SYMBOL, symbol=match.group(1))
    return None


class Router:
    """
    Owns the per-connection wiring. One instance per server; holds no
    per-connection state, so every connection is independent.

    Usage:
        router = Router(store)
        async with websockets.serve(router.handle, host, port,
                                    process_request=router.process_request) as server:
            await server.serve_forever()
    """

    def __init__(
        self,
        store: TickerStore,
        all_symbols_interval: float = ALL_SYMBOLS_INTERVAL_SECONDS,
        symbol_interval: float = SYMBOL_INTERVAL_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self._store = store
        self._all_symbols_interval = all_symbols_interval
        self._symbol_interval = symbol_interval
        self._page_size = page_size

    # --- Before the handshake ---

    async def process_request(self, connection, request):
        """
        websockets process_request hook. Returning None lets the handshake
        proceed; returning a Response rejects the connection without one.
        """
        route = classify(request.path)
        peer = _peer(connection)

        if route is None:
            logger.warning("rejecting %s: unknown path %s", peer, request.path)
            return connection.respond(HTTPStatus.NOT_FOUND, "Unknown path\n")

        if route.kind is RouteKind.SINGLE_SYMBOL:
            try:
                rows = await self._store.recent_for_symbol(route.symbol)
            except StoreError as e:
                logger.error("rejecting %s: could not check %s: %s", peer, route.symbol, e)
                return connection.respond(HTTPStatus.SERVICE_UNAVAILABLE, "Store unavailable\n")
            if not rows:
                logger.warning("rejecting %s: no data for %s", peer, route.symbol)
                return connection.respond(HTTPStatus.NOT_FOUND, f"No data for {route.symbol}\n")

        logger.info("accepting %s for %s", peer, request.path)
        return None

    # --- After the handshake ---

    def session_for(self, route: Route, connection) -> Session:
        if route.kind is RouteKind.ALL_SYMBOLS:
            return AllSymbolsSession(
                connection,
                self._store,
                interval=self._all_symbols_interval,
                page_size=self._page_size,
            )
        return SymbolSession(connection, self._store, route.symbol, interval=self._symbol_interval)

    async def handle(self, connection) -> None:
        """websockets connection handler: one call per upgraded connection."""
        route = classify(connection.request.path)
        if route is None:
            # process_request already rejects these; only reachable without the hook
            await connection.close(1008, "unknown path")
            return
        session = self.session_for(route, connection)
        await session.run()


def _peer(connection) -> str:
    address = getattr(connection, "remote_address", None)
    if not address:
        return "unknown"
    return f"{address[0]}:{address[1]}"
