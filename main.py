"""
main.py

Wires the full stack together end to end.
Run with: python main.py [config.yaml]

Needs DATABASE_URL, WEBSOCKET_URL and FEED_URL: from the environment, a
.env file, or the optional YAML config. For a local run without Postgres:

    DATABASE_URL=sqlite:///ticks.db WEBSOCKET_URL=127.0.0.1:8080 \
    FEED_URL=wss://fstream.binance.com/ws/!miniTicker@arr python main.py
"""

import asyncio
import logging
import os
import sys
from datetime import timedelta

import websockets

from ticker_relay.core.router import Router
from ticker_relay.feeds.binance import BinanceFeed
from ticker_relay.feeds.store import StoreError, TickerStore
from ticker_relay.format.parser import ConfigError, Settings, load_settings

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("ticker_relay")

# How often to sweep expired rows when the database has no retention policy
PURGE_INTERVAL_SECONDS = 60


async def purge_loop(store: TickerStore) -> None:
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            await store.purge_expired()
        except StoreError as e:
            logger.error("retention sweep failed: %s", e)


async def main(settings: Settings) -> None:
    # --- Build the stack ---
    store = TickerStore.from_url(
        settings.database_url,
        timescale=settings.timescale,
        retention=timedelta(seconds=settings.retention_seconds),
    )
    router = Router(
        store,
        all_symbols_interval=settings.all_symbols_interval,
        symbol_interval=settings.symbol_interval,
        page_size=settings.page_size,
    )
    feed = BinanceFeed(url=settings.feed_url, store=store)

    purger = None

    # --- Run ---
    host, port = settings.bind_address
    try:
        await store.initialize()
        if not store.manages_retention:
            purger = asyncio.create_task(purge_loop(store), name="retention_sweep")
        await feed.start()
        async with websockets.serve(router.handle, host, port, process_request=router.process_request) as server:
            logger.info("WebSocket server listening on %s:%d", host, port)
            await server.serve_forever()
    finally:
        await feed.stop()
        if purger is not None:
            purger.cancel()
        await store.close()


def run() -> int:
    try:
        settings = load_settings(sys.argv[1] if len(sys.argv) > 1 else None)
    except ConfigError as e:
        logger.critical("%s", e)
        return 2

    try:
        asyncio.run(main(settings))
    except StoreError as e:
        logger.critical("store unavailable: %s", e)
        return 1
    except OSError as e:
        logger.critical("could not bind %s: %s", settings.websocket_url, e)
        return 1
    except KeyboardInterrupt:
        logger.info("shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(run())
