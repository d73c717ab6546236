"""
tests/test_feeds.py

Tests for the feeds layer: ticker store and Binance ingestor.
Run with: pytest tests/test_feeds.py -v
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import websockets
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from ticker_relay.feeds.binance import BinanceFeed
from ticker_relay.feeds.store import (
    RECENT_LIMIT,
    StoreError,
    TickerStore,
    async_database_url,
    event_time_to_datetime,
    parse_decimal,
)
from ticker_relay.format.schema import RawTick


# ============================================================
# Helpers
# ============================================================

BASE_MS = 1_700_000_000_000  # 2023-11-14T22:13:20Z


def make_raw(
    symbol="BTCUSDT",
    event_time=BASE_MS,
    close="100.5",
    open="99.0",
    high="101.0",
    low="98.5",
    volume="500",
) -> RawTick:
    return RawTick(E=event_time, s=symbol, c=close, o=open, h=high, l=low, q=volume)


def wire(symbol="BTCUSDT", event_time=BASE_MS, close="100.5", volume="500") -> dict:
    """A miniTicker object as Binance sends it, extra keys included."""
    return {
        "e": "24hrMiniTicker",
        "E": event_time,
        "s": symbol,
        "c": close,
        "o": "99.0",
        "h": "101.0",
        "l": "98.5",
        "v": "12.3",
        "q": volume,
    }


async def seed_volumes(store: TickerStore, volumes: dict[str, int]) -> None:
    for symbol, volume in volumes.items():
        await store.insert(make_raw(symbol=symbol, volume=str(volume)))


# ============================================================
# Field parsing
# ============================================================

class TestParsing:
    def test_parse_decimal_valid(self):
        assert parse_decimal("123.456") == Decimal("123.456")

    def test_parse_decimal_garbage_is_zero(self):
        assert parse_decimal("abc") == Decimal(0)
        assert parse_decimal("") == Decimal(0)

    def test_parse_decimal_non_finite_is_zero(self):
        assert parse_decimal("NaN") == Decimal(0)
        assert parse_decimal("Infinity") == Decimal(0)

    def test_event_time_conversion_is_exact(self):
        ts = event_time_to_datetime(BASE_MS + 123)
        assert ts == datetime(2023, 11, 14, 22, 13, 20, 123000, tzinfo=timezone.utc)

    def test_async_database_url_postgres(self):
        url = async_database_url("postgres://user:pw@db:5432/ticks")
        assert url == "postgresql+asyncpg://user:pw@db:5432/ticks"

    def test_async_database_url_sqlite(self):
        assert async_database_url("sqlite:///ticks.db") == "sqlite+aiosqlite:///ticks.db"

    def test_async_database_url_explicit_driver_untouched(self):
        url = "postgresql+psycopg://user@db/ticks"
        assert async_database_url(url) == url


# ============================================================
# TickerStore
# ============================================================

class TestTickerStore:
    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, store):
        await store.initialize()
        await store.initialize()
        await store.insert(make_raw())
        assert len(await store.recent_for_symbol("BTCUSDT")) == 1

    @pytest.mark.asyncio
    async def test_sqlite_does_not_manage_retention(self, store):
        assert store.manages_retention is False

    @pytest.mark.asyncio
    async def test_insert_and_read_back(self, store):
        await store.insert(make_raw(event_time=BASE_MS + 250))
        rows = await store.recent_for_symbol("BTCUSDT")
        assert len(rows) == 1
        row = rows[0]
        assert row.symbol == "BTCUSDT"
        assert row.close_price == Decimal("100.5")
        assert row.open_price == Decimal("99")
        assert row.high_price == Decimal("101")
        assert row.low_price == Decimal("98.5")
        assert row.quote_volume == Decimal("500")
        assert row.event_time == event_time_to_datetime(BASE_MS + 250)
        assert row.event_time.tzinfo is not None

    @pytest.mark.asyncio
    async def test_duplicate_insert_is_noop(self, store):
        await store.insert(make_raw())
        await store.insert(make_raw())  # same (symbol, event time): silent success
        await store.insert(make_raw(close="999"))  # same key, different payload: still ignored
        rows = await store.recent_for_symbol("BTCUSDT")
        assert len(rows) == 1
        assert rows[0].close_price == Decimal("100.5")

    @pytest.mark.asyncio
    async def test_malformed_field_stored_as_zero(self, store):
        await store.insert(make_raw(open="abc"))
        rows = await store.recent_for_symbol("BTCUSDT")
        assert len(rows) == 1
        assert rows[0].open_price == Decimal(0)
        assert rows[0].close_price == Decimal("100.5")

    @pytest.mark.asyncio
    async def test_recent_for_unknown_symbol_is_empty(self, store):
        await store.insert(make_raw())
        assert await store.recent_for_symbol("DOGEUSDT") == []

    @pytest.mark.asyncio
    async def test_recent_is_bounded_and_newest_first(self, store):
        for i in range(15):
            await store.insert(make_raw(event_time=BASE_MS + i * 1000, close=str(100 + i)))
        rows = await store.recent_for_symbol("BTCUSDT")
        assert len(rows) == RECENT_LIMIT
        stamps = [r.event_time for r in rows]
        assert stamps == sorted(stamps, reverse=True)
        assert rows[0].close_price == Decimal("114")

    @pytest.mark.asyncio
    async def test_ranking_by_volume(self, store):
        await store.insert(make_raw(symbol="BTCUSDT", volume="500"))
        await store.insert(make_raw(symbol="ETHUSDT", volume="900"))
        page = await store.latest_by_volume(1, 10)
        assert [r.symbol for r in page.data] == ["ETHUSDT", "BTCUSDT"]
        assert page.total == 2
        assert page.page == 1
        assert page.per_page == 10

    @pytest.mark.asyncio
    async def test_ranking_uses_latest_row_per_symbol(self, store):
        await store.insert(make_raw(symbol="BTCUSDT", event_time=BASE_MS, volume="1000"))
        await store.insert(make_raw(symbol="BTCUSDT", event_time=BASE_MS + 5000, close="105", volume="100"))
        await store.insert(make_raw(symbol="ETHUSDT", event_time=BASE_MS, volume="500"))

        page = await store.latest_by_volume(1, 10)
        assert [r.symbol for r in page.data] == ["ETHUSDT", "BTCUSDT"]
        btc = page.data[1]
        assert btc.price == Decimal("105")
        assert btc.volume == Decimal("100")
        assert page.total == 2  # distinct symbols, not rows

    @pytest.mark.asyncio
    async def test_pagination_covers_every_symbol_once(self, store):
        volumes = {f"SYM{c}USDT": v for c, v in zip("ABCDEFG", [70, 10, 50, 40, 60, 20, 30])}
        await seed_volumes(store, volumes)
        expected = sorted(volumes, key=lambda s: volumes[s], reverse=True)

        collected = []
        page_no = 1
        while True:
            page = await store.latest_by_volume(page_no, 3)
            assert page.total == 7
            collected.extend(r.symbol for r in page.data)
            if len(page.data) < 3:
                break
            page_no += 1

        assert collected == expected
        assert page_no == 3

    @pytest.mark.asyncio
    async def test_page_past_end_is_empty_with_total(self, store):
        await seed_volumes(store, {"BTCUSDT": 1, "ETHUSDT": 2})
        page = await store.latest_by_volume(5, 10)
        assert page.data == []
        assert page.total == 2
        assert page.page == 5

    @pytest.mark.asyncio
    async def test_ranking_is_deterministic(self, store):
        # Equal volumes fall back to symbol order
        await seed_volumes(store, {"XRPUSDT": 10, "ADAUSDT": 10, "BTCUSDT": 10, "ETHUSDT": 20})
        first = await store.latest_by_volume(1, 10)
        second = await store.latest_by_volume(1, 10)
        assert first == second
        assert [r.symbol for r in first.data] == ["ETHUSDT", "ADAUSDT", "BTCUSDT", "XRPUSDT"]

    @pytest.mark.asyncio
    async def test_invalid_page_rejected(self, store):
        with pytest.raises(ValueError):
            await store.latest_by_volume(0, 10)
        with pytest.raises(ValueError):
            await store.latest_by_volume(1, 0)

    @pytest.mark.asyncio
    async def test_initialize_adds_natural_key_to_existing_table(self):
        engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
        async with engine.begin() as conn:
            await conn.execute(text(
                "CREATE TABLE ticker_data (symbol TEXT NOT NULL, close_price NUMERIC, "
                "open_price NUMERIC, high_price NUMERIC, low_price NUMERIC, "
                "quote_volume NUMERIC, created_at TIMESTAMP NOT NULL)"
            ))
            await conn.execute(text(
                "CREATE INDEX idx_ticker_data_symbol ON ticker_data (symbol, created_at DESC)"
            ))
        store = TickerStore(engine)
        try:
            await store.initialize()
            await store.insert(make_raw())
            await store.insert(make_raw())
            assert len(await store.recent_for_symbol("BTCUSDT")) == 1
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_offset_beyond_bigint_rejected(self, store):
        with pytest.raises(ValueError):
            await store.latest_by_volume(10**18, 30)

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        page = await store.latest_by_volume(1, 30)
        assert page.data == []
        assert page.total == 0

    @pytest.mark.asyncio
    async def test_purge_expired_drops_old_rows(self, store):
        now = event_time_to_datetime(BASE_MS)
        old = BASE_MS - int(timedelta(hours=2).total_seconds() * 1000)
        await store.insert(make_raw(symbol="OLDUSDT", event_time=old))
        await store.insert(make_raw(symbol="NEWUSDT", event_time=BASE_MS - 1000))

        removed = await store.purge_expired(now=now)

        assert removed == 1
        assert await store.recent_for_symbol("OLDUSDT") == []
        assert len(await store.recent_for_symbol("NEWUSDT")) == 1

    @pytest.mark.asyncio
    async def test_insert_without_schema_raises_store_error(self):
        engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
        store = TickerStore(engine)  # never initialized: no table
        try:
            with pytest.raises(StoreError):
                await store.insert(make_raw())
            with pytest.raises(StoreError):
                await store.recent_for_symbol("BTCUSDT")
        finally:
            await store.close()


# ============================================================
# BinanceFeed: message handling
# ============================================================

class TestBinanceFeedMessageHandling:
    @pytest.mark.asyncio
    async def test_batch_written_to_store(self, store):
        feed = BinanceFeed(url="wss://example.invalid", store=store)
        batch = [wire("BTCUSDT", volume="500"), wire("ETHUSDT", volume="900")]

        await feed._handle_message(json.dumps(batch))

        page = await store.latest_by_volume(1, 10)
        assert [r.symbol for r in page.data] == ["ETHUSDT", "BTCUSDT"]
        assert feed.ticks_written == 2
        assert feed.messages_discarded == 0

    @pytest.mark.asyncio
    async def test_malformed_field_degrades_not_rejected(self, store):
        feed = BinanceFeed(url="wss://example.invalid", store=store)
        tick = wire()
        tick["o"] = "abc"

        await feed._handle_message(json.dumps([tick]))

        rows = await store.recent_for_symbol("BTCUSDT")
        assert rows[0].open_price == Decimal(0)

    @pytest.mark.asyncio
    async def test_undecodable_message_discarded(self):
        store = AsyncMock()
        feed = BinanceFeed(url="wss://example.invalid", store=store)

        await feed._handle_message("not json at all")
        await feed._handle_message(json.dumps({"result": None, "id": 1}))
        await feed._handle_message(json.dumps([{"s": "BTCUSDT"}]))  # missing fields

        store.insert.assert_not_awaited()
        assert feed.messages_received == 3
        assert feed.messages_discarded == 3

    @pytest.mark.asyncio
    async def test_store_failure_does_not_stop_batch(self):
        store = AsyncMock()
        store.insert.side_effect = [StoreError("db down"), None, None]
        feed = BinanceFeed(url="wss://example.invalid", store=store)
        batch = [wire("BTCUSDT"), wire("ETHUSDT"), wire("XRPUSDT")]

        await feed._handle_message(json.dumps(batch))

        assert store.insert.await_count == 3
        assert feed.write_failures == 1
        assert feed.ticks_written == 2

    @pytest.mark.asyncio
    async def test_bytes_message_accepted(self, store):
        feed = BinanceFeed(url="wss://example.invalid", store=store)
        await feed._handle_message(json.dumps([wire()]).encode())
        assert len(await store.recent_for_symbol("BTCUSDT")) == 1


# ============================================================
# BinanceFeed: connection lifecycle
# ============================================================

class TestBinanceFeedLifecycle:
    @pytest.mark.asyncio
    async def test_run_once_consumes_until_upstream_closes(self, store):
        async def upstream(ws):
            await ws.send(json.dumps([wire("BTCUSDT", volume="500")]))
            await ws.send("garbage")
            await ws.send(json.dumps([wire("ETHUSDT", volume="900")]))

        async with websockets.serve(upstream, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            feed = BinanceFeed(url=f"ws://127.0.0.1:{port}", store=store)
            await asyncio.wait_for(feed.run_once(), timeout=5)

        assert feed.messages_received == 3
        assert feed.messages_discarded == 1
        assert feed.ticks_written == 2
        assert not feed.connected
        page = await store.latest_by_volume(1, 10)
        assert page.total == 2

    @pytest.mark.asyncio
    async def test_run_once_does_not_retry(self):
        feed = BinanceFeed(url="ws://127.0.0.1:1", store=AsyncMock())
        with patch("ticker_relay.feeds.binance.websockets.connect", MagicMock(side_effect=OSError("refused"))) as connect:
            with pytest.raises(OSError):
                await feed.run_once()
        assert connect.call_count == 1

    @pytest.mark.asyncio
    async def test_supervisor_reconnects_with_backoff(self):
        feed = BinanceFeed(url="ws://127.0.0.1:1", store=AsyncMock())
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise OSError("network drop")
            feed._running = False

        with patch.object(feed, "run_once", side_effect=flaky), \
             patch("ticker_relay.feeds.binance.asyncio.sleep", new=AsyncMock()) as sleep:
            await feed.run()

        assert calls == 3
        assert [c.args[0] for c in sleep.await_args_list] == [3, 6]

    @pytest.mark.asyncio
    async def test_backoff_capped(self):
        feed = BinanceFeed(url="ws://127.0.0.1:1", store=AsyncMock())
        calls = 0

        async def always_down():
            nonlocal calls
            calls += 1
            if calls >= 8:
                feed._running = False
            raise OSError("down")

        with patch.object(feed, "run_once", side_effect=always_down), \
             patch("ticker_relay.feeds.binance.asyncio.sleep", new=AsyncMock()) as sleep:
            await feed.run()

        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [3, 6, 12, 24, 48, 60, 60]

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        feed = BinanceFeed(url="ws://127.0.0.1:1", store=AsyncMock())
        await feed.stop()
        await feed.stop()  # Should not raise

    @pytest.mark.asyncio
    async def test_stop_cancels_task(self):
        feed = BinanceFeed(url="ws://127.0.0.1:1", store=AsyncMock())

        async def hang():
            await asyncio.Event().wait()

        with patch.object(feed, "run_once", side_effect=hang):
            await feed.start()
            await asyncio.sleep(0)
            assert feed._task is not None
            assert not feed._task.done()
            await feed.stop()

        assert feed._task is None
