"""
feeds/store.py

Time-windowed persistent ticker table. The only shared resource in the
process: the ingestor writes through it, every session reads through it.

Responsibilities:
  1. Provisioning: table, unique index, and on TimescaleDB the hypertable,
     compression and retention policies
  2. Idempotent writes: (symbol, created_at) is the natural key
  3. The two read queries the sessions need

The table is append-only. There is no "current price" table: "latest per
symbol" is recomputed on every read, so there is never a second write to keep
consistent.

Connections come from SQLAlchemy's async pool. Everything handed out is a
pydantic value copy; callers never see rows or connections.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    MetaData,
    Numeric,
    Table,
    Text,
    delete,
    distinct,
    func,
    select,
    text,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ticker_relay.format.schema import Page, RawTick, SymbolRow, VolumeRow

logger = logging.getLogger(__name__)

TABLE_NAME = "ticker_data"

# Window policy: chunk size, when chunks get compressed, when they get dropped
CHUNK_INTERVAL = "10 minutes"
COMPRESS_AFTER = "10 minutes"
RETAIN_FOR = "1 hour"
RETENTION = timedelta(hours=1)

RECENT_LIMIT = 10

# Largest OFFSET a BIGINT column driver will accept
MAX_OFFSET = 2**63 - 1

# Driver each plain URL scheme maps onto
ASYNC_DRIVERS: dict[str, str] = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

metadata = MetaData()

ticker_data = Table(
    TABLE_NAME,
    metadata,
    Column("symbol", Text, nullable=False),
    Column("close_price", Numeric),
    Column("open_price", Numeric),
    Column("high_price", Numeric),
    Column("low_price", Numeric),
    Column("quote_volume", Numeric),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

# Backs ON CONFLICT DO NOTHING and serves both read queries. Named apart from the
# older non-unique idx_ticker_data_symbol so an existing table still gets it.
natural_key = Index(
    "uq_ticker_data_symbol_created_at",
    ticker_data.c.symbol,
    ticker_data.c.created_at.desc(),
    unique=True,
)


class StoreError(Exception):
    """Connection or query failure in the persistence layer."""


def async_database_url(url: str) -> str:
    """
    Map a plain database URL onto its async driver.
    postgres://u:p@h/db -> postgresql+asyncpg://u:p@h/db
    URLs that already name a driver are left alone.
    """
    parsed = make_url(url)
    driver = ASYNC_DRIVERS.get(parsed.drivername)
    if driver is None:
        return url
    return parsed.set(drivername=driver).render_as_string(hide_password=False)


def parse_decimal(value: str) -> Decimal:
    """Parse an upstream decimal string. Anything unparseable or non-finite is zero."""
    try:
        parsed = Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        return Decimal(0)
    if not parsed.is_finite():
        return Decimal(0)
    return parsed


def event_time_to_datetime(event_time_ms: int) -> datetime:
    seconds, millis = divmod(event_time_ms, 1000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(milliseconds=millis)


class TickerStore:
    """
    Ticker table over a pooled AsyncEngine.

    Usage:
        store = TickerStore.from_url("postgres://...")
        await store.initialize()                       # safe on every start
        await store.insert(raw_tick)
        page = await store.latest_by_volume(1, 30)
        rows = await store.recent_for_symbol("BTCUSDT")
        await store.close()

    Timescale provisioning only runs on PostgreSQL with timescale=True.
    Anywhere else manages_retention is False and the owner is expected to
    call purge_expired() periodically.
    """

    def __init__(self, engine: AsyncEngine, timescale: bool = True, retention: timedelta = RETENTION):
        self._engine = engine
        self._dialect = engine.dialect.name
        self._timescale = timescale and self._dialect == "postgresql"
        self._retention = retention

    @classmethod
    def from_url(cls, url: str, timescale: bool = True, retention: timedelta = RETENTION, **engine_kwargs) -> "TickerStore":
        engine = create_async_engine(async_database_url(url), pool_pre_ping=True, **engine_kwargs)
        return cls(engine, timescale=timescale, retention=retention)

    @property
    def manages_retention(self) -> bool:
        """True when the database itself drops and compresses old chunks."""
        return self._timescale

    # --- Provisioning ---

    async def initialize(self) -> None:
        """
        Create schema and window policy. Idempotent.
        Raises StoreError if the engine or the timescaledb extension is unavailable.
        """
        try:
            async with self._engine.begin() as conn:
                if self._timescale:
                    await conn.execute(text("CREATE EXTENSION IF NOT EXISTS timescaledb"))
                await conn.run_sync(metadata.create_all)
                # create_all skips the indexes of a table that already exists
                await conn.run_sync(lambda sync_conn: natural_key.create(sync_conn, checkfirst=True))
                if self._timescale:
                    await self._provision_timescale(conn)
        except SQLAlchemyError as e:
            raise StoreError(f"could not provision {TABLE_NAME}: {e}") from e
        logger.info(
            "store ready (%s, %s)",
            self._dialect,
            "timescale policies" if self._timescale else "manual retention",
        )

    async def _provision_timescale(self, conn) -> None:
        await conn.execute(text(
            f"SELECT create_hypertable('{TABLE_NAME}', 'created_at', "
            f"if_not_exists => TRUE, chunk_time_interval => INTERVAL '{CHUNK_INTERVAL}')"
        ))

        # Compression settings can't be re-applied once chunks are compressed
        enabled = await conn.scalar(text(
            "SELECT compression_enabled FROM timescaledb_information.hypertables "
            "WHERE hypertable_name = :name"
        ), {"name": TABLE_NAME})
        if not enabled:
            await conn.execute(text(
                f"ALTER TABLE {TABLE_NAME} SET ("
                "timescaledb.compress, "
                "timescaledb.compress_orderby = 'created_at DESC', "
                "timescaledb.compress_segmentby = 'symbol')"
            ))

        await conn.execute(text(
            f"SELECT add_retention_policy('{TABLE_NAME}', INTERVAL '{RETAIN_FOR}', if_not_exists => TRUE)"
        ))
        await conn.execute(text(
            f"SELECT add_compression_policy('{TABLE_NAME}', INTERVAL '{COMPRESS_AFTER}', if_not_exists => TRUE)"
        ))

    async def close(self) -> None:
        await self._engine.dispose()

    # --- Writes ---

    async def insert(self, tick: RawTick) -> None:
        """
        Insert one tick. A duplicate (symbol, event time) is a silent no-op.
        Malformed price fields are stored as zero rather than rejected.
        """
        stmt = self._insert_stmt().values(
            symbol=tick.symbol,
            close_price=parse_decimal(tick.close),
            open_price=parse_decimal(tick.open),
            high_price=parse_decimal(tick.high),
            low_price=parse_decimal(tick.low),
            quote_volume=parse_decimal(tick.quote_volume),
            created_at=event_time_to_datetime(tick.event_time),
        ).on_conflict_do_nothing()
        try:
            async with self._engine.begin() as conn:
                await conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreError(f"insert failed for {tick.symbol}: {e}") from e

    def _insert_stmt(self):
        if self._dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif self._dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise StoreError(f"unsupported database dialect: {self._dialect}")
        return insert(ticker_data)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete rows past the retention horizon. Returns the number removed."""
        cutoff = (now or datetime.now(timezone.utc)) - self._retention
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(delete(ticker_data).where(ticker_data.c.created_at < cutoff))
        except SQLAlchemyError as e:
            raise StoreError(f"purge failed: {e}") from e
        if result.rowcount:
            logger.info("purged %d rows older than %s", result.rowcount, cutoff.isoformat())
        return result.rowcount

    # --- Reads ---

    async def latest_by_volume(self, page: int, page_size: int) -> Page:
        """
        Latest row per symbol, ranked by quote volume descending.
        page is 1-indexed; a page past the end has no rows but the right total.
        """
        if page < 1 or page_size < 1:
            raise ValueError(f"page and page_size must be >= 1, got {page}/{page_size}")
        if (page - 1) * page_size > MAX_OFFSET:
            raise ValueError(f"page {page} is out of range for page_size {page_size}")

        t = ticker_data
        latest = select(
            t.c.symbol,
            t.c.close_price,
            t.c.quote_volume,
            func.row_number().over(
                partition_by=t.c.symbol,
                order_by=t.c.created_at.desc(),
            ).label("recency"),
        ).subquery("latest")

        ranked = (
            select(latest.c.symbol, latest.c.close_price, latest.c.quote_volume)
            .where(latest.c.recency == 1)
            .order_by(latest.c.quote_volume.desc(), latest.c.symbol.asc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        )

        try:
            async with self._engine.connect() as conn:
                total = await conn.scalar(select(func.count(distinct(t.c.symbol))))
                rows = (await conn.execute(ranked)).all()
        except SQLAlchemyError as e:
            raise StoreError(f"ranking query failed: {e}") from e

        return Page(
            data=[
                VolumeRow(symbol=r.symbol, price=_dec(r.close_price), volume=_dec(r.quote_volume))
                for r in rows
            ],
            total=total or 0,
            page=page,
            per_page=page_size,
        )

    async def recent_for_symbol(self, symbol: str) -> list[SymbolRow]:
        """Up to RECENT_LIMIT rows for one symbol, newest first. Empty if unknown."""
        t = ticker_data
        stmt = (
            select(t)
            .where(t.c.symbol == symbol)
            .order_by(t.c.created_at.desc())
            .limit(RECENT_LIMIT)
        )
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise StoreError(f"history query failed for {symbol}: {e}") from e

        return [
            SymbolRow(
                event_time=_as_utc(r.created_at),
                symbol=r.symbol,
                close_price=_dec(r.close_price),
                open_price=_dec(r.open_price),
                high_price=_dec(r.high_price),
                low_price=_dec(r.low_price),
                quote_volume=_dec(r.quote_volume),
            )
            for r in rows
        ]

    def __repr__(self) -> str:
        return f"TickerStore(dialect={self._dialect}, timescale={self._timescale})"


# --- Helpers ---

def _dec(value) -> Decimal:
    if value is None:
        return Decimal(0)
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
