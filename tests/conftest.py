"""Shared fixtures: an in-memory SQLite TickerStore per test."""

import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from ticker_relay.feeds.store import TickerStore


@pytest_asyncio.fixture
async def store():
    # StaticPool keeps the single in-memory database alive across checkouts
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    store = TickerStore(engine)
    await store.initialize()
    yield store
    await store.close()
