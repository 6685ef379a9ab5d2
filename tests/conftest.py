"""Pytest fixtures shared across all evtrace tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from evtrace.config import DatabaseConfig, EvtraceConfig, OutputConfig, RPCConfig
from evtrace.db import Database
from evtrace.decoder import EventDecoder
from evtrace.engine import TraceSession
from evtrace.fetcher import LogFetcher
from evtrace.history import HistoryStore
from evtrace.signatures import SignatureRegistry, build_registry

from helpers import FakeProvider


# ── Config fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def sample_config() -> EvtraceConfig:
    """Minimal valid EvtraceConfig for tests."""
    return EvtraceConfig(
        rpc=RPCConfig(url="http://127.0.0.1:8545", timeout_seconds=5.0, poll_interval_seconds=0.01),
        database=DatabaseConfig(path=":memory:"),
        output=OutputConfig(default_format="json", color=False),
    )


# ── Provider / pipeline fixtures ──────────────────────────────────────────────


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(latest=1000)


@pytest.fixture
def registry() -> SignatureRegistry:
    return build_registry()


@pytest.fixture
def decoder(registry: SignatureRegistry) -> EventDecoder:
    return EventDecoder(registry)


@pytest.fixture
def fetcher(provider: FakeProvider, registry: SignatureRegistry) -> LogFetcher:
    return LogFetcher(provider, registry)


# ── DB fixtures ───────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def in_memory_db() -> Database:
    """In-memory SQLite DB with schema applied."""
    db = Database(":memory:")
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def session(provider: FakeProvider, in_memory_db: Database) -> TraceSession:
    s = TraceSession(provider, store=HistoryStore(in_memory_db))
    yield s
    await s.close()
