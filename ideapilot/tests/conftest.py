from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from ideapilot.catalog import ToolContext
from ideapilot.db import make_session_factory
from ideapilot.state import SessionStore
from ideapilot.utils import runtime_context

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database, deterministic clock
# ---------------------------------------------------------------------------


@pytest.fixture()
def factory():
    """Session factory over an in-memory database shared by all connections."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return make_session_factory(engine)


@pytest.fixture()
def clock():
    """Strictly increasing ISO timestamps, one second apart."""
    start = datetime(2025, 1, 1, tzinfo=UTC)
    ticks = itertools.count()
    return lambda: (start + timedelta(seconds=next(ticks))).isoformat()


@pytest.fixture()
def store(factory, clock) -> SessionStore:
    return SessionStore(factory, "s1", clock)


@pytest.fixture()
def ctx(store, clock) -> ToolContext:
    return ToolContext(state=store.load(), store=store, runtime=runtime_context("s1", clock))
