"""
Engine kernel test configuration.

Kernel tests run against MemoryDatabase/MemoryRemoteStore with function-scoped
fixtures and loops. Postgres-backed tests live in backend/tests and are
skipped automatically when no database is reachable.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable

import pytest
import pytest_asyncio

from engine.kernel.change_feed import SubscriptionManager
from engine.kernel.config import Settings
from engine.kernel.events import make_record
from engine.kernel.reconciler import ReconciliationEngine
from engine.kernel.store import MemoryDatabase, MemoryRemoteStore
from engine.kernel.types import Record

LIST_ID = "list_1"
OTHER_LIST_ID = "list_2"


class FakeClock:
    """Manually advanced monotonic clock for guard expiry."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def token_factory(prefix: str) -> Callable[[], str]:
    """Deterministic correlation tokens: alice-1, alice-2, ..."""
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true, yielding to the loop between checks."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def cfg():
    settings = Settings()
    settings.GUARD_TTL_MS = 500
    settings.RESUBSCRIBE_BASE_DELAY_MS = 1
    settings.RESUBSCRIBE_MAX_DELAY_MS = 10
    return settings


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    database = MemoryDatabase()
    database.add_member(LIST_ID, "alice", "owner", display_name="Alice")
    database.add_member(LIST_ID, "bob", "editor", email="bob@example.com")
    database.add_member(LIST_ID, "vic", "viewer", display_name="Vic")
    database.add_member(OTHER_LIST_ID, "carol", "owner", display_name="Carol")
    return database


@pytest.fixture
def store(db):
    return MemoryRemoteStore(db, "alice")


@pytest.fixture
def seed(db):
    """Write rows straight into the database, positions following insertion order."""

    def _seed(*texts: str, list_id: str = LIST_ID, **fields) -> list[Record]:
        rows = []
        for text in texts:
            position = len(db.live_rows(list_id))
            row = make_record(db.next_id(), text, list_id=list_id, position=position, **fields)
            db.rows[row.id] = row
            rows.append(row)
        return rows

    return _seed


@pytest_asyncio.fixture
async def feed(store, cfg):
    manager = SubscriptionManager(store, cfg)
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def make_engine(db, cfg, clock):
    """Build (unopened) engines for any member; closed at teardown."""
    engines: list[ReconciliationEngine] = []

    def _make(user_id: str = "alice", *, store: MemoryRemoteStore | None = None, **kwargs) -> ReconciliationEngine:
        store = store or MemoryRemoteStore(db, user_id)
        kwargs.setdefault("cfg", cfg)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("token_factory", token_factory(user_id))
        engine = ReconciliationEngine(LIST_ID, store, user_id=user_id, **kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        await engine.close()


@pytest_asyncio.fixture
async def engine(store, feed, cfg, clock):
    eng = ReconciliationEngine(
        LIST_ID,
        store,
        feed,
        cfg=cfg,
        user_id="alice",
        user_name="Alice",
        clock=clock,
        token_factory=token_factory("alice"),
    )
    await eng.open()
    yield eng
    await eng.close()


@pytest.fixture(name="eventually")
def eventually_fixture():
    return eventually


@pytest.fixture(name="list_id")
def list_id_fixture():
    return LIST_ID
