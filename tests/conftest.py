"""
Pytest configuration and fixtures for the runboard test suite.

Every test gets a fresh in-memory aiosqlite database seeded with the default
categories and platforms. Factories create runs and players directly through
the document store so tests can arrange any state before exercising the
engine.
"""

import itertools
from typing import Set

import pytest
import pytest_asyncio

from runboard.constants import RunMode
from runboard.data_models.run import PlayerRecord, RunRecord
from runboard.database.database import Database
from runboard.database.store import DocumentStore
from runboard.operations.points import PointsDeriver
from runboard.services.backfill import BackfillService
from runboard.services.player_linking import PlayerLinkingService
from runboard.services.reconciliation import ReconciliationEngine
from runboard.services.run_intake import RunIntakeService

IN_MEMORY_URL = "sqlite+aiosqlite:///:memory:"


class StaleReadStore(DocumentStore):
    """Store whose run queries lag behind writes for the ids in `hidden`."""

    def __init__(self, database, batch_limit=None):
        super().__init__(database, batch_limit)
        self.hidden: Set[str] = set()

    async def query_runs(self, limit, **filters):
        runs = await super().query_runs(limit, **filters)
        return [run for run in runs if run.id not in self.hidden]


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def database():
    db = Database(IN_MEMORY_URL)
    await db.initialize()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(database):
    return StaleReadStore(database)


@pytest_asyncio.fixture
async def refs(store):
    """Registry ids of the seeded categories and platforms, keyed by name."""
    categories = {c['name']: c['id'] for c in await store.list_categories()}
    platforms = {p['name']: p['id'] for p in await store.list_platforms()}
    return {
        'any': categories["Any%"],
        'free_play': categories["Free Play"],
        'gamecube': platforms["GameCube"],
        'pc': platforms["PC"],
    }


# ============================================================================
# SERVICE FIXTURES
# ============================================================================


@pytest.fixture
def deriver():
    return PointsDeriver()


@pytest.fixture
def engine(store, deriver):
    return ReconciliationEngine(store, deriver)


@pytest.fixture
def linking(store, engine):
    return PlayerLinkingService(store, engine)


@pytest.fixture
def backfill(store, engine):
    return BackfillService(store, engine, redis_enabled=False)


@pytest.fixture
def intake(store):
    return RunIntakeService(store)


# ============================================================================
# FACTORIES
# ============================================================================


@pytest.fixture
def make_player(store):
    async def _make(uid, display_name=None, **fields):
        await store.add_player(PlayerRecord(uid=uid, display_name=display_name or uid, **fields))
        return uid
    return _make


@pytest.fixture
def make_run(store, refs):
    counter = itertools.count(1)

    async def _make(run_id=None, owner_ref="", owner_display_name="Runner", time="00:10:00",
                    verified=True, **fields):
        fields.setdefault('category_ref', refs['any'])
        fields.setdefault('platform_ref', refs['gamecube'])
        if fields.get('mode') == RunMode.COOP:
            fields.setdefault('co_owner_display_name', "Partner")
        record = RunRecord(
            id=run_id or f"run{next(counter):03d}",
            owner_ref=owner_ref,
            owner_display_name=owner_display_name,
            time=time,
            verified=verified,
            **fields,
        )
        return await store.add_run(record)
    return _make
