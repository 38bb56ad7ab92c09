"""
Tests for foundation components.

Covers configuration loading, database initialization and seeding, and the
runtime configuration service feeding the points formula.
"""

import json

import pytest
from sqlalchemy import select

from runboard.config import Config
from runboard.database.database import DEFAULT_CATEGORIES, DEFAULT_PLATFORMS
from runboard.database.models import AuditLog
from runboard.operations.points import PointsDeriver
from runboard.services.configuration import ConfigurationService
from runboard.services.seed_configurations import INITIAL_CONFIGS, seed_configurations
from runboard.utils.exceptions import ValidationFailedError


class TestConfig:
    """Test configuration loading."""

    def test_read_bounds_present(self):
        limits = Config.get_fetch_limits()
        assert set(limits) == {
            'run_fetch_limit', 'player_run_fetch_limit', 'link_scan_limit', 'backfill_fetch_limit',
            'leaderboard_limit',
        }
        assert all(value > 0 for value in limits.values())

    def test_validate_passes_with_defaults(self):
        Config.validate()

    def test_validate_rejects_bad_batch_limit(self, monkeypatch):
        monkeypatch.setattr(Config, 'BATCH_WRITE_LIMIT', 0)
        with pytest.raises(ValueError):
            Config.validate()


@pytest.mark.asyncio
class TestDatabaseInitialization:
    """Test database setup and registry seeding."""

    async def test_default_registry_seeded(self, store):
        categories = await store.list_categories()
        platforms = await store.list_platforms()
        assert [c['name'] for c in categories] == DEFAULT_CATEGORIES
        assert [p['name'] for p in platforms] == DEFAULT_PLATFORMS

    async def test_seeding_is_not_repeated(self, database, store):
        await database.initialize_default_data()
        assert len(await store.list_categories()) == len(DEFAULT_CATEGORIES)


@pytest.mark.asyncio
class TestConfigurationService:
    """Test runtime configuration and its audit trail."""

    async def test_seed_only_missing_keys(self, database):
        assert await seed_configurations(database) == len(INITIAL_CONFIGS)
        assert await seed_configurations(database) == 0

    async def test_load_and_category_view(self, database, store):
        await seed_configurations(database)
        service = ConfigurationService(store)
        await service.load_all()

        points = service.get_by_category('points')
        assert points['base_multiplier'] == 800
        assert points['rank_bonus'] == {"1": 1.5, "2": 1.25, "3": 1.1}
        assert service.get('missing.key', 7) == 7

    async def test_set_writes_audit_entry(self, database, store):
        service = ConfigurationService(store)
        await service.set('points.coop_share', 0.25, user_ref="admin")
        await service.set('points.coop_share', 0.5, user_ref="admin")

        assert service.get('points.coop_share') == 0.5
        async with database.get_session() as session:
            entries = (await session.execute(select(AuditLog).order_by(AuditLog.id))).scalars().all()
        assert [entry.user_ref for entry in entries] == ["admin", "admin"]
        assert json.loads(entries[1].details)['old_value'] == 0.25

    async def test_points_follow_runtime_changes(self, database, store):
        await seed_configurations(database)
        service = ConfigurationService(store)
        await service.load_all()
        deriver = PointsDeriver(service)
        assert deriver.points("10:00:00", "Any%", "GameCube") == 10

        await service.set('points.enabled', False, user_ref="admin")

        assert deriver.points("10:00:00", "Any%", "GameCube") == 0

    async def test_rejects_malformed_points_values(self, store):
        service = ConfigurationService(store)
        with pytest.raises(ValidationFailedError):
            await service.set('points.coop_share', "half", user_ref="admin")
        with pytest.raises(ValidationFailedError):
            await service.set('points.base_multiplier', -1, user_ref="admin")
        with pytest.raises(ValidationFailedError):
            await service.set('points.unknown', 1, user_ref="admin")
        assert service.get('points.coop_share') is None

    async def test_other_keys_are_free_form(self, store):
        service = ConfigurationService(store)
        await service.set('links.scan_note', "manual", user_ref="admin")
        assert service.get('links.scan_note') == "manual"

    async def test_reset_restores_default(self, database, store):
        await seed_configurations(database)
        service = ConfigurationService(store)
        await service.set('points.min_points', 25, user_ref="admin")

        await service.reset('points.min_points', user_ref="admin")

        assert service.get('points.min_points') == INITIAL_CONFIGS['points.min_points']
        with pytest.raises(ValidationFailedError):
            await service.reset('links.scan_note', user_ref="admin")
