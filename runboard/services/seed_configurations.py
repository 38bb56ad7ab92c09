"""
Configuration seed data for runboard.

Default points formula parameters, stored under the points.* keys so they can
be tuned at runtime through ConfigurationService.
"""

import json

from runboard.constants import PointsDefaults
from runboard.database.models import Configuration

INITIAL_CONFIGS = {
    'points.enabled': True,
    'points.base_multiplier': PointsDefaults.BASE_MULTIPLIER,
    'points.min_points': PointsDefaults.MIN_POINTS,
    'points.min_time_point_ratio': PointsDefaults.MIN_TIME_POINT_RATIO,
    'points.eligible_platforms': list(PointsDefaults.ELIGIBLE_PLATFORMS),
    'points.eligible_categories': list(PointsDefaults.ELIGIBLE_CATEGORIES),
    'points.category_min_times': {},
    'points.category_milestones': {},
    'points.rank_bonus': {str(rank): bonus for rank, bonus in PointsDefaults.RANK_BONUS.items()},
    'points.coop_share': 0.5,
}

async def seed_configurations(db) -> int:
    """Insert default configuration values that are not already present."""
    seeded = 0
    async with db.transaction() as session:
        for key, value in INITIAL_CONFIGS.items():
            existing = await session.get(Configuration, key)
            if existing is None:
                session.add(Configuration(key=key, value=json.dumps(value)))
                seeded += 1
    return seeded
