"""
Runtime configuration for runboard.

Holds the points formula parameters (the points.* keys) and any other
tunables in an in-memory cache backed by the configuration table. Every
change is written to the audit log together with the previous value, and the
cache is reloaded after each write so the next recompute sees exactly what was
committed.
"""

import json
import logging
from typing import Any, Dict, List
from sqlalchemy import select
from runboard.services.base import BaseService
from runboard.services.seed_configurations import INITIAL_CONFIGS
from runboard.database.models import Configuration, AuditLog
from runboard.utils.exceptions import ValidationFailedError

logger = logging.getLogger(__name__)

POINTS_PREFIX = 'points.'

def _same_shape(default: Any, value: Any) -> bool:
    """Whether value can stand in for a seeded default."""
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, type(default))


class ConfigurationService(BaseService):
    """Runtime configuration cache with an audited write path."""

    def __init__(self, store):
        super().__init__(store)
        self._cache: Dict[str, Any] = {}

    async def load_all(self):
        """Reload the cache from the configuration table, skipping undecodable rows."""
        new_cache = {}
        async with self.get_session() as session:
            result = await session.execute(select(Configuration))
            for row in result.scalars().all():
                try:
                    new_cache[row.key] = json.loads(row.value)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON for config key '{row.key}', skipping")

        self._cache = new_cache
        logger.info(f"Loaded {len(self._cache)} configuration parameters")

    def get(self, key: str, default: Any = None) -> Any:
        return self._cache.get(key, default)

    def validate(self, key: str, value: Any) -> List[str]:
        """
        Check a proposed value.

        Points keys must be known and keep the type of their seeded default;
        keys outside points.* are free-form.

        Returns:
            List of error messages, empty when the value is acceptable
        """
        if not key.startswith(POINTS_PREFIX):
            return []
        if key not in INITIAL_CONFIGS:
            return [f"Unknown points parameter '{key}'"]
        default = INITIAL_CONFIGS[key]
        if not _same_shape(default, value):
            return [f"'{key}' expects {type(default).__name__}, got {type(value).__name__}"]
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value < 0:
            return [f"'{key}' must not be negative"]
        return []

    async def set(self, key: str, value: Any, user_ref: str):
        """
        Persist a configuration value and record it in the audit log.

        Args:
            key: Configuration key, e.g. 'points.coop_share'
            value: New value (JSON-encoded for storage)
            user_ref: Account id of the administrator making the change

        Raises:
            ValidationFailedError: If the value is rejected by validate()
        """
        errors = self.validate(key, value)
        if errors:
            raise ValidationFailedError(errors)

        async with self.get_session() as session:
            row = (await session.execute(
                select(Configuration).where(Configuration.key == key)
            )).scalar_one_or_none()

            old_value = None
            if row is None:
                session.add(Configuration(key=key, value=json.dumps(value)))
            else:
                try:
                    old_value = json.loads(row.value)
                except json.JSONDecodeError:
                    old_value = {"error": "invalid JSON", "raw": row.value}
                row.value = json.dumps(value)

            session.add(AuditLog(
                user_ref=user_ref,
                action='config_set',
                details=json.dumps({'key': key, 'old_value': old_value, 'new_value': value})
            ))

        logger.info(f"Configuration '{key}' set by {user_ref}")
        await self.load_all()

    async def reset(self, key: str, user_ref: str):
        """Restore a seeded key to its default value."""
        if key not in INITIAL_CONFIGS:
            raise ValidationFailedError([f"No default for configuration key '{key}'"])
        await self.set(key, INITIAL_CONFIGS[key], user_ref)

    def list_all(self) -> Dict[str, Any]:
        return self._cache.copy()

    def get_by_category(self, category: str) -> Dict[str, Any]:
        """Values under '<category>.' with the prefix stripped, e.g. 'points' for the formula."""
        prefix = f"{category}."
        return {
            key[len(prefix):]: value
            for key, value in self._cache.items()
            if key.startswith(prefix)
        }
