"""
Category / Platform / Level registry.

Each engine operation loads one RegistrySnapshot and uses it for every name
lookup in that operation, so a single recompute never issues repeated
registry reads and never outlives a registry change.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from runboard.constants import BoardKind, RegistryDefaults
from runboard.data_models.run import RunRecord
from runboard.utils.group_key import normalize_board_kind, normalize_ref

logger = logging.getLogger(__name__)


def _name_key(name: Optional[str]) -> str:
    return str(name).strip().lower() if name else ""


@dataclass
class RegistrySnapshot:
    """Point-in-time view of the registry collections."""
    categories: List[Dict[str, Any]] = field(default_factory=list)
    platforms: List[Dict[str, Any]] = field(default_factory=list)
    levels: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        self._categories = {c['id']: c for c in self.categories}
        self._platforms = {p['id']: p for p in self.platforms}

    @staticmethod
    def _resolve(entries: Dict[str, Dict[str, Any]], ref: Optional[str], fallback: Optional[str]) -> str:
        entry = entries.get(normalize_ref(ref))
        if entry and entry.get('name'):
            return entry['name']
        if fallback and str(fallback).strip():
            return str(fallback).strip()
        return RegistryDefaults.UNKNOWN_NAME

    def category_name(self, run: RunRecord) -> str:
        """Registry name, then the imported fallback name, then "Unknown"."""
        return self._resolve(self._categories, run.category_ref, run.fallback_category_name)

    def platform_name(self, run: RunRecord) -> str:
        return self._resolve(self._platforms, run.platform_ref, run.fallback_platform_name)

    def autofill(self, run: RunRecord) -> Dict[str, str]:
        """
        Repair registry references before verification.

        Drops a category whose board kind does not match the run's, re-matches
        category, platform and level by fallback name (case-insensitive,
        trimmed) and clears the level of regular runs.

        Returns:
            Only the fields that change
        """
        board_kind = normalize_board_kind(run.board_kind)
        category = normalize_ref(run.category_ref)
        platform = normalize_ref(run.platform_ref)
        level = normalize_ref(run.level_ref)

        if category:
            entry = self._categories.get(category)
            if entry is None or normalize_board_kind(entry.get('board_kind')) != board_kind:
                category = ""

        if not category and run.fallback_category_name:
            wanted = _name_key(run.fallback_category_name)
            for entry in self.categories:
                if normalize_board_kind(entry.get('board_kind')) == board_kind and _name_key(entry['name']) == wanted:
                    category = entry['id']
                    break

        if platform and platform not in self._platforms:
            platform = ""

        if not platform and run.fallback_platform_name:
            wanted = _name_key(run.fallback_platform_name)
            for entry in self.platforms:
                if _name_key(entry['name']) == wanted:
                    platform = entry['id']
                    break

        if board_kind == BoardKind.REGULAR:
            level = ""
        elif not level and run.fallback_level_name:
            wanted = _name_key(run.fallback_level_name)
            for entry in self.levels:
                if _name_key(entry['name']) == wanted:
                    level = entry['id']
                    break

        updates = {}
        if category and category != normalize_ref(run.category_ref):
            updates['category_ref'] = category
        if platform and platform != normalize_ref(run.platform_ref):
            updates['platform_ref'] = platform
        if board_kind == BoardKind.REGULAR:
            if normalize_ref(run.level_ref):
                updates['level_ref'] = ""
        elif level and level != normalize_ref(run.level_ref):
            updates['level_ref'] = level
        return updates


class Registry:
    """Loads registry snapshots from the document store."""

    def __init__(self, store):
        self.store = store

    async def snapshot(self) -> RegistrySnapshot:
        categories = await self.store.list_categories()
        platforms = await self.store.list_platforms()
        levels = await self.store.list_levels()
        logger.debug(
            f"Registry snapshot: {len(categories)} categories, "
            f"{len(platforms)} platforms, {len(levels)} levels"
        )
        return RegistrySnapshot(categories, platforms, levels)
