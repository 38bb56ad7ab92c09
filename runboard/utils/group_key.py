"""
Comparison-group identity for runs.

Two runs compete with each other only when they share board kind, level,
category, platform and mode.
"""

from dataclasses import dataclass
from typing import Optional

from runboard.constants import BoardKind, RunMode


def normalize_board_kind(value: Optional[str]) -> str:
    """Normalize a leaderboard kind, defaulting to regular."""
    if not value:
        return BoardKind.REGULAR
    normalized = str(value).lower().strip()
    if normalized in ('individual-level', 'individuallevel'):
        return BoardKind.INDIVIDUAL_LEVEL
    if normalized in ('community-golds', 'communitygolds'):
        return BoardKind.COMMUNITY_GOLDS
    return BoardKind.REGULAR


def normalize_mode(value: Optional[str]) -> str:
    """Normalize a run mode, defaulting to solo."""
    if not value:
        return RunMode.SOLO
    normalized = str(value).lower().strip()
    if normalized in ('co-op', 'coop'):
        return RunMode.COOP
    return RunMode.SOLO


def normalize_ref(value: Optional[str]) -> str:
    """Normalize a registry reference (category/platform/level id) to a trimmed string."""
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class GroupKey:
    """Ranking cohort: (board kind, level, category, platform, mode)."""
    board_kind: str
    level_ref: str
    category_ref: str
    platform_ref: str
    mode: str

    def as_filters(self) -> dict:
        """Equality filters selecting this group's runs from the store."""
        return {
            'board_kind': self.board_kind,
            'level_ref': self.level_ref,
            'category_ref': self.category_ref,
            'platform_ref': self.platform_ref,
            'mode': self.mode,
        }

    def __str__(self):
        level = f"/{self.level_ref}" if self.level_ref else ""
        return f"{self.board_kind}{level}/{self.category_ref}/{self.platform_ref}/{self.mode}"


def make_group_key(board_kind, category_ref, platform_ref, mode, level_ref=None) -> GroupKey:
    """Build a normalized group key; the level only counts on level boards."""
    kind = normalize_board_kind(board_kind)
    level = normalize_ref(level_ref) if kind in BoardKind.LEVEL_BOARDS else ""
    return GroupKey(
        board_kind=kind,
        level_ref=level,
        category_ref=normalize_ref(category_ref),
        platform_ref=normalize_ref(platform_ref),
        mode=normalize_mode(mode),
    )


def group_key_for(run) -> GroupKey:
    """Derive the group key of a run record."""
    return make_group_key(
        run.board_kind,
        run.category_ref,
        run.platform_ref,
        run.mode,
        run.level_ref,
    )
