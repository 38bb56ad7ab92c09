"""
Run and player data models for the reconciliation engine.

Provides immutable snapshots of store documents. The engine never mutates a
snapshot; pending changes are expressed with dataclasses.replace().
"""

from dataclasses import dataclass, replace
from typing import Optional

from runboard.constants import BoardKind, RankingConstants, RunMode


@dataclass(frozen=True)
class RunRecord:
    """Single timed attempt as stored in the runs collection."""
    id: str
    owner_ref: str = ""
    owner_display_name: str = ""
    co_owner_display_name: Optional[str] = None
    co_owner_ref: Optional[str] = None
    board_kind: str = BoardKind.REGULAR
    category_ref: str = ""
    platform_ref: str = ""
    level_ref: str = ""
    mode: str = RunMode.SOLO
    time: str = "00:00:00"
    submitted_date: Optional[str] = None
    verified: bool = False
    verified_by: Optional[str] = None
    obsolete: bool = False
    rank: Optional[int] = None
    points: float = 0
    fallback_category_name: Optional[str] = None
    fallback_platform_name: Optional[str] = None
    fallback_level_name: Optional[str] = None
    import_ref: Optional[str] = None
    video_url: Optional[str] = None
    comment: Optional[str] = None

    @property
    def is_coop(self) -> bool:
        return self.mode == RunMode.COOP

    @property
    def is_rankable(self) -> bool:
        """Verified and not obsolete: eligible for a rank."""
        return self.verified and not self.obsolete

    def with_changes(self, **changes) -> 'RunRecord':
        return replace(self, **changes)


@dataclass(frozen=True)
class PlayerRecord:
    """Public profile and cached totals of an account."""
    uid: str
    display_name: str = ""
    cached_total_points: float = 0
    cached_total_runs: int = 0
    join_date: Optional[str] = None
    name_color: Optional[str] = None
    bio: Optional[str] = None
    is_admin: bool = False


def persisted_rank(position: Optional[int]) -> Optional[int]:
    """Rank value to store on a run: podium positions only, otherwise no rank."""
    if position is None or position < 1 or position > RankingConstants.MAX_PERSISTED_RANK:
        return None
    return position


@dataclass(frozen=True)
class RunPoints:
    """Authoritative rank/points pair computed for one run."""
    run_id: str
    position: Optional[int]
    points: float

    @property
    def rank(self) -> Optional[int]:
        return persisted_rank(self.position)
