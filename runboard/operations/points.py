"""
Points Deriver

Turns a run's time, category, platform, authoritative rank and mode into the
points credited to each of its owners. The formula itself sits behind a
single callable boundary so it can be replaced wholesale; the default formula
reads its parameters from the points.* runtime configuration keys.

Default formula:
- disabled -> 0
- platform and category must be on the eligibility lists
- base = base_multiplier * exp(-seconds / scale), floored at min_points
- scale comes from the category's minimum time: at that time a run earns
  base_multiplier * min_time_point_ratio
- runs under a category milestone get a multiplier interpolated between the
  milestone's min and max multiplier
- podium ranks get the rank bonus multiplier
- co-op results are multiplied by the co-op share (the per-owner share)
- rounded half up to an integer
"""

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from runboard.constants import PointsDefaults, RunMode
from runboard.data_models.run import persisted_rank
from runboard.utils.logger import setup_logger
from runboard.utils.time_parser import parse_time_to_seconds

logger = setup_logger(__name__)

NOCUTS_NAMES = ("nocuts noships", "nocutsnoships")
GAMECUBE_NAMES = ("gamecube", "game cube")


@dataclass(frozen=True)
class Milestone:
    """Bonus window below a threshold time."""
    threshold_seconds: float
    min_multiplier: float
    max_multiplier: float

    def multiplier(self, seconds: float) -> float:
        if seconds >= self.threshold_seconds or self.threshold_seconds <= 0:
            return 1.0
        remaining = self.threshold_seconds - seconds
        return self.min_multiplier + (remaining / self.threshold_seconds) * (self.max_multiplier - self.min_multiplier)


@dataclass(frozen=True)
class PointsParameters:
    """Tunable parameters of the default formula."""
    enabled: bool = True
    base_multiplier: float = PointsDefaults.BASE_MULTIPLIER
    min_points: float = PointsDefaults.MIN_POINTS
    min_time_point_ratio: float = PointsDefaults.MIN_TIME_POINT_RATIO
    eligible_platforms: Tuple[str, ...] = PointsDefaults.ELIGIBLE_PLATFORMS
    eligible_categories: Tuple[str, ...] = PointsDefaults.ELIGIBLE_CATEGORIES
    category_min_times: Dict[str, float] = field(default_factory=dict)
    category_milestones: Dict[str, Milestone] = field(default_factory=dict)
    rank_bonus: Dict[int, float] = field(default_factory=lambda: dict(PointsDefaults.RANK_BONUS))
    coop_share: float = 0.5

    @classmethod
    def from_config(cls, values: Dict[str, Any]) -> 'PointsParameters':
        """Build parameters from the points.* configuration values (keys without prefix)."""
        defaults = cls()
        milestones = {}
        for key, raw in (values.get('category_milestones') or {}).items():
            try:
                milestones[key] = Milestone(
                    float(raw['threshold_seconds']),
                    float(raw['min_multiplier']),
                    float(raw['max_multiplier']),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Ignoring malformed milestone for category '{key}': {raw}")

        rank_bonus = values.get('rank_bonus')
        if rank_bonus is None:
            rank_bonus = defaults.rank_bonus
        else:
            rank_bonus = {int(rank): float(bonus) for rank, bonus in rank_bonus.items()}

        return cls(
            enabled=values.get('enabled', defaults.enabled) is not False,
            base_multiplier=float(values.get('base_multiplier', defaults.base_multiplier)),
            min_points=float(values.get('min_points', defaults.min_points)),
            min_time_point_ratio=float(values.get('min_time_point_ratio', defaults.min_time_point_ratio)),
            eligible_platforms=tuple(values.get('eligible_platforms') or ()),
            eligible_categories=tuple(values.get('eligible_categories') or ()),
            category_min_times={k: float(v) for k, v in (values.get('category_min_times') or {}).items()},
            category_milestones=milestones,
            rank_bonus=rank_bonus,
            coop_share=float(values.get('coop_share', defaults.coop_share)),
        )


def _lower(value: Optional[str]) -> str:
    return str(value).strip().lower() if value else ""


def _is_nocuts(category_name: str) -> bool:
    return category_name in NOCUTS_NAMES


def _matches_platform(eligible: str, platform_name: str, platform_ref: str) -> bool:
    eligible = _lower(eligible)
    if eligible == platform_name or (platform_ref and eligible == platform_ref):
        return True
    return eligible == "gamecube" and platform_name in GAMECUBE_NAMES


def _matches_category(eligible: str, category_name: str, category_ref: str) -> bool:
    eligible = _lower(eligible)
    if eligible == category_name or (category_ref and eligible == category_ref):
        return True
    return "nocuts" in eligible and _is_nocuts(category_name)


def default_points_formula(
    params: PointsParameters,
    seconds: float,
    category_name: str,
    platform_name: str,
    category_ref: str = "",
    platform_ref: str = "",
    rank: Optional[int] = None,
    mode: Optional[str] = None,
) -> int:
    """Points for one owner of a run (see module docstring for the steps)."""
    if seconds <= 0 or not params.enabled:
        return 0

    platform = _lower(platform_name)
    platform_id = _lower(platform_ref)
    if params.eligible_platforms:
        if not any(_matches_platform(e, platform, platform_id) for e in params.eligible_platforms):
            return 0
    elif platform not in GAMECUBE_NAMES:
        return 0

    category = _lower(category_name)
    category_id = _lower(category_ref)
    category_key = category_ref or category_name
    if params.eligible_categories:
        matching = [e for e in params.eligible_categories if _matches_category(e, category, category_id)]
        if not matching:
            return 0
        category_key = matching[0]
    elif not (category == "any%" or _is_nocuts(category)):
        return 0

    default_scale = PointsDefaults.NOCUTS_SCALE_FACTOR if _is_nocuts(category) else PointsDefaults.DEFAULT_SCALE_FACTOR
    min_time = params.category_min_times.get(category_key)
    if min_time and min_time > 0 and 0 < params.min_time_point_ratio < 1:
        scale = -min_time / math.log(params.min_time_point_ratio)
    else:
        scale = default_scale

    points = max(params.base_multiplier * math.exp(-seconds / scale), params.min_points)

    milestone = params.category_milestones.get(category_key)
    if milestone is None:
        if category == "any%":
            milestone = Milestone(*PointsDefaults.ANY_PERCENT_MILESTONE)
        elif _is_nocuts(category):
            milestone = Milestone(*PointsDefaults.NOCUTS_MILESTONE)
    if milestone is not None:
        points *= milestone.multiplier(seconds)

    podium = persisted_rank(rank)
    if podium is not None:
        points *= params.rank_bonus.get(podium, 1.0)

    if mode == RunMode.COOP:
        points *= params.coop_share

    return int(math.floor(points + 0.5))


PointsFormula = Callable[..., int]


class PointsDeriver:
    """
    Derives points for runs.

    Parameters are read from the configuration service on every call so that
    runtime changes apply to the next recompute without a restart.
    """

    def __init__(self, config_service=None, formula: Optional[PointsFormula] = None):
        self.config_service = config_service
        self.formula = formula or default_points_formula

    def parameters(self) -> PointsParameters:
        if self.config_service is None:
            return PointsParameters()
        return PointsParameters.from_config(self.config_service.get_by_category('points'))

    def points(
        self,
        time: str,
        category_name: str,
        platform_name: str,
        category_ref: str = "",
        platform_ref: str = "",
        rank: Optional[int] = None,
        mode: Optional[str] = None,
    ) -> int:
        """Points credited to each owner of a run; 0 when the time is unparseable."""
        try:
            seconds = parse_time_to_seconds(time)
        except ValueError:
            logger.warning(f"Cannot derive points for unparseable time '{time}'")
            return 0
        return self.formula(
            self.parameters(), seconds, category_name, platform_name,
            category_ref, platform_ref, rank, mode,
        )
