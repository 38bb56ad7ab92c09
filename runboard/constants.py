"""
Runboard-wide constants.

This module contains the fixed vocabulary and default values used throughout
the codebase: board kinds, run modes, ownership sentinels and points defaults.
"""

class BoardKind:
    """Leaderboard kinds a run can be submitted to."""

    REGULAR = "regular"
    INDIVIDUAL_LEVEL = "individual-level"
    COMMUNITY_GOLDS = "community-golds"

    # Boards where a level is part of the group key
    LEVEL_BOARDS = (INDIVIDUAL_LEVEL, COMMUNITY_GOLDS)

class RunMode:
    """Solo or co-op run."""

    SOLO = "solo"
    COOP = "co-op"

class OwnershipConstants:
    """Sentinel values stored in a run's owner reference."""

    IMPORTED = "imported"
    UNLINKED_PREFIX = "unlinked_"
    UNCLAIMED_PREFIX = "unclaimed_"

    # Length of the display-name hash in unlinked_<hash> references
    NAME_HASH_LENGTH = 16

class RankingConstants:
    """Constants related to rank persistence."""

    # Only podium positions are stored on a run
    MAX_PERSISTED_RANK = 3

class PointsDefaults:
    """Default parameters for the points formula (overridable via points.* config keys)."""

    BASE_MULTIPLIER = 800
    MIN_POINTS = 10
    MIN_TIME_POINT_RATIO = 0.5

    ELIGIBLE_PLATFORMS = ("GameCube",)
    ELIGIBLE_CATEGORIES = ("Any%", "Nocuts Noships")

    # Exponential decay scale factors (seconds) when no category minimum time is configured
    DEFAULT_SCALE_FACTOR = 2400
    NOCUTS_SCALE_FACTOR = 1400

    # Built-in milestone bonuses: threshold seconds, min multiplier, max multiplier
    ANY_PERCENT_MILESTONE = (3300, 1.2, 2.0)
    NOCUTS_MILESTONE = (1740, 1.3, 2.2)

    # Podium bonus multipliers
    RANK_BONUS = {1: 1.5, 2: 1.25, 3: 1.1}

class RegistryDefaults:
    """Fallback display names."""

    UNKNOWN_NAME = "Unknown"
    UNKNOWN_PLAYER = "Unknown"
