"""
Result objects returned by the engine's public operations.

Bulk operations return summaries with an error list instead of raising, since
partial success is the expected outcome at scale.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class BatchResult:
    """Outcome of a chunked batch commit."""
    committed: int = 0
    failed: int = 0
    chunks: int = 0
    failed_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0


@dataclass
class TotalsResult:
    """Outcome of a from-scratch player totals recompute."""
    player_id: str
    total_points: float
    total_runs: int
    runs_updated: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ReconcileResult:
    """
    Outcome of a single-run mutation (verify, unverify, edit, obsolete, delete).

    success is False when the run's own rank/points write failed; side-effect
    failures only add to errors.
    """
    run_id: str
    success: bool = True
    rank: Optional[int] = None
    points: float = 0
    autofilled: Dict[str, str] = field(default_factory=dict)
    players_recomputed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class LinkSummary:
    """Outcome of an auto-link pass."""
    linked: int = 0
    players_recomputed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class BackfillSummary:
    """Outcome of a full-corpus backfill."""
    runs_updated: int = 0
    groups_ranked: int = 0
    players_updated: int = 0
    skipped: bool = False
    errors: List[str] = field(default_factory=list)


@dataclass
class ImportSummary:
    """Outcome of consuming candidate runs from the import pipeline."""
    imported: int = 0
    skipped: int = 0
    imported_ids: List[str] = field(default_factory=list)
    unmatched_players: Dict[str, List[str]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
