"""
Rank Calculator

Computes each run's position inside its comparison group (board kind, level,
category, platform, mode). Only verified, non-obsolete runs are ranked.

The store may lag behind writes that were just issued, so callers pass a
PendingWriteOverlay describing those writes:
- upserts: runs whose write was just issued (e.g. the run being verified);
  merged into the candidates unless the store already returned that id
- removals: ids whose write just moved them out of the group (unverified,
  obsoleted, edited away, deleted); dropped from the fetched candidates

Removing and upserting the same id replaces the fetched copy with the
pending one.

rank_candidates() is the pure ordering step, shared with the backfill.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from runboard.config import Config
from runboard.data_models.run import RunRecord
from runboard.utils.group_key import GroupKey, group_key_for
from runboard.utils.logger import setup_logger
from runboard.utils.time_parser import time_sort_key

logger = setup_logger(__name__)


@dataclass(frozen=True)
class PendingWriteOverlay:
    """Writes issued by the current operation that a store read may not reflect yet."""
    upserts: Tuple[RunRecord, ...] = ()
    removals: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def upsert(cls, *runs: RunRecord) -> 'PendingWriteOverlay':
        return cls(upserts=tuple(runs))

    @classmethod
    def remove(cls, *run_ids: str) -> 'PendingWriteOverlay':
        return cls(removals=frozenset(run_ids))

    @classmethod
    def replace(cls, *runs: RunRecord) -> 'PendingWriteOverlay':
        return cls(upserts=tuple(runs), removals=frozenset(run.id for run in runs))

    def merge_attributed(self, runs_by_id: Dict[str, RunRecord], belongs: Callable[[RunRecord], bool]) -> None:
        """Apply the overlay to a player's run set in place; belongs() selects attributed upserts."""
        for run_id in self.removals:
            runs_by_id.pop(run_id, None)
        for run in self.upserts:
            if run.id not in runs_by_id and belongs(run):
                runs_by_id[run.id] = run

    def apply(self, group_key: GroupKey, fetched: Iterable[RunRecord]) -> List[RunRecord]:
        """Merge the overlay into a fetched candidate list for one group."""
        candidates = [run for run in fetched if run.id not in self.removals]
        present = {run.id for run in candidates}
        for run in self.upserts:
            if run.id in present:
                continue
            if not run.is_rankable or group_key_for(run) != group_key:
                continue
            candidates.append(run)
            present.add(run.id)
        return candidates


def rank_candidates(runs: Iterable[RunRecord]) -> 'OrderedDict[str, int]':
    """
    Order rankable runs by parsed time ascending, then id, and number them 1..n.

    Obsolete and unverified runs are skipped. Unparseable times sort last.
    """
    rankable = [run for run in runs if run.is_rankable]
    rankable.sort(key=lambda run: (time_sort_key(run.time), run.id))
    return OrderedDict((run.id, position) for position, run in enumerate(rankable, start=1))


class RankCalculator:
    """Ranks a comparison group from the store, corrected by a pending-write overlay."""

    def __init__(self, store, fetch_limit: Optional[int] = None):
        self.store = store
        self.fetch_limit = fetch_limit or Config.RUN_FETCH_LIMIT

    async def fetch_group(self, group_key: GroupKey, overlay: Optional[PendingWriteOverlay] = None) -> List[RunRecord]:
        """Fetch the rankable candidates of a group with the overlay applied."""
        fetched = await self.store.query_runs(self.fetch_limit, verified=True, **group_key.as_filters())
        if len(fetched) >= self.fetch_limit:
            logger.warning(
                f"Group {group_key} hit the fetch limit of {self.fetch_limit} runs; "
                f"ranks beyond the limit may be inaccurate"
            )
        fetched = [run for run in fetched if not run.obsolete]
        if overlay is not None:
            return overlay.apply(group_key, fetched)
        return fetched

    async def rank(self, group_key: GroupKey, overlay: Optional[PendingWriteOverlay] = None) -> 'OrderedDict[str, int]':
        """Compute the dense rank of every candidate in the group."""
        candidates = await self.fetch_group(group_key, overlay)
        return rank_candidates(candidates)

    async def rank_with_runs(
        self, group_key: GroupKey, overlay: Optional[PendingWriteOverlay] = None
    ) -> Tuple['OrderedDict[str, int]', Dict[str, RunRecord]]:
        """Like rank(), also returning the candidate runs by id."""
        candidates = await self.fetch_group(group_key, overlay)
        return rank_candidates(candidates), {run.id: run for run in candidates}
