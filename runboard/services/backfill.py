"""
Backfill service.

Re-derives rank and points for every verified run and recomputes the totals
of every real player attached to one. Intended for administrators after a
points formula change, an import, or a partially failed operation; it is
re-runnable and tolerates partial completion.

A Redis set-if-absent key with expiry debounces concurrent backfills. Without
Redis the backfill runs unlocked.
"""

import logging
from collections import defaultdict

from runboard.config import Config
from runboard.data_models.results import BackfillSummary
from runboard.operations.rank_calculator import rank_candidates
from runboard.services.base import BaseService
from runboard.services.player_linking import find_players_by_name
from runboard.utils.exceptions import RunboardException
from runboard.utils.group_key import group_key_for
from runboard.utils.ownership import normalize_name, parse_owner_ref, RealOwner
from runboard.utils.redis_utils import RedisUtils

logger = logging.getLogger(__name__)

BACKFILL_LOCK_KEY = "runboard:backfill_lock"


class BackfillService(BaseService):
    """Full-corpus rank/points/totals recompute."""

    def __init__(self, store, engine, redis_enabled: bool = True):
        super().__init__(store)
        self.engine = engine
        self.fetch_limit = Config.BACKFILL_FETCH_LIMIT
        self.redis_client = None
        self.redis_enabled = redis_enabled

    async def _get_redis_client(self):
        """Get Redis client for the debounce lock. Returns None if Redis is unavailable."""
        if not self.redis_enabled:
            return None

        if self.redis_client is None:
            self.redis_client = await RedisUtils.create_redis_client()
            if self.redis_client is None:
                logger.warning("No Redis configured. Backfill will run without locking.")
                self.redis_enabled = False
        return self.redis_client

    async def _acquire_lock(self) -> bool:
        redis_client = await self._get_redis_client()
        if not redis_client:
            logger.debug("Running backfill without Redis locking")
            return True
        # Lock expires naturally for debouncing - no manual deletion needed
        return bool(await redis_client.set(BACKFILL_LOCK_KEY, "1", ex=Config.BACKFILL_LOCK_SECONDS, nx=True))

    async def _players_for_runs(self, runs) -> set:
        """Distinct real accounts attached to the runs, resolving placeholder names once each."""
        player_ids = set()
        names = set()
        for run in runs:
            slots = [(run.owner_ref, run.owner_display_name)]
            if run.is_coop:
                slots.append((run.co_owner_ref, run.co_owner_display_name))
            for ref, name in slots:
                ownership = parse_owner_ref(ref)
                if isinstance(ownership, RealOwner):
                    player_ids.add(ownership.player_id)
                elif normalize_name(name):
                    names.add(normalize_name(name))

        for name in sorted(names):
            for player in await find_players_by_name(self.store, name):
                player_ids.add(player.uid)
        return player_ids

    async def backfill_all(self) -> BackfillSummary:
        """
        Rank every verified run per group, persist rank/points in batches and
        recompute totals for every real player touched.
        """
        summary = BackfillSummary()
        if not await self._acquire_lock():
            logger.info("Backfill throttled - lock exists")
            summary.skipped = True
            return summary

        async def fetch_verified_runs():
            return await self.store.query_runs(self.fetch_limit, verified=True)

        runs = await self.execute_with_retry(fetch_verified_runs)
        if len(runs) >= self.fetch_limit:
            message = f"Backfill read hit the fetch limit of {self.fetch_limit} runs; remaining runs were not processed"
            logger.warning(message)
            summary.errors.append(message)

        snapshot = await self.engine.registry.snapshot()
        groups = defaultdict(list)
        for run in runs:
            groups[group_key_for(run)].append(run)

        ops = []
        for group_runs in groups.values():
            ranks = rank_candidates(group_runs)
            for run in group_runs:
                computed = self.engine.points_for(run, snapshot, ranks.get(run.id))
                op = self.engine.run_write_op(run, computed)
                if op is not None:
                    ops.append(op)
        summary.groups_ranked = len(groups)

        batch = await self.engine.batch_writer.commit(ops)
        summary.runs_updated = batch.committed
        summary.errors.extend(batch.errors)
        logger.info(f"Backfill ranked {len(groups)} groups, updated {batch.committed} of {len(runs)} runs")

        for player_id in sorted(await self._players_for_runs(runs)):
            try:
                await self.engine.recompute_totals(player_id)
                summary.players_updated += 1
            except RunboardException as e:
                logger.error(f"Backfill recompute failed for player {player_id}: {e}", exc_info=True)
                summary.errors.append(str(e))

        logger.info(f"Backfill complete: {summary.players_updated} players updated, {len(summary.errors)} errors")
        return summary

    async def close(self):
        """Clean up Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
