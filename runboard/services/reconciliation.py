"""
Reconciliation Engine

Every run mutation (verify, unverify, edit, obsolete toggle, delete) flows
through this service. It derives the run's group key, ranks the group with
the pending writes overlaid, derives points, schedules the run writes through
the batch write coordinator and finally recomputes the cached totals of every
real player the mutation touched.

Player totals are always recomputed from scratch, never adjusted by deltas,
so recompute_totals() is idempotent and safe to re-run after a partial
failure.

Error policy:
- failures of the primary mutation propagate to the caller
- totals recomputes triggered as a side effect are caught, logged and
  collected on the returned ReconcileResult
"""

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

from runboard.config import Config
from runboard.constants import BoardKind, RunMode
from runboard.data_models.results import ReconcileResult, TotalsResult
from runboard.data_models.run import PlayerRecord, RunPoints, RunRecord, persisted_rank
from runboard.database.store import RUNS, WriteOp
from runboard.operations.points import PointsDeriver
from runboard.operations.rank_calculator import PendingWriteOverlay, RankCalculator
from runboard.services.base import BaseService
from runboard.services.batch_writer import BatchWriteCoordinator
from runboard.services.player_linking import find_players_by_name, resolve_owner
from runboard.services.registry import Registry, RegistrySnapshot
from runboard.utils.exceptions import (
    PlayerNotFoundError, RecomputeFailedError, RunboardException, StoreError,
    StorePermissionError, ValidationFailedError
)
from runboard.utils.group_key import GroupKey, group_key_for
from runboard.utils.ownership import (
    ImportedOwner, RealOwner, normalize_name, parse_owner_ref, unlinked_ref_for
)
from runboard.utils.run_validation import (
    RANKING_FIELDS, SHAPE_FIELDS, normalize_patch, validate_edited_run, validate_patch
)

logger = logging.getLogger(__name__)


def is_attributed_to(run: RunRecord, player_id: str, name_key: str) -> bool:
    """
    Whether a run counts toward a player's totals (ignoring verification).

    - primary owner is the player's account
    - primary owner is a placeholder and the primary name matches the player
    - co-op partner slot is linked to the player's account
    - co-op partner slot is unlinked (or a placeholder) and its name matches
    """
    ownership = parse_owner_ref(run.owner_ref)
    if isinstance(ownership, RealOwner):
        if ownership.player_id == player_id:
            return True
    elif name_key and normalize_name(run.owner_display_name) == name_key:
        return True

    if not run.is_coop:
        return False

    co_ownership = parse_owner_ref(run.co_owner_ref)
    if isinstance(co_ownership, RealOwner):
        return co_ownership.player_id == player_id
    return bool(name_key) and normalize_name(run.co_owner_display_name) == name_key


def _name_on_runs(player_id: str, runs: Iterable[RunRecord]) -> str:
    """Name the account ran under on its earliest run, for a player document that does not exist yet."""
    for run in sorted(runs, key=lambda r: (r.submitted_date or "", r.id)):
        if run.owner_ref == player_id:
            return run.owner_display_name
        if run.co_owner_ref == player_id and run.co_owner_display_name:
            return run.co_owner_display_name
    return ""


class ReconciliationEngine(BaseService):
    """Keeps run ranks/points and player totals consistent with run mutations."""

    def __init__(
        self,
        store,
        points_deriver: Optional[PointsDeriver] = None,
        registry: Optional[Registry] = None,
        rank_calculator: Optional[RankCalculator] = None,
        batch_writer: Optional[BatchWriteCoordinator] = None,
    ):
        super().__init__(store)
        self.points_deriver = points_deriver or PointsDeriver()
        self.registry = registry or Registry(store)
        self.rank_calculator = rank_calculator or RankCalculator(store)
        self.batch_writer = batch_writer or BatchWriteCoordinator(store)
        self.player_fetch_limit = Config.PLAYER_RUN_FETCH_LIMIT

    # ------------------------------------------------------------------
    # Points / ranking primitives
    # ------------------------------------------------------------------

    def points_for(self, run: RunRecord, snapshot: RegistrySnapshot, position: Optional[int]) -> RunPoints:
        """Authoritative rank/points of a run given its position in the group."""
        if not run.is_rankable:
            position = None
        points = self.points_deriver.points(
            run.time,
            snapshot.category_name(run),
            snapshot.platform_name(run),
            run.category_ref,
            run.platform_ref,
            rank=persisted_rank(position),
            mode=run.mode,
        )
        return RunPoints(run.id, position, points)

    @staticmethod
    def run_write_op(run: RunRecord, computed: RunPoints) -> Optional[WriteOp]:
        """Update op for a run whose stored rank/points differ from the computed ones."""
        if run.rank == computed.rank and run.points == computed.points:
            return None
        return WriteOp(RUNS, run.id, {'rank': computed.rank, 'points': computed.points})

    async def _rerank_group(
        self,
        group_key: GroupKey,
        overlay: Optional[PendingWriteOverlay],
        snapshot: RegistrySnapshot,
    ) -> Tuple[Dict[str, RunPoints], List[WriteOp], List[RunRecord]]:
        """
        Rank one group and compute every candidate's rank/points.

        Returns:
            computed values by run id, the writes needed, and the runs whose
            stored values changed
        """
        ranks, runs = await self.rank_calculator.rank_with_runs(group_key, overlay)
        computed = {}
        ops = []
        changed = []
        for run_id, position in ranks.items():
            run = runs[run_id]
            result = self.points_for(run, snapshot, position)
            computed[run_id] = result
            op = self.run_write_op(run, result)
            if op is not None:
                ops.append(op)
                changed.append(run)
        return computed, ops, changed

    # ------------------------------------------------------------------
    # Affected players
    # ------------------------------------------------------------------

    async def _players_for_slot(self, owner_ref: Optional[str], display_name: Optional[str]) -> Set[str]:
        ownership = parse_owner_ref(owner_ref)
        if isinstance(ownership, RealOwner):
            return {ownership.player_id}
        if not display_name:
            return set()
        players = await find_players_by_name(self.store, display_name)
        return {player.uid for player in players}

    async def affected_players(self, runs: Iterable[RunRecord]) -> Set[str]:
        """Real accounts whose totals include any of the given runs."""
        player_ids = set()
        for run in runs:
            player_ids |= await self._players_for_slot(run.owner_ref, run.owner_display_name)
            if run.is_coop:
                player_ids |= await self._players_for_slot(run.co_owner_ref, run.co_owner_display_name)
        return player_ids

    async def _recompute_side_effects(
        self,
        player_ids: Iterable[str],
        overlay: Optional[PendingWriteOverlay],
        result,
    ) -> None:
        """Recompute totals for each player, collecting failures on the result."""
        for player_id in sorted(set(player_ids)):
            try:
                await self.recompute_totals(player_id, overlay=overlay)
                result.players_recomputed.append(player_id)
            except RunboardException as e:
                logger.error(f"Side-effect recompute failed for player {player_id}: {e}", exc_info=True)
                result.errors.append(str(e))

    async def _commit(self, ops: List[WriteOp], result) -> None:
        if not ops:
            return
        batch = await self.batch_writer.commit(ops)
        result.errors.extend(batch.errors)
        if result.run_id in batch.failed_ids:
            result.success = False

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def verify_run(self, run_id: str, verified_by: str) -> ReconcileResult:
        """
        Verify a run: autofill registry references, mark verified, rank with
        the run itself overlaid, persist its rank/points, re-rank the rest of
        the group and recompute every touched player's totals.
        """
        run = await self.store.require_run(run_id)
        snapshot = await self.registry.snapshot()

        autofilled = snapshot.autofill(run)
        fields = dict(autofilled)
        fields.update({'verified': True, 'verified_by': verified_by})
        await self.store.update_run(run_id, fields)
        if autofilled:
            logger.info(f"Autofilled run {run_id}: {autofilled}")

        verified = run.with_changes(**fields)
        overlay = PendingWriteOverlay.upsert(verified)
        result = ReconcileResult(run_id=run_id, autofilled=autofilled)

        computed, ops, changed = await self._rerank_group(group_key_for(verified), overlay, snapshot)
        own = computed.get(run_id) or self.points_for(verified, snapshot, None)
        result.rank = own.rank
        result.points = own.points
        if run_id not in computed:
            # Obsolete runs are not ranked but still carry base points
            ops.append(WriteOp(RUNS, run_id, {'rank': None, 'points': own.points}))
        await self._commit(ops, result)

        applied = verified.with_changes(rank=own.rank, points=own.points)
        overlay = PendingWriteOverlay.replace(applied)
        players = await self.affected_players([verified] + [r for r in changed if r.id != run_id])
        await self._recompute_side_effects(players, overlay, result)

        logger.info(f"Verified run {run_id} by {verified_by}: rank={result.rank} points={result.points}")
        return result

    async def unverify_run(self, run_id: str) -> ReconcileResult:
        """Retract verification: drop the rank, re-rank the group and recompute totals."""
        run = await self.store.require_run(run_id)
        await self.store.update_run(run_id, {'verified': False, 'verified_by': None, 'rank': None})

        unverified = run.with_changes(verified=False, verified_by=None, rank=None)
        overlay = PendingWriteOverlay.remove(run_id)
        result = ReconcileResult(run_id=run_id, points=run.points)

        changed = []
        if run.verified:
            snapshot = await self.registry.snapshot()
            _, ops, changed = await self._rerank_group(group_key_for(run), overlay, snapshot)
            await self._commit(ops, result)

        players = await self.affected_players([unverified] + changed)
        await self._recompute_side_effects(players, overlay, result)

        logger.info(f"Unverified run {run_id}")
        return result

    async def edit_run(self, run_id: str, patch: Dict) -> ReconcileResult:
        """
        Apply a moderator edit.

        Verified runs are re-ranked in both their old and new group and their
        owners' totals recomputed; raises ValidationFailedError for bad patches.
        """
        errors = validate_patch(patch)
        if errors:
            raise ValidationFailedError(errors)

        run = await self.store.require_run(run_id)
        fields = normalize_patch(patch)

        if fields.get('board_kind', run.board_kind) == BoardKind.REGULAR:
            fields['level_ref'] = ""
        if fields.get('mode', run.mode) != RunMode.COOP:
            fields['co_owner_display_name'] = None
            fields['co_owner_ref'] = None
        if SHAPE_FIELDS.intersection(patch):
            errors = validate_edited_run(run.with_changes(**fields))
            if errors:
                raise ValidationFailedError(errors)

        if 'owner_display_name' in fields:
            fields['owner_ref'] = await self._reresolve_owner(run, fields['owner_display_name'])
        if fields.get('co_owner_display_name'):
            fields['co_owner_ref'] = await self._reresolve_partner(run, fields['co_owner_display_name'])

        changes = {key: value for key, value in fields.items() if getattr(run, key) != value}
        result = ReconcileResult(run_id=run_id, rank=run.rank, points=run.points)
        if not changes:
            return result

        edited = run.with_changes(**changes)
        old_key = group_key_for(run)
        new_key = group_key_for(edited)
        if old_key != new_key:
            changes['rank'] = None
        await self.store.update_run(run_id, changes)
        edited = edited.with_changes(rank=changes.get('rank', run.rank))
        logger.info(f"Edited run {run_id}: {sorted(changes)}")

        touched = [run, edited]
        overlay = PendingWriteOverlay.replace(edited)
        if run.verified and RANKING_FIELDS.intersection(changes):
            snapshot = await self.registry.snapshot()
            ops = []
            keys = [new_key] if old_key == new_key else [old_key, new_key]
            for key in keys:
                computed, group_ops, changed = await self._rerank_group(key, overlay, snapshot)
                ops.extend(group_ops)
                touched.extend(r for r in changed if r.id != run_id)
                if run_id in computed:
                    result.rank = computed[run_id].rank
                    result.points = computed[run_id].points
            if not edited.is_rankable:
                own = self.points_for(edited, snapshot, None)
                result.rank, result.points = None, own.points
                ops.append(WriteOp(RUNS, run_id, {'rank': None, 'points': own.points}))
            await self._commit(ops, result)
            edited = edited.with_changes(rank=result.rank, points=result.points)
            overlay = PendingWriteOverlay.replace(edited)

        players = await self.affected_players(touched)
        await self._recompute_side_effects(players, overlay, result)
        return result

    async def _reresolve_owner(self, run: RunRecord, display_name: str) -> str:
        """Owner reference after a primary name change; real accounts are kept."""
        ownership = parse_owner_ref(run.owner_ref)
        if isinstance(ownership, (RealOwner, ImportedOwner)):
            return ownership.ref
        resolved = await resolve_owner(self.store, display_name)
        if resolved is not None:
            return resolved.uid
        return unlinked_ref_for(display_name)

    async def _reresolve_partner(self, run: RunRecord, display_name: str) -> Optional[str]:
        """Co-op partner reference after a partner name edit; follows the new name."""
        if normalize_name(display_name) == normalize_name(run.co_owner_display_name):
            return run.co_owner_ref
        partner = await resolve_owner(self.store, display_name)
        return partner.uid if partner else None

    async def toggle_obsolete(self, run_id: str, obsolete: bool) -> ReconcileResult:
        """Flag or unflag a run as obsolete; obsolete runs lose their rank but keep base points."""
        run = await self.store.require_run(run_id)
        fields = {'obsolete': obsolete}
        if obsolete:
            fields['rank'] = None
        await self.store.update_run(run_id, fields)

        toggled = run.with_changes(**fields)
        result = ReconcileResult(run_id=run_id, rank=toggled.rank, points=run.points)
        overlay = PendingWriteOverlay.replace(toggled)
        touched = [toggled]

        if run.verified and run.obsolete != obsolete:
            snapshot = await self.registry.snapshot()
            computed, ops, changed = await self._rerank_group(group_key_for(toggled), overlay, snapshot)
            touched.extend(r for r in changed if r.id != run_id)
            own = computed.get(run_id) or self.points_for(toggled, snapshot, None)
            if run_id not in computed:
                ops.append(WriteOp(RUNS, run_id, {'rank': None, 'points': own.points}))
            await self._commit(ops, result)
            result.rank, result.points = own.rank, own.points
            overlay = PendingWriteOverlay.replace(toggled.with_changes(rank=own.rank, points=own.points))

        players = await self.affected_players(touched)
        await self._recompute_side_effects(players, overlay, result)
        logger.info(f"Run {run_id} obsolete={obsolete}")
        return result

    async def delete_run(self, run_id: str) -> ReconcileResult:
        """Hard delete a run, then re-rank its group and recompute its former owners."""
        run = await self.store.require_run(run_id)
        await self.store.delete_run(run_id)
        logger.info(f"Deleted run {run_id}")

        overlay = PendingWriteOverlay.remove(run_id)
        result = ReconcileResult(run_id=run_id, rank=None, points=0)
        touched = [run]
        if run.is_rankable:
            snapshot = await self.registry.snapshot()
            _, ops, changed = await self._rerank_group(group_key_for(run), overlay, snapshot)
            touched.extend(changed)
            await self._commit(ops, result)

        players = await self.affected_players(touched)
        await self._recompute_side_effects(players, overlay, result)
        return result

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------

    async def _attributed_runs(
        self, player_id: str, name_key: str, overlay: Optional[PendingWriteOverlay]
    ) -> Dict[str, RunRecord]:
        """Verified runs counted toward a player, deduplicated by id."""
        limit = self.player_fetch_limit
        queries = [
            {'owner_ref': player_id},
            {'co_owner_ref': player_id, 'mode': RunMode.COOP},
        ]
        if name_key:
            queries.append({'owner_name_key': name_key})
            queries.append({'co_owner_name_key': name_key, 'mode': RunMode.COOP})

        runs_by_id = {}
        for filters in queries:
            fetched = await self.store.query_runs(limit, verified=True, **filters)
            if len(fetched) >= limit:
                logger.warning(f"Player {player_id} run query {filters} hit the fetch limit of {limit}")
            for run in fetched:
                if is_attributed_to(run, player_id, name_key):
                    runs_by_id.setdefault(run.id, run)

        if overlay is not None:
            overlay.merge_attributed(
                runs_by_id, lambda run: run.verified and is_attributed_to(run, player_id, name_key)
            )
        return {run_id: run for run_id, run in runs_by_id.items() if run.verified}

    async def recompute_totals(
        self, player_id: str, overlay: Optional[PendingWriteOverlay] = None
    ) -> TotalsResult:
        """
        Recompute a player's cached totals from scratch.

        Ranks each group the player's runs belong to, derives their points,
        persists run rank/points and writes cachedTotalPoints/cachedTotalRuns.
        Obsolete runs count with base points and no rank.

        Raises:
            RecomputeFailedError: if the runs cannot be read or the totals cannot be written
        """
        try:
            player = await self.store.get_player(player_id)
            name_key = normalize_name(player.display_name) if player else ""
            runs = await self._attributed_runs(player_id, name_key, overlay)
            snapshot = await self.registry.snapshot()

            by_group = defaultdict(list)
            for run in runs.values():
                by_group[group_key_for(run)].append(run)

            ops = []
            total_points = 0
            for key, group_runs in by_group.items():
                ranks = None
                for run in sorted(group_runs, key=lambda r: r.id):
                    position = None
                    if run.is_rankable:
                        if ranks is None:
                            ranks = await self.rank_calculator.rank(key, overlay)
                        position = ranks.get(run.id)
                    computed = self.points_for(run, snapshot, position)
                    total_points += computed.points
                    op = self.run_write_op(run, computed)
                    if op is not None:
                        ops.append(op)
        except StoreError as e:
            raise RecomputeFailedError(player_id, str(e)) from e

        result = TotalsResult(player_id=player_id, total_points=total_points, total_runs=len(runs))
        if ops:
            batch = await self.batch_writer.commit(ops)
            result.runs_updated = batch.committed
            result.errors.extend(batch.errors)

        display_name = "" if player else _name_on_runs(player_id, runs.values())
        await self._write_totals(player_id, total_points, len(runs), display_name)
        logger.info(f"Recomputed totals for {player_id}: {total_points} points over {len(runs)} runs")
        return result

    async def _write_totals(
        self, player_id: str, total_points: float, total_runs: int, display_name: str = ""
    ) -> None:
        """
        Write player totals, retrying once as an upsert on permission or
        missing-document failures. display_name seeds a document the upsert creates.
        """
        fields = {'cached_total_points': total_points, 'cached_total_runs': total_runs}
        try:
            await self.store.update_player(player_id, fields)
            return
        except StorePermissionError as e:
            logger.warning(f"Permission denied updating totals for {player_id}, retrying as upsert: {e}")
        except PlayerNotFoundError:
            logger.info(f"Player document {player_id} missing, creating it")

        try:
            await self.store.upsert_player(player_id, fields, display_name=display_name)
        except StoreError as e:
            raise RecomputeFailedError(player_id, str(e)) from e

    async def points_leaderboard(self, limit: Optional[int] = None) -> List[PlayerRecord]:
        """Players ordered by cached total points, highest first; players without points are left out."""
        return await self.store.top_players(limit or Config.LEADERBOARD_LIMIT)
