"""
Player Linking Resolver

Maps free-text runner names to accounts and re-attributes runs whose owner is
a placeholder (empty, imported, unlinked_*, unclaimed_*). A run linked to one
real account is never re-attributed to a different account.
"""

import logging
from typing import Dict, List, Optional

from runboard.config import Config
from runboard.data_models.results import LinkSummary
from runboard.data_models.run import PlayerRecord, RunRecord
from runboard.database.store import RUNS, WriteOp
from runboard.operations.rank_calculator import PendingWriteOverlay
from runboard.services.base import BaseService
from runboard.services.batch_writer import BatchWriteCoordinator
from runboard.utils.exceptions import RunboardException, StoreError
from runboard.utils.ownership import RealOwner, is_claimable, normalize_name, parse_owner_ref, real_player_id

logger = logging.getLogger(__name__)

# Display names are expected to be unique; a small bound surfaces duplicates
NAME_MATCH_LIMIT = 10


async def find_players_by_name(store, display_name: Optional[str]) -> List[PlayerRecord]:
    """Accounts whose display name matches (case-insensitive, trimmed)."""
    name_key = normalize_name(display_name)
    if not name_key:
        return []
    return await store.query_players(NAME_MATCH_LIMIT, display_name_key=name_key)


async def resolve_owner(store, display_name: Optional[str]) -> Optional[PlayerRecord]:
    """The account a runner name refers to, or None."""
    players = await find_players_by_name(store, display_name)
    if not players:
        return None
    if len(players) > 1:
        logger.warning(
            f"Display name '{display_name}' matches {len(players)} accounts; using {players[0].uid}"
        )
    return players[0]


class PlayerLinkingService(BaseService):
    """Claims and automatic linking of placeholder-owned runs."""

    def __init__(self, store, engine, batch_writer: Optional[BatchWriteCoordinator] = None):
        super().__init__(store)
        self.engine = engine
        self.batch_writer = batch_writer or BatchWriteCoordinator(store)
        self.scan_limit = Config.LINK_SCAN_LIMIT

    async def resolve_owner(self, display_name: str) -> Optional[PlayerRecord]:
        return await resolve_owner(self.store, display_name)

    async def claim(self, run_id: str, account_id: str) -> bool:
        """
        Attribute a run to an account.

        Permitted when the run's owner is a placeholder or the account's
        display name matches the run's runner name. Claiming a run the account
        already owns succeeds without changes.

        Returns:
            True when the account owns the run afterwards, False when refused
        """
        run = await self.store.require_run(run_id)
        player = await self.store.require_player(account_id)

        ownership = parse_owner_ref(run.owner_ref)
        if isinstance(ownership, RealOwner) and ownership.player_id == account_id:
            return True

        player_key = normalize_name(player.display_name)
        name_matches = bool(player_key) and player_key == normalize_name(run.owner_display_name)
        if not (is_claimable(ownership) or name_matches):
            logger.info(f"Claim of run {run_id} by {account_id} refused: owned by another account")
            return False

        await self.store.update_run(run_id, {'owner_ref': account_id})
        claimed = run.with_changes(owner_ref=account_id)
        logger.info(f"Run {run_id} claimed by {account_id} (previous owner '{run.owner_ref}')")

        players = {account_id}
        try:
            players |= await self.engine.affected_players([run])
        except StoreError as e:
            logger.error(f"Could not resolve previous owners of run {run_id}: {e}")
        for player_id in sorted(players):
            try:
                await self.engine.recompute_totals(player_id, overlay=PendingWriteOverlay.replace(claimed))
            except RunboardException as e:
                logger.error(f"Recompute after claim failed for {player_id}: {e}")
        return True

    async def _linkable_runs(self, name_key: str) -> Dict[str, List[RunRecord]]:
        primary = await self.store.query_runs(self.scan_limit, owner_name_key=name_key)
        co_op = await self.store.query_runs(self.scan_limit, co_owner_name_key=name_key)
        for label, runs in (('primary', primary), ('co-op', co_op)):
            if len(runs) >= self.scan_limit:
                logger.warning(f"Auto-link {label} scan for '{name_key}' hit the limit of {self.scan_limit} runs")
        return {'primary': primary, 'co_op': [run for run in co_op if run.is_coop]}

    async def auto_link(self, account_id: str, display_name: Optional[str] = None) -> LinkSummary:
        """
        Link every placeholder-owned run carrying the account's name.

        Scans verified and unverified runs in both the primary and co-op slot,
        reassigns them in bulk and recomputes the totals of every real account
        touched. Per-run failures are reported in the summary, never raised.
        """
        summary = LinkSummary()
        try:
            if display_name is None:
                player = await self.store.require_player(account_id)
                display_name = player.display_name
            name_key = normalize_name(display_name)
            if not name_key:
                summary.errors.append(f"Account {account_id} has no display name to link by")
                return summary
            candidates = await self._linkable_runs(name_key)
        except RunboardException as e:
            logger.error(f"Auto-link scan failed for {account_id}: {e}")
            summary.errors.append(str(e))
            return summary

        updates = {}
        runs = {}
        for run in candidates['primary']:
            if is_claimable(parse_owner_ref(run.owner_ref)):
                updates.setdefault(run.id, {})['owner_ref'] = account_id
                runs[run.id] = run
        for run in candidates['co_op']:
            if run.owner_ref == account_id or updates.get(run.id, {}).get('owner_ref') == account_id:
                continue
            if is_claimable(parse_owner_ref(run.co_owner_ref)):
                updates.setdefault(run.id, {})['co_owner_ref'] = account_id
                runs[run.id] = run

        if not updates:
            logger.info(f"Auto-link found nothing to link for {account_id}")
            return summary

        ops = [WriteOp(RUNS, run_id, fields) for run_id, fields in updates.items()]
        batch = await self.batch_writer.commit(ops)
        summary.linked = batch.committed
        summary.errors.extend(batch.errors)

        linked_runs = [runs[run_id].with_changes(**fields) for run_id, fields in updates.items()]
        players = {account_id}
        for run in linked_runs:
            for ref in (run.owner_ref, run.co_owner_ref):
                other = real_player_id(ref)
                if other and other != account_id:
                    players.add(other)

        # Failed chunks leave some runs unlinked; read the store as-is then
        overlay = None if batch.failed else PendingWriteOverlay.replace(*linked_runs)
        for player_id in sorted(players):
            try:
                await self.engine.recompute_totals(player_id, overlay=overlay)
                summary.players_recomputed += 1
            except RunboardException as e:
                logger.error(f"Recompute after auto-link failed for {player_id}: {e}")
                summary.errors.append(str(e))

        logger.info(f"Auto-linked {summary.linked} runs to {account_id}")
        return summary

    async def auto_link_all(self) -> LinkSummary:
        """Run auto_link for every account."""
        total = LinkSummary()
        players = await self.store.query_players(self.scan_limit)
        if len(players) >= self.scan_limit:
            logger.warning(f"Auto-link-all player scan hit the limit of {self.scan_limit}")
        for player in players:
            summary = await self.auto_link(player.uid, player.display_name)
            total.linked += summary.linked
            total.players_recomputed += summary.players_recomputed
            total.errors.extend(summary.errors)
        logger.info(f"Auto-link-all linked {total.linked} runs across {len(players)} accounts")
        return total
