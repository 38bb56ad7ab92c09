"""
Run intake: manual submissions and the import pipeline consumer.

Submitted runs are stored unverified, attributed to the account matching the
runner name or to an unlinked_<hash> placeholder. Imported candidates are
always stored unverified and owned by "imported"; duplicates of existing
verified runs and of already imported external ids are skipped.
"""

import logging
from typing import Any, Dict, Iterable, List, Set

from runboard.config import Config
from runboard.constants import OwnershipConstants, RunMode
from runboard.data_models.results import ImportSummary
from runboard.data_models.run import RunRecord
from runboard.services.base import BaseService
from runboard.services.player_linking import resolve_owner
from runboard.utils.exceptions import RunboardException, ValidationFailedError
from runboard.utils.ownership import normalize_name, unlinked_ref_for
from runboard.utils.run_validation import normalize_run_fields, validate_run_fields

logger = logging.getLogger(__name__)

RECORD_FIELDS = (
    'owner_display_name', 'co_owner_display_name', 'board_kind', 'category_ref', 'platform_ref',
    'level_ref', 'mode', 'time', 'submitted_date', 'video_url', 'comment',
    'fallback_category_name', 'fallback_platform_name', 'fallback_level_name', 'import_ref',
)


def duplicate_keys(run: RunRecord) -> Set[str]:
    """Identity keys of a run for duplicate detection (both player orders for co-op)."""
    player1 = normalize_name(run.owner_display_name)
    player2 = normalize_name(run.co_owner_display_name)
    tail = f"{run.category_ref}|{run.platform_ref}|{run.mode}|{run.time}|{run.board_kind}|{run.level_ref}"
    keys = {f"{player1}|{player2}|{tail}"}
    if run.mode == RunMode.COOP and player2:
        keys.add(f"{player2}|{player1}|{tail}")
    return keys


def _record_from_fields(fields: Dict[str, Any], owner_ref: str) -> RunRecord:
    values = {key: fields.get(key) for key in RECORD_FIELDS if fields.get(key) is not None}
    return RunRecord(id="", owner_ref=owner_ref, verified=False, **values)


class RunIntakeService(BaseService):
    """Creates runs from submissions and import candidates."""

    def __init__(self, store):
        super().__init__(store)
        self.scan_limit = Config.BACKFILL_FETCH_LIMIT

    async def submit_run(self, fields: Dict[str, Any]) -> str:
        """
        Validate and store a submitted run (unverified).

        Raises:
            ValidationFailedError: if required fields are missing or malformed

        Returns:
            The new run id
        """
        normalized = normalize_run_fields(fields)
        errors = validate_run_fields(normalized)
        if errors:
            raise ValidationFailedError(errors)

        owner = await resolve_owner(self.store, normalized['owner_display_name'])
        owner_ref = owner.uid if owner else unlinked_ref_for(normalized['owner_display_name'])
        record = _record_from_fields(normalized, owner_ref)

        co_owner_ref = None
        if record.is_coop:
            partner = await resolve_owner(self.store, record.co_owner_display_name)
            co_owner_ref = partner.uid if partner else None
            record = record.with_changes(co_owner_ref=co_owner_ref)

        run_id = await self.store.add_run(record)
        logger.info(f"Run {run_id} submitted by '{record.owner_display_name}' (owner {owner_ref})")
        return run_id

    async def _existing_keys(self):
        runs = await self.store.query_runs(self.scan_limit)
        if len(runs) >= self.scan_limit:
            logger.warning(f"Duplicate check read hit the limit of {self.scan_limit} runs")
        import_refs = {run.import_ref for run in runs if run.import_ref}
        run_keys = set()
        for run in runs:
            if run.verified:
                run_keys |= duplicate_keys(run)
        return import_refs, run_keys

    async def import_candidates(self, records: Iterable[Dict[str, Any]]) -> ImportSummary:
        """
        Store candidate runs from the import pipeline.

        Every candidate is forced to owner "imported" and unverified. Per-record
        failures are reported in the summary, never raised.
        """
        summary = ImportSummary()
        try:
            import_refs, run_keys = await self._existing_keys()
        except RunboardException as e:
            summary.errors.append(f"Failed to fetch existing runs: {e}")
            return summary

        for index, raw in enumerate(records):
            label = raw.get('import_ref') or f"#{index}"
            normalized = normalize_run_fields(raw)
            normalized['verified'] = False

            import_ref = normalized.get('import_ref')
            if import_ref and import_ref in import_refs:
                summary.skipped += 1
                continue

            errors = validate_run_fields(normalized, imported=True)
            if errors:
                summary.skipped += 1
                summary.errors.append(f"Run {label}: {'; '.join(errors)}")
                continue

            record = _record_from_fields(normalized, OwnershipConstants.IMPORTED)
            keys = duplicate_keys(record)
            if keys & run_keys:
                summary.skipped += 1
                continue

            try:
                run_id = await self.store.add_run(record)
            except RunboardException as e:
                summary.skipped += 1
                summary.errors.append(f"Run {label}: {e}")
                logger.error(f"Failed to store imported run {label}: {e}")
                continue

            # Guard against duplicates within the same batch
            run_keys |= keys
            if import_ref:
                import_refs.add(import_ref)
            summary.imported += 1
            summary.imported_ids.append(run_id)

            try:
                unmatched = await self._unmatched_players(record)
            except RunboardException as e:
                summary.errors.append(f"Run {label}: player matching failed: {e}")
                continue
            if unmatched:
                summary.unmatched_players[run_id] = unmatched

        logger.info(f"Imported {summary.imported} runs, skipped {summary.skipped}")
        return summary

    async def _unmatched_players(self, record: RunRecord) -> List[str]:
        names = [record.owner_display_name]
        if record.co_owner_display_name:
            names.append(record.co_owner_display_name)
        unmatched = []
        for name in names:
            if await resolve_owner(self.store, name) is None:
                unmatched.append(name)
        return unmatched
