"""
Document store for runs, players and the category/platform/level registry.

Presents the database as keyed collections: single-document get/update/
upsert/delete, equality-filter queries that always carry a result limit, and
multi-document batched writes bounded by a per-transaction write limit.
Store failures are translated into the runboard exception taxonomy so that
callers can tell "absent", "permission denied" and generic I/O failure apart.
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, fields as dataclass_fields
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError

from runboard.config import Config
from runboard.data_models.run import PlayerRecord, RunRecord, persisted_rank
from runboard.database.models import Run, Player, Category, Platform, Level
from runboard.utils.exceptions import (
    BatchLimitError, PlayerNotFoundError, RunNotFoundError, StoreError, StorePermissionError
)
from runboard.utils.logger import setup_logger
from runboard.utils.ownership import normalize_name

logger = setup_logger(__name__)

RUNS = "runs"
PLAYERS = "players"

_PERMISSION_MARKERS = ("permission denied", "insufficient privilege", "readonly database", "read-only")

_RUN_FIELDS = {f.name for f in dataclass_fields(RunRecord)}
_PLAYER_FIELDS = {f.name for f in dataclass_fields(PlayerRecord)}


@dataclass(frozen=True)
class WriteOp:
    """One document write inside a batch."""
    collection: str
    target_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    kind: str = "update"  # update | upsert | delete


class DocumentStore:
    """Keyed-collection facade over the async SQLAlchemy database."""

    def __init__(self, database, batch_limit: Optional[int] = None):
        self.db = database
        self.batch_limit = batch_limit or Config.BATCH_WRITE_LIMIT

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except SQLAlchemyError as e:
            message = str(e)
            if any(marker in message.lower() for marker in _PERMISSION_MARKERS):
                logger.error(f"Permission denied during {operation}: {message}")
                raise StorePermissionError(operation, message) from e
            logger.error(f"Store failure during {operation}: {message}")
            raise StoreError(operation, message) from e

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Get a run by id, or None when absent"""
        with self._guard("get_run"):
            async with self.db.get_session() as session:
                row = await session.get(Run, run_id)
                return _run_to_record(row) if row else None

    async def require_run(self, run_id: str) -> RunRecord:
        """Get a run by id, raising RunNotFoundError when absent"""
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def query_runs(self, limit: int, **filters) -> List[RunRecord]:
        """
        Equality-filter query over runs, ordered by id and bounded by limit.

        A list/tuple/set filter value matches any of its members.
        """
        with self._guard("query_runs"):
            stmt = select(Run)
            for name, value in filters.items():
                column = getattr(Run, name)
                if isinstance(value, (list, tuple, set, frozenset)):
                    stmt = stmt.where(column.in_(list(value)))
                elif value is None:
                    stmt = stmt.where(column.is_(None))
                else:
                    stmt = stmt.where(column == value)
            stmt = stmt.order_by(Run.id).limit(limit)

            async with self.db.get_session() as session:
                result = await session.execute(stmt)
                return [_run_to_record(row) for row in result.scalars().all()]

    async def add_run(self, record: RunRecord) -> str:
        """Store a new run; the id is assigned when the record carries none"""
        run_id = record.id or uuid.uuid4().hex
        values = _run_values(record)
        values['id'] = run_id
        with self._guard("add_run"):
            async with self.db.transaction() as session:
                session.add(Run(**values))
        return run_id

    async def update_run(self, run_id: str, fields: Dict[str, Any]) -> None:
        """Update fields on an existing run"""
        with self._guard("update_run"):
            async with self.db.transaction() as session:
                row = await session.get(Run, run_id)
                if row is None:
                    raise RunNotFoundError(run_id)
                _apply_run_fields(row, fields)

    async def delete_run(self, run_id: str) -> None:
        """Hard delete a run"""
        with self._guard("delete_run"):
            async with self.db.transaction() as session:
                row = await session.get(Run, run_id)
                if row is None:
                    raise RunNotFoundError(run_id)
                await session.delete(row)

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------

    async def get_player(self, uid: str) -> Optional[PlayerRecord]:
        with self._guard("get_player"):
            async with self.db.get_session() as session:
                row = await session.get(Player, uid)
                return _player_to_record(row) if row else None

    async def require_player(self, uid: str) -> PlayerRecord:
        player = await self.get_player(uid)
        if player is None:
            raise PlayerNotFoundError(uid)
        return player

    async def query_players(self, limit: int, **filters) -> List[PlayerRecord]:
        """Equality-filter query over players, ordered by uid and bounded by limit"""
        with self._guard("query_players"):
            stmt = select(Player)
            for name, value in filters.items():
                stmt = stmt.where(getattr(Player, name) == value)
            stmt = stmt.order_by(Player.uid).limit(limit)
            async with self.db.get_session() as session:
                result = await session.execute(stmt)
                return [_player_to_record(row) for row in result.scalars().all()]

    async def top_players(self, limit: int) -> List[PlayerRecord]:
        """Players with points, ordered by cached total points (highest first), ties by uid"""
        with self._guard("top_players"):
            stmt = (
                select(Player)
                .where(Player.cached_total_points > 0)
                .order_by(Player.cached_total_points.desc(), Player.uid)
                .limit(limit)
            )
            async with self.db.get_session() as session:
                result = await session.execute(stmt)
                return [_player_to_record(row) for row in result.scalars().all()]

    async def add_player(self, record: PlayerRecord) -> str:
        values = _player_values(record)
        with self._guard("add_player"):
            async with self.db.transaction() as session:
                session.add(Player(**values))
        return record.uid

    async def update_player(self, uid: str, fields: Dict[str, Any]) -> None:
        """Update fields on an existing player document"""
        with self._guard("update_player"):
            async with self.db.transaction() as session:
                row = await session.get(Player, uid)
                if row is None:
                    raise PlayerNotFoundError(uid)
                _apply_player_fields(row, fields)

    async def upsert_player(self, uid: str, fields: Dict[str, Any], display_name: str = "") -> None:
        """
        Merge-style write: create the player document if absent, otherwise update.

        display_name only seeds a newly created document; an existing name is kept.
        """
        with self._guard("upsert_player"):
            async with self.db.transaction() as session:
                row = await session.get(Player, uid)
                if row is None:
                    row = Player(uid=uid, display_name=display_name,
                                 display_name_key=normalize_name(display_name),
                                 cached_total_points=0, cached_total_runs=0)
                    session.add(row)
                _apply_player_fields(row, fields)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def list_categories(self, board_kind: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._guard("list_categories"):
            stmt = select(Category).order_by(Category.order, Category.name)
            if board_kind:
                stmt = stmt.where(Category.board_kind == board_kind)
            async with self.db.get_session() as session:
                result = await session.execute(stmt)
                return [
                    {'id': c.id, 'name': c.name, 'board_kind': c.board_kind, 'order': c.order}
                    for c in result.scalars().all()
                ]

    async def list_platforms(self) -> List[Dict[str, Any]]:
        with self._guard("list_platforms"):
            async with self.db.get_session() as session:
                result = await session.execute(select(Platform).order_by(Platform.order, Platform.name))
                return [{'id': p.id, 'name': p.name, 'order': p.order} for p in result.scalars().all()]

    async def list_levels(self) -> List[Dict[str, Any]]:
        with self._guard("list_levels"):
            async with self.db.get_session() as session:
                result = await session.execute(select(Level).order_by(Level.order, Level.name))
                return [{'id': l.id, 'name': l.name, 'order': l.order} for l in result.scalars().all()]

    async def add_category(self, name: str, board_kind: str = "regular", category_id: Optional[str] = None) -> str:
        category_id = category_id or uuid.uuid4().hex
        with self._guard("add_category"):
            async with self.db.transaction() as session:
                session.add(Category(id=category_id, name=name, board_kind=board_kind))
        return category_id

    async def add_platform(self, name: str, platform_id: Optional[str] = None) -> str:
        platform_id = platform_id or uuid.uuid4().hex
        with self._guard("add_platform"):
            async with self.db.transaction() as session:
                session.add(Platform(id=platform_id, name=name))
        return platform_id

    async def add_level(self, name: str, level_id: Optional[str] = None) -> str:
        level_id = level_id or uuid.uuid4().hex
        with self._guard("add_level"):
            async with self.db.transaction() as session:
                session.add(Level(id=level_id, name=name))
        return level_id

    # ------------------------------------------------------------------
    # Batched writes
    # ------------------------------------------------------------------

    async def commit_batch(self, ops: Sequence[WriteOp]) -> int:
        """
        Apply a batch of writes atomically.

        Raises BatchLimitError when the batch exceeds the per-transaction write
        limit; callers chunk through BatchWriteCoordinator. A missing target of
        an update fails the whole batch.
        """
        if len(ops) > self.batch_limit:
            raise BatchLimitError(len(ops), self.batch_limit)
        if not ops:
            return 0

        with self._guard("commit_batch"):
            async with self.db.transaction() as session:
                for op in ops:
                    if op.collection == RUNS:
                        await self._apply_run_op(session, op)
                    elif op.collection == PLAYERS:
                        await self._apply_player_op(session, op)
                    else:
                        raise StoreError("commit_batch", f"unknown collection '{op.collection}'")
        return len(ops)

    async def _apply_run_op(self, session, op: WriteOp):
        if op.kind == "delete":
            await session.execute(delete(Run).where(Run.id == op.target_id))
            return
        row = await session.get(Run, op.target_id)
        if row is None:
            if op.kind != "upsert":
                raise RunNotFoundError(op.target_id)
            row = Run(id=op.target_id, time="00:00:00")
            session.add(row)
        _apply_run_fields(row, op.fields)

    async def _apply_player_op(self, session, op: WriteOp):
        if op.kind == "delete":
            await session.execute(delete(Player).where(Player.uid == op.target_id))
            return
        row = await session.get(Player, op.target_id)
        if row is None:
            if op.kind != "upsert":
                raise PlayerNotFoundError(op.target_id)
            row = Player(uid=op.target_id, display_name="", display_name_key="",
                         cached_total_points=0, cached_total_runs=0)
            session.add(row)
        _apply_player_fields(row, op.fields)


# ----------------------------------------------------------------------
# Row <-> record mapping
# ----------------------------------------------------------------------

def _run_to_record(row: Run) -> RunRecord:
    return RunRecord(**{name: getattr(row, name) for name in _RUN_FIELDS})


def _player_to_record(row: Player) -> PlayerRecord:
    return PlayerRecord(**{name: getattr(row, name) for name in _PLAYER_FIELDS})


def _run_values(record: RunRecord) -> Dict[str, Any]:
    values = {name: getattr(record, name) for name in _RUN_FIELDS}
    values['rank'] = persisted_rank(values['rank']) if values['verified'] and not values['obsolete'] else None
    values['owner_name_key'] = normalize_name(record.owner_display_name)
    values['co_owner_name_key'] = normalize_name(record.co_owner_display_name) or None
    return values


def _player_values(record: PlayerRecord) -> Dict[str, Any]:
    values = {name: getattr(record, name) for name in _PLAYER_FIELDS}
    values['display_name_key'] = normalize_name(record.display_name)
    return values


def _apply_run_fields(row: Run, fields: Dict[str, Any]) -> None:
    for name, value in fields.items():
        if name not in _RUN_FIELDS or name == 'id':
            raise StoreError("update_run", f"unknown or read-only field '{name}'")
        if name == 'rank':
            value = persisted_rank(value)
        setattr(row, name, value)
    if 'owner_display_name' in fields:
        row.owner_name_key = normalize_name(row.owner_display_name)
    if 'co_owner_display_name' in fields:
        row.co_owner_name_key = normalize_name(row.co_owner_display_name) or None


def _apply_player_fields(row: Player, fields: Dict[str, Any]) -> None:
    for name, value in fields.items():
        if name not in _PLAYER_FIELDS or name == 'uid':
            raise StoreError("update_player", f"unknown or read-only field '{name}'")
        setattr(row, name, value)
    if 'display_name' in fields:
        row.display_name_key = normalize_name(row.display_name)
