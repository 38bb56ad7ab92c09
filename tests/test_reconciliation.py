"""
Integration tests for the reconciliation engine.

Runs are arranged directly in the store, then mutated through the engine;
assertions read the persisted run and player documents back.
"""

import pytest

from runboard.constants import RunMode
from runboard.utils.exceptions import (
    RecomputeFailedError, RunNotFoundError, StoreError, StorePermissionError, ValidationFailedError
)
from runboard.utils.ownership import unlinked_ref_for


async def _totals(store, player_id):
    player = await store.require_player(player_id)
    return player.cached_total_points, player.cached_total_runs


@pytest.mark.asyncio
class TestVerifyRun:
    """Test verification ranking and totals."""

    async def test_verify_ranks_against_stale_read(self, store, engine, deriver, make_run, make_player):
        """The verified run is ranked even when the store read does not return it yet."""
        for uid in ("p1", "p2", "p3"):
            await make_player(uid)
        await make_run("R1", owner_ref="p1", time="00:10:00", verified=False)
        await make_run("R2", owner_ref="p2", time="00:09:00")
        await make_run("R3", owner_ref="p3", time="00:09:30")
        await engine.edit_run("R1", {'time': "00:08:00"})
        store.hidden = {"R1"}

        result = await engine.verify_run("R1", "mod")

        assert result.rank == 1
        assert result.errors == []
        ranks = {run_id: (await store.get_run(run_id)).rank for run_id in ("R1", "R2", "R3")}
        assert ranks == {"R1": 1, "R2": 2, "R3": 3}
        expected = deriver.points("00:08:00", "Any%", "GameCube", rank=1)
        assert result.points == expected
        assert await _totals(store, "p1") == (expected, 1)

    async def test_verify_records_moderator(self, store, engine, make_run):
        await make_run("r1", verified=False)
        await engine.verify_run("r1", "mod")
        run = await store.get_run("r1")
        assert run.verified is True
        assert run.verified_by == "mod"

    async def test_only_podium_ranks_persisted(self, store, engine, make_run):
        for run_id, time in (("a", "00:10:00"), ("b", "00:09:00"), ("c", "00:08:00"), ("d", "00:07:00")):
            await make_run(run_id, time=time, verified=False)
            await engine.verify_run(run_id, "mod")

        ranks = {run_id: (await store.get_run(run_id)).rank for run_id in "abcd"}
        assert ranks == {"d": 1, "c": 2, "b": 3, "a": None}

    async def test_dropped_off_podium_keeps_base_points(self, store, engine, deriver, make_run):
        for run_id, time in (("a", "00:10:00"), ("b", "00:09:00"), ("c", "00:08:00"), ("d", "00:07:00")):
            await make_run(run_id, time=time, verified=False)
            await engine.verify_run(run_id, "mod")

        assert (await store.get_run("a")).points == deriver.points("00:10:00", "Any%", "GameCube")

    async def test_verify_missing_run(self, engine):
        with pytest.raises(RunNotFoundError):
            await engine.verify_run("missing", "mod")

    async def test_verify_autofills_references(self, store, engine, refs, make_run):
        await make_run("r1", verified=False, platform_ref="", fallback_platform_name="GameCube")
        result = await engine.verify_run("r1", "mod")
        assert result.autofilled == {'platform_ref': refs['gamecube']}
        assert (await store.get_run("r1")).platform_ref == refs['gamecube']
        assert result.points > 0

    async def test_side_effect_failures_collected(self, store, engine, make_run, make_player, mocker):
        await make_player("p1")
        await make_run("r1", owner_ref="p1", verified=False)
        mocker.patch.object(engine, 'recompute_totals', side_effect=RecomputeFailedError("p1", "boom"))

        result = await engine.verify_run("r1", "mod")

        assert result.success
        assert len(result.errors) == 1
        assert (await store.get_run("r1")).verified is True

    async def test_failed_run_write_reported(self, store, engine, make_run, make_player, mocker):
        """The mutation reports failure when the run's own rank/points write is lost."""
        await make_player("p1")
        await make_run("r1", owner_ref="p1", verified=False)
        mocker.patch.object(store, 'commit_batch', side_effect=StoreError("commit_batch", "boom"))

        result = await engine.verify_run("r1", "mod")

        assert result.success is False
        assert result.errors
        assert (await store.get_run("r1")).rank is None


@pytest.mark.asyncio
class TestUnverifyRun:
    """Test verification retraction."""

    async def test_unverify_restores_totals_and_promotes(self, store, engine, deriver, make_run, make_player):
        await make_player("p1")
        await make_player("p2")
        await make_run("a", owner_ref="p1", time="00:08:00", verified=False)
        await make_run("b", owner_ref="p2", time="00:09:00", verified=False)
        await engine.verify_run("a", "mod")
        await engine.verify_run("b", "mod")
        assert (await _totals(store, "p1"))[1] == 1

        await engine.unverify_run("a")

        run = await store.get_run("a")
        assert run.verified is False
        assert run.rank is None
        assert await _totals(store, "p1") == (0, 0)
        assert (await store.get_run("b")).rank == 1
        assert await _totals(store, "p2") == (deriver.points("00:09:00", "Any%", "GameCube", rank=1), 1)

    async def test_unverify_unverified_run(self, store, engine, make_run):
        await make_run("a", verified=False)
        result = await engine.unverify_run("a")
        assert result.errors == []


@pytest.mark.asyncio
class TestRecomputeTotals:
    """Test from-scratch totals recompute."""

    async def test_recompute_is_idempotent(self, store, engine, make_run, make_player):
        await make_player("p1")
        await make_run("a", owner_ref="p1", time="00:08:00")
        await make_run("b", owner_ref="p1", time="00:20:00")

        first = await engine.recompute_totals("p1")
        second = await engine.recompute_totals("p1")

        assert first.total_points == second.total_points
        assert first.total_runs == second.total_runs == 2
        assert first.runs_updated > 0
        assert second.runs_updated == 0

    async def test_stale_stored_values_repaired(self, store, engine, deriver, make_run, make_player):
        await make_player("p1")
        await make_run("a", owner_ref="p1", time="00:08:00", rank=3, points=1)

        result = await engine.recompute_totals("p1")

        run = await store.get_run("a")
        assert run.rank == 1
        assert run.points == deriver.points("00:08:00", "Any%", "GameCube", rank=1)
        assert result.total_points == run.points

    async def test_coop_run_counted_once_per_owner(self, store, engine, deriver, make_run, make_player):
        await make_player("alice", "Alice")
        await make_player("bob", "Bob")
        await make_run("c", owner_ref="alice", owner_display_name="Alice", co_owner_display_name="Bob",
                       mode=RunMode.COOP, verified=False)

        await engine.verify_run("c", "mod")

        share = deriver.points("00:10:00", "Any%", "GameCube", rank=1, mode=RunMode.COOP)
        assert (await store.get_run("c")).points == share
        assert await _totals(store, "alice") == (share, 1)
        assert await _totals(store, "bob") == (share, 1)

    async def test_placeholder_owned_run_credited_by_name(self, store, engine, make_run, make_player):
        await make_player("carol", "Carol")
        await make_run("a", owner_ref=unlinked_ref_for("Carol"), owner_display_name="carol ")

        result = await engine.recompute_totals("carol")

        assert result.total_runs == 1

    async def test_partner_linked_elsewhere_not_credited_by_name(self, store, engine, make_run, make_player):
        await make_player("x", "Bob")
        await make_run("c", owner_ref="alice", co_owner_display_name="Bob", co_owner_ref="bob",
                       mode=RunMode.COOP)

        result = await engine.recompute_totals("x")

        assert result.total_runs == 0

    async def test_real_owned_run_not_credited_by_name(self, store, engine, make_run, make_player):
        await make_player("x", "Dana")
        await make_run("a", owner_ref="someone", owner_display_name="Dana")
        assert (await engine.recompute_totals("x")).total_runs == 0

    async def test_missing_player_document_created(self, store, engine, make_run):
        await make_run("a", owner_ref="ghost")

        result = await engine.recompute_totals("ghost")

        assert result.total_runs == 1
        player = await store.require_player("ghost")
        assert player.cached_total_runs == 1
        assert player.display_name == "Runner"

    async def test_permission_denied_retried_as_upsert(self, store, engine, make_run, make_player, mocker):
        await make_player("p1")
        await make_run("a", owner_ref="p1")
        mocker.patch.object(store, 'update_player', side_effect=StorePermissionError("update_player", "denied"))

        result = await engine.recompute_totals("p1")

        assert (await store.require_player("p1")).cached_total_points == result.total_points
        assert result.total_runs == 1

    async def test_totals_write_failure_raises(self, store, engine, make_run, make_player, mocker):
        await make_player("p1")
        await make_run("a", owner_ref="p1")
        mocker.patch.object(store, 'update_player', side_effect=StorePermissionError("update_player", "denied"))
        mocker.patch.object(store, 'upsert_player', side_effect=StoreError("upsert_player", "boom"))

        with pytest.raises(RecomputeFailedError):
            await engine.recompute_totals("p1")

    async def test_read_failure_raises(self, store, engine, mocker):
        mocker.patch.object(store, 'query_runs', side_effect=StoreError("query_runs", "boom"))
        with pytest.raises(RecomputeFailedError):
            await engine.recompute_totals("p1")


@pytest.mark.asyncio
class TestObsolete:
    """Test obsolete flagging."""

    async def test_obsolete_run_loses_rank_keeps_base_points(self, store, engine, deriver, make_run, make_player):
        await make_player("p1")
        await make_player("p2")
        await make_run("fast", owner_ref="p1", time="00:08:00", verified=False)
        await make_run("slow", owner_ref="p2", time="00:09:00", verified=False)
        await engine.verify_run("fast", "mod")
        await engine.verify_run("slow", "mod")

        result = await engine.toggle_obsolete("fast", True)

        base = deriver.points("00:08:00", "Any%", "GameCube")
        fast = await store.get_run("fast")
        assert fast.rank is None
        assert fast.points == base
        assert result.points == base
        assert await _totals(store, "p1") == (base, 1)
        assert (await store.get_run("slow")).rank == 1

    async def test_unflagging_restores_rank(self, store, engine, make_run):
        await make_run("fast", time="00:08:00", verified=False)
        await make_run("slow", time="00:09:00", verified=False)
        await engine.verify_run("fast", "mod")
        await engine.verify_run("slow", "mod")
        await engine.toggle_obsolete("fast", True)

        result = await engine.toggle_obsolete("fast", False)

        assert result.rank == 1
        assert (await store.get_run("slow")).rank == 2


@pytest.mark.asyncio
class TestEditAndDelete:
    """Test moderator edits and deletion."""

    async def test_invalid_patch_rejected(self, engine, make_run):
        await make_run("a")
        with pytest.raises(ValidationFailedError):
            await engine.edit_run("a", {'time': "garbage"})
        with pytest.raises(ValidationFailedError):
            await engine.edit_run("a", {'verified': True})

    async def test_moving_group_reranks_both(self, store, engine, refs, make_run, make_player):
        await make_player("p1")
        await make_player("p2")
        await make_run("a", owner_ref="p1", time="00:08:00", verified=False)
        await make_run("b", owner_ref="p2", time="00:09:00", verified=False)
        await engine.verify_run("a", "mod")
        await engine.verify_run("b", "mod")

        result = await engine.edit_run("a", {'category_ref': refs['free_play']})

        assert result.rank == 1
        assert result.points == 0
        assert (await store.get_run("b")).rank == 1
        assert await _totals(store, "p1") == (0, 1)

    async def test_edit_time_reranks(self, store, engine, make_run):
        await make_run("a", time="00:08:00", verified=False)
        await make_run("b", time="00:09:00", verified=False)
        await engine.verify_run("a", "mod")
        await engine.verify_run("b", "mod")

        await engine.edit_run("b", {'time': "7:00"})

        assert (await store.get_run("b")).rank == 1
        assert (await store.get_run("a")).rank == 2

    async def test_owner_rename_relinks_placeholder(self, store, engine, make_run, make_player):
        await make_player("erin", "Erin")
        await make_run("a", owner_ref=unlinked_ref_for("Errin"), owner_display_name="Errin")

        await engine.edit_run("a", {'owner_display_name': "Erin"})

        assert (await store.get_run("a")).owner_ref == "erin"
        assert (await _totals(store, "erin"))[1] == 1

    async def test_noop_edit(self, engine, make_run):
        await make_run("a", comment="pb")
        result = await engine.edit_run("a", {'comment': "pb"})
        assert result.players_recomputed == []

    async def test_delete_promotes_and_recomputes(self, store, engine, make_run, make_player):
        await make_player("p1")
        await make_player("p2")
        await make_run("a", owner_ref="p1", time="00:08:00", verified=False)
        await make_run("b", owner_ref="p2", time="00:09:00", verified=False)
        await engine.verify_run("a", "mod")
        await engine.verify_run("b", "mod")

        result = await engine.delete_run("a")

        assert await store.get_run("a") is None
        assert sorted(result.players_recomputed) == ["p1", "p2"]
        assert await _totals(store, "p1") == (0, 0)
        assert (await store.get_run("b")).rank == 1

    async def test_partner_rename_moves_credit(self, store, engine, make_run, make_player):
        for uid, name in (("alice", "Alice"), ("bob", "Bob"), ("carol", "Carol")):
            await make_player(uid, name)
        await make_run("a", owner_ref="alice", owner_display_name="Alice", mode=RunMode.COOP,
                       co_owner_display_name="Bob", co_owner_ref="bob", verified=False)
        await engine.verify_run("a", "mod")
        assert (await _totals(store, "bob"))[1] == 1

        result = await engine.edit_run("a", {'co_owner_display_name': "Carol"})

        assert (await store.get_run("a")).co_owner_ref == "carol"
        assert await _totals(store, "bob") == (0, 0)
        assert await _totals(store, "carol") == await _totals(store, "alice")
        assert {"bob", "carol"} <= set(result.players_recomputed)

    async def test_partner_rename_to_unknown_runner_unlinks(self, store, engine, make_run, make_player):
        await make_player("bob", "Bob")
        await make_run("a", mode=RunMode.COOP, co_owner_display_name="Bob", co_owner_ref="bob")

        await engine.edit_run("a", {'co_owner_display_name': "Dave"})

        assert (await store.get_run("a")).co_owner_ref is None
        assert await _totals(store, "bob") == (0, 0)

    async def test_partner_case_fix_keeps_link(self, store, engine, make_run, make_player):
        await make_player("bob", "Robert")
        await make_run("a", mode=RunMode.COOP, co_owner_display_name="bob", co_owner_ref="bob")

        await engine.edit_run("a", {'co_owner_display_name': "Bob"})

        assert (await store.get_run("a")).co_owner_ref == "bob"

    async def test_switch_to_coop_requires_partner(self, store, engine, make_run):
        await make_run("a")

        with pytest.raises(ValidationFailedError):
            await engine.edit_run("a", {'mode': "co-op"})
        assert (await store.get_run("a")).mode == RunMode.SOLO

    async def test_switch_to_coop_resolves_partner(self, store, engine, make_run, make_player):
        await make_player("ivy", "Ivy")
        await make_run("a")

        await engine.edit_run("a", {'mode': "co-op", 'co_owner_display_name': "ivy"})

        run = await store.get_run("a")
        assert (run.mode, run.co_owner_ref) == (RunMode.COOP, "ivy")

    async def test_level_board_requires_level(self, store, engine, make_run):
        await make_run("a", verified=False)

        with pytest.raises(ValidationFailedError):
            await engine.edit_run("a", {'board_kind': "individual-level"})

        level_id = await store.add_level("Tutorial")
        await engine.edit_run("a", {'board_kind': "individual-level", 'level_ref': level_id})
        run = await store.get_run("a")
        assert (run.board_kind, run.level_ref) == ("individual-level", level_id)


@pytest.mark.asyncio
class TestPointsLeaderboard:
    """Test the cached-totals leaderboard read."""

    async def test_ordered_by_cached_points(self, store, engine, make_run, make_player):
        for uid in ("p1", "p2", "p3"):
            await make_player(uid)
        await make_run("a", owner_ref="p2", time="00:09:00", verified=False)
        await make_run("b", owner_ref="p1", time="00:08:00", verified=False)
        await engine.verify_run("a", "mod")
        await engine.verify_run("b", "mod")

        leaders = await engine.points_leaderboard()

        assert [player.uid for player in leaders] == ["p1", "p2"]
        assert leaders[0].cached_total_points > leaders[1].cached_total_points
        assert [player.uid for player in await engine.points_leaderboard(1)] == ["p1"]
