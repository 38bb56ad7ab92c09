"""
Tests for the administrative command line.
"""

import json

import pytest

from runboard import main as cli
from runboard.config import Config


class TestParser:
    """Test argument parsing."""

    def test_verify_requires_moderator(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(['verify', 'r1'])

    def test_verify_arguments(self):
        args = cli.build_parser().parse_args(['verify', 'r1', '--by', 'mod'])
        assert (args.command, args.run_id, args.by) == ('verify', 'r1', 'mod')

    def test_leaderboard_limit(self):
        args = cli.build_parser().parse_args(['leaderboard', '--limit', '10'])
        assert (args.command, args.limit) == ('leaderboard', 10)


@pytest.mark.asyncio
class TestCommands:
    """Test commands end to end against an in-memory database."""

    @pytest.fixture(autouse=True)
    def in_memory_database(self, monkeypatch):
        monkeypatch.setattr(Config, 'DATABASE_URL', "sqlite+aiosqlite:///:memory:")
        monkeypatch.setattr(Config, 'REDIS_URL', None)

    async def test_recompute_creates_totals(self, capsys):
        assert await cli.main(['recompute', 'p1']) == 0
        assert "p1: 0 points over 0 runs" in capsys.readouterr().out

    async def test_backfill_on_empty_corpus(self, capsys):
        assert await cli.main(['backfill']) == 0
        assert "0 groups" in capsys.readouterr().out

    async def test_missing_run_reports_user_message(self, capsys):
        assert await cli.main(['unverify', 'missing']) == 1
        assert "Run 'missing' not found" in capsys.readouterr().out

    async def test_config_set_and_show(self, capsys):
        assert await cli.main(['config', 'set', 'points.coop_share', '0.25', '--by', 'admin']) == 0
        assert "points.coop_share = 0.25" in capsys.readouterr().out

        assert await cli.main(['config', 'show', '--category', 'points']) == 0
        out = capsys.readouterr().out
        assert "points.base_multiplier = 800" in out

    async def test_config_rejects_bad_value(self, capsys):
        assert await cli.main(['config', 'set', 'points.enabled', '"yes"', '--by', 'admin']) == 1
        assert "points.enabled" in capsys.readouterr().out

    async def test_import_stores_candidates(self, capsys, tmp_path):
        path = tmp_path / "candidates.json"
        path.write_text(json.dumps([{
            'owner_display_name': "NewRunner",
            'fallback_category_name': "Any%",
            'fallback_platform_name': "GameCube",
            'time': "12:00",
            'import_ref': "ext-1",
        }]), encoding='utf-8')

        assert await cli.main(['import', str(path)]) == 0
        out = capsys.readouterr().out
        assert "1 runs imported, 0 skipped" in out
        assert "no account for NewRunner" in out

    async def test_leaderboard_on_empty_corpus(self, capsys):
        assert await cli.main(['leaderboard', '--limit', '5']) == 0
        lines = capsys.readouterr().out.splitlines()
        assert not [line for line in lines if line.startswith("1. ")]
