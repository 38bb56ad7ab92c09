import argparse
import asyncio
import json
import logging
import sys
import traceback
from typing import Optional

from runboard.config import Config
from runboard.database.database import Database
from runboard.database.store import DocumentStore
from runboard.operations.points import PointsDeriver
from runboard.services.backfill import BackfillService
from runboard.services.configuration import ConfigurationService
from runboard.services.player_linking import PlayerLinkingService
from runboard.services.reconciliation import ReconciliationEngine
from runboard.services.run_intake import RunIntakeService
from runboard.services.seed_configurations import seed_configurations
from runboard.utils.exceptions import RunboardException
from runboard.utils.logger import setup_logger

class Runboard:
    """Wires the database, configuration and engine services together."""

    def __init__(self, database_url: Optional[str] = None):
        self.db = Database(database_url)
        self.store: Optional[DocumentStore] = None
        self.config_service: Optional[ConfigurationService] = None
        self.engine: Optional[ReconciliationEngine] = None
        self.linking: Optional[PlayerLinkingService] = None
        self.backfill: Optional[BackfillService] = None
        self.intake: Optional[RunIntakeService] = None
        self.logger = setup_logger(__name__)

    async def setup(self):
        """Initialize database, configuration and services"""
        self.logger.info("Setting up runboard...")

        await self.db.initialize()
        self.store = DocumentStore(self.db)

        seeded = await seed_configurations(self.db)
        if seeded:
            self.logger.info(f"Seeded {seeded} default configuration parameters")
        self.config_service = ConfigurationService(self.store)
        await self.config_service.load_all()

        self.engine = ReconciliationEngine(self.store, PointsDeriver(self.config_service))
        self.linking = PlayerLinkingService(self.store, self.engine)
        self.backfill = BackfillService(self.store, self.engine)
        self.intake = RunIntakeService(self.store)

        self.logger.info(f"Runboard ready (limits: {Config.get_fetch_limits()})")

    async def close(self):
        """Cleanup on shutdown"""
        if self.backfill:
            await self.backfill.close()
        await self.db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Runboard ranking & points administration')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('backfill', help='Re-rank every verified run and recompute all totals')

    recompute = subparsers.add_parser('recompute', help='Recompute one player\'s totals from scratch')
    recompute.add_argument('player_id')

    subparsers.add_parser('autolink-all', help='Link placeholder-owned runs to every matching account')

    verify = subparsers.add_parser('verify', help='Verify a run')
    verify.add_argument('run_id')
    verify.add_argument('--by', required=True, help='Account id of the verifying moderator')

    unverify = subparsers.add_parser('unverify', help='Retract verification of a run')
    unverify.add_argument('run_id')

    leaderboard = subparsers.add_parser('leaderboard', help='Print players by cached total points')
    leaderboard.add_argument('--limit', type=int, default=None, help='Number of players (default LEADERBOARD_LIMIT)')

    import_runs = subparsers.add_parser('import', help='Store candidate runs from a JSON file (a list of objects)')
    import_runs.add_argument('path')

    config = subparsers.add_parser('config', help='Show or tune runtime configuration')
    config_actions = config.add_subparsers(dest='action', required=True)
    show = config_actions.add_parser('show', help='Print configuration values')
    show.add_argument('--category', help='Only keys under this prefix, e.g. points')
    config_set = config_actions.add_parser('set', help='Set a value (JSON literal)')
    config_set.add_argument('key')
    config_set.add_argument('value', type=json.loads)
    config_set.add_argument('--by', required=True, help='Account id of the administrator')
    config_reset = config_actions.add_parser('reset', help='Restore a seeded default')
    config_reset.add_argument('key')
    config_reset.add_argument('--by', required=True, help='Account id of the administrator')

    return parser


async def run_config_command(config_service: ConfigurationService, args) -> int:
    if args.action == 'show':
        if args.category:
            values = {f"{args.category}.{key}": value
                      for key, value in config_service.get_by_category(args.category).items()}
        else:
            values = config_service.list_all()
        for key in sorted(values):
            print(f"{key} = {json.dumps(values[key])}")
        return 0

    if args.action == 'set':
        await config_service.set(args.key, args.value, user_ref=args.by)
    else:
        await config_service.reset(args.key, user_ref=args.by)
    print(f"{args.key} = {json.dumps(config_service.get(args.key))}")
    return 0


async def run_command(app: Runboard, args) -> int:
    if args.command == 'backfill':
        summary = await app.backfill.backfill_all()
        if summary.skipped:
            print("Backfill skipped: another backfill is in progress")
            return 0
        print(f"Backfill: {summary.groups_ranked} groups, {summary.runs_updated} runs updated, "
              f"{summary.players_updated} players updated")
        errors = summary.errors
    elif args.command == 'recompute':
        result = await app.engine.recompute_totals(args.player_id)
        print(f"{result.player_id}: {result.total_points} points over {result.total_runs} runs")
        errors = result.errors
    elif args.command == 'autolink-all':
        summary = await app.linking.auto_link_all()
        print(f"Auto-link: {summary.linked} runs linked, {summary.players_recomputed} players recomputed")
        errors = summary.errors
    elif args.command == 'verify':
        result = await app.engine.verify_run(args.run_id, args.by)
        print(f"Run {result.run_id} verified: rank={result.rank} points={result.points}")
        errors = result.errors
    elif args.command == 'leaderboard':
        players = await app.engine.points_leaderboard(args.limit)
        for position, player in enumerate(players, start=1):
            print(f"{position}. {player.display_name or player.uid}: "
                  f"{player.cached_total_points} points over {player.cached_total_runs} runs")
        errors = []
    elif args.command == 'import':
        with open(args.path, encoding='utf-8') as f:
            records = json.load(f)
        summary = await app.intake.import_candidates(records)
        print(f"Import: {summary.imported} runs imported, {summary.skipped} skipped")
        for run_id, names in summary.unmatched_players.items():
            print(f"  {run_id}: no account for {', '.join(names)}")
        errors = summary.errors
    elif args.command == 'unverify':
        result = await app.engine.unverify_run(args.run_id)
        print(f"Run {result.run_id} unverified")
        errors = result.errors
    else:
        return await run_config_command(app.config_service, args)

    for error in errors:
        print(f"  ! {error}")
    return 1 if errors else 0


async def main(argv=None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    Config.validate()

    app = Runboard()
    try:
        await app.setup()
        return await run_command(app, args)
    except RunboardException as e:
        logging.error(f"{args.command} failed: {e}")
        print(e.user_message)
        return 1
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        traceback.print_exc()
        return 2
    finally:
        await app.close()

def _cli():
    sys.exit(asyncio.run(main()))

if __name__ == "__main__":
    _cli()
