"""Entry point for scheduled reward jobs"""
import argparse
import json
import logging
import sys
import traceback
from datetime import datetime
from typing import Optional

from wct_rewards.config import settings
from wct_rewards.db import db
from wct_rewards.models.contribution import RewardWindow
from wct_rewards.models.db import utcnow
from wct_rewards.services.audit_log import DistributionLogWriter
from wct_rewards.services.contributions import ContributionService
from wct_rewards.services.distributor import LedgerDistributor
from wct_rewards.services.ledger import LedgerClient
from wct_rewards.services.multipliers import DemandUpdater, ReputationUpdater
from wct_rewards.services.records import DistributionRecordStore
from wct_rewards.services.rewards import RewardService

logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)

SECRET_SETTINGS = {'DB_PASSWORD', 'DATABASE_URL', 'TREASURY_SIGNING_KEY', 'ADMIN_API_TOKEN'}


def _parse_date(value: str) -> datetime:
    return datetime.fromisoformat(value)


def distribute(run_id: Optional[str] = None, end: Optional[datetime] = None) -> None:
    """Create this period's run (or load `run_id`) and pay it out."""
    if not settings.TREASURY_WALLET:
        raise ValueError("TREASURY_WALLET setting is required")

    policy = settings.reward_policy
    with db.session() as session:
        if run_id is None:
            window = RewardWindow.ending_at(end or utcnow(), days=settings.REWARD_PERIOD_DAYS)
            logger.info(f"Processing rewards for {window.start.isoformat()} to {window.end.isoformat()}")
            rewards = RewardService(ContributionService(session), DistributionRecordStore(session), policy)
            run = rewards.create_distribution(window.start, window.end)
            if run is None:
                logger.info("No rewards to distribute. Exiting.")
                return
            run_id = run.id

        distributor = LedgerDistributor(session, LedgerClient.from_settings(settings), policy, settings.TREASURY_WALLET)
        summary = distributor.distribute(run_id)

    DistributionLogWriter(settings.OUTPUT_DIR, settings.s3_settings).write(summary)
    logger.info(
        f"Distribution summary: {summary.status.value}, {summary.total_tokens} tokens, "
        f"{summary.successful_transactions} succeeded, {summary.failed_transactions} failed"
    )


def update_multipliers() -> None:
    """Recompute reputation for every contributor and demand for every topic."""
    with db.session() as session:
        ReputationUpdater(session).update_all()
        DemandUpdater(session).update_all()


def serve(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("wct_rewards.api:app", host=host, port=port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='wct_rewards', description='Wiki contribution token rewards')
    commands = parser.add_subparsers(dest='command')

    dist = commands.add_parser('distribute', help='Distribute rewards for the last full period')
    dist.add_argument('--run-id', help='Resume or retry an existing run instead of creating one')
    dist.add_argument('--end', type=_parse_date, help='Period end (defaults to today, midnight UTC)')

    commands.add_parser('update-multipliers', help='Recompute reputation and topic demand')

    srv = commands.add_parser('serve', help='Run the admin API')
    srv.add_argument('--host', default='0.0.0.0')
    srv.add_argument('--port', type=int, default=8000)
    return parser


def run(argv=None) -> None:
    """Dispatch a command; distribute is the default."""
    args = build_parser().parse_args(argv)
    command = args.command or 'distribute'
    try:
        safe_config = settings.model_dump(exclude=SECRET_SETTINGS)
        logger.info("Using configuration:")
        logger.info(json.dumps(safe_config, indent=2, default=str))

        if command == 'serve':
            serve(args.host, args.port)
            return

        db.init()
        if command == 'update-multipliers':
            update_multipliers()
        else:
            distribute(getattr(args, 'run_id', None), getattr(args, 'end', None))

    except Exception as e:
        logger.error(f"Error during {command}: {e}")
        traceback.print_exc()
        sys.exit(1)
    finally:
        db.dispose()


if __name__ == "__main__":
    run()
