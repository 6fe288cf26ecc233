"""Periodic maintenance for the platform database.

Schedule from cron or a job runner:

    python scripts/run_maintenance.py reconcile-counters
    python scripts/run_maintenance.py ensure-partitions
    python scripts/run_maintenance.py prune-partitions --retention-months 12

Each command runs in its own transaction. Set DB_NULL_POOL=1 when invoking
from short-lived processes.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Resolve project root so imports work when run from any cwd
_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from db.connection import dispose_engine, get_db
import db.repositories.audit as audit_repo
import db.repositories.counters as counters

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def reconcile_counters() -> None:
    async with get_db() as session:
        stats = await counters.reconcile_all_counters(session)
    logger.info(
        "Counters: lists %d drifted / %d fixed, pipelines %d drifted / %d fixed",
        stats["lists_drifted"],
        stats["lists_fixed"],
        stats["pipelines_drifted"],
        stats["pipelines_fixed"],
    )


async def ensure_partitions() -> None:
    async with get_db() as session:
        created = await audit_repo.ensure_audit_partitions(session)
    logger.info("Audit partitions created: %s", ", ".join(created) or "none")


async def prune_partitions(retention_months: int) -> None:
    async with get_db() as session:
        dropped = await audit_repo.drop_expired_audit_partitions(session, retention_months)
    logger.info("Audit partitions dropped: %s", ", ".join(dropped) or "none")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Platform database maintenance")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("reconcile-counters", help="Recompute drifted list and pipeline counters")
    sub.add_parser("ensure-partitions", help="Create this and next month's audit partitions")
    prune = sub.add_parser("prune-partitions", help="Drop audit partitions past retention")
    prune.add_argument(
        "--retention-months",
        type=int,
        default=audit_repo.RETENTION_MONTHS,
        help="Months of audit history to keep (default: %(default)s)",
    )
    return parser


async def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "reconcile-counters":
            await reconcile_counters()
        elif args.command == "ensure-partitions":
            await ensure_partitions()
        elif args.command == "prune-partitions":
            await prune_partitions(args.retention_months)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
