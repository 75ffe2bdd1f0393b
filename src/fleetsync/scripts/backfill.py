"""
Backfill script: pull the complete Rise-X work history for one user.

Usage:
    python -m fleetsync.scripts.backfill --user USER_ID
    python -m fleetsync.scripts.backfill --user USER_ID --from 2022-01-01 --to 2024-01-01

Queries every configured workflow through the GraphQL works endpoint in
fixed month windows (historic_chunk_months, default 2). A failing window is
retried once and then skipped; the rest of the run carries on.

Records already in the DB are merged, never duplicated (upsert on the
upstream id).
"""
import argparse
import asyncio
import logging
from datetime import datetime
from typing import Optional

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def _parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


async def _backfill(
    user_id: str, date_from: Optional[datetime], date_to: Optional[datetime]
) -> int:
    from fleetsync.container import build_services

    services = build_services()
    if not services.token_manager.has_active_connection(user_id):
        logger.error("User %s has no active Rise-X connection", user_id)
        return 1

    result = await services.sync_service.sync_historic_work_items(
        user_id, date_from=date_from, date_to=date_to
    )
    if result.skipped:
        logger.warning("A work item sync is already running for %s", user_id)
        return 1

    logger.info(
        "Backfill complete. Fetched: %d, created: %d, updated: %d, failed: %d",
        result.stats.fetched,
        result.stats.created,
        result.stats.updated,
        result.stats.failed,
    )
    for failure in result.partial_failures:
        logger.warning("Skipped: %s", failure)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Backfill Rise-X work history")
    parser.add_argument("--user", required=True, help="Local user id")
    parser.add_argument(
        "--from", dest="date_from", type=_parse_date, default=None,
        help="Start date YYYY-MM-DD (default: historic_default_years ago)",
    )
    parser.add_argument(
        "--to", dest="date_to", type=_parse_date, default=None,
        help="End date YYYY-MM-DD (default: now)",
    )
    args = parser.parse_args(argv)
    return asyncio.run(_backfill(args.user, args.date_from, args.date_to))


if __name__ == "__main__":
    raise SystemExit(main())
