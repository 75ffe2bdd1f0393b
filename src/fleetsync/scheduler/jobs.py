"""
APScheduler jobs for background sync.

The reconciliation job runs every `reconcile_interval_minutes` and
incrementally syncs every active connection that has not been synced within
that interval. It catches whatever on-demand and opportunistic triggers
missed (users who connected and went idle, failed runs).

The scheduler runs inside the `python -m fleetsync` process.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

RECONCILE_BATCH = 50


def build_scheduler(services) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        services: fleetsync.container.Services bundle.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = services.settings
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _reconcile_sync,
        trigger="interval",
        minutes=settings.reconcile_interval_minutes,
        id="reconcile_sync",
        replace_existing=True,
        kwargs={
            "services": services,
            "older_than_minutes": settings.reconcile_interval_minutes,
        },
    )

    return scheduler


async def _reconcile_sync(services, older_than_minutes: int) -> int:
    """
    Reconciliation job: incremental sync for each stale connection.

    One user's failure never stops the rest. Returns the number of users
    whose run completed (skipped runs included).
    """
    user_ids = services.token_manager.connections_needing_sync(
        older_than_minutes=older_than_minutes, limit=RECONCILE_BATCH
    )
    if not user_ids:
        return 0
    logger.info("Reconciliation sync for %d connections", len(user_ids))

    done = 0
    for user_id in user_ids:
        try:
            await services.sync_service.incremental_sync(user_id)
            done += 1
        except Exception as exc:
            logger.error("Reconciliation sync failed for %s: %s", user_id, exc)
    return done
