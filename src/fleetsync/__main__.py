"""
Main entrypoint: starts the reconciliation scheduler.

FastAPI runs separately under uvicorn.

Usage:
    python -m fleetsync               # starts the scheduler
    python -m fleetsync.scripts.backfill --user USER_ID
    uvicorn fleetsync.api.main:create_app --factory --host 0.0.0.0 --port 8000
"""
import asyncio
import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_scheduler() -> None:
    from fleetsync.container import build_services
    from fleetsync.scheduler.jobs import build_scheduler

    services = build_services()

    scheduler = build_scheduler(services)
    scheduler.start()
    logger.info(
        "Scheduler started (reconciliation every %d min)",
        services.settings.reconcile_interval_minutes,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    asyncio.run(_run_scheduler())
