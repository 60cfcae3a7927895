"""
Catalog sync background worker.

Runs the MedanPedia catalog sync every ``catalog_sync_interval_minutes``.
Runs are sequential, which keeps the engine single-flight within this
process; deploy one worker per catalog.
"""
import argparse
import asyncio
import signal
from typing import Any, Optional

import httpx
import structlog

from resellhub.config import Settings, get_settings
from resellhub.core.catalog_sync import CatalogSyncEngine, CatalogSyncError, CatalogSyncResult
from resellhub.database.connection import Database
from resellhub.integrations.providers.registry import ProviderRegistry
from resellhub.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_catalog_sync(
    engine: CatalogSyncEngine,
    settings: Settings,
    dry_run: bool = False,
) -> Optional[CatalogSyncResult]:
    """
    Run one bounded catalog sync.

    Returns:
        Optional[CatalogSyncResult]: None if the run failed or timed out
    """
    logger.info("scheduled_catalog_sync_started", dry_run=dry_run)
    try:
        result = await asyncio.wait_for(
            engine.sync(dry_run=dry_run),
            timeout=settings.catalog_sync_timeout_seconds,
        )
    except asyncio.TimeoutError:
        # Buckets committed so far stay; cleanup never ran.
        logger.error(
            "scheduled_catalog_sync_timeout",
            timeout_seconds=settings.catalog_sync_timeout_seconds,
        )
        return None
    except CatalogSyncError as e:
        logger.error("scheduled_catalog_sync_failed", error=str(e))
        return None

    logger.info("scheduled_catalog_sync_completed", message=result.message)
    if result.cleanup_skipped_reason:
        logger.warning(
            "scheduled_catalog_cleanup_skipped",
            reason=result.cleanup_skipped_reason,
            stale_products=result.stale_products,
        )
    return result


async def start_catalog_sync_worker(
    settings: Optional[Settings] = None,
    once: bool = False,
    dry_run: bool = False,
) -> None:
    """
    Start the catalog sync worker.

    Args:
        settings: Application settings; loaded from the environment if omitted
        once: Run a single sync and exit
        dry_run: Report stale products instead of deleting them
    """
    settings = settings or get_settings()
    setup_logging(settings)
    interval_seconds = settings.catalog_sync_interval_minutes * 60

    logger.info(
        "catalog_sync_worker_starting",
        interval_minutes=settings.catalog_sync_interval_minutes,
        once=once,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("catalog_sync_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    database = Database.from_settings(settings)
    http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    engine = CatalogSyncEngine(
        database, ProviderRegistry(database, http_client, settings), settings
    )

    try:
        while running:
            await run_catalog_sync(engine, settings, dry_run=dry_run)
            if once:
                break

            # Wait for the next run, checking for shutdown every second
            remaining = interval_seconds
            while remaining > 0 and running:
                sleep_time = min(remaining, 1)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await http_client.aclose()
        await database.dispose()
        logger.info("catalog_sync_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="MedanPedia catalog sync worker")
    parser.add_argument("--once", action="store_true", help="Run one sync and exit")
    parser.add_argument(
        "--dry-run", action="store_true", help="Report stale products without deleting them"
    )
    args = parser.parse_args()

    asyncio.run(start_catalog_sync_worker(once=args.once, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
