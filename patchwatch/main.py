"""Main application entry point."""

import asyncio
import logging
from datetime import timedelta

from prometheus_client import start_http_server

from patchwatch.ai.update_scorer import build_scorer
from patchwatch.config import settings
from patchwatch.db.session import AsyncSessionLocal, engine, init_db
from patchwatch.db.store import SqlTrackingStore
from patchwatch.detect.engine import DetectionEngine
from patchwatch.detect.policy import DecisionPolicy
from patchwatch.detect.verification import IdentityVerifier
from patchwatch.ingest.adapters.registry import build_adapters
from patchwatch.ingest.base import StaticCatalogSource
from patchwatch.logging_config import setup_logging
from patchwatch.notify.events import LoggingDispatcher
from patchwatch.notify.webhook import WebhookDispatcher
from patchwatch.review.consensus import ConsensusWorkflow, StaticReviewerDirectory
from patchwatch.worker.entity_locks import EntityLockRegistry
from patchwatch.worker.scheduler import setup_scheduler
from patchwatch.worker.snapshot_cache import SnapshotCache
from patchwatch.worker.sweep import SweepRunner

setup_logging(settings.log_dir or None)
logger = logging.getLogger(__name__)


async def main():
    logger.info("Starting patchwatch...")

    await init_db(engine)
    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Metrics exposed on port {settings.metrics_port}")

    store = SqlTrackingStore(AsyncSessionLocal)
    locks = EntityLockRegistry()

    if settings.notification_webhook_url:
        dispatcher = WebhookDispatcher(settings.notification_webhook_url)
    else:
        dispatcher = LoggingDispatcher()

    verifier = IdentityVerifier(build_adapters(settings))
    scorer = build_scorer(settings)
    detection = DetectionEngine(DecisionPolicy.from_settings(settings), scorer, verifier)

    if not settings.reviewer_ids:
        logger.warning("No reviewer_ids configured, pending approvals will only expire")
    consensus = ConsensusWorkflow(
        store,
        StaticReviewerDirectory(settings.reviewer_ids),
        locks=locks,
        ttl=timedelta(hours=settings.approval_ttl_hours),
        dispatcher=dispatcher,
    )
    await consensus.load()

    # Scraper integrations plug in here as CatalogSource implementations
    catalog = StaticCatalogSource()
    logger.warning("No catalog source configured, sweeps will find no candidates")

    runner = SweepRunner(
        store,
        catalog,
        detection,
        consensus=consensus,
        locks=locks,
        cache=SnapshotCache(settings.snapshot_cache_ttl_seconds),
        dispatcher=dispatcher,
        max_concurrency=settings.max_concurrent_checks,
        frequency_minutes=dict(settings.check_frequency_minutes),
    )

    scheduler = setup_scheduler(runner, consensus, settings)
    scheduler.start()
    logger.info("Scheduler started")

    try:
        await asyncio.Event().wait()
    finally:
        logger.info("Shutting down...")
        scheduler.shutdown()
        await verifier.close()
        await scorer.close()
        await dispatcher.close()
        await engine.dispose()
        logger.info("Shutdown complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
