"""Periodic sweep over tracked titles."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from patchwatch import metrics
from patchwatch.config import settings
from patchwatch.detect.engine import DetectionEngine, apply_update, find_related_titles
from patchwatch.detect.models import DecisionAction, DetectionResult
from patchwatch.detect.similarity import similarity
from patchwatch.ingest.base import CandidateListing, CatalogError, CatalogSource
from patchwatch.notify.events import EventKind, NotificationDispatcher, NotificationEvent, dispatch_safely
from patchwatch.review.consensus import ConsensusWorkflow
from patchwatch.tracking.models import EntityStatus, SequelNotice, TrackedEntity
from patchwatch.tracking.store import EntityFilter, PersistenceError, TrackingStore
from patchwatch.worker.entity_locks import EntityLockRegistry
from patchwatch.worker.snapshot_cache import SnapshotCache, fingerprint

logger = logging.getLogger(__name__)


class Outcome:
    COMMITTED = "committed"
    PENDING = "pending"
    REJECTED = "rejected"
    CACHED = "cached"
    FAILED = "failed"
    STALE = "stale"


@dataclass
class SweepSummary:
    """Counts for one sweep run."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    due: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return self.outcomes.get(outcome, 0)

    def record(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SweepRunner:
    """
    Checks every due tracked title against the catalog.

    Titles are processed concurrently up to ``max_concurrency``. A failure on
    one title is logged and counted; it never fails the sweep. A title whose
    check could not be persisted keeps its previous ``last_checked`` so the
    next sweep picks it up again.
    """

    def __init__(
        self,
        store: TrackingStore,
        catalog: CatalogSource,
        engine: DetectionEngine,
        consensus: Optional[ConsensusWorkflow] = None,
        locks: Optional[EntityLockRegistry] = None,
        cache: Optional[SnapshotCache] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        max_concurrency: int = settings.max_concurrent_checks,
        frequency_minutes: Optional[dict[str, int]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.catalog = catalog
        self.engine = engine
        self.consensus = consensus
        self.locks = locks or (consensus.locks if consensus else EntityLockRegistry())
        self.cache = cache or SnapshotCache(settings.snapshot_cache_ttl_seconds)
        self.dispatcher = dispatcher
        self.max_concurrency = max(1, max_concurrency)
        self.frequency_minutes = frequency_minutes or dict(settings.check_frequency_minutes)
        self.clock = clock

    def is_due(self, entity: TrackedEntity, now: datetime) -> bool:
        if not entity.active or entity.status == EntityStatus.PAUSED:
            return False
        if entity.last_checked is None:
            return True
        interval = timedelta(minutes=self.frequency_minutes.get(entity.check_frequency, 24 * 60))
        return now - entity.last_checked >= interval

    async def run_sweep(self) -> SweepSummary:
        """
        Run one sweep over all due tracked titles.

        Returns:
            SweepSummary with per-outcome counts
        """
        started = time.monotonic()
        now = self.clock()
        summary = SweepSummary(started_at=now)

        try:
            entities = await self.store.load_tracked_entities(EntityFilter(active_only=True))
        except PersistenceError as e:
            logger.error(f"Sweep aborted, could not load tracked titles: {e}")
            summary.errors.append(str(e))
            summary.finished_at = self.clock()
            metrics.sweep_runs_total.labels(status="failed").inc()
            return summary

        due = [entity for entity in entities if self.is_due(entity, now)]
        summary.due = len(due)
        logger.info(f"Sweep started: {len(due)} of {len(entities)} tracked titles due")

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(entity: TrackedEntity) -> str:
            async with semaphore:
                try:
                    return await self.check_entity(entity)
                except PersistenceError as e:
                    logger.error(f"Could not persist check of {entity.title!r}: {e}", extra={"entity_id": entity.id})
                    summary.errors.append(f"{entity.id}: {e}")
                    return Outcome.FAILED
                except Exception as e:
                    logger.exception(f"Check of {entity.title!r} failed: {e}", extra={"entity_id": entity.id})
                    summary.errors.append(f"{entity.id}: {e}")
                    return Outcome.FAILED

        for outcome in await asyncio.gather(*(bounded(entity) for entity in due)):
            summary.record(outcome)
            metrics.entities_checked_total.labels(outcome=outcome).inc()

        self.cache.purge_expired()
        summary.finished_at = self.clock()
        metrics.sweep_duration_seconds.observe(time.monotonic() - started)
        metrics.sweep_runs_total.labels(status="completed").inc()
        logger.info(f"Sweep finished: {summary.outcomes}")
        return summary

    async def _mark_error(self, entity: TrackedEntity, reason: str) -> None:
        async with self.locks.hold(entity.id):
            fresh = await self.store.get_entity(entity.id) or entity
            fresh.status = EntityStatus.ERROR
            await self.store.save_entity(fresh)
        await dispatch_safely(self.dispatcher, NotificationEvent(
            kind=EventKind.CHECK_FAILED,
            entity_id=entity.id,
            title=entity.title,
            old_version=entity.current_version,
            reason=reason,
        ))

    async def check_entity(self, entity: TrackedEntity) -> str:
        """
        Check one tracked title: search, detect, then commit or open an approval.

        Raises:
            PersistenceError: The check result could not be saved
        """
        try:
            candidates = await self.catalog.search(entity.title)
        except CatalogError as e:
            logger.warning(f"Catalog search failed for {entity.title!r}: {e}")
            await self._mark_error(entity, f"Catalog search failed: {e}")
            return Outcome.FAILED

        snapshot = fingerprint(entity.current_version, candidates)
        result = self.cache.get(entity.id, snapshot)
        if result is not None:
            await self._touch(entity)
            metrics.snapshot_cache_hits_total.inc()
            logger.debug(f"Candidate set for {entity.title!r} unchanged, reusing {result.action}")
            return Outcome.CACHED

        result = await self.engine.detect(entity, candidates)

        # Approval first: if it cannot be saved, last_checked stays as it was
        if result.action == DecisionAction.PENDING and self.consensus is not None:
            await self.consensus.open_approval(entity, result)

        async with self.locks.hold(entity.id):
            fresh = await self.store.get_entity(entity.id)
            if fresh is None:
                logger.warning(f"Tracked title {entity.id} disappeared during its check")
                return Outcome.STALE
            if fresh.current_version != entity.current_version:
                logger.info(f"{entity.title!r} changed version during its check, leaving for next sweep")
                return Outcome.STALE

            old_version = fresh.current_version
            if result.action == DecisionAction.COMMIT:
                apply_update(fresh, result, self.clock())
            elif fresh.status == EntityStatus.ERROR:
                fresh.status = EntityStatus.ACTIVE

            related = find_related_titles(fresh, candidates, result)
            for listing, relation in related:
                fresh.sequel_notices.append(SequelNotice(
                    detected_title=listing.title,
                    url=listing.url,
                    relation=relation,
                    similarity=similarity(fresh.title, listing.title),
                    found_at=self.clock(),
                    source=listing.source,
                ))
            fresh.last_checked = self.clock()
            await self.store.save_entity(fresh)

        self.cache.put(entity.id, fingerprint(fresh.current_version, candidates), result)
        for listing, relation in related:
            await self._announce_related(fresh, listing, relation)
        return await self._report(fresh, old_version, result)

    async def _announce_related(self, entity: TrackedEntity, listing: CandidateListing, relation: str) -> None:
        metrics.related_titles_detected_total.labels(relation=relation).inc()
        logger.info(
            f"Related title found for {entity.title!r}: {listing.title!r} ({relation})",
            extra={"entity_id": entity.id},
        )
        await dispatch_safely(self.dispatcher, NotificationEvent(
            kind=EventKind.SEQUEL_DETECTED,
            entity_id=entity.id,
            title=entity.title,
            old_version=entity.current_version,
            reason=f"Found {relation.replace('_', ' ')}: {listing.title}",
            url=listing.url,
            relation=relation,
        ))

    async def _report(self, entity: TrackedEntity, old_version: Optional[str], result: DetectionResult) -> str:
        if result.action == DecisionAction.COMMIT:
            logger.info(
                f"Committed update for {entity.title!r}: {old_version} -> {entity.current_version}",
                extra={"entity_id": entity.id, "outcome": Outcome.COMMITTED},
            )
            await dispatch_safely(self.dispatcher, NotificationEvent(
                kind=EventKind.UPDATE_COMMITTED,
                entity_id=entity.id,
                title=entity.title,
                old_version=old_version,
                new_version=entity.current_version,
                reason=result.reason,
                confidence=result.confidence,
                url=result.candidate.url if result.candidate else None,
            ))
            return Outcome.COMMITTED

        if result.action == DecisionAction.PENDING:
            return Outcome.PENDING

        return Outcome.REJECTED

    async def _touch(self, entity: TrackedEntity) -> None:
        async with self.locks.hold(entity.id):
            fresh = await self.store.get_entity(entity.id) or entity
            fresh.last_checked = self.clock()
            await self.store.save_entity(fresh)

    async def check_now(self, entity_id: str) -> str:
        """Check one tracked title immediately, ignoring its schedule and the snapshot cache."""
        entity = await self.store.get_entity(entity_id)
        if entity is None:
            raise KeyError(entity_id)
        self.cache.invalidate(entity_id)
        return await self.check_entity(entity)
