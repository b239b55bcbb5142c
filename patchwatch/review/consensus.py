"""Pending-approval consensus workflow.

Detections that are not confident enough to commit become PendingApprovals.
Eligible reviewers vote; an approval needs ``ceil(reviewers / 2)`` approve
votes (at least one). It is denied as soon as the remaining reviewers can no
longer reach that quorum, and expires after a TTL. Only an approved approval
touches the tracked title, through the same commit path as auto-approval.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from uuid import uuid4

from patchwatch import metrics
from patchwatch.detect.engine import apply_update, version_delta
from patchwatch.detect.models import DetectionResult, VersionDelta
from patchwatch.normalize.version import date_token, parse_version
from patchwatch.notify.events import EventKind, NotificationDispatcher, NotificationEvent, dispatch_safely
from patchwatch.tracking.models import ApprovalStatus, PendingApproval, TrackedEntity
from patchwatch.tracking.store import ApprovalFilter, TrackingStore
from patchwatch.worker.entity_locks import EntityLockRegistry

logger = logging.getLogger(__name__)


class ApprovalNotFoundError(KeyError):
    """Raised when an approval id is unknown."""

    pass


class ApprovalClosedError(RuntimeError):
    """Raised when voting on an approval that is no longer open."""

    pass


class IneligibleReviewerError(ValueError):
    """Raised when a vote comes from outside the eligible reviewer set."""

    pass


class ReviewerDirectory(ABC):
    """Who may vote on approvals for a tracked title."""

    @abstractmethod
    async def eligible_reviewers(self, entity_id: str) -> set[str]:
        pass


class StaticReviewerDirectory(ReviewerDirectory):
    """Fixed reviewer set, optionally overridden per tracked title."""

    def __init__(self, reviewers: Iterable[str] = (), per_entity: Optional[dict[str, Iterable[str]]] = None):
        self.reviewers = set(reviewers)
        self.per_entity = {key: set(value) for key, value in (per_entity or {}).items()}

    async def eligible_reviewers(self, entity_id: str) -> set[str]:
        return set(self.per_entity.get(entity_id, self.reviewers))


def quorum(reviewer_count: int) -> int:
    return max(1, math.ceil(reviewer_count / 2))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConsensusWorkflow:
    """Owns open approvals and their votes. Resolved approvals are read back from the store."""

    def __init__(
        self,
        store: TrackingStore,
        directory: ReviewerDirectory,
        locks: Optional[EntityLockRegistry] = None,
        ttl: timedelta = timedelta(hours=72),
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.directory = directory
        self.locks = locks or EntityLockRegistry()
        self.ttl = ttl
        self.dispatcher = dispatcher
        self.clock = clock
        self._approvals: dict[str, PendingApproval] = {}
        self._open_by_candidate: dict[tuple[str, str], str] = {}

    def _index(self, approval: PendingApproval) -> None:
        """Track an open approval; drop a resolved one, which then lives only in the store."""
        key = (approval.entity_id, approval.candidate.url)
        if approval.is_open:
            self._approvals[approval.id] = approval
            self._open_by_candidate[key] = approval.id
        else:
            self._approvals.pop(approval.id, None)
            if self._open_by_candidate.get(key) == approval.id:
                del self._open_by_candidate[key]
        metrics.open_approvals.set(len(self._open_by_candidate))

    async def load(self) -> int:
        """Rebuild in-memory state from the store's open approvals."""
        self._approvals.clear()
        self._open_by_candidate.clear()
        approvals = await self.store.load_pending_approvals(ApprovalFilter(status=ApprovalStatus.OPEN))
        for approval in approvals:
            self._index(approval)
        logger.info(f"Loaded {len(approvals)} open approvals")
        return len(approvals)

    async def get(self, approval_id: str) -> PendingApproval:
        """
        Look up an approval, open or resolved.

        Raises:
            ApprovalNotFoundError: Unknown approval id
        """
        approval = self._approvals.get(approval_id)
        if approval is None:
            approval = await self.store.get_pending_approval(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(approval_id)
        return approval.copy()

    @property
    def retained(self) -> int:
        """Approvals held in memory; only open ones are kept."""
        return len(self._approvals)

    def open_approvals(self, entity_id: Optional[str] = None) -> list[PendingApproval]:
        return [
            self._approvals[approval_id].copy()
            for (owner, _), approval_id in self._open_by_candidate.items()
            if entity_id is None or owner == entity_id
        ]

    def find_open(self, entity_id: str, candidate_url: str) -> Optional[PendingApproval]:
        approval_id = self._open_by_candidate.get((entity_id, candidate_url))
        return self._approvals[approval_id].copy() if approval_id else None

    async def open_approval(self, entity: TrackedEntity, result: DetectionResult) -> PendingApproval:
        """
        Create a PendingApproval for a pending detection.

        An approval that is already open for the same tracked title and
        candidate URL is returned instead of creating a second one.

        Raises:
            ValueError: The result carries no candidate
            PersistenceError: The approval could not be saved
        """
        if result.candidate is None:
            raise ValueError("Cannot open an approval without a candidate")

        async with self.locks.hold(entity.id):
            existing = self.find_open(entity.id, result.candidate.url)
            if existing is not None:
                return existing

            now = self.clock()
            approval = PendingApproval(
                id=uuid4().hex,
                entity_id=entity.id,
                candidate=result.candidate,
                result=result,
                created_at=now,
                expires_at=now + self.ttl,
            )
            await self.store.save_pending_approval(approval)
            self._index(approval)

        metrics.approvals_opened_total.inc()
        logger.info(
            f"Opened approval {approval.id} for {entity.title!r}: {result.reason}",
            extra={"entity_id": entity.id, "approval_id": approval.id},
        )
        await dispatch_safely(self.dispatcher, NotificationEvent(
            kind=EventKind.APPROVAL_OPENED,
            entity_id=entity.id,
            title=entity.title,
            old_version=entity.current_version,
            new_version=result.version,
            reason=result.reason,
            confidence=result.confidence,
            approval_id=approval.id,
            url=result.candidate.url,
        ))
        return approval.copy()

    def _committed_version(self, approval: PendingApproval) -> str:
        """Version to record for an approved candidate without an extracted version."""
        if approval.result.version:
            return approval.result.version
        token = date_token(approval.candidate.published_at) or date_token(approval.created_at)
        return token.canonical()

    async def _commit(self, approval: PendingApproval) -> Optional[TrackedEntity]:
        entity = await self.store.get_entity(approval.entity_id)
        if entity is None:
            logger.warning(f"Approval {approval.id} approved but entity {approval.entity_id} is gone")
            return None

        result = approval.result
        if not result.version:
            result = replace(result, version=self._committed_version(approval))
        elif version_delta(entity.current_version, parse_version(result.version)) == VersionDelta.SAME_OR_OLDER:
            logger.info(
                f"Approval {approval.id} approved but {entity.title!r} is already at "
                f"{entity.current_version}, nothing to commit"
            )
            return None

        old_version = entity.current_version
        apply_update(entity, replace(result, is_update=True), self.clock())
        await self.store.save_entity(entity)
        await dispatch_safely(self.dispatcher, NotificationEvent(
            kind=EventKind.UPDATE_COMMITTED,
            entity_id=entity.id,
            title=entity.title,
            old_version=old_version,
            new_version=entity.current_version,
            reason=f"Approved by reviewers ({approval.approvals()} votes)",
            confidence=result.confidence,
            approval_id=approval.id,
            url=approval.candidate.url,
        ))
        return entity

    async def cast_vote(self, approval_id: str, reviewer_id: str, approve: bool) -> PendingApproval:
        """
        Record a reviewer's vote and resolve the approval if possible.

        A repeated vote from the same reviewer replaces the earlier one.

        Raises:
            ApprovalNotFoundError: Unknown approval id
            ApprovalClosedError: The approval is already resolved or has expired
            IneligibleReviewerError: The reviewer may not vote on this title
            PersistenceError: The vote or the commit could not be saved
        """
        current = await self.get(approval_id)

        async with self.locks.hold(current.entity_id):
            held = self._approvals.get(approval_id)
            approval = held.copy() if held else await self.get(approval_id)
            if not approval.is_open:
                raise ApprovalClosedError(f"Approval {approval_id} is {approval.status}")

            now = self.clock()
            if now >= approval.expires_at:
                await self._resolve(approval, ApprovalStatus.EXPIRED, now)
                raise ApprovalClosedError(f"Approval {approval_id} expired")

            eligible = await self.directory.eligible_reviewers(approval.entity_id)
            if reviewer_id not in eligible:
                raise IneligibleReviewerError(f"{reviewer_id} may not vote on approval {approval_id}")

            approval.votes[reviewer_id] = approve
            needed = quorum(len(eligible))
            approvals = sum(1 for r, vote in approval.votes.items() if vote and r in eligible)
            unvoted = len(eligible - set(approval.votes))

            if approvals >= needed:
                await self._commit(approval)
                await self._resolve(approval, ApprovalStatus.APPROVED, now)
            elif approvals + unvoted < needed:
                await self._resolve(approval, ApprovalStatus.DENIED, now)
            else:
                await self.store.save_pending_approval(approval)
                self._index(approval)

        logger.info(
            f"Vote on {approval_id} by {reviewer_id}: {'approve' if approve else 'deny'} "
            f"({approvals}/{needed}, status {approval.status})"
        )
        return approval.copy()

    async def _resolve(self, approval: PendingApproval, status: str, now: datetime) -> None:
        approval.status = status
        approval.resolved_at = now
        await self.store.save_pending_approval(approval)
        self._index(approval)
        metrics.approvals_resolved_total.labels(status=status).inc()

        if status != ApprovalStatus.APPROVED:
            await dispatch_safely(self.dispatcher, NotificationEvent(
                kind=EventKind.APPROVAL_RESOLVED,
                entity_id=approval.entity_id,
                title=approval.candidate.title,
                new_version=approval.result.version,
                reason=f"Approval {status}",
                approval_id=approval.id,
                url=approval.candidate.url,
            ))

    async def expire_stale(self, now: Optional[datetime] = None) -> list[PendingApproval]:
        """Expire every open approval past its TTL. The tracked titles are not touched."""
        now = now or self.clock()
        expired = []
        for approval_id in list(self._open_by_candidate.values()):
            approval = self._approvals.get(approval_id)
            if approval is None or now < approval.expires_at:
                continue
            async with self.locks.hold(approval.entity_id):
                # Resolved by a vote while waiting for the lock
                if approval_id not in self._approvals:
                    continue
                approval = self._approvals[approval_id].copy()
                await self._resolve(approval, ApprovalStatus.EXPIRED, now)
            expired.append(approval.copy())

        if expired:
            logger.info(f"Expired {len(expired)} stale approvals")
        return expired
