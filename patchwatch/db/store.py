"""SQLAlchemy-backed tracking store."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from patchwatch.db.models import ApprovalVote, PendingApprovalRow, TrackedTitle, UpdateHistory
from patchwatch.detect.models import DetectionResult, ExternalVerification
from patchwatch.ingest.base import CandidateListing
from patchwatch.normalize.version import parse_version
from patchwatch.tracking.models import PendingApproval, SequelNotice, TrackedEntity, UpdateRecord
from patchwatch.tracking.store import (
    ApprovalFilter,
    EntityFilter,
    PersistenceError,
    TrackingStore,
)

logger = logging.getLogger(__name__)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC for storage."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def listing_to_json(listing: CandidateListing) -> dict[str, Any]:
    return {
        "title": listing.title,
        "url": listing.url,
        "source": listing.source,
        "excerpt": listing.excerpt,
        "published_at": _iso(listing.published_at),
        "size": listing.size,
        "source_id": listing.source_id,
    }


def listing_from_json(data: dict[str, Any]) -> CandidateListing:
    return CandidateListing(
        title=data["title"],
        url=data["url"],
        source=data["source"],
        excerpt=data.get("excerpt"),
        published_at=_parse_iso(data.get("published_at")),
        size=data.get("size"),
        source_id=data.get("source_id"),
    )


def result_to_json(result: DetectionResult) -> dict[str, Any]:
    return {
        "is_update": result.is_update,
        "confidence": result.confidence,
        "reason": result.reason,
        "detection_method": result.detection_method,
        "action": result.action,
        "version": result.version,
        "similarity": result.similarity,
        "related": result.related,
        "verification": [
            {
                "adapter": v.adapter,
                "canonical_id": v.canonical_id,
                "canonical_title": v.canonical_title,
                "latest_version": v.latest_version.canonical() if v.latest_version else None,
                "version_matches": v.version_matches,
                "checked_at": _iso(v.checked_at),
            }
            for v in result.verification
        ],
    }


def result_from_json(data: dict[str, Any], candidate: CandidateListing) -> DetectionResult:
    return DetectionResult(
        is_update=data["is_update"],
        confidence=data["confidence"],
        reason=data["reason"],
        detection_method=data["detection_method"],
        action=data["action"],
        version=data.get("version"),
        candidate=candidate,
        similarity=data.get("similarity", 0.0),
        related=data.get("related", False),
        verification=tuple(
            ExternalVerification(
                adapter=v["adapter"],
                canonical_id=v["canonical_id"],
                canonical_title=v["canonical_title"],
                latest_version=parse_version(v.get("latest_version")),
                version_matches=v.get("version_matches"),
                checked_at=_parse_iso(v.get("checked_at")),
            )
            for v in data.get("verification", [])
        ),
    )


def notice_to_json(notice: SequelNotice) -> dict[str, Any]:
    return {
        "detected_title": notice.detected_title,
        "url": notice.url,
        "relation": notice.relation,
        "similarity": notice.similarity,
        "found_at": _iso(notice.found_at),
        "source": notice.source,
    }


def notice_from_json(data: dict[str, Any]) -> SequelNotice:
    return SequelNotice(
        detected_title=data["detected_title"],
        url=data["url"],
        relation=data["relation"],
        similarity=data.get("similarity", 0.0),
        found_at=_parse_iso(data.get("found_at")),
        source=data.get("source"),
    )


def _entity_from_row(row: TrackedTitle) -> TrackedEntity:
    return TrackedEntity(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        current_version=row.current_version,
        last_known_version=row.last_known_version,
        update_history=[
            UpdateRecord(
                version=u.version,
                timestamp=_from_db(u.recorded_at),
                source=u.source,
                url=u.url,
                detection_method=u.detection_method,
                confidence=u.confidence,
                changelog=u.changelog,
                size=u.size,
            )
            for u in row.updates
        ],
        active=row.active,
        check_frequency=row.check_frequency,
        status=row.status,
        last_checked=_from_db(row.last_checked),
        external_ids=dict(row.external_ids or {}),
        sequel_notices=[notice_from_json(n) for n in row.sequel_notices or []],
    )


def _approval_from_row(row: PendingApprovalRow) -> PendingApproval:
    candidate = listing_from_json(row.candidate)
    return PendingApproval(
        id=row.id,
        entity_id=row.entity_id,
        candidate=candidate,
        result=result_from_json(row.result, candidate),
        created_at=_from_db(row.created_at),
        expires_at=_from_db(row.expires_at),
        votes={vote.reviewer_id: vote.approve for vote in row.votes},
        status=row.status,
        resolved_at=_from_db(row.resolved_at),
    )


class SqlTrackingStore(TrackingStore):
    """Tracking store on SQLAlchemy async sessions (PostgreSQL, or SQLite for tests)."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def load_tracked_entities(self, filter: Optional[EntityFilter] = None) -> list[TrackedEntity]:
        filter = filter or EntityFilter()
        query = select(TrackedTitle).order_by(TrackedTitle.id)
        if filter.active_only:
            query = query.where(TrackedTitle.active == True)  # noqa: E712
        if filter.user_id is not None:
            query = query.where(TrackedTitle.user_id == filter.user_id)
        if filter.entity_ids is not None:
            query = query.where(TrackedTitle.id.in_(filter.entity_ids))
        if filter.checked_before is not None:
            query = query.where(or_(
                TrackedTitle.last_checked.is_(None),
                TrackedTitle.last_checked < _to_db(filter.checked_before),
            ))

        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return [_entity_from_row(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load tracked titles: {e}") from e

    async def get_entity(self, entity_id: str) -> Optional[TrackedEntity]:
        try:
            async with self.session_factory() as session:
                row = await session.get(TrackedTitle, entity_id)
                return _entity_from_row(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load tracked title {entity_id}: {e}") from e

    async def save_entity(self, entity: TrackedEntity) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await session.get(TrackedTitle, entity.id)
                    if row is None:
                        row = TrackedTitle(id=entity.id, user_id=entity.user_id, title=entity.title)
                        session.add(row)
                        row.updates = []

                    row.user_id = entity.user_id
                    row.title = entity.title
                    row.current_version = entity.current_version
                    row.last_known_version = entity.last_known_version
                    row.active = entity.active
                    row.check_frequency = entity.check_frequency
                    row.status = entity.status
                    row.last_checked = _to_db(entity.last_checked)
                    row.external_ids = dict(entity.external_ids)
                    row.sequel_notices = [notice_to_json(n) for n in entity.sequel_notices]

                    # History is append-only
                    for record in entity.update_history[len(row.updates):]:
                        row.updates.append(UpdateHistory(
                            version=record.version,
                            recorded_at=_to_db(record.timestamp),
                            source=record.source,
                            url=record.url,
                            detection_method=record.detection_method,
                            confidence=record.confidence,
                            changelog=record.changelog,
                            size=record.size,
                        ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save tracked title {entity.id}: {e}") from e

    async def load_pending_approvals(self, filter: Optional[ApprovalFilter] = None) -> list[PendingApproval]:
        filter = filter or ApprovalFilter()
        query = select(PendingApprovalRow).order_by(PendingApprovalRow.created_at)
        if filter.status is not None:
            query = query.where(PendingApprovalRow.status == filter.status)
        if filter.entity_id is not None:
            query = query.where(PendingApprovalRow.entity_id == filter.entity_id)

        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return [_approval_from_row(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load pending approvals: {e}") from e

    async def get_pending_approval(self, approval_id: str) -> Optional[PendingApproval]:
        try:
            async with self.session_factory() as session:
                row = await session.get(PendingApprovalRow, approval_id)
                return _approval_from_row(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load approval {approval_id}: {e}") from e

    async def save_pending_approval(self, approval: PendingApproval) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await session.get(PendingApprovalRow, approval.id)
                    if row is None:
                        row = PendingApprovalRow(
                            id=approval.id,
                            entity_id=approval.entity_id,
                            candidate_url=approval.candidate.url,
                            candidate=listing_to_json(approval.candidate),
                            result=result_to_json(approval.result),
                            created_at=_to_db(approval.created_at),
                            expires_at=_to_db(approval.expires_at),
                        )
                        session.add(row)
                        row.votes = []

                    row.status = approval.status
                    row.resolved_at = _to_db(approval.resolved_at)
                    row.expires_at = _to_db(approval.expires_at)

                    existing = {vote.reviewer_id: vote for vote in row.votes}
                    for reviewer_id, approve in approval.votes.items():
                        if reviewer_id in existing:
                            existing[reviewer_id].approve = approve
                        else:
                            row.votes.append(ApprovalVote(reviewer_id=reviewer_id, approve=approve))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save approval {approval.id}: {e}") from e
