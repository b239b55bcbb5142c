"""Tracked title data model."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from patchwatch.detect.models import DetectionResult
from patchwatch.ingest.base import CandidateListing


class EntityStatus:
    """Monitoring status of a tracked title."""

    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    UP_TO_DATE = "up-to-date"
    UPDATE_AVAILABLE = "update-available"

    ALL = (ACTIVE, PAUSED, ERROR, UP_TO_DATE, UPDATE_AVAILABLE)


class CheckFrequency:
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    ALL = (HOURLY, DAILY, WEEKLY)


@dataclass
class UpdateRecord:
    """One committed update of a tracked title."""

    version: str
    timestamp: datetime
    source: str
    url: str
    detection_method: str
    confidence: float
    changelog: Optional[str] = None
    size: Optional[str] = None


@dataclass
class SequelNotice:
    """A related title (sequel, expansion, remaster) spotted while checking a tracked title."""

    detected_title: str
    url: str
    relation: str
    similarity: float
    found_at: datetime
    source: Optional[str] = None


@dataclass
class TrackedEntity:
    """A user-selected title monitored for updates."""

    id: str
    user_id: str
    title: str
    current_version: Optional[str] = None
    last_known_version: Optional[str] = None
    update_history: list[UpdateRecord] = field(default_factory=list)
    active: bool = True
    check_frequency: str = CheckFrequency.DAILY
    status: str = EntityStatus.ACTIVE
    last_checked: Optional[datetime] = None
    external_ids: dict[str, str] = field(default_factory=dict)
    sequel_notices: list[SequelNotice] = field(default_factory=list)

    def __post_init__(self):
        if self.check_frequency not in CheckFrequency.ALL:
            raise ValueError(f"Unknown check frequency: {self.check_frequency}")
        if self.status not in EntityStatus.ALL:
            raise ValueError(f"Unknown status: {self.status}")

    def known_urls(self) -> set[str]:
        """Listing URLs already committed as updates."""
        return {record.url for record in self.update_history}

    def noticed_urls(self) -> set[str]:
        return {notice.url for notice in self.sequel_notices}

    def copy(self) -> "TrackedEntity":
        """Detached copy, safe to hand to callers of a store."""
        return replace(
            self,
            update_history=list(self.update_history),
            external_ids=dict(self.external_ids),
            sequel_notices=list(self.sequel_notices),
        )


class ApprovalStatus:
    OPEN = "open"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    ALL = (OPEN, APPROVED, DENIED, EXPIRED)


@dataclass
class PendingApproval:
    """A detection awaiting reviewer consensus."""

    id: str
    entity_id: str
    candidate: CandidateListing
    result: DetectionResult
    created_at: datetime
    expires_at: datetime
    votes: dict[str, bool] = field(default_factory=dict)  # reviewer id -> approve
    status: str = ApprovalStatus.OPEN
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == ApprovalStatus.OPEN

    def approvals(self) -> int:
        return sum(1 for approve in self.votes.values() if approve)

    def denials(self) -> int:
        return sum(1 for approve in self.votes.values() if not approve)

    def copy(self) -> "PendingApproval":
        return replace(self, votes=dict(self.votes))
