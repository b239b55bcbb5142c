"""Detection result types."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from patchwatch.ingest.base import CandidateListing
from patchwatch.normalize.version import VersionToken


class DetectionMethod:
    REGEX_ONLY = "regex_only"
    AI_ENHANCED = "ai_enhanced"
    AI_PRIMARY = "ai_primary"


class DecisionAction:
    COMMIT = "commit"
    PENDING = "pending"
    REJECT = "reject"


class VersionDelta:
    """How a candidate's version relates to the stored one."""

    NEWER = "newer"
    SAME_OR_OLDER = "same_or_older"
    UNKNOWN = "unknown"  # No token, or tokens of different kinds


class IdentityVerdict:
    SAME = "same"
    DIFFERENT = "different"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ExternalVerification:
    """Snapshot of what one identity adapter reported for a tracked title."""

    adapter: str
    canonical_id: str
    canonical_title: str
    latest_version: Optional[VersionToken] = None
    version_matches: Optional[bool] = None
    checked_at: Optional[datetime] = None


@dataclass(frozen=True)
class IdentityCheck:
    """Aggregated adapter verdict on whether a candidate is the tracked title."""

    verdict: str = IdentityVerdict.UNKNOWN
    verifications: tuple[ExternalVerification, ...] = ()

    @property
    def version_confirmed(self) -> bool:
        return any(v.version_matches for v in self.verifications)


@dataclass(frozen=True)
class ScoredCandidate:
    """A candidate with the lexical evidence gathered for it."""

    listing: CandidateListing
    similarity: float
    version: Optional[VersionToken]
    delta: str
    related: bool
    relation: Optional[str] = None
    score: float = 0.0
    method: str = DetectionMethod.REGEX_ONLY
    ai_confidence: Optional[float] = None
    ai_reason: Optional[str] = None


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of evaluating a tracked title against a batch of candidates."""

    is_update: bool
    confidence: float
    reason: str
    detection_method: str = DetectionMethod.REGEX_ONLY
    action: str = DecisionAction.REJECT
    version: Optional[str] = None
    candidate: Optional[CandidateListing] = None
    similarity: float = 0.0
    related: bool = False
    verification: tuple[ExternalVerification, ...] = field(default_factory=tuple)

    @classmethod
    def rejected(cls, reason: str) -> "DetectionResult":
        return cls(is_update=False, confidence=0.0, reason=reason, action=DecisionAction.REJECT)
