"""Update detection engine.

``decide`` is the pure decision: it ranks candidates for one tracked title and
returns a single DetectionResult with an action (commit, pending or reject).
``DetectionEngine.detect`` gathers the optional evidence first (AI scorer
opinions for uncertain matches, adapter identity checks) and then calls
``decide``. ``apply_update`` is the only code path that changes a tracked
title's version.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from patchwatch import metrics
from patchwatch.ai.update_scorer import (
    AIAnalysis,
    AICandidate,
    NullScorer,
    UpdateScorer,
    score_safely,
)
from patchwatch.config import settings
from patchwatch.detect.models import (
    DecisionAction,
    DetectionMethod,
    DetectionResult,
    ExternalVerification,
    IdentityCheck,
    IdentityVerdict,
    ScoredCandidate,
    VersionDelta,
)
from patchwatch.detect.policy import DecisionPolicy
from patchwatch.detect.relatedness import are_related_but_distinct, classify_relation
from patchwatch.detect.similarity import similarity
from patchwatch.detect.verification import IdentityVerifier
from patchwatch.ingest.base import CandidateListing
from patchwatch.normalize.version import VersionToken, compare_versions, extract_version, parse_version
from patchwatch.tracking.models import EntityStatus, TrackedEntity, UpdateRecord

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def version_delta(current_version: Optional[str], token: Optional[VersionToken]) -> str:
    """Relation of a candidate token to the stored version string."""
    if token is None:
        return VersionDelta.UNKNOWN
    if not current_version:
        return VersionDelta.NEWER

    comparison = compare_versions(token, parse_version(current_version))
    if comparison is None:
        return VersionDelta.UNKNOWN
    return VersionDelta.NEWER if comparison > 0 else VersionDelta.SAME_OR_OLDER


def score_candidates(
    entity: TrackedEntity,
    candidates: Iterable[CandidateListing],
    policy: DecisionPolicy,
) -> list[ScoredCandidate]:
    """
    Lexical pass over the candidates.

    Drops candidates below the similarity floor, listings already recorded in
    the update history, and versions that are not newer than the stored one.
    """
    known_urls = entity.known_urls()
    scored = []
    for listing in candidates:
        if listing.url in known_urls:
            continue

        score = similarity(entity.title, listing.title)
        if score < policy.similarity_floor:
            continue

        token = extract_version(listing.title, listing.excerpt, listing.published_at, listing.source_id)
        delta = version_delta(entity.current_version, token)
        if delta == VersionDelta.SAME_OR_OLDER:
            logger.debug(f"Skipping {listing.title!r}: version not newer than {entity.current_version}")
            continue

        related = are_related_but_distinct(entity.title, listing.title)
        scored.append(ScoredCandidate(
            listing=listing,
            similarity=score,
            version=token,
            delta=delta,
            related=related,
            relation=classify_relation(entity.title, listing.title) if related else None,
            score=score,
        ))
    return scored


def blend_ai_results(
    scored: Sequence[ScoredCandidate],
    ai_results: Optional[Sequence[AIAnalysis]],
    policy: DecisionPolicy,
) -> list[ScoredCandidate]:
    """Combine AI opinions into the scores of uncertain candidates."""
    if not ai_results:
        return list(scored)

    by_url = {analysis.url: analysis for analysis in ai_results}
    blended = []
    for candidate in scored:
        analysis = by_url.get(candidate.listing.url)
        if analysis is None or not policy.is_uncertain(candidate.similarity):
            blended.append(candidate)
            continue

        if analysis.is_update:
            score = policy.similarity_weight * candidate.similarity + policy.ai_weight * analysis.confidence
        else:
            score = candidate.similarity * policy.ai_rejected_factor

        method = DetectionMethod.AI_ENHANCED
        if analysis.is_update and analysis.confidence > policy.ai_primary_threshold:
            method = DetectionMethod.AI_PRIMARY
            score = max(score, analysis.confidence)

        blended.append(replace(
            candidate,
            score=min(1.0, score),
            method=method,
            ai_confidence=analysis.confidence,
            ai_reason=analysis.reason,
        ))
    return blended


def pick_best(scored: Sequence[ScoredCandidate], policy: DecisionPolicy) -> ScoredCandidate:
    """
    Highest score wins. Scores within ``tie_epsilon`` of the best are tied and
    broken by version-extraction confidence, then by the latest publish date.
    """
    top = max(candidate.score for candidate in scored)
    tied = [c for c in scored if top - c.score <= policy.tie_epsilon]
    return max(tied, key=lambda c: (
        c.version.confidence if c.version else 0.0,
        c.listing.published_at or _EPOCH,
        c.score,
    ))


def _version_confirmed(candidate: ScoredCandidate, verifications: Sequence[ExternalVerification]) -> bool:
    return candidate.version is not None and any(v.version_matches for v in verifications)


def _describe(candidate: ScoredCandidate) -> str:
    version = candidate.version.canonical() if candidate.version else "unknown version"
    return f"'{candidate.listing.title}' (similarity {candidate.similarity:.2f}, {version})"


def decide(
    entity: TrackedEntity,
    candidates: Iterable[CandidateListing],
    policy: Optional[DecisionPolicy] = None,
    ai_results: Optional[Sequence[AIAnalysis]] = None,
    identity: Optional[IdentityCheck] = None,
    verification: Optional[Sequence[ExternalVerification]] = None,
) -> DetectionResult:
    """
    Decide whether any candidate is an update of the tracked title.

    Args:
        entity: Tracked title
        candidates: Fresh listings for this title
        policy: Thresholds (defaults to configuration)
        ai_results: AI scorer opinions, keyed by candidate URL
        identity: Adapter identity verdict for the best related candidate
        verification: Extra adapter snapshots to attach and use for the version boost

    Returns:
        DetectionResult; ``is_update`` is True only for a commit
    """
    policy = policy or DecisionPolicy.from_settings()
    identity = identity or IdentityCheck()
    verifications = tuple(verification or ()) + identity.verifications

    scored = score_candidates(entity, candidates, policy)
    if not scored:
        return DetectionResult.rejected("No new candidate above the similarity floor")

    exact = [
        c for c in scored
        if c.similarity >= policy.exact_min and c.delta == VersionDelta.NEWER and not c.related
    ]
    if exact:
        best = pick_best(exact, policy)
        confidence = best.similarity
        if _version_confirmed(best, verifications):
            confidence = min(1.0, confidence + policy.verification_boost)
        return DetectionResult(
            is_update=True,
            confidence=confidence,
            reason=f"Exact title match with newer version: {_describe(best)}",
            detection_method=DetectionMethod.REGEX_ONLY,
            action=DecisionAction.COMMIT,
            version=best.version.canonical(),
            candidate=best.listing,
            similarity=best.similarity,
            verification=verifications,
        )

    best = pick_best(blend_ai_results(scored, ai_results, policy), policy)
    confidence = best.score
    notes = []
    if best.delta == VersionDelta.UNKNOWN:
        confidence *= policy.unknown_version_factor
        notes.append("version unknown")
    if _version_confirmed(best, verifications):
        confidence = min(1.0, confidence + policy.verification_boost)
        notes.append("version confirmed externally")
    if best.ai_reason:
        notes.append(f"AI: {best.ai_reason}")

    def result(action: str, reason: str) -> DetectionResult:
        detail = f"{reason}: {_describe(best)}"
        if notes:
            detail += f" [{'; '.join(notes)}]"
        return DetectionResult(
            is_update=action == DecisionAction.COMMIT,
            confidence=confidence,
            reason=detail,
            detection_method=best.method,
            action=action,
            version=best.version.canonical() if best.version else None,
            candidate=best.listing,
            similarity=best.similarity,
            related=best.related,
            verification=verifications,
        )

    if best.related:
        relation = (best.relation or "related title").replace("_", " ")
        if identity.verdict == IdentityVerdict.DIFFERENT:
            return result(DecisionAction.REJECT, f"External catalogs list this {relation} as a different title")
        if identity.verdict != IdentityVerdict.SAME:
            return result(DecisionAction.PENDING, f"Possible {relation}, needs confirmation")

    if confidence >= policy.auto_approval_threshold and best.delta == VersionDelta.NEWER:
        return result(DecisionAction.COMMIT, "Update detected")
    if confidence >= policy.similarity_floor:
        return result(DecisionAction.PENDING, "Possible update below auto-approval confidence")
    return result(DecisionAction.REJECT, "Confidence below floor")


def find_related_titles(
    entity: TrackedEntity,
    candidates: Iterable[CandidateListing],
    result: Optional[DetectionResult] = None,
) -> list[tuple[CandidateListing, str]]:
    """
    Listings that name a different title in the tracked title's franchise.

    Listings already noticed or committed are skipped, as is the candidate
    that ``result`` commits or sends to review.

    Returns:
        (listing, relation) pairs, relation as labelled by ``classify_relation``
    """
    skip = entity.known_urls() | entity.noticed_urls()
    if result is not None and result.candidate is not None and result.action != DecisionAction.REJECT:
        skip.add(result.candidate.url)

    found = []
    for listing in candidates:
        if listing.url in skip:
            continue
        relation = classify_relation(entity.title, listing.title)
        if relation is not None:
            found.append((listing, relation))
            skip.add(listing.url)
    return found


def apply_update(entity: TrackedEntity, result: DetectionResult, now: Optional[datetime] = None) -> TrackedEntity:
    """
    Commit a detected update to the tracked title in place.

    Raises:
        ValueError: The result has no candidate or version to commit
    """
    if result.candidate is None or not result.version:
        raise ValueError("Cannot apply a detection result without a candidate version")

    now = now or datetime.now(timezone.utc)
    entity.update_history.append(UpdateRecord(
        version=result.version,
        timestamp=now,
        source=result.candidate.source,
        url=result.candidate.url,
        detection_method=result.detection_method,
        confidence=result.confidence,
        changelog=result.candidate.excerpt,
        size=result.candidate.size,
    ))
    entity.last_known_version = entity.current_version
    entity.current_version = result.version
    entity.status = EntityStatus.UPDATE_AVAILABLE
    return entity


class DetectionEngine:
    """Collects AI and adapter evidence for a tracked title, then decides."""

    def __init__(
        self,
        policy: Optional[DecisionPolicy] = None,
        scorer: Optional[UpdateScorer] = None,
        verifier: Optional[IdentityVerifier] = None,
        ai_timeout: float = settings.ai_timeout_seconds,
    ):
        self.policy = policy or DecisionPolicy.from_settings()
        self.scorer = scorer or NullScorer()
        self.verifier = verifier
        self.ai_timeout = ai_timeout

    async def detect(self, entity: TrackedEntity, candidates: Sequence[CandidateListing]) -> DetectionResult:
        """
        Evaluate fresh candidates for a tracked title.

        Args:
            entity: Tracked title
            candidates: Listings returned by the catalog search

        Returns:
            DetectionResult with the action to take
        """
        scored = score_candidates(entity, candidates, self.policy)

        ai_results: list[AIAnalysis] = []
        uncertain = [c for c in scored if self.policy.is_uncertain(c.similarity)]
        has_exact = any(
            c.similarity >= self.policy.exact_min and c.delta == VersionDelta.NEWER and not c.related
            for c in scored
        )
        if uncertain and not has_exact:
            ai_results = await score_safely(
                self.scorer,
                entity.title,
                entity.current_version,
                [AICandidate(c.listing.title, c.listing.url, c.similarity, c.listing.published_at)
                 for c in uncertain],
                timeout=self.ai_timeout,
            )

        identity = None
        if self.verifier is not None and scored:
            best = pick_best(blend_ai_results(scored, ai_results, self.policy), self.policy)
            if best.related or best.version is not None:
                identity = await self.verifier.verify(
                    entity,
                    candidate_title=best.listing.title if best.related else None,
                    candidate_version=best.version,
                )

        result = decide(entity, candidates, self.policy, ai_results=ai_results, identity=identity)
        metrics.record_decision(result.action, result.detection_method, result.confidence)
        logger.info(
            f"Detection for {entity.title!r}: {result.action} "
            f"(confidence {result.confidence:.2f}, {result.detection_method}) - {result.reason}"
        )
        return result
