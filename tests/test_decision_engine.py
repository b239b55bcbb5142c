"""Tests for candidate ranking and the update decision."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from patchwatch.ai.update_scorer import AIAnalysis, UpdateScorer
from patchwatch.detect.engine import DetectionEngine, apply_update, decide, pick_best
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
from patchwatch.normalize.version import parse_version
from patchwatch.tracking.models import EntityStatus, UpdateRecord

from tests.conftest import PUBLISHED, make_entity, make_listing

POLICY = DecisionPolicy()
# similarity("Stardew Valley", "Stardew Valleys")
VALLEYS_SIMILARITY = 14 / 15 * 0.95


def stardew(**overrides):
    fields = {"id": "stardew", "title": "Stardew Valley", "current_version": "1.5"}
    fields.update(overrides)
    return make_entity(**fields)


def ai(listing, is_update, confidence, reason="checked"):
    return AIAnalysis(url=listing.url, title=listing.title, is_update=is_update,
                      confidence=confidence, reason=reason)


class FixedScorer(UpdateScorer):
    """Returns canned analyses and records calls."""

    name = "fixed"

    def __init__(self, results=(), delay=0.0):
        self.results = list(results)
        self.delay = delay
        self.calls = []

    async def analyze(self, entity_title, last_known_version, candidates):
        self.calls.append([c.url for c in candidates])
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.results


class FixedVerifier:
    """Stands in for IdentityVerifier with a canned verdict."""

    def __init__(self, check: IdentityCheck):
        self.check = check
        self.calls = []

    async def verify(self, entity, candidate_title=None, candidate_version=None):
        self.calls.append((candidate_title, candidate_version))
        return self.check


class TestDecide:
    """The pure decision."""

    def test_exact_match_with_newer_version_commits(self):
        entity = make_entity()
        listing = make_listing("Hollow Knight v1.5 [FitGirl Repack]")

        result = decide(entity, [listing], POLICY)

        assert result.action == DecisionAction.COMMIT
        assert result.is_update is True
        assert result.detection_method == DetectionMethod.REGEX_ONLY
        assert result.version == "1.5"
        assert result.confidence == pytest.approx(1.0)
        assert result.candidate == listing

    def test_unset_current_version_accepts_any_version(self):
        result = decide(make_entity(current_version=None), [make_listing("Hollow Knight v0.9")], POLICY)
        assert result.action == DecisionAction.COMMIT
        assert result.version == "0.9"

    def test_unknown_version_goes_to_pending(self):
        # Publish date only: incomparable with "1.5", so confidence is discounted
        result = decide(stardew(), [make_listing("Stardew Valleys")], POLICY)

        assert result.action == DecisionAction.PENDING
        assert result.is_update is False
        assert result.confidence == pytest.approx(VALLEYS_SIMILARITY * 0.85)
        assert "version unknown" in result.reason

    def test_unknown_version_never_auto_commits(self):
        result = decide(make_entity(), [make_listing("Hollow Knight")], POLICY)
        assert result.action == DecisionAction.PENDING
        assert result.confidence == pytest.approx(0.85)

    def test_nothing_similar_rejects(self):
        result = decide(stardew(), [make_listing("Factorio v2.0")], POLICY)
        assert result.action == DecisionAction.REJECT
        assert result.candidate is None

    def test_no_candidates_rejects(self):
        assert decide(stardew(), [], POLICY).action == DecisionAction.REJECT

    def test_same_or_older_version_is_discarded(self):
        result = decide(make_entity(), [make_listing("Hollow Knight v1.4"), make_listing("Hollow Knight v1.3")], POLICY)
        assert result.action == DecisionAction.REJECT

    def test_already_recorded_url_is_discarded(self):
        listing = make_listing("Hollow Knight v1.5")
        entity = make_entity(update_history=[UpdateRecord(
            version="1.5", timestamp=PUBLISHED, source="aggregator", url=listing.url,
            detection_method=DetectionMethod.REGEX_ONLY, confidence=1.0,
        )])
        assert decide(entity, [listing], POLICY).action == DecisionAction.REJECT

    @pytest.mark.parametrize("title,current,listing", [
        ("Dark Souls 2", "1.02", "Dark Souls 3 v1.15"),
        ("Dark Souls III", "1.02", "Dark Souls II v1.15"),
        ("Risk of Rain", "1.0", "Risk of Rain 2 v1.2"),
    ])
    def test_numbered_sequel_is_not_an_update(self, title, current, listing):
        entity = make_entity(id="sequel", title=title, current_version=current)

        result = decide(entity, [make_listing(listing)], POLICY)

        assert result.action == DecisionAction.REJECT
        assert result.is_update is False

    def test_same_sequel_number_still_commits(self):
        entity = make_entity(id="ds3", title="Dark Souls III", current_version="1.02")
        result = decide(entity, [make_listing("Dark Souls 3 v1.15")], POLICY)

        assert result.action == DecisionAction.COMMIT
        assert result.version == "1.15"

    def test_naive_and_missing_publish_dates_break_ties(self):
        dated = make_listing("Hollow Knight v1.5", url="https://aggregator.example/hk-dated",
                             published_at=datetime(2025, 9, 1, 12))
        undated = make_listing("Hollow Knight v1.5", url="https://aggregator.example/hk-undated",
                               published_at=None)

        result = decide(make_entity(), [undated, dated], POLICY)

        assert result.action == DecisionAction.COMMIT
        assert result.candidate == dated
        assert dated.published_at == datetime(2025, 9, 1, 12, tzinfo=timezone.utc)

    def test_related_title_pending_without_identity(self):
        entity = make_entity(id="ac", title="Assetto Corsa", current_version="1.16")
        result = decide(entity, [make_listing("Assetto Corsa EVO")], POLICY)

        assert result.action == DecisionAction.PENDING
        assert result.related is True
        assert "named sequel" in result.reason

    def test_related_title_rejected_when_adapters_say_different(self):
        entity = make_entity(id="ac", title="Assetto Corsa", current_version="1.16")
        identity = IdentityCheck(verdict=IdentityVerdict.DIFFERENT)

        result = decide(entity, [make_listing("Assetto Corsa EVO v2.0")], POLICY, identity=identity)

        assert result.action == DecisionAction.REJECT
        assert result.is_update is False

    def test_related_title_commits_when_identity_confirmed(self):
        entity = make_entity(id="ac", title="Assetto Corsa", current_version="1.16")
        identity = IdentityCheck(verdict=IdentityVerdict.SAME)

        result = decide(entity, [make_listing("Assetto Corsa EVO v2.0")], POLICY, identity=identity)

        assert result.action == DecisionAction.COMMIT
        assert result.version == "2.0"
        assert result.confidence == pytest.approx(0.85)

    def test_ai_rejection_discounts_similarity(self):
        listing = make_listing("Stardew Valleys v1.6")
        result = decide(stardew(), [listing], POLICY, ai_results=[ai(listing, False, 0.7)])

        assert result.action == DecisionAction.PENDING
        assert result.detection_method == DetectionMethod.AI_ENHANCED
        assert result.confidence == pytest.approx(VALLEYS_SIMILARITY * 0.9)

    def test_ai_agreement_blends(self):
        listing = make_listing("Stardew Valleys v1.6")
        result = decide(stardew(), [listing], POLICY, ai_results=[ai(listing, True, 0.85)])

        assert result.action == DecisionAction.COMMIT
        assert result.detection_method == DetectionMethod.AI_ENHANCED
        assert result.confidence == pytest.approx(0.7 * VALLEYS_SIMILARITY + 0.3 * 0.85)

    def test_confident_ai_is_primary(self):
        listing = make_listing("Stardew Valleys v1.6")
        result = decide(stardew(), [listing], POLICY, ai_results=[ai(listing, True, 0.97)])

        assert result.detection_method == DetectionMethod.AI_PRIMARY
        assert result.confidence == pytest.approx(0.97)

    def test_confident_ai_rejection_is_not_primary(self):
        listing = make_listing("Stardew Valleys v1.6")
        result = decide(stardew(), [listing], POLICY, ai_results=[ai(listing, False, 0.95)])

        assert result.detection_method == DetectionMethod.AI_ENHANCED
        assert result.confidence == pytest.approx(VALLEYS_SIMILARITY * 0.9)
        assert result.action == DecisionAction.PENDING

    def test_verification_boost(self):
        listing = make_listing("Stardew Valleys v1.6")
        verification = ExternalVerification(
            adapter="steamdb", canonical_id="413150", canonical_title="Stardew Valley",
            latest_version=parse_version("1.6"), version_matches=True,
        )
        result = decide(stardew(), [listing], POLICY, verification=[verification])

        assert result.confidence == pytest.approx(VALLEYS_SIMILARITY + 0.05)
        assert result.verification == (verification,)

    def test_auto_approval_threshold_is_configurable(self):
        strict = DecisionPolicy(auto_approval_threshold=0.9)
        result = decide(stardew(), [make_listing("Stardew Valleys v1.6")], strict)
        assert result.action == DecisionAction.PENDING


class TestPickBest:
    """Tie-breaking among near-equal scores."""

    def _scored(self, title, score, version, published_at):
        return ScoredCandidate(
            listing=make_listing(title, published_at=published_at),
            similarity=score,
            version=version,
            delta=VersionDelta.NEWER,
            related=False,
            score=score,
        )

    def test_higher_score_wins(self):
        a = self._scored("a", 0.90, parse_version("1.1"), PUBLISHED)
        b = self._scored("b", 0.85, parse_version("1.2"), PUBLISHED)
        assert pick_best([a, b], POLICY) is a

    def test_tie_prefers_version_confidence(self):
        version = parse_version("1.1")
        a = self._scored("a", 0.900, replace(version, confidence=0.6), PUBLISHED)
        b = self._scored("b", 0.895, replace(version, confidence=0.9), PUBLISHED)
        assert pick_best([a, b], POLICY) is b

    def test_tie_then_prefers_latest_publish_date(self):
        version = parse_version("1.1")
        older = self._scored("older", 0.9, version, PUBLISHED - timedelta(days=3))
        newer = self._scored("newer", 0.9, version, PUBLISHED)
        assert pick_best([older, newer], POLICY) is newer


class TestApplyUpdate:
    """The commit side effect."""

    def test_updates_versions_history_and_status(self):
        entity = make_entity()
        result = decide(entity, [make_listing("Hollow Knight v1.5", excerpt="Bug fixes", size="9 GB")], POLICY)
        now = datetime(2025, 9, 23, tzinfo=timezone.utc)

        apply_update(entity, result, now)

        assert entity.current_version == "1.5"
        assert entity.last_known_version == "1.4"
        assert entity.status == EntityStatus.UPDATE_AVAILABLE
        record = entity.update_history[-1]
        assert record.version == "1.5"
        assert record.timestamp == now
        assert record.changelog == "Bug fixes"
        assert record.size == "9 GB"

    def test_requires_version(self):
        with pytest.raises(ValueError):
            apply_update(make_entity(), DetectionResult.rejected("nothing"))


class TestDetectionEngine:
    """Evidence gathering around the pure decision."""

    @pytest.mark.asyncio
    async def test_exact_match_skips_ai(self):
        scorer = FixedScorer()
        engine = DetectionEngine(POLICY, scorer)

        result = await engine.detect(make_entity(), [make_listing("Hollow Knight v1.5")])

        assert result.action == DecisionAction.COMMIT
        assert scorer.calls == []

    @pytest.mark.asyncio
    async def test_uncertain_candidates_go_to_ai(self):
        listing = make_listing("Stardew Valleys v1.6")
        scorer = FixedScorer([ai(listing, False, 0.7)])
        engine = DetectionEngine(POLICY, scorer)

        result = await engine.detect(stardew(), [listing])

        assert scorer.calls == [[listing.url]]
        assert result.detection_method == DetectionMethod.AI_ENHANCED
        assert result.action == DecisionAction.PENDING

    @pytest.mark.asyncio
    async def test_slow_ai_is_ignored(self):
        listing = make_listing("Stardew Valleys v1.6")
        scorer = FixedScorer([ai(listing, False, 0.99)], delay=1.0)
        engine = DetectionEngine(POLICY, scorer, ai_timeout=0.01)

        result = await engine.detect(stardew(), [listing])

        assert result.detection_method == DetectionMethod.REGEX_ONLY
        assert result.action == DecisionAction.COMMIT

    @pytest.mark.asyncio
    async def test_related_candidate_is_verified(self):
        entity = make_entity(id="ac", title="Assetto Corsa", current_version="1.16")
        verifier = FixedVerifier(IdentityCheck(verdict=IdentityVerdict.DIFFERENT))
        engine = DetectionEngine(POLICY, verifier=verifier)

        result = await engine.detect(entity, [make_listing("Assetto Corsa EVO v2.0")])

        assert verifier.calls[0][0] == "Assetto Corsa EVO v2.0"
        assert result.action == DecisionAction.REJECT
