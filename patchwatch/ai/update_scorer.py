"""Pluggable AI scorer for uncertain update candidates.

The decision engine only consults a scorer for candidates in the uncertain
similarity band. The scorer is chosen once, at construction, by
``build_scorer``: a null scorer when AI is disabled, an HTTP worker, or an
OpenAI-backed scorer. Every network-backed scorer is called through
``score_safely`` so a slow or failing scorer degrades to "no AI opinion".
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from patchwatch import metrics
from patchwatch.ai.llm_service import LLMService
from patchwatch.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ScorerError(RuntimeError):
    """Raised when a scorer returns an unusable response."""

    pass


@dataclass(frozen=True)
class AICandidate:
    """What a scorer sees of a candidate listing."""

    title: str
    url: str
    similarity: float
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class AIAnalysis:
    """Scorer opinion on a single candidate."""

    url: str
    title: str
    is_update: bool
    confidence: float
    reason: str = ""


class UpdateScorer(ABC):
    """Capability interface for AI update scoring."""

    name = "base"

    @abstractmethod
    async def analyze(
        self,
        entity_title: str,
        last_known_version: Optional[str],
        candidates: list[AICandidate],
    ) -> list[AIAnalysis]:
        """
        Judge whether each candidate is an update of the tracked title.

        Returns:
            One analysis per judged candidate; candidates may be omitted
        """
        pass

    async def close(self):
        pass


class NullScorer(UpdateScorer):
    """Scorer used when AI assistance is disabled."""

    name = "none"

    async def analyze(self, entity_title, last_known_version, candidates) -> list[AIAnalysis]:
        return []


def _clamp(value) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.0


class WorkerScorer(UpdateScorer):
    """
    Scorer backed by an HTTP worker.

    Request: ``{"gameTitle", "candidateTitles": [...], "context": {"lastKnownVersion"}}``.
    Response: ``{"success": true, "analysis": [{"title", "isUpdate", "confidence", "reason", "sourceUrl"}]}``.
    """

    name = "worker"

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        min_confidence: float = 0.6,
        max_candidates: int = 5,
        timeout: float = 10.0,
    ):
        if not url:
            raise ValueError("AI worker URL not configured")
        self.url = url
        self.min_confidence = min_confidence
        self.max_candidates = max_candidates
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def analyze(self, entity_title, last_known_version, candidates) -> list[AIAnalysis]:
        if not candidates:
            return []

        ranked = sorted(candidates, key=lambda c: c.similarity, reverse=True)[: self.max_candidates]
        payload = {
            "gameTitle": entity_title,
            "candidateTitles": [
                {
                    "title": c.title,
                    "similarity": c.similarity,
                    "sourceUrl": c.url,
                    "dateFound": c.published_at.isoformat() if c.published_at else None,
                }
                for c in ranked
            ],
            "context": {"lastKnownVersion": last_known_version},
        }

        client = await self._get_client()
        response = await client.post(self.url, json=payload)
        response.raise_for_status()
        body = response.json()

        if not isinstance(body, dict) or not body.get("success") or not isinstance(body.get("analysis"), list):
            raise ScorerError("AI worker returned an invalid response")

        by_title = {c.title: c.url for c in ranked}
        results = []
        for item in body["analysis"]:
            if not isinstance(item, dict):
                continue
            confidence = _clamp(item.get("confidence"))
            if confidence < self.min_confidence:
                continue
            title = str(item.get("title") or "")
            url = str(item.get("sourceUrl") or by_title.get(title, ""))
            if not url:
                continue
            results.append(AIAnalysis(
                url=url,
                title=title,
                is_update=bool(item.get("isUpdate")),
                confidence=confidence,
                reason=str(item.get("reason") or ""),
            ))
        return results

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


UPDATE_SYSTEM_PROMPT = """You decide whether software release listings are updates of a tracked title.
A listing is an update only if it is the same product with a newer version or build.
Sequels, remasters, expansions and different editions are NOT updates."""

UPDATE_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "analysis": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "index": {"type": "integer"},
                    "is_update": {"type": "boolean"},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "reason": {"type": "string"},
                },
                "required": ["index", "is_update", "confidence"],
            },
        }
    },
    "required": ["analysis"],
}


class LLMScorer(UpdateScorer):
    """Scorer that asks an OpenAI model through ``LLMService``."""

    name = "llm"

    def __init__(self, llm: LLMService, min_confidence: float = 0.6, max_candidates: int = 5):
        self.llm = llm
        self.min_confidence = min_confidence
        self.max_candidates = max_candidates

    def _build_prompt(self, entity_title, last_known_version, candidates) -> str:
        lines = [
            f"Tracked title: {entity_title}",
            f"Current version: {last_known_version or 'unknown'}",
            "",
            "Candidate listings:",
        ]
        for index, candidate in enumerate(candidates):
            lines.append(f"{index}. {candidate.title} (title similarity {candidate.similarity:.2f})")
        return "\n".join(lines)

    async def analyze(self, entity_title, last_known_version, candidates) -> list[AIAnalysis]:
        if not candidates:
            return []

        ranked = sorted(candidates, key=lambda c: c.similarity, reverse=True)[: self.max_candidates]
        response = await self.llm.call_llm_structured(
            prompt=self._build_prompt(entity_title, last_known_version, ranked),
            response_schema=UPDATE_RESPONSE_SCHEMA,
            system_prompt=UPDATE_SYSTEM_PROMPT,
        )

        items = response.get("analysis")
        if not isinstance(items, list):
            raise ScorerError("LLM response has no analysis list")

        results = []
        for item in items:
            if not isinstance(item, dict):
                continue
            index = item.get("index")
            if not isinstance(index, int) or not 0 <= index < len(ranked):
                continue
            confidence = _clamp(item.get("confidence"))
            if confidence < self.min_confidence:
                continue
            candidate = ranked[index]
            results.append(AIAnalysis(
                url=candidate.url,
                title=candidate.title,
                is_update=bool(item.get("is_update")),
                confidence=confidence,
                reason=str(item.get("reason") or ""),
            ))
        return results

    async def close(self):
        await self.llm.close()


def build_scorer(config: Settings = default_settings) -> UpdateScorer:
    """Select the scorer implementation from configuration."""
    if config.ai_scorer == "worker" and config.ai_worker_url:
        return WorkerScorer(
            url=config.ai_worker_url,
            min_confidence=config.ai_min_confidence,
            max_candidates=config.ai_max_candidates,
            timeout=config.ai_timeout_seconds,
        )
    if config.ai_scorer == "llm" and config.openai_api_key:
        return LLMScorer(
            LLMService(config),
            min_confidence=config.ai_min_confidence,
            max_candidates=config.ai_max_candidates,
        )
    if config.ai_scorer != "none":
        logger.warning(f"AI scorer '{config.ai_scorer}' is not fully configured, AI assistance disabled")
    return NullScorer()


async def score_safely(
    scorer: UpdateScorer,
    entity_title: str,
    last_known_version: Optional[str],
    candidates: list[AICandidate],
    timeout: float,
) -> list[AIAnalysis]:
    """
    Run a scorer under a hard timeout.

    Never raises: a timeout or scorer failure yields an empty list, which the
    engine treats as "no AI opinion".
    """
    if not candidates or isinstance(scorer, NullScorer):
        return []

    try:
        results = await asyncio.wait_for(
            scorer.analyze(entity_title, last_known_version, candidates),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(f"AI scorer '{scorer.name}' timed out after {timeout}s for {entity_title!r}")
        metrics.ai_scorer_calls_total.labels(scorer=scorer.name, status="timeout").inc()
        return []
    except Exception as e:
        logger.warning(f"AI scorer '{scorer.name}' failed for {entity_title!r}: {e}")
        metrics.ai_scorer_calls_total.labels(scorer=scorer.name, status="error").inc()
        return []

    metrics.ai_scorer_calls_total.labels(scorer=scorer.name, status="ok").inc()
    return results
