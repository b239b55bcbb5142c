"""Tests for the pluggable AI scorers."""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from patchwatch.ai.update_scorer import (
    AICandidate,
    LLMScorer,
    NullScorer,
    ScorerError,
    UpdateScorer,
    WorkerScorer,
    build_scorer,
    score_safely,
)
from patchwatch.config import Settings

CANDIDATES = [
    AICandidate("Stardew Valleys v1.6", "https://aggregator.example/1", 0.89,
                datetime(2025, 9, 22, tzinfo=timezone.utc)),
    AICandidate("Stardew Valley Expanded", "https://aggregator.example/2", 0.85),
]


def worker_client(body, status_code=200, captured=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(json.loads(request.content))
        return httpx.Response(status_code, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestWorkerScorer:
    """HTTP worker protocol."""

    @pytest.mark.asyncio
    async def test_request_and_response(self):
        captured = []
        client = worker_client({
            "success": True,
            "analysis": [
                {"title": "Stardew Valleys v1.6", "isUpdate": True, "confidence": 0.92,
                 "reason": "Same game, newer patch", "sourceUrl": "https://aggregator.example/1"},
                {"title": "Stardew Valley Expanded", "isUpdate": False, "confidence": 0.4,
                 "reason": "Fan mod"},
            ],
        }, captured=captured)
        scorer = WorkerScorer("http://worker.local/analyze", client=client)

        results = await scorer.analyze("Stardew Valley", "1.5", CANDIDATES)

        payload = captured[0]
        assert payload["gameTitle"] == "Stardew Valley"
        assert payload["context"] == {"lastKnownVersion": "1.5"}
        assert payload["candidateTitles"][0]["sourceUrl"] == "https://aggregator.example/1"
        assert payload["candidateTitles"][0]["dateFound"].startswith("2025-09-22")

        # Below min_confidence is dropped
        assert len(results) == 1
        assert results[0].url == "https://aggregator.example/1"
        assert results[0].is_update is True
        assert results[0].confidence == pytest.approx(0.92)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_url_falls_back_to_title(self):
        client = worker_client({
            "success": True,
            "analysis": [{"title": "Stardew Valley Expanded", "isUpdate": False, "confidence": 0.8}],
        })
        scorer = WorkerScorer("http://worker.local/analyze", client=client)

        results = await scorer.analyze("Stardew Valley", None, CANDIDATES)

        assert results[0].url == "https://aggregator.example/2"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_invalid_response(self):
        client = worker_client({"success": False, "error": "model offline"})
        scorer = WorkerScorer("http://worker.local/analyze", client=client)

        with pytest.raises(ScorerError):
            await scorer.analyze("Stardew Valley", "1.5", CANDIDATES)
        await client.aclose()

    def test_requires_url(self):
        with pytest.raises(ValueError):
            WorkerScorer("")


class TestLLMScorer:
    """Index-based LLM responses."""

    @pytest.mark.asyncio
    async def test_maps_indexes_to_candidates(self):
        llm = MagicMock()
        llm.call_llm_structured = AsyncMock(return_value={"analysis": [
            {"index": 1, "is_update": False, "confidence": 0.9, "reason": "Mod, not an update"},
            {"index": 7, "is_update": True, "confidence": 0.9},
            {"index": 0, "is_update": True, "confidence": 0.3},
        ]})
        scorer = LLMScorer(llm)

        results = await scorer.analyze("Stardew Valley", "1.5", CANDIDATES)

        assert len(results) == 1
        assert results[0].url == "https://aggregator.example/2"
        assert results[0].is_update is False
        prompt = llm.call_llm_structured.call_args.kwargs["prompt"]
        assert "Stardew Valley" in prompt
        assert "1.5" in prompt

    @pytest.mark.asyncio
    async def test_missing_analysis(self):
        llm = MagicMock()
        llm.call_llm_structured = AsyncMock(return_value={"verdict": "yes"})

        with pytest.raises(ScorerError):
            await LLMScorer(llm).analyze("Stardew Valley", "1.5", CANDIDATES)


class TestScoreSafely:
    """Degradation to no AI opinion."""

    @pytest.mark.asyncio
    async def test_timeout_yields_nothing(self):
        class SlowScorer(UpdateScorer):
            name = "slow"

            async def analyze(self, entity_title, last_known_version, candidates):
                await asyncio.sleep(1)
                return []

        assert await score_safely(SlowScorer(), "Stardew Valley", "1.5", CANDIDATES, timeout=0.01) == []

    @pytest.mark.asyncio
    async def test_error_yields_nothing(self):
        client = worker_client({"oops": True}, status_code=500)
        scorer = WorkerScorer("http://worker.local/analyze", client=client)

        assert await score_safely(scorer, "Stardew Valley", "1.5", CANDIDATES, timeout=1.0) == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_null_scorer_is_not_called(self):
        assert await score_safely(NullScorer(), "Stardew Valley", "1.5", CANDIDATES, timeout=1.0) == []


class TestBuildScorer:
    """Selection from configuration."""

    def test_disabled(self):
        assert isinstance(build_scorer(Settings(ai_scorer="none")), NullScorer)

    def test_worker(self):
        scorer = build_scorer(Settings(ai_scorer="worker", ai_worker_url="http://worker.local/analyze"))
        assert isinstance(scorer, WorkerScorer)

    def test_llm_without_key_falls_back(self):
        assert isinstance(build_scorer(Settings(ai_scorer="llm", openai_api_key="")), NullScorer)

    def test_llm(self):
        assert isinstance(build_scorer(Settings(ai_scorer="llm", openai_api_key="sk-test")), LLMScorer)
