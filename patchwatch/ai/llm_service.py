"""OpenAI client wrapper with a Redis response cache and daily cost cap."""

import hashlib
import json
import logging
from datetime import date
from typing import Any, Dict, Optional

import redis.asyncio as redis
from openai import AsyncOpenAI

from patchwatch.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class LLMUnavailableError(RuntimeError):
    """Raised when the LLM cannot be called (no key, cost cap reached)."""

    pass


class LLMService:
    """
    Service for LLM interactions with OpenAI.

    Features:
    - Structured JSON output
    - Redis response cache, keyed by prompt and model
    - Daily cost tracking with a hard cap
    """

    def __init__(self, config: Settings = default_settings):
        self.settings = config
        self._client: Optional[AsyncOpenAI] = None
        self._redis: Optional[redis.Redis] = None
        self._daily_cost: float = 0.0
        self._cost_day: date = date.today()
        self._call_count: int = 0

    async def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.settings.openai_api_key:
                raise LLMUnavailableError("OpenAI API key not configured")
            self._client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._client

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get or create the Redis cache connection; None when caching is off or unreachable."""
        if not self.settings.llm_cache_enabled:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            except Exception as e:
                logger.warning(f"Failed to connect to Redis for LLM cache: {e}")
                return None
        return self._redis

    def _get_cache_key(self, prompt: str, system_prompt: str, model: str) -> str:
        combined = f"{system_prompt}:{prompt}:{model}"
        return f"patchwatch:llm:{hashlib.sha256(combined.encode('utf-8')).hexdigest()}"

    def _check_cost_limit(self) -> None:
        today = date.today()
        if today != self._cost_day:
            self.reset_daily_stats()
            self._cost_day = today

        if not self.settings.track_llm_costs:
            return
        if self._daily_cost >= self.settings.llm_cost_limit_per_day:
            raise LLMUnavailableError(
                f"Daily LLM cost limit reached: ${self._daily_cost:.2f} >= "
                f"${self.settings.llm_cost_limit_per_day:.2f}"
            )

    def _estimate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Rough per-call cost in USD (mini models vs full-size)."""
        if "mini" in model.lower():
            return prompt_tokens / 1000 * 0.00015 + completion_tokens / 1000 * 0.0006
        return prompt_tokens / 1000 * 0.0025 + completion_tokens / 1000 * 0.01

    async def _cache_get(self, key: str) -> Optional[str]:
        client = await self._get_redis()
        if client is None:
            return None
        try:
            return await client.get(key)
        except Exception as e:
            logger.warning(f"LLM cache read failed: {e}")
            return None

    async def _cache_set(self, key: str, value: str) -> None:
        client = await self._get_redis()
        if client is None:
            return
        try:
            await client.setex(key, self.settings.llm_cache_ttl_seconds, value)
        except Exception as e:
            logger.warning(f"LLM cache write failed: {e}")

    async def call_llm(self, prompt: str, system_prompt: str = "", use_cache: bool = True) -> str:
        """
        Call the LLM with a prompt and return the text response.

        Args:
            prompt: User prompt
            system_prompt: System instructions
            use_cache: Whether to read and write the Redis cache

        Returns:
            Response text (empty string when the model returned no content)

        Raises:
            LLMUnavailableError: No API key, or the daily cost cap is reached
        """
        model = self.settings.llm_model
        self._check_cost_limit()

        cache_key = self._get_cache_key(prompt, system_prompt, model)
        if use_cache:
            cached = await self._cache_get(cache_key)
            if cached:
                logger.debug(f"LLM cache hit for prompt: {prompt[:50]}...")
                return cached

        client = await self._get_client()
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self.settings.llm_temperature,
                max_tokens=self.settings.llm_max_tokens,
                timeout=self.settings.llm_timeout_seconds,
            )
        except Exception as e:
            logger.error(f"LLM API call failed: {e}")
            raise

        result = response.choices[0].message.content or ""
        self._call_count += 1

        if self.settings.track_llm_costs and response.usage is not None:
            cost = self._estimate_cost(
                model, response.usage.prompt_tokens, response.usage.completion_tokens
            )
            self._daily_cost += cost
            logger.debug(f"LLM call cost: ${cost:.4f} (total today: ${self._daily_cost:.2f})")

        if use_cache and result:
            await self._cache_set(cache_key, result)

        return result

    async def call_llm_structured(
        self,
        prompt: str,
        response_schema: Dict[str, Any],
        system_prompt: str = "",
    ) -> Dict[str, Any]:
        """
        Call the LLM and parse a JSON object response.

        Raises:
            ValueError: The response was not valid JSON
        """
        enhanced_system = system_prompt + "\n\n" if system_prompt else ""
        enhanced_system += (
            f"Respond with valid JSON matching this schema: {json.dumps(response_schema, indent=2)}\n"
            "Return only the JSON object, no additional text."
        )

        response_text = (await self.call_llm(prompt, enhanced_system)).strip()
        if response_text.startswith("```json"):
            response_text = response_text[7:]
        if response_text.startswith("```"):
            response_text = response_text[3:]
        if response_text.endswith("```"):
            response_text = response_text[:-3]
        response_text = response_text.strip()

        try:
            return json.loads(response_text)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse LLM JSON response: {e}\nResponse: {response_text[:200]}")
            raise ValueError(f"Invalid JSON response from LLM: {e}") from e

    def get_stats(self) -> Dict[str, Any]:
        return {
            "call_count": self._call_count,
            "daily_cost": self._daily_cost,
            "cost_limit": self.settings.llm_cost_limit_per_day,
            "cache_enabled": self.settings.llm_cache_enabled,
        }

    def reset_daily_stats(self):
        """Reset daily cost and call count."""
        self._daily_cost = 0.0
        self._call_count = 0
        logger.info("LLM daily stats reset")

    async def close(self):
        """Close connections."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        if self._client:
            await self._client.close()
            self._client = None
