"""Outbound classification providers for the semantic and generative tiers.

Both raise ``ClassificationTierFailure`` on any transport, status or
parsing problem; the router treats that as "no match at this tier".
Per-call deadlines are applied by the router with ``asyncio.wait_for`` so
a slow provider is cancelled rather than stalling the turn.
"""

import json
import logging
from dataclasses import dataclass

import httpx

from callcore.circuit_breaker import CircuitBreaker
from callcore.errors import ClassificationTierFailure

logger = logging.getLogger(__name__)

GENERATIVE_PROMPT = """You classify a caller's request for a home-services business.
Return ONLY valid JSON with these fields:
- scenario_id: the id of the best matching scenario from the list, or "" if none fits
- intent: a short snake_case label for what the caller wants
- category: the scenario's category, or "GENERAL"
- response: one or two short sentences the receptionist could say next
- confidence: a number between 0 and 1

Never quote prices. Never promise an arrival time."""


@dataclass(frozen=True)
class SearchCandidate:
    scenario_id: str
    score: float


class SemanticSearchClient:
    """Embedding search over a tenant's scenario catalog."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=30.0,
            label="semantic search",
        )
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def search(self, tenant_id: str, text: str, top_k: int = 3) -> list[SearchCandidate]:
        """Ranked candidates, best first."""
        if not self._circuit.should_try():
            raise ClassificationTierFailure("semantic", "circuit open")
        try:
            resp = await self._client.post(
                "/search",
                json={"tenant_id": tenant_id, "text": text, "top_k": top_k},
            )
            resp.raise_for_status()
            candidates = [
                SearchCandidate(scenario_id=c["scenario_id"], score=float(c["score"]))
                for c in resp.json().get("candidates", [])
            ]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            self._circuit.record_failure()
            logger.error("semantic search failed: %s", e)
            raise ClassificationTierFailure("semantic", str(e)) from e
        self._circuit.record_success()
        return sorted(candidates, key=lambda c: c.score, reverse=True)


class GenerativeClient:
    """Chat-completions call returning a structured intent.

    Carries real per-call cost; the router only reaches it when every
    cheaper tier came up empty and the tenant has it enabled.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="generative fallback",
        )
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=base_url.rstrip("/"),
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def complete(self, prompt: str, context: dict) -> dict:
        if not self._circuit.should_try():
            raise ClassificationTierFailure("generative", "circuit open")
        try:
            resp = await self._client.post(
                "/chat/completions",
                json={
                    "model": self.model,
                    "temperature": 0.1,
                    "response_format": {"type": "json_object"},
                    "messages": [
                        {"role": "system", "content": GENERATIVE_PROMPT},
                        {"role": "system", "content": json.dumps(context)},
                        {"role": "user", "content": prompt},
                    ],
                },
            )
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            self._circuit.record_failure()
            logger.error(f"generative completion failed: {e}")
            raise ClassificationTierFailure("generative", str(e)) from e
        self._circuit.record_success()
        if not isinstance(parsed, dict):
            raise ClassificationTierFailure("generative", "completion was not a JSON object")
        return parsed
