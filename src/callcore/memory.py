"""Per-tenant memory aggregates that let the router skip expensive tiers.

Three record kinds, all increment-only or last-write-wins in redis:

- caller intent history: ``HINCRBY mem:{tenant}:caller:{caller}  {intent}``
- resolution path: ``HINCRBY mem:{tenant}:path:{intent}:{category}:{scenario}``
  with ``attempts`` and ``successes`` fields
- response cache: ``SET mem:{tenant}:response:{digest}`` holding the
  classification that answered a normalized utterance

Nothing here is required for a correct turn. Reads return empty values
and writes log and return when the fast cache is down.
"""

import hashlib
import json
import logging
import time
from typing import Optional

from callcore.cache import FastCache
from callcore.errors import SessionStoreUnavailable
from callcore.store import DocumentStore

logger = logging.getLogger(__name__)

RESPONSE_CACHE_TTL = 7 * 24 * 3600


def utterance_digest(normalized: str) -> str:
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()


class MemoryStore:
    def __init__(self, cache: FastCache, store: DocumentStore | None = None):
        self.cache = cache
        self.store = store

    def _caller_key(self, tenant_id: str, caller_id: str) -> str:
        return f"mem:{tenant_id}:caller:{caller_id}"

    def _path_key(self, tenant_id: str, intent: str, category: str, scenario_id: str) -> str:
        return f"mem:{tenant_id}:path:{intent}:{category}:{scenario_id}"

    def _response_key(self, tenant_id: str, normalized: str) -> str:
        return f"mem:{tenant_id}:response:{utterance_digest(normalized)}"

    # ── Reads ──

    async def caller_history(self, tenant_id: str, caller_id: str, intent: str) -> tuple[int, Optional[dict]]:
        """Successes for this caller+intent and the last result that served it."""
        if not caller_id or not intent:
            return 0, None
        try:
            raw = await self.cache.hgetall(self._caller_key(tenant_id, caller_id))
        except SessionStoreUnavailable:
            return 0, None
        successes = int(raw.get(intent, 0) or 0)
        last = raw.get(f"{intent}:result")
        return successes, json.loads(last) if last else None

    async def cached_response(self, tenant_id: str, normalized: str) -> Optional[dict]:
        if not normalized:
            return None
        try:
            raw = await self.cache.get(self._response_key(tenant_id, normalized))
        except SessionStoreUnavailable:
            return None
        return json.loads(raw) if raw else None

    async def resolution_rate(self, tenant_id: str, intent: str, category: str, scenario_id: str) -> Optional[float]:
        try:
            raw = await self.cache.hgetall(self._path_key(tenant_id, intent, category, scenario_id))
        except SessionStoreUnavailable:
            return None
        attempts = int(raw.get("attempts", 0) or 0)
        if attempts == 0:
            return None
        return int(raw.get("successes", 0) or 0) / attempts

    # ── Writes ──

    async def record_success(self, tenant_id: str, caller_id: str, normalized: str, result: dict) -> None:
        """Fold one successful classification into all three aggregates."""
        intent = result.get("intent", "")
        try:
            if caller_id and intent:
                key = self._caller_key(tenant_id, caller_id)
                await self.cache.hincrby(key, intent, 1)
                await self.cache.hset(key, f"{intent}:result", json.dumps(result))
            if intent and result.get("scenario_id"):
                await self.cache.hincrby(
                    self._path_key(tenant_id, intent, result.get("category", ""), result["scenario_id"]),
                    "attempts",
                    1,
                )
            if normalized and result.get("response"):
                await self.cache.set(
                    self._response_key(tenant_id, normalized),
                    json.dumps(result),
                    RESPONSE_CACHE_TTL,
                )
        except SessionStoreUnavailable as e:
            logger.warning("memory update skipped for tenant %s: %s", tenant_id, e)

    async def record_outcome(self, tenant_id: str, path: dict, success: bool) -> None:
        """Count a call-level success against the scenario path that served it."""
        if not success:
            return
        try:
            await self.cache.hincrby(
                self._path_key(tenant_id, path.get("intent", ""), path.get("category", ""), path.get("scenario_id", "")),
                "successes",
                1,
            )
        except SessionStoreUnavailable as e:
            logger.warning("resolution outcome skipped for tenant %s: %s", tenant_id, e)

    async def record_suggestion(self, tenant_id: str, utterance: str, result: dict) -> None:
        """Write a candidate keyword suggestion for human review.

        Only generative-tier answers produce suggestions; nothing in the
        hot path ever reads them back.
        """
        if self.store is None:
            return
        digest = utterance_digest(utterance.lower())
        try:
            await self.store.put(
                tenant_id,
                f"suggestion:{digest}",
                {
                    "status": "pending_review",
                    "utterance": utterance,
                    "intent": result.get("intent", ""),
                    "scenario_id": result.get("scenario_id", ""),
                    "category": result.get("category", ""),
                    "confidence": result.get("confidence", 0.0),
                    "created_at": time.time(),
                },
            )
        except SessionStoreUnavailable as e:
            logger.warning("suggestion write skipped for tenant %s: %s", tenant_id, e)
