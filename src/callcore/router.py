"""Tiered intent classification.

Tiers run cheapest first and the first acceptable answer wins:

    memory -> cache -> rule -> semantic -> generative

Every tier leaves a ``TierOutcome`` on the result, whether it matched,
fell below its threshold, was skipped (and why), failed or timed out.
Provider failures never escape ``classify``; the worst case is an explicit
"unknown, escalate" result.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from callcore.config import Scenario, TenantConfig
from callcore.errors import ClassificationTierFailure, PerformanceBudgetExceeded
from callcore.memory import MemoryStore
from callcore.providers import GenerativeClient, SemanticSearchClient
from callcore.validation import matched_keywords, normalize_utterance

logger = logging.getLogger(__name__)

TIER_MEMORY = "memory"
TIER_CACHE = "cache"
TIER_RULE = "rule"
TIER_SEMANTIC = "semantic"
TIER_GENERATIVE = "generative"
TIER_NONE = "none"

MATCHED = "matched"
BELOW_THRESHOLD = "below_threshold"
NO_MATCH = "no_match"
SKIPPED = "skipped"
FAILED = "failed"
TIMEOUT = "timeout"

UNKNOWN_RESPONSE = (
    "I understand you're looking for information. "
    "Let me connect you with someone who can help you better."
)


@dataclass
class TierOutcome:
    tier: str
    status: str
    reason: str = ""
    confidence: float = 0.0
    latency_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "status": self.status,
            "reason": self.reason,
            "confidence": round(self.confidence, 3),
            "latency_ms": round(self.latency_ms, 1),
        }


@dataclass
class ClassificationResult:
    tier: str
    scenario_id: str = ""
    category: str = ""
    intent: str = ""
    response: str = ""
    action: str = ""
    confidence: float = 0.0
    latency_ms: float = 0.0
    escalate: bool = False
    outcomes: list = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.tier != TIER_NONE

    def to_dict(self) -> dict:
        """The cacheable part of the result (no timings, no trace)."""
        return {
            "scenario_id": self.scenario_id,
            "category": self.category,
            "intent": self.intent,
            "response": self.response,
            "action": self.action,
            "confidence": self.confidence,
        }

    @classmethod
    def from_cached(cls, tier: str, data: dict) -> "ClassificationResult":
        return cls(
            tier=tier,
            scenario_id=data.get("scenario_id", ""),
            category=data.get("category", ""),
            intent=data.get("intent", ""),
            response=data.get("response", ""),
            action=data.get("action", ""),
            confidence=float(data.get("confidence", 0.0)),
        )

    @classmethod
    def from_scenario(cls, tier: str, scenario: Scenario, confidence: float) -> "ClassificationResult":
        return cls(
            tier=tier,
            scenario_id=scenario.scenario_id,
            category=scenario.category,
            intent=scenario.intent,
            response=scenario.response,
            action=scenario.action,
            confidence=confidence,
        )


@dataclass
class RouterContext:
    tenant_id: str
    config: TenantConfig
    caller_id: str = ""
    last_intent: str = ""


@dataclass
class TierAttempt:
    outcome: TierOutcome
    result: Optional[ClassificationResult] = None
    candidate: Optional[ClassificationResult] = None


def score_scenario(text: str, scenario: Scenario) -> float:
    """Deterministic keyword score in [0, 1].

    Each matched keyword adds 0.15 on top of a 0.55 base; a multi-word
    phrase counts double. Any negative keyword zeroes the score.
    """
    if not scenario.enabled or not scenario.keywords:
        return 0.0
    if scenario.negative_keywords and matched_keywords(text, scenario.negative_keywords):
        return 0.0
    hits = matched_keywords(text, scenario.keywords)
    if not hits:
        return 0.0
    weight = sum(2 if " " in kw else 1 for kw in hits)
    return min(1.0, round(0.55 + 0.15 * weight, 4))


class IntentRouter:
    def __init__(
        self,
        memory: MemoryStore | None = None,
        semantic: SemanticSearchClient | None = None,
        generative: GenerativeClient | None = None,
    ):
        self.memory = memory
        self.semantic = semantic
        self.generative = generative
        self._background: set = set()

    def _tiers(self):
        return (
            (TIER_MEMORY, self._memory_tier),
            (TIER_CACHE, self._cache_tier),
            (TIER_RULE, self._rule_tier),
            (TIER_SEMANTIC, self._semantic_tier),
            (TIER_GENERATIVE, self._generative_tier),
        )

    async def classify(self, utterance: str, context: RouterContext) -> ClassificationResult:
        start = time.monotonic()
        deadline = start + context.config.turn_budget_ms / 1000
        normalized = normalize_utterance(utterance)
        outcomes = []
        best: Optional[ClassificationResult] = None
        budget_exhausted = False

        for name, tier in self._tiers():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                budget_exhausted = True
                outcomes.append(TierOutcome(name, SKIPPED, "turn_budget_exhausted"))
                continue

            t0 = time.monotonic()
            try:
                attempt = await tier(utterance, normalized, context, remaining)
            except ClassificationTierFailure as e:
                attempt = TierAttempt(TierOutcome(name, FAILED, e.reason))
            except asyncio.TimeoutError:
                attempt = TierAttempt(TierOutcome(name, TIMEOUT, f"no answer within {remaining * 1000:.0f}ms"))
            except Exception as e:
                logger.exception("%s tier raised unexpectedly", name)
                attempt = TierAttempt(TierOutcome(name, FAILED, f"unexpected: {e}"))
            attempt.outcome.latency_ms = (time.monotonic() - t0) * 1000
            outcomes.append(attempt.outcome)

            if attempt.result is not None:
                result = attempt.result
                result.outcomes = outcomes
                result.latency_ms = (time.monotonic() - start) * 1000
                logger.info(
                    "classified tenant=%s tier=%s scenario=%s confidence=%.2f in %.0fms",
                    context.tenant_id, result.tier, result.scenario_id, result.confidence, result.latency_ms,
                )
                self._remember(context, normalized, utterance, result)
                return result
            if attempt.candidate is not None and (best is None or attempt.candidate.confidence > best.confidence):
                best = attempt.candidate

        elapsed_ms = (time.monotonic() - start) * 1000
        if budget_exhausted and best is not None:
            logger.warning(
                "%s, returning best %s candidate %s (%.2f)",
                PerformanceBudgetExceeded("classification", elapsed_ms, context.config.turn_budget_ms),
                best.tier, best.scenario_id, best.confidence,
            )
            best.outcomes = outcomes
            best.latency_ms = elapsed_ms
            return best

        return ClassificationResult(
            tier=TIER_NONE,
            response=UNKNOWN_RESPONSE,
            escalate=True,
            latency_ms=elapsed_ms,
            outcomes=outcomes,
        )

    # ── Tiers ──

    async def _memory_tier(self, utterance, normalized, context: RouterContext, remaining: float) -> TierAttempt:
        if self.memory is None:
            return TierAttempt(TierOutcome(TIER_MEMORY, SKIPPED, "memory_unavailable"))
        if not context.caller_id:
            return TierAttempt(TierOutcome(TIER_MEMORY, SKIPPED, "unknown_caller"))
        if not context.last_intent:
            return TierAttempt(TierOutcome(TIER_MEMORY, SKIPPED, "no_known_intent"))

        scenario, score = self._known_intent_evidence(utterance, context)
        if scenario is None:
            return TierAttempt(TierOutcome(TIER_MEMORY, NO_MATCH, "utterance_not_about_known_intent"))

        successes, last = await asyncio.wait_for(
            self.memory.caller_history(context.tenant_id, context.caller_id, context.last_intent),
            timeout=remaining,
        )
        needed = context.config.memory_skip_min_successes
        if successes >= needed:
            confidence = max(score, float((last or {}).get("confidence", 0.0) or 0.0))
            result = ClassificationResult.from_scenario(TIER_MEMORY, scenario, confidence)
            return TierAttempt(TierOutcome(TIER_MEMORY, MATCHED, f"{successes} prior successes", confidence), result)
        return TierAttempt(TierOutcome(TIER_MEMORY, NO_MATCH, f"{successes}/{needed} prior successes"))

    @staticmethod
    def _known_intent_evidence(utterance: str, context: RouterContext) -> tuple:
        """The best keyword-scored scenario for the caller's known intent.

        Only counts when no scenario for another intent scores higher on
        this utterance.
        """
        best_other = 0.0
        candidate, candidate_score = None, 0.0
        for scenario in context.config.scenarios:
            score = score_scenario(utterance, scenario)
            if scenario.intent == context.last_intent:
                if score > candidate_score:
                    candidate, candidate_score = scenario, score
            else:
                best_other = max(best_other, score)
        if candidate is None or candidate_score < best_other:
            return None, 0.0
        return candidate, candidate_score

    async def _cache_tier(self, utterance, normalized, context: RouterContext, remaining: float) -> TierAttempt:
        if self.memory is None:
            return TierAttempt(TierOutcome(TIER_CACHE, SKIPPED, "memory_unavailable"))
        cached = await asyncio.wait_for(
            self.memory.cached_response(context.tenant_id, normalized),
            timeout=remaining,
        )
        if not cached:
            return TierAttempt(TierOutcome(TIER_CACHE, NO_MATCH, "not_cached"))
        if not self._still_served(cached, context.config):
            return TierAttempt(TierOutcome(TIER_CACHE, NO_MATCH, "stale_scenario"))
        scenario = context.config.scenario(cached.get("scenario_id") or "")
        confidence = float(cached.get("confidence", 0.0) or 0.0)
        if scenario is not None:
            # current scenario text wins over whatever was cached
            result = ClassificationResult.from_scenario(TIER_CACHE, scenario, confidence)
        else:
            result = ClassificationResult.from_cached(TIER_CACHE, cached)
        return TierAttempt(TierOutcome(TIER_CACHE, MATCHED, "exact_utterance", result.confidence), result)

    async def _rule_tier(self, utterance, normalized, context: RouterContext, remaining: float) -> TierAttempt:
        config = context.config
        t0 = time.monotonic()
        best_scenario, best_score = None, 0.0
        for scenario in config.scenarios:
            score = score_scenario(utterance, scenario)
            if score > best_score:
                best_scenario, best_score = scenario, score
        elapsed_ms = (time.monotonic() - t0) * 1000
        if elapsed_ms > config.rule_budget_ms:
            logger.warning("%s", PerformanceBudgetExceeded("rule tier", elapsed_ms, config.rule_budget_ms))

        if best_scenario is None:
            return TierAttempt(TierOutcome(TIER_RULE, NO_MATCH, "no_keyword_hits"))
        result = ClassificationResult.from_scenario(TIER_RULE, best_scenario, best_score)
        if best_score >= config.rule_threshold:
            return TierAttempt(TierOutcome(TIER_RULE, MATCHED, best_scenario.scenario_id, best_score), result)
        return TierAttempt(
            TierOutcome(TIER_RULE, BELOW_THRESHOLD, f"{best_score:.2f} < {config.rule_threshold:.2f}", best_score),
            candidate=result,
        )

    async def _semantic_tier(self, utterance, normalized, context: RouterContext, remaining: float) -> TierAttempt:
        if self.semantic is None:
            return TierAttempt(TierOutcome(TIER_SEMANTIC, SKIPPED, "no_provider"))
        config = context.config
        timeout = min(config.semantic_timeout_ms / 1000, remaining)
        candidates = await asyncio.wait_for(self.semantic.search(context.tenant_id, utterance), timeout=timeout)

        for candidate in candidates:
            scenario = config.scenario(candidate.scenario_id)
            if scenario is None or not scenario.enabled:
                continue
            result = ClassificationResult.from_scenario(TIER_SEMANTIC, scenario, candidate.score)
            if candidate.score >= config.semantic_threshold:
                return TierAttempt(TierOutcome(TIER_SEMANTIC, MATCHED, scenario.scenario_id, candidate.score), result)
            return TierAttempt(
                TierOutcome(
                    TIER_SEMANTIC, BELOW_THRESHOLD,
                    f"{candidate.score:.2f} < {config.semantic_threshold:.2f}", candidate.score,
                ),
                candidate=result,
            )
        return TierAttempt(TierOutcome(TIER_SEMANTIC, NO_MATCH, "no_known_candidates"))

    async def _generative_tier(self, utterance, normalized, context: RouterContext, remaining: float) -> TierAttempt:
        config = context.config
        if not config.generative_enabled:
            return TierAttempt(TierOutcome(TIER_GENERATIVE, SKIPPED, "disabled_for_tenant"))
        if self.generative is None:
            return TierAttempt(TierOutcome(TIER_GENERATIVE, SKIPPED, "no_provider"))

        timeout = min(config.generative_timeout_ms / 1000, remaining)
        prompt_context = {
            "tenant_id": context.tenant_id,
            "last_intent": context.last_intent,
            "scenarios": [
                {"scenario_id": s.scenario_id, "category": s.category, "intent": s.intent}
                for s in config.scenarios if s.enabled
            ],
        }
        parsed = await asyncio.wait_for(self.generative.complete(utterance, prompt_context), timeout=timeout)

        scenario = config.scenario(parsed.get("scenario_id") or "")
        if scenario is not None and scenario.enabled:
            result = ClassificationResult.from_scenario(
                TIER_GENERATIVE, scenario, float(parsed.get("confidence", 0.0) or 0.0)
            )
            if parsed.get("response"):
                result.response = parsed["response"]
        else:
            result = ClassificationResult(
                tier=TIER_GENERATIVE,
                category=str(parsed.get("category") or "GENERAL").upper(),
                intent=parsed.get("intent", ""),
                response=parsed.get("response", ""),
                confidence=float(parsed.get("confidence", 0.0) or 0.0),
            )
        if not result.response:
            return TierAttempt(TierOutcome(TIER_GENERATIVE, NO_MATCH, "empty_completion"))
        return TierAttempt(TierOutcome(TIER_GENERATIVE, MATCHED, result.intent or "completion", result.confidence), result)

    @staticmethod
    def _still_served(data: dict, config: TenantConfig) -> bool:
        """A remembered answer is reusable only while its scenario is still enabled."""
        scenario_id = data.get("scenario_id")
        if not scenario_id:
            return bool(data.get("response"))
        scenario = config.scenario(scenario_id)
        return scenario is not None and scenario.enabled

    # ── Background memory updates ──

    def _remember(self, context: RouterContext, normalized: str, utterance: str, result: ClassificationResult):
        if self.memory is None:
            return
        self._spawn(self._safe_record(context, normalized, utterance, result))

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _safe_record(self, context: RouterContext, normalized: str, utterance: str, result: ClassificationResult):
        """Fold a success into memory. Failures are logged, never raised."""
        try:
            cache_key = "" if result.tier == TIER_CACHE else normalized
            await self.memory.record_success(context.tenant_id, context.caller_id, cache_key, result.to_dict())
            if result.tier == TIER_GENERATIVE:
                await self.memory.record_suggestion(context.tenant_id, utterance, result.to_dict())
        except Exception as e:
            logger.error(f"memory update failed: {e}")

    async def drain(self):
        """Wait for in-flight memory updates (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
