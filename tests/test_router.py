import asyncio
import dataclasses
import json
import time

import pytest

from callcore.memory import MemoryStore
from callcore.providers import SearchCandidate
from callcore.router import (
    BELOW_THRESHOLD,
    FAILED,
    NO_MATCH,
    SKIPPED,
    TIER_CACHE,
    TIER_GENERATIVE,
    TIER_MEMORY,
    TIER_NONE,
    TIER_RULE,
    TIER_SEMANTIC,
    TIMEOUT,
    UNKNOWN_RESPONSE,
    IntentRouter,
    RouterContext,
    score_scenario,
)
from callcore.validation import normalize_utterance
from conftest import AC_DOWN, HOURS, FakeDocumentStore, FakeFastCache, StubGenerative, StubSemantic


CALLER = "+15125551234"


def ctx(config, caller_id="", last_intent=""):
    return RouterContext(tenant_id="acme", config=config, caller_id=caller_id, last_intent=last_intent)


def statuses(result):
    return {o.tier: o.status for o in result.outcomes}


class SlowSemantic:
    """Blocks the event loop past the turn budget, then finds nothing."""

    def __init__(self, seconds):
        self.seconds = seconds

    async def search(self, tenant_id, text, top_k=3):
        time.sleep(self.seconds)
        return []


class HangingSemantic:
    async def search(self, tenant_id, text, top_k=3):
        await asyncio.sleep(5)
        return []


class ExplodingMemory:
    async def caller_history(self, tenant_id, caller_id, intent):
        raise RuntimeError("boom")

    async def cached_response(self, tenant_id, normalized):
        raise RuntimeError("boom")

    async def record_success(self, *args):
        raise RuntimeError("boom")


class TestScoreScenario:
    def test_single_keyword(self):
        assert score_scenario("what are your hours", HOURS) == 0.7

    def test_two_keywords_clear_the_rule_threshold(self):
        assert score_scenario("what are your hours, are you open", HOURS) == 0.85

    def test_phrase_counts_double(self):
        assert score_scenario("what's your closing time", HOURS) == 0.85

    def test_negative_keyword_vetoes(self):
        scenario = dataclasses.replace(HOURS, negative_keywords=("holiday",))
        assert score_scenario("are you open on the holiday", scenario) == 0.0

    def test_scenario_without_keywords_never_scores(self):
        assert score_scenario("my AC is down", AC_DOWN) == 0.0


class TestTierOrder:
    @pytest.mark.asyncio
    async def test_rule_match_stops_before_semantic(self, config):
        semantic = StubSemantic([SearchCandidate("ac-down", 0.99)])
        router = IntentRouter(semantic=semantic)
        result = await router.classify("what are your hours, are you open", ctx(config))
        assert result.tier == TIER_RULE
        assert result.scenario_id == "hours"
        assert result.confidence == 0.85
        assert semantic.calls == 0
        assert [o.tier for o in result.outcomes] == [TIER_MEMORY, TIER_CACHE, TIER_RULE]

    @pytest.mark.asyncio
    async def test_rule_below_threshold_falls_to_semantic(self, config):
        semantic = StubSemantic([SearchCandidate("hours", 0.9)])
        router = IntentRouter(semantic=semantic)
        result = await router.classify("what are your hours", ctx(config))
        assert result.tier == TIER_SEMANTIC
        assert result.confidence == 0.9
        assert statuses(result)[TIER_RULE] == BELOW_THRESHOLD

    @pytest.mark.asyncio
    async def test_semantic_below_threshold_is_not_a_match(self, config):
        router = IntentRouter(semantic=StubSemantic([SearchCandidate("ac-down", 0.5)]))
        result = await router.classify("the thing is doing the thing", ctx(config))
        assert result.tier == TIER_NONE
        assert statuses(result)[TIER_SEMANTIC] == BELOW_THRESHOLD

    @pytest.mark.asyncio
    async def test_semantic_candidate_for_unknown_scenario_ignored(self, config):
        router = IntentRouter(semantic=StubSemantic([SearchCandidate("deleted", 0.95)]))
        result = await router.classify("hello", ctx(config))
        assert statuses(result)[TIER_SEMANTIC] == NO_MATCH

    @pytest.mark.asyncio
    async def test_every_tier_leaves_an_outcome(self, config):
        router = IntentRouter()
        result = await router.classify("hello", ctx(config))
        assert [o.tier for o in result.outcomes] == [
            TIER_MEMORY, TIER_CACHE, TIER_RULE, TIER_SEMANTIC, TIER_GENERATIVE,
        ]
        assert statuses(result) == {
            TIER_MEMORY: SKIPPED,
            TIER_CACHE: SKIPPED,
            TIER_RULE: NO_MATCH,
            TIER_SEMANTIC: SKIPPED,
            TIER_GENERATIVE: SKIPPED,
        }


class TestGenerativeTier:
    @pytest.mark.asyncio
    async def test_disabled_for_tenant_is_never_called(self, config):
        generative = StubGenerative({"intent": "x", "response": "y", "confidence": 0.9})
        router = IntentRouter(generative=generative)
        result = await router.classify("is my unit under warranty", ctx(config))
        assert generative.calls == 0
        outcome = result.outcomes[-1]
        assert outcome.status == SKIPPED
        assert outcome.reason == "disabled_for_tenant"
        assert result.tier == TIER_NONE
        assert result.escalate is True
        assert result.response == UNKNOWN_RESPONSE

    @pytest.mark.asyncio
    async def test_used_when_cheaper_tiers_miss(self, config):
        config = dataclasses.replace(config, generative_enabled=True)
        generative = StubGenerative({
            "scenario_id": "",
            "intent": "warranty_question",
            "category": "general",
            "response": "Let me have someone check your warranty.",
            "confidence": 0.6,
        })
        router = IntentRouter(generative=generative)
        result = await router.classify("is my unit under warranty", ctx(config))
        assert result.tier == TIER_GENERATIVE
        assert result.category == "GENERAL"
        assert result.intent == "warranty_question"

    @pytest.mark.asyncio
    async def test_known_scenario_id_uses_scenario(self, config):
        config = dataclasses.replace(config, generative_enabled=True)
        router = IntentRouter(generative=StubGenerative({"scenario_id": "ac-down", "confidence": 0.7}))
        result = await router.classify("it's blowing hot air", ctx(config))
        assert result.scenario_id == "ac-down"
        assert result.response == AC_DOWN.response

    @pytest.mark.asyncio
    async def test_empty_completion_is_no_match(self, config):
        config = dataclasses.replace(config, generative_enabled=True)
        router = IntentRouter(generative=StubGenerative({"intent": "x"}))
        result = await router.classify("hmm", ctx(config))
        assert result.tier == TIER_NONE
        assert statuses(result)[TIER_GENERATIVE] == NO_MATCH


class TestFailures:
    @pytest.mark.asyncio
    async def test_semantic_failure_falls_through_to_generative(self, config):
        config = dataclasses.replace(config, generative_enabled=True)
        router = IntentRouter(
            semantic=StubSemantic(error="503 from search"),
            generative=StubGenerative({"intent": "other", "response": "Happy to help.", "confidence": 0.5}),
        )
        result = await router.classify("hello there", ctx(config))
        assert result.tier == TIER_GENERATIVE
        failed = result.outcomes[3]
        assert failed.tier == TIER_SEMANTIC
        assert failed.status == FAILED
        assert failed.reason == "503 from search"

    @pytest.mark.asyncio
    async def test_semantic_timeout(self, config):
        config = dataclasses.replace(config, semantic_timeout_ms=20)
        router = IntentRouter(semantic=HangingSemantic())
        result = await router.classify("hello", ctx(config))
        assert statuses(result)[TIER_SEMANTIC] == TIMEOUT
        assert result.tier == TIER_NONE

    @pytest.mark.asyncio
    async def test_unexpected_errors_never_escape(self, config):
        router = IntentRouter(memory=ExplodingMemory())
        result = await router.classify("what are your hours", ctx(config, CALLER, "business_hours"))
        assert result.tier == TIER_NONE
        assert statuses(result)[TIER_MEMORY] == FAILED
        assert statuses(result)[TIER_CACHE] == FAILED

    @pytest.mark.asyncio
    async def test_budget_exhausted_returns_best_candidate(self, config):
        config = dataclasses.replace(config, turn_budget_ms=50)
        router = IntentRouter(semantic=SlowSemantic(0.1))
        result = await router.classify("what are your hours", ctx(config))
        assert result.tier == TIER_RULE
        assert result.scenario_id == "hours"
        assert result.confidence == 0.7
        generative = result.outcomes[-1]
        assert generative.status == SKIPPED
        assert generative.reason == "turn_budget_exhausted"


class TestMemoryTiers:
    @staticmethod
    def keyed_config(config):
        ac_down = dataclasses.replace(AC_DOWN, keywords=("ac", "not cooling"))
        return dataclasses.replace(config, scenarios=(ac_down, HOURS))

    @staticmethod
    def history(successes, response=AC_DOWN.response):
        cache = FakeFastCache()
        cache.hashes[f"mem:acme:caller:{CALLER}"] = {
            "ac_not_working": str(successes),
            "ac_not_working:result": json.dumps({
                "scenario_id": "ac-down", "category": "TROUBLESHOOT", "intent": "ac_not_working",
                "response": response, "action": "", "confidence": 0.89,
            }),
        }
        return cache

    @pytest.mark.asyncio
    async def test_caller_history_skips_classification(self, config):
        config = self.keyed_config(config)
        semantic = StubSemantic([SearchCandidate("hours", 0.99)])
        router = IntentRouter(memory=MemoryStore(self.history(3, response="yesterday's wording")), semantic=semantic)
        result = await router.classify("the ac is acting up again", ctx(config, CALLER, "ac_not_working"))
        await router.drain()
        assert result.tier == TIER_MEMORY
        assert result.scenario_id == "ac-down"
        assert result.confidence == 0.89
        assert result.response == AC_DOWN.response
        assert semantic.calls == 0

    @pytest.mark.asyncio
    async def test_new_question_from_known_caller_is_classified(self, config):
        config = self.keyed_config(config)
        router = IntentRouter(memory=MemoryStore(self.history(5)))
        result = await router.classify("what hours are you open", ctx(config, CALLER, "ac_not_working"))
        await router.drain()
        assert statuses(result)[TIER_MEMORY] == NO_MATCH
        assert result.tier == TIER_RULE
        assert result.scenario_id == "hours"

    @pytest.mark.asyncio
    async def test_unrelated_utterance_is_not_memory_matched(self, config):
        router = IntentRouter(memory=MemoryStore(self.history(5)))
        result = await router.classify("it's doing it again", ctx(config, CALLER, "ac_not_working"))
        await router.drain()
        assert statuses(result)[TIER_MEMORY] == NO_MATCH
        assert result.tier == TIER_NONE

    @pytest.mark.asyncio
    async def test_too_few_successes_is_no_match(self, config):
        config = self.keyed_config(config)
        router = IntentRouter(memory=MemoryStore(self.history(2)))
        result = await router.classify("the ac is acting up again", ctx(config, CALLER, "ac_not_working"))
        await router.drain()
        assert statuses(result)[TIER_MEMORY] == NO_MATCH
        assert result.outcomes[0].reason == "2/3 prior successes"

    @pytest.mark.asyncio
    async def test_exact_utterance_cache_hit(self, config):
        cache = FakeFastCache()
        memory = MemoryStore(cache)
        await memory.record_success("acme", "", normalize_utterance("My AC is down!"), {
            "scenario_id": "ac-down", "category": "TROUBLESHOOT", "intent": "ac_not_working",
            "response": AC_DOWN.response, "action": "", "confidence": 0.89,
        })
        router = IntentRouter(memory=memory)
        result = await router.classify("my ac is down", ctx(config))
        await router.drain()
        assert result.tier == TIER_CACHE
        assert result.confidence == 0.89

    @pytest.mark.asyncio
    async def test_cache_hit_speaks_current_scenario_text(self, config):
        memory = MemoryStore(FakeFastCache())
        await memory.record_success("acme", "", normalize_utterance("what are your hours, are you open"), {
            "scenario_id": "hours", "category": "FAQ", "intent": "business_hours",
            "response": "We're open 8am to 5pm.", "action": "", "confidence": 0.85,
        })
        router = IntentRouter(memory=memory)
        result = await router.classify("What are your hours? Are you open?", ctx(config))
        await router.drain()
        assert result.tier == TIER_CACHE
        assert result.response == HOURS.response

    @pytest.mark.asyncio
    async def test_cached_answer_for_disabled_scenario_is_stale(self, config):
        cache = FakeFastCache()
        memory = MemoryStore(cache)
        await memory.record_success("acme", "", "my ac is down", {
            "scenario_id": "ac-down", "intent": "ac_not_working", "response": "old", "confidence": 0.9,
        })
        config = dataclasses.replace(config, scenarios=(HOURS,))
        router = IntentRouter(memory=memory)
        result = await router.classify("my ac is down", ctx(config))
        await router.drain()
        assert result.tier == TIER_NONE
        assert statuses(result)[TIER_CACHE] == NO_MATCH

    @pytest.mark.asyncio
    async def test_match_is_remembered_in_background(self, config):
        cache = FakeFastCache()
        router = IntentRouter(memory=MemoryStore(cache))
        await router.classify("what are your hours, are you open", ctx(config, caller_id=CALLER))
        await router.drain()
        assert cache.hashes[f"mem:acme:caller:{CALLER}"]["business_hours"] == "1"
        again = await router.classify("What are your hours? Are you open?", ctx(config))
        await router.drain()
        assert again.tier == TIER_CACHE

    @pytest.mark.asyncio
    async def test_generative_answer_becomes_suggestion(self, config):
        config = dataclasses.replace(config, generative_enabled=True)
        store = FakeDocumentStore()
        router = IntentRouter(
            memory=MemoryStore(FakeFastCache(), store),
            generative=StubGenerative({"intent": "warranty_question", "response": "Let me check.", "confidence": 0.6}),
        )
        await router.classify("is my unit under warranty", ctx(config))
        await router.drain()
        assert any(key.startswith("suggestion:") for _, key in store.puts)

    @pytest.mark.asyncio
    async def test_fast_cache_down_still_classifies(self, config):
        cache = FakeFastCache()
        cache.down = True
        router = IntentRouter(memory=MemoryStore(cache))
        result = await router.classify("what are your hours, are you open", ctx(config, CALLER, "business_hours"))
        await router.drain()
        assert result.tier == TIER_RULE
        assert statuses(result)[TIER_MEMORY] == NO_MATCH
        assert statuses(result)[TIER_CACHE] == NO_MATCH
