import pytest

from callcore.compiler import PolicyRegistry, build_artifact
from callcore.config import Scenario, TenantConfig
from callcore.errors import ClassificationTierFailure, SessionStoreUnavailable
from callcore.policy_engine import PolicyEngine
from callcore.providers import SearchCandidate
from callcore.router import IntentRouter
from callcore.rules import BehaviorRule, BehaviorStyle, EdgeCase, Guardrail, GuardrailKind, RuleSet, TransferRule
from callcore.session import CallSession
from callcore.state_machine import ConversationStateMachine

SCENARIO_A_UTTERANCE = "This is Mrs. Johnson, 123 Market St — AC is down,"


class FakeFastCache:
    """In-memory stand-in for FastCache. Set ``down`` to simulate an outage."""

    def __init__(self):
        self.data = {}
        self.hashes = {}
        self.down = False
        self.writes = []

    def _check(self):
        if self.down:
            raise SessionStoreUnavailable("fast cache down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ttl_seconds):
        self._check()
        self.writes.append(key)
        self.data[key] = value

    async def delete(self, key):
        self._check()
        self.data.pop(key, None)

    async def hincrby(self, key, field, amount=1):
        self._check()
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    async def hset(self, key, field, value):
        self._check()
        self.hashes.setdefault(key, {})[field] = value

    async def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))


class FakeDocumentStore:
    """In-memory stand-in for DocumentStore keyed by (tenant_id, key)."""

    def __init__(self):
        self.docs = {}
        self.down = False
        self.puts = []

    async def get(self, tenant_id, key):
        if self.down:
            raise SessionStoreUnavailable("document store down")
        return self.docs.get((tenant_id, key))

    async def put(self, tenant_id, key, document):
        if self.down:
            raise SessionStoreUnavailable("document store down")
        self.puts.append((tenant_id, key))
        self.docs[(tenant_id, key)] = document


class StubSemantic:
    """Semantic provider returning fixed candidates, or raising."""

    def __init__(self, candidates=(), error=None):
        self.candidates = list(candidates)
        self.error = error
        self.calls = 0

    async def search(self, tenant_id, text, top_k=3):
        self.calls += 1
        if self.error:
            raise ClassificationTierFailure("semantic", self.error)
        return list(self.candidates)


class StubGenerative:
    def __init__(self, reply=None, error=None):
        self.reply = reply or {}
        self.error = error
        self.calls = 0

    async def complete(self, prompt, context):
        self.calls += 1
        if self.error:
            raise ClassificationTierFailure("generative", self.error)
        return dict(self.reply)


AC_DOWN = Scenario(
    scenario_id="ac-down",
    category="TROUBLESHOOT",
    intent="ac_not_working",
    response="Sorry to hear the AC is out. While we get a tech lined up, check that the thermostat is set to cool and the breaker hasn't tripped.",
)

HOURS = Scenario(
    scenario_id="hours",
    category="FAQ",
    intent="business_hours",
    keywords=("hours", "open", "closing time"),
    response="We're open 7am to 7pm, Monday through Saturday.",
)


@pytest.fixture
def config():
    return TenantConfig(
        tenant_id="acme",
        company_name="ACE Cooling",
        scenarios=(AC_DOWN, HOURS),
        generative_enabled=False,
    )


@pytest.fixture
def session():
    return CallSession(call_id="call_1", tenant_id="acme", caller_id="+15125551234")


@pytest.fixture
def rule_set():
    return RuleSet(
        tenant_id="acme",
        rules=(
            EdgeCase(
                rule_id="gas-leak",
                patterns=(r"\bsmell gas\b", r"\bgas leak\b"),
                response="Please leave the house now and call 911 from outside.",
                action="HANGUP",
            ),
            TransferRule(
                rule_id="manager",
                patterns=(r"\bmanager\b", r"\bsupervisor\b"),
                target="+15125550100",
                script="Sure, connecting you with our manager now.",
            ),
            Guardrail(rule_id="no-prices", kind=GuardrailKind.NO_PRICES),
            Guardrail(rule_id="no-phones", kind=GuardrailKind.NO_PHONE_NUMBERS),
            BehaviorRule(
                rule_id="empathy",
                style=BehaviorStyle.ACKNOWLEDGE,
                text="I understand, and I'm sorry for the trouble.",
                when_flags=frozenset({"frustrated"}),
            ),
        ),
        variables={"company_name": "ACE Cooling", "phone": "(512) 555-0199", "service_fee": "$89"},
    )


@pytest.fixture
def artifact(rule_set):
    return build_artifact(rule_set, version=1)


@pytest.fixture
def registry():
    return PolicyRegistry()


@pytest.fixture
def policy_engine(registry):
    return PolicyEngine(registry)


@pytest.fixture
def machine(policy_engine):
    return ConversationStateMachine(IntentRouter(), policy_engine)


@pytest.fixture
def triage_router(config):
    """Router whose semantic tier scores the AC scenario at 0.89."""
    return IntentRouter(semantic=StubSemantic([SearchCandidate("ac-down", 0.89)]))
