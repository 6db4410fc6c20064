"""Startup and tenant configuration.

Environment variables are checked by :func:`validate_config` before the
server accepts connections, so that a missing key causes a clear startup
failure rather than a silent mid-call crash.

Per-tenant settings live in :class:`TenantConfig`. Every field must be
listed in :data:`FIELD_CONSUMERS` with the pipeline stage that reads it;
:func:`check_config_wiring` refuses to start with an unwired field so a
setting can never be saved without something acting on it.
"""

import dataclasses
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from callcore.errors import ConfigError

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "REDIS_URL",
    "DOCUMENT_STORE_URL",
]

OPTIONAL_VARS = [
    "DOCUMENT_STORE_API_KEY",
    "SEMANTIC_SEARCH_URL",
    "OPENAI_API_KEY",
    "GENERATIVE_MODEL",
    "TENANT_CONFIG_PATH",
    "LOG_LEVEL",
]

LOOP_POLICIES = {"skip", "rephrase", "escalate"}
SCENARIO_ACTIONS = {"", "CONTINUE", "TAKE_MESSAGE", "HANGUP"}


def validate_config() -> None:
    """Validate environment variables at startup.

    Exits the process with a clear error if any required variable is missing
    or empty.  Logs warnings for missing optional variables.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or the deployment secrets (production).\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


@dataclass(frozen=True)
class Scenario:
    """A pre-authored answer the rule tier can match and triage can use."""

    scenario_id: str
    category: str
    response: str
    keywords: tuple = ()
    negative_keywords: tuple = ()
    intent: str = ""
    action: str = ""
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "Scenario":
        if not data.get("scenario_id") or not data.get("response"):
            raise ConfigError(f"scenario needs scenario_id and response: {data!r}")
        action = str(data.get("action", "")).upper()
        if action not in SCENARIO_ACTIONS:
            # transfers carry a target and belong in a TransferRule
            raise ConfigError(f"scenario {data['scenario_id']}: action {action!r} not allowed")
        return cls(
            scenario_id=data["scenario_id"],
            category=str(data.get("category", "GENERAL")).upper(),
            response=data["response"],
            keywords=tuple(k.lower() for k in data.get("keywords", [])),
            negative_keywords=tuple(k.lower() for k in data.get("negative_keywords", [])),
            intent=data.get("intent", "") or data["scenario_id"],
            action=action,
            enabled=bool(data.get("enabled", True)),
        )


@dataclass(frozen=True)
class SlotDefinition:
    name: str
    prompt: str
    rephrase_prompt: str = ""
    on_loop: str = "escalate"
    required: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "SlotDefinition":
        on_loop = str(data.get("on_loop", "escalate")).lower()
        if on_loop not in LOOP_POLICIES:
            raise ConfigError(f"slot {data.get('name')!r}: unknown on_loop policy {on_loop!r}")
        if not data.get("name") or not data.get("prompt"):
            raise ConfigError(f"slot needs name and prompt: {data!r}")
        return cls(
            name=data["name"],
            prompt=data["prompt"],
            rephrase_prompt=data.get("rephrase_prompt", ""),
            on_loop=on_loop,
            required=bool(data.get("required", True)),
        )


DEFAULT_DISCOVERY_SLOTS = (
    SlotDefinition(
        name="name",
        prompt="Can I get your name, please?",
        rephrase_prompt="Sorry, who am I speaking with?",
        on_loop="skip",
    ),
    SlotDefinition(
        name="address",
        prompt="What's the address where you need service?",
        rephrase_prompt="What's the street address for the visit, like 123 Main Street?",
        on_loop="rephrase",
    ),
    SlotDefinition(
        name="reason",
        prompt="And what's going on with your system?",
        rephrase_prompt="Can you tell me in a few words what the problem is?",
        on_loop="escalate",
    ),
)

DEFAULT_BOOKING_SLOTS = (
    SlotDefinition(
        name="preferred_time",
        prompt="When would be a good time for a technician to come out?",
        rephrase_prompt="Would a morning or an afternoon work better for you?",
        on_loop="escalate",
    ),
)


@dataclass(frozen=True)
class TenantConfig:
    tenant_id: str = "default"
    company_name: str = ""

    # Classification tiers
    rule_threshold: float = 0.8
    semantic_threshold: float = 0.7
    generative_enabled: bool = True
    memory_skip_min_successes: int = 3
    scenarios: tuple = ()

    # Triage short-circuit
    triage_enabled: bool = True
    triage_threshold: float = 0.8
    triage_categories: frozenset = frozenset({"TROUBLESHOOT"})

    # Discovery and booking
    discovery_slots: tuple = DEFAULT_DISCOVERY_SLOTS
    booking_slots: tuple = DEFAULT_BOOKING_SLOTS
    max_reprompts: int = 2
    max_turns_per_call: int = 30

    # Latency budgets
    turn_budget_ms: int = 5000
    rule_budget_ms: int = 100
    semantic_timeout_ms: int = 1500
    generative_timeout_ms: int = 3000
    policy_budget_ms: int = 10

    # Persistence
    checkpoint_every_turns: int = 3

    # Business hours for after-hours transfer rules
    timezone: str = "America/Chicago"

    def scenario(self, scenario_id: str):
        for s in self.scenarios:
            if s.scenario_id == scenario_id:
                return s
        return None

    @classmethod
    def from_dict(cls, data: dict, tenant_id: str = "") -> "TenantConfig":
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unknown config fields (nothing consumes them): {', '.join(unknown)}")

        kwargs = dict(data)
        if tenant_id:
            kwargs["tenant_id"] = tenant_id
        if "scenarios" in kwargs:
            kwargs["scenarios"] = tuple(Scenario.from_dict(s) for s in kwargs["scenarios"])
        if "triage_categories" in kwargs:
            kwargs["triage_categories"] = frozenset(c.upper() for c in kwargs["triage_categories"])
        for key in ("discovery_slots", "booking_slots"):
            if key in kwargs:
                kwargs[key] = tuple(SlotDefinition.from_dict(s) for s in kwargs[key])

        for key in ("rule_threshold", "semantic_threshold", "triage_threshold"):
            if key in kwargs and not 0.0 <= float(kwargs[key]) <= 1.0:
                raise ConfigError(f"{key} must be between 0 and 1, got {kwargs[key]}")
        for key in ("max_reprompts", "checkpoint_every_turns", "max_turns_per_call"):
            if key in kwargs and int(kwargs[key]) < 1:
                raise ConfigError(f"{key} must be at least 1, got {kwargs[key]}")
        if "timezone" in kwargs:
            try:
                ZoneInfo(str(kwargs["timezone"]))
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ConfigError(f"unknown timezone {kwargs['timezone']!r}") from e
        return cls(**kwargs)


# Every TenantConfig field and the stage(s) that read it at runtime.
FIELD_CONSUMERS = {
    "tenant_id": ("config.tenant_directory",),
    "company_name": ("state_machine.closing",),
    "rule_threshold": ("router.rule_tier",),
    "semantic_threshold": ("router.semantic_tier",),
    "generative_enabled": ("router.generative_tier",),
    "memory_skip_min_successes": ("router.memory_tier",),
    "scenarios": ("router.rule_tier", "router.semantic_tier"),
    "triage_enabled": ("state_machine.triage",),
    "triage_threshold": ("state_machine.triage",),
    "triage_categories": ("state_machine.triage",),
    "discovery_slots": ("state_machine.discovery",),
    "booking_slots": ("state_machine.booking",),
    "max_reprompts": ("state_machine.loop_guard",),
    "max_turns_per_call": ("state_machine.turn_limit",),
    "turn_budget_ms": ("router.classify",),
    "rule_budget_ms": ("router.rule_tier",),
    "semantic_timeout_ms": ("router.semantic_tier",),
    "generative_timeout_ms": ("router.generative_tier",),
    "policy_budget_ms": ("policy_engine.apply",),
    "checkpoint_every_turns": ("session_store.update",),
    "timezone": ("policy_engine.transfer",),
}


def check_config_wiring() -> None:
    """Fail if a TenantConfig field has no consuming stage, or vice versa."""
    declared = {f.name for f in dataclasses.fields(TenantConfig)}
    unwired = sorted(declared - set(FIELD_CONSUMERS))
    stale = sorted(set(FIELD_CONSUMERS) - declared)
    empty = sorted(name for name, stages in FIELD_CONSUMERS.items() if not stages)
    if unwired or stale or empty:
        raise ConfigError(
            f"config wiring gap: unwired={unwired} stale={stale} no_consumer={empty}"
        )


@dataclass
class TenantDirectory:
    """Read-only view of tenant configs and their authored rule sets."""

    configs: dict = field(default_factory=dict)
    rule_sets: dict = field(default_factory=dict)

    def get(self, tenant_id: str) -> TenantConfig:
        config = self.configs.get(tenant_id)
        if config is None:
            logger.warning("No config for tenant %s, using defaults", tenant_id)
            return TenantConfig(tenant_id=tenant_id)
        return config


def load_tenant_directory(path: str | None = None) -> TenantDirectory:
    """Load ``{tenant_id: {"config": {...}, "policy": {...}}}`` from JSON."""
    path = path or os.getenv("TENANT_CONFIG_PATH", "")
    if not path:
        logger.warning("TENANT_CONFIG_PATH not set, every tenant uses defaults")
        return TenantDirectory()

    raw = json.loads(Path(path).read_text())
    directory = TenantDirectory()
    for tenant_id, entry in raw.items():
        directory.configs[tenant_id] = TenantConfig.from_dict(entry.get("config", {}), tenant_id=tenant_id)
        if "policy" in entry:
            directory.rule_sets[tenant_id] = entry["policy"]
    logger.info("Loaded config for %d tenants from %s", len(directory.configs), path)
    return directory
