"""Operator-authored rule records.

A tenant's behavior overlay is a ``RuleSet`` of four closed rule types.
They are source material for ``PolicyCompiler`` only; the turn pipeline
never reads a RuleSet directly, it reads the compiled artifact.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Union

from callcore.errors import PolicyValidationError
from callcore.states import TurnAction

DEFAULT_PRIORITY = 10
SAFE_MESSAGE = "Let me connect you with someone who can help."


class Category(Enum):
    EDGE_CASE = "edge_case"
    TRANSFER = "transfer"
    GUARDRAIL = "guardrail"
    BEHAVIOR = "behavior"


class GuardrailKind(Enum):
    NO_PRICES = "NO_PRICES"
    NO_PHONE_NUMBERS = "NO_PHONE_NUMBERS"
    NO_URLS = "NO_URLS"
    NO_APOLOGY_SPAM = "NO_APOLOGY_SPAM"
    CUSTOM = "CUSTOM"


class BehaviorStyle(Enum):
    ACKNOWLEDGE = "ACKNOWLEDGE"
    APPEND = "APPEND"
    USE_COMPANY_NAME = "USE_COMPANY_NAME"
    EXPAND_CONTRACTIONS = "EXPAND_CONTRACTIONS"


# Trigger phrases for transfer rules that only name an intent tag.
TRANSFER_PATTERNS_BY_TAG = {
    "billing": (r"\bbill(ing)?\b", r"\binvoice\b", r"\bpayment\b", r"\bcharged?\b", r"\brefund\b"),
    "emergency": (r"\bemergency\b", r"\burgent\b", r"\bflood(ing)?\b", r"\bgas leak\b", r"\bsmoke\b"),
    "scheduling": (r"\breschedule\b", r"\bcancel\b", r"\bmy appointment\b"),
    "technical": (r"\btechnician\b", r"\bthe tech\b", r"\bwarranty\b"),
    "general": (r"\bmanager\b", r"\bsupervisor\b", r"\b(real|live) person\b", r"\bspeak (to|with) (a|someone)\b"),
}


@dataclass(frozen=True)
class EdgeCase:
    category: ClassVar[Category] = Category.EDGE_CASE

    rule_id: str
    patterns: tuple
    response: str
    action: str = TurnAction.CONTINUE.value
    priority: int = DEFAULT_PRIORITY
    enabled: bool = True


@dataclass(frozen=True)
class TransferRule:
    category: ClassVar[Category] = Category.TRANSFER

    rule_id: str
    patterns: tuple
    target: str
    script: str = ""
    action: str = TurnAction.TRANSFER.value
    intent_tag: str = ""
    after_hours_only: bool = False
    priority: int = DEFAULT_PRIORITY
    enabled: bool = True


@dataclass(frozen=True)
class Guardrail:
    category: ClassVar[Category] = Category.GUARDRAIL

    rule_id: str
    kind: GuardrailKind
    patterns: tuple = ()
    replacement: str = ""
    priority: int = DEFAULT_PRIORITY
    enabled: bool = True


@dataclass(frozen=True)
class BehaviorRule:
    category: ClassVar[Category] = Category.BEHAVIOR

    rule_id: str
    style: BehaviorStyle
    text: str = ""
    patterns: tuple = ()
    when_flags: frozenset = frozenset()
    priority: int = DEFAULT_PRIORITY
    enabled: bool = True


Rule = Union[EdgeCase, TransferRule, Guardrail, BehaviorRule]

RULE_TYPES = {
    Category.EDGE_CASE.value: EdgeCase,
    Category.TRANSFER.value: TransferRule,
    Category.GUARDRAIL.value: Guardrail,
    Category.BEHAVIOR.value: BehaviorRule,
}


def _enum(enum_cls, value, rule_id):
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        raise PolicyValidationError(f"rule {rule_id}: unknown {enum_cls.__name__} {value!r}") from None


def rule_from_dict(data: dict) -> Rule:
    """Build a typed rule from its JSON form, dispatching on ``type``."""
    rule_type = data.get("type", "")
    cls = RULE_TYPES.get(rule_type)
    if cls is None:
        raise PolicyValidationError(f"unknown rule type {rule_type!r} for rule {data.get('rule_id')!r}")

    rule_id = data.get("rule_id", "")
    kwargs = {
        "rule_id": rule_id,
        "priority": int(data.get("priority", DEFAULT_PRIORITY)),
        "enabled": bool(data.get("enabled", True)),
        "patterns": tuple(data.get("patterns", ())),
    }
    if cls is EdgeCase:
        kwargs["response"] = data.get("response", "")
        kwargs["action"] = str(data.get("action", TurnAction.CONTINUE.value)).upper()
    elif cls is TransferRule:
        kwargs["target"] = data.get("target", "")
        kwargs["script"] = data.get("script", "")
        kwargs["action"] = str(data.get("action", TurnAction.TRANSFER.value)).upper()
        kwargs["intent_tag"] = data.get("intent_tag", "")
        kwargs["after_hours_only"] = bool(data.get("after_hours_only", False))
    elif cls is Guardrail:
        kwargs["kind"] = _enum(GuardrailKind, data.get("kind", "CUSTOM"), rule_id)
        kwargs["replacement"] = data.get("replacement", "")
    else:
        kwargs["style"] = _enum(BehaviorStyle, data.get("style", ""), rule_id)
        kwargs["text"] = data.get("text", "")
        kwargs["when_flags"] = frozenset(data.get("when_flags", ()))
    return cls(**kwargs)


def rule_to_dict(rule: Rule, priority: int | None = None) -> dict:
    """Canonical JSON form; ``priority`` overrides the authored one."""
    data = {"type": rule.category.value}
    for f in dataclasses.fields(rule):
        value = getattr(rule, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, frozenset):
            value = sorted(value)
        elif isinstance(value, tuple):
            value = list(value)
        data[f.name] = value
    if priority is not None:
        data["priority"] = priority
    return data


@dataclass(frozen=True)
class RuleSet:
    tenant_id: str
    rules: tuple = ()
    allowed_actions: frozenset = frozenset(a.value for a in TurnAction)
    # Approved configuration values: the only prices, numbers and links
    # guardrails let through, plus template values such as company_name.
    variables: dict = field(default_factory=dict)
    safe_message: str = SAFE_MESSAGE

    @classmethod
    def from_dict(cls, data: dict, tenant_id: str = "") -> "RuleSet":
        actions = data.get("allowed_actions")
        return cls(
            tenant_id=tenant_id or data.get("tenant_id", ""),
            rules=tuple(rule_from_dict(r) for r in data.get("rules", [])),
            allowed_actions=(
                frozenset(str(a).upper() for a in actions)
                if actions is not None
                else frozenset(a.value for a in TurnAction)
            ),
            variables={k: str(v) for k, v in data.get("variables", {}).items()},
            safe_message=data.get("safe_message", SAFE_MESSAGE),
        )
