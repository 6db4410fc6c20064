"""Deterministic overlay of a compiled policy on a draft response.

Stages run in strict precedence::

    edge case -> transfer -> guardrail -> behavior

An edge case match ends evaluation. Transfers are checked against the
artifact's action allowlist. Guardrails rewrite content. Behavior rules
only touch wording. ``apply`` is synchronous and never raises for a
well-formed artifact.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from callcore.compiler import PolicyArtifact, PolicyRegistry, build_artifact
from callcore.errors import (
    PerformanceBudgetExceeded,
    PolicyArtifactUnavailable,
    UnauthorizedActionAttempt,
)
from callcore.rules import (
    BehaviorStyle,
    Guardrail,
    GuardrailKind,
    RuleSet,
    TransferRule,
)
from callcore.states import TurnAction

logger = logging.getLogger(__name__)

SAFE_DEFAULT_ARTIFACT = build_artifact(
    RuleSet(
        tenant_id="__safe_default__",
        rules=(
            Guardrail(rule_id="safe-no-phone-numbers", kind=GuardrailKind.NO_PHONE_NUMBERS),
            Guardrail(rule_id="safe-no-urls", kind=GuardrailKind.NO_URLS),
        ),
    ),
    version=0,
)

BUSINESS_DAY_START = 7
BUSINESS_DAY_END = 19

PRICE_PATTERN = re.compile(r"\$\d+(?:,\d{3})*(?:\.\d{2})?|\b\d+(?:,\d{3})*\s*dollars?\b", re.IGNORECASE)
PHONE_PATTERN = re.compile(r"(?:\+?1[-.\s]?)?\(?\b\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")
URL_PATTERN = re.compile(r"\b(?:https?://|www\.)\S+|\b[a-z0-9-]+\.(?:com|net|org|io|co|us)\b(?:/\S*)?", re.IGNORECASE)
APOLOGY_PATTERN = re.compile(r"\b(?:i'm sorry|i am sorry|sorry|i apologize|my apologies)\b[,.!]?\s*", re.IGNORECASE)

DEFAULT_REPLACEMENTS = {
    GuardrailKind.NO_PRICES: "a price our team will confirm with you",
    GuardrailKind.NO_PHONE_NUMBERS: "our main number",
    GuardrailKind.NO_URLS: "our website",
    GuardrailKind.NO_APOLOGY_SPAM: "",
    GuardrailKind.CUSTOM: "",
}

CONTRACTIONS = {
    "can't": "cannot",
    "won't": "will not",
    "don't": "do not",
    "doesn't": "does not",
    "isn't": "is not",
    "i'm": "I am",
    "it's": "it is",
    "that's": "that is",
    "we'll": "we will",
    "we're": "we are",
    "you're": "you are",
    "i'll": "I will",
}
_CONTRACTION_PATTERN = re.compile(r"\b(" + "|".join(re.escape(c) for c in CONTRACTIONS) + r")\b", re.IGNORECASE)


@dataclass
class PolicyContext:
    """Per-turn facts the overlay needs besides the utterance."""

    base_action: TurnAction = TurnAction.CONTINUE
    turn: int = 1
    flags: tuple = ()
    timezone: str = "America/Chicago"
    budget_ms: float = 10.0
    now: Optional[datetime] = None


@dataclass
class PolicyOutcome:
    response: str
    action: TurnAction
    applied_rule_ids: list = field(default_factory=list)
    short_circuit: bool = False
    transfer_target: str = ""
    rejected_rule_ids: list = field(default_factory=list)
    artifact_checksum: str = ""
    elapsed_ms: float = 0.0


def render(text: str, variables: dict) -> str:
    """Fill ``{name}`` placeholders from approved variables, leaving unknown ones."""
    return re.sub(r"\{(\w+)\}", lambda m: variables.get(m.group(1), m.group(0)), text)


def local_now(timezone: str) -> datetime:
    """Current time in the tenant's zone, or UTC when the zone is unknown."""
    try:
        return datetime.now(ZoneInfo(timezone))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, judging business hours in UTC", timezone)
        return datetime.now(ZoneInfo("UTC"))


def is_after_hours(now: datetime) -> bool:
    return now.hour < BUSINESS_DAY_START or now.hour >= BUSINESS_DAY_END


def _price_token(value: str) -> str:
    return re.sub(r"[\s,]", "", value.lower())


def _url_token(value: str) -> str:
    token = re.sub(r"^(?:https?://)?(?:www\.)?", "", value.lower())
    return token.rstrip("/.")


def approved_tokens(pattern: re.Pattern, values, normalize) -> set:
    """Every whole price or URL that appears in an approved variable."""
    return {normalize(m.group(0)) for v in values for m in pattern.finditer(v)}


def _digits(value: str) -> str:
    digits = re.sub(r"\D", "", value)
    return digits[1:] if len(digits) == 11 and digits.startswith("1") else digits


def apply_guardrail(rule: Guardrail, text: str, variables: dict) -> tuple[str, bool]:
    """Rewrite ``text`` for one guardrail. Returns (text, changed)."""
    replacement = rule.replacement or DEFAULT_REPLACEMENTS[rule.kind]
    approved = [v for v in variables.values() if v]

    if rule.kind is GuardrailKind.NO_APOLOGY_SPAM:
        seen = []

        def keep_first(match):
            seen.append(match)
            return match.group(0) if len(seen) == 1 else ""

        result = APOLOGY_PATTERN.sub(keep_first, text)
        return _tidy(result), len(seen) > 1

    if rule.kind is GuardrailKind.NO_PRICES:
        approved_prices = approved_tokens(PRICE_PATTERN, approved, _price_token)

        def swap(match):
            return match.group(0) if _price_token(match.group(0)) in approved_prices else replacement
        pattern_list = [PRICE_PATTERN]
    elif rule.kind is GuardrailKind.NO_PHONE_NUMBERS:
        approved_digits = {_digits(v) for v in approved if len(_digits(v)) >= 10}

        def swap(match):
            return match.group(0) if _digits(match.group(0)) in approved_digits else replacement
        pattern_list = [PHONE_PATTERN]
    elif rule.kind is GuardrailKind.NO_URLS:
        approved_urls = approved_tokens(URL_PATTERN, approved, _url_token)

        def swap(match):
            return match.group(0) if _url_token(match.group(0)) in approved_urls else replacement
        pattern_list = [URL_PATTERN]
    else:
        def swap(match):
            return replacement
        pattern_list = []

    pattern_list = pattern_list + [re.compile(p, re.IGNORECASE) for p in rule.patterns]
    result = text
    for pattern in pattern_list:
        result = pattern.sub(swap, result)
    if result == text:
        return text, False
    return _tidy(result), True


def _tidy(text: str) -> str:
    text = re.sub(r"\s{2,}", " ", text)
    text = re.sub(r"\s+([,.!?])", r"\1", text)
    return text.strip()


def _expand_contractions(text: str) -> str:
    def expand(match):
        word = match.group(0)
        full = CONTRACTIONS[word.lower()]
        if word[0].isupper() and not full.startswith("I "):
            return full[0].upper() + full[1:]
        return full
    return _CONTRACTION_PATTERN.sub(expand, text)


class PolicyEngine:
    def __init__(self, registry: PolicyRegistry):
        self.registry = registry

    async def artifact_for(self, tenant_id: str) -> PolicyArtifact:
        """The tenant's active artifact, or the embedded safe default."""
        artifact = await self.registry.load(tenant_id)
        if artifact is None:
            logger.warning("%s, using safe default", PolicyArtifactUnavailable(f"no active policy for {tenant_id}"))
            return SAFE_DEFAULT_ARTIFACT
        return artifact

    def apply(
        self,
        base_response: str,
        utterance: str,
        context: PolicyContext,
        artifact: PolicyArtifact | None = None,
    ) -> PolicyOutcome:
        start = time.perf_counter()
        if artifact is None:
            logger.warning("%s, using safe default", PolicyArtifactUnavailable("apply called without an artifact"))
            artifact = SAFE_DEFAULT_ARTIFACT

        outcome = PolicyOutcome(
            response=base_response,
            action=context.base_action,
            artifact_checksum=artifact.checksum,
        )
        variables = artifact.variables

        # 1. Edge cases replace everything and stop evaluation.
        for compiled in artifact.edge_cases:
            if compiled.matches(utterance):
                rule = compiled.rule
                outcome.response = render(rule.response, variables)
                outcome.action = TurnAction.parse(rule.action)
                outcome.applied_rule_ids.append(rule.rule_id)
                outcome.short_circuit = True
                self._enforce_allowlist(outcome, artifact, rule.rule_id)
                return self._finish(outcome, start, context)

        # 2. Transfers, checked against the allowlist.
        now = context.now
        for compiled in artifact.transfers:
            rule: TransferRule = compiled.rule
            if rule.after_hours_only:
                now = now or local_now(context.timezone)
                if not is_after_hours(now):
                    continue
            if not compiled.matches(utterance):
                continue
            proposed = TurnAction.parse(rule.action)
            if not artifact.is_allowed(proposed):
                logger.error("Security violation: %s", UnauthorizedActionAttempt(rule.rule_id, proposed.value))
                outcome.rejected_rule_ids.append(rule.rule_id)
                outcome.response = artifact.safe_message
                outcome.action = TurnAction.CONTINUE
                break
            outcome.action = proposed
            outcome.transfer_target = rule.target
            outcome.response = render(rule.script, variables) if rule.script else (
                "Sure, let me transfer you now. One moment."
            )
            outcome.applied_rule_ids.append(rule.rule_id)
            break

        self._enforce_allowlist(outcome, artifact, "draft")

        # 3. Guardrails.
        for compiled in artifact.guardrails:
            outcome.response, changed = apply_guardrail(compiled.rule, outcome.response, variables)
            if changed:
                outcome.applied_rule_ids.append(compiled.rule_id)

        # 4. Behavior rules: wording only, never the action.
        for compiled in artifact.behaviors:
            rule = compiled.rule
            if rule.when_flags and not (rule.when_flags & set(context.flags)):
                continue
            if compiled.regexes and not compiled.matches(utterance):
                continue
            updated = self._apply_behavior(rule, outcome.response, context, variables)
            if updated != outcome.response:
                outcome.response = updated
                outcome.applied_rule_ids.append(rule.rule_id)

        return self._finish(outcome, start, context)

    @staticmethod
    def _apply_behavior(rule, text: str, context: PolicyContext, variables: dict) -> str:
        if rule.style is BehaviorStyle.ACKNOWLEDGE:
            prefix = render(rule.text, variables).strip()
            if text.lower().startswith(prefix.lower()):
                return text
            return f"{prefix} {text}".strip()
        if rule.style is BehaviorStyle.APPEND:
            suffix = render(rule.text, variables).strip()
            if text.endswith(suffix):
                return text
            return f"{text} {suffix}".strip()
        if rule.style is BehaviorStyle.USE_COMPANY_NAME:
            company = variables.get("company_name", "")
            if context.turn != 1 or not company or company.lower() in text.lower():
                return text
            greeting = render(rule.text, variables) if rule.text else f"Thanks for calling {company}."
            return f"{greeting} {text}".strip()
        if rule.style is BehaviorStyle.EXPAND_CONTRACTIONS:
            return _expand_contractions(text)
        return text

    @staticmethod
    def _enforce_allowlist(outcome: PolicyOutcome, artifact: PolicyArtifact, source: str) -> None:
        if artifact.is_allowed(outcome.action):
            return
        logger.error("Security violation: %s", UnauthorizedActionAttempt(source, outcome.action.value))
        outcome.rejected_rule_ids.append(source)
        outcome.response = artifact.safe_message
        outcome.action = TurnAction.CONTINUE
        outcome.transfer_target = ""

    @staticmethod
    def _finish(outcome: PolicyOutcome, start: float, context: PolicyContext) -> PolicyOutcome:
        outcome.elapsed_ms = (time.perf_counter() - start) * 1000
        if outcome.elapsed_ms > context.budget_ms:
            exceeded = PerformanceBudgetExceeded("policy apply", outcome.elapsed_ms, context.budget_ms)
            if outcome.elapsed_ms > context.budget_ms * 1.5:
                logger.error("ALERT %s", exceeded)
            else:
                logger.warning("%s", exceeded)
        return outcome
