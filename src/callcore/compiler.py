"""Rule compilation and artifact publishing.

``PolicyCompiler.compile`` turns an authored ``RuleSet`` into an immutable,
checksummed ``PolicyArtifact`` and publishes it through ``PolicyRegistry``
by swapping the tenant's reference. Readers holding the previous artifact
keep a complete, consistent object; nothing is ever updated in place.

Same-priority rules in one category whose triggers overlap are not an
error: the later-defined rule is demoted one priority step at a time
until it no longer collides, and the demotion is logged and kept on the
artifact.
"""

import asyncio
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Optional

from callcore.cache import FastCache
from callcore.errors import (
    CompileInProgress,
    PolicyCompileConflict,
    PolicyValidationError,
    SessionStoreUnavailable,
)
from callcore.rules import (
    TRANSFER_PATTERNS_BY_TAG,
    BehaviorRule,
    BehaviorStyle,
    Category,
    EdgeCase,
    Guardrail,
    GuardrailKind,
    Rule,
    RuleSet,
    TransferRule,
    rule_from_dict,
    rule_to_dict,
)
from callcore.states import TurnAction
from callcore.store import DocumentStore

logger = logging.getLogger(__name__)

CONFLICT_OVERLAP = 0.3
ARTIFACT_TTL = 24 * 3600


@dataclass(frozen=True)
class CompiledRule:
    rule: Rule
    priority: int
    regexes: tuple = ()

    @property
    def rule_id(self) -> str:
        return self.rule.rule_id

    def matches(self, text: str) -> bool:
        return any(rx.search(text) for rx in self.regexes)


@dataclass(frozen=True)
class PolicyArtifact:
    tenant_id: str
    version: int
    checksum: str
    edge_cases: tuple = ()
    transfers: tuple = ()
    guardrails: tuple = ()
    behaviors: tuple = ()
    allowed_actions: frozenset = frozenset({TurnAction.CONTINUE.value})
    variables: dict = field(default_factory=dict)
    safe_message: str = ""
    conflicts: tuple = ()
    compiled_at: float = 0.0

    def is_allowed(self, action: TurnAction) -> bool:
        return action.value in self.allowed_actions

    def to_dict(self) -> dict:
        data = artifact_content(
            self.tenant_id,
            self.edge_cases + self.transfers + self.guardrails + self.behaviors,
            self.allowed_actions,
            self.variables,
            self.safe_message,
        )
        data.update({
            "version": self.version,
            "checksum": self.checksum,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "compiled_at": self.compiled_at,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PolicyArtifact":
        """Rehydrate a stored artifact, refusing one whose checksum doesn't match."""
        compiled = []
        for rule_data in data.get("rules", []):
            rule = rule_from_dict(rule_data)
            compiled.append(CompiledRule(rule, rule.priority, _compile_patterns(rule)))
        artifact = _assemble(
            tenant_id=data["tenant_id"],
            version=int(data["version"]),
            compiled=compiled,
            allowed_actions=frozenset(data.get("allowed_actions", [])),
            variables=dict(data.get("variables", {})),
            safe_message=data.get("safe_message", ""),
            conflicts=tuple(PolicyCompileConflict(**c) for c in data.get("conflicts", [])),
            compiled_at=float(data.get("compiled_at", 0.0)),
        )
        if artifact.checksum != data.get("checksum"):
            raise PolicyValidationError(
                f"stored artifact for {artifact.tenant_id} v{artifact.version} failed checksum verification"
            )
        return artifact


def artifact_content(tenant_id, compiled, allowed_actions, variables, safe_message) -> dict:
    return {
        "tenant_id": tenant_id,
        "rules": [rule_to_dict(c.rule, c.priority) for c in compiled],
        "allowed_actions": sorted(allowed_actions),
        "variables": dict(sorted(variables.items())),
        "safe_message": safe_message,
    }


def compute_checksum(content: dict) -> str:
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _compile_patterns(rule: Rule) -> tuple:
    patterns = list(rule.patterns)
    if isinstance(rule, TransferRule) and not patterns and rule.intent_tag:
        patterns = list(TRANSFER_PATTERNS_BY_TAG.get(rule.intent_tag, ()))
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            raise PolicyValidationError(f"rule {rule.rule_id}: invalid pattern {pattern!r}: {e}") from e
    return tuple(compiled)


def _assemble(tenant_id, version, compiled, allowed_actions, variables, safe_message, conflicts=(), compiled_at=0.0):
    by_category = {c: [] for c in Category}
    for item in compiled:
        by_category[item.rule.category].append(item)
    # stable sort: equal priorities keep definition order
    for items in by_category.values():
        items.sort(key=lambda c: c.priority)
    ordered = tuple(
        by_category[Category.EDGE_CASE]
        + by_category[Category.TRANSFER]
        + by_category[Category.GUARDRAIL]
        + by_category[Category.BEHAVIOR]
    )
    checksum = compute_checksum(artifact_content(tenant_id, ordered, allowed_actions, variables, safe_message))
    return PolicyArtifact(
        tenant_id=tenant_id,
        version=version,
        checksum=checksum,
        edge_cases=tuple(by_category[Category.EDGE_CASE]),
        transfers=tuple(by_category[Category.TRANSFER]),
        guardrails=tuple(by_category[Category.GUARDRAIL]),
        behaviors=tuple(by_category[Category.BEHAVIOR]),
        allowed_actions=allowed_actions,
        variables=variables,
        safe_message=safe_message,
        conflicts=tuple(conflicts),
        compiled_at=compiled_at,
    )


# ── Validation ──

def validate_rule_set(rule_set: RuleSet) -> None:
    if not rule_set.tenant_id:
        raise PolicyValidationError("rule set has no tenant_id")

    valid_actions = {a.value for a in TurnAction}
    unknown_actions = set(rule_set.allowed_actions) - valid_actions
    if unknown_actions:
        raise PolicyValidationError(f"unknown actions in allowlist: {sorted(unknown_actions)}")

    seen = set()
    for rule in rule_set.rules:
        if not rule.rule_id:
            raise PolicyValidationError(f"{rule.category.value} rule without rule_id")
        if rule.rule_id in seen:
            raise PolicyValidationError(f"duplicate rule_id {rule.rule_id}")
        seen.add(rule.rule_id)

        if isinstance(rule, EdgeCase):
            if not rule.patterns:
                raise PolicyValidationError(f"edge case {rule.rule_id} has no patterns")
            if not rule.response:
                raise PolicyValidationError(f"edge case {rule.rule_id} has no response")
        elif isinstance(rule, TransferRule):
            if not rule.target:
                raise PolicyValidationError(f"transfer rule {rule.rule_id} has no target")
            if not rule.patterns and rule.intent_tag not in TRANSFER_PATTERNS_BY_TAG:
                raise PolicyValidationError(f"transfer rule {rule.rule_id} has no patterns or known intent_tag")
        elif isinstance(rule, Guardrail):
            if rule.kind is GuardrailKind.CUSTOM and not rule.patterns:
                raise PolicyValidationError(f"custom guardrail {rule.rule_id} has no patterns")
        elif isinstance(rule, BehaviorRule):
            if rule.style in (BehaviorStyle.ACKNOWLEDGE, BehaviorStyle.APPEND) and not rule.text:
                raise PolicyValidationError(f"behavior rule {rule.rule_id} needs text for {rule.style.value}")

        action = getattr(rule, "action", None)
        if action is not None and action not in valid_actions:
            raise PolicyValidationError(f"rule {rule.rule_id}: unknown action {action!r}")


# ── Conflict detection ──

def _pattern_words(patterns) -> set:
    words = set()
    for pattern in patterns:
        # drop escapes like \b and \s before splitting into words
        text = re.sub(r"\\[a-z]", " ", pattern.lower())
        words.update(w for w in re.findall(r"[a-z0-9']+", text) if len(w) > 2)
    return words


def pattern_overlap(a: Rule, b: Rule) -> float:
    """Similarity of two rules' triggers in [0, 1]."""
    if isinstance(a, TransferRule) and isinstance(b, TransferRule):
        if a.intent_tag and a.intent_tag == b.intent_tag:
            return 1.0
    if isinstance(a, Guardrail) and isinstance(b, Guardrail):
        if a.kind is not GuardrailKind.CUSTOM and a.kind is b.kind:
            return 1.0
    if set(a.patterns) & set(b.patterns):
        return 1.0
    wa, wb = _pattern_words(a.patterns), _pattern_words(b.patterns)
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / len(wa | wb)


def resolve_conflicts(rules: list) -> tuple[list, list]:
    """Assign effective priorities, demoting later rules that collide.

    ``rules`` must all belong to one category, in definition order.
    Returns ``[(rule, priority)]`` and the list of conflicts resolved.
    """
    placed = []
    conflicts = []
    for rule in rules:
        priority = rule.priority
        while True:
            clash = None
            for other, other_priority in placed:
                if other_priority != priority:
                    continue
                overlap = pattern_overlap(other, rule)
                if overlap > CONFLICT_OVERLAP:
                    clash = (other, overlap)
                    break
            if clash is None:
                break
            other, overlap = clash
            conflict = PolicyCompileConflict(
                category=rule.category.value,
                kept_rule_id=other.rule_id,
                demoted_rule_id=rule.rule_id,
                overlap=overlap,
                old_priority=priority,
                new_priority=priority + 1,
            )
            logger.warning(
                "Policy conflict in %s: %s overlaps %s (%.2f) at priority %d, demoting %s to %d",
                conflict.category, rule.rule_id, other.rule_id, overlap,
                priority, rule.rule_id, priority + 1,
            )
            conflicts.append(conflict)
            priority += 1
        placed.append((rule, priority))
    return placed, conflicts


def build_artifact(rule_set: RuleSet, version: int) -> PolicyArtifact:
    """Validate, resolve conflicts and checksum. Pure apart from logging."""
    validate_rule_set(rule_set)
    enabled = [r for r in rule_set.rules if r.enabled]

    compiled = []
    conflicts = []
    for category in Category:
        members = [r for r in enabled if r.category is category]
        placed, found = resolve_conflicts(members)
        conflicts.extend(found)
        compiled.extend(CompiledRule(rule, priority, _compile_patterns(rule)) for rule, priority in placed)

    allowed = frozenset(rule_set.allowed_actions) | {TurnAction.CONTINUE.value}
    return _assemble(
        tenant_id=rule_set.tenant_id,
        version=version,
        compiled=compiled,
        allowed_actions=allowed,
        variables=dict(rule_set.variables),
        safe_message=rule_set.safe_message,
        conflicts=conflicts,
        compiled_at=time.time(),
    )


class PolicyRegistry:
    """Holds the single active artifact per tenant.

    ``publish`` is a plain reference swap. ``load`` serves the local copy
    and re-reads the shared tiers (fast cache, then durable store) at most
    every ``refresh_seconds``, adopting any newer version another worker
    published.
    """

    def __init__(
        self,
        cache: FastCache | None = None,
        store: DocumentStore | None = None,
        refresh_seconds: float = 5.0,
        clock=time.monotonic,
    ):
        self.cache = cache
        self.store = store
        self.refresh_seconds = refresh_seconds
        self._clock = clock
        self._active: dict = {}
        self._checked_at: dict = {}

    def active(self, tenant_id: str) -> Optional[PolicyArtifact]:
        return self._active.get(tenant_id)

    def next_version(self, tenant_id: str) -> int:
        current = self._active.get(tenant_id)
        return current.version + 1 if current else 1

    def publish(self, artifact: PolicyArtifact) -> None:
        current = self._active.get(artifact.tenant_id)
        if current is not None and current.version >= artifact.version:
            logger.warning(
                "Ignoring stale artifact v%d for %s (active v%d)",
                artifact.version, artifact.tenant_id, current.version,
            )
            return
        self._active[artifact.tenant_id] = artifact
        logger.info(
            "Published policy %s v%d checksum=%s",
            artifact.tenant_id, artifact.version, artifact.checksum[:12],
        )

    async def persist(self, artifact: PolicyArtifact) -> None:
        """Copy the artifact to the shared tiers. Best effort."""
        payload = artifact.to_dict()
        if self.cache is not None:
            try:
                await self.cache.set(
                    f"policy:{artifact.tenant_id}:v{artifact.version}:{artifact.checksum}",
                    json.dumps(payload),
                    ARTIFACT_TTL,
                )
                await self.cache.set(f"policy:{artifact.tenant_id}:active", json.dumps(payload), ARTIFACT_TTL)
            except SessionStoreUnavailable as e:
                logger.warning("policy cache write skipped for %s: %s", artifact.tenant_id, e)
        if self.store is not None:
            try:
                await self.store.put(artifact.tenant_id, "policy:active", payload)
            except SessionStoreUnavailable as e:
                logger.error("policy store write failed for %s: %s", artifact.tenant_id, e)

    async def _read_shared(self, tenant_id: str) -> Optional[dict]:
        data = None
        if self.cache is not None:
            try:
                raw = await self.cache.get(f"policy:{tenant_id}:active")
                data = json.loads(raw) if raw else None
            except SessionStoreUnavailable as e:
                logger.warning("policy cache read failed for %s: %s", tenant_id, e)
        if data is None and self.store is not None:
            try:
                data = await self.store.get(tenant_id, "policy:active")
            except SessionStoreUnavailable as e:
                logger.warning("policy store read failed for %s: %s", tenant_id, e)
        return data

    async def load(self, tenant_id: str, refresh: bool = False) -> Optional[PolicyArtifact]:
        """Return the active artifact, adopting a newer shared one when due.

        ``refresh=True`` skips the interval and always reads the shared tiers.
        """
        local = self._active.get(tenant_id)
        if self.cache is None and self.store is None:
            return local
        now = self._clock()
        checked = self._checked_at.get(tenant_id)
        if local is not None and not refresh and checked is not None and now - checked < self.refresh_seconds:
            return local
        self._checked_at[tenant_id] = now

        data = await self._read_shared(tenant_id)
        if data is None:
            return local
        try:
            if local is not None and int(data["version"]) <= local.version:
                return local
            artifact = PolicyArtifact.from_dict(data)
        except (PolicyValidationError, KeyError, TypeError, ValueError) as e:
            logger.error("stored policy for %s is unusable: %s", tenant_id, e)
            return local
        self.publish(artifact)
        return self._active.get(tenant_id)


class PolicyCompiler:
    def __init__(self, registry: PolicyRegistry):
        self.registry = registry
        self._locks: dict = {}

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    def is_compiling(self, tenant_id: str) -> bool:
        return self._lock_for(tenant_id).locked()

    async def compile(self, rule_set: RuleSet) -> PolicyArtifact:
        """Compile and publish. A concurrent compile for the tenant fails fast."""
        lock = self._lock_for(rule_set.tenant_id)
        if lock.locked():
            raise CompileInProgress(rule_set.tenant_id)
        async with lock:
            # another worker may have published since our last look
            current = await self.registry.load(rule_set.tenant_id, refresh=True)
            artifact = build_artifact(rule_set, self.registry.next_version(rule_set.tenant_id))
            if current is not None and current.checksum == artifact.checksum:
                logger.info("Policy for %s unchanged (v%d), not republishing", rule_set.tenant_id, current.version)
                return current
            self.registry.publish(artifact)
            await self.registry.persist(artifact)
            return artifact
