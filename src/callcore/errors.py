"""Failure taxonomy for the turn pipeline.

Every class here is handled inside the stage that raises it; none of them
ever reaches the telephony caller. ``process_turn`` is the last line of
defence and converts anything that slips through into a canned response.
"""

from dataclasses import dataclass


class CallCoreError(Exception):
    """Base class for all decision-core failures."""


class ConfigError(CallCoreError):
    """Tenant configuration is malformed or references an unwired field."""


class ClassificationTierFailure(CallCoreError):
    """A provider or network error inside one classification tier."""

    def __init__(self, tier: str, reason: str):
        super().__init__(f"{tier} tier failed: {reason}")
        self.tier = tier
        self.reason = reason


class PolicyValidationError(CallCoreError):
    """A rule set failed validation; the previous artifact stays active."""


class CompileInProgress(CallCoreError):
    """Another compile for the same tenant currently holds the lock."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Compilation already in progress for tenant {tenant_id}")
        self.tenant_id = tenant_id


class PolicyArtifactUnavailable(CallCoreError):
    """No compiled artifact could be found in any tier for a tenant."""


class UnauthorizedActionAttempt(CallCoreError):
    """A rule proposed an action that is not on the tenant's allowlist."""

    def __init__(self, rule_id: str, action: str):
        super().__init__(f"rule {rule_id} proposed non-allowlisted action {action}")
        self.rule_id = rule_id
        self.action = action


class SessionStoreUnavailable(CallCoreError):
    """A session storage tier could not be reached."""


class PerformanceBudgetExceeded(CallCoreError):
    """A stage ran past its latency budget. Logged, never raised to callers."""

    def __init__(self, stage: str, elapsed_ms: float, budget_ms: float):
        super().__init__(f"{stage} took {elapsed_ms:.1f}ms (budget {budget_ms:.0f}ms)")
        self.stage = stage
        self.elapsed_ms = elapsed_ms
        self.budget_ms = budget_ms


@dataclass(frozen=True)
class PolicyCompileConflict:
    """Two same-priority rules in one category with overlapping patterns.

    Resolved at compile time by demoting the later rule; kept on the
    artifact so operators can see what was changed.
    """

    category: str
    kept_rule_id: str
    demoted_rule_id: str
    overlap: float
    old_priority: int
    new_priority: int

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "kept_rule_id": self.kept_rule_id,
            "demoted_rule_id": self.demoted_rule_id,
            "overlap": round(self.overlap, 3),
            "old_priority": self.old_priority,
            "new_priority": self.new_priority,
        }
