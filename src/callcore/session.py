from dataclasses import dataclass, field
from typing import Optional

from callcore.states import Lane


@dataclass
class DecisionRecord:
    """One pipeline stage's explicit attempted/skipped result for a turn."""

    turn: int
    stage: str
    attempted: bool
    outcome: str
    reason: str = ""
    detail: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "turn": self.turn,
            "stage": self.stage,
            "attempted": self.attempted,
            "outcome": self.outcome,
            "reason": self.reason,
            "detail": dict(self.detail),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DecisionRecord":
        return cls(
            turn=int(data.get("turn", 0)),
            stage=data.get("stage", ""),
            attempted=bool(data.get("attempted", False)),
            outcome=data.get("outcome", ""),
            reason=data.get("reason", ""),
            detail=dict(data.get("detail", {})),
        )


@dataclass
class SlotSet:
    """Pending (heard) and confirmed (read back and accepted) slot values.

    Values only reach ``confirmed`` through :meth:`confirm`.
    """

    pending: dict = field(default_factory=dict)
    confirmed: dict = field(default_factory=dict)
    skipped: list = field(default_factory=list)

    def set_pending(self, name: str, value: str) -> bool:
        """Store an extracted value. Returns False when nothing changed."""
        if not value:
            return False
        if self.confirmed.get(name) == value or self.pending.get(name) == value:
            return False
        self.pending[name] = value
        if name in self.skipped:
            self.skipped.remove(name)
        return True

    def confirm(self, names: list[str]) -> list[str]:
        promoted = []
        for name in names:
            if name in self.pending:
                self.confirmed[name] = self.pending.pop(name)
                promoted.append(name)
        return promoted

    def reject(self, names: list[str]) -> None:
        for name in names:
            self.pending.pop(name, None)

    def skip(self, name: str) -> None:
        self.pending.pop(name, None)
        if name not in self.skipped:
            self.skipped.append(name)

    def has_value(self, name: str) -> bool:
        return name in self.pending or name in self.confirmed

    def is_settled(self, name: str) -> bool:
        """Confirmed, or deliberately given up on."""
        if name in self.skipped:
            return True
        return name in self.confirmed and name not in self.pending

    def value(self, name: str) -> str:
        return self.pending.get(name) or self.confirmed.get(name, "")

    def to_dict(self) -> dict:
        return {
            "pending": dict(self.pending),
            "confirmed": dict(self.confirmed),
            "skipped": list(self.skipped),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SlotSet":
        return cls(
            pending=dict(data.get("pending", {})),
            confirmed=dict(data.get("confirmed", {})),
            skipped=list(data.get("skipped", [])),
        )


@dataclass
class CallSession:
    call_id: str
    tenant_id: str
    caller_id: str = ""
    lane: Lane = Lane.DISCOVERY
    slots: SlotSet = field(default_factory=SlotSet)

    # Discovery bookkeeping
    current_slot: str = ""
    awaiting_confirmation: list = field(default_factory=list)
    reprompt_counts: dict = field(default_factory=dict)
    rephrased_slots: list = field(default_factory=list)

    # Classification
    last_intent: str = ""
    served_scenarios: list = field(default_factory=list)

    # Caller-state signals
    last_utterance: str = ""
    behavior_flags: list = field(default_factory=list)
    frustration_count: int = 0

    # Outcome
    owner: str = ""
    booking_requested: bool = False
    transfer_target: str = ""
    outcome: str = ""

    # Call metadata
    start_time: float = 0.0
    transcript_log: list = field(default_factory=list)
    decisions: list = field(default_factory=list)

    # Metadata
    turn_count: int = 0
    last_checkpoint_turn: int = 0

    def record(self, stage: str, attempted: bool, outcome: str, reason: str = "", **detail) -> DecisionRecord:
        rec = DecisionRecord(
            turn=self.turn_count,
            stage=stage,
            attempted=attempted,
            outcome=outcome,
            reason=reason,
            detail=detail,
        )
        self.decisions.append(rec)
        return rec

    def turn_decisions(self, turn: Optional[int] = None) -> list[DecisionRecord]:
        wanted = self.turn_count if turn is None else turn
        return [d for d in self.decisions if d.turn == wanted]

    def decision(self, stage: str, turn: Optional[int] = None) -> Optional[DecisionRecord]:
        for rec in reversed(self.turn_decisions(turn)):
            if rec.stage == stage:
                return rec
        return None

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "tenant_id": self.tenant_id,
            "caller_id": self.caller_id,
            "lane": self.lane.value,
            "slots": self.slots.to_dict(),
            "current_slot": self.current_slot,
            "awaiting_confirmation": list(self.awaiting_confirmation),
            "reprompt_counts": dict(self.reprompt_counts),
            "rephrased_slots": list(self.rephrased_slots),
            "last_intent": self.last_intent,
            "served_scenarios": list(self.served_scenarios),
            "last_utterance": self.last_utterance,
            "behavior_flags": list(self.behavior_flags),
            "frustration_count": self.frustration_count,
            "owner": self.owner,
            "booking_requested": self.booking_requested,
            "transfer_target": self.transfer_target,
            "outcome": self.outcome,
            "start_time": self.start_time,
            "transcript_log": list(self.transcript_log),
            "decisions": [d.to_dict() for d in self.decisions],
            "turn_count": self.turn_count,
            "last_checkpoint_turn": self.last_checkpoint_turn,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CallSession":
        return cls(
            call_id=data["call_id"],
            tenant_id=data["tenant_id"],
            caller_id=data.get("caller_id", ""),
            lane=Lane(data.get("lane", Lane.DISCOVERY.value)),
            slots=SlotSet.from_dict(data.get("slots", {})),
            current_slot=data.get("current_slot", ""),
            awaiting_confirmation=list(data.get("awaiting_confirmation", [])),
            reprompt_counts=dict(data.get("reprompt_counts", {})),
            rephrased_slots=list(data.get("rephrased_slots", [])),
            last_intent=data.get("last_intent", ""),
            served_scenarios=list(data.get("served_scenarios", [])),
            last_utterance=data.get("last_utterance", ""),
            behavior_flags=list(data.get("behavior_flags", [])),
            frustration_count=int(data.get("frustration_count", 0)),
            owner=data.get("owner", ""),
            booking_requested=bool(data.get("booking_requested", False)),
            transfer_target=data.get("transfer_target", ""),
            outcome=data.get("outcome", ""),
            start_time=float(data.get("start_time", 0.0)),
            transcript_log=list(data.get("transcript_log", [])),
            decisions=[DecisionRecord.from_dict(d) for d in data.get("decisions", [])],
            turn_count=int(data.get("turn_count", 0)),
            last_checkpoint_turn=int(data.get("last_checkpoint_turn", 0)),
        )
