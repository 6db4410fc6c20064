import logging
import time
from dataclasses import dataclass
from typing import Optional

from callcore.compiler import PolicyArtifact
from callcore.config import SlotDefinition, TenantConfig
from callcore.extraction import direct_answer, extract_slots
from callcore.policy_engine import PolicyContext, PolicyEngine, PolicyOutcome
from callcore.router import ClassificationResult, IntentRouter, RouterContext
from callcore.session import CallSession
from callcore.states import Lane, Owner, TurnAction
from callcore.triggers import FRUSTRATED, REFUSAL, detect_triggers
from callcore.validation import is_affirmative, is_negative, normalize_utterance

logger = logging.getLogger(__name__)

MAX_FRUSTRATION = 3
CONFIRM_KEY = "__confirm__"

ESCALATION_SCRIPT = (
    "I want to make sure you get the right help. "
    "Let me take a message and have someone from the team call you right back."
)
FRUSTRATION_SCRIPT = (
    "I'm sorry this is taking so long. "
    "Let me take a message and have someone from the team call you right back."
)
RETRY_CONFIRM_SCRIPT = "Sorry about that. Let's fix it."

SLOT_LABELS = {
    "name": "your name as",
    "address": "the address as",
    "reason": "the issue as",
    "phone": "your number as",
    "zip": "the ZIP code as",
    "preferred_time": "the time as",
}


@dataclass
class Draft:
    response: str
    action: TurnAction = TurnAction.CONTINUE
    owner: Owner = Owner.DISCOVERY
    classification: Optional[ClassificationResult] = None


@dataclass
class TurnOutcome:
    action: TurnAction
    speech_text: str
    owner: Owner
    transfer_target: str = ""
    policy: Optional[PolicyOutcome] = None
    classification: Optional[ClassificationResult] = None


def _slot_label(name: str) -> str:
    return SLOT_LABELS.get(name, f"{name.replace('_', ' ')} as")


def confirmation_prompt(session: CallSession, names: list[str]) -> str:
    parts = [f"{_slot_label(n)} {session.slots.pending[n]}" for n in names]
    if len(parts) == 1:
        listed = parts[0]
    else:
        listed = ", ".join(parts[:-1]) + f", and {parts[-1]}"
    return f"Just to confirm, I have {listed}. Is that right?"


class ConversationStateMachine:
    """Runs one caller turn: triage, discovery or booking, then the policy overlay.

    Each stage appends a ``DecisionRecord`` to the session whether it ran,
    matched or was skipped, so the trace of any turn shows why the caller
    heard what they heard.
    """

    def __init__(self, router: IntentRouter, policy: PolicyEngine):
        self.router = router
        self.policy = policy

    async def process(
        self,
        session: CallSession,
        utterance: str,
        config: TenantConfig,
        artifact: PolicyArtifact | None,
    ) -> TurnOutcome:
        session.turn_count += 1
        session.transcript_log.append({
            "role": "user",
            "content": utterance,
            "timestamp": time.time(),
            "lane": session.lane.value,
        })

        flags = detect_triggers(utterance, session.last_utterance)
        session.behavior_flags = flags
        session.last_utterance = normalize_utterance(utterance)
        if FRUSTRATED in flags:
            session.frustration_count += 1
        session.record("triggers", True, "raised" if flags else "none", flags=list(flags))

        if session.turn_count > config.max_turns_per_call:
            logger.warning("Per-call turn limit exceeded for %s, taking a message", session.call_id)
            session.record("turn_limit", True, "exceeded", f"{session.turn_count} > {config.max_turns_per_call}")
            draft = Draft(ESCALATION_SCRIPT, TurnAction.TAKE_MESSAGE, Owner.ESCALATION)
        elif session.frustration_count >= MAX_FRUSTRATION and session.lane.is_active:
            session.record("frustration_guard", True, "escalated", f"{session.frustration_count} frustration signals")
            draft = Draft(FRUSTRATION_SCRIPT, TurnAction.TAKE_MESSAGE, Owner.ESCALATION)
        else:
            handler = getattr(self, f"_handle_{session.lane.value}")
            draft = await handler(session, utterance, config, flags)

        session.owner = draft.owner.value
        policy = self.policy.apply(
            draft.response,
            utterance,
            PolicyContext(
                base_action=draft.action,
                turn=session.turn_count,
                flags=tuple(flags),
                timezone=config.timezone,
                budget_ms=config.policy_budget_ms,
            ),
            artifact,
        )
        session.record(
            "policy",
            True,
            "short_circuit" if policy.short_circuit else ("applied" if policy.applied_rule_ids else "unchanged"),
            rules=list(policy.applied_rule_ids),
            rejected=list(policy.rejected_rule_ids),
            checksum=policy.artifact_checksum,
            draft_action=draft.action.value,
            final_action=policy.action.value,
        )

        if policy.action.ends_conversation:
            session.lane = Lane.CLOSED
            session.outcome = policy.action.value.lower()
            if policy.action is TurnAction.TRANSFER:
                session.transfer_target = policy.transfer_target

        session.transcript_log.append({
            "role": "agent",
            "content": policy.response,
            "timestamp": time.time(),
            "lane": session.lane.value,
            "action": policy.action.value,
        })
        return TurnOutcome(
            action=policy.action,
            speech_text=policy.response,
            owner=draft.owner,
            transfer_target=policy.transfer_target if policy.action is TurnAction.TRANSFER else "",
            policy=policy,
            classification=draft.classification,
        )

    # ── Lane handlers ──

    async def _handle_discovery(self, session, utterance, config: TenantConfig, flags) -> Draft:
        prelude = self._capture(session, utterance, config, flags)
        triage, classification = await self._triage(session, utterance, config)
        draft = triage or self._step(session, config, config.discovery_slots, Owner.DISCOVERY, flags, prelude)
        draft.classification = classification
        return draft

    async def _handle_booking(self, session, utterance, config: TenantConfig, flags) -> Draft:
        prelude = self._capture(session, utterance, config, flags)
        session.record("triage", False, "skipped", "not_discovery_lane")
        return self._step(session, config, config.booking_slots, Owner.BOOKING, flags, prelude)

    async def _handle_closed(self, session, utterance, config: TenantConfig, flags) -> Draft:
        session.record("triage", False, "skipped", "call_closed")
        company = config.company_name
        farewell = f"Thanks for calling {company}. Have a great day!" if company else "Thanks for calling. Have a great day!"
        return Draft(farewell, TurnAction.HANGUP, Owner.CLOSING)

    # ── Stages ──

    def _capture(self, session: CallSession, utterance: str, config: TenantConfig, flags) -> str:
        """Resolve any open confirmation, then extract new pending values.

        Returns a short lead-in for the next prompt ("" when none applies).
        """
        prelude = ""
        names = [s.name for s in config.discovery_slots + config.booking_slots]
        found = extract_slots(utterance, names)

        if session.awaiting_confirmation:
            awaited = list(session.awaiting_confirmation)
            corrections = {k: v for k, v in found.items() if k in awaited}
            if corrections:
                for name, value in corrections.items():
                    session.slots.set_pending(name, value)
                session.record("slot_confirmation", True, "corrected", slots=sorted(corrections))
            elif is_affirmative(utterance):
                promoted = session.slots.confirm(awaited)
                session.awaiting_confirmation = []
                session.reprompt_counts.pop(CONFIRM_KEY, None)
                session.record("slot_confirmation", True, "confirmed", slots=promoted)
            elif is_negative(utterance):
                session.slots.reject(awaited)
                session.awaiting_confirmation = []
                session.reprompt_counts.pop(CONFIRM_KEY, None)
                session.current_slot = ""
                prelude = RETRY_CONFIRM_SCRIPT
                session.record("slot_confirmation", True, "rejected", slots=awaited)
            else:
                session.record("slot_confirmation", True, "unanswered", slots=awaited)
        elif session.current_slot and session.current_slot not in found and REFUSAL not in flags:
            answer = direct_answer(utterance, session.current_slot)
            if answer:
                found[session.current_slot] = answer

        changed = [name for name, value in found.items() if session.slots.set_pending(name, value)]
        session.record(
            "extraction",
            True,
            "captured" if changed else "nothing_new",
            slots=changed,
        )
        return prelude

    async def _triage(self, session: CallSession, utterance: str, config: TenantConfig) -> tuple:
        """Returns the triage draft (None when discovery keeps the turn) and the classification."""
        if not config.triage_enabled:
            session.record("triage", False, "skipped", "triage_disabled")
            return None, None
        if not utterance.strip():
            session.record("triage", False, "skipped", "empty_utterance")
            return None, None

        result = await self.router.classify(
            utterance,
            RouterContext(
                tenant_id=session.tenant_id,
                config=config,
                caller_id=session.caller_id,
                last_intent=session.last_intent,
            ),
        )
        if result.matched and result.intent:
            session.last_intent = result.intent

        detail = {
            "tier": result.tier,
            "scenario_id": result.scenario_id,
            "category": result.category,
            "confidence": round(result.confidence, 3),
            "escalate": result.escalate,
            "tiers": [o.to_dict() for o in result.outcomes],
        }
        served = {s.get("scenario_id") for s in session.served_scenarios}

        if not result.matched:
            reason = "router_escalated" if result.escalate else "no_tier_matched"
            session.record("triage", True, "no_match", reason, **detail)
            return None, result
        if result.confidence < config.triage_threshold:
            session.record(
                "triage", True, "not_selected",
                f"confidence {result.confidence:.2f} below {config.triage_threshold:.2f}", **detail,
            )
            return None, result
        if result.category not in config.triage_categories:
            session.record("triage", True, "not_selected", f"category {result.category} not allowed", **detail)
            return None, result
        if result.scenario_id and result.scenario_id in served:
            session.record("triage", True, "not_selected", "already_answered", **detail)
            return None, result

        session.record("triage", True, "selected", result.scenario_id or result.intent, **detail)
        session.served_scenarios.append({
            "scenario_id": result.scenario_id,
            "intent": result.intent,
            "category": result.category,
        })
        action = TurnAction.parse(result.action) if result.action else TurnAction.CONTINUE
        return Draft(result.response, action, Owner.TRIAGE), result

    def _step(self, session: CallSession, config: TenantConfig, slots: tuple, owner: Owner, flags, prelude: str) -> Draft:
        draft = self._next_prompt(session, config, slots, owner, flags)
        if prelude and draft.action is TurnAction.CONTINUE:
            draft.response = f"{prelude} {draft.response}"
        return draft

    def _next_prompt(self, session: CallSession, config: TenantConfig, slots: tuple, owner: Owner, flags) -> Draft:
        if session.awaiting_confirmation:
            return self._reconfirm(session, config, owner)

        self._regression_guard(session, slots)

        # each pass either prompts or skips one slot, so this terminates
        for _ in range(len(slots) + 1):
            slot = self._next_unfilled(session, slots)
            if slot is None:
                break
            draft = self._ask(session, config, slot, owner, flags)
            if draft is not None:
                return draft

        pending = [s.name for s in slots if s.name in session.slots.pending]
        if pending:
            session.awaiting_confirmation = pending
            session.current_slot = ""
            session.record("slot_confirmation", True, "requested", slots=pending)
            return Draft(confirmation_prompt(session, pending), TurnAction.CONTINUE, owner)

        return self._advance_lane(session, config, flags)

    def _regression_guard(self, session: CallSession, slots: tuple) -> None:
        """Never re-ask a slot that already holds an unconfirmed value."""
        held = [
            s.name for s in slots
            if s.required and s.name in session.slots.pending and s.name != session.current_slot
        ]
        if held:
            session.record("regression_guard", True, "skipped_reask", "already_captured", slots=held)
        else:
            session.record("regression_guard", True, "not_needed")

    @staticmethod
    def _next_unfilled(session: CallSession, slots: tuple) -> Optional[SlotDefinition]:
        for slot in slots:
            if not slot.required:
                continue
            if session.slots.has_value(slot.name) or slot.name in session.slots.skipped:
                continue
            return slot
        return None

    def _ask(self, session: CallSession, config: TenantConfig, slot: SlotDefinition, owner: Owner, flags) -> Optional[Draft]:
        """Prompt for ``slot``, or apply its loop policy. None means the slot was skipped."""
        asked_last_turn = session.current_slot == slot.name
        if asked_last_turn:
            session.reprompt_counts[slot.name] = session.reprompt_counts.get(slot.name, 0) + 1
        session.current_slot = slot.name

        if asked_last_turn and REFUSAL in flags:
            return self._loop_policy(session, slot, owner, "caller_refused")
        count = session.reprompt_counts.get(slot.name, 0)
        if count > config.max_reprompts:
            return self._loop_policy(session, slot, owner, f"reprompted {count} times")

        use_rephrase = slot.name in session.rephrased_slots and slot.rephrase_prompt
        session.record("slot_prompt", True, "reprompt" if asked_last_turn else "prompt", slot=slot.name, attempt=count)
        return Draft(slot.rephrase_prompt if use_rephrase else slot.prompt, TurnAction.CONTINUE, owner)

    def _loop_policy(self, session: CallSession, slot: SlotDefinition, owner: Owner, reason: str) -> Optional[Draft]:
        policy = slot.on_loop
        if policy == "rephrase" and slot.rephrase_prompt and slot.name not in session.rephrased_slots:
            session.rephrased_slots.append(slot.name)
            session.reprompt_counts[slot.name] = 0
            session.record("loop_guard", True, "rephrase", reason, slot=slot.name)
            return Draft(slot.rephrase_prompt, TurnAction.CONTINUE, owner)
        if policy == "skip":
            session.slots.skip(slot.name)
            session.current_slot = ""
            session.record("loop_guard", True, "skip", reason, slot=slot.name)
            logger.info("Skipping slot %s for %s: %s", slot.name, session.call_id, reason)
            return None
        session.record("loop_guard", True, "escalate", reason, slot=slot.name)
        logger.warning("Escalating %s on slot %s: %s", session.call_id, slot.name, reason)
        return Draft(ESCALATION_SCRIPT, TurnAction.TAKE_MESSAGE, Owner.ESCALATION)

    def _reconfirm(self, session: CallSession, config: TenantConfig, owner: Owner) -> Draft:
        count = session.reprompt_counts.get(CONFIRM_KEY, 0) + 1
        session.reprompt_counts[CONFIRM_KEY] = count
        if count > config.max_reprompts:
            session.record("loop_guard", True, "escalate", f"confirmation asked {count} times", slot=CONFIRM_KEY)
            return Draft(ESCALATION_SCRIPT, TurnAction.TAKE_MESSAGE, Owner.ESCALATION)
        session.record("regression_guard", False, "skipped", "awaiting_confirmation")
        return Draft(confirmation_prompt(session, session.awaiting_confirmation), TurnAction.CONTINUE, owner)

    def _advance_lane(self, session: CallSession, config: TenantConfig, flags) -> Draft:
        if session.lane is Lane.DISCOVERY:
            session.lane = Lane.BOOKING
            session.current_slot = ""
            session.record("lane_transition", True, "advanced", "discovery_complete", to=Lane.BOOKING.value)
            return self._next_prompt(session, config, config.booking_slots, Owner.BOOKING, flags)

        session.lane = Lane.CLOSED
        session.booking_requested = True
        session.record("lane_transition", True, "advanced", "booking_complete", to=Lane.CLOSED.value)
        when = session.slots.confirmed.get("preferred_time", "")
        who = f"Someone from {config.company_name}" if config.company_name else "Someone from our team"
        timing = f" for {when}" if when else ""
        return Draft(
            f"You're all set. {who} will call to confirm your appointment{timing}. Is there anything else I can help with?",
            TurnAction.CONTINUE,
            Owner.CLOSING,
        )
