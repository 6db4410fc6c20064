"""Entry point used by the telephony collaborator, once per caller utterance."""

import logging
from dataclasses import dataclass
from typing import Optional

from callcore.config import TenantDirectory, check_config_wiring
from callcore.policy_engine import SAFE_DEFAULT_ARTIFACT, PolicyEngine
from callcore.session import CallSession
from callcore.session_store import SessionStore
from callcore.state_machine import ConversationStateMachine
from callcore.states import TurnAction

logger = logging.getLogger(__name__)

LAST_RESORT_TRANSFER = "I'm sorry, I'm having trouble on my end. Let me transfer you to someone who can help."
LAST_RESORT_CONTINUE = "I'm sorry, I'm having trouble on my end. Could you say that one more time?"


@dataclass
class TurnResult:
    action: TurnAction
    speech_text: str
    transfer_target: str = ""
    session_handle: Optional[CallSession] = None

    def to_dict(self) -> dict:
        data = {
            "action": self.action.value,
            "speech_text": self.speech_text,
            "transfer_target": self.transfer_target or None,
        }
        if self.session_handle is not None:
            session = self.session_handle
            data["session"] = {
                "call_id": session.call_id,
                "lane": session.lane.value,
                "turn": session.turn_count,
                "owner": session.owner,
                "pending_slots": dict(session.slots.pending),
                "confirmed_slots": dict(session.slots.confirmed),
            }
        return data


class TurnProcessor:
    def __init__(
        self,
        directory: TenantDirectory,
        sessions: SessionStore,
        machine: ConversationStateMachine,
        policy: PolicyEngine,
    ):
        check_config_wiring()
        self.directory = directory
        self.sessions = sessions
        self.machine = machine
        self.policy = policy

    async def process_turn(
        self,
        tenant_id: str,
        call_id: str,
        caller_id: str,
        utterance_text: str,
        session_handle: Optional[CallSession] = None,
    ) -> TurnResult:
        """Decide the agent's next move. Never raises."""
        session = session_handle
        try:
            config = self.directory.get(tenant_id)
            if session is None or session.call_id != call_id:
                session = await self.sessions.get(call_id, tenant_id, caller_id)
            artifact = await self.policy.artifact_for(tenant_id)

            booked_before = session.booking_requested
            outcome = await self.machine.process(session, utterance_text or "", config, artifact)

            event = ""
            if outcome.action is TurnAction.TRANSFER:
                event = "transfer"
            elif session.booking_requested and not booked_before:
                event = "booking"
            await self.sessions.update(session, event=event, checkpoint_every=config.checkpoint_every_turns)

            logger.info(
                "turn call=%s tenant=%s turn=%d owner=%s action=%s",
                call_id, tenant_id, session.turn_count, outcome.owner.value, outcome.action.value,
            )
            return TurnResult(
                action=outcome.action,
                speech_text=outcome.speech_text,
                transfer_target=outcome.transfer_target,
                session_handle=session,
            )
        except Exception:
            logger.exception("Turn failed for call %s, using last-resort response", call_id)
            return self._last_resort(tenant_id, session)

    def _last_resort(self, tenant_id: str, session: Optional[CallSession]) -> TurnResult:
        """Apology and transfer, unless transfers are not allowed or there is nowhere to send the call."""
        artifact = self.policy.registry.active(tenant_id) or SAFE_DEFAULT_ARTIFACT
        target = artifact.transfers[0].rule.target if artifact.transfers else ""
        if not target or not artifact.is_allowed(TurnAction.TRANSFER):
            return TurnResult(TurnAction.CONTINUE, LAST_RESORT_CONTINUE, session_handle=session)
        return TurnResult(TurnAction.TRANSFER, LAST_RESORT_TRANSFER, target, session_handle=session)
