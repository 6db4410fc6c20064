from enum import Enum

ACTIVE_LANES = {"discovery", "booking"}
CALL_ENDING_ACTIONS = {"TRANSFER", "TAKE_MESSAGE", "HANGUP"}


class Lane(Enum):
    DISCOVERY = "discovery"
    BOOKING = "booking"
    CLOSED = "closed"

    @property
    def is_active(self) -> bool:
        return self.value in ACTIVE_LANES

    @property
    def is_terminal(self) -> bool:
        return self is Lane.CLOSED


class TurnAction(Enum):
    CONTINUE = "CONTINUE"
    TRANSFER = "TRANSFER"
    TAKE_MESSAGE = "TAKE_MESSAGE"
    HANGUP = "HANGUP"

    @property
    def ends_conversation(self) -> bool:
        return self.value in CALL_ENDING_ACTIONS

    @classmethod
    def parse(cls, value: "str | TurnAction") -> "TurnAction":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


class Owner(Enum):
    """Which pipeline stage produced the draft response for a turn."""

    TRIAGE = "TRIAGE"
    DISCOVERY = "DISCOVERY"
    BOOKING = "BOOKING"
    CLOSING = "CLOSING"
    ESCALATION = "ESCALATION"
