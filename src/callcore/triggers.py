"""Caller-state signals.

Flags raised here are stored on the session for the turn and handed to
the policy engine, where BehaviorRules with matching ``when_flags`` pick
them up (e.g. an empathetic acknowledgment when the caller is frustrated).
"""

from callcore.validation import match_any_keyword, normalize_utterance

FRUSTRATED = "frustrated"
DISTRUST = "distrust"
REFUSAL = "refusal"
REPEAT = "repeat"

FRUSTRATION_SIGNALS = frozenset({
    "ridiculous", "frustrated", "frustrating", "annoyed", "annoying",
    "this is crazy", "unbelievable", "come on", "third time", "already told you",
    "i just told you", "are you listening", "waste of time", "useless",
})

DISTRUST_SIGNALS = frozenset({
    "are you a robot", "are you a bot", "are you real", "is this a real person",
    "real person", "am i talking to a machine", "is this a scam", "scam",
    "how do i know", "is this legit",
})

REFUSAL_SIGNALS = frozenset({
    "i don't want to give", "i'd rather not", "rather not say", "none of your business",
    "not telling you", "why do you need", "i won't give", "skip that",
    "don't want to say", "i don't want to say", "prefer not to",
})


def detect_triggers(text: str, previous_utterance: str = "") -> list[str]:
    """Return the caller-state flags present in this utterance.

    ``previous_utterance`` is the normalized text of the caller's last
    turn; an identical non-empty utterance raises the repeat flag.
    """
    flags = []
    if match_any_keyword(text, FRUSTRATION_SIGNALS):
        flags.append(FRUSTRATED)
    if match_any_keyword(text, DISTRUST_SIGNALS):
        flags.append(DISTRUST)
    if match_any_keyword(text, REFUSAL_SIGNALS):
        flags.append(REFUSAL)
    normalized = normalize_utterance(text)
    if normalized and normalized == previous_utterance:
        flags.append(REPEAT)
    return flags
