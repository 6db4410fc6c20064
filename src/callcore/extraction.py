"""Deterministic slot extraction from a single caller utterance.

Runs on every turn, including triage turns, and only ever produces
*pending* values. Nothing here confirms a slot.
"""

import logging
import re

from callcore.validation import (
    is_affirmative,
    is_negative,
    match_any_keyword,
    validate_address,
    validate_name,
    validate_phone,
    validate_zip,
)

logger = logging.getLogger(__name__)

_TITLE = r"(?:(?i:mr|mrs|ms|miss|dr)\.?\s+)"
_NAME_WORD = r"[A-Z][a-zA-Z'\-]+"

NAME_PATTERN = re.compile(
    rf"(?i:\b(?:this is|my name is|name's|name is|i'm|i am|it's)\s+)"
    rf"({_TITLE}?{_NAME_WORD}(?:\s+{_NAME_WORD})?)"
)

NAME_STOP_WORDS = frozenset({
    "calling", "having", "looking", "here", "just", "not", "good", "fine",
    "sure", "trying", "wondering", "okay", "ok", "still", "so", "really",
    "broken", "down", "ready", "home", "interested", "the", "a",
})

STREET_SUFFIXES = (
    "st", "street", "ave", "avenue", "rd", "road", "blvd", "boulevard",
    "dr", "drive", "ln", "lane", "ct", "court", "way", "pl", "place",
    "pkwy", "parkway", "cir", "circle", "ter", "terrace", "hwy", "highway",
    "trl", "trail",
)

ADDRESS_PATTERN = re.compile(
    r"\b(\d{1,6}\s+(?:[A-Za-z0-9']+\s+){0,4}?(?:" + "|".join(STREET_SUFFIXES) + r")\b\.?)",
    re.IGNORECASE,
)

PHONE_PATTERN = re.compile(r"(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}")
ZIP_PATTERN = re.compile(r"(?<![\d-])(\d{5})(?![\d-])")

EQUIPMENT_KEYWORDS = frozenset({
    "ac", "a/c", "air conditioner", "air conditioning", "furnace", "heater",
    "heat pump", "heat", "thermostat", "water heater", "unit", "system",
    "toilet", "sink", "pipe", "drain", "faucet", "outlet", "breaker", "duct",
})

PROBLEM_SIGNALS = frozenset({
    "down", "broken", "not working", "stopped working", "won't turn on",
    "won't start", "isn't working", "leaking", "leak", "noise", "noisy",
    "blowing warm", "blowing hot", "not cooling", "not heating", "no heat",
    "no air", "clogged", "smell", "frozen", "tripping",
})

TIME_SIGNALS = frozenset({
    "today", "tomorrow", "tonight", "asap", "as soon as possible", "right away",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "morning", "afternoon", "evening", "this week", "next week", "whenever",
    "anytime", "any time",
})

_CLAUSE_SPLIT = re.compile(r"\s*(?:[,.;!?\u2014\u2013]|\s-\s|\band\b|\bbut\b)\s*", re.IGNORECASE)


def _clauses(text: str) -> list[str]:
    return [c.strip() for c in _CLAUSE_SPLIT.split(text) if c and c.strip()]


def extract_name(text: str) -> str:
    match = NAME_PATTERN.search(text)
    if not match:
        return ""
    candidate = match.group(1)
    words = candidate.replace(".", " ").split()
    if words and words[-1].lower() in NAME_STOP_WORDS:
        return ""
    if words and words[0].lower() in NAME_STOP_WORDS:
        return ""
    return validate_name(candidate)


def extract_address(text: str) -> str:
    match = ADDRESS_PATTERN.search(text)
    if not match:
        return ""
    return validate_address(match.group(1).rstrip("."))


def extract_reason(text: str) -> str:
    for clause in _clauses(text):
        if match_any_keyword(clause, EQUIPMENT_KEYWORDS) and match_any_keyword(clause, PROBLEM_SIGNALS):
            return clause
    for clause in _clauses(text):
        if match_any_keyword(clause, PROBLEM_SIGNALS) and len(clause.split()) >= 2:
            return clause
    return ""


def extract_phone(text: str) -> str:
    match = PHONE_PATTERN.search(text)
    if not match:
        return ""
    return validate_phone(match.group(0))


def extract_zip(text: str) -> str:
    # A street number is not a ZIP
    without_address = ADDRESS_PATTERN.sub(" ", text)
    match = ZIP_PATTERN.search(without_address)
    if not match:
        return ""
    return validate_zip(match.group(1))


def extract_preferred_time(text: str) -> str:
    for clause in _clauses(text):
        if match_any_keyword(clause, TIME_SIGNALS):
            return clause
    return ""


EXTRACTORS = {
    "name": extract_name,
    "address": extract_address,
    "reason": extract_reason,
    "phone": extract_phone,
    "zip": extract_zip,
    "preferred_time": extract_preferred_time,
}


def extract_slots(text: str, slot_names) -> dict:
    """Run the extractor for each requested slot name that has one."""
    found = {}
    for name in slot_names:
        extractor = EXTRACTORS.get(name)
        if extractor is None:
            continue
        value = extractor(text)
        if value:
            found[name] = value
    if found:
        logger.debug("Extracted slots: %s", sorted(found))
    return found


def direct_answer(text: str, slot_name: str) -> str:
    """Interpret a bare reply to the slot prompt we just asked.

    "Bob Smith" in answer to "Can I get your name?" carries no "my name is"
    marker, so the targeted extractor misses it. Yes/no replies are never
    taken as answers.
    """
    cleaned = text.strip().strip(".!?")
    if not cleaned or is_affirmative(cleaned) or is_negative(cleaned):
        return ""
    if slot_name == "name":
        words = cleaned.split()
        if 1 <= len(words) <= 3 and all(w[:1].isupper() for w in words):
            return validate_name(cleaned)
        return ""
    if slot_name == "address":
        if re.search(r"\d", cleaned):
            return validate_address(cleaned)
        return ""
    if slot_name == "phone":
        return validate_phone(cleaned)
    if slot_name == "zip":
        return validate_zip(cleaned)
    if slot_name == "reason":
        return cleaned if len(cleaned.split()) >= 2 else ""
    return cleaned
