import re


def match_any_keyword(text: str, keywords: set[str] | frozenset[str] | tuple) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf'\b{re.escape(kw)}\b', lower) for kw in keywords)


def matched_keywords(text: str, keywords) -> list[str]:
    """Return the keywords that appear in text as whole words, in input order."""
    lower = text.lower()
    return [kw for kw in keywords if re.search(rf'\b{re.escape(kw)}\b', lower)]


def normalize_utterance(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace.

    Used as the key for the response cache and for repeated-input detection,
    so "My AC is down!" and "my ac is down" hit the same entry.
    """
    lowered = text.lower().replace("’", "'")
    cleaned = re.sub(r"[^a-z0-9' ]+", " ", lowered)
    return re.sub(r"\s+", " ", cleaned).strip()


SENTINEL_VALUES = {
    "not provided", "n/a", "na", "unknown", "none", "tbd",
    "{{name}}", "{{address}}", "name", "address",
}

YES_SIGNALS = frozenset({
    "yes", "yeah", "yep", "yup", "sounds right", "sounds good",
    "correct", "that's right", "that is right", "exactly", "go ahead",
})
NO_SIGNALS = frozenset({
    "no", "nope", "nah", "not quite", "that's wrong", "that's not right",
    "incorrect", "wrong",
})

WORD_TO_DIGIT = {
    "zero": "0", "oh": "0", "o": "0",
    "one": "1", "two": "2", "three": "3", "four": "4",
    "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}


def words_to_digits(text: str) -> str:
    """Convert number words and single digits to a digit string.

    Example: "seven eight seven zero one" -> "78701"
    """
    tokens = re.findall(r"[a-zA-Z]+|\d", text.lower())
    digits = []
    for tok in tokens:
        if tok in WORD_TO_DIGIT:
            digits.append(WORD_TO_DIGIT[tok])
        elif tok.isdigit():
            digits.append(tok)
    return "".join(digits)


def is_affirmative(text: str) -> bool:
    return match_any_keyword(text, YES_SIGNALS) and not is_negative(text)


def is_negative(text: str) -> bool:
    return match_any_keyword(text, NO_SIGNALS)


def validate_zip(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip()
    if re.match(r"^\d{5}$", cleaned):
        return cleaned
    return ""


def validate_name(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip().strip(",.")
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    # Reject phone numbers used as names
    if re.match(r"^[\d+\-() ]{7,}$", cleaned):
        return ""
    if "{{" in cleaned or "}}" in cleaned:
        return ""
    if any(ch.isdigit() for ch in cleaned):
        return ""
    return cleaned


def validate_address(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip().strip(",")
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    if re.search(r"\bor\b", cleaned, re.IGNORECASE):
        return ""
    # Must contain at least one letter (rejects "7801", "78001")
    if not re.search(r"[a-zA-Z]", cleaned):
        return ""
    # Must be at least 5 characters (rejects "Oak", "1 Rk")
    if len(cleaned) < 5:
        return ""
    return cleaned


def validate_phone(value: str | None) -> str:
    """Return the bare 10-digit number, or "" if it isn't one."""
    if not value:
        return ""
    digits = re.sub(r"\D", "", value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return ""
    return digits
