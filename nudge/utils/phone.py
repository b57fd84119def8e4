"""Phone number helpers."""

import re

E164_PATTERN = r"^\+[1-9]\d{1,14}$"

_E164_RE = re.compile(E164_PATTERN)


def is_e164(phone_number: str) -> bool:
    """Check whether a number is already in E.164 form."""
    return bool(_E164_RE.match(phone_number))


def format_phone_number(phone_number: str) -> str:
    """Normalise a phone number to E.164.

    Ten-digit numbers are treated as US/Canada and get a ``+1`` prefix. Any
    other input keeps its digits behind a ``+``.
    """
    digits = re.sub(r"\D", "", phone_number)

    if len(digits) == 10:
        return f"+1{digits}"

    return f"+{digits}"
