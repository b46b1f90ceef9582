import re
from typing import Optional

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")
_NON_DIGITS = re.compile(r"\D+")


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def extract_email_address(value: Optional[str]) -> str:
    """Pull the address out of ``"Name <addr@host>"`` and normalize it."""
    raw = (value or "").strip()
    match = _ANGLE_ADDRESS.search(raw)
    if match:
        raw = match.group(1)
    return normalize_email(raw)


def normalize_e164(value: Optional[str]) -> Optional[str]:
    """Canonicalize a phone number to E.164.

    A bare 10-digit number is treated as US (+1). Numbers already carrying a
    leading ``+`` keep their country code. Anything else with digits is
    returned as ``+<digits>``; callers must pre-normalize ambiguous input.
    """
    raw = (value or "").strip()
    if not raw:
        return None
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return None
    if raw.startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"


def normalize_identity(channel: str, value: Optional[str]) -> Optional[str]:
    if channel == "email":
        return extract_email_address(value) or None
    if channel == "sms":
        return normalize_e164(value)
    raise ValueError(f"Unsupported channel: {channel}")
