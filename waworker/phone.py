from __future__ import annotations

import re
from typing import Optional

JID_SUFFIX = "@s.whatsapp.net"
BRAZIL_COUNTRY_CODE = "55"

_NON_DIGITS_RE = re.compile(r"\D+")


def normalize_number(raw: str) -> str:
    """Strip formatting and drop the Brazilian mobile ninth digit.

    ``55 DD 9XXXXXXXX`` becomes ``55 DD XXXXXXXX``; other numbers only lose
    their non-digit characters.
    """

    digits = _NON_DIGITS_RE.sub("", raw or "")
    if not digits:
        raise ValueError("invalid_recipient")
    if digits.startswith(BRAZIL_COUNTRY_CODE):
        local = digits[4:]
        if len(local) == 9 and local.startswith("9"):
            digits = digits[:4] + local[1:]
    return digits


def to_jid(recipient: str) -> str:
    cleaned = (recipient or "").strip()
    if "@" in cleaned:
        return cleaned
    return normalize_number(cleaned) + JID_SUFFIX


def identity_from_jid(jid: Optional[str]) -> Optional[str]:
    """Phone number of a JID such as ``5511...:12@s.whatsapp.net``."""

    if not jid:
        return None
    return jid.split(":", 1)[0].split("@", 1)[0] or None


__all__ = ["JID_SUFFIX", "identity_from_jid", "normalize_number", "to_jid"]
