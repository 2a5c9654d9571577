"""Text and contact-id helpers shared by the flow engine and outbound sends."""
from __future__ import annotations

import re

_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")

PERSONAL_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"


def normalize_text(text: str) -> str:
    """Strip punctuation and symbols, collapse whitespace, lowercase."""
    if not text:
        return ""
    cleaned = _NON_WORD.sub("", text)
    return _SPACES.sub(" ", cleaned).strip().lower()


def to_contact_id(phone: str) -> str:
    """Turn a bare phone number into a personal contact id."""
    if "@" in phone:
        return phone
    return f"{re.sub(r'[^0-9]', '', phone)}{PERSONAL_SUFFIX}"


def is_group_contact(contact_id: str) -> bool:
    return contact_id.endswith(GROUP_SUFFIX)
