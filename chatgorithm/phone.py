"""Phone-number normalisation and message-to-contact matching.

WhatsApp delivers ``34666777888`` while agents type ``+34 666 777 888`` and
older rows were stored without the country code (``666777888``).  Every
comparison therefore happens on the digits only, and two numbers match when
one is a suffix of the other.  The shorter side must still carry enough
digits to identify a subscriber, otherwise ``"2"`` (from a sender such as
``"Agente 2"``) would match every number ending in 2.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

MIN_MATCH_DIGITS = 7

_NON_DIGITS = re.compile(r"\D")
_LETTERS = re.compile(r"[^\W\d_]")


def clean_number(value: Any) -> str:
    """Return only the digits of *value* (``""`` for ``None``/empty)."""
    if value is None:
        return ""
    return _NON_DIGITS.sub("", str(value))


def is_phone_sender(sender: Any) -> bool:
    """True when *sender* is a customer's phone rather than a staff/bot name."""
    if sender is None:
        return False
    raw = str(sender)
    return bool(clean_number(raw)) and not _LETTERS.search(raw)


def numbers_match(a: Any, b: Any) -> bool:
    """Country-code tolerant comparison of two phone numbers."""
    left, right = clean_number(a), clean_number(b)
    if not left or not right:
        return False
    if min(len(left), len(right)) < MIN_MATCH_DIGITS:
        return left == right
    return left.endswith(right) or right.endswith(left)


def is_related_to_chat(message: Mapping[str, Any], contact_phone: Any) -> bool:
    """Decide whether *message* belongs to the conversation with *contact_phone*."""
    if not clean_number(contact_phone):
        return True

    sender = message.get("sender")
    recipient = message.get("recipient")

    # Inbound: the customer wrote to us.
    if numbers_match(sender, contact_phone):
        return True
    # Outbound: we (bot or agent) wrote to the customer.
    if numbers_match(recipient, contact_phone):
        return True

    # Legacy bot/agent rows were stored without a recipient.
    if not is_phone_sender(sender) and not recipient:
        return True

    return False
