"""Parsing and handling of WhatsApp Cloud API webhook notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from chatgorithm.config import WEBHOOK_DEDUP_TTL_SECONDS
from chatgorithm.phone import clean_number
from chatgorithm.services.airtable_store import STATUS_NEW
from chatgorithm.services.cache import ExpiringLRUCache
from chatgorithm.services.chat import DEFAULT_CONTACT_NAME, ChatService

logger = logging.getLogger(__name__)

MEDIA_PLACEHOLDER = "(Media)"


@dataclass(frozen=True)
class InboundMessage:
    """One customer message extracted from a webhook body."""

    message_id: str
    sender: str
    text: str
    origin_phone_id: str
    profile_name: str | None = None


def _first_change(body: dict[str, Any]) -> dict[str, Any] | None:
    if not body.get("object"):
        return None
    try:
        return body["entry"][0]["changes"][0]
    except (KeyError, IndexError, TypeError):
        return None


def _message_text(msg: dict[str, Any]) -> str:
    """Text body, or the id of the chosen list row / button."""
    msg_type = msg.get("type")
    if msg_type == "text":
        return (msg.get("text") or {}).get("body", "")
    if msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        kind = interactive.get("type")
        if kind in ("list_reply", "button_reply"):
            return str((interactive.get(kind) or {}).get("id", ""))
    return MEDIA_PLACEHOLDER


def parse_inbound_message(body: dict[str, Any]) -> InboundMessage | None:
    """Return the first customer message of a notification, if any."""
    change = _first_change(body)
    if change is None:
        return None
    value = change.get("value") or {}
    messages = value.get("messages") or []
    if not messages:
        return None

    msg = messages[0]
    contacts = value.get("contacts") or []
    profile_name = ((contacts[0].get("profile") or {}).get("name")) if contacts else None
    return InboundMessage(
        message_id=msg.get("id", ""),
        sender=clean_number(msg.get("from")),
        text=_message_text(msg),
        origin_phone_id=(value.get("metadata") or {}).get("phone_number_id", ""),
        profile_name=profile_name,
    )


def parse_template_status(body: dict[str, Any]) -> tuple[str, str] | None:
    """``(meta_template_id, new_status)`` for a template review notification."""
    change = _first_change(body)
    if change is None or change.get("field") != "message_template_status_update":
        return None
    value = change.get("value") or {}
    meta_id, status = value.get("message_template_id"), value.get("event")
    if not meta_id or not status:
        return None
    return str(meta_id), str(status)


class InboundProcessor:
    """Store and broadcast inbound messages; decide whether the assistant answers."""

    def __init__(self, chat: ChatService, *, seen: ExpiringLRUCache | None = None) -> None:
        self.chat = chat
        self._seen = seen or ExpiringLRUCache(default_ttl=WEBHOOK_DEDUP_TTL_SECONDS)

    def handle(self, message: InboundMessage) -> str | None:
        """Process *message*.

        Returns the customer's name when the assistant should reply, else
        ``None``.  Meta retries deliveries, so ids already seen within the
        de-duplication window are ignored.
        """
        if message.message_id and not self._seen.add_if_absent(message.message_id):
            logger.info("Duplicate webhook ignored: %s", message.message_id)
            return None

        logger.info("Webhook message from %s: %.60r", message.sender, message.text)
        contact = self.chat.record_contact_activity(
            message.sender,
            message.text,
            name=message.profile_name,
            origin_phone_id=message.origin_phone_id,
            increment_unread=True,
        )

        # The line id as recipient lets the inbox file the message under the line.
        self.chat.save_and_emit_message(
            {
                "text": message.text,
                "sender": message.sender,
                "recipient": message.origin_phone_id,
                "type": "text",
                "origin_phone_id": message.origin_phone_id,
            },
            update_contact=False,
        )

        fields = contact["fields"] if contact else {}
        name = fields.get("name") or DEFAULT_CONTACT_NAME

        if self.chat.sessions.is_active(message.sender):
            logger.info("Assistant answering %s (active session)", message.sender)
            return name

        if contact is not None and fields.get("status") == STATUS_NEW and not fields.get("assigned_to"):
            logger.info("Assistant answering %s (new lead)", message.sender)
            return name

        logger.info(
            "Assistant skipped for %s (status=%s, assigned=%s)",
            message.sender, fields.get("status"), fields.get("assigned_to"),
        )
        return None
