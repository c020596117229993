"""Conversation plumbing shared by the webhook, the sockets and the assistant.

Real-time first: every message is pushed to the connected agents *before*
it is written to Airtable, so the inbox updates instantly even when Airtable
is slow.  Persistence failures are logged and never bubble up, because the
socket event has already gone out.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Any

from chatgorithm.phone import clean_number, is_phone_sender, is_related_to_chat
from chatgorithm.services.airtable_store import (
    STATUS_NEW,
    STATUS_OPEN,
    AirtableStore,
    AirtableStoreError,
)
from chatgorithm.services.realtime import Broadcaster
from chatgorithm.services.whatsapp_client import WhatsAppAPIError, WhatsAppClient

logger = logging.getLogger(__name__)

BOT_SENDER = "Bot IA"
BOT_NAME = "Laura"
DEFAULT_CONTACT_NAME = "Cliente"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class AISessionRegistry:
    """Phones whose conversation is currently driven by the assistant."""

    def __init__(self, broadcaster: Broadcaster) -> None:
        self._broadcaster = broadcaster
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def activate(self, phone: str) -> None:
        clean = clean_number(phone)
        with self._lock:
            self._active.add(clean)
        self._broadcaster.emit("ai_active_change", {"phone": clean, "active": True})

    def deactivate(self, phone: str) -> bool:
        """Stop the assistant for *phone*.  Returns whether it was active."""
        clean = clean_number(phone)
        with self._lock:
            was_active = clean in self._active
            self._active.discard(clean)
        self._broadcaster.emit("ai_active_change", {"phone": clean, "active": False})
        return was_active

    def is_active(self, phone: str) -> bool:
        with self._lock:
            return clean_number(phone) in self._active


class ChatService:
    """Send, store and broadcast messages; keep contacts up to date."""

    def __init__(
        self,
        store: AirtableStore,
        whatsapp: WhatsAppClient,
        broadcaster: Broadcaster,
    ) -> None:
        self.store = store
        self.whatsapp = whatsapp
        self.broadcaster = broadcaster
        self.sessions = AISessionRegistry(broadcaster)

    # ── Messages ─────────────────────────────────────────────────────

    def save_and_emit_message(
        self, message: dict[str, Any], *, update_contact: bool = True,
    ) -> dict[str, Any]:
        """Normalise, broadcast and persist one chat message.

        Customer senders are reduced to digits; staff and bot names are kept
        verbatim.  The recipient is always a bare number (or line id).
        """
        sender = message.get("sender") or ""
        from_customer = is_phone_sender(sender)
        payload = {
            **message,
            "sender": clean_number(sender) if from_customer else sender,
            "recipient": clean_number(message.get("recipient")),
            "timestamp": message.get("timestamp") or _now_iso(),
        }

        logger.info(
            "Emitting message %s -> %s: %.20r",
            payload["sender"], payload["recipient"], payload.get("text") or "",
        )
        self.broadcaster.emit("message", payload)

        try:
            self.store.create_message({
                "text": payload.get("text") or "",
                "sender": payload["sender"],
                "recipient": payload["recipient"],
                "timestamp": payload["timestamp"],
                "type": payload.get("type") or "text",
                "media_id": payload.get("mediaId") or "",
                "origin_phone_id": payload.get("origin_phone_id") or "",
            })
        except AirtableStoreError:
            logger.exception("Could not persist message from %s (already broadcast)", payload["sender"])
            return payload

        if from_customer and update_contact:
            self.record_contact_activity(
                payload["sender"],
                payload.get("text") or "",
                origin_phone_id=payload.get("origin_phone_id"),
                increment_unread=True,
            )
        return payload

    def record_contact_activity(
        self,
        phone: str,
        text: str,
        *,
        name: str | None = None,
        origin_phone_id: str | None = None,
        increment_unread: bool = False,
    ) -> dict[str, Any] | None:
        """Update (or create) the contact's last-message preview."""
        try:
            record, created = self.store.upsert_contact_activity(
                phone,
                text,
                name=name or DEFAULT_CONTACT_NAME,
                origin_phone_id=origin_phone_id,
                increment_unread=increment_unread,
            )
        except AirtableStoreError:
            logger.exception("Could not update contact %s", clean_number(phone))
            return None
        if created:
            self.broadcaster.emit("contact_updated_notification")
        return record

    def send_bot_text(self, to: str, body: str, origin_phone_id: str) -> bool:
        """Deliver an assistant reply and mirror it in the inbox."""
        clean_to = clean_number(to)
        origin = self.whatsapp.resolve_origin(origin_phone_id)
        try:
            self.whatsapp.send_text(origin, clean_to, body)
        except WhatsAppAPIError as exc:
            logger.error("Could not send assistant reply to %s: %s", clean_to, exc)
            return False

        self.save_and_emit_message({
            "text": body,
            "sender": BOT_SENDER,
            "recipient": clean_to,
            "type": "text",
            "origin_phone_id": origin,
        })
        self.record_contact_activity(clean_to, f"🤖 {BOT_NAME}: {body}", origin_phone_id=origin)
        return True

    def send_agent_message(
        self,
        *,
        target_phone: str,
        text: str,
        sender: str,
        msg_type: str = "text",
        origin_phone_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Send a message typed by a human agent (or store an internal note).

        A human reply is a handover: the assistant stops for this phone and a
        ``Nuevo`` contact becomes ``Abierto`` so the next inbound message does
        not wake the assistant up again.
        """
        origin = self.whatsapp.resolve_origin(origin_phone_id)
        clean_to = clean_number(target_phone)
        is_note = msg_type == "note"

        if self.sessions.is_active(clean_to):
            logger.info("Handover: a human agent took over %s", clean_to)
            self.sessions.deactivate(clean_to)

        try:
            contact = self.store.find_contact(clean_to)
            if contact is not None and contact["fields"].get("status") == STATUS_NEW:
                logger.info("Contact %s moved to %s after agent reply", clean_to, STATUS_OPEN)
                self.store.update_contact(contact["id"], {"status": STATUS_OPEN})
        except AirtableStoreError:
            logger.exception("Could not update status of %s during handover", clean_to)

        if not is_note:
            try:
                self.whatsapp.send_text(origin, clean_to, text)
            except WhatsAppAPIError as exc:
                logger.error("Could not send agent message to %s: %s", clean_to, exc)
                return None

        payload = self.save_and_emit_message({
            "text": text,
            "sender": sender,
            "recipient": clean_to,
            "type": msg_type or "text",
            "origin_phone_id": origin,
        })
        preview = f"📝 Nota: {text}" if is_note else f"Tú: {text}"
        self.record_contact_activity(clean_to, preview, origin_phone_id=origin)
        return payload

    # ── Reads ────────────────────────────────────────────────────────

    def _related(self, phone: str, *, newest_first: bool = False, limit: int | None = None) -> list[dict[str, Any]]:
        records = [
            r for r in self.store.conversation(phone, newest_first=newest_first)
            if is_related_to_chat(r["fields"], phone)
        ]
        return records[:limit] if limit else records

    def ai_history(self, phone: str, limit: int) -> list[tuple[str, str]]:
        """Recent conversation as ``(role, text)`` pairs, oldest first.

        ``role`` is ``"user"`` for the customer and ``"model"`` for anything
        written by the bot or an agent.  The history always starts with a
        customer turn.
        """
        records = self._related(phone, newest_first=True, limit=limit)
        history: list[tuple[str, str]] = []
        for record in reversed(records):
            fields = record["fields"]
            role = "user" if is_phone_sender(fields.get("sender")) else "model"
            history.append((role, fields.get("text") or ""))

        while history and history[0][0] == "model":
            history.pop(0)
        return history

    def latest_message_text(self, phone: str) -> str | None:
        records = self._related(phone, newest_first=True, limit=1)
        if not records:
            return None
        return records[0]["fields"].get("text")

    def contacts_snapshot(self) -> list[dict[str, Any]]:
        """Contacts in the shape the inbox expects."""
        contacts = []
        for record in self.store.list_contacts():
            fields = record["fields"]
            avatar = fields.get("avatar") or []
            contacts.append({
                "id": record["id"],
                "phone": clean_number(fields.get("phone")),
                "name": fields.get("name"),
                "status": fields.get("status"),
                "department": fields.get("department"),
                "assigned_to": fields.get("assigned_to"),
                "last_message": fields.get("last_message"),
                "last_message_time": fields.get("last_message_time"),
                "avatar": avatar[0].get("url") if avatar else None,
                "tags": fields.get("tags") or [],
                "origin_phone_id": fields.get("origin_phone_id"),
                "unread_count": fields.get("unread_count") or 0,
            })
        return contacts

    def conversation_snapshot(self, phone: str) -> list[dict[str, Any]]:
        return [
            {
                "text": r["fields"].get("text"),
                "sender": r["fields"].get("sender"),
                "recipient": r["fields"].get("recipient"),
                "timestamp": r["fields"].get("timestamp"),
                "type": r["fields"].get("type"),
                "mediaId": r["fields"].get("media_id"),
            }
            for r in self._related(phone)
        ]

    def mark_read(self, phone: str) -> None:
        self.store.update_contact_by_phone(phone, {"unread_count": 0})

    def update_contact_info(self, phone: str, updates: dict[str, Any]) -> bool:
        updated = self.store.update_contact_by_phone(phone, updates, typecast=True)
        if updated is None:
            return False
        self.broadcaster.emit("contact_updated_notification")
        return True
