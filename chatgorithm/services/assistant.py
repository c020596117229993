"""Runs one assistant turn for a customer and delivers the replies.

The model answers in JSON (``{"customer_message": ..., "internal_control":
{...}}``); only ``customer_message`` reaches the customer.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable
from typing import Any

from langchain_core.messages import AIMessage, AnyMessage, HumanMessage

from chatgorithm.config import AI_HISTORY_LIMIT, AI_MAX_RETRIES
from chatgorithm.phone import clean_number
from chatgorithm.prompts import get_system_prompt
from chatgorithm.services.airtable_store import AirtableStore, AirtableStoreError
from chatgorithm.services.booking import BookingService
from chatgorithm.services.chat import DEFAULT_CONTACT_NAME, ChatService

logger = logging.getLogger(__name__)

RECURSION_LIMIT = 12
MANUAL_FALLBACK_TEXT = "Hola"

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def parse_model_reply(text: str | None) -> str | None:
    """Extract the customer-facing message from a model reply.

    Falls back to the raw text (minus Markdown fences) when the model did
    not answer with valid JSON.  Returns ``None`` when nothing is left.
    """
    if not text or not text.strip():
        return None

    block = _JSON_BLOCK_RE.search(text)
    candidate = _strip_fences(block.group(0) if block else text)
    try:
        data = json.loads(candidate)
    except ValueError:
        return _strip_fences(text) or None

    if not isinstance(data, dict):
        return _strip_fences(text) or None
    message = data.get("customer_message")
    if not message:
        return None
    return str(message).strip() or None


def _message_text(message: AnyMessage) -> str:
    """Plain text of a model message (Gemini may return a list of parts)."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


def _is_overloaded(exc: Exception) -> bool:
    status = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    if status == 503:
        return True
    text = str(exc).lower()
    return "503" in text or "overloaded" in text or "unavailable" in text


class BookingAssistant:
    """Drive the booking graph for one customer message at a time."""

    def __init__(
        self,
        agent: Any,
        chat: ChatService,
        booking: BookingService,
        store: AirtableStore,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.agent = agent
        self.chat = chat
        self.booking = booking
        self.store = store
        self._sleep = sleep

    def _build_messages(self, text: str, phone: str) -> list[AnyMessage]:
        history = self.chat.ai_history(phone, AI_HISTORY_LIMIT)
        # The inbound message is usually stored already; do not send it twice.
        if history and history[-1] == ("user", text):
            history.pop()

        messages: list[AnyMessage] = [
            HumanMessage(content=body) if role == "user" else AIMessage(content=body)
            for role, body in history
        ]
        messages.append(HumanMessage(content=text))
        return messages

    def _run_turn(self, text: str, phone: str, name: str, origin_phone_id: str) -> list[str]:
        messages = self._build_messages(text, phone)
        result = self.agent.invoke(
            {
                "messages": messages,
                "system_prompt": get_system_prompt(self.store),
                "intent": "",
            },
            config={
                "configurable": {
                    "booking": self.booking,
                    "phone": phone,
                    "origin_phone_id": origin_phone_id,
                    "contact_name": name,
                },
                "recursion_limit": RECURSION_LIMIT,
            },
        )

        replies = []
        for message in result["messages"][len(messages):]:
            if not isinstance(message, AIMessage):
                continue
            reply = parse_model_reply(_message_text(message))
            if reply:
                replies.append(reply)
        return replies

    def process(self, text: str, phone: str, name: str | None, origin_phone_id: str) -> list[str]:
        """Answer *text* from *phone*.  Returns the replies that were sent."""
        clean = clean_number(phone)
        name = name or DEFAULT_CONTACT_NAME
        logger.info("Assistant turn for %s: %.60r", clean, text)
        self.chat.sessions.activate(clean)
        self.chat.broadcaster.emit("ai_status", {"phone": clean, "status": "thinking"})

        try:
            replies: list[str] = []
            for attempt in range(1, AI_MAX_RETRIES + 1):
                try:
                    replies = self._run_turn(text, clean, name, origin_phone_id)
                    break
                except Exception as exc:
                    if _is_overloaded(exc) and attempt < AI_MAX_RETRIES:
                        wait = 2 ** attempt
                        logger.warning(
                            "Gemini overloaded (attempt %d/%d). Retrying in %ds…",
                            attempt, AI_MAX_RETRIES, wait,
                        )
                        self._sleep(wait)
                        continue
                    logger.exception("Assistant turn for %s failed on attempt %d", clean, attempt)
                    return []

            sent = []
            for reply in replies:
                if self.chat.send_bot_text(clean, reply, origin_phone_id):
                    sent.append(reply)
            return sent
        finally:
            self.chat.broadcaster.emit("ai_status", {"phone": clean, "status": "idle"})

    def trigger_manual(self, phone: str) -> list[str]:
        """Switch the assistant on for *phone* and answer its latest message."""
        clean = clean_number(phone)
        name, origin = DEFAULT_CONTACT_NAME, None
        text = MANUAL_FALLBACK_TEXT
        try:
            contact = self.store.find_contact(clean)
            if contact is not None:
                name = contact["fields"].get("name") or name
                origin = contact["fields"].get("origin_phone_id")
            text = self.chat.latest_message_text(clean) or MANUAL_FALLBACK_TEXT
        except AirtableStoreError:
            logger.exception("Could not load context for manual assistant run on %s", clean)

        logger.info("Assistant manually triggered for %s", clean)
        return self.process(text, clean, name, self.chat.whatsapp.resolve_origin(origin))
