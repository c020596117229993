"""Socket.IO event handlers for the agent inbox.

Handlers are ``async`` and offload every Airtable / Graph API call with
``asyncio.to_thread``.  Replies meant for the caller only are emitted with
``to=sid``; list refreshes after a change go to every connected client.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import secrets
from datetime import UTC, datetime
from typing import Any

import socketio

from chatgorithm.phone import clean_number
from chatgorithm.services.airtable_store import (
    TABLE_CONFIG,
    TABLE_QUICK_REPLIES,
    AirtableStore,
    AirtableStoreError,
    decode_json_field,
)
from chatgorithm.services.assistant import BookingAssistant
from chatgorithm.services.chat import ChatService

logger = logging.getLogger(__name__)


# ── Serialisers ──────────────────────────────────────────────────────


def agent_view(record: dict[str, Any]) -> dict[str, Any]:
    """Public view of an agent: never exposes the password itself."""
    fields = record["fields"]
    return {
        "id": record["id"],
        "name": fields.get("name"),
        "role": fields.get("role"),
        "hasPassword": bool(fields.get("password")),
        "preferences": decode_json_field(fields.get("Preferences"), {}) or {},
    }


def _config_view(record: dict[str, Any]) -> dict[str, Any]:
    return {"id": record["id"], "name": record["fields"].get("name"), "type": record["fields"].get("type")}


def _quick_reply_view(record: dict[str, Any]) -> dict[str, Any]:
    fields = record["fields"]
    return {
        "id": record["id"],
        "title": fields.get("Title"),
        "content": fields.get("Content"),
        "shortcut": fields.get("Shortcut"),
    }


def _team_message_view(record: dict[str, Any]) -> dict[str, Any]:
    fields = record["fields"]
    return {
        "id": record["id"],
        "content": fields.get("content"),
        "sender": fields.get("sender"),
        "timestamp": fields.get("timestamp"),
        "channel": fields.get("channel"),
    }


def check_agent_password(stored: Any, supplied: Any) -> bool:
    """Agents without a password may log in with anything."""
    stored = str(stored or "")
    if not stored.strip():
        return True
    return secrets.compare_digest(stored.encode(), str(supplied or "").encode())


def _record_id(data: Any) -> str | None:
    if isinstance(data, dict):
        return data.get("id")
    return data


class SocketHandlers:
    """All inbox events, bound to one ``AsyncServer``."""

    def __init__(
        self,
        sio: socketio.AsyncServer,
        *,
        store: AirtableStore,
        chat: ChatService,
        assistant: BookingAssistant,
    ) -> None:
        self.sio = sio
        self.store = store
        self.chat = chat
        self.assistant = assistant
        self.online_users: dict[str, str] = {}

    def register(self) -> None:
        events = {
            "disconnect": self.on_disconnect,
            "register_presence": self.on_register_presence,
            "typing": self.on_typing,
            "request_config": self.on_request_config,
            "add_config": self.on_add_config,
            "update_config": self.on_update_config,
            "delete_config": self.on_delete_config,
            "request_quick_replies": self.on_request_quick_replies,
            "add_quick_reply": self.on_add_quick_reply,
            "update_quick_reply": self.on_update_quick_reply,
            "delete_quick_reply": self.on_delete_quick_reply,
            "request_agents": self.on_request_agents,
            "login_attempt": self.on_login_attempt,
            "create_agent": self.on_create_agent,
            "update_agent": self.on_update_agent,
            "delete_agent": self.on_delete_agent,
            "request_contacts": self.on_request_contacts,
            "update_contact_info": self.on_update_contact_info,
            "mark_read": self.on_mark_read,
            "request_conversation": self.on_request_conversation,
            "chatMessage": self.on_chat_message,
            "trigger_ai_manual": self.on_trigger_ai_manual,
            "stop_ai_manual": self.on_stop_ai_manual,
            "request_team_history": self.on_request_team_history,
            "send_team_message": self.on_send_team_message,
        }
        for event, handler in events.items():
            self.sio.on(event, handler)
        logger.debug("Registered %d Socket.IO handlers", len(events))

    # ── Presence ─────────────────────────────────────────────────────

    async def _emit_online_users(self) -> None:
        await self.sio.emit("online_users_update", list(dict.fromkeys(self.online_users.values())))

    async def on_register_presence(self, sid: str, username: str | None = None) -> None:
        if not username:
            return
        self.online_users[sid] = username
        await self._emit_online_users()

    async def on_disconnect(self, sid: str, reason: Any = None) -> None:
        if self.online_users.pop(sid, None) is not None:
            await self._emit_online_users()

    async def on_typing(self, sid: str, data: Any = None) -> None:
        await self.sio.emit("remote_typing", data, skip_sid=sid)

    # ── Config entries & quick replies ───────────────────────────────

    async def _emit_list(self, table: str, event: str, view, to: str | None = None) -> None:
        records = await asyncio.to_thread(self.store.list_records, table)
        await self.sio.emit(event, [view(r) for r in records], to=to)

    async def on_request_config(self, sid: str, data: Any = None) -> None:
        try:
            await self._emit_list(TABLE_CONFIG, "config_list", _config_view, to=sid)
        except AirtableStoreError:
            logger.exception("Listing config entries failed")

    async def on_add_config(self, sid: str, data: dict) -> None:
        try:
            await asyncio.to_thread(
                self.store.create_record, TABLE_CONFIG, {"name": data.get("name"), "type": data.get("type")},
            )
            await self._emit_list(TABLE_CONFIG, "config_list", _config_view)
        except AirtableStoreError:
            logger.exception("Adding config entry failed")
            await self.sio.emit("action_error", "Error guardando", to=sid)

    async def on_update_config(self, sid: str, data: dict) -> None:
        try:
            await asyncio.to_thread(self.store.update_record, TABLE_CONFIG, data["id"], {"name": data.get("name")})
            await self._emit_list(TABLE_CONFIG, "config_list", _config_view)
        except AirtableStoreError:
            logger.exception("Updating config entry failed")
            await self.sio.emit("action_error", "Error guardando", to=sid)

    async def on_delete_config(self, sid: str, data: Any) -> None:
        try:
            await asyncio.to_thread(self.store.delete_record, TABLE_CONFIG, _record_id(data))
            await self._emit_list(TABLE_CONFIG, "config_list", _config_view)
        except AirtableStoreError:
            logger.exception("Deleting config entry failed")
            await self.sio.emit("action_error", "Error eliminando", to=sid)

    async def on_request_quick_replies(self, sid: str, data: Any = None) -> None:
        try:
            await self._emit_list(TABLE_QUICK_REPLIES, "quick_replies_list", _quick_reply_view, to=sid)
        except AirtableStoreError:
            logger.exception("Listing quick replies failed")

    @staticmethod
    def _quick_reply_fields(data: dict) -> dict[str, Any]:
        return {"Title": data.get("title"), "Content": data.get("content"), "Shortcut": data.get("shortcut")}

    async def on_add_quick_reply(self, sid: str, data: dict) -> None:
        try:
            await asyncio.to_thread(self.store.create_record, TABLE_QUICK_REPLIES, self._quick_reply_fields(data))
            await self._emit_list(TABLE_QUICK_REPLIES, "quick_replies_list", _quick_reply_view)
        except AirtableStoreError:
            logger.exception("Adding quick reply failed")
            await self.sio.emit("action_error", "Error guardando", to=sid)

    async def on_update_quick_reply(self, sid: str, data: dict) -> None:
        try:
            await asyncio.to_thread(
                self.store.update_record, TABLE_QUICK_REPLIES, data["id"], self._quick_reply_fields(data),
            )
            await self._emit_list(TABLE_QUICK_REPLIES, "quick_replies_list", _quick_reply_view)
        except AirtableStoreError:
            logger.exception("Updating quick reply failed")
            await self.sio.emit("action_error", "Error guardando", to=sid)

    async def on_delete_quick_reply(self, sid: str, data: Any) -> None:
        try:
            await asyncio.to_thread(self.store.delete_record, TABLE_QUICK_REPLIES, _record_id(data))
            await self._emit_list(TABLE_QUICK_REPLIES, "quick_replies_list", _quick_reply_view)
        except AirtableStoreError:
            logger.exception("Deleting quick reply failed")
            await self.sio.emit("action_error", "Error eliminando", to=sid)

    # ── Agents ───────────────────────────────────────────────────────

    async def _emit_agents(self, to: str | None = None) -> None:
        records = await asyncio.to_thread(self.store.list_agents)
        await self.sio.emit("agents_list", [agent_view(r) for r in records], to=to)

    async def on_request_agents(self, sid: str, data: Any = None) -> None:
        try:
            await self._emit_agents(to=sid)
        except AirtableStoreError:
            logger.exception("Listing agents failed")

    async def on_login_attempt(self, sid: str, data: dict) -> None:
        name = (data or {}).get("name")
        try:
            record = await asyncio.to_thread(self.store.find_agent, name) if name else None
        except AirtableStoreError:
            logger.exception("Agent lookup failed")
            await self.sio.emit("login_error", "Error de servidor", to=sid)
            return

        if record is None:
            await self.sio.emit("login_error", "Usuario no encontrado", to=sid)
            return
        if not check_agent_password(record["fields"].get("password"), data.get("password")):
            logger.info("Login rejected for agent %s", name)
            await self.sio.emit("login_error", "Contraseña incorrecta", to=sid)
            return

        view = agent_view(record)
        logger.info("Agent %s logged in", name)
        await self.sio.emit(
            "login_success",
            {"username": view["name"], "role": view["role"], "preferences": view["preferences"]},
            to=sid,
        )

    async def on_create_agent(self, sid: str, data: dict) -> None:
        new_agent = data.get("newAgent") or {}
        try:
            await asyncio.to_thread(self.store.create_agent, {
                "name": new_agent.get("name"),
                "role": new_agent.get("role"),
                "password": new_agent.get("password") or "",
            })
            await self._emit_agents()
        except AirtableStoreError:
            logger.exception("Creating agent failed")
            await self.sio.emit("action_error", "Error guardando", to=sid)
            return
        await self.sio.emit("action_success", "Creado", to=sid)

    async def on_update_agent(self, sid: str, data: dict) -> None:
        updates = data.get("updates") or {}
        fields: dict[str, Any] = {"name": updates.get("name"), "role": updates.get("role")}
        if "password" in updates:
            fields["password"] = updates["password"]
        if "preferences" in updates:
            fields["Preferences"] = json.dumps(updates["preferences"])
        try:
            await asyncio.to_thread(self.store.update_agent, data["agentId"], fields)
            await self._emit_agents()
        except AirtableStoreError:
            logger.exception("Updating agent failed")
            await self.sio.emit("action_error", "Error guardando", to=sid)
            return
        await self.sio.emit("action_success", "Actualizado", to=sid)

    async def on_delete_agent(self, sid: str, data: dict) -> None:
        try:
            await asyncio.to_thread(self.store.delete_agent, data["agentId"])
            await self._emit_agents()
        except AirtableStoreError:
            logger.exception("Deleting agent failed")
            await self.sio.emit("action_error", "Error eliminando", to=sid)
            return
        await self.sio.emit("action_success", "Eliminado", to=sid)

    # ── Contacts & conversations ─────────────────────────────────────

    async def on_request_contacts(self, sid: str, data: Any = None) -> None:
        try:
            contacts = await asyncio.to_thread(self.chat.contacts_snapshot)
        except AirtableStoreError:
            logger.exception("Listing contacts failed")
            return
        await self.sio.emit("contacts_update", contacts, to=sid)

    async def on_update_contact_info(self, sid: str, data: dict) -> None:
        try:
            await asyncio.to_thread(self.chat.update_contact_info, data.get("phone"), data.get("updates") or {})
        except AirtableStoreError:
            logger.exception("Updating contact %s failed", data.get("phone"))
            await self.sio.emit("action_error", "Error guardando", to=sid)

    async def on_mark_read(self, sid: str, data: dict) -> None:
        phone = clean_number((data or {}).get("phone"))
        if not phone:
            return
        try:
            await asyncio.to_thread(self.chat.mark_read, phone)
        except AirtableStoreError:
            logger.exception("Marking %s as read failed", phone)

    async def on_request_conversation(self, sid: str, phone: str) -> None:
        try:
            history = await asyncio.to_thread(self.chat.conversation_snapshot, phone)
        except AirtableStoreError:
            logger.exception("Loading conversation %s failed", phone)
            return
        await self.sio.emit("conversation_history", history, to=sid)

    async def on_chat_message(self, sid: str, msg: dict) -> None:
        """A message typed by an agent in the inbox."""
        send = functools.partial(
            self.chat.send_agent_message,
            target_phone=msg.get("targetPhone", ""),
            text=msg.get("text", ""),
            sender=msg.get("sender") or "Agente",
            msg_type=msg.get("type") or "text",
            origin_phone_id=msg.get("originPhoneId"),
        )
        await asyncio.to_thread(send)

    # ── Assistant control ────────────────────────────────────────────

    async def on_trigger_ai_manual(self, sid: str, data: dict) -> None:
        phone = clean_number((data or {}).get("phone"))
        if phone:
            await asyncio.to_thread(self.assistant.trigger_manual, phone)

    async def on_stop_ai_manual(self, sid: str, data: dict) -> None:
        phone = clean_number((data or {}).get("phone"))
        if phone:
            self.chat.sessions.deactivate(phone)

    # ── Team chat ────────────────────────────────────────────────────

    async def on_request_team_history(self, sid: str, channel: str) -> None:
        try:
            records = await asyncio.to_thread(self.store.team_history, channel)
        except AirtableStoreError:
            logger.exception("Loading team channel %s failed", channel)
            return
        await self.sio.emit(
            "team_history",
            {"channel": channel, "history": [_team_message_view(r) for r in records]},
            to=sid,
        )

    async def on_send_team_message(self, sid: str, msg: dict) -> None:
        """Broadcast first so the team sees it instantly, then store it."""
        timestamp = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        await self.sio.emit("team_message", {**msg, "timestamp": timestamp})
        try:
            await asyncio.to_thread(self.store.create_team_message, {
                "content": msg.get("content"),
                "sender": msg.get("sender"),
                "channel": msg.get("channel"),
            })
        except AirtableStoreError:
            logger.exception("Saving team message failed")
