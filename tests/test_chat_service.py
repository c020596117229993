"""Tests for message sending, persistence and contact bookkeeping."""

from __future__ import annotations

from chatgorithm.services.airtable_store import AirtableStoreError
from chatgorithm.services.chat import AISessionRegistry
from chatgorithm.services.whatsapp_client import WhatsAppAPIError


def _record(record_id: str, **fields) -> dict:
    return {"id": record_id, "createdTime": "2026-01-01T00:00:00.000Z", "fields": fields}


def _events(broadcaster) -> list[str]:
    return [c[0][0] for c in broadcaster.emit.call_args_list]


# ── Assistant sessions ───────────────────────────────────────────────


class TestAISessionRegistry:
    def test_activate_and_deactivate(self, broadcaster):
        sessions = AISessionRegistry(broadcaster)
        sessions.activate("+34 600 11 22 33")
        assert sessions.is_active("34600112233")
        broadcaster.emit.assert_called_with("ai_active_change", {"phone": "34600112233", "active": True})

        assert sessions.deactivate("34600112233") is True
        assert not sessions.is_active("34600112233")
        broadcaster.emit.assert_called_with("ai_active_change", {"phone": "34600112233", "active": False})

    def test_deactivate_inactive_still_notifies(self, broadcaster):
        sessions = AISessionRegistry(broadcaster)
        assert sessions.deactivate("34600112233") is False
        broadcaster.emit.assert_called_once_with(
            "ai_active_change", {"phone": "34600112233", "active": False},
        )


# ── save_and_emit_message ────────────────────────────────────────────


class TestSaveAndEmitMessage:
    def test_customer_message_is_cleaned_emitted_and_stored(self, chat, store, broadcaster):
        payload = chat.save_and_emit_message({
            "text": "Hola", "sender": "+34 600 11 22 33", "recipient": "1000000001",
            "origin_phone_id": "1000000001",
        })

        assert payload["sender"] == "34600112233"
        assert payload["timestamp"].endswith("Z")
        broadcaster.emit.assert_any_call("message", payload)
        stored = store.create_message.call_args[0][0]
        assert stored["sender"] == "34600112233"
        assert stored["type"] == "text"
        store.upsert_contact_activity.assert_called_once()
        assert store.upsert_contact_activity.call_args[1]["increment_unread"] is True

    def test_staff_sender_is_kept_verbatim(self, chat, store):
        payload = chat.save_and_emit_message({"text": "Hola", "sender": "Agente 2", "recipient": "+34600112233"})
        assert payload["sender"] == "Agente 2"
        assert payload["recipient"] == "34600112233"
        store.upsert_contact_activity.assert_not_called()

    def test_emit_happens_even_when_storage_fails(self, chat, store, broadcaster):
        store.create_message.side_effect = AirtableStoreError("down")
        payload = chat.save_and_emit_message({"text": "Hola", "sender": "34600112233", "recipient": "1"})
        broadcaster.emit.assert_any_call("message", payload)
        store.upsert_contact_activity.assert_not_called()

    def test_contact_update_can_be_skipped(self, chat, store):
        chat.save_and_emit_message(
            {"text": "Hola", "sender": "34600112233", "recipient": "1"}, update_contact=False,
        )
        store.upsert_contact_activity.assert_not_called()

    def test_media_id_is_stored(self, chat, store):
        chat.save_and_emit_message(
            {"text": "(Media)", "sender": "Agente", "recipient": "1", "type": "image", "mediaId": "M1"},
        )
        assert store.create_message.call_args[0][0]["media_id"] == "M1"


class TestRecordContactActivity:
    def test_new_contact_is_announced(self, chat, store, broadcaster):
        store.upsert_contact_activity.return_value = (_record("recNew"), True)
        chat.record_contact_activity("34600112233", "Hola", name="Ana")
        assert store.upsert_contact_activity.call_args[1]["name"] == "Ana"
        assert "contact_updated_notification" in _events(broadcaster)

    def test_default_name(self, chat, store):
        chat.record_contact_activity("34600112233", "Hola")
        assert store.upsert_contact_activity.call_args[1]["name"] == "Cliente"

    def test_store_error_returns_none(self, chat, store):
        store.upsert_contact_activity.side_effect = AirtableStoreError("down")
        assert chat.record_contact_activity("34600112233", "Hola") is None


# ── Outbound messages ────────────────────────────────────────────────


class TestSendBotText:
    def test_sends_and_mirrors_reply(self, chat, store, whatsapp):
        assert chat.send_bot_text("34600112233", "¡Hola!", "2000000002") is True
        whatsapp.send_text.assert_called_once_with("2000000002", "34600112233", "¡Hola!")
        assert store.create_message.call_args[0][0]["sender"] == "Bot IA"
        assert store.upsert_contact_activity.call_args[0][1] == "🤖 Laura: ¡Hola!"

    def test_send_failure_stores_nothing(self, chat, store, whatsapp):
        whatsapp.send_text.side_effect = WhatsAppAPIError("down", status_code=500)
        assert chat.send_bot_text("34600112233", "¡Hola!", "1000000001") is False
        store.create_message.assert_not_called()


class TestSendAgentMessage:
    def test_reply_hands_over_and_opens_new_contact(self, chat, store, whatsapp):
        chat.sessions.activate("34600112233")
        store.find_contact.return_value = _record("recC1", status="Nuevo")

        payload = chat.send_agent_message(
            target_phone="34600112233", text="Le atiendo yo", sender="Agente", origin_phone_id="1000000001",
        )

        assert not chat.sessions.is_active("34600112233")
        store.update_contact.assert_called_once_with("recC1", {"status": "Abierto"})
        whatsapp.send_text.assert_called_once_with("1000000001", "34600112233", "Le atiendo yo")
        assert payload["sender"] == "Agente"
        assert store.upsert_contact_activity.call_args[0][1] == "Tú: Le atiendo yo"

    def test_note_is_not_sent_to_whatsapp(self, chat, store, whatsapp):
        payload = chat.send_agent_message(
            target_phone="34600112233", text="Llamar mañana", sender="Agente", msg_type="note",
        )
        whatsapp.send_text.assert_not_called()
        assert payload["type"] == "note"
        assert store.upsert_contact_activity.call_args[0][1] == "📝 Nota: Llamar mañana"

    def test_open_contact_status_is_untouched(self, chat, store):
        store.find_contact.return_value = _record("recC1", status="Abierto")
        chat.send_agent_message(target_phone="34600112233", text="Hola", sender="Agente")
        store.update_contact.assert_not_called()

    def test_send_failure_returns_none(self, chat, store, whatsapp):
        whatsapp.send_text.side_effect = WhatsAppAPIError("bad", status_code=400)
        assert chat.send_agent_message(target_phone="34600112233", text="Hola", sender="Agente") is None
        store.create_message.assert_not_called()

    def test_origin_is_resolved_through_client(self, chat, whatsapp):
        chat.send_agent_message(
            target_phone="34600112233", text="Hola", sender="Agente", origin_phone_id="9999",
        )
        whatsapp.send_text.assert_called_once_with("9999", "34600112233", "Hola")
        whatsapp.resolve_origin.assert_called_with("9999")


# ── Reads ────────────────────────────────────────────────────────────


class TestAIHistory:
    def test_roles_order_and_leading_model_turns(self, chat, store):
        # newest first, as returned by the store
        store.conversation.return_value = [
            _record("m4", sender="Bot IA", recipient="34600112233", text="¿Qué día?"),
            _record("m3", sender="600112233", recipient="1000000001", text="Quiero cita"),
            _record("m2", sender="Agente", recipient="34600112233", text="Bienvenido"),
            _record("m1", sender="Bot IA", recipient="34600112233", text="Hola"),
        ]
        history = chat.ai_history("34600112233", 10)
        assert history == [("user", "Quiero cita"), ("model", "¿Qué día?")]
        store.conversation.assert_called_once_with("34600112233", newest_first=True)

    def test_unrelated_rows_are_dropped(self, chat, store):
        store.conversation.return_value = [
            _record("m2", sender="Agente", recipient="34699999999", text="Otro cliente"),
            _record("m1", sender="34600112233", recipient="1000000001", text="Hola"),
        ]
        assert chat.ai_history("34600112233", 10) == [("user", "Hola")]

    def test_limit_applies_after_filtering(self, chat, store):
        store.conversation.return_value = [
            _record("m4", sender="Agente", recipient="34699999999", text="Otro cliente"),
            _record("m3", sender="Agente", recipient="34699999999", text="Otro más"),
            _record("m2", sender="Bot IA", recipient="34600112233", text="¿Qué día?"),
            _record("m1", sender="34600112233", recipient="1000000001", text="Quiero cita"),
        ]
        assert chat.ai_history("34600112233", 2) == [("user", "Quiero cita"), ("model", "¿Qué día?")]

    def test_legacy_rows_without_recipient_are_kept(self, chat, store):
        store.conversation.return_value = [
            _record("m2", sender="Bot IA", text="Hola"),
            _record("m1", sender="34600112233", recipient="1000000001", text="Buenas"),
        ]
        assert chat.ai_history("34600112233", 10) == [("user", "Buenas"), ("model", "Hola")]


class TestSnapshots:
    def test_contacts_snapshot_shape(self, chat, store):
        store.list_contacts.return_value = [
            _record("recC1", phone="+34 600112233", name="Ana", status="Nuevo",
                    avatar=[{"url": "https://img/1.png"}], unread_count=2),
            _record("recC2", phone="34611111111"),
        ]
        first, second = chat.contacts_snapshot()
        assert first["phone"] == "34600112233"
        assert first["avatar"] == "https://img/1.png"
        assert first["unread_count"] == 2
        assert second["avatar"] is None
        assert second["tags"] == []
        assert second["unread_count"] == 0

    def test_conversation_snapshot_uses_client_field_names(self, chat, store):
        store.conversation.return_value = [
            _record("m1", sender="34600112233", recipient="1", text="Foto", type="image", media_id="M1"),
        ]
        (message,) = chat.conversation_snapshot("34600112233")
        assert message["mediaId"] == "M1"
        assert message["type"] == "image"

    def test_latest_message_text(self, chat, store):
        store.conversation.return_value = [_record("m1", sender="34600112233", text="Último")]
        assert chat.latest_message_text("34600112233") == "Último"

    def test_latest_message_text_empty(self, chat):
        assert chat.latest_message_text("34600112233") is None


class TestContactUpdates:
    def test_mark_read(self, chat, store):
        chat.mark_read("34600112233")
        store.update_contact_by_phone.assert_called_once_with("34600112233", {"unread_count": 0})

    def test_update_contact_info_notifies(self, chat, store, broadcaster):
        store.update_contact_by_phone.return_value = _record("recC1")
        assert chat.update_contact_info("34600112233", {"name": "Ana"}) is True
        store.update_contact_by_phone.assert_called_once_with("34600112233", {"name": "Ana"}, typecast=True)
        broadcaster.emit.assert_called_once_with("contact_updated_notification")

    def test_update_contact_info_unknown(self, chat, store, broadcaster):
        store.update_contact_by_phone.return_value = None
        assert chat.update_contact_info("34600112233", {"name": "Ana"}) is False
        broadcaster.emit.assert_not_called()
