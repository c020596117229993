"""Tests for the booking service behind the assistant's tools."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest

from chatgorithm.services.airtable_store import AirtableStoreError
from chatgorithm.services.booking import LIST_SENT_RESULT, OPTION_CACHE_TTL_SECONDS, BookingService
from chatgorithm.services.cache import ExpiringLRUCache
from chatgorithm.services.whatsapp_client import WhatsAppAPIError

NOW = datetime(2026, 1, 18, 12, 0, tzinfo=UTC)  # Sunday
PHONE = "34600112233"


def _record(record_id: str, **fields) -> dict:
    return {"id": record_id, "createdTime": "2026-01-01T00:00:00.000Z", "fields": fields}


def _slot(record_id: str, when: str, status: str = "Available") -> dict:
    return _record(record_id, Date=when, Status=status)


AGENDA = [
    _slot("recPast", "2026-01-17T08:00:00.000Z"),
    _slot("recA", "2026-01-19T08:00:00.000Z"),
    _slot("recB", "2026-01-19T09:00:00.000Z"),
    _slot("recC", "2026-01-20T08:00:00.000Z"),
]


@pytest.fixture
def booking(store, whatsapp, chat):
    store.list_appointments.return_value = AGENDA
    return BookingService(store, whatsapp, chat, clock=lambda: NOW)


def _mirror(options: dict[str, str], saved_at: str = "2026-01-18T12:00:00.000Z") -> str:
    return json.dumps({"savedAt": saved_at, "options": options})


def _offer(booking) -> str:
    return booking.get_available_appointments(PHONE, "web")


# ── Days ─────────────────────────────────────────────────────────────


class TestGetAvailableDays:
    def test_lists_distinct_future_days(self, booking):
        assert booking.get_available_days() == (
            "📅 Días con disponibilidad:\n"
            "• lunes, 19 de enero\n"
            "• martes, 20 de enero\n\n"
            "¿Qué día prefieres?"
        )

    def test_caps_at_seven_days(self, booking, store):
        store.list_appointments.return_value = [
            _slot(f"rec{d}", f"2026-02-{d:02d}T09:00:00.000Z") for d in range(1, 15)
        ]
        assert booking.get_available_days().count("• ") == 7

    def test_no_days(self, booking, store):
        store.list_appointments.return_value = []
        assert booking.get_available_days() == "No hay días con citas disponibles en este momento."

    def test_store_error(self, booking, store):
        store.list_appointments.side_effect = AirtableStoreError("down")
        assert booking.get_available_days() == "Error técnico al consultar la agenda."


# ── Hours ────────────────────────────────────────────────────────────


class TestGetAvailableAppointments:
    def test_text_list_when_line_is_not_whatsapp(self, booking, store, whatsapp):
        result = _offer(booking)

        assert result.splitlines() == [
            "Huecos disponibles:",
            "OPCIÓN 1: lun, 19 ene a las 09:00",
            "OPCIÓN 2: lun, 19 ene a las 10:00",
            "OPCIÓN 3: mar, 20 ene a las 09:00",
        ]
        whatsapp.send_interactive_list.assert_not_called()
        store.update_contact_by_phone.assert_called_once_with(
            PHONE, {"appointment_cache": _mirror({"1": "recA", "2": "recB", "3": "recC"})},
        )
        assert booking.has_pending_options(PHONE)
        store.find_contact.assert_not_called()

    def test_empty_relist_clears_stored_options(self, booking, store):
        _offer(booking)
        store.list_appointments.return_value = []

        _offer(booking)

        store.update_contact_by_phone.assert_called_with(PHONE, {"appointment_cache": ""})
        assert not booking.has_pending_options(PHONE)

    def test_interactive_list_on_business_line(self, booking, whatsapp):
        result = booking.get_available_appointments(PHONE, "1000000001", "2026-01-19")

        assert result == LIST_SENT_RESULT
        args, kwargs = whatsapp.send_interactive_list.call_args
        assert args == ("1000000001", PHONE)
        assert kwargs["body"] == "Horarios para 2026-01-19:"
        assert kwargs["rows"] == [
            {"id": "1", "title": "09:00", "description": "lun, 19 ene"},
            {"id": "2", "title": "10:00", "description": "lun, 19 ene"},
        ]

    def test_falls_back_to_text_when_list_fails(self, booking, whatsapp):
        whatsapp.send_interactive_list.side_effect = WhatsAppAPIError("bad", status_code=400)
        result = booking.get_available_appointments(PHONE, "1000000001")
        assert result.startswith("Huecos disponibles:")

    def test_date_filter_uses_local_day(self, booking):
        result = booking.get_available_appointments(PHONE, "web", "2026-01-20")
        assert result.splitlines()[1:] == ["OPCIÓN 1: mar, 20 ene a las 09:00"]

    def test_no_slots_for_date(self, booking):
        assert booking.get_available_appointments(PHONE, "web", "2026-03-01") == (
            "No hay citas disponibles para esa fecha (2026-03-01)."
        )

    def test_no_slots_at_all(self, booking, store):
        store.list_appointments.return_value = []
        assert booking.get_available_appointments(PHONE, "web") == (
            "No hay citas disponibles para esa fecha (próximamente)."
        )

    def test_caps_at_ten_options(self, booking, store):
        store.list_appointments.return_value = [
            _slot(f"rec{h}", f"2026-01-19T{h:02d}:00:00.000Z") for h in range(5, 20)
        ]
        assert _offer(booking).count("OPCIÓN") == 10

    def test_store_error(self, booking, store):
        store.list_appointments.side_effect = AirtableStoreError("down")
        assert _offer(booking) == "Error técnico al leer la agenda."


# ── Booking ──────────────────────────────────────────────────────────


class TestBookAppointment:
    def test_books_offered_slot(self, booking, store, chat, broadcaster):
        _offer(booking)
        chat.sessions.activate(PHONE)
        store.get_appointment.return_value = AGENDA[2]

        result = booking.book_appointment(2, PHONE, "Ana")

        assert result == "✅ RESERVA CONFIRMADA para el lunes, 19 de enero de 2026, 10:00."
        store.get_appointment.assert_called_once_with("recB")
        store.update_appointment.assert_called_once_with(
            "recB", {"Status": "Booked", "ClientPhone": PHONE, "ClientName": "Ana"},
        )
        store.update_contact_by_phone.assert_any_call(PHONE, {"status": "Cerrado"})
        store.update_contact_by_phone.assert_called_with(PHONE, {"appointment_cache": ""})
        assert not chat.sessions.is_active(PHONE)
        assert not booking.has_pending_options(PHONE)
        broadcaster.emit.assert_any_call("contact_updated_notification")

    def test_options_restored_after_restart(self, booking, store):
        store.find_contact.return_value = _record(
            "recC1", appointment_cache=_mirror({"1": "recA"}, "2026-01-18T11:30:00.000Z"),
        )
        store.get_appointment.return_value = AGENDA[1]

        result = booking.book_appointment(1, PHONE, None)

        assert result.startswith("✅ RESERVA CONFIRMADA")
        assert store.update_appointment.call_args[0][1]["ClientName"] == "Cliente"

    def test_expired_session(self, booking):
        assert booking.book_appointment(1, PHONE, "Ana") == (
            "❌ Error: La sesión ha expirado. Pide ver los huecos de nuevo."
        )

    @pytest.mark.parametrize(
        "stored",
        [
            _mirror({"uno": "recA"}),
            '{"1": "recA"}',
            json.dumps({"options": {"1": "recA"}}),
            "not json",
        ],
    )
    def test_malformed_stored_options_count_as_expired(self, booking, store, stored):
        store.find_contact.return_value = _record("recC1", appointment_cache=stored)
        assert booking.book_appointment(1, PHONE, "Ana").startswith("❌ Error: La sesión ha expirado")
        store.update_appointment.assert_not_called()

    def test_options_expire_in_memory_and_in_airtable(self, store, whatsapp, chat):
        now = [NOW]
        ticks = [0.0]
        booking = BookingService(
            store, whatsapp, chat,
            option_cache=ExpiringLRUCache(default_ttl=OPTION_CACHE_TTL_SECONDS, clock=lambda: ticks[0]),
            clock=lambda: now[0],
        )
        store.list_appointments.return_value = AGENDA
        _offer(booking)
        mirrored = store.update_contact_by_phone.call_args[0][1]["appointment_cache"]
        store.find_contact.return_value = _record("recC1", appointment_cache=mirrored)

        now[0] += timedelta(days=3)
        ticks[0] += timedelta(days=3).total_seconds()

        assert not booking.has_pending_options(PHONE)
        assert booking.book_appointment(1, PHONE, "Ana") == (
            "❌ Error: La sesión ha expirado. Pide ver los huecos de nuevo."
        )
        store.update_appointment.assert_not_called()
        store.update_contact_by_phone.assert_called_with(PHONE, {"appointment_cache": ""})

    def test_unknown_option(self, booking):
        _offer(booking)
        assert booking.book_appointment(9, PHONE, "Ana") == "❌ Error: La opción 9 no es válida."

    def test_slot_already_taken(self, booking, store):
        _offer(booking)
        store.get_appointment.return_value = _slot("recA", "2026-01-19T08:00:00.000Z", "Booked")
        assert booking.book_appointment(1, PHONE, "Ana") == "❌ Vaya, esa hora acaba de ocuparse."
        store.update_appointment.assert_not_called()

    def test_slot_deleted(self, booking, store):
        _offer(booking)
        store.get_appointment.return_value = None
        assert booking.book_appointment(1, PHONE, "Ana") == "❌ Vaya, esa hora ya no existe."

    def test_store_error_keeps_options(self, booking, store):
        _offer(booking)
        store.get_appointment.return_value = AGENDA[1]
        store.update_appointment.side_effect = AirtableStoreError("down")
        assert booking.book_appointment(1, PHONE, "Ana") == "❌ Error técnico al guardar."
        assert booking.has_pending_options(PHONE)

    def test_contact_update_failure_still_confirms(self, booking, store, chat):
        _offer(booking)
        chat.sessions.activate(PHONE)
        store.get_appointment.return_value = AGENDA[1]

        def update_contact(phone, fields, **kwargs):
            if fields == {"status": "Cerrado"}:
                raise AirtableStoreError("down")

        store.update_contact_by_phone.side_effect = update_contact

        result = booking.book_appointment(1, PHONE, "Ana")

        assert result == "✅ RESERVA CONFIRMADA para el lunes, 19 de enero de 2026, 09:00."
        store.update_appointment.assert_called_once()
        store.update_contact_by_phone.assert_called_with(PHONE, {"appointment_cache": ""})
        assert not booking.has_pending_options(PHONE)
        assert not chat.sessions.is_active(PHONE)


# ── Handover ─────────────────────────────────────────────────────────


class TestAssignDepartment:
    def test_assigns_and_stops_assistant(self, booking, store, chat, broadcaster):
        chat.sessions.activate(PHONE)
        assert booking.assign_department(PHONE, "Taller") == "Asignado a Taller."
        store.update_contact_by_phone.assert_called_once_with(
            PHONE, {"department": "Taller", "status": "Abierto"}, typecast=True,
        )
        assert not chat.sessions.is_active(PHONE)
        broadcaster.emit.assert_any_call("contact_updated_notification")

    def test_invalid_department(self, booking, store):
        assert booking.assign_department(PHONE, "Marketing") == "Departamento no válido: Marketing."
        store.update_contact_by_phone.assert_not_called()

    def test_unknown_contact(self, booking, store):
        store.update_contact_by_phone.return_value = None
        assert booking.assign_department(PHONE, "Ventas") == "Contacto no encontrado."

    def test_store_error(self, booking, store):
        store.update_contact_by_phone.side_effect = AirtableStoreError("down")
        assert booking.assign_department(PHONE, "Admin") == "Error asignando."


class TestStopConversation:
    def test_deactivates_session(self, booking, chat):
        chat.sessions.activate(PHONE)
        assert booking.stop_conversation(PHONE) == "Fin conversación."
        assert not chat.sessions.is_active(PHONE)
