"""Tests for the LangChain booking tools."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from chatgorithm.tools.booking import (
    BOOKING_TOOLS,
    assign_department,
    book_appointment,
    get_available_appointments,
    get_available_days,
    stop_conversation,
)


@pytest.fixture
def booking():
    return MagicMock()


def _config(booking) -> dict:
    return {"configurable": {
        "booking": booking,
        "phone": "34600112233",
        "origin_phone_id": "1000000001",
        "contact_name": "Ana",
    }}


class TestToolSchemas:
    def test_tool_names(self):
        assert [t.name for t in BOOKING_TOOLS] == [
            "get_available_days",
            "get_available_appointments",
            "book_appointment",
            "assign_department",
            "stop_conversation",
        ]

    def test_context_is_not_exposed_to_the_model(self):
        for t in BOOKING_TOOLS:
            assert "config" not in t.args

    def test_model_facing_arguments(self):
        assert set(get_available_appointments.args) == {"date"}
        assert set(book_appointment.args) == {"option_index"}
        assert set(assign_department.args) == {"department"}


class TestToolCalls:
    def test_get_available_days(self, booking):
        booking.get_available_days.return_value = "📅 Días con disponibilidad:"
        assert get_available_days.invoke({}, config=_config(booking)) == "📅 Días con disponibilidad:"

    def test_get_available_appointments_passes_context(self, booking):
        get_available_appointments.invoke({"date": "2026-01-19"}, config=_config(booking))
        booking.get_available_appointments.assert_called_once_with("34600112233", "1000000001", "2026-01-19")

    def test_book_appointment_coerces_option(self, booking):
        book_appointment.invoke({"option_index": "3"}, config=_config(booking))
        booking.book_appointment.assert_called_once_with(3, "34600112233", "Ana")

    def test_assign_department(self, booking):
        assign_department.invoke({"department": "Taller"}, config=_config(booking))
        booking.assign_department.assert_called_once_with("34600112233", "Taller")

    def test_stop_conversation(self, booking):
        booking.stop_conversation.return_value = "Fin conversación."
        assert stop_conversation.invoke({}, config=_config(booking)) == "Fin conversación."
        booking.stop_conversation.assert_called_once_with("34600112233")
