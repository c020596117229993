"""LangChain tools exposed to the booking assistant.

Each tool delegates to the ``BookingService`` of the current conversation
and returns the Spanish text the model should relay.  Per-conversation
context (service, customer phone, business line, customer name) travels in
``config["configurable"]`` so the model never sees or fills it.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from langchain_core.runnables import RunnableConfig
from langchain_core.tools import tool

logger = logging.getLogger(__name__)


def _context(config: RunnableConfig) -> dict[str, Any]:
    return config.get("configurable") or {}


# ── Tool 1: days with free slots ────────────────────────────────────


@tool
def get_available_days(config: RunnableConfig) -> str:
    """Get the days that have available appointment slots.

    Call this first when the customer asks for an appointment without
    specifying a date.
    """
    return _context(config)["booking"].get_available_days()


# ── Tool 2: free slots of one day ───────────────────────────────────


@tool
def get_available_appointments(date: str, config: RunnableConfig) -> str:
    """Search for available appointment slots for a specific date.

    Call this AFTER the customer selects a day.

    Args:
        date: Date in YYYY-MM-DD format (e.g. "2026-01-15").
    """
    ctx = _context(config)
    return ctx["booking"].get_available_appointments(
        ctx.get("phone", ""), ctx.get("origin_phone_id"), date or None,
    )


# ── Tool 3: book an offered option ──────────────────────────────────


@tool
def book_appointment(option_index: int, config: RunnableConfig) -> str:
    """Book an appointment using the option number from the last list.

    Call this when the customer answers with a number like "1", "2" or
    "11".  After booking, ALWAYS call stop_conversation.

    Args:
        option_index: The option number chosen by the customer (e.g. 1).
    """
    ctx = _context(config)
    logger.info("Booking option %s for %s", option_index, ctx.get("phone"))
    return ctx["booking"].book_appointment(
        int(option_index), ctx.get("phone", ""), ctx.get("contact_name"),
    )


# ── Tool 4: hand over to a human department ─────────────────────────


@tool
def assign_department(department: Literal["Ventas", "Taller", "Admin"], config: RunnableConfig) -> str:
    """Assign the chat to a human department and stop the assistant.

    Use when the customer needs sales, workshop or admin help.

    Args:
        department: One of "Ventas", "Taller" or "Admin".
    """
    ctx = _context(config)
    return ctx["booking"].assign_department(ctx.get("phone", ""), department)


# ── Tool 5: end the assistant's turn for good ───────────────────────


@tool
def stop_conversation(config: RunnableConfig) -> str:
    """Stop the assistant from replying to this customer.

    ALWAYS call this after booking an appointment or assigning a department.
    """
    ctx = _context(config)
    return ctx["booking"].stop_conversation(ctx.get("phone", ""))


BOOKING_TOOLS = [
    get_available_days,
    get_available_appointments,
    book_appointment,
    assign_department,
    stop_conversation,
]
