"""Business logic behind the assistant's booking tools.

The flow is two-step: the customer first picks a day, then an hour from a
numbered list.  The numbers shown to the customer are mapped to Airtable
appointment ids; that map lives in memory and is mirrored to the contact's
``appointment_cache`` column so a restart in the middle of a booking does not
lose it.  The mirror carries its save time and is ignored once it is older
than the in-memory TTL.

Every method returns the Spanish text the model will relay, never raises.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from chatgorithm.phone import clean_number
from chatgorithm.services.airtable_store import (
    STATUS_CLOSED,
    STATUS_OPEN,
    AirtableStore,
    AirtableStoreError,
    decode_json_field,
)
from chatgorithm.services.cache import ExpiringLRUCache
from chatgorithm.services.chat import ChatService
from chatgorithm.services.scheduling import (
    STATUS_AVAILABLE,
    STATUS_BOOKED,
    format_day_long,
    format_day_short,
    format_full,
    format_time,
    local_date_key,
    parse_iso,
    to_iso,
)
from chatgorithm.services.whatsapp_client import WhatsAppAPIError, WhatsAppClient

logger = logging.getLogger(__name__)

DEPARTMENTS = ("Ventas", "Taller", "Admin")

MAX_LISTED_DAYS = 7
MAX_LISTED_SLOTS = 10
OPTION_CACHE_TTL_SECONDS = 2 * 60 * 60

LIST_SENT_RESULT = json.dumps({"status": "success", "info": "List sent via WhatsApp."})


class BookingService:
    """Agenda queries, option maps and the side effects of each tool."""

    def __init__(
        self,
        store: AirtableStore,
        whatsapp: WhatsAppClient,
        chat: ChatService,
        *,
        option_cache: ExpiringLRUCache | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.whatsapp = whatsapp
        self.chat = chat
        self._options = option_cache or ExpiringLRUCache(
            max_entries=5_000, default_ttl=OPTION_CACHE_TTL_SECONDS,
        )
        self._clock = clock or (lambda: datetime.now(UTC))

    # ── Option maps ──────────────────────────────────────────────────

    def _save_options(self, phone: str, options: dict[int, str]) -> None:
        self._options.put(phone, options)
        mirror = {
            "savedAt": to_iso(self._clock()),
            "options": {str(k): v for k, v in options.items()},
        }
        try:
            self.store.update_contact_by_phone(phone, {"appointment_cache": json.dumps(mirror)})
        except AirtableStoreError:
            logger.exception("Could not persist appointment options for %s", phone)

    def _restore_options(self, raw: object) -> dict[int, str] | None:
        """Options from an ``appointment_cache`` mirror, or ``None`` if stale or malformed."""
        if not isinstance(raw, dict) or not isinstance(raw.get("options"), dict):
            return None
        try:
            saved_at = parse_iso(raw["savedAt"])
            options = {int(k): str(v) for k, v in raw["options"].items()}
        except (AttributeError, KeyError, TypeError, ValueError):
            return None
        age = (self._clock() - saved_at).total_seconds()
        if not 0 <= age < OPTION_CACHE_TTL_SECONDS:
            return None
        return options or None

    def _load_options(self, phone: str) -> dict[int, str] | None:
        cached = self._options.get(phone)
        if cached:
            return cached

        try:
            contact = self.store.find_contact(phone)
        except AirtableStoreError:
            logger.exception("Could not read appointment options for %s", phone)
            return None
        if contact is None:
            return None

        stored = contact["fields"].get("appointment_cache")
        if not stored:
            return None
        options = self._restore_options(decode_json_field(stored, None))
        if options is None:
            logger.info("Discarding stale appointment options for %s", phone)
            self._clear_options(phone)
            return None

        logger.info("Restored %d appointment options for %s from Airtable", len(options), phone)
        self._options.put(phone, options)
        return options

    def _clear_options(self, phone: str) -> None:
        self._options.invalidate(phone)
        try:
            self.store.update_contact_by_phone(phone, {"appointment_cache": ""})
        except AirtableStoreError:
            logger.exception("Could not clear appointment options for %s", phone)

    def has_pending_options(self, phone: str) -> bool:
        """Whether *phone* has been shown a numbered list it can pick from."""
        clean = clean_number(phone)
        return self._options.has(clean) or bool(self._load_options(clean))

    # ── Agenda queries ───────────────────────────────────────────────

    def _future_slots(self) -> list[tuple[dict, datetime]]:
        now = self._clock()
        slots = []
        for record in self.store.list_appointments(status=STATUS_AVAILABLE):
            raw_date = record["fields"].get("Date")
            if not raw_date:
                continue
            when = parse_iso(raw_date)
            if when > now:
                slots.append((record, when))
        slots.sort(key=lambda pair: pair[1])
        return slots

    def get_available_days(self) -> str:
        """List up to seven upcoming days that still have free slots."""
        try:
            slots = self._future_slots()
        except AirtableStoreError:
            logger.exception("Could not read the agenda")
            return "Error técnico al consultar la agenda."

        days: dict[str, str] = {}
        for _, when in slots:
            key = local_date_key(when)
            if key not in days:
                days[key] = format_day_long(when)
            if len(days) == MAX_LISTED_DAYS:
                break

        if not days:
            return "No hay días con citas disponibles en este momento."

        lines = ["📅 Días con disponibilidad:"]
        lines.extend(f"• {name}" for name in days.values())
        return "\n".join(lines) + "\n\n¿Qué día prefieres?"

    def get_available_appointments(
        self, phone: str, origin_phone_id: str | None, date: str | None = None,
    ) -> str:
        """Number the next free slots (optionally of one local day) for *phone*.

        On a real business line the options are also sent as a WhatsApp
        interactive list, and the model only gets a short status back.
        """
        clean = clean_number(phone)
        if clean:
            self._options.invalidate(clean)

        try:
            slots = self._future_slots()
        except AirtableStoreError:
            logger.exception("Could not read the agenda")
            return "Error técnico al leer la agenda."

        if date:
            slots = [(r, when) for r, when in slots if local_date_key(when) == date]
        slots = slots[:MAX_LISTED_SLOTS]
        if not slots:
            if clean:
                self._clear_options(clean)
            return f"No hay citas disponibles para esa fecha ({date or 'próximamente'})."

        options: dict[int, str] = {}
        rows = []
        lines = ["Huecos disponibles:"]
        for number, (record, when) in enumerate(slots, start=1):
            options[number] = record["id"]
            day, hour = format_day_short(when), format_time(when)
            rows.append({"id": str(number), "title": hour, "description": day})
            lines.append(f"OPCIÓN {number}: {day} a las {hour}")

        if clean:
            self._save_options(clean, options)
        logger.info("Offered %d appointment options to %s", len(options), clean)

        if self.whatsapp.is_known_line(origin_phone_id):
            try:
                self.whatsapp.send_interactive_list(
                    origin_phone_id,
                    clean,
                    header="📅 Citas Disponibles",
                    body=f"Horarios para {date or 'próximamente'}:",
                    footer="Reserva inmediata",
                    button="Ver Horarios",
                    section_title="Huecos",
                    rows=rows,
                )
                return LIST_SENT_RESULT
            except WhatsAppAPIError as exc:
                logger.warning("Interactive list to %s failed, answering with text: %s", clean, exc)

        return "\n".join(lines)

    # ── Actions ──────────────────────────────────────────────────────

    def book_appointment(self, option_index: int, phone: str, name: str | None) -> str:
        """Book the slot behind *option_index* from the customer's last list."""
        clean = clean_number(phone)
        options = self._load_options(clean)
        if not options:
            logger.warning("No pending appointment options for %s", clean)
            return "❌ Error: La sesión ha expirado. Pide ver los huecos de nuevo."

        record_id = options.get(option_index)
        if record_id is None:
            return f"❌ Error: La opción {option_index} no es válida."

        try:
            record = self.store.get_appointment(record_id)
            if record is None:
                return "❌ Vaya, esa hora ya no existe."
            if record["fields"].get("Status") != STATUS_AVAILABLE:
                return "❌ Vaya, esa hora acaba de ocuparse."

            self.store.update_appointment(record_id, {
                "Status": STATUS_BOOKED,
                "ClientPhone": clean,
                "ClientName": name or "Cliente",
            })
        except AirtableStoreError:
            logger.exception("Booking option %d for %s failed", option_index, clean)
            return "❌ Error técnico al guardar."

        # The slot is taken from here on; contact bookkeeping must not undo that.
        human_date = format_full(parse_iso(record["fields"]["Date"]))
        try:
            if self.store.update_contact_by_phone(clean, {"status": STATUS_CLOSED}) is not None:
                self.chat.broadcaster.emit("contact_updated_notification")
        except AirtableStoreError:
            logger.exception("Could not close contact %s after booking %s", clean, record_id)

        self._clear_options(clean)
        self.chat.sessions.deactivate(clean)
        logger.info("Appointment %s booked for %s (%s)", record_id, clean, human_date)
        return f"✅ RESERVA CONFIRMADA para el {human_date}."

    def assign_department(self, phone: str, department: str) -> str:
        """Hand the conversation to a human department."""
        if department not in DEPARTMENTS:
            return f"Departamento no válido: {department}."

        clean = clean_number(phone)
        try:
            updated = self.store.update_contact_by_phone(
                clean, {"department": department, "status": STATUS_OPEN}, typecast=True,
            )
        except AirtableStoreError:
            logger.exception("Could not assign %s to %s", clean, department)
            return "Error asignando."
        if updated is None:
            return "Contacto no encontrado."

        self.chat.broadcaster.emit("contact_updated_notification")
        self.chat.sessions.deactivate(clean)
        return f"Asignado a {department}."

    def stop_conversation(self, phone: str) -> str:
        self.chat.sessions.deactivate(phone)
        return "Fin conversación."
