"""Agenda slot generation and Spanish date formatting.

Appointments are rows in the ``Appointments`` table with a UTC ``Date`` and a
``Status`` (``Available`` / ``Booked``).  The weekly schedule is stored as
JSON in ``BotSettings`` (``schedule_config``)::

    {"days": [1, 2, 3, 4, 5], "startTime": "09:00", "endTime": "14:00", "duration": 30}

``days`` follows the client's convention: 0 = Sunday … 6 = Saturday.
Slot times are wall-clock times in the business timezone, so a 09:00 slot
stays at 09:00 across daylight-saving changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from chatgorithm.config import BUSINESS_TIMEZONE, SCHEDULE_HORIZON_DAYS
from chatgorithm.services.airtable_store import (
    SETTING_SCHEDULE,
    AirtableStore,
    decode_json_field,
)

logger = logging.getLogger(__name__)

STATUS_AVAILABLE = "Available"
STATUS_BOOKED = "Booked"

BUSINESS_TZ = ZoneInfo(BUSINESS_TIMEZONE)

_WEEKDAYS = ["lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo"]
_WEEKDAYS_SHORT = ["lun", "mar", "mié", "jue", "vie", "sáb", "dom"]
_MONTHS = [
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
]
_MONTHS_SHORT = ["ene", "feb", "mar", "abr", "may", "jun", "jul", "ago", "sept", "oct", "nov", "dic"]


@dataclass(frozen=True)
class ScheduleConfig:
    """Weekly opening pattern used to generate bookable slots."""

    days: tuple[int, ...]
    start_time: str
    end_time: str
    duration: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleConfig:
        return cls(
            days=tuple(int(d) for d in data.get("days", [])),
            start_time=str(data["startTime"]),
            end_time=str(data["endTime"]),
            duration=int(data["duration"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "days": list(self.days),
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
        }


def _parse_hhmm(value: str) -> time:
    hours, _, minutes = value.partition(":")
    return time(int(hours), int(minutes or 0))


def _js_weekday(day: date) -> int:
    """Python's Monday=0 weekday in the client's Sunday=0 convention."""
    return (day.weekday() + 1) % 7


def parse_iso(value: str) -> datetime:
    """Parse an Airtable ISO timestamp (``...Z`` allowed) into an aware datetime."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


def to_iso(dt: datetime) -> str:
    """UTC ISO string with millisecond precision, as the client writes them."""
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


# ── Slot generation ──────────────────────────────────────────────────


def generate_slots(
    config: ScheduleConfig,
    now: datetime,
    horizon_days: int = SCHEDULE_HORIZON_DAYS,
    tz: ZoneInfo = BUSINESS_TZ,
) -> list[datetime]:
    """Return the future slot start times (UTC) for the next *horizon_days*."""
    if config.duration <= 0:
        raise ValueError("Slot duration must be positive")

    start_t, end_t = _parse_hhmm(config.start_time), _parse_hhmm(config.end_time)
    step = timedelta(minutes=config.duration)
    first_day = now.astimezone(tz).date()
    slots: list[datetime] = []

    for offset in range(horizon_days + 1):
        day = first_day + timedelta(days=offset)
        if _js_weekday(day) not in config.days:
            continue
        slot = datetime.combine(day, start_t, tzinfo=tz)
        closing = datetime.combine(day, end_t, tzinfo=tz)
        # Aware arithmetic in a ZoneInfo zone is wall-clock arithmetic; compare in UTC.
        while (slot + step).astimezone(UTC) <= closing.astimezone(UTC):
            if slot > now:
                slots.append(slot.astimezone(UTC))
            slot += step
    return slots


def load_schedule_config(store: AirtableStore) -> ScheduleConfig | None:
    raw = decode_json_field(store.get_setting(SETTING_SCHEDULE), None)
    if not raw:
        return None
    try:
        return ScheduleConfig.from_dict(raw)
    except (KeyError, TypeError, ValueError):
        logger.warning("Ignoring invalid schedule config: %r", raw)
        return None


def run_schedule_maintenance(store: AirtableStore, now: datetime | None = None) -> tuple[int, int]:
    """Drop past free slots and create the missing future ones.

    Returns ``(deleted, created)``.  Without a stored schedule nothing happens.
    """
    config = load_schedule_config(store)
    if config is None:
        return 0, 0

    now = now or datetime.now(UTC)
    available = store.list_appointments(status=STATUS_AVAILABLE)

    past_ids: list[str] = []
    existing: set[datetime] = set()
    for record in available:
        raw_date = record["fields"].get("Date")
        if not raw_date:
            continue
        when = parse_iso(raw_date)
        if when < now:
            past_ids.append(record["id"])
        else:
            existing.add(when)

    store.delete_appointments(past_ids)

    new_slots = [
        {"Date": to_iso(slot), "Status": STATUS_AVAILABLE}
        for slot in generate_slots(config, now)
        if slot not in existing
    ]
    store.create_appointments(new_slots)

    logger.info(
        "Schedule maintenance: removed %d past slots, created %d new slots",
        len(past_ids), len(new_slots),
    )
    return len(past_ids), len(new_slots)


# ── Spanish formatting (business timezone) ───────────────────────────


def local_date_key(dt: datetime, tz: ZoneInfo = BUSINESS_TZ) -> str:
    """``YYYY-MM-DD`` of *dt* in the business timezone."""
    return dt.astimezone(tz).strftime("%Y-%m-%d")


def format_day_long(dt: datetime, tz: ZoneInfo = BUSINESS_TZ) -> str:
    """``lunes, 19 de enero``"""
    local = dt.astimezone(tz)
    return f"{_WEEKDAYS[local.weekday()]}, {local.day} de {_MONTHS[local.month - 1]}"


def format_day_short(dt: datetime, tz: ZoneInfo = BUSINESS_TZ) -> str:
    """``lun, 19 ene``"""
    local = dt.astimezone(tz)
    return f"{_WEEKDAYS_SHORT[local.weekday()]}, {local.day} {_MONTHS_SHORT[local.month - 1]}"


def format_time(dt: datetime, tz: ZoneInfo = BUSINESS_TZ) -> str:
    """``09:30``"""
    return dt.astimezone(tz).strftime("%H:%M")


def format_full(dt: datetime, tz: ZoneInfo = BUSINESS_TZ) -> str:
    """``lunes, 19 de enero de 2026, 10:30``"""
    local = dt.astimezone(tz)
    return f"{format_day_long(local, tz)} de {local.year}, {format_time(local, tz)}"
