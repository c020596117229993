"""Airtable persistence for contacts, messages, the agenda and settings.

Every table is a flat record set; list-like values (agent preferences,
template variable examples, the pending appointment options) are stored as
JSON inside a text column.  Formulas are built with
``pyairtable.formulas.match`` so phone numbers and names are escaped.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from pyairtable import Api
from pyairtable.formulas import match
from requests.exceptions import HTTPError, RequestException

from chatgorithm.config import AIRTABLE_API_KEY, AIRTABLE_BASE_ID
from chatgorithm.phone import clean_number
from chatgorithm.services.metrics import metrics

logger = logging.getLogger(__name__)

TABLE_CONTACTS = "Contacts"
TABLE_MESSAGES = "Messages"
TABLE_APPOINTMENTS = "Appointments"
TABLE_BOT_SETTINGS = "BotSettings"
TABLE_TEMPLATES = "Templates"
TABLE_AGENTS = "Agents"
TABLE_QUICK_REPLIES = "QuickReplies"
TABLE_CONFIG = "Config"
TABLE_TEAM_MESSAGES = "TeamMessages"
TABLE_COMPANIES = "Companies"

SETTING_SYSTEM_PROMPT = "system_prompt"
SETTING_SCHEDULE = "schedule_config"

STATUS_NEW = "Nuevo"
STATUS_OPEN = "Abierto"
STATUS_CLOSED = "Cerrado"

TEAM_HISTORY_LIMIT = 50
CONVERSATION_TAIL_DIGITS = 9  # subscriber number without country code


class AirtableStoreError(Exception):
    """Raised when an Airtable call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def decode_json_field(raw: Any, default: Any) -> Any:
    """Decode a JSON-in-a-string column, returning *default* when blank or invalid."""
    if raw in (None, ""):
        return default
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed JSON column value: %.80r", raw)
        return default


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class AirtableStore:
    """Typed access to the Airtable base backing one tenant."""

    def __init__(
        self,
        api_key: str | None = None,
        base_id: str | None = None,
        *,
        api: Api | None = None,
    ):
        self._api = api or Api(api_key or AIRTABLE_API_KEY)
        self._base_id = base_id or AIRTABLE_BASE_ID

    # ── Internal helpers ─────────────────────────────────────────────

    def _table(self, name: str):
        return self._api.table(self._base_id, name)

    def _call(self, table: str, method: str, *args, **kwargs) -> Any:
        """Invoke ``Table.<method>`` with metrics and error translation."""
        try:
            with metrics.track("airtable", f"{method} {table}"):
                return getattr(self._table(table), method)(*args, **kwargs)
        except HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise AirtableStoreError(
                f"Airtable {method} on {table} failed: {exc}", status_code=status,
            ) from exc
        except RequestException as exc:
            raise AirtableStoreError(f"Airtable {method} on {table} failed: {exc}") from exc

    # ── Contacts ─────────────────────────────────────────────────────

    def find_contact(self, phone: str) -> dict[str, Any] | None:
        """Return the first contact whose phone equals the cleaned *phone*."""
        clean = clean_number(phone)
        if not clean:
            return None
        return self._call(TABLE_CONTACTS, "first", formula=match({"phone": clean}))

    def upsert_contact_activity(
        self,
        phone: str,
        text: str,
        *,
        name: str | None = None,
        origin_phone_id: str | None = None,
        increment_unread: bool = False,
    ) -> tuple[dict[str, Any], bool]:
        """Record the latest message on a contact, creating it if needed.

        The contact is looked up per business line.  A contact with no line
        yet (``origin_phone_id`` blank) is claimed by the first line that
        talks to it.  Returns ``(record, created)``.
        """
        clean = clean_number(phone)
        origin = origin_phone_id or "unknown"
        candidates = self._call(TABLE_CONTACTS, "all", formula=match({"phone": clean}))

        record = next(
            (r for r in candidates if r["fields"].get("origin_phone_id") == origin), None,
        )
        if record is None:
            orphan = next(
                (r for r in candidates if not r["fields"].get("origin_phone_id")), None,
            )
            if orphan is not None:
                record = self._call(
                    TABLE_CONTACTS, "update", orphan["id"], {"origin_phone_id": origin},
                )

        now = _now_iso()
        if record is not None:
            fields: dict[str, Any] = {"last_message": text, "last_message_time": now}
            if increment_unread:
                fields["unread_count"] = int(record["fields"].get("unread_count") or 0) + 1
            return self._call(TABLE_CONTACTS, "update", record["id"], fields), False

        fields = {
            "phone": clean,
            "name": name or "Cliente",
            "status": STATUS_NEW,
            "last_message": text,
            "last_message_time": now,
            "origin_phone_id": origin,
        }
        if increment_unread:
            fields["unread_count"] = 1
        return self._call(TABLE_CONTACTS, "create", fields), True

    def update_contact(
        self, record_id: str, fields: dict[str, Any], *, typecast: bool = False,
    ) -> dict[str, Any]:
        return self._call(TABLE_CONTACTS, "update", record_id, fields, typecast=typecast)

    def update_contact_by_phone(
        self, phone: str, fields: dict[str, Any], *, typecast: bool = False,
    ) -> dict[str, Any] | None:
        """Update the contact for *phone*; ``None`` when there is no such contact."""
        contact = self.find_contact(phone)
        if contact is None:
            return None
        return self.update_contact(contact["id"], fields, typecast=typecast)

    def list_contacts(self) -> list[dict[str, Any]]:
        """All contacts, most recent activity first."""
        return self._call(TABLE_CONTACTS, "all", sort=["-last_message_time"])

    # ── Messages ─────────────────────────────────────────────────────

    def create_message(self, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call(TABLE_MESSAGES, "create", fields, typecast=True)

    def conversation(self, phone: str, *, newest_first: bool = False) -> list[dict[str, Any]]:
        """Candidate messages of the chat with *phone*, ordered by timestamp.

        Rows are selected on the trailing subscriber digits so numbers stored
        with or without the country code are both returned, plus legacy rows
        saved without a recipient.  Callers narrow the result with
        :func:`chatgorithm.phone.is_related_to_chat`.
        """
        clean = clean_number(phone)
        if not clean:
            return []
        tail = clean[-CONVERSATION_TAIL_DIGITS:]
        formula = (
            f"OR(FIND('{tail}', {{sender}}), FIND('{tail}', {{recipient}}), {{recipient}} = '')"
        )
        return self._call(
            TABLE_MESSAGES, "all",
            formula=formula,
            sort=["-timestamp" if newest_first else "timestamp"],
        )

    def list_messages(self) -> list[dict[str, Any]]:
        return self._call(TABLE_MESSAGES, "all")

    # ── Appointments ─────────────────────────────────────────────────

    def list_appointments(self, status: str | None = None) -> list[dict[str, Any]]:
        """Appointments ordered by date, optionally filtered by status."""
        options: dict[str, Any] = {"sort": ["Date"]}
        if status:
            options["formula"] = match({"Status": status})
        return self._call(TABLE_APPOINTMENTS, "all", **options)

    def get_appointment(self, record_id: str) -> dict[str, Any] | None:
        try:
            return self._call(TABLE_APPOINTMENTS, "get", record_id)
        except AirtableStoreError as exc:
            if exc.status_code == 404:
                return None
            raise

    def create_appointment(self, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call(TABLE_APPOINTMENTS, "create", fields)

    def create_appointments(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Create many slots; pyairtable splits the request in batches of 10."""
        if not records:
            return []
        return self._call(TABLE_APPOINTMENTS, "batch_create", records)

    def update_appointment(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call(TABLE_APPOINTMENTS, "update", record_id, fields)

    def delete_appointments(self, record_ids: list[str]) -> None:
        if record_ids:
            self._call(TABLE_APPOINTMENTS, "batch_delete", record_ids)

    # ── Bot settings ─────────────────────────────────────────────────

    def get_setting(self, name: str) -> str | None:
        record = self._call(TABLE_BOT_SETTINGS, "first", formula=match({"Setting": name}))
        if record is None:
            return None
        return record["fields"].get("Value")

    def put_setting(self, name: str, value: str) -> None:
        record = self._call(TABLE_BOT_SETTINGS, "first", formula=match({"Setting": name}))
        if record is not None:
            self._call(TABLE_BOT_SETTINGS, "update", record["id"], {"Value": value})
        else:
            self._call(TABLE_BOT_SETTINGS, "create", {"Setting": name, "Value": value})

    # ── Templates ────────────────────────────────────────────────────

    def list_templates(self) -> list[dict[str, Any]]:
        return self._call(TABLE_TEMPLATES, "all")

    def create_template(self, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call(TABLE_TEMPLATES, "create", fields)

    def delete_template(self, record_id: str) -> None:
        self._call(TABLE_TEMPLATES, "delete", record_id)

    def update_template_status(self, meta_id: str, status: str) -> bool:
        """Apply a Meta review result.  Returns ``False`` for unknown templates."""
        record = self._call(TABLE_TEMPLATES, "first", formula=match({"MetaId": meta_id}))
        if record is None:
            return False
        self._call(TABLE_TEMPLATES, "update", record["id"], {"Status": status})
        return True

    # ── Agents ───────────────────────────────────────────────────────

    def list_agents(self) -> list[dict[str, Any]]:
        return self._call(TABLE_AGENTS, "all")

    def find_agent(self, name: str) -> dict[str, Any] | None:
        return self._call(TABLE_AGENTS, "first", formula=match({"name": name}))

    def create_agent(self, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call(TABLE_AGENTS, "create", fields)

    def update_agent(self, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call(TABLE_AGENTS, "update", record_id, fields)

    def delete_agent(self, record_id: str) -> None:
        self._call(TABLE_AGENTS, "delete", record_id)

    # ── Small lookup tables (quick replies, config entries) ──────────

    def list_records(self, table: str) -> list[dict[str, Any]]:
        return self._call(table, "all")

    def create_record(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call(table, "create", fields)

    def update_record(self, table: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call(table, "update", record_id, fields)

    def delete_record(self, table: str, record_id: str) -> None:
        self._call(table, "delete", record_id)

    # ── Team chat ────────────────────────────────────────────────────

    def team_history(self, channel: str) -> list[dict[str, Any]]:
        """Internal messages of *channel*.

        Direct channels are named ``<user1>_<user2>`` and may have been
        stored in either order.
        """
        if "_" in channel:
            first, _, second = channel.partition("_")
            forward = match({"channel": f"{first}_{second}"})
            backward = match({"channel": f"{second}_{first}"})
            formula = f"OR({forward}, {backward})"
        else:
            formula = match({"channel": channel})
        return self._call(
            TABLE_TEAM_MESSAGES, "all",
            formula=formula, sort=["timestamp"], max_records=TEAM_HISTORY_LIMIT,
        )

    def create_team_message(self, fields: dict[str, Any]) -> dict[str, Any]:
        return self._call(TABLE_TEAM_MESSAGES, "create", fields)

    # ── Companies (tenant directory) ─────────────────────────────────

    def find_company(self, company_id: str) -> dict[str, Any] | None:
        return self._call(TABLE_COMPANIES, "first", formula=match({"CompanyId": company_id}))
