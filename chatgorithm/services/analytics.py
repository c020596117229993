"""Dashboard figures computed from the raw Contacts and Messages tables."""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date, timedelta
from typing import Any

from chatgorithm.phone import is_phone_sender
from chatgorithm.services.airtable_store import STATUS_NEW

ACTIVITY_DAYS = 7
TOP_AGENTS = 5
SYSTEM_SENDER = "sistema"
UNKNOWN_STATUS = "Otros"

_MONTHS_SHORT = ["ene", "feb", "mar", "abr", "may", "jun", "jul", "ago", "sept", "oct", "nov", "dic"]


def _day_label(day: date) -> str:
    return f"{day.day} {_MONTHS_SHORT[day.month - 1]}"


def compute_analytics(
    contacts: list[dict[str, Any]],
    messages: list[dict[str, Any]],
    today: date,
) -> dict[str, Any]:
    """KPIs, last-week activity, top agents and the status distribution."""
    contact_fields = [c["fields"] for c in contacts]
    message_fields = [m["fields"] for m in messages]

    per_day = Counter((f.get("timestamp") or "")[:10] for f in message_fields)
    days = [today - timedelta(days=offset) for offset in range(ACTIVITY_DAYS - 1, -1, -1)]
    activity = [
        {"date": d.isoformat(), "label": _day_label(d), "count": per_day.get(d.isoformat(), 0)}
        for d in days
    ]

    agent_msgs: Counter[str] = Counter()
    agent_chats: defaultdict[str, set[str]] = defaultdict(set)
    for f in message_fields:
        sender = (f.get("sender") or "").strip()
        if not sender or sender.lower() == SYSTEM_SENDER or is_phone_sender(sender):
            continue
        agent_msgs[sender] += 1
        if f.get("recipient"):
            agent_chats[sender].add(f["recipient"])

    agents = [
        {"name": name, "msgCount": count, "chatCount": len(agent_chats[name])}
        for name, count in agent_msgs.most_common(TOP_AGENTS)
    ]

    statuses = Counter(f.get("status") or UNKNOWN_STATUS for f in contact_fields)

    return {
        "kpis": {
            "totalContacts": len(contact_fields),
            "totalMessages": len(message_fields),
            "newLeads": sum(1 for f in contact_fields if f.get("status") == STATUS_NEW),
        },
        "activity": activity,
        "agents": agents,
        "statuses": [{"name": name, "count": count} for name, count in statuses.items()],
    }
