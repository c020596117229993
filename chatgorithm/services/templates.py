"""WhatsApp message template helpers."""

from __future__ import annotations

import re
from typing import Any

_WHITESPACE_RE = re.compile(r"\s+")
_INVALID_NAME_CHARS_RE = re.compile(r"[^a-z0-9_]")
_VARIABLE_RE = re.compile(r"\{\{(\d+)\}\}")

EXAMPLE_PLACEHOLDER = "Ejemplo"


def format_template_name(name: str) -> str:
    """Meta template names: lowercase, underscores, ``[a-z0-9_]`` only."""
    name = _WHITESPACE_RE.sub("_", name.strip().lower())
    return _INVALID_NAME_CHARS_RE.sub("", name)


def build_template_payload(
    name: str,
    category: str,
    language: str,
    body: str,
    footer: str | None = None,
    variable_examples: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build the ``message_templates`` creation payload.

    When the body uses ``{{n}}`` variables and examples are provided, Meta
    needs one example per variable up to the highest index; gaps are filled
    with a placeholder.
    """
    body_component: dict[str, Any] = {"type": "BODY", "text": body}
    components = [body_component]
    if footer:
        components.append({"type": "FOOTER", "text": footer})

    indexes = [int(n) for n in _VARIABLE_RE.findall(body)]
    if indexes and variable_examples:
        examples = [
            variable_examples.get(str(i)) or EXAMPLE_PLACEHOLDER
            for i in range(1, max(indexes) + 1)
        ]
        body_component["example"] = {"body_text": [examples]}

    return {
        "name": format_template_name(name),
        "category": category,
        "allow_category_change": True,
        "language": language,
        "components": components,
    }
