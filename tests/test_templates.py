"""Tests for WhatsApp template name formatting and payload building."""

from __future__ import annotations

import pytest

from chatgorithm.services.templates import build_template_payload, format_template_name


class TestFormatTemplateName:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Promo Enero", "promo_enero"),
            ("  Recordatorio   Cita ", "recordatorio_cita"),
            ("Oferta-2026!", "oferta2026"),
            ("año_nuevo", "ao_nuevo"),
        ],
    )
    def test_formats(self, raw, expected):
        assert format_template_name(raw) == expected


class TestBuildTemplatePayload:
    def test_body_only(self):
        payload = build_template_payload("Promo Enero", "MARKETING", "es", "¡Ofertas de enero!")
        assert payload == {
            "name": "promo_enero",
            "category": "MARKETING",
            "allow_category_change": True,
            "language": "es",
            "components": [{"type": "BODY", "text": "¡Ofertas de enero!"}],
        }

    def test_footer_component(self):
        payload = build_template_payload("promo", "MARKETING", "es", "Hola", footer="Responde STOP")
        assert payload["components"][1] == {"type": "FOOTER", "text": "Responde STOP"}

    def test_variable_examples_fill_gaps(self):
        payload = build_template_payload(
            "cita", "UTILITY", "es", "Hola {{1}}, tu cita es el {{3}}.",
            variable_examples={"1": "Ana"},
        )
        body = payload["components"][0]
        assert body["example"] == {"body_text": [["Ana", "Ejemplo", "Ejemplo"]]}

    def test_variables_without_examples(self):
        payload = build_template_payload("cita", "UTILITY", "es", "Hola {{1}}")
        assert "example" not in payload["components"][0]
