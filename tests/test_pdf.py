"""Tests for PDF generation service.

Tests cover:
- Template discovery
- HTML rendering with the shared filters and base context
- PDF output from templates and raw HTML
- Error handling (template not found, render failures)
"""

from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from exportledger.db.models.base import EventCategory, EventSeverity
from exportledger.services.pdf import (
    PDFGenerationError,
    PDFGenerator,
    PDFResult,
    TemplateNotFoundError,
    format_date,
    format_datetime,
    short_hash,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(scope="module")
def pdf_generator() -> PDFGenerator:
    return PDFGenerator()


@pytest.fixture
def ledger_context() -> dict:
    event = SimpleNamespace(
        ledger_seq=1,
        created_at=datetime(2026, 3, 1, 8, 15, tzinfo=UTC),
        event_name="export.ledger.started",
        category=EventCategory.OPERATIONS,
        severity=EventSeverity.INFO,
        actor_id=None,
        target_type="export",
        target_id="e-1",
        hash="ab" * 32,
    )
    return {
        "organization_id": "0b5a4f0e-3c1d-4b8e-9d1f-6a2c7e5b9f10",
        "organization_name": "Acme <Roofing>",
        "export_id": "e-1",
        "events": [event],
        "time_range": "7d",
        "range_start": datetime(2026, 2, 22, tzinfo=UTC),
    }


class TestFilters:
    def test_format_datetime(self):
        assert format_datetime("2026-03-01T08:15:00Z") == "01 Mar 2026 08:15 UTC"
        assert format_datetime(None) == ""
        assert format_datetime("not a date") == "not a date"

    def test_format_date(self):
        assert format_date(datetime(2026, 3, 1, 23, 0)) == "01 Mar 2026"

    def test_short_hash(self):
        assert short_hash("a" * 64) == "a" * 16 + "..."
        assert short_hash("abc") == "abc"
        assert short_hash(None) == ""


class TestTemplates:
    def test_export_templates_available(self, pdf_generator):
        templates = pdf_generator.get_available_templates()

        for name in (
            "attestations.html",
            "controls.html",
            "evidence_index.html",
            "executive_brief.html",
            "ledger_export.html",
            "work_records.html",
        ):
            assert name in templates

    def test_render_html_escapes_and_formats(self, pdf_generator, ledger_context):
        html = pdf_generator.render_html("ledger_export.html", ledger_context)

        assert "Acme &lt;Roofing&gt;" in html
        assert "export.ledger.started" in html
        assert "01 Mar 2026 08:15 UTC" in html
        assert "abababababababab..." in html
        assert "system" in html

    def test_empty_ledger_message(self, pdf_generator, ledger_context):
        html = pdf_generator.render_html("ledger_export.html", {**ledger_context, "events": []})

        assert "No ledger events were recorded in this range." in html

    def test_missing_template(self, pdf_generator):
        with pytest.raises(TemplateNotFoundError) as exc_info:
            pdf_generator.render_html("nope.html")
        assert exc_info.value.template_name == "nope.html"


class TestRender:
    """PDF output."""

    def test_render_ledger_export(self, pdf_generator, ledger_context):
        result = pdf_generator.render("ledger_export.html", ledger_context)

        assert isinstance(result, PDFResult)
        assert result.content.startswith(b"%PDF")
        assert result.page_count >= 1
        assert result.template_name == "ledger_export.html"

    def test_render_work_records(self, pdf_generator):
        result = pdf_generator.render(
            "work_records.html",
            {
                "organization_id": "org-1",
                "headers": ("Client", "Status"),
                "rows": [["Harbor Logistics", "completed"]],
            },
        )

        assert result.content.startswith(b"%PDF")

    def test_render_html_string(self, pdf_generator):
        result = pdf_generator.render_html_string("<h1>Hello</h1>", include_css=False)

        assert result.content.startswith(b"%PDF")
        assert result.template_name == "<inline>"

    def test_template_error_wrapped(self, tmp_path):
        (tmp_path / "broken.html").write_text("{{ missing.attribute.chain }}")
        generator = PDFGenerator(template_dir=tmp_path)

        with pytest.raises(PDFGenerationError, match="Failed to render template"):
            generator.render("broken.html")
