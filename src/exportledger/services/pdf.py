"""PDF generation service using WeasyPrint.

Export documents (ledger exports, controls and attestation reports,
evidence indexes, executive briefs, bulk work-record listings) are rendered
from Jinja2 HTML templates and converted to PDF with a shared stylesheet.

Example:
    from exportledger.services.pdf import PDFGenerator

    generator = PDFGenerator()
    result = generator.render(
        "ledger_export.html",
        {"organization_name": "Acme", "events": events},
    )
    pdf_bytes = result.content
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape
from weasyprint import CSS, HTML

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).parent.parent / "templates" / "pdf"

DEFAULT_CSS_PATH = DEFAULT_TEMPLATE_DIR / "styles.css"

GENERATOR_VERSION = "1.0.0"


@dataclass(frozen=True)
class PDFResult:
    """Result of a PDF generation operation.

    Attributes:
        content: The generated PDF as bytes.
        page_count: Number of pages in the generated PDF.
        template_name: Name of the template used.
        generated_at: Timestamp of generation (ISO 8601).
    """

    content: bytes
    page_count: int
    template_name: str
    generated_at: str


class PDFGenerationError(Exception):
    """Raised when PDF generation fails.

    Attributes:
        message: Human-readable error description.
        template_name: The template that failed to render.
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        template_name: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message
        self.template_name = template_name
        self.cause = cause
        super().__init__(message)


class TemplateNotFoundError(PDFGenerationError):
    """Raised when a requested template does not exist."""


def _parse_datetime(value: str | datetime) -> datetime | None:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_datetime(value: str | datetime | None) -> str:
    """Render a timestamp as "19 Oct 2026 14:05 UTC"."""
    if value is None:
        return ""
    dt = _parse_datetime(value)
    if dt is None:
        return str(value)
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC)
    return dt.strftime("%d %b %Y %H:%M UTC")


def format_date(value: str | datetime | None) -> str:
    if value is None:
        return ""
    dt = _parse_datetime(value)
    if dt is None:
        return str(value)
    return dt.strftime("%d %b %Y")


def short_hash(value: str | None, length: int = 16) -> str:
    if not value:
        return ""
    return value[:length] + "..." if len(value) > length else value


class PDFGenerator:
    """Renders export templates to PDF.

    Create one instance and reuse it; the Jinja2 environment and stylesheet
    are loaded once.
    """

    def __init__(
        self,
        template_dir: Path | str | None = None,
        css_path: Path | str | None = None,
        *,
        base_url: str | None = None,
    ) -> None:
        """Initialize the PDF generator.

        Args:
            template_dir: Directory containing PDF templates. Defaults to
                the built-in templates/pdf directory.
            css_path: Path to the PDF stylesheet. Defaults to the built-in
                styles.css.
            base_url: Base URL for resolving relative URLs in templates.
                If None, uses template_dir.
        """
        self._template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
        self._css_path = Path(css_path) if css_path else DEFAULT_CSS_PATH
        self._base_url = base_url or f"file://{self._template_dir}/"

        self._env = Environment(
            loader=FileSystemLoader(str(self._template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
        )
        self._env.filters["format_datetime"] = format_datetime
        self._env.filters["format_date"] = format_date
        self._env.filters["short_hash"] = short_hash

        self._css: CSS | None = None
        if self._css_path.exists():
            self._css = CSS(filename=str(self._css_path))

        logger.debug("Initialized PDFGenerator: template_dir=%s", self._template_dir)

    def _get_base_context(self) -> dict[str, Any]:
        return {
            "generated_at": datetime.now(UTC).isoformat(),
            "generator_version": GENERATOR_VERSION,
        }

    def render_html(self, template_name: str, context: dict[str, Any] | None = None) -> str:
        """Render a template to an HTML string without converting it.

        Raises:
            TemplateNotFoundError: If the template does not exist.
            PDFGenerationError: If the template fails to render.
        """
        full_context = self._get_base_context()
        if context:
            full_context.update(context)

        try:
            template = self._env.get_template(template_name)
            return template.render(**full_context)
        except TemplateNotFound as e:
            raise TemplateNotFoundError(
                f"Template not found: {template_name}",
                template_name=template_name,
            ) from e
        except Exception as e:
            raise PDFGenerationError(
                f"Failed to render template: {e}",
                template_name=template_name,
                cause=e,
            ) from e

    def render(self, template_name: str, context: dict[str, Any] | None = None) -> PDFResult:
        """Render a template to PDF.

        Args:
            template_name: Template file in the templates directory.
            context: Template variables, merged over the base context.

        Returns:
            PDFResult containing the PDF bytes and metadata.

        Raises:
            TemplateNotFoundError: If the template does not exist.
            PDFGenerationError: If rendering fails.
        """
        html_content = self.render_html(template_name, context)
        result = self._write_pdf(html_content, template_name=template_name)

        logger.debug(
            "Generated PDF from template=%s, pages=%d, bytes=%d",
            template_name,
            result.page_count,
            len(result.content),
        )
        return result

    def render_html_string(self, html_content: str, *, include_css: bool = True) -> PDFResult:
        """Render an arbitrary HTML document to PDF.

        Raises:
            PDFGenerationError: If rendering fails.
        """
        return self._write_pdf(html_content, template_name="<inline>", include_css=include_css)

    def _write_pdf(
        self,
        html_content: str,
        *,
        template_name: str,
        include_css: bool = True,
    ) -> PDFResult:
        try:
            html_doc = HTML(string=html_content, base_url=self._base_url)
            stylesheets = [self._css] if (include_css and self._css) else None
            pdf_document = html_doc.render(stylesheets=stylesheets)
            pdf_bytes = pdf_document.write_pdf()
        except Exception as e:
            raise PDFGenerationError(
                f"Failed to generate PDF: {e}",
                template_name=template_name,
                cause=e,
            ) from e

        return PDFResult(
            content=pdf_bytes,
            page_count=len(pdf_document.pages),
            template_name=template_name,
            generated_at=datetime.now(UTC).isoformat(),
        )

    def get_available_templates(self) -> list[str]:
        """List available PDF templates."""
        if not self._template_dir.exists():
            return []
        return sorted(
            f.name for f in self._template_dir.iterdir() if f.is_file() and f.suffix == ".html"
        )
