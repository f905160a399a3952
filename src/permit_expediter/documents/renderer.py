"""Document rendering for permit builds.

The orchestrator only depends on the :class:`DocumentRenderer` protocol:
field values in, bytes out. :class:`HtmlDocumentRenderer` renders the
application and checklist as HTML from the Jinja2 templates in
``documents/templates``; a PDF form filler can implement the same protocol.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from permit_expediter.schemas.context import CanonicalContext
from permit_expediter.schemas.findings import Finding
from permit_expediter.schemas.permit_case import utc_now_iso
from permit_expediter.schemas.template import PermitTemplate

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"


@dataclass(frozen=True)
class RenderedDocument:
    data: bytes
    content_type: str
    extension: str


@runtime_checkable
class DocumentRenderer(Protocol):
    def render_application(
        self,
        template: Optional[PermitTemplate],
        field_values: Dict[str, Any],
        context: CanonicalContext,
    ) -> RenderedDocument:
        """Render the filled permit application."""
        ...

    def render_checklist(
        self,
        findings: Sequence[Finding],
        context: CanonicalContext,
    ) -> RenderedDocument:
        """Render the outstanding-items checklist."""
        ...


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class HtmlDocumentRenderer:
    """Renders permit documents as standalone HTML pages."""

    content_type = "text/html"

    def __init__(self, templates_dir: Path = TEMPLATES_DIR):
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html", "j2"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["display"] = _display

    def _render(self, name: str, **kwargs) -> RenderedDocument:
        html = self.env.get_template(name).render(generated_at=utc_now_iso(), **kwargs)
        logger.debug(f"Rendered {name} ({len(html)} chars)")
        return RenderedDocument(html.encode("utf-8"), self.content_type, "html")

    def render_application(
        self,
        template: Optional[PermitTemplate],
        field_values: Dict[str, Any],
        context: CanonicalContext,
    ) -> RenderedDocument:
        rows: List[Dict[str, Any]] = []
        if template is not None:
            for tf in template.fields:
                rows.append(
                    {
                        "key": tf.key,
                        "label": tf.display_name,
                        "value": field_values.get(tf.key),
                        "required": tf.required,
                    }
                )
        title = (template.document.title if template else None) or "Permit Application"
        return self._render(
            "application.html.j2",
            title=title,
            rows=rows,
            authority=context.authority,
            job=context.job,
            company=context.company,
            permit_case_id=context.meta.permit_case_id,
        )

    def render_checklist(
        self,
        findings: Sequence[Finding],
        context: CanonicalContext,
    ) -> RenderedDocument:
        return self._render(
            "checklist.html.j2",
            findings=list(findings),
            job=context.job,
            authority=context.authority,
            permit_case_id=context.meta.permit_case_id,
        )


def render_packet_manifest(permit_case_id: str, include: Sequence[str]) -> RenderedDocument:
    """JSON manifest listing the documents a submission packet should contain."""
    manifest = {
        "generated_at": utc_now_iso(),
        "permit_case_id": permit_case_id,
        "include": list(include),
    }
    data = json.dumps(manifest, indent=2).encode("utf-8")
    return RenderedDocument(data, "application/json", "json")
