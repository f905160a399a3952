"""Permit document rendering."""

from permit_expediter.documents.renderer import (
    DocumentRenderer,
    HtmlDocumentRenderer,
    RenderedDocument,
    render_packet_manifest,
)

__all__ = [
    "DocumentRenderer",
    "HtmlDocumentRenderer",
    "RenderedDocument",
    "render_packet_manifest",
]
