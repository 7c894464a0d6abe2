# =============================================================================
# Document Parser — Docling Text Extraction (PDF, DOCX)
# =============================================================================
#
# Extracts text from an uploaded CV held in memory. The job row stores the
# raw bytes, so nothing is ever written to disk: Docling reads them through
# a `DocumentStream`.
#
# DESIGN DECISION: We iterate items (not export_to_markdown()) so each
# element keeps its page number and section heading for chunk metadata.
#
# DESIGN DECISION: Our own dataclasses (ParsedElement, ParsedDocument) are
# what the chunker consumes, so Docling types never leak downstream.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import BytesIO

from docling.datamodel.base_models import DocumentStream, InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

from app.services.errors import PermanentPipelineError

logger = logging.getLogger(__name__)

_FORMATS = {"pdf": InputFormat.PDF, "docx": InputFormat.DOCX}

_TEXT_LABELS = (
    DocItemLabel.TEXT,
    DocItemLabel.LIST_ITEM,
    DocItemLabel.CAPTION,
    DocItemLabel.FOOTNOTE,
)


@dataclass
class ParsedElement:
    """One paragraph, heading, or table of the source document."""

    text: str
    page_number: int  # 1-indexed; 0 when the format has no pages (DOCX)
    element_type: str  # "text", "table", or "heading"
    section_title: str | None = None
    level: int = 0


@dataclass
class ParsedDocument:
    """All extracted elements in reading order."""

    elements: list[ParsedElement] = field(default_factory=list)
    page_count: int = 0
    filename: str = ""

    @property
    def text(self) -> str:
        """Full plain text, elements separated by blank lines."""
        return "\n\n".join(e.text for e in self.elements)


_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling converter (loads ML models)."""
    global _converter
    if _converter is None:
        logger.info("Initializing Docling DocumentConverter (first use)...")
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = True
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            allowed_formats=list(_FORMATS.values()),
            format_options={
                InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options),
            },
        )
    return _converter


def parse_document(data: bytes, file_name: str, file_type: str) -> ParsedDocument:
    """
    Parse an in-memory PDF or DOCX into a ParsedDocument.

    Raises:
        PermanentPipelineError: unsupported type, unreadable file, or no text.
    """
    if file_type not in _FORMATS:
        raise PermanentPipelineError(f"Unsupported file type: {file_type}")

    # Docling detects the format from the stream name's extension
    stream_name = file_name if file_name.lower().endswith(f".{file_type}") else f"{file_name}.{file_type}"
    source = DocumentStream(name=stream_name, stream=BytesIO(data))

    try:
        result = _get_converter().convert(source)
    except Exception as exc:
        raise PermanentPipelineError(
            f"Could not read '{file_name}' as {file_type}: {exc}"
        ) from exc

    elements: list[ParsedElement] = []
    current_section: str | None = None
    pages: set[int] = set()

    for item, level in result.document.iterate_items():
        page_no = item.prov[0].page_no if getattr(item, "prov", None) else 0
        pages.add(page_no)
        label = getattr(item, "label", None)

        if label in (DocItemLabel.SECTION_HEADER, DocItemLabel.TITLE):
            text = getattr(item, "text", "").strip()
            if text:
                current_section = text
                elements.append(ParsedElement(text, page_no, "heading", current_section, level))

        elif label == DocItemLabel.TABLE:
            table_md = _table_to_markdown(item, result.document)
            if table_md:
                elements.append(ParsedElement(table_md, page_no, "table", current_section, level))

        elif label in _TEXT_LABELS:
            text = getattr(item, "text", "").strip()
            if text:
                elements.append(ParsedElement(text, page_no, "text", current_section, level))

    if not elements:
        raise PermanentPipelineError(f"No extractable text in '{file_name}'")

    parsed = ParsedDocument(
        elements=elements,
        page_count=max(pages - {0}, default=0),
        filename=file_name,
    )
    logger.info(
        "Parsed '%s' (%s): %d elements, %d pages, %d chars",
        file_name, file_type, len(elements), parsed.page_count, len(parsed.text),
    )
    return parsed


def _table_to_markdown(table_item: object, document: object) -> str:
    """Export a Docling table as markdown, falling back to its plain text."""
    try:
        if hasattr(table_item, "export_to_dataframe"):
            return table_item.export_to_dataframe(doc=document).to_markdown(index=False)
    except Exception as exc:
        logger.warning("Table export to DataFrame failed: %s", exc)

    text = getattr(table_item, "text", "")
    return text.strip() if text else ""
