# =============================================================================
# Unit Tests — Parser (error mapping and element extraction)
# =============================================================================
#
# The Docling converter is mocked; no models are loaded.
# =============================================================================

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from docling_core.types.doc.labels import DocItemLabel

from app.services.errors import PermanentPipelineError
from app.services.parser import ParsedDocument, ParsedElement, parse_document


def _item(label, text, page=1):
    return SimpleNamespace(label=label, text=text, prov=[SimpleNamespace(page_no=page)])


def _converter_returning(items):
    document = MagicMock()
    document.iterate_items.return_value = [(item, 1) for item in items]
    converter = MagicMock()
    converter.convert.return_value = SimpleNamespace(document=document)
    return converter


class TestParseDocument:
    def test_unsupported_type(self):
        with pytest.raises(PermanentPipelineError):
            parse_document(b"data", "cv.doc", "doc")

    def test_conversion_error_is_permanent(self):
        converter = MagicMock()
        converter.convert.side_effect = RuntimeError("not a PDF")
        with patch("app.services.parser._get_converter", return_value=converter):
            with pytest.raises(PermanentPipelineError, match="Could not read"):
                parse_document(b"garbage", "cv.pdf", "pdf")

    def test_no_text_is_permanent(self):
        converter = _converter_returning([_item(DocItemLabel.TEXT, "   ")])
        with patch("app.services.parser._get_converter", return_value=converter):
            with pytest.raises(PermanentPipelineError, match="No extractable text"):
                parse_document(b"%PDF", "cv.pdf", "pdf")

    def test_headings_become_section_titles(self):
        converter = _converter_returning([
            _item(DocItemLabel.SECTION_HEADER, "Experience", page=1),
            _item(DocItemLabel.TEXT, "Senior engineer at Acme", page=1),
            _item(DocItemLabel.LIST_ITEM, "Python, SQL", page=2),
        ])
        with patch("app.services.parser._get_converter", return_value=converter):
            parsed = parse_document(b"%PDF", "cv.pdf", "pdf")

        assert [e.element_type for e in parsed.elements] == ["heading", "text", "text"]
        assert all(e.section_title == "Experience" for e in parsed.elements)
        assert parsed.page_count == 2
        assert parsed.text == "Experience\n\nSenior engineer at Acme\n\nPython, SQL"

    def test_stream_name_carries_extension(self):
        converter = _converter_returning([_item(DocItemLabel.TEXT, "Jane Doe", page=0)])
        with patch("app.services.parser._get_converter", return_value=converter):
            parse_document(b"PK", "upload", "docx")
        source = converter.convert.call_args.args[0]
        assert source.name == "upload.docx"


class TestParsedDocument:
    def test_text_joins_elements(self):
        doc = ParsedDocument(elements=[
            ParsedElement("a", 1, "text"),
            ParsedElement("b", 1, "text"),
        ])
        assert doc.text == "a\n\nb"
