"""Tests for text extraction."""

import io

import pytest

from conftest import make_pdf
from evidoc.errors import MalformedInputError, UnsupportedInputError
from evidoc.pipeline.base import clean_extracted_text, truncate_text
from evidoc.pipeline.extract import TextExtractor, needs_ocr, text_confidence
from evidoc.pipeline.types import DOC_MIME, DOCX_MIME, ExtractionMethod, ExtractionResult


LONG_TEXT = (
    "This services agreement is entered into by Acme Corp and the customer.\n"
    "The customer agrees to pay the full amount within thirty days of delivery."
)


def make_docx(paragraphs, table_rows=()):
    import docx

    document = docx.Document()
    document.core_properties.author = "Jane Doe"
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    if table_rows:
        table = document.add_table(rows=len(table_rows), cols=len(table_rows[0]))
        for r, row in enumerate(table_rows):
            for c, value in enumerate(row):
                table.cell(r, c).text = value
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


class TestTextConfidence:
    def test_empty_text_has_zero_confidence(self):
        assert text_confidence("") == 0.0
        assert text_confidence("   \n ") == 0.0

    def test_long_printable_text_is_confident(self):
        assert text_confidence("word " * 40) == 1.0

    def test_short_text_is_scaled_down(self):
        assert text_confidence("x" * 25) == pytest.approx(0.25)

    def test_needs_ocr_for_empty_or_weak_text(self):
        assert needs_ocr(ExtractionResult(text="", method=ExtractionMethod.DIRECT_TEXT, confidence=1.0))
        weak = ExtractionResult(text="abc", method=ExtractionMethod.DIRECT_TEXT, confidence=0.2)
        assert needs_ocr(weak, threshold=0.5)
        assert not needs_ocr(weak, threshold=0.1)


class TestTextExtractor:
    @pytest.fixture
    def extractor(self) -> TextExtractor:
        return TextExtractor()

    @pytest.mark.asyncio
    async def test_plain_text(self, extractor: TextExtractor):
        result = await extractor.extract("\ufeffHello there\n".encode("utf-8"), "text/plain; charset=utf-8")
        assert result.text == "Hello there"
        assert result.method == ExtractionMethod.PLAIN_TEXT
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_plain_text_falls_back_to_latin1(self, extractor: TextExtractor):
        result = await extractor.extract("Café receipt".encode("latin-1"), "text/plain")
        assert result.text == "Café receipt"

    @pytest.mark.asyncio
    async def test_pdf_text_layer(self, extractor: TextExtractor):
        result = await extractor.extract(make_pdf(LONG_TEXT), "application/pdf")
        assert result.method == ExtractionMethod.DIRECT_TEXT
        assert "Acme Corp" in result.text
        assert result.page_count == 1
        assert result.confidence >= 0.5

    @pytest.mark.asyncio
    async def test_blank_pdf_has_no_text(self, extractor: TextExtractor):
        result = await extractor.extract(make_pdf(None), "application/pdf")
        assert result.text == ""
        assert result.confidence == 0.0
        assert needs_ocr(result)

    @pytest.mark.asyncio
    async def test_corrupt_pdf_is_malformed(self, extractor: TextExtractor):
        with pytest.raises(MalformedInputError) as exc_info:
            await extractor.extract(b"this is not a pdf file at all" * 4, "application/pdf")
        assert exc_info.value.stage == "extraction"

    @pytest.mark.asyncio
    async def test_docx_paragraphs_and_tables(self, extractor: TextExtractor):
        data = make_docx(["Lease agreement", "Rent is due monthly."], [("Item", "Amount"), ("Rent", "$900")])
        result = await extractor.extract(data, DOCX_MIME)
        assert result.method == ExtractionMethod.OFFICE_DOCUMENT
        assert "Lease agreement" in result.text
        assert "Rent | $900" in result.text
        assert result.metadata.author == "Jane Doe"

    @pytest.mark.asyncio
    async def test_corrupt_docx_is_malformed(self, extractor: TextExtractor):
        with pytest.raises(MalformedInputError):
            await extractor.extract(b"PK\x03\x04 broken zip", DOCX_MIME)

    @pytest.mark.asyncio
    async def test_legacy_doc_recovers_text_runs(self, extractor: TextExtractor):
        data = b"\xd0\xcf\x11\xe0\x00\x00Dear Sir, please find the invoice attached.\x00\x01\x02"
        result = await extractor.extract(data, DOC_MIME)
        assert "please find the invoice attached" in result.text
        assert result.method == ExtractionMethod.OFFICE_DOCUMENT

    @pytest.mark.asyncio
    async def test_images_are_not_extractable(self, extractor: TextExtractor):
        with pytest.raises(UnsupportedInputError):
            await extractor.extract(b"\xff\xd8\xff", "image/jpeg", "photo.jpg")


class TestTextCleanup:
    def test_clean_extracted_text(self):
        raw = "  Line one  \r\n\r\n\r\n\r\nLine   two\t\tend  \n"
        assert clean_extracted_text(raw) == "Line one\n\nLine two end"

    def test_truncate_text(self):
        assert truncate_text("abcdef", 3) == "abc"
        assert truncate_text("abc", 10) == "abc"
