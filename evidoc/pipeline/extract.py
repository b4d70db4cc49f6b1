"""Text extraction from PDFs, Word documents and plain text."""

from __future__ import annotations

import asyncio
import io
import logging
import re

from ..errors import MalformedInputError, UnsupportedInputError
from .types import (
    DOC_MIME,
    DOCX_MIME,
    PDF_MIME,
    TEXT_MIME,
    DocumentMetadata,
    ExtractionMethod,
    ExtractionResult,
    normalize_mime_type,
)

logger = logging.getLogger(__name__)

# Below this many characters extraction is treated as a probable scan
MIN_TEXT_LENGTH = 100

# Runs of printable characters in a legacy .doc binary
_DOC_TEXT_RUN = re.compile(rb"[\x20-\x7e\t\r\n]{8,}")


def printable_ratio(text: str) -> float:
    if not text:
        return 0.0
    printable = sum(1 for ch in text if ch.isprintable() or ch in "\t\n\r")
    return printable / len(text)


def text_confidence(text: str) -> float:
    """Heuristic confidence that extracted text is real, usable text."""
    text = text.strip()
    if not text:
        return 0.0
    confidence = printable_ratio(text)
    if len(text) < MIN_TEXT_LENGTH:
        confidence *= len(text) / MIN_TEXT_LENGTH
    return round(confidence, 4)


def needs_ocr(result: ExtractionResult, threshold: float = 0.5) -> bool:
    """Whether an extraction result is too weak to stand on its own."""
    if not result.text.strip():
        return True
    confidence = result.confidence if result.confidence is not None else text_confidence(result.text)
    return confidence < threshold


class TextExtractor:
    """Extract machine-readable text from a document's bytes.

    Routing is by MIME type:
    - PDF: text layer via pypdf
    - DOCX: paragraphs and tables via python-docx
    - DOC: best-effort scan for printable text runs
    - text/plain: decoded as UTF-8
    """

    async def extract(self, data: bytes, mime_type: str, filename: str | None = None) -> ExtractionResult:
        mime = normalize_mime_type(mime_type)

        if mime == PDF_MIME:
            return await asyncio.to_thread(self._extract_pdf, data)
        if mime == DOCX_MIME:
            return await asyncio.to_thread(self._extract_docx, data)
        if mime == DOC_MIME:
            return await asyncio.to_thread(self._extract_doc, data)
        if mime == TEXT_MIME:
            return self._extract_plain(data)

        raise UnsupportedInputError(
            f"No text extractor for {mime_type}" + (f" ({filename})" if filename else ""),
            stage="extraction",
        )

    def _extract_pdf(self, data: bytes) -> ExtractionResult:
        from pypdf import PdfReader

        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as e:
            raise MalformedInputError(
                f"Could not parse PDF: {e}", stage="extraction", original_error=e
            ) from e

        text = "\n\n".join(p.strip() for p in pages if p.strip())
        metadata = None
        try:
            info = reader.metadata
        except Exception as e:
            logger.debug("Ignoring unreadable PDF metadata: %s", e)
            info = None
        if info:
            metadata = DocumentMetadata(
                author=_str_or_none(info.get("/Author")),
                title=_str_or_none(info.get("/Title")),
                created_date=_str_or_none(info.get("/CreationDate")),
            )

        return ExtractionResult(
            text=text,
            method=ExtractionMethod.DIRECT_TEXT,
            confidence=text_confidence(text),
            page_count=len(pages),
            metadata=metadata,
        )

    def _extract_docx(self, data: bytes) -> ExtractionResult:
        import docx

        try:
            document = docx.Document(io.BytesIO(data))
        except Exception as e:
            raise MalformedInputError(
                f"Could not open Word document: {e}", stage="extraction", original_error=e
            ) from e

        parts = [p.text for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(" | ".join(cells))

        props = document.core_properties
        metadata = DocumentMetadata(
            author=props.author or None,
            title=props.title or None,
            created_date=props.created.isoformat() if props.created else None,
        )
        text = "\n".join(parts).strip()

        return ExtractionResult(
            text=text,
            method=ExtractionMethod.OFFICE_DOCUMENT,
            confidence=1.0 if text else 0.0,
            metadata=metadata,
        )

    def _extract_doc(self, data: bytes) -> ExtractionResult:
        # Word 97-2003 binaries keep body text as plain runs; good enough for search
        runs = [m.group().decode("ascii", errors="ignore").strip() for m in _DOC_TEXT_RUN.finditer(data)]
        words = [r for r in runs if sum(c.isalpha() for c in r) >= len(r) / 2]
        text = "\n".join(words)
        if not text:
            logger.warning("No text recovered from legacy Word document")

        return ExtractionResult(
            text=text,
            method=ExtractionMethod.OFFICE_DOCUMENT,
            confidence=text_confidence(text) * 0.8,
        )

    def _extract_plain(self, data: bytes) -> ExtractionResult:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            text = data.decode("latin-1")
        text = text.lstrip("\ufeff").strip()

        return ExtractionResult(
            text=text,
            method=ExtractionMethod.PLAIN_TEXT,
            confidence=1.0,
        )


def _str_or_none(value: object) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None
