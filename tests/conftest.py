"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import io
from pathlib import Path
from uuid import uuid4

import pytest

from evidoc.db import get_engine, get_session_factory, init_db
from evidoc.ingest import EvidenceIngester
from evidoc.models import Evidence
from evidoc.pipeline.classify import DocumentClassifier
from evidoc.pipeline.entities import EntityExtractor
from evidoc.pipeline.extract import TextExtractor
from evidoc.pipeline.llm import CompletionProvider
from evidoc.pipeline.ocr import OCREngine, OCRProvider
from evidoc.pipeline.processor import DocumentProcessor
from evidoc.pipeline.progress import InMemoryProgressCache
from evidoc.pipeline.queue import EvidenceLocks, JobQueue
from evidoc.pipeline.summarize import DocumentSummarizer
from evidoc.pipeline.types import OCRBlock, OCRBlockType, OCRResult
from evidoc.repository import EvidenceRepository
from evidoc.service import EvidenceProcessingService
from evidoc.storage import LocalFileStorage


INVOICE_TEXT = "Invoice #123, due $450 on 2024-01-15"


class FakeOCRProvider(OCRProvider):
    """Returns a canned OCRResult and records every call."""

    name = "fake"

    def __init__(self, text: str = "", confidence: float = 0.0):
        self.text = text
        self.confidence = confidence
        self.calls: list[str] = []

    def recognize(self, data: bytes, mime_type: str) -> OCRResult:
        self.calls.append(mime_type)
        blocks = [OCRBlock(type=OCRBlockType.PAGE, text=self.text, confidence=self.confidence, page_number=1)]
        if self.text:
            blocks.append(OCRBlock(type=OCRBlockType.LINE, text=self.text, confidence=self.confidence, page_number=1))
        return OCRResult(
            text=self.text,
            confidence=self.confidence,
            blocks=blocks,
            backend=self.name,
            page_count=1,
        )


class FakeCompletionProvider(CompletionProvider):
    """Answers prompts from a list of canned responses, repeating the last one."""

    name = "fake"

    def __init__(self, *responses: str):
        self.responses = list(responses)
        self.prompts: list[str] = []

    def complete(self, prompt: str, max_tokens: int = 1024) -> str:
        self.prompts.append(prompt)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class CountingExtractor(TextExtractor):
    def __init__(self):
        self.calls: list[str] = []

    async def extract(self, data, mime_type, filename=None):
        self.calls.append(mime_type)
        return await super().extract(data, mime_type, filename)


def make_pdf(text: str | None) -> bytes:
    """A one-page PDF with the given text, or a blank page when text is None."""
    from reportlab.pdfgen import canvas

    buf = io.BytesIO()
    pdf = canvas.Canvas(buf)
    if text:
        y = 750
        for line in text.splitlines():
            pdf.drawString(72, y, line)
            y -= 14
    pdf.showPage()
    pdf.save()
    return buf.getvalue()


def make_jpeg() -> bytes:
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", (64, 64), "white").save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def repository(tmp_path: Path) -> EvidenceRepository:
    engine = get_engine(f"sqlite:///{tmp_path / 'evidoc.db'}")
    init_db(engine)
    return EvidenceRepository(get_session_factory(engine))


@pytest.fixture
def storage(tmp_path: Path) -> LocalFileStorage:
    return LocalFileStorage(tmp_path / "files")


@pytest.fixture
def ocr_provider() -> FakeOCRProvider:
    return FakeOCRProvider()


@pytest.fixture
def extractor() -> CountingExtractor:
    return CountingExtractor()


@pytest.fixture
def progress_cache() -> InMemoryProgressCache:
    return InMemoryProgressCache()


@pytest.fixture
def processor(
    repository: EvidenceRepository,
    storage: LocalFileStorage,
    extractor: CountingExtractor,
    ocr_provider: FakeOCRProvider,
    progress_cache: InMemoryProgressCache,
) -> DocumentProcessor:
    return DocumentProcessor(
        repository=repository,
        storage=storage,
        extractor=extractor,
        ocr=OCREngine(ocr_provider, timeout=5),
        classifier=DocumentClassifier(timeout=5),
        entity_extractor=EntityExtractor(timeout=5),
        summarizer=DocumentSummarizer(timeout=5),
        progress_cache=progress_cache,
        job_queue=JobQueue(repository, workers=2),
        locks=EvidenceLocks(),
    )


@pytest.fixture
def service(processor: DocumentProcessor, repository: EvidenceRepository, storage: LocalFileStorage) -> EvidenceProcessingService:
    return EvidenceProcessingService(
        processor,
        repository,
        ingester=EvidenceIngester(repository, storage),
    )


@pytest.fixture
def add_evidence(repository: EvidenceRepository, storage: LocalFileStorage):
    """Store bytes and create a PENDING evidence record for them."""

    def _add(content: bytes, filename: str, mime_type: str, case_id: str | None = None) -> Evidence:
        evidence_id = str(uuid4())
        key = f"{evidence_id}/{filename}"
        storage.put(key, content)
        return repository.create_evidence(
            id=evidence_id,
            case_id=case_id,
            filename=filename,
            mime_type=mime_type,
            storage_key=key,
            file_size=len(content),
        )

    return _add
