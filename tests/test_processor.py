"""Tests for the pipeline orchestrator."""

import asyncio
import time

import pytest
from sqlalchemy.exc import OperationalError

from conftest import INVOICE_TEXT, FakeCompletionProvider, make_jpeg, make_pdf
from evidoc.errors import (
    ErrorKind,
    EvidenceNotFoundError,
    FileUnavailableError,
    UnsupportedMimeTypeError,
)
from evidoc.models import DocumentType, JobStatus, ProcessingStatus
from evidoc.pipeline.classify import DocumentClassifier
from evidoc.pipeline.llm import CompletionProvider
from evidoc.pipeline.progress import InMemoryProgressCache, ProgressCache
from evidoc.pipeline.types import (
    ExtractionMethod,
    PipelineStage,
    ProcessingStep,
    ProcessorOptions,
    StageState,
)
from evidoc.repository import CANCELLED_MESSAGE


PDF_TEXT = (
    "PURCHASE AGREEMENT\n"
    "This agreement is made between Acme Corp and John Smith on January 5, 2024.\n"
    "The buyer shall pay $2,500.00 for the equipment described below."
)


class RecordingCache(InMemoryProgressCache):
    """Keeps every progress write so tests can check ordering."""

    def __init__(self):
        super().__init__()
        self.history = []

    def set(self, progress):
        self.history.append((progress.step, progress.progress))
        super().set(progress)


class BrokenCache(ProgressCache):
    def get(self, evidence_id):
        raise ConnectionError("cache down")

    def set(self, progress):
        raise ConnectionError("cache down")

    def delete(self, evidence_id):
        raise ConnectionError("cache down")


class SlowCompletionProvider(CompletionProvider):
    def complete(self, prompt, max_tokens=1024):
        time.sleep(0.5)
        return "{}"


class CancellingClassifier(DocumentClassifier):
    """Requests cancellation of its own job while classifying."""

    def __init__(self, repository):
        super().__init__()
        self.repository = repository

    async def classify(self, text, filename=None, mime_type=None):
        job = next(j for j in self.repository.list_jobs(JobStatus.RUNNING))
        self.repository.request_cancel(job.id)
        return await super().classify(text, filename, mime_type)


class TestRouting:
    @pytest.mark.asyncio
    async def test_plain_text_invoice(self, processor, add_evidence, extractor, ocr_provider):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.COMPLETED
        assert result.text_method == ExtractionMethod.PLAIN_TEXT
        assert [a.value for a in result.entities.amounts] == [450.0]
        assert [d.normalized for d in result.entities.dates] == ["2024-01-15"]
        assert result.classification.document_type == DocumentType.INVOICE
        assert extractor.calls == ["text/plain"]
        assert ocr_provider.calls == []

    @pytest.mark.asyncio
    async def test_pdf_with_text_layer_never_reaches_ocr(self, processor, add_evidence, ocr_provider):
        evidence = add_evidence(make_pdf(PDF_TEXT), "purchase.pdf", "application/pdf")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.COMPLETED
        assert result.text_method == ExtractionMethod.DIRECT_TEXT
        assert result.stages[PipelineStage.OCR].state == StageState.SKIPPED
        assert ocr_provider.calls == []

    @pytest.mark.asyncio
    async def test_scanned_pdf_falls_back_to_ocr(self, processor, add_evidence, ocr_provider):
        ocr_provider.text = "Scanned receipt total $18.75 paid on 03/02/2024"
        ocr_provider.confidence = 91.0
        evidence = add_evidence(make_pdf(None), "scan.pdf", "application/pdf")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.COMPLETED
        assert result.text_method == ExtractionMethod.OCR
        assert result.extraction is not None
        assert ocr_provider.calls == ["application/pdf"]
        status = await processor.get_status(evidence.id)
        assert status.extracted_text == ocr_provider.text
        assert status.ocr_confidence == 91.0

    @pytest.mark.asyncio
    async def test_threshold_option_forces_ocr(self, processor, add_evidence, ocr_provider):
        ocr_provider.text = PDF_TEXT + " with more words recovered by OCR"
        ocr_provider.confidence = 95.0
        evidence = add_evidence(make_pdf(PDF_TEXT), "purchase.pdf", "application/pdf")

        result = await processor.process(evidence.id, ProcessorOptions(ocr_confidence_threshold=1.01))

        assert ocr_provider.calls == ["application/pdf"]
        assert result.text_method == ExtractionMethod.OCR

    @pytest.mark.asyncio
    async def test_images_skip_extraction(self, processor, add_evidence, extractor, ocr_provider):
        ocr_provider.text = "RECEIPT Total $12.00"
        ocr_provider.confidence = 85.0
        evidence = add_evidence(make_jpeg(), "IMG_0001.jpg", "image/jpeg")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.COMPLETED
        assert extractor.calls == []
        assert ocr_provider.calls == ["image/jpeg"]
        assert result.stages[PipelineStage.EXTRACTION].state == StageState.SKIPPED
        assert result.text_method == ExtractionMethod.OCR

    @pytest.mark.asyncio
    async def test_unreadable_jpeg_completes_with_empty_text(self, processor, add_evidence, ocr_provider):
        ocr_provider.text = ""
        ocr_provider.confidence = 12.0
        evidence = add_evidence(make_jpeg(), "IMG_0002.jpg", "image/jpeg")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.COMPLETED
        assert result.ocr.text == ""
        for stage in (PipelineStage.CLASSIFICATION, PipelineStage.ENTITIES, PipelineStage.SUMMARIZATION):
            assert result.stages[stage].state == StageState.SKIPPED
            assert result.stages[stage].reason == "no usable text"
        status = await processor.get_status(evidence.id)
        assert status.processing_status == ProcessingStatus.COMPLETED
        assert status.ocr_text == ""
        assert status.ocr_confidence == 12.0

    @pytest.mark.asyncio
    async def test_docx_never_reaches_ocr(self, processor, add_evidence, ocr_provider):
        import io

        import docx

        document = docx.Document()
        document.add_paragraph("")
        buf = io.BytesIO()
        document.save(buf)
        evidence = add_evidence(buf.getvalue(), "empty.docx", "application/vnd.openxmlformats-officedocument.wordprocessingml.document")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.COMPLETED
        assert result.stages[PipelineStage.OCR].reason == "not applicable"
        assert ocr_provider.calls == []


class TestFailures:
    @pytest.mark.asyncio
    async def test_corrupted_pdf_fails(self, processor, add_evidence, repository):
        evidence = add_evidence(b"this is not a pdf file at all" * 4, "broken.pdf", "application/pdf")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.FAILED
        assert result.error.startswith("Text extraction failed:")
        assert result.error_kind == ErrorKind.MALFORMED_INPUT
        assert result.classification is None
        assert result.entities is None
        assert result.summarization is None
        assert result.stages[PipelineStage.CLASSIFICATION].state == StageState.NOT_REACHED

        stored = repository.get_evidence(evidence.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert stored.processing_error == result.error
        assert stored.document_type is None
        assert stored.summary is None
        job = repository.get_job(result.job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_kind == "malformed_input"

    @pytest.mark.asyncio
    async def test_failed_attempt_keeps_previous_outputs(self, processor, add_evidence, repository):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")
        first = await processor.process(evidence.id)
        assert first.status == ProcessingStatus.COMPLETED
        before = repository.get_evidence(evidence.id)

        processor.classifier = DocumentClassifier(FakeCompletionProvider("not json"), use_filename_hints=False)
        second = await processor.process(evidence.id, force=True)

        assert second.status == ProcessingStatus.FAILED
        assert second.error.startswith("Classification failed:")
        assert second.error_kind == ErrorKind.EXTERNAL_SERVICE
        after = repository.get_evidence(evidence.id)
        assert after.summary == before.summary
        assert after.document_type == before.document_type
        assert after.extracted_entities == before.extracted_entities
        assert second.job_id != first.job_id

    @pytest.mark.asyncio
    async def test_provider_timeout(self, processor, add_evidence):
        processor.summarizer.provider = SlowCompletionProvider()
        processor.summarizer.timeout = 0.05
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.FAILED
        assert result.error_kind == ErrorKind.TIMEOUT
        assert result.error.startswith("Summarization failed:")
        assert result.entities is not None

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_internal(self, processor, add_evidence, monkeypatch):
        async def explode(text):
            raise KeyError("missing")

        monkeypatch.setattr(processor.entity_extractor, "extract", explode)
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.FAILED
        assert result.error_kind == ErrorKind.INTERNAL
        assert result.error.startswith("Entity extraction failed:")

    @pytest.mark.asyncio
    async def test_database_error_mid_run_fails_the_job(self, processor, add_evidence, repository, monkeypatch):
        save_stage_result = repository.save_stage_result
        calls = []

        def flaky_save(job_id, stage, outcome):
            calls.append(stage)
            if len(calls) == 2:
                raise OperationalError("UPDATE processing_jobs", {}, Exception("disk I/O error"))
            save_stage_result(job_id, stage, outcome)

        monkeypatch.setattr(repository, "save_stage_result", flaky_save)
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        with pytest.raises(OperationalError):
            await processor.process(evidence.id)

        [job] = repository.list_jobs()
        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.INTERNAL.value
        stored = repository.get_evidence(evidence.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert "OperationalError" in stored.processing_error

        retry = await processor.process(evidence.id)

        assert retry.coalesced is False
        assert retry.status == ProcessingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retries_enabled_with_healthy_providers(self, processor, add_evidence):
        processor.classifier.provider = FakeCompletionProvider('{"type": "INVOICE", "confidence": 0.9}')
        processor.entity_extractor.provider = FakeCompletionProvider(
            '{"parties": [{"name": "Acme Corp", "type": "organization", "role": "seller"}]}'
        )
        processor.summarizer.provider = FakeCompletionProvider(
            '{"summary": "Invoice for $450", "keyPoints": ["due 2024-01-15"]}'
        )
        for stage in (processor.classifier, processor.entity_extractor, processor.summarizer):
            stage.max_retries = 2
        evidence = add_evidence(INVOICE_TEXT.encode(), "notes.txt", "text/plain")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.COMPLETED
        assert result.classification.method == "llm"
        assert [p.name for p in result.entities.parties] == ["Acme Corp"]
        assert result.summarization.summary == "Invoice for $450"
        assert result.summarization.key_points == ["due 2024-01-15"]

    @pytest.mark.asyncio
    async def test_input_errors_raise_before_a_job_exists(self, processor, add_evidence, repository, storage):
        with pytest.raises(EvidenceNotFoundError):
            await processor.process("missing-id")

        zipped = add_evidence(b"PK", "bundle.zip", "application/zip")
        with pytest.raises(UnsupportedMimeTypeError):
            await processor.process(zipped.id)

        gone = add_evidence(b"hello", "gone.txt", "text/plain")
        storage.delete(gone.storage_key)
        with pytest.raises(FileUnavailableError):
            await processor.process(gone.id)
        with pytest.raises(FileUnavailableError):
            await processor.queue(gone.id)

        assert repository.list_jobs() == []
        assert repository.get_evidence(gone.id).processing_status == ProcessingStatus.PENDING


class TestOptions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "option,missing",
        [
            ("skip_classification", "document_type"),
            ("skip_entities", "extracted_entities"),
            ("skip_summarization", "summary"),
        ],
    )
    async def test_skip_leaves_field_absent(self, processor, add_evidence, repository, option, missing):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        result = await processor.process(evidence.id, ProcessorOptions(**{option: True}))

        assert result.status == ProcessingStatus.COMPLETED
        stored = repository.get_evidence(evidence.id)
        assert getattr(stored, missing) is None
        assert stored.extracted_text == INVOICE_TEXT
        fields = {"document_type", "extracted_entities", "summary"} - {missing}
        for name in fields:
            assert getattr(stored, name) is not None

    @pytest.mark.asyncio
    async def test_skip_ocr_on_image(self, processor, add_evidence, ocr_provider):
        evidence = add_evidence(make_jpeg(), "IMG_0003.jpg", "image/jpeg")

        result = await processor.process(evidence.id, ProcessorOptions(skip_ocr=True))

        assert result.status == ProcessingStatus.COMPLETED
        assert ocr_provider.calls == []
        assert result.stages[PipelineStage.OCR].reason == "skipped by options"
        assert result.stages[PipelineStage.SUMMARIZATION].reason == "no usable text"

    @pytest.mark.asyncio
    async def test_max_text_length(self, processor, add_evidence, repository):
        evidence = add_evidence(("word " * 500).encode(), "notes.txt", "text/plain")

        await processor.process(evidence.id, ProcessorOptions(max_text_length=50))

        assert len(repository.get_evidence(evidence.id).extracted_text) == 50


class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, processor, add_evidence):
        cache = RecordingCache()
        processor.progress_cache = cache
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        await processor.process(evidence.id)

        values = [progress for _, progress in cache.history]
        assert values == sorted(values)
        assert cache.history[-1] == (ProcessingStep.COMPLETED, 100)
        assert (ProcessingStep.EXTRACTING, 20) in cache.history
        assert (ProcessingStep.SUMMARIZING, 100) in cache.history

    @pytest.mark.asyncio
    async def test_stage_results_are_persisted(self, processor, add_evidence, repository):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        result = await processor.process(evidence.id)

        job = repository.get_job(result.job_id)
        assert job.progress == 100
        assert set(job.stage_results) == {"extraction", "classification", "entities", "summarization"}
        assert job.stage_results["extraction"]["result"]["method"] == "plain-text"
        assert job.details["extraction_method"] == "plain-text"
        assert job.details["ocr_used"] is False

    @pytest.mark.asyncio
    async def test_cache_outage_does_not_fail_jobs(self, processor, add_evidence):
        processor.progress_cache = BrokenCache()
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        result = await processor.process(evidence.id)
        status = await processor.get_status(evidence.id)

        assert result.status == ProcessingStatus.COMPLETED
        assert status.progress is None
        assert await processor.cancel(evidence.id) is False


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_completed_document_is_coalesced(self, processor, add_evidence, extractor):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")
        first = await processor.process(evidence.id)

        second = await processor.process(evidence.id)

        assert second.coalesced
        assert second.status == ProcessingStatus.COMPLETED
        assert second.job_id == first.job_id
        assert extractor.calls == ["text/plain"]

    @pytest.mark.asyncio
    async def test_force_reprocesses(self, processor, add_evidence, extractor):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")
        first = await processor.process(evidence.id)

        second = await processor.process(evidence.id, force=True)

        assert not second.coalesced
        assert second.job_id != first.job_id
        assert len(extractor.calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_sync_calls_run_once(self, processor, add_evidence, extractor, repository):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        results = await asyncio.gather(
            processor.process(evidence.id),
            processor.process(evidence.id),
        )

        assert sorted(r.coalesced for r in results) == [False, True]
        assert len(extractor.calls) == 1
        assert len(repository.list_jobs()) == 1

    @pytest.mark.asyncio
    async def test_sync_call_claims_queued_job(self, processor, add_evidence, repository):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")
        job_id = await processor.queue(evidence.id)

        result = await processor.process(evidence.id)
        skipped = await processor.run_job(job_id)

        assert result.job_id == job_id
        assert result.status == ProcessingStatus.COMPLETED
        assert skipped is None
        assert len(repository.list_jobs()) == 1


class TestQueuedProcessing:
    @pytest.mark.asyncio
    async def test_queue_twice_returns_same_job(self, processor, add_evidence, repository):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        first = await processor.queue(evidence.id)
        second = await processor.queue(evidence.id)

        assert first == second
        assert len(repository.list_jobs(JobStatus.QUEUED)) == 1
        status = await processor.get_status(evidence.id)
        assert status.processing_status == ProcessingStatus.QUEUED
        assert status.progress.step == ProcessingStep.QUEUED

    @pytest.mark.asyncio
    async def test_worker_runs_job_with_stored_options(self, processor, add_evidence, repository):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")
        await processor.job_queue.start(processor.run_job)
        try:
            await processor.queue(evidence.id, ProcessorOptions(skip_summarization=True))
            await processor.job_queue.join()
        finally:
            await processor.job_queue.stop()

        stored = repository.get_evidence(evidence.id)
        assert stored.processing_status == ProcessingStatus.COMPLETED
        assert stored.summary is None
        assert stored.document_type == DocumentType.INVOICE

    @pytest.mark.asyncio
    async def test_worker_fails_job_when_file_vanishes(self, processor, add_evidence, repository, storage):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")
        job_id = await processor.queue(evidence.id)
        storage.delete(evidence.storage_key)

        result = await processor.run_job(job_id)

        assert result.status == ProcessingStatus.FAILED
        assert result.error_kind == ErrorKind.UNSUPPORTED_INPUT
        assert repository.get_job(job_id).status == JobStatus.FAILED
        assert repository.get_evidence(evidence.id).processing_status == ProcessingStatus.FAILED


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, processor, add_evidence, repository):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")
        job_id = await processor.queue(evidence.id)

        assert await processor.cancel(evidence.id)

        job = repository.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == CANCELLED_MESSAGE
        assert repository.get_evidence(evidence.id).processing_status == ProcessingStatus.PENDING
        assert await processor.run_job(job_id) is None

    @pytest.mark.asyncio
    async def test_cancel_running_job_between_stages(self, processor, add_evidence, repository):
        processor.classifier = CancellingClassifier(repository)
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")

        result = await processor.process(evidence.id)

        assert result.status == ProcessingStatus.PENDING
        assert result.error_kind == ErrorKind.CANCELLED
        assert result.stages[PipelineStage.CLASSIFICATION].state == StageState.COMPLETED
        assert result.stages[PipelineStage.ENTITIES].state == StageState.NOT_REACHED
        stored = repository.get_evidence(evidence.id)
        assert stored.processing_status == ProcessingStatus.PENDING
        assert stored.document_type is None
        assert repository.get_job(result.job_id).error_message == CANCELLED_MESSAGE

    @pytest.mark.asyncio
    async def test_nothing_to_cancel(self, processor, add_evidence):
        evidence = add_evidence(INVOICE_TEXT.encode(), "invoice.txt", "text/plain")
        assert await processor.cancel(evidence.id) is False
