"""Pipeline orchestrator.

Runs the stages of one job in a fixed order:

    extraction -> OCR -> classification -> entities -> summarization

Stages are skipped per options and routing rules. Progress is written to
the job, the evidence record and the progress cache as stages start and
finish. A stage error fails the job; outputs are only written to the
evidence record when every stage that ran has succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from ..errors import (
    ErrorKind,
    EvidenceNotFoundError,
    FileUnavailableError,
    InputError,
    JobCancelledError,
    StageError,
    UnsupportedMimeTypeError,
)
from ..models import Evidence, JobStatus, ProcessingJob, ProcessingStatus, utcnow
from ..repository import CANCELLED_MESSAGE, EvidenceRepository
from ..storage import DocumentStorage
from .base import clean_extracted_text, truncate_text
from .classify import DocumentClassifier
from .entities import EntityExtractor
from .extract import TextExtractor, needs_ocr
from .ocr import OCREngine
from .progress import ProgressCache
from .queue import EvidenceLocks, JobQueue
from .summarize import DocumentSummarizer
from .types import (
    PDF_MIME,
    STAGE_MILESTONES,
    DocumentProcessingResult,
    ExtractedEntities,
    ExtractionMethod,
    PipelineStage,
    ProcessingProgress,
    ProcessingStep,
    ProcessorOptions,
    StageOutcome,
    StageState,
    is_ocr_capable,
    is_supported,
    normalize_mime_type,
    requires_ocr,
)

logger = logging.getLogger(__name__)

DEFAULT_OCR_THRESHOLDS = {PDF_MIME: 0.5}
DEFAULT_MAX_TEXT_LENGTH = 50000
NO_TEXT_REASON = "no usable text"


@dataclass
class JobSnapshot:
    id: str
    status: JobStatus
    progress: int
    current_step: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    error_kind: str | None = None

    @classmethod
    def from_job(cls, job: ProcessingJob) -> JobSnapshot:
        return cls(
            id=job.id,
            status=job.status,
            progress=job.progress,
            current_step=job.current_step,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error_message=job.error_message,
            error_kind=job.error_kind,
        )


@dataclass
class EvidenceStatus:
    """Persisted processing state of an evidence record plus cached progress."""

    evidence_id: str
    processing_status: ProcessingStatus
    processed_at: datetime | None = None
    processing_error: str | None = None
    extracted_text: str | None = None
    ocr_text: str | None = None
    ocr_confidence: float | None = None
    document_type: str | None = None
    classification_confidence: float | None = None
    entities: ExtractedEntities | None = None
    summary: str | None = None
    key_points: list[str] = field(default_factory=list)
    job: JobSnapshot | None = None
    progress: ProcessingProgress | None = None


class _ProgressTracker:
    """Writes job progress; the percentage never goes down."""

    def __init__(
        self,
        repository: EvidenceRepository,
        cache: ProgressCache,
        job_id: str,
        evidence_id: str,
    ):
        self.repository = repository
        self.cache = cache
        self.job_id = job_id
        self.evidence_id = evidence_id
        self.step = ProcessingStep.QUEUED
        self.progress = 0

    def advance(self, progress: int) -> None:
        """Raise the floor without writing, for stages that were skipped."""
        self.progress = max(self.progress, progress)

    def report(self, step: ProcessingStep, progress: int, message: str | None = None) -> None:
        self.step = step
        self.advance(progress)
        if step not in (ProcessingStep.COMPLETED, ProcessingStep.FAILED):
            self.repository.update_progress(
                self.job_id, self.evidence_id, step.value, self.progress, step.status
            )
        self.publish(message)

    def publish(self, message: str | None = None) -> None:
        progress = ProcessingProgress(
            evidence_id=self.evidence_id,
            job_id=self.job_id,
            step=self.step,
            progress=self.progress,
            message=message,
        )
        write_progress(self.cache, progress)


def write_progress(cache: ProgressCache, progress: ProcessingProgress) -> None:
    try:
        cache.set(progress)
    except Exception as e:
        logger.warning("Progress cache write failed for %s: %s", progress.evidence_id, e)


def read_progress(cache: ProgressCache, evidence_id: str) -> ProcessingProgress | None:
    try:
        return cache.get(evidence_id)
    except Exception as e:
        logger.warning("Progress cache read failed for %s: %s", evidence_id, e)
        return None


class DocumentProcessor:
    """Runs the processing pipeline against evidence records."""

    def __init__(
        self,
        repository: EvidenceRepository,
        storage: DocumentStorage,
        extractor: TextExtractor,
        ocr: OCREngine,
        classifier: DocumentClassifier,
        entity_extractor: EntityExtractor,
        summarizer: DocumentSummarizer,
        progress_cache: ProgressCache,
        job_queue: JobQueue | None = None,
        locks: EvidenceLocks | None = None,
        ocr_thresholds: dict[str, float] | None = None,
        max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
    ):
        self.repository = repository
        self.storage = storage
        self.extractor = extractor
        self.ocr = ocr
        self.classifier = classifier
        self.entity_extractor = entity_extractor
        self.summarizer = summarizer
        self.progress_cache = progress_cache
        self.job_queue = job_queue or JobQueue(repository)
        self.locks = locks or EvidenceLocks()
        self.ocr_thresholds = {
            normalize_mime_type(k): v
            for k, v in (DEFAULT_OCR_THRESHOLDS if ocr_thresholds is None else ocr_thresholds).items()
        }
        self.max_text_length = max_text_length

    # === Entry points ===

    async def process(
        self,
        evidence_id: str,
        options: ProcessorOptions | None = None,
        force: bool = False,
    ) -> DocumentProcessingResult:
        """Process a document inline and return the terminal result.

        Returns a coalesced result instead when the document is already being
        processed, or is COMPLETED and ``force`` is not set.
        """
        started = time.monotonic()
        options = options or ProcessorOptions()
        self._load_evidence(evidence_id)

        async with self.locks.try_hold(evidence_id) as acquired:
            if not acquired:
                return self._coalesced(evidence_id)

            evidence = self._load_evidence(evidence_id)
            active = self.repository.get_active_job(evidence_id)
            if active is not None and active.status == JobStatus.RUNNING:
                return self._coalesced(evidence_id)
            if evidence.processing_status == ProcessingStatus.COMPLETED and not force:
                return self._coalesced(evidence_id)

            data = await self._fetch_bytes(evidence)

            # A QUEUED job is claimed here; its worker later finds it taken
            if active is None:
                active, _ = self.repository.create_job_if_absent(evidence_id, options.to_dict())
            job = self.repository.claim_job(active.id)
            if job is None:
                return self._coalesced(evidence_id)

            return await self._execute(job, evidence, data, options, started)

    async def queue(
        self,
        evidence_id: str,
        options: ProcessorOptions | None = None,
        force: bool = False,
    ) -> str:
        """Register a job for background processing and return its ID."""
        options = options or ProcessorOptions()
        evidence = self._load_evidence(evidence_id)

        active = self.repository.get_active_job(evidence_id)
        if active is not None:
            return active.id
        if evidence.processing_status == ProcessingStatus.COMPLETED and not force:
            latest = self.repository.get_latest_job(evidence_id)
            if latest is not None:
                return latest.id

        if not await asyncio.to_thread(self.storage.exists, evidence.storage_key):
            raise FileUnavailableError(f"Stored file missing for evidence {evidence_id}")

        job_id = await self.job_queue.enqueue(evidence_id, options.to_dict())
        write_progress(self.progress_cache, ProcessingProgress(
            evidence_id=evidence_id,
            job_id=job_id,
            step=ProcessingStep.QUEUED,
            progress=0,
            message="Queued for processing",
        ))
        return job_id

    async def run_job(self, job_id: str) -> DocumentProcessingResult | None:
        """Worker entry point. Jobs no longer QUEUED are skipped."""
        job = self.repository.get_job(job_id)
        if job is None or job.status != JobStatus.QUEUED:
            logger.debug("Skipping job %s: no longer queued", job_id)
            return None

        async with self.locks.hold(job.evidence_id):
            started = time.monotonic()
            claimed = self.repository.claim_job(job_id)
            if claimed is None:
                logger.debug("Skipping job %s: claimed or cancelled elsewhere", job_id)
                return None

            try:
                evidence = self._load_evidence(claimed.evidence_id)
                data = await self._fetch_bytes(evidence)
            except InputError as e:
                logger.warning("Job %s failed before processing: %s", job_id, e)
                self.repository.fail_job(
                    claimed.id, claimed.evidence_id, str(e), ErrorKind.UNSUPPORTED_INPUT.value
                )
                return DocumentProcessingResult(
                    evidence_id=claimed.evidence_id,
                    job_id=claimed.id,
                    status=ProcessingStatus.FAILED,
                    error=str(e),
                    error_kind=ErrorKind.UNSUPPORTED_INPUT,
                    processing_time_ms=_elapsed_ms(started),
                )

            options = ProcessorOptions.from_dict(claimed.options)
            return await self._execute(claimed, evidence, data, options, started)

    async def get_status(self, evidence_id: str) -> EvidenceStatus:
        evidence = self.repository.get_evidence(evidence_id)
        if evidence is None:
            raise EvidenceNotFoundError(f"Evidence not found: {evidence_id}")
        latest = self.repository.get_latest_job(evidence_id)

        return EvidenceStatus(
            evidence_id=evidence.id,
            processing_status=evidence.processing_status,
            processed_at=evidence.processed_at,
            processing_error=evidence.processing_error,
            extracted_text=evidence.extracted_text,
            ocr_text=evidence.ocr_text,
            ocr_confidence=evidence.ocr_confidence,
            document_type=evidence.document_type.value if evidence.document_type else None,
            classification_confidence=evidence.classification_confidence,
            entities=ExtractedEntities.from_dict(evidence.extracted_entities) if evidence.extracted_entities else None,
            summary=evidence.summary,
            key_points=list(evidence.key_points or []),
            job=JobSnapshot.from_job(latest) if latest else None,
            progress=read_progress(self.progress_cache, evidence_id),
        )

    async def cancel(self, evidence_id: str) -> bool:
        """Cancel a queued job now, or flag a running one to stop between stages."""
        self._load_evidence(evidence_id, check_mime=False)

        cancelled = self.repository.cancel_queued_job(evidence_id)
        if cancelled is not None:
            logger.info("Cancelled queued job %s for evidence %s", cancelled.id, evidence_id)
            try:
                self.progress_cache.delete(evidence_id)
            except Exception as e:
                logger.warning("Progress cache delete failed for %s: %s", evidence_id, e)
            return True

        active = self.repository.get_active_job(evidence_id)
        if active is not None and self.repository.request_cancel(active.id):
            logger.info("Cancellation requested for running job %s", active.id)
            return True
        return False

    # === Pipeline ===

    async def _execute(
        self,
        job: ProcessingJob,
        evidence: Evidence,
        data: bytes,
        options: ProcessorOptions,
        started: float,
    ) -> DocumentProcessingResult:
        try:
            return await self._run_pipeline(job, evidence, data, options, started)
        except Exception as e:
            # The job is still RUNNING and would block every later attempt
            self._abort(job, e)
            raise

    def _abort(self, job: ProcessingJob, error: Exception) -> None:
        message = f"Processing aborted: {type(error).__name__}: {error}"
        logger.error("Job %s for evidence %s aborted: %s", job.id, job.evidence_id, error)
        try:
            self.repository.fail_job(job.id, job.evidence_id, message, ErrorKind.INTERNAL.value)
        except Exception:
            logger.exception("Could not mark job %s as failed", job.id)
        write_progress(
            self.progress_cache,
            ProcessingProgress(
                evidence_id=job.evidence_id,
                job_id=job.id,
                step=ProcessingStep.FAILED,
                progress=0,
                message=message,
            ),
        )

    async def _run_pipeline(
        self,
        job: ProcessingJob,
        evidence: Evidence,
        data: bytes,
        options: ProcessorOptions,
        started: float,
    ) -> DocumentProcessingResult:
        mime = normalize_mime_type(evidence.mime_type)
        tracker = _ProgressTracker(self.repository, self.progress_cache, job.id, evidence.id)
        stages = {stage: StageOutcome(stage) for stage in PipelineStage}
        result = DocumentProcessingResult(
            evidence_id=evidence.id,
            job_id=job.id,
            status=ProcessingStatus.FAILED,
            stages=stages,
        )
        logger.info("Processing evidence %s (%s) as job %s", evidence.id, mime, job.id)

        text = ""
        text_method = None
        extraction = None
        ocr_result = None
        classification = None
        entities = None
        summary = None
        current = PipelineStage.EXTRACTION

        try:
            # Extraction
            if requires_ocr(mime):
                self._skip(stages, tracker, current, "image input")
            else:
                extraction = await self._run_stage(
                    job, tracker, stages, current,
                    lambda: self.extractor.extract(data, mime, evidence.filename),
                )
                text = extraction.text
                text_method = extraction.method
            self._check_cancelled(job)

            # OCR
            current = PipelineStage.OCR
            threshold = self._ocr_threshold(mime, options)
            if options.skip_ocr:
                self._skip(stages, tracker, current, "skipped by options")
            elif not is_ocr_capable(mime):
                self._skip(stages, tracker, current, "not applicable")
            elif extraction is not None and not needs_ocr(extraction, threshold):
                self._skip(stages, tracker, current, "extracted text is sufficient")
            else:
                ocr_result = await self._run_stage(
                    job, tracker, stages, current,
                    lambda: self.ocr.process(data, mime),
                )
                if len(ocr_result.text.strip()) > len(text.strip()) or text_method is None:
                    text = ocr_result.text
                    text_method = ExtractionMethod.OCR
            self._check_cancelled(job)

            text = truncate_text(clean_extracted_text(text), options.max_text_length or self.max_text_length)

            # Classification
            current = PipelineStage.CLASSIFICATION
            if options.skip_classification:
                self._skip(stages, tracker, current, "skipped by options")
            elif not text:
                self._skip(stages, tracker, current, NO_TEXT_REASON)
            else:
                classification = await self._run_stage(
                    job, tracker, stages, current,
                    lambda: self.classifier.classify(text, evidence.filename, mime),
                )
            self._check_cancelled(job)

            # Entities
            current = PipelineStage.ENTITIES
            if options.skip_entities:
                self._skip(stages, tracker, current, "skipped by options")
            elif not text:
                self._skip(stages, tracker, current, NO_TEXT_REASON)
            else:
                entities = await self._run_stage(
                    job, tracker, stages, current,
                    lambda: self.entity_extractor.extract(text),
                )
            self._check_cancelled(job)

            # Summarization
            current = PipelineStage.SUMMARIZATION
            document_type = classification.document_type if classification else None
            if options.skip_summarization:
                self._skip(stages, tracker, current, "skipped by options")
            elif not text:
                self._skip(stages, tracker, current, NO_TEXT_REASON)
            else:
                summary = await self._run_stage(
                    job, tracker, stages, current,
                    lambda: self.summarizer.summarize(text, document_type),
                )
        except JobCancelledError as e:
            result.text_method = text_method
            return self._finish_cancelled(job, evidence, tracker, result, e, started)
        except StageError as e:
            result.text_method = text_method
            return self._finish_failed(job, evidence, tracker, result, current, e, started)

        produced_text = extraction is not None or ocr_result is not None
        outputs: dict[str, Any] = {
            "extracted_text": text if produced_text else None,
            "ocr_text": ocr_result.text if ocr_result else None,
            "ocr_confidence": ocr_result.confidence if ocr_result else None,
            "ocr_processed_at": utcnow() if ocr_result else None,
            "document_type": classification.document_type if classification else None,
            "classification_confidence": classification.confidence if classification else None,
            "extracted_entities": entities.to_dict() if entities else None,
            "summary": summary.summary if summary else None,
            "key_points": summary.key_points if summary else None,
        }

        result.status = ProcessingStatus.COMPLETED
        result.text_method = text_method
        result.processing_time_ms = _elapsed_ms(started)
        self.repository.complete_job(job.id, evidence.id, outputs, self._details(result, text))
        tracker.report(ProcessingStep.COMPLETED, 100, "Processing complete")

        logger.info(
            "Completed evidence %s in %dms (method=%s, %d chars)",
            evidence.id, result.processing_time_ms,
            text_method.value if text_method else None, len(text),
        )
        return result

    async def _run_stage(
        self,
        job: ProcessingJob,
        tracker: _ProgressTracker,
        stages: dict[PipelineStage, StageOutcome],
        stage: PipelineStage,
        run: Callable[[], Awaitable[Any]],
    ) -> Any:
        outcome = stages[stage]
        tracker.report(stage.step, tracker.progress, f"{stage.label} started")
        stage_started = time.monotonic()

        try:
            value = await run()
        except StageError as e:
            e.stage = e.stage or stage.value
            outcome.state = StageState.FAILED
            outcome.reason = str(e)
            outcome.duration_ms = _elapsed_ms(stage_started)
            raise
        except Exception as e:
            logger.exception("Unexpected error in %s stage of job %s", stage.value, job.id)
            outcome.state = StageState.FAILED
            outcome.reason = f"{type(e).__name__}: {e}"
            outcome.duration_ms = _elapsed_ms(stage_started)
            raise StageError(outcome.reason, stage=stage.value, original_error=e) from e

        outcome.state = StageState.COMPLETED
        outcome.result = value
        outcome.duration_ms = _elapsed_ms(stage_started)
        self.repository.save_stage_result(job.id, stage.value, outcome.to_dict())
        tracker.report(stage.step, STAGE_MILESTONES[stage], f"{stage.label} complete")
        return value

    def _skip(
        self,
        stages: dict[PipelineStage, StageOutcome],
        tracker: _ProgressTracker,
        stage: PipelineStage,
        reason: str,
    ) -> None:
        outcome = stages[stage]
        outcome.state = StageState.SKIPPED
        outcome.reason = reason
        tracker.advance(STAGE_MILESTONES[stage])
        logger.debug("Skipped %s: %s", stage.value, reason)

    def _check_cancelled(self, job: ProcessingJob) -> None:
        if self.repository.is_cancel_requested(job.id):
            raise JobCancelledError(CANCELLED_MESSAGE)

    def _finish_failed(
        self,
        job: ProcessingJob,
        evidence: Evidence,
        tracker: _ProgressTracker,
        result: DocumentProcessingResult,
        stage: PipelineStage,
        error: StageError,
        started: float,
    ) -> DocumentProcessingResult:
        message = f"{stage.label} failed: {error}"
        logger.warning(
            "Evidence %s failed in %s (%s): %s", evidence.id, stage.value, error.kind.value, error
        )

        result.status = ProcessingStatus.FAILED
        result.error = message
        result.error_kind = error.kind
        result.processing_time_ms = _elapsed_ms(started)
        self.repository.fail_job(job.id, evidence.id, message, error.kind.value, self._details(result, ""))
        tracker.report(ProcessingStep.FAILED, tracker.progress, message)
        return result

    def _finish_cancelled(
        self,
        job: ProcessingJob,
        evidence: Evidence,
        tracker: _ProgressTracker,
        result: DocumentProcessingResult,
        error: JobCancelledError,
        started: float,
    ) -> DocumentProcessingResult:
        logger.info("Job %s for evidence %s cancelled", job.id, evidence.id)
        result.status = ProcessingStatus.PENDING
        result.error = str(error)
        result.error_kind = ErrorKind.CANCELLED
        result.processing_time_ms = _elapsed_ms(started)
        self.repository.fail_job(
            job.id, evidence.id, str(error), ErrorKind.CANCELLED.value,
            self._details(result, ""), evidence_status=ProcessingStatus.PENDING,
        )
        tracker.report(ProcessingStep.FAILED, tracker.progress, str(error))
        return result

    # === Helpers ===

    def _load_evidence(self, evidence_id: str, check_mime: bool = True) -> Evidence:
        evidence = self.repository.get_evidence(evidence_id)
        if evidence is None:
            raise EvidenceNotFoundError(f"Evidence not found: {evidence_id}")
        if check_mime and not is_supported(evidence.mime_type):
            raise UnsupportedMimeTypeError(f"Unsupported file type: {evidence.mime_type}")
        return evidence

    async def _fetch_bytes(self, evidence: Evidence) -> bytes:
        try:
            return await asyncio.to_thread(self.storage.get, evidence.storage_key)
        except FileUnavailableError:
            raise
        except Exception as e:
            raise FileUnavailableError(
                f"Could not fetch file for evidence {evidence.id}: {e}", original_error=e
            ) from e

    def _ocr_threshold(self, mime: str, options: ProcessorOptions) -> float:
        if options.ocr_confidence_threshold is not None:
            return options.ocr_confidence_threshold
        return self.ocr_thresholds.get(mime, DEFAULT_OCR_THRESHOLDS[PDF_MIME])

    def _coalesced(self, evidence_id: str) -> DocumentProcessingResult:
        evidence = self._load_evidence(evidence_id, check_mime=False)
        job = self.repository.get_active_job(evidence_id) or self.repository.get_latest_job(evidence_id)
        logger.debug("Coalesced processing call for evidence %s", evidence_id)
        return DocumentProcessingResult(
            evidence_id=evidence_id,
            job_id=job.id if job else None,
            status=evidence.processing_status,
            error=evidence.processing_error,
            coalesced=True,
        )

    @staticmethod
    def _details(result: DocumentProcessingResult, text: str) -> dict[str, Any]:
        return {
            "extraction_method": result.text_method.value if result.text_method else None,
            "text_length": len(text),
            "ocr_used": result.stages[PipelineStage.OCR].state == StageState.COMPLETED,
            "processing_time_ms": result.processing_time_ms,
            "stages": {stage.value: outcome.state.value for stage, outcome in result.stages.items()},
        }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
