"""Request surface and process-wide wiring.

``build_service`` constructs every shared client once (database, storage,
providers, cache, queue) and hands them to the processor. The HTTP adapter
and the CLI both talk to ``EvidenceProcessingService``; responses use the
camelCase keys of the wire format.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .config import EvidocConfig
from .db import get_engine, get_session_factory, init_db
from .errors import EvidenceNotFoundError, InputError
from .ingest import EvidenceIngester
from .models import ACTIVE_PROCESSING_STATUSES, ProcessingStatus, utcnow
from .pipeline.classify import DocumentClassifier
from .pipeline.entities import EntityExtractor
from .pipeline.extract import TextExtractor
from .pipeline.llm import create_completion_provider
from .pipeline.ocr import OCREngine, create_ocr_provider
from .pipeline.processor import DocumentProcessor, EvidenceStatus
from .pipeline.progress import InMemoryProgressCache
from .pipeline.queue import EvidenceLocks, JobQueue
from .pipeline.summarize import DocumentSummarizer
from .pipeline.types import ProcessorOptions
from .repository import EvidenceRepository
from .storage import LocalFileStorage

logger = logging.getLogger(__name__)

STATUS_TEXT_PREVIEW = 500


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class EvidenceProcessingService:
    """Trigger and inspect processing of evidence documents."""

    def __init__(
        self,
        processor: DocumentProcessor,
        repository: EvidenceRepository,
        ingester: EvidenceIngester | None = None,
        cleanup_days: int = 7,
    ):
        self.processor = processor
        self.repository = repository
        self.queue = processor.job_queue
        self.ingester = ingester
        self.cleanup_days = cleanup_days

    async def start(self) -> None:
        await self.queue.start(self.processor.run_job)

    async def stop(self) -> None:
        await self.queue.stop()

    async def trigger_processing(
        self,
        evidence_id: str,
        run_async: bool = True,
        options: dict[str, Any] | ProcessorOptions | None = None,
        force: bool = False,
    ) -> dict[str, Any]:
        """Start processing, or report the job already in flight."""
        if not isinstance(options, ProcessorOptions):
            options = ProcessorOptions.from_dict(options)

        evidence = self.repository.get_evidence(evidence_id)
        if evidence is None:
            raise EvidenceNotFoundError(f"Evidence not found: {evidence_id}")

        active = self.repository.get_active_job(evidence_id)
        if active is not None:
            return {
                "evidenceId": evidence_id,
                "jobId": active.id,
                "status": evidence.processing_status.value,
                "message": "Processing already in progress",
                "coalesced": True,
            }

        if run_async:
            job_id = await self.processor.queue(evidence_id, options, force=force)
            refreshed = self.repository.get_evidence(evidence_id)
            status = refreshed.processing_status if refreshed else ProcessingStatus.QUEUED
            queued = status == ProcessingStatus.QUEUED
            return {
                "evidenceId": evidence_id,
                "jobId": job_id,
                "status": status.value,
                "message": "Document queued for processing" if queued else "Document already processed",
                "coalesced": not queued,
            }

        result = await self.processor.process(evidence_id, options, force=force)
        classification = result.classification
        summary = result.summarization
        return {
            "evidenceId": evidence_id,
            "jobId": result.job_id,
            "status": result.status.value,
            "processingTimeMs": result.processing_time_ms,
            "error": result.error,
            "errorKind": result.error_kind.value if result.error_kind else None,
            "extractionMethod": result.text_method.value if result.text_method else None,
            "documentType": classification.document_type.value if classification else None,
            "summary": summary.summary if summary else None,
            "stages": {stage.value: outcome.state.value for stage, outcome in result.stages.items()},
            "coalesced": result.coalesced,
        }

    async def get_processing_status(self, evidence_id: str) -> dict[str, Any]:
        status = await self.processor.get_status(evidence_id)
        return status_to_dict(status)

    async def process_case_documents(self, case_id: str) -> dict[str, Any]:
        """Queue every PENDING or FAILED document of a case."""
        evidence = self.repository.list_evidence(
            case_id=case_id,
            statuses=[ProcessingStatus.PENDING, ProcessingStatus.FAILED],
        )
        job_ids = []
        skipped = []
        for item in evidence:
            try:
                job_ids.append(await self.processor.queue(item.id))
            except InputError as e:
                logger.warning("Not queueing evidence %s: %s", item.id, e)
                skipped.append({"evidenceId": item.id, "reason": str(e)})

        return {
            "caseId": case_id,
            "queued": len(job_ids),
            "jobIds": job_ids,
            "skipped": skipped,
        }

    async def queue_stats(self) -> dict[str, Any]:
        by_status = self.repository.evidence_status_counts()
        jobs = self.repository.job_counts()
        return {
            "pending": by_status[ProcessingStatus.PENDING],
            "processing": sum(by_status[s] for s in ACTIVE_PROCESSING_STATUSES),
            "completed": by_status[ProcessingStatus.COMPLETED],
            "failed": by_status[ProcessingStatus.FAILED],
            "byStatus": {status.value: count for status, count in by_status.items()},
            "jobs": {status.value: count for status, count in jobs.items()},
            "channelDepth": self.queue.depth,
            "workers": self.queue.worker_count if self.queue.running else 0,
        }

    async def retry_failed(self, case_id: str | None = None) -> dict[str, Any]:
        """Reset FAILED documents to PENDING so they can be processed again."""
        ids = self.repository.reset_failed_evidence(case_id)
        logger.info("Reset %d failed document(s) to PENDING", len(ids))
        return {"reset": len(ids), "evidenceIds": ids}

    async def cancel(self, evidence_id: str) -> dict[str, Any]:
        cancelled = await self.processor.cancel(evidence_id)
        return {"evidenceId": evidence_id, "cancelled": cancelled}

    async def cleanup_jobs(self, days: int | None = None) -> dict[str, Any]:
        """Delete COMPLETED jobs older than ``days``."""
        days = self.cleanup_days if days is None else days
        cutoff = utcnow() - timedelta(days=days)
        deleted = self.repository.delete_completed_jobs(cutoff)
        logger.info("Deleted %d completed job(s) older than %d day(s)", deleted, days)
        return {"deleted": deleted, "olderThanDays": days}


def status_to_dict(status: EvidenceStatus) -> dict[str, Any]:
    text = status.extracted_text
    job = status.job
    progress = status.progress
    return {
        "evidenceId": status.evidence_id,
        "status": status.processing_status.value,
        "processedAt": _iso(status.processed_at),
        "error": status.processing_error,
        "extractedText": text[:STATUS_TEXT_PREVIEW] if text else text,
        "ocrConfidence": status.ocr_confidence,
        "documentType": status.document_type,
        "classificationConfidence": status.classification_confidence,
        "entities": status.entities.to_dict() if status.entities else None,
        "summary": status.summary,
        "keyPoints": status.key_points,
        "progress": progress.progress if progress else None,
        "currentStep": progress.step.value if progress else None,
        "progressMessage": progress.message if progress else None,
        "job": {
            "id": job.id,
            "status": job.status.value,
            "progress": job.progress,
            "currentStep": job.current_step,
            "startedAt": _iso(job.started_at),
            "completedAt": _iso(job.completed_at),
            "error": job.error_message,
        } if job else None,
    }


@dataclass
class ServiceComponents:
    """Everything ``build_service`` wires, for callers that need the parts."""

    service: EvidenceProcessingService
    processor: DocumentProcessor
    repository: EvidenceRepository
    ingester: EvidenceIngester
    storage: LocalFileStorage


def build_service(config: EvidocConfig, create_tables: bool = True) -> ServiceComponents:
    """Construct the shared clients once and inject them."""
    config.data_dir.mkdir(parents=True, exist_ok=True)
    engine = get_engine(config.resolved_database_url)
    if create_tables:
        init_db(engine)
    repository = EvidenceRepository(get_session_factory(engine))
    storage = LocalFileStorage(config.storage.root)

    timeout = config.pipeline.stage_timeout_seconds
    retries = config.pipeline.max_retries
    llm = create_completion_provider(
        config.ai.provider,
        model=config.ai.model,
        api_key=config.ai.api_key,
        base_url=config.ai.base_url,
        temperature=config.ai.temperature,
    )
    ocr_provider = create_ocr_provider(
        config.ocr.backend,
        tesseract_cmd=config.ocr.tesseract_cmd,
        tesseract_lang=config.ocr.tesseract_lang,
        aws_region=config.ocr.aws_region,
        aws_access_key_id=config.ocr.aws_access_key_id,
        aws_secret_access_key=config.ocr.aws_secret_access_key,
    )

    processor = DocumentProcessor(
        repository=repository,
        storage=storage,
        extractor=TextExtractor(),
        ocr=OCREngine(
            ocr_provider,
            timeout=timeout,
            max_retries=retries,
            min_confidence=config.ocr.min_confidence,
            reject_low_confidence=config.ocr.reject_low_confidence,
        ),
        classifier=DocumentClassifier(
            llm, timeout=timeout, max_retries=retries,
            use_filename_hints=config.pipeline.use_filename_hints,
        ),
        entity_extractor=EntityExtractor(llm, timeout=timeout, max_retries=retries),
        summarizer=DocumentSummarizer(
            llm, timeout=timeout, max_retries=retries,
            quick_summary_length=config.pipeline.quick_summary_length,
        ),
        progress_cache=InMemoryProgressCache(ttl_seconds=config.cache.ttl_seconds),
        job_queue=JobQueue(repository, workers=config.queue.workers, max_size=config.queue.max_size),
        locks=EvidenceLocks(),
        ocr_thresholds=config.pipeline.ocr_confidence_thresholds,
        max_text_length=config.pipeline.max_text_length,
    )
    ingester = EvidenceIngester(repository, storage, max_file_size_mb=config.storage.max_file_size_mb)
    service = EvidenceProcessingService(
        processor, repository, ingester=ingester, cleanup_days=config.queue.cleanup_days
    )

    logger.debug(
        "Built service: ai=%s ocr=%s workers=%d", config.ai.provider, config.ocr.backend, config.queue.workers
    )
    return ServiceComponents(
        service=service,
        processor=processor,
        repository=repository,
        ingester=ingester,
        storage=storage,
    )
