"""Data access for evidence records and processing jobs.

Every method runs in its own short transaction and returns detached rows.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .db import session_scope
from .models import (
    Evidence,
    JobStatus,
    ProcessingJob,
    ProcessingStatus,
    utcnow,
)


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)
CANCELLED_MESSAGE = "Cancelled by user"
INTERRUPTED_MESSAGE = "Interrupted before completion"

# Evidence fields written when a job completes; absent outputs are cleared
OUTPUT_FIELDS = (
    "extracted_text",
    "ocr_text",
    "ocr_confidence",
    "ocr_processed_at",
    "document_type",
    "classification_confidence",
    "extracted_entities",
    "summary",
    "key_points",
)


class EvidenceRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # === Evidence ===

    def create_evidence(self, **fields: Any) -> Evidence:
        with session_scope(self.session_factory) as session:
            evidence = Evidence(**fields)
            session.add(evidence)
            session.flush()
            return evidence

    def get_evidence(self, evidence_id: str) -> Evidence | None:
        """Fetch a live (not soft-deleted) evidence record."""
        with session_scope(self.session_factory) as session:
            return session.scalars(
                select(Evidence).where(Evidence.id == evidence_id, Evidence.deleted_at.is_(None))
            ).first()

    def list_evidence(
        self,
        case_id: str | None = None,
        statuses: list[ProcessingStatus] | None = None,
        limit: int | None = None,
    ) -> list[Evidence]:
        with session_scope(self.session_factory) as session:
            stmt = select(Evidence).where(Evidence.deleted_at.is_(None))
            if case_id is not None:
                stmt = stmt.where(Evidence.case_id == case_id)
            if statuses:
                stmt = stmt.where(Evidence.processing_status.in_(statuses))
            stmt = stmt.order_by(Evidence.created_at)
            if limit:
                stmt = stmt.limit(limit)
            return list(session.scalars(stmt))

    def reset_failed_evidence(self, case_id: str | None = None) -> list[str]:
        """Move FAILED evidence back to PENDING. Returns the reset IDs."""
        with session_scope(self.session_factory) as session:
            stmt = select(Evidence.id).where(
                Evidence.processing_status == ProcessingStatus.FAILED,
                Evidence.deleted_at.is_(None),
            )
            if case_id is not None:
                stmt = stmt.where(Evidence.case_id == case_id)
            ids = list(session.scalars(stmt))
            if ids:
                session.execute(
                    update(Evidence)
                    .where(Evidence.id.in_(ids))
                    .values(processing_status=ProcessingStatus.PENDING, processing_error=None)
                )
            return ids

    # === Jobs ===

    def get_job(self, job_id: str) -> ProcessingJob | None:
        with session_scope(self.session_factory) as session:
            return session.get(ProcessingJob, job_id)

    def get_active_job(self, evidence_id: str) -> ProcessingJob | None:
        with session_scope(self.session_factory) as session:
            return session.scalars(
                select(ProcessingJob).where(
                    ProcessingJob.evidence_id == evidence_id,
                    ProcessingJob.status.in_(ACTIVE_JOB_STATUSES),
                )
            ).first()

    def get_latest_job(self, evidence_id: str) -> ProcessingJob | None:
        with session_scope(self.session_factory) as session:
            return session.scalars(
                select(ProcessingJob)
                .where(ProcessingJob.evidence_id == evidence_id)
                .order_by(ProcessingJob.created_at.desc(), ProcessingJob.id.desc())
            ).first()

    def list_jobs(self, status: JobStatus | None = None) -> list[ProcessingJob]:
        with session_scope(self.session_factory) as session:
            stmt = select(ProcessingJob)
            if status is not None:
                stmt = stmt.where(ProcessingJob.status == status)
            return list(session.scalars(stmt.order_by(ProcessingJob.created_at)))

    def create_job_if_absent(
        self,
        evidence_id: str,
        options: dict[str, Any] | None = None,
    ) -> tuple[ProcessingJob, bool]:
        """Create a QUEUED job unless a non-terminal one exists.

        Returns ``(job, created)``. The partial unique index settles races
        between concurrent callers.
        """
        existing = self.get_active_job(evidence_id)
        if existing is not None:
            return existing, False

        try:
            with session_scope(self.session_factory) as session:
                job = ProcessingJob(
                    evidence_id=evidence_id,
                    status=JobStatus.QUEUED,
                    current_step="queued",
                    progress=0,
                    options=options or {},
                    stage_results={},
                )
                session.add(job)
                session.execute(
                    update(Evidence)
                    .where(Evidence.id == evidence_id)
                    .values(processing_status=ProcessingStatus.QUEUED, processing_error=None)
                )
                session.flush()
                return job, True
        except IntegrityError:
            existing = self.get_active_job(evidence_id)
            if existing is None:
                raise
            return existing, False

    def claim_job(self, job_id: str) -> ProcessingJob | None:
        """Atomically move a QUEUED job to RUNNING. None if someone else got it."""
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(ProcessingJob)
                .where(
                    ProcessingJob.id == job_id,
                    ProcessingJob.status == JobStatus.QUEUED,
                    ProcessingJob.cancel_requested.is_(False),
                )
                .values(status=JobStatus.RUNNING, started_at=utcnow())
            )
            if result.rowcount != 1:
                return None
            return session.get(ProcessingJob, job_id, populate_existing=True)

    def update_progress(
        self,
        job_id: str,
        evidence_id: str,
        step: str,
        progress: int,
        evidence_status: ProcessingStatus,
    ) -> None:
        with session_scope(self.session_factory) as session:
            session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id)
                .values(current_step=step, progress=progress)
            )
            session.execute(
                update(Evidence)
                .where(Evidence.id == evidence_id)
                .values(processing_status=evidence_status)
            )

    def save_stage_result(self, job_id: str, stage: str, outcome: dict[str, Any]) -> None:
        with session_scope(self.session_factory) as session:
            job = session.get(ProcessingJob, job_id)
            if job is None:
                return
            # Reassign so the JSON column is flagged dirty
            job.stage_results = {**(job.stage_results or {}), stage: outcome}

    def is_cancel_requested(self, job_id: str) -> bool:
        with session_scope(self.session_factory) as session:
            return bool(session.scalar(
                select(ProcessingJob.cancel_requested).where(ProcessingJob.id == job_id)
            ))

    def request_cancel(self, job_id: str) -> bool:
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id, ProcessingJob.status == JobStatus.RUNNING)
                .values(cancel_requested=True)
            )
            return result.rowcount == 1

    def cancel_queued_job(self, evidence_id: str) -> ProcessingJob | None:
        """Fail a QUEUED job immediately and return the evidence to PENDING."""
        with session_scope(self.session_factory) as session:
            job = session.scalars(
                select(ProcessingJob).where(
                    ProcessingJob.evidence_id == evidence_id,
                    ProcessingJob.status == JobStatus.QUEUED,
                )
            ).first()
            if job is None:
                return None
            job.status = JobStatus.FAILED
            job.cancel_requested = True
            job.error_message = CANCELLED_MESSAGE
            job.error_kind = "cancelled"
            job.current_step = "failed"
            job.completed_at = utcnow()
            session.execute(
                update(Evidence)
                .where(Evidence.id == evidence_id)
                .values(processing_status=ProcessingStatus.PENDING, processing_error=None)
            )
            return job

    def complete_job(
        self,
        job_id: str,
        evidence_id: str,
        outputs: dict[str, Any],
        details: dict[str, Any] | None = None,
    ) -> None:
        """Mark the job COMPLETED and overwrite every evidence output at once."""
        now = utcnow()
        with session_scope(self.session_factory) as session:
            values = {name: outputs.get(name) for name in OUTPUT_FIELDS}
            session.execute(
                update(Evidence)
                .where(Evidence.id == evidence_id)
                .values(
                    **values,
                    processing_status=ProcessingStatus.COMPLETED,
                    processing_error=None,
                    processed_at=now,
                )
            )
            session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id)
                .values(
                    status=JobStatus.COMPLETED,
                    current_step="completed",
                    progress=100,
                    details=details,
                    completed_at=now,
                )
            )

    def fail_job(
        self,
        job_id: str,
        evidence_id: str,
        message: str,
        error_kind: str,
        details: dict[str, Any] | None = None,
        evidence_status: ProcessingStatus = ProcessingStatus.FAILED,
    ) -> None:
        """Mark the job FAILED. Outputs and ``processed_at`` of the evidence are left alone."""
        now = utcnow()
        evidence_values: dict[str, Any] = {"processing_status": evidence_status, "processing_error": None}
        if evidence_status == ProcessingStatus.FAILED:
            evidence_values.update(processing_error=message)

        with session_scope(self.session_factory) as session:
            session.execute(
                update(Evidence).where(Evidence.id == evidence_id).values(**evidence_values)
            )
            session.execute(
                update(ProcessingJob)
                .where(ProcessingJob.id == job_id)
                .values(
                    status=JobStatus.FAILED,
                    current_step="failed",
                    error_message=message,
                    error_kind=error_kind,
                    details=details,
                    completed_at=now,
                )
            )

    def fail_interrupted_jobs(self) -> int:
        """Fail RUNNING jobs left behind by a process that died mid-run."""
        jobs = self.list_jobs(JobStatus.RUNNING)
        for job in jobs:
            self.fail_job(job.id, job.evidence_id, INTERRUPTED_MESSAGE, "internal")
        return len(jobs)

    def evidence_status_counts(self) -> dict[ProcessingStatus, int]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(Evidence.processing_status, func.count())
                .where(Evidence.deleted_at.is_(None))
                .group_by(Evidence.processing_status)
            ).all()
        counts = {status: 0 for status in ProcessingStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def job_counts(self) -> dict[JobStatus, int]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(ProcessingJob.status, func.count()).group_by(ProcessingJob.status)
            ).all()
        counts = {status: 0 for status in JobStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def delete_completed_jobs(self, older_than: datetime) -> int:
        with session_scope(self.session_factory) as session:
            result = session.execute(
                delete(ProcessingJob).where(
                    ProcessingJob.status == JobStatus.COMPLETED,
                    ProcessingJob.completed_at < older_than,
                )
            )
            return result.rowcount or 0
