"""Domain models for evidoc.

Core entities:
- Evidence: An uploaded document attached to a dispute case
- ProcessingJob: One execution attempt of the pipeline against one evidence record
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how SQLite stores DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# === Enums ===


class ProcessingStatus(str, enum.Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    EXTRACTING = "EXTRACTING"
    OCR_PROCESSING = "OCR_PROCESSING"
    CLASSIFYING = "CLASSIFYING"
    EXTRACTING_ENTITIES = "EXTRACTING_ENTITIES"
    SUMMARIZING = "SUMMARIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


ACTIVE_PROCESSING_STATUSES = frozenset({
    ProcessingStatus.QUEUED,
    ProcessingStatus.EXTRACTING,
    ProcessingStatus.OCR_PROCESSING,
    ProcessingStatus.CLASSIFYING,
    ProcessingStatus.EXTRACTING_ENTITIES,
    ProcessingStatus.SUMMARIZING,
})


class JobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class DocumentType(str, enum.Enum):
    CONTRACT = "CONTRACT"
    INVOICE = "INVOICE"
    RECEIPT = "RECEIPT"
    CORRESPONDENCE = "CORRESPONDENCE"
    LEGAL_NOTICE = "LEGAL_NOTICE"
    BANK_STATEMENT = "BANK_STATEMENT"
    PHOTO_EVIDENCE = "PHOTO_EVIDENCE"
    OTHER = "OTHER"


# === Core Models ===


class Evidence(Base):
    """An evidentiary document submitted to a dispute case."""

    __tablename__ = "evidence"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    case_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)

    # File info (bytes are owned by the storage collaborator)
    filename: Mapped[str] = mapped_column(String(255))
    mime_type: Mapped[str] = mapped_column(String(100))
    storage_key: Mapped[str] = mapped_column(String(500))
    file_size: Mapped[int] = mapped_column(Integer, default=0)
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Processing status
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        Enum(ProcessingStatus), default=ProcessingStatus.PENDING, index=True
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Structured outputs
    extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    ocr_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    ocr_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    ocr_processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    document_type: Mapped[DocumentType | None] = mapped_column(Enum(DocumentType), nullable=True)
    classification_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    extracted_entities: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    key_points: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # Dates
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Relationships
    jobs: Mapped[list["ProcessingJob"]] = relationship(back_populates="evidence")


class ProcessingJob(Base):
    """One execution attempt of the processing pipeline."""

    __tablename__ = "processing_jobs"
    __table_args__ = (
        # At most one non-terminal job per evidence record
        Index(
            "uq_processing_jobs_active_evidence",
            "evidence_id",
            unique=True,
            sqlite_where=text("status IN ('QUEUED', 'RUNNING')"),
            postgresql_where=text("status IN ('QUEUED', 'RUNNING')"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    evidence_id: Mapped[str] = mapped_column(ForeignKey("evidence.id"), index=True)

    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus), default=JobStatus.QUEUED, index=True)
    current_step: Mapped[str | None] = mapped_column(String(50), nullable=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)

    options: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    stage_results: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Relationships
    evidence: Mapped["Evidence"] = relationship(back_populates="jobs")
