"""Data types shared by the pipeline stages and the orchestrator."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from ..errors import ErrorKind
from ..models import DocumentType, ProcessingStatus, utcnow


# === Supported inputs ===


SUPPORTED_MIME_TYPES = {
    "pdf": "application/pdf",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "doc": "application/msword",
    "txt": "text/plain",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "tiff": "image/tiff",
    "tif": "image/tiff",
}

PDF_MIME = SUPPORTED_MIME_TYPES["pdf"]
DOCX_MIME = SUPPORTED_MIME_TYPES["docx"]
DOC_MIME = SUPPORTED_MIME_TYPES["doc"]
TEXT_MIME = SUPPORTED_MIME_TYPES["txt"]

TEXT_EXTRACTABLE_TYPES = frozenset({PDF_MIME, DOCX_MIME, DOC_MIME, TEXT_MIME})
IMAGE_TYPES = frozenset({
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
    "image/tiff",
})


def normalize_mime_type(mime_type: str) -> str:
    """Lowercase and drop parameters (``text/plain; charset=utf-8``)."""
    return mime_type.split(";", 1)[0].strip().lower()


def is_supported(mime_type: str) -> bool:
    mime = normalize_mime_type(mime_type)
    return mime in TEXT_EXTRACTABLE_TYPES or mime in IMAGE_TYPES


def requires_ocr(mime_type: str) -> bool:
    """Images have no text layer and always go straight to OCR."""
    return normalize_mime_type(mime_type) in IMAGE_TYPES


def is_ocr_capable(mime_type: str) -> bool:
    mime = normalize_mime_type(mime_type)
    return mime in IMAGE_TYPES or mime == PDF_MIME


# === Enums ===


class ExtractionMethod(str, enum.Enum):
    DIRECT_TEXT = "direct-text"
    OFFICE_DOCUMENT = "office-document"
    PLAIN_TEXT = "plain-text"
    OCR = "ocr"


class OCRBlockType(str, enum.Enum):
    PAGE = "page"
    LINE = "line"
    WORD = "word"
    TABLE = "table"
    CELL = "cell"
    KEY_VALUE = "key-value"


class PartyType(str, enum.Enum):
    PERSON = "person"
    ORGANIZATION = "organization"
    UNKNOWN = "unknown"


class ProcessingStep(str, enum.Enum):
    QUEUED = "queued"
    EXTRACTING = "extracting"
    OCR_PROCESSING = "ocr_processing"
    CLASSIFYING = "classifying"
    EXTRACTING_ENTITIES = "extracting_entities"
    SUMMARIZING = "summarizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def status(self) -> ProcessingStatus:
        return ProcessingStatus[self.name]


class PipelineStage(str, enum.Enum):
    EXTRACTION = "extraction"
    OCR = "ocr"
    CLASSIFICATION = "classification"
    ENTITIES = "entities"
    SUMMARIZATION = "summarization"

    @property
    def step(self) -> ProcessingStep:
        return STAGE_STEPS[self]

    @property
    def label(self) -> str:
        return STAGE_LABELS[self]


STAGE_STEPS = {
    PipelineStage.EXTRACTION: ProcessingStep.EXTRACTING,
    PipelineStage.OCR: ProcessingStep.OCR_PROCESSING,
    PipelineStage.CLASSIFICATION: ProcessingStep.CLASSIFYING,
    PipelineStage.ENTITIES: ProcessingStep.EXTRACTING_ENTITIES,
    PipelineStage.SUMMARIZATION: ProcessingStep.SUMMARIZING,
}

STAGE_LABELS = {
    PipelineStage.EXTRACTION: "Text extraction",
    PipelineStage.OCR: "OCR",
    PipelineStage.CLASSIFICATION: "Classification",
    PipelineStage.ENTITIES: "Entity extraction",
    PipelineStage.SUMMARIZATION: "Summarization",
}

# Progress written once a stage has finished (or been skipped)
STAGE_MILESTONES = {
    PipelineStage.EXTRACTION: 20,
    PipelineStage.OCR: 40,
    PipelineStage.CLASSIFICATION: 60,
    PipelineStage.ENTITIES: 80,
    PipelineStage.SUMMARIZATION: 100,
}


class StageState(str, enum.Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_REACHED = "not_reached"


def _jsonable(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {_jsonable(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


# === Stage results ===


@dataclass
class DocumentMetadata:
    author: str | None = None
    title: str | None = None
    created_date: str | None = None


@dataclass
class ExtractionResult:
    """Result of text extraction."""

    text: str
    method: ExtractionMethod
    confidence: float | None = None  # 0-1
    page_count: int | None = None
    metadata: DocumentMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class BoundingBox:
    """Block position as ratios of the page size."""

    width: float
    height: float
    left: float
    top: float


@dataclass
class OCRBlock:
    type: OCRBlockType
    text: str
    confidence: float  # 0-100
    bounding_box: BoundingBox | None = None
    page_number: int | None = None


@dataclass
class OCRResult:
    """Result of OCR processing."""

    text: str
    confidence: float  # 0-100
    blocks: list[OCRBlock] = field(default_factory=list)
    backend: str = ""
    page_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class ClassificationResult:
    document_type: DocumentType
    confidence: float  # 0-1
    reasoning: str | None = None
    method: str = "llm"

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class ExtractedDate:
    value: str
    normalized: str  # ISO 8601 date
    context: str | None = None


@dataclass
class ExtractedAmount:
    value: float
    currency: str
    raw: str
    context: str | None = None


@dataclass
class ExtractedParty:
    name: str
    type: PartyType = PartyType.UNKNOWN
    role: str | None = None


@dataclass
class ExtractedEntities:
    """Structured entities pulled out of document text."""

    dates: list[ExtractedDate] = field(default_factory=list)
    amounts: list[ExtractedAmount] = field(default_factory=list)
    parties: list[ExtractedParty] = field(default_factory=list)
    addresses: list[str] = field(default_factory=list)
    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExtractedEntities:
        return cls(
            dates=[ExtractedDate(**d) for d in data.get("dates", [])],
            amounts=[ExtractedAmount(**a) for a in data.get("amounts", [])],
            parties=[
                ExtractedParty(
                    name=p["name"],
                    type=PartyType(p.get("type", "unknown")),
                    role=p.get("role"),
                )
                for p in data.get("parties", [])
            ],
            addresses=list(data.get("addresses", [])),
            emails=list(data.get("emails", [])),
            phones=list(data.get("phones", [])),
        )


@dataclass
class SummarizationResult:
    summary: str
    key_points: list[str] = field(default_factory=list)
    method: str = "llm"

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


# === Orchestration types ===


_OPTION_ALIASES = {
    "skipOCR": "skip_ocr",
    "skipClassification": "skip_classification",
    "skipEntities": "skip_entities",
    "skipSummarization": "skip_summarization",
    "ocrConfidenceThreshold": "ocr_confidence_threshold",
    "maxTextLength": "max_text_length",
}


@dataclass
class ProcessorOptions:
    """Per-run options. Unset thresholds fall back to configuration."""

    skip_ocr: bool = False
    skip_classification: bool = False
    skip_entities: bool = False
    skip_summarization: bool = False
    ocr_confidence_threshold: float | None = None
    max_text_length: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProcessorOptions:
        """Build options from snake_case or camelCase keys, ignoring unknown ones."""
        if not data:
            return cls()
        known = set(cls.__dataclass_fields__)
        values = {}
        for key, value in data.items():
            name = _OPTION_ALIASES.get(key, key)
            if name in known and value is not None:
                values[name] = value
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProcessingProgress:
    """Ephemeral progress of an in-flight job."""

    evidence_id: str
    job_id: str
    step: ProcessingStep
    progress: int
    message: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class StageOutcome:
    """Tagged outcome of one stage within a job."""

    stage: PipelineStage
    state: StageState = StageState.NOT_REACHED
    result: Any = None
    reason: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "state": self.state.value,
            "result": self.result.to_dict() if self.result is not None else None,
            "reason": self.reason,
            "duration_ms": self.duration_ms,
        }


@dataclass
class DocumentProcessingResult:
    """Terminal aggregate of one processing call."""

    evidence_id: str
    status: ProcessingStatus
    job_id: str | None = None
    stages: dict[PipelineStage, StageOutcome] = field(default_factory=dict)
    text_method: ExtractionMethod | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    processing_time_ms: int = 0
    coalesced: bool = False

    def result_of(self, stage: PipelineStage) -> Any:
        outcome = self.stages.get(stage)
        if outcome is None or outcome.state != StageState.COMPLETED:
            return None
        return outcome.result

    @property
    def extraction(self) -> ExtractionResult | None:
        return self.result_of(PipelineStage.EXTRACTION)

    @property
    def ocr(self) -> OCRResult | None:
        return self.result_of(PipelineStage.OCR)

    @property
    def classification(self) -> ClassificationResult | None:
        return self.result_of(PipelineStage.CLASSIFICATION)

    @property
    def entities(self) -> ExtractedEntities | None:
        return self.result_of(PipelineStage.ENTITIES)

    @property
    def summarization(self) -> SummarizationResult | None:
        return self.result_of(PipelineStage.SUMMARIZATION)

    def to_dict(self) -> dict[str, Any]:
        return {
            "evidence_id": self.evidence_id,
            "job_id": self.job_id,
            "status": self.status.value,
            "stages": {stage.value: outcome.to_dict() for stage, outcome in self.stages.items()},
            "text_method": self.text_method.value if self.text_method else None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "processing_time_ms": self.processing_time_ms,
            "coalesced": self.coalesced,
        }
