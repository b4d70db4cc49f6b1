"""Evidence ingestion: store file bytes and create PENDING evidence records."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from .errors import InputError, UnsupportedMimeTypeError
from .models import Evidence
from .pipeline.types import SUPPORTED_MIME_TYPES, is_supported
from .repository import EvidenceRepository
from .storage import DocumentStorage

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Result of evidence ingestion."""

    evidence_id: str
    filename: str
    storage_key: str
    file_size: int
    mime_type: str
    checksum: str


def guess_mime_type(filename: str) -> str:
    suffix = Path(filename).suffix.lower().lstrip(".")
    if suffix in SUPPORTED_MIME_TYPES:
        return SUPPORTED_MIME_TYPES[suffix]
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or "application/octet-stream"


class EvidenceIngester:
    """Ingest evidence files into storage and the database."""

    def __init__(
        self,
        repository: EvidenceRepository,
        storage: DocumentStorage,
        max_file_size_mb: int = 100,
    ):
        self.repository = repository
        self.storage = storage
        self.max_file_size = max_file_size_mb * 1024 * 1024

    async def ingest_file(
        self,
        file_path: Path | str,
        case_id: str | None = None,
        mime_type: str | None = None,
    ) -> IngestResult:
        """Ingest a file from the filesystem."""
        file_path = Path(file_path)

        if not file_path.is_file():
            raise InputError(f"File not found: {file_path}")

        file_size = file_path.stat().st_size
        if file_size > self.max_file_size:
            raise InputError(f"File too large: {file_size} bytes (max {self.max_file_size})")

        content = await asyncio.to_thread(file_path.read_bytes)
        return await self.ingest_bytes(content, file_path.name, case_id=case_id, mime_type=mime_type)

    async def ingest_bytes(
        self,
        content: bytes,
        filename: str,
        case_id: str | None = None,
        mime_type: str | None = None,
    ) -> IngestResult:
        """Ingest raw bytes (e.g., from an upload)."""
        if len(content) > self.max_file_size:
            raise InputError(f"Content too large: {len(content)} bytes")

        mime_type = mime_type or guess_mime_type(filename)
        if not is_supported(mime_type):
            raise UnsupportedMimeTypeError(f"Unsupported file type: {mime_type} ({filename})")

        evidence_id = str(uuid4())
        checksum = hashlib.sha256(content).hexdigest()

        # Shard by ID prefix to keep directories small
        suffix = Path(filename).suffix.lower()
        storage_key = f"{evidence_id[:2]}/{evidence_id[2:4]}/{evidence_id}{suffix}"
        await asyncio.to_thread(self.storage.put, storage_key, content)

        evidence: Evidence = self.repository.create_evidence(
            id=evidence_id,
            case_id=case_id,
            filename=filename,
            mime_type=mime_type,
            storage_key=storage_key,
            file_size=len(content),
            checksum=checksum,
        )
        logger.info("Ingested %s as evidence %s (%s, %d bytes)", filename, evidence.id, mime_type, len(content))

        return IngestResult(
            evidence_id=evidence.id,
            filename=filename,
            storage_key=storage_key,
            file_size=len(content),
            mime_type=mime_type,
            checksum=checksum,
        )

    async def ingest_directory(
        self,
        dir_path: Path | str,
        case_id: str | None = None,
        recursive: bool = True,
    ) -> list[IngestResult]:
        """Ingest every supported file in a directory."""
        dir_path = Path(dir_path)

        if not dir_path.is_dir():
            raise InputError(f"Not a directory: {dir_path}")

        files = sorted(dir_path.rglob("*") if recursive else dir_path.glob("*"))
        results = []
        for file_path in files:
            if not file_path.is_file() or not is_supported(guess_mime_type(file_path.name)):
                continue
            try:
                results.append(await self.ingest_file(file_path, case_id=case_id))
            except InputError as e:
                # Keep going with the rest of the directory
                logger.warning("Skipping %s: %s", file_path, e)

        return results
