"""Tests for evidence ingestion."""

import hashlib

import pytest

from evidoc.errors import InputError, UnsupportedMimeTypeError
from evidoc.ingest import EvidenceIngester, guess_mime_type
from evidoc.models import ProcessingStatus


@pytest.fixture
def ingester(repository, storage) -> EvidenceIngester:
    return EvidenceIngester(repository, storage, max_file_size_mb=1)


class TestGuessMimeType:
    def test_known_extensions(self):
        assert guess_mime_type("scan.PDF") == "application/pdf"
        assert guess_mime_type("photo.jpeg") == "image/jpeg"
        assert guess_mime_type("letter.docx").endswith("wordprocessingml.document")

    def test_unknown_extension(self):
        assert guess_mime_type("blob") == "application/octet-stream"


class TestIngestBytes:
    @pytest.mark.asyncio
    async def test_creates_pending_evidence(self, ingester, repository, storage):
        content = b"Invoice #123"

        result = await ingester.ingest_bytes(content, "invoice.txt", case_id="case-1")

        evidence = repository.get_evidence(result.evidence_id)
        assert evidence.processing_status == ProcessingStatus.PENDING
        assert evidence.case_id == "case-1"
        assert evidence.mime_type == "text/plain"
        assert result.checksum == hashlib.sha256(content).hexdigest()
        assert result.storage_key.startswith(f"{result.evidence_id[:2]}/{result.evidence_id[2:4]}/")
        assert result.storage_key.endswith(".txt")
        assert storage.get(result.storage_key) == content

    @pytest.mark.asyncio
    async def test_unsupported_type(self, ingester, repository):
        with pytest.raises(UnsupportedMimeTypeError):
            await ingester.ingest_bytes(b"PK", "bundle.zip")
        assert repository.list_evidence() == []

    @pytest.mark.asyncio
    async def test_too_large(self, ingester):
        with pytest.raises(InputError):
            await ingester.ingest_bytes(b"x" * (1024 * 1024 + 1), "big.txt")


class TestIngestFiles:
    @pytest.mark.asyncio
    async def test_missing_file(self, ingester, tmp_path):
        with pytest.raises(InputError):
            await ingester.ingest_file(tmp_path / "nope.txt")

    @pytest.mark.asyncio
    async def test_directory_skips_unsupported(self, ingester, tmp_path):
        folder = tmp_path / "inbox"
        (folder / "nested").mkdir(parents=True)
        (folder / "a.txt").write_text("first")
        (folder / "nested" / "b.txt").write_text("second")
        (folder / "notes.zip").write_bytes(b"PK")

        results = await ingester.ingest_directory(folder, case_id="case-2")

        assert sorted(r.filename for r in results) == ["a.txt", "b.txt"]

    @pytest.mark.asyncio
    async def test_directory_not_recursive(self, ingester, tmp_path):
        folder = tmp_path / "inbox"
        (folder / "nested").mkdir(parents=True)
        (folder / "a.txt").write_text("first")
        (folder / "nested" / "b.txt").write_text("second")

        results = await ingester.ingest_directory(folder, recursive=False)

        assert [r.filename for r in results] == ["a.txt"]
