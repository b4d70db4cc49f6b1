"""Tests for the evidence repository."""

from evidoc.models import JobStatus, ProcessingStatus
from evidoc.repository import CANCELLED_MESSAGE


class TestJobs:
    def test_one_active_job_per_evidence(self, repository, add_evidence):
        evidence = add_evidence(b"text", "a.txt", "text/plain")

        first, created = repository.create_job_if_absent(evidence.id)
        second, created_again = repository.create_job_if_absent(evidence.id)

        assert created and not created_again
        assert first.id == second.id
        assert repository.get_evidence(evidence.id).processing_status == ProcessingStatus.QUEUED

    def test_new_job_after_terminal(self, repository, add_evidence):
        evidence = add_evidence(b"text", "a.txt", "text/plain")
        job, _ = repository.create_job_if_absent(evidence.id)
        repository.claim_job(job.id)
        repository.complete_job(job.id, evidence.id, {"extracted_text": "text"})

        again, created = repository.create_job_if_absent(evidence.id)

        assert created
        assert again.id != job.id
        assert repository.get_active_job(evidence.id).id == again.id

    def test_claim_only_once(self, repository, add_evidence):
        evidence = add_evidence(b"text", "a.txt", "text/plain")
        job, _ = repository.create_job_if_absent(evidence.id)

        claimed = repository.claim_job(job.id)

        assert claimed.status == JobStatus.RUNNING
        assert claimed.started_at is not None
        assert repository.claim_job(job.id) is None

    def test_failure_keeps_previous_outputs(self, repository, add_evidence):
        evidence = add_evidence(b"text", "a.txt", "text/plain")
        job, _ = repository.create_job_if_absent(evidence.id)
        repository.claim_job(job.id)
        repository.complete_job(job.id, evidence.id, {"extracted_text": "old text", "summary": "old"})

        retry, _ = repository.create_job_if_absent(evidence.id)
        repository.claim_job(retry.id)
        repository.fail_job(retry.id, evidence.id, "OCR failed", "external_service")

        stored = repository.get_evidence(evidence.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert stored.processing_error == "OCR failed"
        assert stored.extracted_text == "old text"
        assert stored.summary == "old"
        assert stored.processed_at is not None

    def test_failure_does_not_stamp_processed_at(self, repository, add_evidence):
        evidence = add_evidence(b"text", "a.txt", "text/plain")
        job, _ = repository.create_job_if_absent(evidence.id)
        repository.claim_job(job.id)

        repository.fail_job(job.id, evidence.id, "Text extraction failed: bad file", "malformed_input")

        stored = repository.get_evidence(evidence.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert stored.processed_at is None
        assert repository.get_job(job.id).completed_at is not None

    def test_cancel_queued_job(self, repository, add_evidence):
        evidence = add_evidence(b"text", "a.txt", "text/plain")
        job, _ = repository.create_job_if_absent(evidence.id)

        cancelled = repository.cancel_queued_job(evidence.id)

        assert cancelled.id == job.id
        stored_job = repository.get_job(job.id)
        assert stored_job.status == JobStatus.FAILED
        assert stored_job.error_message == CANCELLED_MESSAGE
        assert repository.get_evidence(evidence.id).processing_status == ProcessingStatus.PENDING
        assert repository.claim_job(job.id) is None

    def test_request_cancel_needs_running_job(self, repository, add_evidence):
        evidence = add_evidence(b"text", "a.txt", "text/plain")
        job, _ = repository.create_job_if_absent(evidence.id)

        assert repository.request_cancel(job.id) is False
        repository.claim_job(job.id)
        assert repository.request_cancel(job.id) is True
        assert repository.is_cancel_requested(job.id)

    def test_stage_results_accumulate(self, repository, add_evidence):
        evidence = add_evidence(b"text", "a.txt", "text/plain")
        job, _ = repository.create_job_if_absent(evidence.id)

        repository.save_stage_result(job.id, "extraction", {"status": "success"})
        repository.save_stage_result(job.id, "ocr", {"status": "skipped"})

        assert repository.get_job(job.id).stage_results == {
            "extraction": {"status": "success"},
            "ocr": {"status": "skipped"},
        }
