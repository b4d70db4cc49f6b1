"""Exception hierarchy for evidoc.

Input errors surface to the caller before a job exists. Stage errors are
raised by pipeline stages and caught by the orchestrator, which records them
on the job and evidence record.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNSUPPORTED_INPUT = "unsupported_input"
    TIMEOUT = "timeout"
    MALFORMED_INPUT = "malformed_input"
    EXTERNAL_SERVICE = "external_service"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class EvidocError(Exception):
    """Base exception for all evidoc errors."""

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.original_error = original_error


class ConfigurationError(EvidocError):
    """Configuration is invalid or a provider cannot be set up."""


# === Input errors ===


class InputError(EvidocError):
    """The request cannot be accepted; no job is created."""


class EvidenceNotFoundError(InputError):
    pass


class UnsupportedMimeTypeError(InputError):
    pass


class FileUnavailableError(InputError):
    """The storage collaborator could not provide the file bytes."""


# === Stage errors ===


class StageError(EvidocError):
    """A pipeline stage failed."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(message, original_error)
        self.stage = stage


class UnsupportedInputError(StageError):
    kind = ErrorKind.UNSUPPORTED_INPUT


class StageTimeoutError(StageError):
    kind = ErrorKind.TIMEOUT


class MalformedInputError(StageError):
    kind = ErrorKind.MALFORMED_INPUT


class ExternalServiceError(StageError):
    kind = ErrorKind.EXTERNAL_SERVICE


class JobCancelledError(StageError):
    kind = ErrorKind.CANCELLED
