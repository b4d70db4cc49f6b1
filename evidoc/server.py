"""FastAPI adapter over the evidence processing service.

Binds to localhost by default. Authentication is left to the deployment in
front of this app.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .errors import (
    EvidenceNotFoundError,
    FileUnavailableError,
    InputError,
    UnsupportedMimeTypeError,
)
from .service import EvidenceProcessingService


class ProcessOptionsBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    skip_ocr: bool = Field(False, alias="skipOCR")
    skip_classification: bool = Field(False, alias="skipClassification")
    skip_entities: bool = Field(False, alias="skipEntities")
    skip_summarization: bool = Field(False, alias="skipSummarization")
    ocr_confidence_threshold: float | None = Field(None, alias="ocrConfidenceThreshold", ge=0, le=1)
    max_text_length: int | None = Field(None, alias="maxTextLength", gt=0)


class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_async: bool = Field(True, alias="async")
    options: ProcessOptionsBody | None = None
    force: bool = False


def create_app(service: EvidenceProcessingService, manage_workers: bool = True) -> FastAPI:
    """Create the FastAPI application.

    With ``manage_workers`` the worker pool starts and stops with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_workers:
            await service.start()
        try:
            yield
        finally:
            if manage_workers:
                await service.stop()

    app = FastAPI(
        title="evidoc",
        description="Evidence document processing pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    # CORS - only allow localhost
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"http://(127\.0\.0\.1|localhost)(:\d+)?",
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # === Error mapping ===

    def _error(status_code: int, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": str(exc), "type": type(exc).__name__})

    @app.exception_handler(EvidenceNotFoundError)
    async def not_found(request: Request, exc: EvidenceNotFoundError):
        return _error(404, exc)

    @app.exception_handler(UnsupportedMimeTypeError)
    async def unsupported(request: Request, exc: UnsupportedMimeTypeError):
        return _error(415, exc)

    @app.exception_handler(FileUnavailableError)
    async def file_unavailable(request: Request, exc: FileUnavailableError):
        return _error(409, exc)

    @app.exception_handler(InputError)
    async def bad_input(request: Request, exc: InputError):
        return _error(400, exc)

    # === Routes ===

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.post("/api/evidence/{evidence_id}/process")
    async def trigger_processing(evidence_id: str, body: ProcessRequest | None = None) -> dict[str, Any]:
        """Queue a document (default) or process it inline with ``{"async": false}``."""
        body = body or ProcessRequest()
        options = body.options.model_dump() if body.options else None
        return await service.trigger_processing(
            evidence_id,
            run_async=body.run_async,
            options=options,
            force=body.force,
        )

    @app.get("/api/evidence/{evidence_id}/process")
    async def processing_status(evidence_id: str) -> dict[str, Any]:
        return await service.get_processing_status(evidence_id)

    @app.post("/api/evidence/{evidence_id}/cancel")
    async def cancel_processing(evidence_id: str) -> dict[str, Any]:
        return await service.cancel(evidence_id)

    @app.post("/api/cases/{case_id}/process-documents")
    async def process_case_documents(case_id: str) -> dict[str, Any]:
        return await service.process_case_documents(case_id)

    @app.post("/api/cases/{case_id}/retry-failed")
    async def retry_failed(case_id: str) -> dict[str, Any]:
        return await service.retry_failed(case_id)

    @app.get("/api/queue/stats")
    async def queue_stats() -> dict[str, Any]:
        return await service.queue_stats()

    return app
