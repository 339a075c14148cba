"""
knowledge_base/api/documents_controller.py

Handles requests under /documents: adding text or files, deleting, and
generating embeddings.

Responses:
  200  Success.
  207  Embedding finished with failed chunks; the body carries the report.
  400  Unsupported file type, empty or oversized content, blank fields.
  404  Unknown document or collection.
  409  Vectors do not fit the collection's dimensionality.
  502  The embedding provider failed (body ``kind`` names the failure).
  500  Storage or vector store failure.
"""

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse

from knowledge_base.api.responses import err, error_response
from knowledge_base.core.exceptions import AppBaseException, PartialFailure
from knowledge_base.core.logger import get_logger
from knowledge_base.models.ingest_models import (
    AddDocumentRequest,
    AddDocumentResponse,
    DocumentSummary,
    EmbeddingReport,
    GenerateEmbeddingsRequest,
)
from knowledge_base.services.container import Services, get_services

logger = get_logger(__name__)

router = APIRouter(prefix="/documents", tags=["Documents"])


# ── Helpers ────────────────────────────────────────────────────────────────────

class _Busy(Exception):
    """An embedding job for the same document is already running."""


async def _run_embedding(
    services: Services, document_id: str, api_key: Optional[str], retry: bool
) -> EmbeddingReport:
    """Run one embedding job with a cancellation flag registered for the document."""
    if document_id in services.jobs:
        raise _Busy(f"Embeddings for document '{document_id}' are already being generated.")

    cancel = asyncio.Event()
    services.jobs[document_id] = cancel
    try:
        if retry:
            return await services.ingest.retry_failed_chunks(document_id, api_key=api_key, cancel_event=cancel)
        return await services.ingest.generate_document_embeddings(document_id, api_key=api_key, cancel_event=cancel)
    finally:
        services.jobs.pop(document_id, None)


async def _embedding_endpoint(
    services: Services, document_id: str, body: Optional[GenerateEmbeddingsRequest], retry: bool
) -> JSONResponse:
    api_key = body.api_key if body else None
    try:
        report = await _run_embedding(services, document_id, api_key, retry)
    except _Busy as exc:
        return err(str(exc), 409, "busy")
    except AppBaseException as exc:
        if isinstance(exc, PartialFailure):
            logger.warning("Partial embedding of '%s': %s", document_id, exc)
        return error_response(exc)
    return JSONResponse(status_code=200, content=report.model_dump())


# ── Endpoints ──────────────────────────────────────────────────────────────────

@router.post("", summary="Add a text document")
async def add_document(body: AddDocumentRequest, services: Services = Depends(get_services)) -> JSONResponse:
    """
    Store a text document in a collection (the default one when omitted).

    With ``generate_embeddings`` the document is embedded right away and
    the embedding report is returned alongside it.
    """
    logger.info("Add document request — title: '%s'", body.title[:80])
    try:
        document = await services.ingest.add_document(
            title=body.title,
            content=body.content,
            collection_id=body.collection_id,
            source_type=body.source_type,
        )
        report = None
        if body.generate_embeddings:
            report = await _run_embedding(services, document.id, body.api_key, retry=False)
    except _Busy as exc:
        return err(str(exc), 409, "busy")
    except AppBaseException as exc:
        return error_response(exc)

    result = AddDocumentResponse(document=DocumentSummary.from_document(document), embedding=report)
    return JSONResponse(status_code=200, content=result.model_dump())


@router.post("/upload", summary="Upload a document file")
async def upload_document(
    file: UploadFile = File(...),
    collection_id: Optional[str] = Form(default=None),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Accept one text-like or PDF file as multipart/form-data (field ``file``)."""
    filename = file.filename or "upload.txt"
    logger.info("Upload request — file: '%s'", filename)
    try:
        raw = await file.read()
        document = await services.ingest.add_file(
            raw, filename, mime_type=file.content_type, collection_id=collection_id or None
        )
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content=DocumentSummary.from_document(document).model_dump())


@router.get("/{document_id}", summary="Get a document")
async def get_document(document_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    try:
        document = await services.collections.get_document(document_id)
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content=document.model_dump())


@router.delete("/{document_id}", summary="Delete a document with its chunks and vectors")
async def delete_document(document_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    logger.info("Delete document request — id: '%s'", document_id)
    cancel = services.jobs.get(document_id)
    if cancel is not None:
        cancel.set()
    try:
        await services.collections.delete_document(document_id)
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content={"message": f"Document '{document_id}' deleted."})


@router.post("/{document_id}/embeddings", summary="Generate embeddings for a document")
async def generate_embeddings(
    document_id: str,
    body: Optional[GenerateEmbeddingsRequest] = None,
    services: Services = Depends(get_services),
) -> JSONResponse:
    return await _embedding_endpoint(services, document_id, body, retry=False)


@router.post("/{document_id}/embeddings/retry", summary="Re-embed failed or pending chunks")
async def retry_embeddings(
    document_id: str,
    body: Optional[GenerateEmbeddingsRequest] = None,
    services: Services = Depends(get_services),
) -> JSONResponse:
    return await _embedding_endpoint(services, document_id, body, retry=True)


@router.post("/{document_id}/embeddings/cancel", summary="Cancel a running embedding job")
async def cancel_embeddings(document_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    cancel = services.jobs.get(document_id)
    if cancel is None:
        return err(f"No embedding job is running for document '{document_id}'.", 404, "not_found")
    cancel.set()
    logger.info("Cancellation requested for document '%s'.", document_id)
    return JSONResponse(status_code=200, content={"message": "Cancellation requested."})
