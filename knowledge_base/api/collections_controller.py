"""
knowledge_base/api/collections_controller.py

Handles requests under /collections.

This layer is responsible only for HTTP concerns: parsing bodies,
delegating to CollectionManager and translating service errors.

Responses:
  200  Success.
  400  Invalid body (blank name, bad dimensions).
  404  Unknown collection.
  409  The collection's index exists with another dimensionality.
  500  Storage or vector store failure.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from knowledge_base.api.responses import error_response
from knowledge_base.core.exceptions import AppBaseException
from knowledge_base.core.logger import get_logger
from knowledge_base.models.ingest_models import CreateCollectionRequest, DocumentSummary
from knowledge_base.services.container import Services, get_services

logger = get_logger(__name__)

router = APIRouter(prefix="/collections", tags=["Collections"])


@router.get("", summary="List knowledge collections")
async def list_collections(services: Services = Depends(get_services)) -> JSONResponse:
    try:
        collections = await services.collections.list_collections()
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content=[c.model_dump() for c in collections])


@router.post("", summary="Create a knowledge collection")
async def create_collection(
    body: CreateCollectionRequest,
    services: Services = Depends(get_services),
) -> JSONResponse:
    logger.info("Create collection request — name: '%s'", body.name)
    try:
        collection = await services.collections.create_collection(
            name=body.name,
            embedding_model=body.embedding_model,
            vector_dimensions=body.vector_dimensions,
            description=body.description,
        )
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content=collection.model_dump())


@router.get("/{collection_id}/stats", summary="Collection statistics")
async def collection_stats(collection_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    try:
        stats = await services.collections.get_collection_stats(collection_id)
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content=stats)


@router.get("/{collection_id}/documents", summary="List the documents of a collection")
async def list_documents(collection_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    try:
        documents = await services.collections.get_documents(collection_id)
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(
        status_code=200,
        content=[DocumentSummary.from_document(d).model_dump() for d in documents],
    )


@router.delete("/{collection_id}", summary="Delete a collection and everything in it")
async def delete_collection(collection_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    logger.info("Delete collection request — id: '%s'", collection_id)
    try:
        removed = await services.collections.delete_collection(collection_id)
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(
        status_code=200,
        content={"message": f"Collection '{collection_id}' deleted with {removed} document(s)."},
    )
