"""
knowledge_base/api/system_controller.py

Read-mostly diagnostics: system status, storage info and API usage.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from knowledge_base.api.responses import error_response
from knowledge_base.core.exceptions import AppBaseException
from knowledge_base.core.logger import get_logger
from knowledge_base.models.search_models import SystemStatus
from knowledge_base.services.container import Services, get_services

logger = get_logger(__name__)

router = APIRouter(prefix="/system", tags=["System"])


@router.get("/status", response_model=SystemStatus, summary="Knowledge base totals and health")
async def system_status(services: Services = Depends(get_services)) -> JSONResponse:
    status = await services.collections.get_system_status(
        embedder_configured=services.embedder.is_configured
    )
    try:
        storage = await services.storage.get_storage_info()
    except AppBaseException as exc:
        logger.warning("Storage info unavailable: %s", exc)
        storage = {}
    return JSONResponse(status_code=200, content=SystemStatus(storage=storage, **status).model_dump())


@router.get("/storage", summary="Persistence backend details")
async def storage_info(services: Services = Depends(get_services)) -> JSONResponse:
    try:
        info = await services.storage.get_storage_info()
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content=info)


@router.get("/sessions", summary="Recorded API sessions")
async def list_sessions(
    kind: Optional[str] = None,
    model: Optional[str] = None,
    provider: Optional[str] = None,
    status: Optional[str] = None,
    services: Services = Depends(get_services),
) -> JSONResponse:
    try:
        sessions = await services.recorder.get_sessions(
            kind=kind, model=model, provider=provider, status=status
        )
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content=[s.model_dump() for s in sessions])


@router.get("/sessions/stats", summary="API usage statistics")
async def session_stats(services: Services = Depends(get_services)) -> JSONResponse:
    try:
        stats = await services.recorder.get_statistics()
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content=stats)


@router.delete("/sessions", summary="Clear recorded API sessions")
async def clear_sessions(services: Services = Depends(get_services)) -> JSONResponse:
    try:
        await services.recorder.clear()
    except AppBaseException as exc:
        return error_response(exc)
    return JSONResponse(status_code=200, content={"message": "API session history cleared."})
