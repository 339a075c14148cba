"""
knowledge_base/api/search_controller.py

Handles incoming requests to POST /search.

This layer is responsible only for HTTP concerns:
  - Parsing and validating the JSON request body, ensuring the query
    field is present and not empty.
  - Delegating the hybrid search to SearchService.
  - Translating service-level errors into appropriate HTTP responses.

Responses:
  200  Search completed. ``status`` distinguishes ``ok``, ``no_matches``,
       ``empty`` (no documents) and ``not_embedded`` (no vectors yet).
  400  The request was malformed — for example, a blank query.
  404  Unknown collection.
  502  The query could not be embedded or the search timed out.
  500  An unexpected error occurred while performing the search.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from knowledge_base.api.responses import error_response
from knowledge_base.core.exceptions import AppBaseException
from knowledge_base.core.logger import get_logger
from knowledge_base.models.search_models import SearchRequest, SearchResponse
from knowledge_base.services.container import Services, get_services

logger = get_logger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])


@router.post("", response_model=SearchResponse, summary="Search the knowledge base")
async def search(body: SearchRequest, services: Services = Depends(get_services)) -> JSONResponse:
    """
    Accepts a JSON body with the following fields:

      query            (required) — the natural-language question or phrase.
      collection_id    (optional) — defaults to the default collection.
      limit            (optional) — 1..100, defaults to SEARCH_LIMIT.
      threshold        (optional) — minimum cosine similarity, defaults to SIMILARITY_THRESHOLD.
      keyword_fallback (optional) — off | low_recall | always.
      all_collections  (optional) — search every collection instead of one.
      api_key          (optional) — credential for the embedding provider.
    """
    logger.info("Search request received — query: '%s'", body.query[:120])

    try:
        if body.all_collections:
            result = await services.search.search_all_collections(
                body.query,
                limit=body.limit,
                threshold=body.threshold,
                keyword_fallback=body.keyword_fallback,
                api_key=body.api_key,
            )
        else:
            result = await services.search.search(
                body.query,
                collection_id=body.collection_id,
                limit=body.limit,
                threshold=body.threshold,
                keyword_fallback=body.keyword_fallback,
                api_key=body.api_key,
            )
    except AppBaseException as exc:
        return error_response(exc)

    return JSONResponse(status_code=200, content=result.model_dump())
