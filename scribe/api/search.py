"""API endpoints for scoped document search."""

from typing import Literal

import pydantic
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from scribe.api.deps import get_services
from scribe.core.errors import ValidationError
from scribe.core.logging import get_logger
from scribe.core.schemas_retrieval import SearchOptions, SearchResult, SearchScope
from scribe.services import Services

logger = get_logger(__name__)

router = APIRouter()


def _scope(user_id: str, document_id: str | None = None) -> SearchScope:
    try:
        return SearchScope(user_id=user_id, document_id=document_id)
    except pydantic.ValidationError as e:
        raise ValidationError("search requires a user scope") from e


class SearchRequest(BaseModel):
    """Request body for search. user_id must come from an authenticated session."""

    query: str
    user_id: str
    document_id: str | None = None
    options: SearchOptions = Field(default_factory=SearchOptions)


class SearchResponse(BaseModel):
    results: list[SearchResult]
    count: int


class ContextRequest(BaseModel):
    query: str
    user_id: str
    document_id: str | None = None
    max_results: int = Field(default=5, ge=1, le=20)
    style: Literal["grouped", "compact"] = "grouped"


class ContextResponse(BaseModel):
    context: str
    has_results: bool


@router.post("", response_model=SearchResponse)
async def search(
    request: SearchRequest, services: Services = Depends(get_services)
) -> SearchResponse:
    """
    Search the user's documents.

    Raises:
        HTTPException 422: If the query is blank or user_id is missing
        HTTPException 503: If the embedding service or index is unavailable
    """
    scope = _scope(request.user_id, request.document_id)
    results = await services.retrieval.search(request.query, scope, request.options)
    return SearchResponse(results=results, count=len(results))


@router.post("/context", response_model=ContextResponse)
async def search_context(
    request: ContextRequest, services: Services = Depends(get_services)
) -> ContextResponse:
    """Search and format the top passages as a context block for a prompt."""
    scope = _scope(request.user_id)
    context = await services.retrieval.get_context(
        request.query,
        scope,
        document_id=request.document_id,
        max_results=request.max_results,
        style=request.style,
    )
    return ContextResponse(context=context, has_results=bool(context))
