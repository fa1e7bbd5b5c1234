"""API endpoints for document indexing."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from scribe.api.deps import get_services
from scribe.core.logging import get_logger
from scribe.core.schemas_index import DocumentIndexState, VectorizationResult
from scribe.services import Services

logger = get_logger(__name__)

router = APIRouter()


class VectorizeRequest(BaseModel):
    """Request body for (re-)indexing a document."""

    content: str | None = Field(
        default=None, description="Content to index; defaults to the stored document content"
    )
    force: bool = Field(default=False, description="Re-embed every chunk")
    background: bool = Field(default=False, description="Queue the job instead of waiting")


class RemoveResponse(BaseModel):
    document_id: str
    chunks_removed: int


async def _require_document(services: Services, document_id: str) -> None:
    document = await services.document_store.get_document(document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")


@router.post("/{document_id}/vectorize", response_model=VectorizationResult)
async def vectorize_document(
    document_id: str,
    request: VectorizeRequest | None = None,
    services: Services = Depends(get_services),
):
    """
    Bring the index for a document up to date.

    Returns 202 with the queue position when background=True, otherwise the
    VectorizationResult. A partially indexed document is still a 200; its
    failed chunks are listed in the result.

    Raises:
        HTTPException 404: If the document does not exist
        HTTPException 503: If the vector index stays unreachable
    """
    request = request or VectorizeRequest()
    await _require_document(services, document_id)

    if request.background:
        services.queue.enqueue(document_id, request.content, force=request.force)
        return JSONResponse(
            status_code=202,
            content={"status": "queued", "document_id": document_id, **services.queue.stats},
        )

    result = await services.pipeline.vectorize(document_id, request.content, force=request.force)
    if not result.success:
        logger.warning(
            f"Document {document_id} partially indexed: chunks {result.failed_chunks} failed"
        )
    return result


@router.delete("/{document_id}/index", response_model=RemoveResponse)
async def remove_document_index(
    document_id: str, services: Services = Depends(get_services)
) -> RemoveResponse:
    """Drop every indexed chunk of a document."""
    removed = await services.pipeline.remove_document(document_id)
    return RemoveResponse(document_id=document_id, chunks_removed=removed)


@router.get("/{document_id}/index-state", response_model=DocumentIndexState)
async def get_index_state(
    document_id: str, services: Services = Depends(get_services)
) -> DocumentIndexState:
    """
    Raises:
        HTTPException 404: If the document was never indexed
    """
    state = services.pipeline.get_index_state(document_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Document has no index state")
    return state
