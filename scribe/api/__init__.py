"""API router for v1 endpoints."""

from fastapi import APIRouter

from scribe.api import documents, intent, search

router = APIRouter()

# Intent routing: classify, feedback, metrics
router.include_router(intent.router, prefix="/router", tags=["router"])

# Document indexing lifecycle
router.include_router(documents.router, prefix="/documents", tags=["documents"])

# Scoped retrieval and context assembly
router.include_router(search.router, prefix="/search", tags=["search"])
