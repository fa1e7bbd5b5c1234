"""API endpoints for intent routing."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from scribe.api.deps import get_services
from scribe.context.models import RouterClassification, RouterContext, RouterMetrics
from scribe.core.logging import get_logger
from scribe.services import Services

logger = get_logger(__name__)

router = APIRouter()


class ClassifyRequest(BaseModel):
    """Request body for intent classification."""

    query: str = Field(..., description="User utterance to route")
    context: RouterContext | None = Field(default=None, description="Request-shaping features")


class FeedbackRequest(BaseModel):
    """Request body for a routing correction."""

    query: str
    correct_intent: str
    predicted_intent: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    context: RouterContext | None = None


class FeedbackResponse(BaseModel):
    status: str = "accepted"
    is_correction: bool


@router.post("/classify", response_model=RouterClassification)
async def classify(
    request: ClassifyRequest, services: Services = Depends(get_services)
) -> RouterClassification:
    """
    Route a user utterance to one intent.

    Raises:
        HTTPException 422: If the query is blank
    """
    return await services.router.classify_intent(request.query, request.context)


@router.post("/feedback", response_model=FeedbackResponse, status_code=202)
async def feedback(
    request: FeedbackRequest, services: Services = Depends(get_services)
) -> FeedbackResponse:
    """
    Record a routing correction. The example is learned in the background.

    Raises:
        HTTPException 422: If an intent label is unknown
    """
    record = await services.router.add_feedback(
        request.query,
        request.correct_intent,
        request.predicted_intent,
        confidence=request.confidence,
        context=request.context,
    )
    return FeedbackResponse(is_correction=record.is_correction)


@router.get("/metrics", response_model=RouterMetrics)
async def metrics(services: Services = Depends(get_services)) -> RouterMetrics:
    return services.router.get_metrics()


@router.get("/status")
async def status(services: Services = Depends(get_services)) -> dict:
    """Readiness of each routing signal and of the vectorization queue."""
    return {**services.router.get_status(), "vectorization_queue": services.queue.stats}
