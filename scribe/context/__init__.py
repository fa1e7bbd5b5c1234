"""Intent routing for the writing assistant.

This module provides:
- Embedding-similarity matching against labelled examples
- A learned logistic-regression classifier
- An LLM meta-classifier for ambiguous queries
- The hybrid router that fuses them and learns from feedback
"""

from scribe.context.models import (
    FeedbackRecord,
    Intent,
    IntentExample,
    IntentSlots,
    Method,
    RouterClassification,
    RouterContext,
    RouterMetrics,
)

__all__ = [
    # Models
    "FeedbackRecord",
    "Intent",
    "IntentExample",
    "IntentSlots",
    "Method",
    "RouterClassification",
    "RouterContext",
    "RouterMetrics",
]
