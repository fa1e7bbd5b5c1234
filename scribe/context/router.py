"""Hybrid intent router.

Fusion cascade, cheapest signal first, stopping at the first accepted answer:
  1. embedding matcher, accepted at ROUTER_EMBEDDING_BAR when neighbours agree
  2. learned classifier, accepted at ROUTER_CLASSIFIER_BAR when trained
  3. LLM meta-classifier, authoritative whenever it answers
  4. fallback to the strongest of 1-2, so a classification is always returned

Upstream failures are never retried inside the cascade; a failed signal just
falls through to the next one.
"""

import asyncio
import re
import threading
import time
from collections import Counter
from typing import Any

from scribe.context.intent_matcher import EmbeddingMatcher, load_seed_examples
from scribe.context.learned_classifier import LearnedClassifier
from scribe.context.meta_classifier import LLMMetaClassifier
from scribe.context.models import (
    ClassifierResult,
    FeedbackRecord,
    Intent,
    IntentExample,
    IntentSlots,
    MatchResult,
    MetaResult,
    Method,
    RouterClassification,
    RouterContext,
    RouterMetrics,
)
from scribe.core.config import Settings, get_settings
from scribe.core.embeddings import EmbeddingClient
from scribe.core.errors import TransientUpstreamError, ValidationError
from scribe.core.logging import get_logger
from scribe.core.retrieval import extract_terms
from scribe.core.retry import build_async_retrying, with_timeout

logger = get_logger(__name__)

VOLATILE_TERMS = re.compile(r"\b(latest|today|breaking|current|recent|now)\b", re.IGNORECASE)


def build_slots(
    intent: Intent, query: str, context: RouterContext, meta: MetaResult | None = None
) -> IntentSlots:
    """Fill the slots the handling capability needs for an intent."""
    terms = extract_terms(query)
    topic = (meta.topic if meta and meta.topic else None) or (" ".join(terms[:4]) or None)

    needs_recency = (
        intent == Intent.WEB_SEARCH
        or bool(VOLATILE_TERMS.search(query))
        or bool(meta and meta.needs_recency)
    )

    target_docs: list[str] = []
    if intent == Intent.RAG_QUERY:
        target_docs = list(context.doc_ids)
        if not target_docs and context.document_id:
            target_docs = [context.document_id]

    edit_target = None
    if intent == Intent.EDIT_REQUEST:
        if context.is_selection_present:
            edit_target = "selection"
        elif context.document_id:
            edit_target = "file"

    return IntentSlots(
        topic=topic,
        needs_recency=needs_recency,
        target_docs=target_docs,
        edit_target=edit_target,
        outputs=intent.default_output,
    )


class HybridRouter:
    """Routes each utterance to one intent and learns from feedback."""

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        matcher: EmbeddingMatcher,
        classifier: LearnedClassifier,
        meta_classifier: LLMMetaClassifier | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.embedding_client = embedding_client
        self.matcher = matcher
        self.classifier = classifier
        self.meta_classifier = meta_classifier
        self._initialized = False
        self._metrics_lock = threading.Lock()
        self._pending_feedback: set[asyncio.Task] = set()
        self.reset_metrics()

    async def initialize(self) -> None:
        """Load seed examples into an empty matcher when configured to."""
        if self.settings.ROUTER_LOAD_SEED_EXAMPLES and len(self.matcher) == 0:
            await load_seed_examples(self.matcher, self.embedding_client)
        self._initialized = True

    # =========================================================================
    # Classification
    # =========================================================================

    async def classify_intent(
        self, query: str, context: RouterContext | None = None
    ) -> RouterClassification:
        """
        Classify a user utterance.

        Args:
            query: The utterance
            context: Request-shaping features

        Returns:
            RouterClassification; method tells which signal decided

        Raises:
            ValidationError: If the query is blank
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("query must not be empty")
        context = context or RouterContext()
        start = time.perf_counter()
        signals: dict[str, float] = {}

        embedding = await self._embed_query(query)

        # Stage 1: embedding matcher
        match: MatchResult | None = None
        if embedding is not None:
            match = self.matcher.nearest_intent(embedding)
            signals[Method.EMBEDDING.value] = round(match.confidence, 4)
            if match.confidence >= self.settings.ROUTER_EMBEDDING_BAR and self.matcher.agrees(match):
                return self._finish(
                    query,
                    context,
                    start,
                    signals,
                    match.intent,
                    match.confidence,
                    Method.EMBEDDING,
                    f"Nearest examples agree ({match.agreement:.0%}) on {match.intent.value}",
                )

        # Stage 2: learned classifier
        predicted: ClassifierResult | None = None
        if embedding is not None and self.classifier.is_trained():
            predicted = await self.classifier.classify(query, context, query_embedding=embedding)
            signals[Method.CLASSIFIER.value] = round(predicted.confidence, 4)
            if predicted.confidence >= self.settings.ROUTER_CLASSIFIER_BAR:
                return self._finish(
                    query,
                    context,
                    start,
                    signals,
                    predicted.intent,
                    predicted.confidence,
                    Method.CLASSIFIER,
                    f"Classifier probability {predicted.confidence:.2f} for {predicted.intent.value}",
                )

        # Stage 3: meta-classifier
        if self.meta_classifier is not None:
            meta = await self.meta_classifier.classify(query, context, query_embedding=embedding)
        else:
            meta = MetaResult.unavailable("meta-classifier not configured")

        if meta.available and meta.intent is not None:
            signals[Method.META.value] = round(meta.confidence, 4)
            return self._finish(
                query,
                context,
                start,
                signals,
                meta.intent,
                meta.confidence,
                Method.META,
                meta.reasoning or "Resolved by meta-classifier",
                meta=meta,
            )

        # Stage 4: fallback
        intent, confidence, source = self._best_signal(match, predicted, context)
        return self._finish(
            query,
            context,
            start,
            signals,
            intent,
            confidence,
            Method.FALLBACK,
            f"Meta-classifier unavailable ({meta.error}); using {source}",
        )

    async def _embed_query(self, query: str) -> list[float] | None:
        try:
            return await with_timeout(
                self.embedding_client.embed(query),
                self.settings.EMBEDDING_TIMEOUT_SECONDS,
                "query embedding",
            )
        except TransientUpstreamError as e:
            logger.warning(f"Query embedding failed, skipping local signals: {e}")
            return None

    @staticmethod
    def _best_signal(
        match: MatchResult | None,
        predicted: ClassifierResult | None,
        context: RouterContext,
    ) -> tuple[Intent, float, str]:
        candidates = []
        if match is not None and match.confidence > 0:
            candidates.append((match.confidence, match.intent, "embedding signal"))
        if predicted is not None and predicted.confidence > 0:
            candidates.append((predicted.confidence, predicted.intent, "classifier signal"))

        if candidates:
            confidence, intent, source = max(candidates, key=lambda c: c[0])
            return intent, confidence, source

        default = Intent.RAG_QUERY if context.has_attached_docs else Intent.ASK
        return default, 0.0, "context default"

    def _finish(
        self,
        query: str,
        context: RouterContext,
        start: float,
        signals: dict[str, float],
        intent: Intent,
        confidence: float,
        method: Method,
        reasoning: str,
        meta: MetaResult | None = None,
    ) -> RouterClassification:
        latency_ms = (time.perf_counter() - start) * 1000
        confidence = float(min(1.0, max(0.0, confidence)))

        classification = RouterClassification(
            intent=intent,
            confidence=confidence,
            slots=build_slots(intent, query, context, meta),
            method=method,
            reasoning=reasoning,
            signals=signals,
            processing_time_ms=round(latency_ms, 1),
        )

        with self._metrics_lock:
            self._total_requests += 1
            self._confidence_sum += confidence
            self._latency_sum_ms += latency_ms
            self._method_counts[method.value] += 1
            self._intent_counts[intent.value] += 1

        logger.info(
            f"Routed query to {intent.value} via {method.value} ({confidence:.2f})",
            extra={"intent": intent.value, "method": method.value, "latency_ms": round(latency_ms, 1)},
        )
        return classification

    # =========================================================================
    # Feedback
    # =========================================================================

    async def add_feedback(
        self,
        query: str,
        correct_intent: str | Intent,
        predicted_intent: str | Intent,
        confidence: float = 0.0,
        context: RouterContext | None = None,
    ) -> FeedbackRecord:
        """
        Record a routing correction.

        The labelled example is embedded and added to the matcher in the
        background; call drain_feedback() to wait for it. The learned classifier
        only queues the record for its next offline training run.

        Raises:
            ValidationError: On an unknown intent label or blank query
        """
        if not query or not query.strip():
            raise ValidationError("feedback query must not be empty")

        record = FeedbackRecord(
            query=query.strip(),
            correct_intent=Intent.parse(correct_intent),
            predicted_intent=Intent.parse(predicted_intent),
            confidence=min(1.0, max(0.0, confidence)),
            context=context,
        )

        with self._metrics_lock:
            self._feedback_count += 1
            if record.is_correction:
                self._correction_count += 1

        self.classifier.record_feedback(record)

        task = asyncio.create_task(self._ingest_feedback(record))
        self._pending_feedback.add(task)
        task.add_done_callback(self._pending_feedback.discard)
        return record

    async def _ingest_feedback(self, record: FeedbackRecord) -> None:
        retrying = build_async_retrying(
            self.settings.EMBED_MAX_ATTEMPTS,
            self.settings.EMBED_BACKOFF_INITIAL_SECONDS,
            self.settings.EMBED_BACKOFF_MAX_SECONDS,
            "feedback embedding",
        )
        try:
            embedding = await retrying(lambda: self.embedding_client.embed(record.query))
        except TransientUpstreamError as e:
            logger.error(f"Dropped feedback example, embedding failed: {e}")
            return

        self.matcher.add_example(
            IntentExample(
                text=record.query,
                embedding=embedding,
                intent=record.correct_intent,
                confidence=1.0,
                source="feedback",
            )
        )
        logger.info(
            f"Added feedback example for {record.correct_intent.value}",
            extra={"predicted": record.predicted_intent.value},
        )

    async def drain_feedback(self) -> None:
        """Wait until all scheduled feedback has been ingested."""
        if self._pending_feedback:
            await asyncio.gather(*list(self._pending_feedback), return_exceptions=True)

    # =========================================================================
    # Observability
    # =========================================================================

    def get_metrics(self) -> RouterMetrics:
        with self._metrics_lock:
            total = self._total_requests
            return RouterMetrics(
                total_requests=total,
                average_confidence=round(self._confidence_sum / total, 4) if total else 0.0,
                average_latency_ms=round(self._latency_sum_ms / total, 2) if total else 0.0,
                method_counts={m.value: self._method_counts.get(m.value, 0) for m in Method},
                intent_distribution=dict(self._intent_counts),
                feedback_count=self._feedback_count,
                correction_count=self._correction_count,
            )

    def reset_metrics(self) -> None:
        with self._metrics_lock:
            self._total_requests = 0
            self._confidence_sum = 0.0
            self._latency_sum_ms = 0.0
            self._method_counts: Counter[str] = Counter()
            self._intent_counts: Counter[str] = Counter()
            self._feedback_count = 0
            self._correction_count = 0

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "example_store": self.matcher.stats(),
            "classifier": self.classifier.get_status(),
            "meta_classifier": {
                "configured": self.meta_classifier is not None,
                "calls": self.meta_classifier.calls if self.meta_classifier else 0,
                "failures": self.meta_classifier.failures if self.meta_classifier else 0,
            },
            "pending_feedback": len(self._pending_feedback),
            "total_requests": self.get_metrics().total_requests,
        }
