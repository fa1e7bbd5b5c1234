"""Nearest-neighbour intent matching over labelled example embeddings.

The example store is append-only with capacity-bounded eviction and is safe to
use from concurrent requests.
"""

import threading
from collections import Counter

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from scribe.context.models import Intent, IntentExample, MatchResult, Neighbor
from scribe.core.embeddings import EmbeddingClient
from scribe.core.logging import get_logger

logger = get_logger(__name__)


# Built-in labelled utterances used to bootstrap the matcher and the classifier
INTENT_EXEMPLARS: dict[Intent, list[str]] = {
    Intent.ASK: [
        "What is machine learning?",
        "Explain the difference between a metaphor and a simile",
        "How does photosynthesis work?",
        "What are the main causes of the French Revolution?",
        "Can you explain what a thesis statement is?",
        "Why is the sky blue?",
        "What does the word ubiquitous mean?",
        "How do I structure a persuasive argument?",
    ],
    Intent.WEB_SEARCH: [
        "What's the latest news about Tesla?",
        "Find current research on climate change",
        "What happened in the stock market today?",
        "Search the web for recent reviews of the new iPhone",
        "Who won the game last night?",
        "What is the weather forecast for this weekend?",
        "Look up the current exchange rate for euros",
        "Find recent articles about AI regulation",
    ],
    Intent.RAG_QUERY: [
        "What does my research document say about climate change?",
        "Summarize the key points from my notes",
        "Find information about the budget in my files",
        "What did I write about the marketing plan?",
        "According to my report, what were the Q3 results?",
        "Search my documents for the meeting action items",
        "What are the main arguments in my essay draft?",
        "Which of my notes mention the product launch?",
    ],
    Intent.EDIT_REQUEST: [
        "Rewrite this paragraph to be more concise",
        "Fix the grammar in this sentence",
        "Make this section sound more professional",
        "Change the tone of the selected text to be friendlier",
        "Shorten the introduction",
        "Improve the flow of this paragraph",
        "Correct the spelling mistakes in my selection",
        "Translate the highlighted text into Spanish",
    ],
    Intent.EDITOR_WRITE: [
        "Write an essay about renewable energy",
        "Draft a blog post about remote work",
        "Create an outline for my novel",
        "Write a cover letter for a marketing position",
        "Compose a short story about a lighthouse keeper",
        "Generate a product description for a water bottle",
        "Write the conclusion for this report",
        "Start a new chapter where the hero leaves home",
    ],
    Intent.OTHER: [
        "Hello",
        "Thanks, that was helpful",
        "Good morning!",
        "Never mind",
        "ok",
        "You're great",
    ],
}


class EmbeddingMatcher:
    """Labelled example store with cosine nearest-neighbour lookup."""

    def __init__(
        self,
        capacity: int = 2000,
        k: int = 5,
        window: float = 0.15,
        agreement_min: float = 0.6,
    ):
        """
        Args:
            capacity: Maximum examples held; the lowest-confidence, oldest entry is evicted
            k: Neighbours consulted per lookup
            window: Neighbours more than this below the best similarity do not vote
            agreement_min: Vote share at which neighbours are considered to agree
        """
        self.capacity = capacity
        self.k = k
        self.window = window
        self.agreement_min = agreement_min
        self._lock = threading.Lock()
        self._examples: list[IntentExample] = []
        self._matrix: np.ndarray | None = None
        self.evicted_count = 0

    def __len__(self) -> int:
        return len(self._examples)

    def add_example(self, example: IntentExample) -> None:
        self.add_examples([example])

    def add_examples(self, examples: list[IntentExample]) -> None:
        with self._lock:
            for example in examples:
                self._examples.append(example)
                if len(self._examples) > self.capacity:
                    self._evict_one()
            self._matrix = None

    def _evict_one(self) -> None:
        victim = min(
            range(len(self._examples)),
            key=lambda i: (self._examples[i].confidence, self._examples[i].created_at),
        )
        self._examples.pop(victim)
        self.evicted_count += 1

    def _snapshot(self) -> tuple[list[IntentExample], np.ndarray | None]:
        with self._lock:
            if self._matrix is None and self._examples:
                self._matrix = np.array([example.embedding for example in self._examples])
            return list(self._examples), self._matrix

    def nearest_examples(self, query_embedding: list[float], k: int | None = None) -> list[Neighbor]:
        """The k most similar stored examples, best first."""
        examples, matrix = self._snapshot()
        if not examples:
            return []

        query = np.asarray(query_embedding).reshape(1, -1)
        similarities = cosine_similarity(query, matrix)[0]
        order = np.argsort(-similarities, kind="stable")[: k or self.k]

        return [
            Neighbor(
                text=examples[i].text,
                intent=examples[i].intent,
                similarity=float(similarities[i]),
                confidence=examples[i].confidence,
            )
            for i in order
        ]

    def nearest_intent(self, query_embedding: list[float]) -> MatchResult:
        """
        Vote among the nearest stored examples.

        Neighbours within `window` of the best similarity vote with weight
        similarity x example confidence. The winner's confidence is its best
        similarity scaled by that example's confidence and smoothed by the vote
        share: sim * conf * (0.5 + 0.5 * agreement).

        Returns:
            MatchResult; confidence 0.0 when the store is empty
        """
        neighbors = self.nearest_examples(query_embedding)
        if not neighbors:
            return MatchResult(intent=Intent.OTHER, confidence=0.0)

        best_similarity = neighbors[0].similarity
        weights: Counter[Intent] = Counter()
        for neighbor in neighbors:
            if neighbor.similarity <= 0 or neighbor.similarity < best_similarity - self.window:
                continue
            weights[neighbor.intent] += neighbor.similarity * neighbor.confidence

        total = sum(weights.values())
        if total <= 0:
            return MatchResult(intent=neighbors[0].intent, confidence=0.0, neighbors=neighbors)

        # Ties go to the intent of the single closest example
        winner = max(
            weights,
            key=lambda intent: (weights[intent], intent == neighbors[0].intent),
        )
        agreement = weights[winner] / total
        top = next(n for n in neighbors if n.intent == winner)
        confidence = top.similarity * top.confidence * (0.5 + 0.5 * agreement)

        return MatchResult(
            intent=winner,
            confidence=float(min(1.0, max(0.0, confidence))),
            agreement=float(agreement),
            neighbors=neighbors,
        )

    def agrees(self, result: MatchResult) -> bool:
        return result.agreement >= self.agreement_min

    def stats(self) -> dict:
        examples, _ = self._snapshot()
        return {
            "size": len(examples),
            "capacity": self.capacity,
            "evicted": self.evicted_count,
            "by_intent": dict(Counter(e.intent.value for e in examples)),
            "by_source": dict(Counter(e.source for e in examples)),
        }

    def clear(self) -> None:
        with self._lock:
            self._examples = []
            self._matrix = None


async def load_seed_examples(
    matcher: EmbeddingMatcher,
    embedding_client: EmbeddingClient,
    exemplars: dict[Intent, list[str]] | None = None,
) -> int:
    """
    Embed the built-in exemplars and add them to the matcher.

    Returns:
        Number of examples added
    """
    exemplars = exemplars or INTENT_EXEMPLARS
    labelled = [(text, intent) for intent, texts in exemplars.items() for text in texts]
    if not labelled:
        return 0

    vectors = await embedding_client.embed_many([text for text, _ in labelled])
    matcher.add_examples(
        [
            IntentExample(text=text, embedding=vector, intent=intent, confidence=1.0, source="seed")
            for (text, intent), vector in zip(labelled, vectors)
        ]
    )

    logger.info(f"Loaded {len(labelled)} seed intent examples")
    return len(labelled)
