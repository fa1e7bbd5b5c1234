"""LLM meta-classifier for low-confidence routing decisions.

Only consulted when the cheaper signals are weak or disagree. Every failure
mode (timeout, upstream error, unparseable or out-of-set answer) produces an
unavailable MetaResult instead of an exception.
"""

import json

import pydantic
from pydantic import BaseModel, Field

from scribe.context.intent_matcher import EmbeddingMatcher
from scribe.context.models import Intent, MetaResult, RouterContext
from scribe.core.errors import TransientUpstreamError, ValidationError
from scribe.core.llm import LLMService, parse_llm_json
from scribe.core.logging import get_logger
from scribe.core.retry import build_async_retrying, with_timeout

logger = get_logger(__name__)


META_SYSTEM_PROMPT = """You classify what a user of an AI writing assistant wants, choosing exactly one intent.

INTENTS:
- ask: a question answerable from general knowledge ("What is machine learning?", "Who founded Microsoft?")
- web_search: needs current or recent information from the web ("What's the latest news about Tesla?", "Is she still CEO?", "What is the stock price of Apple?")
- rag_query: a question about the user's own documents or notes ("What does my research say about climate?")
- edit_request: change existing text, usually a selection ("Rewrite this paragraph", "Fix the grammar")
- editor_write: create new content in the editor ("Write an essay about renewable energy")
- other: greetings, thanks, or requests that fit none of the above

DISTINCTIONS:
- General facts and definitions are ask; recent events, status changes, prices and news are web_search.
- Mentions of "my notes", "my document", or attached documents point to rag_query.
- Imperatives about existing text with a selection present point to edit_request.
- Requests to produce new long-form text are editor_write.

CONFIDENCE: 0.9-1.0 unambiguous, 0.7-0.9 clear, 0.5-0.7 ambiguous, below 0.5 a best guess.

Respond with ONLY a JSON object:
{"intent": "<one of the intents>", "confidence": <0.0-1.0>, "needs_recency": <true|false>, "topic": "<short topic or null>", "reasoning": "<one sentence>"}"""


class MetaClassifierOutput(BaseModel):
    intent: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    needs_recency: bool | None = None
    topic: str | None = None
    reasoning: str | None = None


class LLMMetaClassifier:
    """Asks a language model to classify a query, with few-shot nearest examples."""

    def __init__(
        self,
        llm_service: LLMService,
        matcher: EmbeddingMatcher | None = None,
        timeout: float = 3.0,
        max_attempts: int = 2,
        max_examples: int = 5,
    ):
        self.llm_service = llm_service
        self.matcher = matcher
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.max_examples = max_examples
        self.calls = 0
        self.failures = 0

    async def classify(
        self,
        query: str,
        context: RouterContext | None = None,
        query_embedding: list[float] | None = None,
    ) -> MetaResult:
        """
        Classify a query, bounded by the configured timeout.

        Returns:
            MetaResult with available=True, or an unavailable result with the reason
        """
        self.calls += 1
        prompt = self.build_prompt(query, context or RouterContext(), query_embedding)

        try:
            raw = await with_timeout(self._complete(prompt), self.timeout, "meta-classifier")
        except TransientUpstreamError as e:
            return self._unavailable(f"upstream unavailable: {e}")
        except Exception as e:
            return self._unavailable(f"completion failed: {e}")

        try:
            output = parse_llm_json(raw, MetaClassifierOutput)
            intent = Intent.parse(output.intent)
        except (json.JSONDecodeError, pydantic.ValidationError, ValidationError) as e:
            return self._unavailable(f"invalid response: {e}")

        return MetaResult(
            available=True,
            intent=intent,
            confidence=output.confidence,
            reasoning=output.reasoning,
            needs_recency=output.needs_recency,
            topic=output.topic,
        )

    def build_prompt(
        self, query: str, context: RouterContext, query_embedding: list[float] | None
    ) -> str:
        lines = [
            "CONTEXT:",
            f"- has_attached_docs: {context.has_attached_docs}",
            f"- is_selection_present: {context.is_selection_present} "
            f"(length {context.selection_length})",
            f"- conversation_length: {context.conversation_length}",
            f"- recent_tools: {', '.join(context.recent_tools) or 'none'}",
        ]

        if self.matcher is not None and query_embedding is not None:
            neighbors = self.matcher.nearest_examples(query_embedding, self.max_examples)
            if neighbors:
                lines.append("")
                lines.append("SIMILAR LABELLED QUERIES:")
                for neighbor in neighbors:
                    lines.append(f'- "{neighbor.text}" -> {neighbor.intent.value}')

        lines.append("")
        lines.append(f"QUERY: {query}")
        return "\n".join(lines)

    async def _complete(self, prompt: str) -> str:
        retrying = build_async_retrying(self.max_attempts, 0.2, 1.0, "meta-classifier")
        return await retrying(
            lambda: self.llm_service.complete(
                prompt, system=META_SYSTEM_PROMPT, temperature=0.1, max_tokens=300
            )
        )

    def _unavailable(self, reason: str) -> MetaResult:
        self.failures += 1
        logger.warning(f"Meta-classifier unavailable: {reason}")
        return MetaResult.unavailable(reason)
