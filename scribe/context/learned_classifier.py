"""Learned intent classifier.

Multinomial logistic regression over the query embedding concatenated with a few
request-context features. Trained offline (see scripts/train_intent_classifier.py),
persisted with joblib and loaded at startup. Until a model is loaded it reports
zero confidence so the router's other signals decide.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import joblib
import numpy as np
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import accuracy_score, precision_recall_fscore_support
from sklearn.model_selection import train_test_split
from sklearn.pipeline import Pipeline, make_pipeline
from sklearn.preprocessing import StandardScaler

from scribe.context.models import ClassifierResult, FeedbackRecord, Intent, RouterContext
from scribe.core.embeddings import EmbeddingClient
from scribe.core.errors import ConfigurationError, ValidationError
from scribe.core.logging import get_logger

logger = get_logger(__name__)

CONTEXT_FEATURES = (
    "has_attached_docs",
    "doc_count",
    "is_selection_present",
    "selection_length_log",
    "conversation_length_log",
    "recent_web_search",
    "recent_document_search",
    "recent_edit",
)

MAX_PENDING_FEEDBACK = 5000


def context_features(context: RouterContext | None) -> np.ndarray:
    """Numeric features derived from the request context, in CONTEXT_FEATURES order."""
    if context is None:
        return np.zeros(len(CONTEXT_FEATURES))

    tools = {tool.lower() for tool in context.recent_tools}
    return np.array(
        [
            float(context.has_attached_docs),
            float(len(context.doc_ids)),
            float(context.is_selection_present),
            math.log1p(context.selection_length),
            math.log1p(context.conversation_length),
            float(bool(tools & {"web_search", "search_web"})),
            float(bool(tools & {"rag_query", "search_documents", "document_search"})),
            float(bool(tools & {"edit_request", "edit", "rewrite"})),
        ]
    )


@dataclass
class TrainingExample:
    text: str
    intent: Intent
    context: RouterContext | None = None


@dataclass
class ClassifierReport:
    """Evaluation of a training run."""

    accuracy: float
    per_intent: dict[str, dict[str, float]]
    train_size: int
    eval_size: int
    held_out: bool
    trained_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict[str, Any]:
        return {
            "accuracy": round(self.accuracy, 4),
            "per_intent": self.per_intent,
            "train_size": self.train_size,
            "eval_size": self.eval_size,
            "held_out": self.held_out,
            "trained_at": self.trained_at.isoformat(),
        }


class LearnedClassifier:
    """Intent classifier wrapping a scikit-learn pipeline."""

    def __init__(self, embedding_client: EmbeddingClient | None = None):
        self.embedding_client = embedding_client
        self._model: Pipeline | None = None
        self._feature_dim: int | None = None
        self._report: ClassifierReport | None = None
        self._pending_feedback: list[FeedbackRecord] = []

    def is_trained(self) -> bool:
        return self._model is not None

    async def classify(
        self,
        query: str,
        context: RouterContext | None = None,
        query_embedding: list[float] | None = None,
    ) -> ClassifierResult:
        """
        Predict an intent distribution for a query.

        Returns:
            ClassifierResult; confidence 0.0 when untrained or when the embedding
            does not fit the loaded model
        """
        if self._model is None:
            return ClassifierResult(intent=Intent.OTHER, confidence=0.0)

        if query_embedding is None:
            if self.embedding_client is None:
                return ClassifierResult(intent=Intent.OTHER, confidence=0.0)
            query_embedding = await self.embedding_client.embed(query)

        features = self._features(query_embedding, context).reshape(1, -1)
        if features.shape[1] != self._feature_dim:
            logger.warning(
                f"Classifier expects {self._feature_dim} features, got {features.shape[1]}"
            )
            return ClassifierResult(intent=Intent.OTHER, confidence=0.0)

        probabilities = self._model.predict_proba(features)[0]
        labels = [str(label) for label in self._model.classes_]
        best = int(np.argmax(probabilities))

        return ClassifierResult(
            intent=Intent(labels[best]),
            confidence=float(probabilities[best]),
            probabilities={label: float(p) for label, p in zip(labels, probabilities)},
        )

    async def train(
        self, examples: list[TrainingExample], holdout: float = 0.2, seed: int = 13
    ) -> ClassifierReport:
        """
        Fit the model on labelled examples.

        When every intent has at least two examples a stratified holdout is used
        for the report before refitting on all data.

        Raises:
            ValidationError: Fewer than two intents, or no embedding client
        """
        if self.embedding_client is None:
            raise ValidationError("Training requires an embedding client")

        labels = [example.intent.value for example in examples]
        counts = {label: labels.count(label) for label in set(labels)}
        if len(counts) < 2:
            raise ValidationError("Training needs examples for at least two intents")

        vectors = await self.embedding_client.embed_many([example.text for example in examples])
        matrix = np.vstack(
            [self._features(vector, example.context) for vector, example in zip(vectors, examples)]
        )
        target = np.array(labels)

        eval_size = math.ceil(holdout * len(examples))
        held_out = (
            min(counts.values()) >= 2
            and eval_size >= len(counts)
            and len(examples) - eval_size >= len(counts)
        )
        if held_out:
            x_train, x_eval, y_train, y_eval = train_test_split(
                matrix, target, test_size=holdout, stratify=target, random_state=seed
            )
        else:
            x_train, x_eval, y_train, y_eval = matrix, matrix, target, target

        model = self._new_model()
        model.fit(x_train, y_train)
        predicted = model.predict(x_eval)

        intent_labels = sorted(counts)
        precision, recall, f1, support = precision_recall_fscore_support(
            y_eval, predicted, labels=intent_labels, zero_division=0
        )
        report = ClassifierReport(
            accuracy=float(accuracy_score(y_eval, predicted)),
            per_intent={
                label: {
                    "precision": round(float(p), 4),
                    "recall": round(float(r), 4),
                    "f1": round(float(f), 4),
                    "support": int(s),
                }
                for label, p, r, f, s in zip(intent_labels, precision, recall, f1, support)
            },
            train_size=len(y_train),
            eval_size=len(y_eval),
            held_out=held_out,
        )

        if held_out:
            model = self._new_model()
            model.fit(matrix, target)

        self._model = model
        self._feature_dim = matrix.shape[1]
        self._report = report
        logger.info(
            f"Trained intent classifier on {len(examples)} examples "
            f"(accuracy={report.accuracy:.3f}, held_out={held_out})"
        )
        return report

    def save(self, path: str | Path) -> None:
        if self._model is None:
            raise ConfigurationError("Cannot save an untrained classifier")
        joblib.dump(
            {"model": self._model, "feature_dim": self._feature_dim, "report": self._report},
            Path(path),
        )

    def load(self, path: str | Path) -> None:
        """
        Load a model artefact written by save().

        Raises:
            ConfigurationError: If the file is missing or not a classifier artefact
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Classifier model not found at {path}")

        artefact = joblib.load(path)
        if not isinstance(artefact, dict) or "model" not in artefact:
            raise ConfigurationError(f"{path} is not an intent classifier artefact")

        self._model = artefact["model"]
        self._feature_dim = artefact["feature_dim"]
        self._report = artefact.get("report")
        logger.info(f"Loaded intent classifier from {path}")

    def record_feedback(self, record: FeedbackRecord) -> None:
        """Keep misclassifications for the next offline training run."""
        if not record.is_correction:
            return
        self._pending_feedback.append(record)
        if len(self._pending_feedback) > MAX_PENDING_FEEDBACK:
            self._pending_feedback.pop(0)

    def pending_feedback(self) -> list[FeedbackRecord]:
        return list(self._pending_feedback)

    def get_status(self) -> dict[str, Any]:
        return {
            "trained": self.is_trained(),
            "feature_dim": self._feature_dim,
            "classes": [str(c) for c in self._model.classes_] if self._model is not None else [],
            "report": self._report.as_dict() if self._report else None,
            "pending_feedback": len(self._pending_feedback),
        }

    @staticmethod
    def _new_model() -> Pipeline:
        return make_pipeline(
            StandardScaler(),
            LogisticRegression(max_iter=1000, class_weight="balanced"),
        )

    @staticmethod
    def _features(embedding: list[float], context: RouterContext | None) -> np.ndarray:
        return np.concatenate([np.asarray(embedding, dtype=float), context_features(context)])
