"""Train the learned intent classifier offline.

Usage:
    python scripts/train_intent_classifier.py --output models/intent.joblib
    python scripts/train_intent_classifier.py --feedback feedback.jsonl --output models/intent.joblib

Combines the built-in seed utterances with labelled feedback (one JSON object
per line: {"query": ..., "correct_intent": ..., "context": {...}}), fits the
model, prints the evaluation report and writes the artefact that the service
loads from CLASSIFIER_MODEL_PATH.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from scribe.context.intent_matcher import INTENT_EXEMPLARS
from scribe.context.learned_classifier import LearnedClassifier, TrainingExample
from scribe.context.models import Intent, RouterContext
from scribe.core.config import get_settings
from scribe.core.embeddings import OpenAIEmbeddingClient
from scribe.core.errors import ScribeError


def load_feedback(path: Path) -> list[TrainingExample]:
    """Read labelled feedback lines, skipping malformed ones."""
    examples = []
    for line_number, line in enumerate(path.read_text().splitlines(), start=1):
        if not line.strip():
            continue
        try:
            row = json.loads(line)
            examples.append(
                TrainingExample(
                    text=row["query"],
                    intent=Intent.parse(row["correct_intent"]),
                    context=RouterContext(**row["context"]) if row.get("context") else None,
                )
            )
        except (ValueError, KeyError, TypeError, ScribeError) as e:
            print(f"  Skipping line {line_number}: {e}")
    return examples


def seed_examples() -> list[TrainingExample]:
    return [
        TrainingExample(text=text, intent=intent)
        for intent, texts in INTENT_EXEMPLARS.items()
        for text in texts
    ]


async def train(feedback_path: Path | None, output: Path, include_seeds: bool) -> None:
    examples = seed_examples() if include_seeds else []
    if feedback_path:
        feedback = load_feedback(feedback_path)
        print(f"Loaded {len(feedback)} feedback examples from {feedback_path}")
        examples.extend(feedback)

    print(f"Training on {len(examples)} examples...")
    classifier = LearnedClassifier(OpenAIEmbeddingClient(get_settings()))
    report = await classifier.train(examples)

    print(f"\nAccuracy: {report.accuracy:.3f} (held out: {report.held_out})")
    for intent, scores in report.per_intent.items():
        print(
            f"  {intent:<14} precision={scores['precision']:.2f} "
            f"recall={scores['recall']:.2f} f1={scores['f1']:.2f} support={scores['support']}"
        )

    output.parent.mkdir(parents=True, exist_ok=True)
    classifier.save(output)
    print(f"\nSaved model to {output}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Train the intent classifier")
    parser.add_argument("--feedback", type=Path, help="JSONL file of labelled feedback")
    parser.add_argument("--output", type=Path, required=True, help="Where to write the model")
    parser.add_argument("--no-seeds", action="store_true", help="Train on feedback only")
    args = parser.parse_args()

    if args.feedback and not args.feedback.exists():
        print(f"Feedback file not found: {args.feedback}")
        sys.exit(1)

    try:
        asyncio.run(train(args.feedback, args.output, include_seeds=not args.no_seeds))
    except ScribeError as e:
        print(f"Training failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
