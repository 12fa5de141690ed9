"""Import subjects, topics and questions from a JSON document into the database."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db  # noqa: E402
from schemas import ContentDocument  # noqa: E402

logger = logging.getLogger("legal_trainer.import")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--file",
        type=str,
        default="content.json",
        help="Path to the content JSON file (default: content.json)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the document and print counts without writing",
    )
    return parser


def load_document(path: Path) -> ContentDocument:
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, list):
        payload = {"subjects": payload}
    return ContentDocument.model_validate(payload)


def count_entities(document: ContentDocument) -> Dict[str, int]:
    topics = [topic for subject in document.subjects for topic in subject.topics]
    return {
        "subjects": len(document.subjects),
        "topics": len(topics),
        "questions": sum(len(topic.questions) for topic in topics),
    }


def import_document(document: ContentDocument) -> Dict[str, int]:
    for subject in document.subjects:
        subject_id = subject.id or subject.slug
        db.upsert_subject(
            subject_id,
            subject.slug,
            subject.title,
            description=subject.description,
            icon=subject.icon,
            is_active=subject.is_active,
        )
        for topic in subject.topics:
            db.upsert_topic(
                topic.id,
                subject_id,
                topic.title,
                description=topic.description,
                difficulty=topic.difficulty,
                is_active=topic.is_active,
            )
            for question in topic.questions:
                if question.options and question.correct_answer >= len(question.options):
                    logger.warning(
                        "Question %s points at option %s of %s; skipping",
                        question.id, question.correct_answer, len(question.options),
                    )
                    continue
                db.upsert_question(
                    question.id,
                    topic.id,
                    question.text,
                    question.options,
                    question.correct_answer,
                    explanation=question.explanation,
                    is_active=question.is_active,
                )
    db.refresh_question_counts()
    return count_entities(document)


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
    args = _build_parser().parse_args(argv)
    path = Path(args.file)
    if not path.exists():
        logger.error("Content file not found: %s", path)
        return 1

    document = load_document(path)
    if args.dry_run:
        print(json.dumps(count_entities(document), ensure_ascii=False))
        return 0

    db.init()
    counts = import_document(document)
    print(json.dumps(counts, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
