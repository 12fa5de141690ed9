"""Fixed-ladder spaced repetition for topic reviews."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import db
from errors import InvalidInput

logger = logging.getLogger(__name__)

# Days until the next review, indexed by mastery level.
INTERVAL_LADDER = (1, 2, 4, 7, 14, 30)
MIN_LEVEL = 0
MAX_LEVEL = len(INTERVAL_LADDER) - 1
PASSING_QUALITY = 3
MASTERED_LEVEL = db.MASTERED_LEVEL
DEFAULT_DUE_LIMIT = 20
DUE_POLICIES = ("mastery", "date")


def interval_for_level(level: int) -> int:
    """Return the review interval in days, clamping ``level`` into the ladder."""
    index = max(MIN_LEVEL, min(MAX_LEVEL, int(level)))
    return INTERVAL_LADDER[index]


def next_mastery_level(current_level: int, quality: int) -> int:
    if quality >= PASSING_QUALITY:
        return min(MAX_LEVEL, int(current_level) + 1)
    # A failed recall starts the ladder over.
    return MIN_LEVEL


def _validate_quality(quality: Any) -> int:
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise InvalidInput("quality must be an integer between 0 and 5", {"quality": quality})
    if quality < 0 or quality > 5:
        raise InvalidInput("quality must be an integer between 0 and 5", {"quality": quality})
    return quality


@dataclass
class ReviewResult:
    topic_id: str
    mastery_level: int
    next_review: datetime
    last_reviewed: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topicId": self.topic_id,
            "masteryLevel": self.mastery_level,
            "nextReview": self.next_review.isoformat(),
            "lastReviewed": self.last_reviewed.isoformat(),
        }


@dataclass
class ProgressSummary:
    total_attempts: int
    average_score: int
    mastered_topics: int
    total_topics: int
    due_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalAttempts": self.total_attempts,
            "averageScore": self.average_score,
            "masteredTopics": self.mastered_topics,
            "totalTopics": self.total_topics,
            "dueCount": self.due_count,
        }


class SpacedRepetitionScheduler:
    """Grades topic reviews and selects what a learner should revisit.

    ``due_policy`` decides which records count as due:

    * ``"mastery"``: every record below the mastered level, whatever its date.
    * ``"date"``: records never reviewed or whose ``next_review`` has passed.

    ``store`` defaults to the :mod:`db` module; anything exposing
    ``apply_progress_review``, ``list_due_progress``, ``count_due_progress``
    and ``progress_totals`` works.
    """

    def __init__(
        self,
        store: Any = None,
        *,
        due_policy: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        policy = (due_policy or os.getenv("DUE_POLICY") or "mastery").strip().lower()
        if policy not in DUE_POLICIES:
            raise ValueError(f"Unknown due policy: {policy}")
        self.store = store or db
        self.due_policy = policy
        self.clock = clock or db.utcnow
        self._lock = threading.Lock()

    def grade_review(self, user_id: str, topic_id: str, quality: int) -> ReviewResult:
        quality = _validate_quality(quality)
        now = self.clock()

        def _transition(current_level: int):
            new_level = next_mastery_level(current_level, quality)
            offset = interval_for_level(new_level)
            return new_level, now, now + timedelta(days=offset)

        with self._lock:
            record = self.store.apply_progress_review(user_id, topic_id, _transition)

        logger.debug(
            "Graded review user=%s topic=%s quality=%s level=%s",
            user_id, topic_id, quality, record["mastery_level"],
        )
        return ReviewResult(
            topic_id=topic_id,
            mastery_level=int(record["mastery_level"]),
            next_review=record["next_review"],
            last_reviewed=record["last_reviewed"],
        )

    def list_due(self, user_id: str, limit: int = DEFAULT_DUE_LIMIT) -> List[Dict[str, Any]]:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidInput("limit must be a positive integer", {"limit": limit})
        return self.store.list_due_progress(
            user_id, limit=limit, policy=self.due_policy, now=self.clock()
        )

    def progress_summary(self, user_id: str) -> ProgressSummary:
        totals = self.store.progress_totals(user_id)
        due_count = self.store.count_due_progress(
            user_id, policy=self.due_policy, now=self.clock()
        )
        return ProgressSummary(
            total_attempts=totals["total_attempts"],
            average_score=totals["average_score"],
            mastered_topics=totals["mastered_topics"],
            total_topics=totals["total_topics"],
            due_count=due_count,
        )
