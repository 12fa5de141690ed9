import pytest
from pydantic import ValidationError

from schemas import BotCodeBody, ContentDocument, GoalBody, QuizAttemptBody, ReviewBody


def test_camel_case_and_snake_case_are_both_accepted():
    assert ReviewBody.model_validate({"topicId": "t1", "quality": 4}).topic_id == "t1"
    assert ReviewBody.model_validate({"topic_id": "t1", "quality": 4}).topic_id == "t1"
    assert BotCodeBody.model_validate({"chatId": "42"}).chat_id == "42"

    attempt = QuizAttemptBody.model_validate(
        {"topicId": "t1", "score": 80, "totalQuestions": 10, "correctAnswers": 8}
    )
    assert (attempt.total_questions, attempt.correct_answers) == (10, 8)


def test_review_quality_range_is_left_to_the_scheduler():
    assert ReviewBody(topicId="t1", quality=42).quality == 42
    with pytest.raises(ValidationError):
        ReviewBody(topicId="t1", quality="excellent")


def test_goal_target_must_be_positive():
    with pytest.raises(ValidationError):
        GoalBody(title="Read", targetValue=0)


def test_content_document_defaults():
    document = ContentDocument.model_validate(
        {"subjects": [{"slug": "labour", "title": "Labour law", "topics": [{"id": "l1", "title": "Contracts"}]}]}
    )
    subject = document.subjects[0]
    topic = subject.topics[0]
    assert subject.id is None
    assert subject.is_active is True
    assert topic.difficulty == "medium"
    assert topic.questions == []
