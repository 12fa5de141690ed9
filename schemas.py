"""Pydantic request bodies and the content import document."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "RegisterBody",
    "LoginBody",
    "EmailCodeBody",
    "VerifyEmailCodeBody",
    "SmsCodeBody",
    "VerifySmsCodeBody",
    "BotCodeBody",
    "VerifyBotCodeBody",
    "ReviewBody",
    "QuizAttemptBody",
    "GoalBody",
    "GoalProgressBody",
    "QuestionImport",
    "TopicImport",
    "SubjectImport",
    "ContentDocument",
]


class _CamelBody(BaseModel):
    """Accepts both the camelCase keys the mobile client sends and snake_case."""

    model_config = ConfigDict(populate_by_name=True)


# ---------- auth ----------
class RegisterBody(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None


class LoginBody(BaseModel):
    username: str = Field(description="Username, email or phone number.")
    password: str


class EmailCodeBody(BaseModel):
    email: str


class VerifyEmailCodeBody(BaseModel):
    code: str


class SmsCodeBody(BaseModel):
    phone: str


class VerifySmsCodeBody(BaseModel):
    code: str
    phone: str


class BotCodeBody(_CamelBody):
    chat_id: str = Field(alias="chatId")


class VerifyBotCodeBody(BaseModel):
    code: str


# ---------- progress ----------
class ReviewBody(_CamelBody):
    topic_id: str = Field(alias="topicId", min_length=1)
    # Range is checked by the scheduler so out-of-range grades get a tagged error.
    quality: int


class QuizAttemptBody(_CamelBody):
    topic_id: str = Field(alias="topicId", min_length=1)
    score: int
    total_questions: int = Field(alias="totalQuestions")
    correct_answers: int = Field(alias="correctAnswers")


class GoalBody(_CamelBody):
    title: str = Field(min_length=1, max_length=200)
    target_value: int = Field(alias="targetValue", gt=0)
    deadline: Optional[str] = None


class GoalProgressBody(BaseModel):
    amount: int = Field(default=1, gt=0)


# ---------- content import ----------
class QuestionImport(_CamelBody):
    id: str
    text: str
    options: List[str] = Field(default_factory=list)
    correct_answer: int = Field(default=0, alias="correctAnswer", ge=0)
    explanation: Optional[str] = None
    is_active: bool = Field(default=True, alias="isActive")


class TopicImport(_CamelBody):
    id: str
    title: str
    description: Optional[str] = None
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    is_active: bool = Field(default=True, alias="isActive")
    questions: List[QuestionImport] = Field(default_factory=list)


class SubjectImport(_CamelBody):
    id: Optional[str] = None
    slug: str
    title: str
    description: Optional[str] = None
    icon: Optional[str] = None
    is_active: bool = Field(default=True, alias="isActive")
    topics: List[TopicImport] = Field(default_factory=list)


class ContentDocument(BaseModel):
    subjects: List[SubjectImport]
