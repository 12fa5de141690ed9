# app.py — Legal Trainer API v1.0.0
# - Subjects/topics/questions, quiz attempts, goals
# - Fixed-ladder spaced repetition per (user, topic)
# - Password login plus one-time codes over email, SMS and Telegram bot

import hashlib
import hmac
import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import db
from delivery import DeliveryChannels
from engines.one_time_codes import ChannelIdentity, CodeRegistry, OneTimeCodeAuthenticator
from engines.spaced_repetition import DEFAULT_DUE_LIMIT, SpacedRepetitionScheduler
from errors import InvalidInput, StorageError, TrainerError
from schemas import (
    BotCodeBody,
    EmailCodeBody,
    GoalBody,
    GoalProgressBody,
    LoginBody,
    QuizAttemptBody,
    RegisterBody,
    ReviewBody,
    SmsCodeBody,
    VerifyBotCodeBody,
    VerifyEmailCodeBody,
    VerifySmsCodeBody,
)
from sessions import AuthContext, SessionRegistry, extract_token

logger = logging.getLogger(__name__)

API_TITLE = "Legal Trainer API"
API_VERSION = "1.0.0"

_PBKDF2_ITERATIONS = 150_000
_PBKDF2_DIGEST = "sha256"

_DEFAULT_CORS_ORIGINS = (
    "http://localhost:8081",
    "http://localhost:3000",
    "http://127.0.0.1:8081",
    "http://127.0.0.1:3000",
)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        # Built after validation so they read the checked settings.
        app.state.sessions = SessionRegistry()
        app.state.scheduler = SpacedRepetitionScheduler()
        app.state.authenticator = OneTimeCodeAuthenticator(CodeRegistry(), DeliveryChannels())

        db.init()
        logger.info(
            "%s %s ready (due policy: %s)",
            API_TITLE, API_VERSION, app.state.scheduler.due_policy,
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS")
    if not raw:
        return list(_DEFAULT_CORS_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(title=API_TITLE, version=API_VERSION, lifespan=_lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Errors ----------
@app.exception_handler(TrainerError)
async def _trainer_error_handler(request: Request, exc: TrainerError):
    if isinstance(exc, StorageError):
        logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def _unexpected_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Something went wrong!"})


# ---------- Dependencies ----------
def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def get_scheduler(request: Request) -> SpacedRepetitionScheduler:
    return request.app.state.scheduler


def get_authenticator(request: Request) -> OneTimeCodeAuthenticator:
    return request.app.state.authenticator


def _request_token(request: Request) -> Optional[str]:
    return (
        extract_token(request.headers.get("authorization"))
        or request.headers.get("x-token")
        or request.query_params.get("token")
    )


def optional_user(request: Request) -> Optional[AuthContext]:
    return request.app.state.sessions.resolve(_request_token(request))


def require_user(ctx: Optional[AuthContext] = Depends(optional_user)) -> AuthContext:
    if ctx is None:
        raise HTTPException(status_code=401, detail="missing or invalid token")
    return ctx


# ---------- Helpers ----------
def _generate_salt() -> str:
    return secrets.token_bytes(16).hex()


def _pbkdf2_hash(password: str, salt_hex: str) -> str:
    try:
        salt_bytes = bytes.fromhex(salt_hex)
    except ValueError:
        raise ValueError("Invalid salt for password hashing") from None
    return hashlib.pbkdf2_hmac(
        _PBKDF2_DIGEST,
        password.encode("utf-8"),
        salt_bytes,
        _PBKDF2_ITERATIONS,
    ).hex()


def _hash_password(password: str) -> tuple[str, str]:
    salt_hex = _generate_salt()
    return _pbkdf2_hash(password, salt_hex), salt_hex


def _verify_password(password: str, stored_hash: Optional[str], stored_salt: Optional[str]) -> bool:
    if not stored_hash or not stored_salt:
        return False
    try:
        derived = _pbkdf2_hash(password, stored_salt)
    except ValueError:
        return False
    return hmac.compare_digest(stored_hash, derived)


def _clean(value: Optional[str]) -> Optional[str]:
    text = (value or "").strip()
    return text or None


def _user_payload(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "username": user.get("username"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "botChatId": user.get("bot_chat_id"),
        "name": user.get("name"),
    }


def _topic_payload(topic: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": topic["id"],
        "subjectId": topic.get("subject_id"),
        "title": topic["title"],
        "description": topic.get("description"),
        "difficulty": topic.get("difficulty"),
        "questionsCount": topic.get("questions_count", 0),
    }


def _subject_payload(subject: Dict[str, Any], topics: list[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "id": subject["id"],
        "slug": subject["slug"],
        "title": subject["title"],
        "description": subject.get("description"),
        "icon": subject.get("icon"),
        "topics": [_topic_payload(topic) for topic in topics],
        "topicsCount": len(topics),
    }


def _question_payload(question: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": question["id"],
        "topicId": question["topic_id"],
        "text": question["text"],
        "options": question.get("options") or [],
        "correctAnswer": question.get("correct_answer"),
        "explanation": question.get("explanation"),
    }


def _attempt_payload(attempt: Dict[str, Any]) -> Dict[str, Any]:
    payload = {
        "id": attempt["id"],
        "userId": attempt.get("user_id"),
        "topicId": attempt["topic_id"],
        "score": attempt["score"],
        "totalQuestions": attempt["total_questions"],
        "correctAnswers": attempt["correct_answers"],
        "createdAt": attempt["created_at"],
    }
    if "topic_title" in attempt:
        payload["topicTitle"] = attempt.get("topic_title")
    return payload


def _progress_payload(record: Dict[str, Any]) -> Dict[str, Any]:
    def _iso(value):
        return value.isoformat() if value is not None else None

    return {
        "topicId": record["topic_id"],
        "masteryLevel": record["mastery_level"],
        "lastReviewed": _iso(record.get("last_reviewed")),
        "nextReview": _iso(record.get("next_review")),
        "updatedAt": _iso(record.get("updated_at")),
    }


def _goal_payload(goal: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": goal["id"],
        "title": goal["title"],
        "targetValue": goal["target_value"],
        "currentValue": goal["current_value"],
        "deadline": goal.get("deadline"),
        "completed": goal["completed"],
        "createdAt": goal["created_at"],
    }


def _login_response(user: Dict[str, Any], sessions: SessionRegistry) -> Dict[str, Any]:
    return {"success": True, "user": _user_payload(user), "token": sessions.issue(user["id"])}


# ---------- Service ----------
@app.get("/")
def root():
    return {"message": API_TITLE, "version": API_VERSION, "status": "running"}


@app.get("/api/health")
def health():
    try:
        db.ping()
    except StorageError:
        return JSONResponse(status_code=500, content={"status": "unhealthy", "database": "disconnected"})
    return {"status": "healthy", "database": "connected"}


# ---------- Auth ----------
@app.post("/api/auth/register")
def auth_register(body: RegisterBody, sessions: SessionRegistry = Depends(get_sessions)):
    username = body.username.strip()
    email = _clean(body.email)
    email = email.lower() if email else None
    phone = _clean(body.phone)
    if not username:
        raise InvalidInput("username and password are required", {"field": "username"})
    if db.find_conflicting_user(username=username, email=email, phone=phone):
        raise InvalidInput("User with these details already exists")

    pw_hash, pw_salt = _hash_password(body.password)
    user = db.create_user(
        username=username,
        email=email,
        phone=phone,
        name=username,
        pw_hash=pw_hash,
        pw_salt=pw_salt,
    )
    return {"user": _user_payload(user), "token": sessions.issue(user["id"])}


@app.post("/api/auth/login")
def auth_login(body: LoginBody, sessions: SessionRegistry = Depends(get_sessions)):
    identifier = body.username.strip()
    user = db.find_user_for_login(identifier) if identifier else None
    if user is None and identifier and "@" in identifier:
        user = db.find_user_for_login(identifier.lower())
    if not user or not _verify_password(body.password, user.get("pw_hash"), user.get("pw_salt")):
        raise HTTPException(status_code=401, detail="invalid credentials")
    return {"user": _user_payload(user), "token": sessions.issue(user["id"])}


@app.post("/api/auth/logout")
def auth_logout(
    ctx: AuthContext = Depends(require_user),
    sessions: SessionRegistry = Depends(get_sessions),
):
    sessions.revoke(ctx.token)
    return {"success": True}


@app.get("/api/auth/me")
def auth_me(ctx: AuthContext = Depends(require_user)):
    user = db.get_user(ctx.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": _user_payload(user)}


@app.post("/api/auth/send-email-code")
def send_email_code(
    body: EmailCodeBody,
    authenticator: OneTimeCodeAuthenticator = Depends(get_authenticator),
):
    authenticator.issue_code(ChannelIdentity.email(body.email))
    return {"success": True, "message": "Code sent to email"}


@app.post("/api/auth/verify-email-code")
def verify_email_code(
    body: VerifyEmailCodeBody,
    authenticator: OneTimeCodeAuthenticator = Depends(get_authenticator),
    sessions: SessionRegistry = Depends(get_sessions),
):
    user = authenticator.verify_code(body.code, kind="email")
    return _login_response(user, sessions)


@app.post("/api/auth/send-sms-code")
def send_sms_code(
    body: SmsCodeBody,
    authenticator: OneTimeCodeAuthenticator = Depends(get_authenticator),
):
    authenticator.issue_code(ChannelIdentity.phone(body.phone))
    return {"success": True, "message": "Code sent by SMS"}


@app.post("/api/auth/verify-sms-code")
def verify_sms_code(
    body: VerifySmsCodeBody,
    authenticator: OneTimeCodeAuthenticator = Depends(get_authenticator),
    sessions: SessionRegistry = Depends(get_sessions),
):
    user = authenticator.verify_code(body.code, ChannelIdentity.phone(body.phone))
    return _login_response(user, sessions)


@app.post("/api/auth/send-bot-code")
def send_bot_code(
    body: BotCodeBody,
    authenticator: OneTimeCodeAuthenticator = Depends(get_authenticator),
):
    authenticator.issue_code(ChannelIdentity.bot(body.chat_id))
    return {"success": True, "message": "Code sent to the bot chat"}


@app.post("/api/auth/verify-bot-code")
def verify_bot_code(
    body: VerifyBotCodeBody,
    authenticator: OneTimeCodeAuthenticator = Depends(get_authenticator),
    sessions: SessionRegistry = Depends(get_sessions),
):
    user = authenticator.verify_code(body.code, kind="bot")
    return _login_response(user, sessions)


# ---------- Content ----------
@app.get("/api/subjects")
def list_subjects():
    return [
        _subject_payload(subject, db.list_active_topics(subject["id"]))
        for subject in db.list_subjects()
    ]


@app.get("/api/subjects/{slug}")
def get_subject(slug: str):
    subject = db.get_subject_by_slug(slug)
    if subject is None or not subject["is_active"]:
        raise HTTPException(status_code=404, detail="Subject not found")
    return _subject_payload(subject, db.list_active_topics(subject["id"]))


@app.get("/api/topics/{topic_id}/questions")
def topic_questions(topic_id: str):
    return [_question_payload(question) for question in db.list_topic_questions(topic_id)]


@app.get("/api/search")
def search(
    q: Optional[str] = None,
    type: Literal["all", "subjects", "topics", "questions"] = "all",
):
    query = (q or "").strip()
    if not query:
        raise InvalidInput("Query parameter is required", {"field": "q"})

    results: list[Dict[str, Any]] = []
    if type in ("all", "subjects"):
        results.extend(
            {
                "type": "subject",
                "id": row["id"],
                "title": row["title"],
                "description": row["description"],
                "slug": row["slug"],
                "icon": row["icon"],
                "topicsCount": row["topics_count"],
            }
            for row in db.search_subjects(query)
        )
    if type in ("all", "topics"):
        results.extend(
            {
                "type": "topic",
                "id": row["id"],
                "title": row["title"],
                "description": row["description"],
                "difficulty": row["difficulty"],
                "questionsCount": row["questions_count"],
                "subjectTitle": row["subject_title"],
                "subjectSlug": row["subject_slug"],
                "subjectIcon": row["subject_icon"],
            }
            for row in db.search_topics(query)
        )
    if type in ("all", "questions"):
        results.extend(
            {
                "type": "question",
                "id": row["id"],
                "text": row["text"],
                "topicTitle": row["topic_title"],
                "subjectTitle": row["subject_title"],
                "subjectSlug": row["subject_slug"],
            }
            for row in db.search_questions(query)
        )
    return {"query": query, "results": results, "total": len(results)}


# ---------- Quiz attempts ----------
@app.post("/api/quiz/attempt")
def quiz_attempt(body: QuizAttemptBody, ctx: Optional[AuthContext] = Depends(optional_user)):
    attempt = db.record_quiz_attempt(
        ctx.user_id if ctx else None,
        body.topic_id,
        body.score,
        body.total_questions,
        body.correct_answers,
    )
    return _attempt_payload(attempt)


@app.get("/api/quiz/attempts")
def quiz_attempts(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100, alias="pageSize"),
    ctx: AuthContext = Depends(require_user),
):
    rows, total = db.list_quiz_attempts(ctx.user_id, page=page, page_size=page_size)
    return {
        "attempts": [_attempt_payload(row) for row in rows],
        "total": total,
        "page": page,
        "pageSize": page_size,
        "pages": (total + page_size - 1) // page_size,
    }


# ---------- Spaced repetition ----------
@app.post("/api/progress/review")
def progress_review(
    body: ReviewBody,
    ctx: AuthContext = Depends(require_user),
    scheduler: SpacedRepetitionScheduler = Depends(get_scheduler),
):
    result = scheduler.grade_review(ctx.user_id, body.topic_id, body.quality)
    return result.to_dict()


@app.get("/api/progress/due")
def progress_due(
    limit: int = Query(default=DEFAULT_DUE_LIMIT, ge=1, le=200),
    ctx: AuthContext = Depends(require_user),
    scheduler: SpacedRepetitionScheduler = Depends(get_scheduler),
):
    records = scheduler.list_due(ctx.user_id, limit)
    return {"policy": scheduler.due_policy, "items": [_progress_payload(r) for r in records]}


@app.get("/api/progress/summary")
def progress_summary(
    ctx: AuthContext = Depends(require_user),
    scheduler: SpacedRepetitionScheduler = Depends(get_scheduler),
):
    return scheduler.progress_summary(ctx.user_id).to_dict()


# ---------- Goals ----------
@app.get("/api/goals")
def list_goals(ctx: AuthContext = Depends(require_user)):
    return [_goal_payload(goal) for goal in db.list_goals(ctx.user_id)]


@app.post("/api/goals")
def create_goal(body: GoalBody, ctx: AuthContext = Depends(require_user)):
    goal = db.create_goal(ctx.user_id, body.title.strip(), body.target_value, body.deadline)
    return _goal_payload(goal)


@app.post("/api/goals/{goal_id}/progress")
def goal_progress(goal_id: int, body: GoalProgressBody, ctx: AuthContext = Depends(require_user)):
    goal = db.add_goal_progress(ctx.user_id, goal_id, body.amount)
    if goal is None:
        raise HTTPException(status_code=404, detail="Goal not found")
    return _goal_payload(goal)
