import json
import logging
import math
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Sequence, Tuple
from uuid import uuid4

from db_pool import SQLiteConnectionPool
from errors import InvalidInput, StorageError

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

MASTERED_LEVEL = 3

# Column holding each kind of channel identity on the users table.
IDENTITY_COLUMNS = {
    "username": "username",
    "email": "email",
    "phone": "phone",
    "bot": "bot_chat_id",
}

_DUE_FILTERS = {
    "mastery": ("mastery_level < ?", lambda now: (MASTERED_LEVEL,)),
    "date": ("(next_review IS NULL OR next_review <= ?)", lambda now: (_format_ts(now),)),
}


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    try:
        with _pool.transaction() as con:
            yield con
    except sqlite3.Error as exc:
        logger.error("Transaction failed: %s", exc, exc_info=True)
        raise StorageError(str(exc)) from exc


def _exec(sql: str, params: Iterable = ()):
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, params)
            con.commit()
            return cur
    except sqlite3.Error as exc:
        logger.error("Write failed: %s", exc, exc_info=True)
        raise StorageError(str(exc)) from exc


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, params)
            return cur.fetchall()
    except sqlite3.Error as exc:
        logger.error("Query failed: %s", exc, exc_info=True)
        raise StorageError(str(exc)) from exc


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        parsed = datetime.strptime(str(value), "%Y-%m-%d %H:%M:%S")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              id           TEXT PRIMARY KEY,
              username     TEXT UNIQUE,
              email        TEXT UNIQUE,
              phone        TEXT UNIQUE,
              bot_chat_id  TEXT UNIQUE,
              name         TEXT,
              pw_hash      TEXT,
              pw_salt      TEXT,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS subjects (
              id           TEXT PRIMARY KEY,
              slug         TEXT NOT NULL UNIQUE,
              title        TEXT NOT NULL,
              description  TEXT,
              icon         TEXT,
              is_active    INTEGER NOT NULL DEFAULT 1,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS topics (
              id               TEXT PRIMARY KEY,
              subject_id       TEXT NOT NULL,
              title            TEXT NOT NULL,
              description      TEXT,
              difficulty       TEXT NOT NULL DEFAULT 'medium'
                               CHECK (difficulty IN ('easy', 'medium', 'hard')),
              questions_count  INTEGER NOT NULL DEFAULT 0,
              is_active        INTEGER NOT NULL DEFAULT 1,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(subject_id) REFERENCES subjects(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_topics_subject ON topics(subject_id);

            CREATE TABLE IF NOT EXISTS questions (
              id              TEXT PRIMARY KEY,
              topic_id        TEXT NOT NULL,
              text            TEXT NOT NULL,
              options         TEXT NOT NULL DEFAULT '[]',
              correct_answer  INTEGER NOT NULL DEFAULT 0,
              explanation     TEXT,
              is_active       INTEGER NOT NULL DEFAULT 1,
              created_at      TEXT NOT NULL,
              FOREIGN KEY(topic_id) REFERENCES topics(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_questions_topic ON questions(topic_id, created_at);

            CREATE TABLE IF NOT EXISTS quiz_attempts (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id          TEXT,
              topic_id         TEXT NOT NULL,
              score            INTEGER NOT NULL CHECK (score BETWEEN 0 AND 100),
              total_questions  INTEGER NOT NULL,
              correct_answers  INTEGER NOT NULL,
              created_at       TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_quiz_attempts_user ON quiz_attempts(user_id, created_at);

            CREATE TABLE IF NOT EXISTS user_progress (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id        TEXT NOT NULL,
              topic_id       TEXT NOT NULL,
              mastery_level  INTEGER NOT NULL DEFAULT 0 CHECK (mastery_level BETWEEN 0 AND 5),
              last_reviewed  TEXT,
              next_review    TEXT,
              updated_at     TEXT NOT NULL,
              UNIQUE(user_id, topic_id)
            );
            CREATE INDEX IF NOT EXISTS idx_user_progress_due
              ON user_progress(user_id, mastery_level, next_review);

            CREATE TABLE IF NOT EXISTS goals (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id        TEXT NOT NULL,
              title          TEXT NOT NULL,
              target_value   INTEGER NOT NULL,
              current_value  INTEGER NOT NULL DEFAULT 0,
              deadline       TEXT,
              completed      INTEGER NOT NULL DEFAULT 0,
              created_at     TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_goals_user ON goals(user_id);
            """
        )
        con.commit()


def ping() -> bool:
    rows = _query("SELECT 1 AS ok")
    return bool(rows and rows[0]["ok"] == 1)


# -------------- users / auth --------------
_USER_COLUMNS = "id, username, email, phone, bot_chat_id, name, pw_hash, pw_salt, created_at"


def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,))
    return _row_to_dict(rows[0]) if rows else None


def find_user_by_identity(kind: str, value: str) -> Optional[Dict[str, Any]]:
    column = IDENTITY_COLUMNS.get(kind)
    if column is None:
        raise InvalidInput(f"Unknown identity kind: {kind}", {"kind": kind})
    rows = _query(f"SELECT {_USER_COLUMNS} FROM users WHERE {column} = ?", (value,))
    return _row_to_dict(rows[0]) if rows else None


def find_user_for_login(identifier: str) -> Optional[Dict[str, Any]]:
    """Match ``identifier`` against username, email or phone."""
    rows = _query(
        f"""
        SELECT {_USER_COLUMNS} FROM users
        WHERE username = ? OR email = ? OR phone = ?
        ORDER BY CASE WHEN username = ? THEN 0 ELSE 1 END
        LIMIT 1
        """,
        (identifier, identifier, identifier, identifier),
    )
    return _row_to_dict(rows[0]) if rows else None


def find_conflicting_user(
    username: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    clauses = []
    params: list[Any] = []
    for column, value in (("username", username), ("email", email), ("phone", phone)):
        if value:
            clauses.append(f"{column} = ?")
            params.append(value)
    if not clauses:
        return None
    rows = _query(
        f"SELECT {_USER_COLUMNS} FROM users WHERE {' OR '.join(clauses)} LIMIT 1",
        params,
    )
    return _row_to_dict(rows[0]) if rows else None


def create_user(
    *,
    name: Optional[str] = None,
    username: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    bot_chat_id: Optional[str] = None,
    pw_hash: Optional[str] = None,
    pw_salt: Optional[str] = None,
) -> Dict[str, Any]:
    """Insert a user and return it; duplicate identities raise ``InvalidInput``."""
    user_id = uuid4().hex
    try:
        with _conn() as con:
            con.execute(
                """
                INSERT INTO users(id, username, email, phone, bot_chat_id, name, pw_hash, pw_salt)
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (user_id, username, email, phone, bot_chat_id, name, pw_hash, pw_salt),
            )
            con.commit()
    except sqlite3.IntegrityError as exc:
        raise InvalidInput("User with these details already exists") from exc
    except sqlite3.Error as exc:
        logger.error("Failed to create user: %s", exc, exc_info=True)
        raise StorageError(str(exc)) from exc
    return get_user(user_id)


# -------------- content --------------
def upsert_subject(
    subject_id: str,
    slug: str,
    title: str,
    description: Optional[str] = None,
    icon: Optional[str] = None,
    is_active: bool = True,
):
    _exec(
        """
        INSERT INTO subjects(id, slug, title, description, icon, is_active)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          slug=excluded.slug,
          title=excluded.title,
          description=excluded.description,
          icon=COALESCE(excluded.icon, subjects.icon),
          is_active=excluded.is_active
        """,
        (subject_id, slug, title, description, icon, 1 if is_active else 0),
    )


def upsert_topic(
    topic_id: str,
    subject_id: str,
    title: str,
    description: Optional[str] = None,
    difficulty: str = "medium",
    is_active: bool = True,
):
    _exec(
        """
        INSERT INTO topics(id, subject_id, title, description, difficulty, is_active)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          subject_id=excluded.subject_id,
          title=excluded.title,
          description=excluded.description,
          difficulty=excluded.difficulty,
          is_active=excluded.is_active
        """,
        (topic_id, subject_id, title, description, difficulty, 1 if is_active else 0),
    )


def upsert_question(
    question_id: str,
    topic_id: str,
    text: str,
    options: Sequence[str],
    correct_answer: int,
    explanation: Optional[str] = None,
    is_active: bool = True,
    created_at: Optional[datetime] = None,
):
    _exec(
        """
        INSERT INTO questions(id, topic_id, text, options, correct_answer, explanation, is_active, created_at)
        VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          topic_id=excluded.topic_id,
          text=excluded.text,
          options=excluded.options,
          correct_answer=excluded.correct_answer,
          explanation=excluded.explanation,
          is_active=excluded.is_active
        """,
        (
            question_id,
            topic_id,
            text,
            json.dumps(list(options), ensure_ascii=False),
            int(correct_answer),
            explanation,
            1 if is_active else 0,
            _format_ts(created_at or utcnow()),
        ),
    )


def refresh_question_counts() -> None:
    _exec(
        """
        UPDATE topics SET questions_count = (
          SELECT COUNT(*) FROM questions
          WHERE questions.topic_id = topics.id AND questions.is_active = 1
        )
        """
    )


def _subject_dict(row: sqlite3.Row) -> Dict[str, Any]:
    payload = dict(row)
    payload["is_active"] = bool(payload.get("is_active"))
    return payload


def _topic_dict(row: sqlite3.Row) -> Dict[str, Any]:
    payload = dict(row)
    payload["is_active"] = bool(payload.get("is_active"))
    return payload


def _question_dict(row: sqlite3.Row) -> Dict[str, Any]:
    payload = dict(row)
    try:
        payload["options"] = json.loads(payload.get("options") or "[]")
    except json.JSONDecodeError:
        payload["options"] = []
    payload["is_active"] = bool(payload.get("is_active"))
    return payload


def list_active_topics(subject_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, subject_id, title, description, difficulty, questions_count, is_active
        FROM topics
        WHERE subject_id = ? AND is_active = 1
        ORDER BY title ASC
        """,
        (subject_id,),
    )
    return [_topic_dict(row) for row in rows]


def list_subjects() -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, slug, title, description, icon, is_active
        FROM subjects
        WHERE is_active = 1
        ORDER BY title ASC
        """
    )
    return [_subject_dict(row) for row in rows]


def get_subject_by_slug(slug: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT id, slug, title, description, icon, is_active FROM subjects WHERE slug = ?",
        (slug,),
    )
    return _subject_dict(rows[0]) if rows else None


def get_topic(topic_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, subject_id, title, description, difficulty, questions_count, is_active
        FROM topics WHERE id = ?
        """,
        (topic_id,),
    )
    return _topic_dict(rows[0]) if rows else None


def list_topic_questions(topic_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, topic_id, text, options, correct_answer, explanation, is_active, created_at
        FROM questions
        WHERE topic_id = ? AND is_active = 1
        ORDER BY created_at ASC, id ASC
        """,
        (topic_id,),
    )
    return [_question_dict(row) for row in rows]


def _like_pattern(text: str) -> str:
    escaped = text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def search_subjects(text: str) -> list[Dict[str, Any]]:
    pattern = _like_pattern(text)
    rows = _query(
        """
        SELECT s.id, s.slug, s.title, s.description, s.icon,
               (SELECT COUNT(*) FROM topics t WHERE t.subject_id = s.id AND t.is_active = 1) AS topics_count
        FROM subjects s
        WHERE s.is_active = 1
          AND (LOWER(s.title) LIKE ? ESCAPE '\\' OR LOWER(COALESCE(s.description, '')) LIKE ? ESCAPE '\\')
        ORDER BY s.title ASC
        """,
        (pattern, pattern),
    )
    return [dict(row) for row in rows]


def search_topics(text: str) -> list[Dict[str, Any]]:
    pattern = _like_pattern(text)
    rows = _query(
        """
        SELECT t.id, t.title, t.description, t.difficulty, t.questions_count,
               s.title AS subject_title, s.slug AS subject_slug, s.icon AS subject_icon
        FROM topics t
        JOIN subjects s ON s.id = t.subject_id
        WHERE t.is_active = 1
          AND (LOWER(t.title) LIKE ? ESCAPE '\\' OR LOWER(COALESCE(t.description, '')) LIKE ? ESCAPE '\\')
        ORDER BY t.title ASC
        """,
        (pattern, pattern),
    )
    return [dict(row) for row in rows]


def search_questions(text: str, limit: int = 20) -> list[Dict[str, Any]]:
    pattern = _like_pattern(text)
    rows = _query(
        """
        SELECT q.id, q.text, t.title AS topic_title,
               s.title AS subject_title, s.slug AS subject_slug
        FROM questions q
        JOIN topics t ON t.id = q.topic_id
        JOIN subjects s ON s.id = t.subject_id
        WHERE q.is_active = 1
          AND (LOWER(q.text) LIKE ? ESCAPE '\\' OR LOWER(COALESCE(q.explanation, '')) LIKE ? ESCAPE '\\')
        ORDER BY q.created_at ASC, q.id ASC
        LIMIT ?
        """,
        (pattern, pattern, int(limit)),
    )
    return [dict(row) for row in rows]


# -------------- quiz attempts --------------
def record_quiz_attempt(
    user_id: Optional[str],
    topic_id: str,
    score: int,
    total_questions: int,
    correct_answers: int,
    *,
    created_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    if total_questions <= 0:
        raise InvalidInput("total_questions must be greater than zero", {"total_questions": total_questions})
    if correct_answers < 0 or correct_answers > total_questions:
        raise InvalidInput(
            "correct_answers must be between 0 and total_questions",
            {"correct_answers": correct_answers, "total_questions": total_questions},
        )
    if score < 0 or score > 100:
        raise InvalidInput("score must be between 0 and 100", {"score": score})
    if get_topic(topic_id) is None:
        raise InvalidInput("Unknown topic", {"topic_id": topic_id})

    cur = _exec(
        """
        INSERT INTO quiz_attempts(user_id, topic_id, score, total_questions, correct_answers, created_at)
        VALUES (?,?,?,?,?,?)
        """,
        (user_id, topic_id, int(score), int(total_questions), int(correct_answers), _format_ts(created_at or utcnow())),
    )
    rows = _query(
        """
        SELECT id, user_id, topic_id, score, total_questions, correct_answers, created_at
        FROM quiz_attempts WHERE id = ?
        """,
        (cur.lastrowid,),
    )
    return dict(rows[0])


def list_quiz_attempts(user_id: str, page: int = 1, page_size: int = 20) -> Tuple[list[Dict[str, Any]], int]:
    total_rows = _query("SELECT COUNT(*) AS total FROM quiz_attempts WHERE user_id = ?", (user_id,))
    total = int(total_rows[0]["total"]) if total_rows else 0
    offset = (max(1, int(page)) - 1) * int(page_size)
    rows = _query(
        """
        SELECT a.id, a.user_id, a.topic_id, a.score, a.total_questions, a.correct_answers, a.created_at,
               t.title AS topic_title
        FROM quiz_attempts a
        LEFT JOIN topics t ON t.id = a.topic_id
        WHERE a.user_id = ?
        ORDER BY a.created_at DESC, a.id DESC
        LIMIT ? OFFSET ?
        """,
        (user_id, int(page_size), offset),
    )
    return [dict(row) for row in rows], total


# -------------- spaced repetition progress --------------
_PROGRESS_COLUMNS = "id, user_id, topic_id, mastery_level, last_reviewed, next_review, updated_at"


def _progress_dict(row: sqlite3.Row) -> Dict[str, Any]:
    payload = dict(row)
    for key in ("last_reviewed", "next_review", "updated_at"):
        payload[key] = _parse_timestamp(payload.get(key))
    return payload


def find_progress(user_id: str, topic_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_PROGRESS_COLUMNS} FROM user_progress WHERE user_id = ? AND topic_id = ?",
        (user_id, topic_id),
    )
    return _progress_dict(rows[0]) if rows else None


def create_progress(user_id: str, topic_id: str, mastery_level: int = 0) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO user_progress(user_id, topic_id, mastery_level, updated_at)
        VALUES (?,?,?,?)
        ON CONFLICT(user_id, topic_id) DO NOTHING
        """,
        (user_id, topic_id, int(mastery_level), _format_ts(utcnow())),
    )
    return find_progress(user_id, topic_id)


def update_progress(progress_id: int, **fields: Any) -> Dict[str, Any]:
    allowed = {"mastery_level", "last_reviewed", "next_review", "updated_at"}
    unknown = set(fields) - allowed
    if unknown:
        raise InvalidInput("Unknown progress fields", {"fields": sorted(unknown)})
    fields.setdefault("updated_at", utcnow())
    assignments = ", ".join(f"{key} = ?" for key in fields)
    params = [
        _format_ts(value) if isinstance(value, datetime) else value
        for value in fields.values()
    ]
    _exec(f"UPDATE user_progress SET {assignments} WHERE id = ?", (*params, progress_id))
    rows = _query(f"SELECT {_PROGRESS_COLUMNS} FROM user_progress WHERE id = ?", (progress_id,))
    if not rows:
        raise StorageError(f"progress record {progress_id} disappeared")
    return _progress_dict(rows[0])


def apply_progress_review(
    user_id: str,
    topic_id: str,
    transition: Callable[[int], Tuple[int, datetime, datetime]],
) -> Dict[str, Any]:
    """Create-if-missing and update the ``(user_id, topic_id)`` record atomically.

    ``transition`` receives the current mastery level and returns
    ``(new_level, last_reviewed, next_review)``.
    """
    with transaction() as con:
        con.execute(
            """
            INSERT INTO user_progress(user_id, topic_id, mastery_level, updated_at)
            VALUES (?,?,0,?)
            ON CONFLICT(user_id, topic_id) DO NOTHING
            """,
            (user_id, topic_id, _format_ts(utcnow())),
        )
        row = con.execute(
            "SELECT id, mastery_level FROM user_progress WHERE user_id = ? AND topic_id = ?",
            (user_id, topic_id),
        ).fetchone()
        new_level, last_reviewed, next_review = transition(int(row["mastery_level"]))
        con.execute(
            """
            UPDATE user_progress
            SET mastery_level = ?, last_reviewed = ?, next_review = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                int(new_level),
                _format_ts(last_reviewed),
                _format_ts(next_review),
                _format_ts(last_reviewed),
                row["id"],
            ),
        )
        updated = con.execute(
            f"SELECT {_PROGRESS_COLUMNS} FROM user_progress WHERE id = ?",
            (row["id"],),
        ).fetchone()
    return _progress_dict(updated)


def list_progress(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_PROGRESS_COLUMNS} FROM user_progress WHERE user_id = ? ORDER BY updated_at DESC, id DESC",
        (user_id,),
    )
    return [_progress_dict(row) for row in rows]


def _due_filter(policy: str, now: datetime) -> Tuple[str, tuple]:
    try:
        clause, params = _DUE_FILTERS[policy]
    except KeyError:
        raise InvalidInput(f"Unknown due policy: {policy}", {"policy": policy}) from None
    return clause, params(now)


def list_due_progress(user_id: str, *, limit: int, policy: str, now: datetime) -> list[Dict[str, Any]]:
    clause, params = _due_filter(policy, now)
    rows = _query(
        f"""
        SELECT {_PROGRESS_COLUMNS}
        FROM user_progress
        WHERE user_id = ? AND {clause}
        ORDER BY next_review IS NOT NULL, next_review ASC, updated_at DESC, id DESC
        LIMIT ?
        """,
        (user_id, *params, int(limit)),
    )
    return [_progress_dict(row) for row in rows]


def count_due_progress(user_id: str, *, policy: str, now: datetime) -> int:
    clause, params = _due_filter(policy, now)
    rows = _query(
        f"SELECT COUNT(*) AS due FROM user_progress WHERE user_id = ? AND {clause}",
        (user_id, *params),
    )
    return int(rows[0]["due"]) if rows else 0


def progress_totals(user_id: str) -> Dict[str, Any]:
    attempts = _query(
        "SELECT COUNT(*) AS total, AVG(score) AS average FROM quiz_attempts WHERE user_id = ?",
        (user_id,),
    )[0]
    topics = _query(
        """
        SELECT COUNT(*) AS tracked,
               COALESCE(SUM(CASE WHEN mastery_level >= ? THEN 1 ELSE 0 END), 0) AS mastered
        FROM user_progress WHERE user_id = ?
        """,
        (MASTERED_LEVEL, user_id),
    )[0]
    average = attempts["average"]
    return {
        "total_attempts": int(attempts["total"] or 0),
        "average_score": _round_half_up(average) if average is not None else 0,
        "mastered_topics": int(topics["mastered"] or 0),
        "total_topics": int(topics["tracked"] or 0),
    }


def _round_half_up(value: float) -> int:
    return int(math.floor(float(value) + 0.5))


# -------------- goals --------------
def _goal_dict(row: sqlite3.Row) -> Dict[str, Any]:
    payload = dict(row)
    payload["completed"] = bool(payload.get("completed"))
    return payload


def create_goal(
    user_id: str,
    title: str,
    target_value: int,
    deadline: Optional[str] = None,
) -> Dict[str, Any]:
    if target_value <= 0:
        raise InvalidInput("target_value must be greater than zero", {"target_value": target_value})
    cur = _exec(
        """
        INSERT INTO goals(user_id, title, target_value, deadline, created_at)
        VALUES (?,?,?,?,?)
        """,
        (user_id, title, int(target_value), deadline, _format_ts(utcnow())),
    )
    return get_goal(user_id, cur.lastrowid)


def get_goal(user_id: str, goal_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, user_id, title, target_value, current_value, deadline, completed, created_at
        FROM goals WHERE id = ? AND user_id = ?
        """,
        (goal_id, user_id),
    )
    return _goal_dict(rows[0]) if rows else None


def list_goals(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id, user_id, title, target_value, current_value, deadline, completed, created_at
        FROM goals WHERE user_id = ?
        ORDER BY completed ASC, created_at DESC, id DESC
        """,
        (user_id,),
    )
    return [_goal_dict(row) for row in rows]


def add_goal_progress(user_id: str, goal_id: int, amount: int) -> Optional[Dict[str, Any]]:
    if amount <= 0:
        raise InvalidInput("amount must be greater than zero", {"amount": amount})
    cur = _exec(
        """
        UPDATE goals
        SET current_value = current_value + ?,
            completed = CASE WHEN current_value + ? >= target_value THEN 1 ELSE 0 END
        WHERE id = ? AND user_id = ?
        """,
        (int(amount), int(amount), goal_id, user_id),
    )
    if cur.rowcount == 0:
        return None
    return get_goal(user_id, goal_id)
