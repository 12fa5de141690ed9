import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    # Fresh pool per test so no connection points at a previous database.
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    yield str(db_path)
    db._pool.close_all()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def seeded_content(temp_db):
    import db

    db.upsert_subject("constitutional", "constitutional-law", "Constitutional law",
                      description="Foundations of the constitutional order", icon="🏛️")
    db.upsert_subject("civil", "civil-law", "Civil law",
                      description="Property, obligations and contracts", icon="⚖️")
    db.upsert_subject("archived", "archived-law", "Archived law", is_active=False)
    db.upsert_topic("constitutional-1", "constitutional", "Foundations of the constitutional order",
                    description="Principles of the state", difficulty="easy")
    db.upsert_topic("constitutional-2", "constitutional", "Human rights and freedoms",
                    description="Rights, freedoms and duties of citizens", difficulty="hard")
    db.upsert_topic("civil-1", "civil", "Ownership", description="Acquisition and loss of ownership")
    db.upsert_topic("civil-hidden", "civil", "Hidden topic", is_active=False)
    db.upsert_question("q1", "constitutional-1", "Which body adopts the constitution?",
                       ["Parliament", "Referendum", "Court"], 1,
                       explanation="The constitution was adopted by popular referendum.")
    db.upsert_question("q2", "constitutional-1", "Who is the guarantor of the constitution?",
                       ["President", "Government"], 0)
    db.upsert_question("q3", "constitutional-2", "Is the right to life absolute?",
                       ["Yes", "No"], 0, is_active=False)
    db.refresh_question_counts()
    return temp_db
