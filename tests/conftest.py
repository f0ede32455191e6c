"""Shared test fixtures."""

from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure tests don't accidentally call real APIs
os.environ.setdefault("OPENROUTER_API_KEY", "test-key")
os.environ.setdefault("GROQ_API_KEY", "test-key")
os.environ.setdefault("JUDGE_MODE", "mock")

from src.evals.judge import MockJudge  # noqa: E402
from src.persistence import repository as repo  # noqa: E402
from src.persistence.db import get_connection  # noqa: E402

PERSONAS = {
    "michael": ("Michael Scott", "Regional manager who desperately wants to be liked."),
    "dwight": ("Dwight Schrute", "Assistant to the regional manager. Beet farmer."),
    "jim": ("Jim Halpert", "Salesman with a dry wit and a fondness for pranks."),
}

CHANNEL_SCRIPT = [
    ("michael", "Everybody gather round, I have the best idea for a party!"),
    ("dwight", "Michael, as assistant to the regional manager I will handle security."),
    ("jim", "Great, because a birthday party really needs a security detail."),
    ("michael", "That's what she said. Okay, balloons, cake and a magician."),
    ("dwight", "Magicians are frauds. I will perform feats of strength instead."),
    ("jim", "Or we could just get a nice card and call it a day."),
]


@pytest.fixture()
def db_conn(tmp_path: Path):
    """Fresh SQLite database with the schema applied."""
    conn = get_connection(tmp_path / "test.db")
    yield conn
    conn.close()


def seed_conversation(conn: sqlite3.Connection, now: datetime | None = None) -> None:
    """Three agents in one channel with a short, recent conversation."""
    now = now or datetime.now(timezone.utc)
    for agent_id, (name, persona) in PERSONAS.items():
        repo.upsert_agent(conn, agent_id, name, persona)
    repo.create_channel(conn, "general", "General", list(PERSONAS))
    start = now - timedelta(hours=2)
    for i, (user_id, text) in enumerate(CHANNEL_SCRIPT):
        repo.add_message(conn, user_id, text, "general", created_at=start + timedelta(minutes=i))


@pytest.fixture()
def seeded_conn(db_conn: sqlite3.Connection) -> sqlite3.Connection:
    seed_conversation(db_conn)
    return db_conn


@pytest.fixture()
def mock_judge() -> MockJudge:
    return MockJudge()
