"""Shared test fixtures for Sage tests.

This module provides common fixtures used across all test modules:
- Database isolation with temporary files
- Standard test user and reference time
- Seeded randomness
- Helpers to seed raw behavior rows

Usage:
    def test_something(sage_db, seed, mock_user_id):
        seed.tasks(mock_user_id, overdue=6)
        ...
"""

import os
import random
import tempfile
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from sage_engine.config import SageConfig
from sage_engine.logging_config import setup_logging


# ─────────────────────────────────────────────────────────────────────────────
# Path Constants
# ─────────────────────────────────────────────────────────────────────────────

PROJECT_ROOT = Path(__file__).parent.parent

# Wednesday, mid-morning UTC
REFERENCE_NOW = datetime(2026, 3, 11, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True, scope="session")
def _quiet_logging():
    """Route structured logs to stderr so stdout stays clean for CLI output."""
    setup_logging(level="WARNING")


# ─────────────────────────────────────────────────────────────────────────────
# Database Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def temp_db() -> Generator[Path, None, None]:
    """Create a temporary database file for testing.

    The database file is automatically deleted after the test completes.

    Yields:
        Path to the temporary database file
    """
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup
    for suffix in ("", "-wal", "-shm", "-journal"):
        path = Path(str(db_path) + suffix)
        if path.exists():
            os.unlink(path)


@pytest.fixture
def sage_db(temp_db: Path):
    """Point the store at the temporary database and create the schema.

    Yields:
        The sage_engine.store module
    """
    with (
        patch("sage_engine.store.DB_PATH", temp_db),
        patch("sage_engine.store.RETRY_DELAY", 0.0),
    ):
        from sage_engine import store

        conn = store.get_connection()
        conn.close()

        yield store


# ─────────────────────────────────────────────────────────────────────────────
# User / Time / Config Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def mock_user_id() -> str:
    """Standard test user ID."""
    return "test_user_123"


@pytest.fixture
def other_user_id() -> str:
    return "other_user_456"


@pytest.fixture
def now() -> datetime:
    """Fixed reference time (timezone-aware UTC)."""
    return REFERENCE_NOW


@pytest.fixture
def seeded_rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def sage_config() -> SageConfig:
    """Default configuration with fast retries, no exploration and no safety gate."""
    config = SageConfig()
    config.policy.epsilon = 0.0
    config.store.retry_delay = 0.0
    config.safety.enabled = False
    return config


@pytest.fixture
def consenting_user(sage_db, mock_user_id) -> str:
    """User who granted both learning purposes."""
    from sage_engine.compliance.consent import grant_consent

    grant_consent(mock_user_id, "ai_profiling")
    grant_consent(mock_user_id, "policy_learning")
    return mock_user_id


# ─────────────────────────────────────────────────────────────────────────────
# Behavior Data Seeding
# ─────────────────────────────────────────────────────────────────────────────


class BehaviorSeeder:
    """Writes raw behavior rows the metrics aggregator reads."""

    def __init__(self, store, now: datetime):
        self.store = store
        self.now = now

    def _execute(self, sql: str, rows: list[tuple]) -> None:
        with self.store.connect() as conn:
            conn.executemany(sql, rows)
            conn.commit()

    def habits(self, user_id: str, count: int = 2, completed_days: int = 7) -> list[str]:
        """Active habits, each completed on the last completed_days days."""
        habit_ids = [self.store.generate_id() for _ in range(count)]
        self._execute(
            "INSERT INTO habits (id, user_id, name, is_active) VALUES (?, ?, ?, 1)",
            [(hid, user_id, f"habit {i}") for i, hid in enumerate(habit_ids)],
        )
        today = self.now.date()
        self._execute(
            "INSERT INTO habit_logs (user_id, habit_id, date, completed) VALUES (?, ?, ?, 1)",
            [
                (user_id, hid, (today - timedelta(days=d)).isoformat())
                for hid in habit_ids
                for d in range(completed_days)
            ],
        )
        return habit_ids

    def tasks(
        self,
        user_id: str,
        overdue: int = 0,
        due_today: int = 0,
        pending: int = 0,
        done_recently: int = 0,
        done_long_ago: int = 0,
    ) -> None:
        today = self.now.date()
        rows = []
        for _ in range(overdue):
            rows.append((self.store.generate_id(), user_id, "todo", (today - timedelta(days=3)).isoformat(), None))
        for _ in range(due_today):
            rows.append((self.store.generate_id(), user_id, "todo", today.isoformat(), None))
        for _ in range(pending):
            rows.append((self.store.generate_id(), user_id, "todo", None, None))
        for _ in range(done_recently):
            rows.append(
                (self.store.generate_id(), user_id, "done", None,
                 self.store.to_db_time(self.now - timedelta(days=1)))
            )
        for _ in range(done_long_ago):
            rows.append(
                (self.store.generate_id(), user_id, "done", None,
                 self.store.to_db_time(self.now - timedelta(days=20)))
            )
        self._execute(
            "INSERT INTO tasks (id, user_id, status, due_date, completed_at) VALUES (?, ?, ?, ?, ?)",
            rows,
        )

    def journal(self, user_id: str, moods: list[int]) -> None:
        """Entries, oldest first; the last mood is the most recent."""
        self._execute(
            "INSERT INTO journal_entries (id, user_id, mood, created_at) VALUES (?, ?, ?, ?)",
            [
                (self.store.generate_id(), user_id, mood,
                 self.store.to_db_time(self.now - timedelta(hours=len(moods) - i)))
                for i, mood in enumerate(moods)
            ],
        )

    def finance(self, user_id: str, income: float = 0.0, expenses: float = 0.0) -> None:
        day = (self.now.date() - timedelta(days=2)).isoformat()
        rows = []
        if income:
            rows.append((self.store.generate_id(), user_id, income, "income", day))
        if expenses:
            rows.append((self.store.generate_id(), user_id, -expenses, "expense", day))
        self._execute(
            "INSERT INTO finance_transactions (id, user_id, amount, type, date) VALUES (?, ?, ?, ?, ?)",
            rows,
        )

    def streak(self, user_id: str, current: int) -> None:
        self._execute(
            "INSERT INTO streaks (id, user_id, current_streak, max_streak) VALUES (?, ?, ?, ?)",
            [(self.store.generate_id(), user_id, current, current)],
        )

    def activity(self, user_id: str, days_ago: float = 0) -> None:
        self._execute(
            "INSERT INTO activity_log (user_id, action, created_at) VALUES (?, ?, ?)",
            [(user_id, "open_app", self.store.to_db_time(self.now - timedelta(days=days_ago)))],
        )

    def churn(self, user_id: str, risk: float) -> None:
        self._execute(
            "INSERT OR REPLACE INTO churn_risk_scores (user_id, risk_score) VALUES (?, ?)",
            [(user_id, risk)],
        )


@pytest.fixture
def seed(sage_db, now) -> BehaviorSeeder:
    return BehaviorSeeder(sage_db, now)
