"""
Tool: Behavioral Data Store
Purpose: SQLite persistence for everything the decision engine reads and writes

The engine only needs structured rows, so one database holds three groups
of tables:

    Raw behavior (read):   habits, habit_logs, tasks, journal_entries,
                           finance_transactions, streaks, activity_log,
                           churn_risk_scores
    Learning (read/write): user_consents, consent_audit, sage_runs,
                           sage_feedback, sage_experiences, sage_policy_weights
    Audit (write):         behavior_signals, ai_interventions

Concurrency guards live in the schema rather than in check-then-act code:
    - sage_policy_weights carries a version column for compare-and-swap
    - ai_interventions is UNIQUE(user_id, intervention_type, dedup_key)
    - sage_experiences is only ever updated WHERE reward IS NULL

Dependencies:
    - sqlite3 (stdlib)
"""

from __future__ import annotations

import sqlite3
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

from sage_engine import DATA_DIR
from sage_engine.errors import StoreFailure, WeightConflict
from sage_engine.logging_config import get_logger

logger = get_logger(__name__)

DB_PATH = DATA_DIR / "sage.db"

BUSY_TIMEOUT_MS = 5000
MAX_RETRIES = 3
RETRY_DELAY = 0.05

DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

T = TypeVar("T")

_SCHEMA = [
    # Consent
    """
    CREATE TABLE IF NOT EXISTS user_consents (
        user_id TEXT NOT NULL,
        purpose TEXT NOT NULL,
        granted INTEGER NOT NULL DEFAULT 0,
        granted_at TEXT,
        withdrawn_at TEXT,
        consent_version TEXT DEFAULT '1.0',
        PRIMARY KEY(user_id, purpose)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS consent_audit (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        purpose TEXT NOT NULL,
        granted INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    # Decisions, feedback, experiences, weights
    """
    CREATE TABLE IF NOT EXISTS sage_runs (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        action_type TEXT NOT NULL,
        score REAL,
        confidence REAL,
        reasoning TEXT,
        explored INTEGER DEFAULT 0,
        context_vector TEXT,
        safety_blocked INTEGER DEFAULT 0,
        safety_reason TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sage_feedback (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        feedback_type TEXT NOT NULL CHECK(feedback_type IN ('accepted', 'rejected', 'ignored')),
        helpful INTEGER DEFAULT 0,
        ignored INTEGER DEFAULT 0,
        completed INTEGER DEFAULT 0,
        explicit TEXT CHECK(explicit IN ('helpful', 'not_helpful') OR explicit IS NULL),
        action_type TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sage_experiences (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        decision_id TEXT,
        feedback_id TEXT,
        context_vector TEXT NOT NULL,
        action_type TEXT NOT NULL,
        metrics_before TEXT,
        metrics_after TEXT,
        reward REAL,
        created_at TEXT NOT NULL,
        processed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sage_policy_weights (
        user_id TEXT NOT NULL,
        action_type TEXT NOT NULL,
        weights TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT NOT NULL,
        PRIMARY KEY(user_id, action_type)
    )
    """,
    # Signals and interventions
    """
    CREATE TABLE IF NOT EXISTS behavior_signals (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        signal_type TEXT NOT NULL,
        score REAL NOT NULL,
        source TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_interventions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        intervention_type TEXT NOT NULL,
        signal_type TEXT,
        ai_message TEXT NOT NULL,
        context TEXT,
        user_action TEXT NOT NULL DEFAULT 'pending'
            CHECK(user_action IN ('pending', 'applied', 'ignored', 'rejected')),
        dedup_key TEXT NOT NULL,
        created_at TEXT NOT NULL,
        resolved_at TEXT,
        UNIQUE(user_id, intervention_type, dedup_key)
    )
    """,
    # Raw behavior sources
    """
    CREATE TABLE IF NOT EXISTS habits (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT,
        is_active INTEGER DEFAULT 1,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS habit_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        habit_id TEXT NOT NULL,
        date TEXT NOT NULL,
        completed INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        title TEXT,
        status TEXT DEFAULT 'todo',
        due_date TEXT,
        estimate_min INTEGER,
        completed_at TEXT,
        deleted_at TEXT,
        archived_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journal_entries (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        mood INTEGER,
        energy_level TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS finance_transactions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        amount REAL NOT NULL,
        type TEXT CHECK(type IN ('income', 'expense')),
        date TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS streaks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        habit_id TEXT,
        current_streak INTEGER DEFAULT 0,
        max_streak INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        action TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS churn_risk_scores (
        user_id TEXT PRIMARY KEY,
        risk_score REAL NOT NULL,
        updated_at TEXT
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_runs_user ON sage_runs(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_feedback_user ON sage_feedback(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_experiences_user ON sage_experiences(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_experiences_reward ON sage_experiences(reward)",
    "CREATE INDEX IF NOT EXISTS idx_signals_user ON behavior_signals(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_interventions_lookup ON ai_interventions(user_id, intervention_type, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_habit_logs_user ON habit_logs(user_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_journal_user ON journal_entries(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_finance_user ON finance_transactions(user_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_activity_user ON activity_log(user_id, created_at)",
]

# Columns added after a table first shipped, applied to older databases
_ADDED_COLUMNS = {
    "sage_runs": [
        ("safety_blocked", "INTEGER DEFAULT 0"),
        ("safety_reason", "TEXT"),
    ],
}


def _ensure_columns(cursor: sqlite3.Cursor) -> None:
    for table, new_columns in _ADDED_COLUMNS.items():
        cursor.execute(f"PRAGMA table_info({table})")
        columns = {row["name"] for row in cursor.fetchall()}
        for col_name, col_type in new_columns:
            if col_name not in columns:
                cursor.execute(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_type}")
                logger.info("column_added", table=table, column=col_name)


def get_connection() -> sqlite3.Connection:
    """Get database connection, creating tables if needed."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH), timeout=BUSY_TIMEOUT_MS / 1000)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {int(BUSY_TIMEOUT_MS)}")
    conn.execute("PRAGMA journal_mode=WAL")

    cursor = conn.cursor()
    for statement in _SCHEMA:
        cursor.execute(statement)
    _ensure_columns(cursor)
    for statement in _INDEXES:
        cursor.execute(statement)

    conn.commit()
    return conn


@contextmanager
def connect() -> Iterator[sqlite3.Connection]:
    """Connection scoped to a block; sqlite errors surface as StoreFailure."""
    try:
        conn = get_connection()
    except sqlite3.Error as e:
        raise StoreFailure(f"Cannot open store: {e}", transient=_is_transient(e)) from e
    try:
        yield conn
    except sqlite3.Error as e:
        raise StoreFailure(str(e), transient=_is_transient(e)) from e
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """
    Run a block in one transaction.

    immediate=True takes the write lock up front (BEGIN IMMEDIATE), so a
    read-then-write inside the block cannot interleave with another writer.
    """
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, WeightConflict):
        return True
    if isinstance(exc, StoreFailure):
        return exc.transient
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).lower()
        return "locked" in message or "busy" in message
    return False


def with_retry(
    func: Callable[..., T],
    *args: Any,
    max_retries: int | None = None,
    retry_delay: float | None = None,
    **kwargs: Any,
) -> T:
    """
    Call func, retrying transient store errors with exponential backoff.

    Non-transient errors are raised immediately. After the last attempt
    the error is re-raised as StoreFailure (WeightConflict is kept as is).
    """
    attempts = max_retries if max_retries is not None else MAX_RETRIES
    delay = retry_delay if retry_delay is not None else RETRY_DELAY
    last_error: BaseException | None = None

    for attempt in range(attempts):
        try:
            return func(*args, **kwargs)
        except (sqlite3.Error, StoreFailure) as e:
            if not _is_transient(e):
                if isinstance(e, StoreFailure):
                    raise
                raise StoreFailure(str(e)) from e
            last_error = e
            logger.debug(
                "store_retry",
                operation=getattr(func, "__name__", repr(func)),
                attempt=attempt + 1,
                error=str(e),
            )
            if attempt < attempts - 1:
                time.sleep(delay * (2**attempt))

    if isinstance(last_error, StoreFailure):
        raise last_error
    raise StoreFailure(f"Transient store error persisted: {last_error}", transient=True) from last_error


def generate_id() -> str:
    """Generate a short unique ID."""
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(dt: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison matches time order."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(DB_TIME_FORMAT)


def from_db_time(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    """Convert sqlite3.Row to dictionary."""
    if row is None:
        return None
    return dict(row)


def configure(busy_timeout_ms: int | None = None, max_retries: int | None = None,
              retry_delay: float | None = None) -> None:
    """Override connection and retry defaults (args/sage.yaml, section store)."""
    global BUSY_TIMEOUT_MS, MAX_RETRIES, RETRY_DELAY
    if busy_timeout_ms is not None:
        BUSY_TIMEOUT_MS = busy_timeout_ms
    if max_retries is not None:
        MAX_RETRIES = max_retries
    if retry_delay is not None:
        RETRY_DELAY = retry_delay
