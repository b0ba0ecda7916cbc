"""
Tool: Metrics Aggregator
Purpose: Build a normalized, fixed-schema feature snapshot per user

The snapshot is the single source of truth for everything downstream:
signal rules read a reduced view of it, the policy engine reads its
vectorized form, and the learning loop stores it before and after an
intervention to measure impact.

Sources (each counts 1/5 towards data_quality when it has data):
    habits   - active habits and their logs over 30 days
    tasks    - open/done/overdue tasks
    journal  - last 5 entries (mood)
    finance  - transactions over 30 days
    streak   - best current streak

Activity recency and churn risk are read too but do not count as sources.

Vector layout (VECTOR_VERSION "v35", 18 floats, all in [0, 1]):
    0  habits_rate_7d          9  day_of_week / 7
    1  habits_variance_30d    10  is_weekend (0/1)
    2  task_overdue_ratio     11  min(days_inactive / 7, 1)
    3  task_completion_rate   12  min(pending_tasks / 20, 1)
    4  journal_sentiment_avg  13  min(due_today / 10, 1)
    5  burnout_risk           14  habits_done_today / max(habits_total_today, 1)
    6  momentum_index         15  min(current_streak / 30, 1)
    7  financial_health       16  last_journal_mood / 5
    8  hour_of_day / 24       17  data_quality

Changing the order or any cap invalidates every persisted weight vector.

Usage:
    from sage_engine.behavior.metrics import get_feature_snapshot, vectorize

    snapshot = get_feature_snapshot("alice")
    vector = vectorize(snapshot)
"""

from __future__ import annotations

import math
import sqlite3
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, TypeVar

from sage_engine import store
from sage_engine.behavior import SOURCE_CATEGORIES
from sage_engine.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

VECTOR_VERSION = "v35"
CONTEXT_VECTOR_LENGTH = 18

FEATURE_NAMES = (
    "habits_rate_7d",
    "habits_variance",
    "task_overdue",
    "task_completion",
    "journal_sentiment",
    "burnout_risk",
    "momentum",
    "financial_health",
    "hour_of_day",
    "day_of_week",
    "is_weekend",
    "days_inactive",
    "pending_tasks",
    "due_today",
    "habits_progress",
    "streak",
    "last_mood",
    "data_quality",
)

# Caps for unbounded counts
DAYS_INACTIVE_CAP = 7
PENDING_TASKS_CAP = 20
DUE_TODAY_CAP = 10
STREAK_CAP = 30
MOOD_SCALE = 5

# Neutral values for missing sources
NEUTRAL_MOOD = 3
NEUTRAL_MOMENTUM = 0.5
NO_ACTIVITY_DAYS = 30

WORKDAY_MINUTES = 480
DEFAULT_TASK_MINUTES = 30


@dataclass(frozen=True)
class FeatureSnapshot:
    """Point-in-time behavioral state of one user. Never mutated."""

    user_id: str
    timestamp: datetime
    version: str = VECTOR_VERSION

    # Ratios in [0, 1]
    habits_rate_7d: float = 0.0
    habits_variance_30d: float = 0.0
    task_overdue_ratio: float = 0.0
    task_completion_rate: float = 0.0
    momentum_index: float = NEUTRAL_MOMENTUM
    burnout_risk: float = 0.0
    journal_sentiment_avg: float = NEUTRAL_MOOD / MOOD_SCALE
    financial_health: float = 0.3

    # Counts
    pending_tasks: int = 0
    due_today: int = 0
    overdue_tasks: int = 0
    recent_completions: int = 0
    habits_done_today: int = 0
    habits_total_today: int = 0
    current_streak: int = 0
    last_journal_mood: float = NEUTRAL_MOOD

    # Temporal
    hour_of_day: int = 0
    day_of_week: int = 0
    is_weekend: bool = False
    days_since_last_activity: int = NO_ACTIVITY_DAYS

    churn_risk: float = 0.0

    data_quality: float = 0.0
    sources_available: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        d["sources_available"] = list(self.sources_available)
        return d


def vectorize(snapshot: FeatureSnapshot) -> list[float]:
    """Convert a snapshot to the context vector. Pure and deterministic."""
    return [
        float(snapshot.habits_rate_7d),
        float(snapshot.habits_variance_30d),
        float(snapshot.task_overdue_ratio),
        float(snapshot.task_completion_rate),
        float(snapshot.journal_sentiment_avg),
        float(snapshot.burnout_risk),
        float(snapshot.momentum_index),
        float(snapshot.financial_health),
        snapshot.hour_of_day / 24,
        snapshot.day_of_week / 7,
        1.0 if snapshot.is_weekend else 0.0,
        _capped(snapshot.days_since_last_activity, DAYS_INACTIVE_CAP),
        _capped(snapshot.pending_tasks, PENDING_TASKS_CAP),
        _capped(snapshot.due_today, DUE_TODAY_CAP),
        min(snapshot.habits_done_today / max(snapshot.habits_total_today, 1), 1.0),
        _capped(snapshot.current_streak, STREAK_CAP),
        _capped(snapshot.last_journal_mood, MOOD_SCALE),
        float(snapshot.data_quality),
    ]


def _capped(count: float, cap: float) -> float:
    return min(max(count, 0) / cap, 1.0)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


# =============================================================================
# Derived metrics
# =============================================================================


def calculate_daily_rates(
    logs: list[dict[str, Any]], total_habits: int, today: date, days: int = 30
) -> list[float]:
    """Completion rate per day, most recent first."""
    completed_by_day: dict[str, int] = {}
    for log in logs:
        if log.get("completed"):
            completed_by_day[log["date"]] = completed_by_day.get(log["date"], 0) + 1

    rates = []
    for i in range(days):
        day = (today - timedelta(days=i)).isoformat()
        completed = completed_by_day.get(day, 0)
        rates.append(min(completed / total_habits, 1.0) if total_habits > 0 else 0.0)
    return rates


def calculate_variance(values: list[float]) -> float:
    """Population variance normalized by 0.25 (the max for values in [0, 1])."""
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return min(1.0, variance / 0.25)


def calculate_momentum(daily_rates: list[float]) -> float:
    """0.5 is stable; above means the last 3 days beat the 4 before."""
    if len(daily_rates) < 3:
        return NEUTRAL_MOMENTUM
    recent = daily_rates[:3]
    older = daily_rates[3:7]
    recent_avg = sum(recent) / len(recent)
    older_avg = sum(older) / len(older) if older else recent_avg
    return _clamp(NEUTRAL_MOMENTUM + (recent_avg - older_avg))


def calculate_burnout_risk(
    due_today_minutes: float, current_streak: int, overdue_ratio: float, sentiment: float
) -> float:
    overload_index = due_today_minutes / WORKDAY_MINUTES
    streak_pressure = 0.3 if current_streak > 14 else 0.0
    return _clamp(
        overload_index * 0.35
        + streak_pressure * 0.15
        + overdue_ratio * 0.25
        + (1 - sentiment) * 0.25
    )


def calculate_financial_health(transactions: list[dict[str, Any]]) -> float:
    income = sum(abs(t["amount"]) for t in transactions if t["type"] == "income")
    expenses = sum(abs(t["amount"]) for t in transactions if t["type"] == "expense")
    savings_rate = max(0.0, (income - expenses) / income) if income > 0 else 0.0
    return min(1.0, savings_rate + 0.3)


# =============================================================================
# Source readers
# =============================================================================


def _read_source(label: str, reader: Callable[..., T], *args: Any) -> T | None:
    """Run one source query; a failing source is treated as absent."""
    try:
        return reader(*args)
    except sqlite3.Error as e:
        logger.warning("metrics_source_unavailable", source=label, error=str(e))
        return None


def _fetch_habits(conn: sqlite3.Connection, user_id: str, since: str) -> dict[str, Any]:
    habits = conn.execute(
        "SELECT id FROM habits WHERE user_id = ? AND is_active = 1 AND deleted_at IS NULL",
        (user_id,),
    ).fetchall()
    logs = conn.execute(
        "SELECT habit_id, date, completed FROM habit_logs WHERE user_id = ? AND date >= ?",
        (user_id, since),
    ).fetchall()
    return {"total": len(habits), "logs": [dict(r) for r in logs]}


def _fetch_tasks(conn: sqlite3.Connection, user_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT id, status, due_date, estimate_min, completed_at
        FROM tasks
        WHERE user_id = ? AND deleted_at IS NULL AND archived_at IS NULL
        """,
        (user_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def _fetch_journal(conn: sqlite3.Connection, user_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT mood, created_at FROM journal_entries
        WHERE user_id = ?
        ORDER BY created_at DESC
        LIMIT 5
        """,
        (user_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def _fetch_finance(conn: sqlite3.Connection, user_id: str, since: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT amount, type FROM finance_transactions WHERE user_id = ? AND date >= ?",
        (user_id, since),
    ).fetchall()
    return [dict(r) for r in rows]


def _fetch_streak(conn: sqlite3.Connection, user_id: str) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT current_streak, max_streak FROM streaks
        WHERE user_id = ?
        ORDER BY current_streak DESC
        LIMIT 1
        """,
        (user_id,),
    ).fetchone()
    return store.row_to_dict(row)


def _fetch_last_activity(conn: sqlite3.Connection, user_id: str) -> str | None:
    row = conn.execute(
        "SELECT MAX(created_at) AS last FROM activity_log WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    return row["last"] if row else None


def _fetch_churn_risk(conn: sqlite3.Connection, user_id: str) -> float | None:
    row = conn.execute(
        "SELECT risk_score FROM churn_risk_scores WHERE user_id = ?", (user_id,)
    ).fetchone()
    return row["risk_score"] if row else None


# =============================================================================
# Snapshot
# =============================================================================


def get_feature_snapshot(user_id: str, now: datetime | None = None) -> FeatureSnapshot:
    """
    Build the feature snapshot for a user from the latest data in each source.

    Args:
        user_id: User identifier
        now: Reference time (defaults to current UTC time)

    Returns:
        FeatureSnapshot with neutral values for any missing source
    """
    now = now or store.utcnow()
    today = now.date()
    today_str = today.isoformat()
    since_30d = (today - timedelta(days=29)).isoformat()
    since_7d = (today - timedelta(days=6)).isoformat()
    recent_cutoff = store.to_db_time(now - timedelta(days=7))

    with store.connect() as conn:
        habit_data = _read_source("habits", _fetch_habits, conn, user_id, since_30d)
        tasks = _read_source("tasks", _fetch_tasks, conn, user_id)
        journals = _read_source("journal", _fetch_journal, conn, user_id)
        transactions = _read_source("finance", _fetch_finance, conn, user_id, since_30d)
        streak = _read_source("streak", _fetch_streak, conn, user_id)
        last_activity = _read_source("activity", _fetch_last_activity, conn, user_id)
        churn = _read_source("churn_risk", _fetch_churn_risk, conn, user_id)

    present: list[str] = []

    # Habits
    total_habits = habit_data["total"] if habit_data else 0
    logs_30d = habit_data["logs"] if habit_data else []
    logs_7d = [log for log in logs_30d if log["date"] >= since_7d]
    completed_7d = sum(1 for log in logs_7d if log["completed"])
    habits_rate_7d = min(completed_7d / (total_habits * 7), 1.0) if total_habits else 0.0
    daily_rates = calculate_daily_rates(logs_30d, total_habits, today)
    habits_done_today = sum(1 for log in logs_7d if log["date"] == today_str and log["completed"])
    if total_habits > 0:
        present.append("habits")

    # Tasks
    tasks = tasks or []
    open_tasks = [t for t in tasks if t["status"] != "done"]
    done_tasks = [t for t in tasks if t["status"] == "done"]
    overdue = [t for t in open_tasks if t["due_date"] and t["due_date"] < today_str]
    due_today = [t for t in open_tasks if t["due_date"] == today_str]
    due_today_minutes = sum(t["estimate_min"] or DEFAULT_TASK_MINUTES for t in due_today)
    recent_completions = sum(
        1 for t in done_tasks if t["completed_at"] and t["completed_at"] >= recent_cutoff
    )
    overdue_ratio = len(overdue) / len(tasks) if tasks else 0.0
    completion_rate = len(done_tasks) / len(tasks) if tasks else 0.0
    if tasks:
        present.append("tasks")

    # Journal
    journals = journals or []
    moods = [j["mood"] if isinstance(j["mood"], (int, float)) else NEUTRAL_MOOD for j in journals]
    mood_avg = sum(moods) / len(moods) if moods else NEUTRAL_MOOD
    journal_sentiment = _clamp(mood_avg / MOOD_SCALE)
    last_mood = moods[0] if moods else NEUTRAL_MOOD
    if journals:
        present.append("journal")

    # Finance
    transactions = transactions or []
    financial_health = calculate_financial_health(transactions)
    if transactions:
        present.append("finance")

    # Streak
    current_streak = int(streak["current_streak"] or 0) if streak else 0
    if streak:
        present.append("streak")

    # Activity recency
    if last_activity:
        elapsed = now - store.from_db_time(last_activity)
        days_inactive = max(0, math.floor(elapsed.total_seconds() / 86400))
    else:
        days_inactive = NO_ACTIVITY_DAYS

    return FeatureSnapshot(
        user_id=user_id,
        timestamp=now,
        habits_rate_7d=habits_rate_7d,
        habits_variance_30d=calculate_variance(daily_rates),
        task_overdue_ratio=overdue_ratio,
        task_completion_rate=completion_rate,
        momentum_index=calculate_momentum(daily_rates),
        burnout_risk=calculate_burnout_risk(
            due_today_minutes, current_streak, overdue_ratio, journal_sentiment
        ),
        journal_sentiment_avg=journal_sentiment,
        financial_health=financial_health,
        pending_tasks=len(open_tasks),
        due_today=len(due_today),
        overdue_tasks=len(overdue),
        recent_completions=recent_completions,
        habits_done_today=habits_done_today,
        habits_total_today=total_habits,
        current_streak=current_streak,
        last_journal_mood=last_mood,
        hour_of_day=now.hour,
        day_of_week=now.weekday(),
        is_weekend=now.weekday() >= 5,
        days_since_last_activity=days_inactive,
        churn_risk=_clamp(churn) if churn is not None else 0.0,
        data_quality=len(present) / len(SOURCE_CATEGORIES),
        sources_available=tuple(present),
    )
