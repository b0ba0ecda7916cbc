"""
Tool: Experience Store
Purpose: Persist experiences and enforce their one-way lifecycle

An experience is (context vector, action, metrics before, metrics after,
reward). Its lifecycle has exactly one transition:

    created (reward NULL)  ->  processed (reward, metrics_after, processed_at)

mark_processed() is a single conditional UPDATE ... WHERE reward IS NULL,
so when two workers race on the same experience only one of them wins and
the loser sees False.

Also here: offline replay helpers to compare weight sets against logged
experiences (evaluate_policy, calculate_regret).

Usage:
    from sage_engine.learning import experience_store

    exp_id = experience_store.create_experience("alice", vector, "nudge", before)
    experience_store.mark_processed(exp_id, after, reward=1.4)    # True
    experience_store.mark_processed(exp_id, after, reward=1.4)    # False
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from sage_engine import store
from sage_engine.learning import CONTEXT_VECTOR_LENGTH, normalize_action
from sage_engine.logging_config import get_logger

logger = get_logger(__name__)

STATS_WINDOW = 100
TREND_WINDOW = 20


def _row_to_experience(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    return {
        "id": d["id"],
        "user_id": d["user_id"],
        "decision_id": d["decision_id"],
        "feedback_id": d["feedback_id"],
        "context_vector": json.loads(d["context_vector"]),
        "action": d["action_type"],
        "metrics_before": json.loads(d["metrics_before"]) if d["metrics_before"] else None,
        "metrics_after": json.loads(d["metrics_after"]) if d["metrics_after"] else None,
        "reward": d["reward"],
        "created_at": d["created_at"],
        "processed_at": d["processed_at"],
    }


def create_experience(
    user_id: str,
    context_vector: list[float],
    action: str,
    metrics_before: Mapping[str, Any] | None,
    decision_id: str | None = None,
    feedback_id: str | None = None,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> str:
    """
    Create an unprocessed experience.

    Pass conn to take part in the caller's transaction; otherwise the
    insert is committed on its own connection.

    Returns:
        The new experience id

    Raises:
        ValueError: Unknown action or context vector of the wrong length
    """
    action = normalize_action(action)
    if len(context_vector) != CONTEXT_VECTOR_LENGTH:
        raise ValueError(
            f"Context vector length {len(context_vector)} does not match {CONTEXT_VECTOR_LENGTH}"
        )

    experience_id = store.generate_id()
    params = (
        experience_id,
        user_id,
        decision_id,
        feedback_id,
        json.dumps([float(x) for x in context_vector]),
        action,
        json.dumps(dict(metrics_before)) if metrics_before is not None else None,
        store.to_db_time(now or store.utcnow()),
    )
    sql = """
        INSERT INTO sage_experiences
        (id, user_id, decision_id, feedback_id, context_vector, action_type,
         metrics_before, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """

    if conn is not None:
        conn.execute(sql, params)
    else:
        with store.connect() as own:
            with store.transaction(own):
                own.execute(sql, params)

    return experience_id


def get_experience(experience_id: str, user_id: str | None = None) -> dict[str, Any] | None:
    """Fetch one experience, optionally scoped to a user."""
    query = "SELECT * FROM sage_experiences WHERE id = ?"
    params: list[Any] = [experience_id]
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)

    with store.connect() as conn:
        row = conn.execute(query, params).fetchone()

    return _row_to_experience(row) if row else None


def mark_processed(
    experience_id: str,
    metrics_after: Mapping[str, Any] | None,
    reward: float,
    now: datetime | None = None,
) -> bool:
    """
    Record the outcome of an experience. Happens at most once.

    Returns:
        True if this call processed the experience, False if it already was
    """
    with store.connect() as conn:
        cursor = conn.execute(
            """
            UPDATE sage_experiences
            SET metrics_after = ?, reward = ?, processed_at = ?
            WHERE id = ? AND reward IS NULL
            """,
            (
                json.dumps(dict(metrics_after)) if metrics_after is not None else None,
                float(reward),
                store.to_db_time(now or store.utcnow()),
                experience_id,
            ),
        )
        conn.commit()
        return cursor.rowcount == 1


def list_unprocessed(limit: int = 200, user_id: str | None = None) -> list[dict[str, Any]]:
    """Unprocessed experiences, oldest first."""
    query = "SELECT * FROM sage_experiences WHERE reward IS NULL"
    params: list[Any] = []
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)
    query += " ORDER BY created_at ASC LIMIT ?"
    params.append(limit)

    with store.connect() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_experience(r) for r in rows]


def list_experiences(
    user_id: str, limit: int = 100, processed_only: bool = False
) -> list[dict[str, Any]]:
    """A user's experiences, newest first."""
    query = "SELECT * FROM sage_experiences WHERE user_id = ?"
    if processed_only:
        query += " AND reward IS NOT NULL"
    query += " ORDER BY created_at DESC LIMIT ?"

    with store.connect() as conn:
        rows = conn.execute(query, (user_id, limit)).fetchall()
    return [_row_to_experience(r) for r in rows]


def prune_old_experiences(user_id: str, keep_last: int = 500) -> int:
    """
    Delete processed experiences beyond the newest keep_last.

    Unprocessed experiences are never pruned.

    Returns:
        Number of experiences deleted
    """
    with store.connect() as conn:
        cursor = conn.execute(
            """
            DELETE FROM sage_experiences
            WHERE user_id = ? AND reward IS NOT NULL
              AND id NOT IN (
                  SELECT id FROM sage_experiences
                  WHERE user_id = ?
                  ORDER BY created_at DESC
                  LIMIT ?
              )
            """,
            (user_id, user_id, keep_last),
        )
        conn.commit()
        deleted = cursor.rowcount

    if deleted:
        logger.info("experiences_pruned", user_id=user_id, deleted=deleted, keep_last=keep_last)
    return deleted


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def get_experience_stats(user_id: str) -> dict[str, Any]:
    """
    Aggregate view of a user's experiences.

    average_reward, action_distribution and recent_trend cover the newest
    100 processed experiences. recent_trend is the relative change of the
    last 20 rewards against the 20 before them.
    """
    with store.connect() as conn:
        counts = conn.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN reward IS NOT NULL THEN 1 ELSE 0 END) AS processed
            FROM sage_experiences WHERE user_id = ?
            """,
            (user_id,),
        ).fetchone()

    processed = list_experiences(user_id, limit=STATS_WINDOW, processed_only=True)
    rewards = [e["reward"] for e in processed]

    distribution: dict[str, int] = {}
    for exp in processed:
        distribution[exp["action"]] = distribution.get(exp["action"], 0) + 1

    recent = rewards[:TREND_WINDOW]
    older = rewards[TREND_WINDOW : 2 * TREND_WINDOW]
    recent_avg = _mean(recent)
    older_avg = _mean(older) if older else recent_avg
    trend = (recent_avg - older_avg) / abs(older_avg) if older_avg != 0 else 0.0

    return {
        "total_experiences": counts["total"] or 0,
        "processed_experiences": counts["processed"] or 0,
        "average_reward": _mean(rewards),
        "action_distribution": distribution,
        "recent_trend": trend,
    }


# =============================================================================
# Offline replay
# =============================================================================


def _score(context: list[float], weights: list[float]) -> float:
    return sum(c * (weights[i] if i < len(weights) else 0.0) for i, c in enumerate(context))


def _greedy(context: list[float], weights: Mapping[str, list[float]]) -> tuple[str | None, float]:
    best_action, best_score = None, float("-inf")
    for action, w in weights.items():
        score = _score(context, w)
        if score > best_score:
            best_action, best_score = action, score
    return best_action, best_score


def evaluate_policy(
    experiences: Iterable[Mapping[str, Any]], weights: Mapping[str, list[float]]
) -> float:
    """
    Replay value of a weight set.

    Mean reward over the processed experiences where the greedy choice
    under these weights matches the action that was actually taken.
    """
    matched: list[float] = []
    for exp in experiences:
        if exp.get("reward") is None:
            continue
        best_action, _ = _greedy(exp["context_vector"], weights)
        if best_action == exp["action"]:
            matched.append(exp["reward"])
    return _mean(matched)


def calculate_regret(
    experiences: Iterable[Mapping[str, Any]], weights: Mapping[str, list[float]]
) -> float:
    """Mean gap between the best score and the chosen action's score."""
    gaps: list[float] = []
    for exp in experiences:
        context = exp["context_vector"]
        _, best_score = _greedy(context, weights)
        if best_score == float("-inf"):
            continue
        gaps.append(best_score - _score(context, weights.get(exp["action"], [])))
    return _mean(gaps)
