"""
Tool: Policy Weights Store
Purpose: Per-user, per-action weight vectors with optimistic concurrency

Each row carries a version. Writers read (weights, version), compute the
new vector, then write with

    UPDATE ... SET weights = ?, version = version + 1
    WHERE user_id = ? AND action_type = ? AND version = ?

If another writer got there first nothing is updated and WeightConflict
is raised. apply_update() wraps the read-mutate-write cycle and retries
conflicts with backoff, so two concurrent updates to the same (user,
action) both land instead of one overwriting the other.

Usage:
    from sage_engine.learning import weights_store

    weights_store.apply_update("alice", "nudge", lambda w: [x + 0.1 for x in w])
"""

from __future__ import annotations

import json
import random
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sage_engine import store
from sage_engine.errors import StoreFailure, WeightConflict
from sage_engine.learning import CONTEXT_VECTOR_LENGTH, LEGACY_ACTION_MAPPING, normalize_action
from sage_engine.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class WeightRow:
    user_id: str
    action: str
    weights: list[float]
    version: int


def _validate(weights: list[float]) -> list[float]:
    if len(weights) != CONTEXT_VECTOR_LENGTH:
        raise ValueError(
            f"Weight vector length {len(weights)} does not match {CONTEXT_VECTOR_LENGTH}"
        )
    return [float(x) for x in weights]


def _row_to_weight_row(row: sqlite3.Row) -> WeightRow:
    return WeightRow(
        user_id=row["user_id"],
        action=row["action_type"],
        weights=json.loads(row["weights"]),
        version=row["version"],
    )


def load_user_weights(user_id: str) -> dict[str, list[float]]:
    """
    All stored weight vectors for a user.

    Rows stored under legacy action names are mapped to current names;
    rows with an unexpected length are skipped and logged.
    """
    with store.connect() as conn:
        rows = conn.execute(
            "SELECT * FROM sage_policy_weights WHERE user_id = ?", (user_id,)
        ).fetchall()

    weights: dict[str, list[float]] = {}
    for row in rows:
        record = _row_to_weight_row(row)
        try:
            action = normalize_action(record.action)
        except ValueError:
            logger.warning("unknown_weight_action", user_id=user_id, action=record.action)
            continue
        if len(record.weights) != CONTEXT_VECTOR_LENGTH:
            logger.warning(
                "weight_length_mismatch",
                user_id=user_id,
                action=record.action,
                length=len(record.weights),
            )
            continue
        # A current-name row wins over its legacy alias
        if action in weights and record.action in LEGACY_ACTION_MAPPING:
            continue
        weights[action] = record.weights
    return weights


def get_weight_row(user_id: str, action: str) -> Optional[WeightRow]:
    with store.connect() as conn:
        row = conn.execute(
            "SELECT * FROM sage_policy_weights WHERE user_id = ? AND action_type = ?",
            (user_id, normalize_action(action)),
        ).fetchone()
    return _row_to_weight_row(row) if row else None


def get_legacy_weights(user_id: str, action: str) -> Optional[list[float]]:
    """Weights stored under a legacy alias of action, if any are usable."""
    aliases = [old for old, new in LEGACY_ACTION_MAPPING.items() if new == normalize_action(action)]
    if not aliases:
        return None

    placeholders = ", ".join("?" for _ in aliases)
    with store.connect() as conn:
        rows = conn.execute(
            f"""
            SELECT * FROM sage_policy_weights
            WHERE user_id = ? AND action_type IN ({placeholders})
            ORDER BY updated_at DESC
            """,
            (user_id, *aliases),
        ).fetchall()

    for row in rows:
        record = _row_to_weight_row(row)
        if len(record.weights) == CONTEXT_VECTOR_LENGTH:
            return record.weights
    return None


def save_weight_row(
    user_id: str,
    action: str,
    weights: list[float],
    expected_version: Optional[int],
    now: datetime | None = None,
) -> int:
    """
    Compare-and-swap write of one weight vector.

    Args:
        expected_version: Version that was read, or None when no row existed

    Returns:
        The new version

    Raises:
        WeightConflict: The row was created or changed by someone else
        ValueError: Wrong vector length or unknown action
    """
    action = normalize_action(action)
    payload = json.dumps(_validate(weights))
    updated_at = store.to_db_time(now or store.utcnow())

    with store.connect() as conn:
        if expected_version is None:
            try:
                conn.execute(
                    """
                    INSERT INTO sage_policy_weights
                    (user_id, action_type, weights, version, updated_at)
                    VALUES (?, ?, ?, 1, ?)
                    """,
                    (user_id, action, payload, updated_at),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise WeightConflict(f"Weights for {user_id}/{action} were created concurrently") from e
            return 1

        cursor = conn.execute(
            """
            UPDATE sage_policy_weights
            SET weights = ?, version = version + 1, updated_at = ?
            WHERE user_id = ? AND action_type = ? AND version = ?
            """,
            (payload, updated_at, user_id, action, expected_version),
        )
        conn.commit()
        if cursor.rowcount == 0:
            raise WeightConflict(
                f"Weights for {user_id}/{action} changed since version {expected_version}"
            )
        return expected_version + 1


def apply_update(
    user_id: str,
    action: str,
    mutate: Callable[[list[float]], list[float]],
    max_attempts: int | None = None,
    retry_delay: float | None = None,
    init_scale: float = 0.1,
    rng: random.Random | None = None,
) -> WeightRow:
    """
    Load, mutate and compare-and-swap one weight vector, retrying conflicts.

    A missing row starts from the weights stored under a legacy alias of
    the action, else from small random weights in
    [-init_scale/2, init_scale/2]. Either way the result is written under
    the current action name.

    Returns:
        The row as written

    Raises:
        StoreFailure: Still conflicting after max_attempts, or store error
    """
    action = normalize_action(action)
    rng = rng or random.Random()

    def attempt() -> WeightRow:
        current = get_weight_row(user_id, action)
        if current is None:
            base = get_legacy_weights(user_id, action)
            if base is None:
                half = init_scale / 2
                base = [rng.uniform(-half, half) for _ in range(CONTEXT_VECTOR_LENGTH)]
            expected = None
        else:
            base = list(current.weights)
            expected = current.version

        new_weights = _validate(mutate(base))
        version = save_weight_row(user_id, action, new_weights, expected)
        return WeightRow(user_id=user_id, action=action, weights=new_weights, version=version)

    try:
        return store.with_retry(attempt, max_retries=max_attempts, retry_delay=retry_delay)
    except WeightConflict as e:
        logger.error("weight_update_conflict", user_id=user_id, action=action, error=str(e))
        raise StoreFailure(f"Weight update kept conflicting: {e}", transient=True) from e

