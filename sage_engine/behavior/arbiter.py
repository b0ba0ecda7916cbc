"""
Tool: Intervention Arbiter
Purpose: Resolve detected signals to at most one intervention per user

Priority is fixed and independent of signal scores:

    relapse_risk > overload > fatigue > disengagement > momentum

Each signal type maps to one intervention type with a message template
filled from the behavior context. The same (user, intervention type) is
never surfaced twice inside the dedup window (24h): the window lookup and
the insert run under the store write lock, and the UNIQUE
(user_id, intervention_type, dedup_key) index turns a concurrent duplicate
into a no-op.

Every detection pass is kept in behavior_signals for audit, whether or
not an intervention comes out of it. Audit writes are best-effort.

Usage:
    from sage_engine.behavior.arbiter import run_detection, update_intervention_status

    result = run_detection("alice")
    result["intervention"]      # dict or None
    update_intervention_status(result["intervention"]["id"], "alice", "applied")

Output:
    dict results with success status and data
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any

from sage_engine import store
from sage_engine.behavior import INTERVENTION_STATUSES, TERMINAL_STATUSES
from sage_engine.behavior.metrics import get_feature_snapshot
from sage_engine.behavior.signals import BehaviorContext, Signal, SignalType, detect_signals
from sage_engine.config import SageConfig, load_config
from sage_engine.errors import NotAuthenticated, NotFound, SageError, error_result
from sage_engine.logging_config import get_logger

logger = get_logger(__name__)

SIGNAL_SOURCE = "behavior-engine"

INTERVENTION_FOR_SIGNAL = {
    SignalType.RELAPSE_RISK: "warning",
    SignalType.OVERLOAD: "restructure",
    SignalType.FATIGUE: "motivation",
    SignalType.DISENGAGEMENT: "challenge",
    SignalType.MOMENTUM: "praise",
}

MESSAGE_TEMPLATES = {
    "warning": (
        "I'm noticing a risk of drifting away. You've done {recent_completions} "
        "actions this week. Pick ONE habit to focus on today. Which one?"
    ),
    "restructure": (
        "You have {overdue_count} overdue tasks. That's a lot to carry. I can push "
        "the least urgent ones back so you focus on the 3 that matter most. "
        "Want me to restructure your list?"
    ),
    "motivation": (
        "Your consistency is at {consistency_pct}%. Slowing down happens. One small "
        "action today can restart things. What would feel easy and satisfying?"
    ),
    "challenge": (
        "It's been {days_inactive} days since we last checked in. Small challenge: "
        "one habit and one task today. Just that. Up for it?"
    ),
    "praise": (
        "{recent_completions} actions this week at {consistency_pct}% consistency. "
        "You're building something real. Keep going!"
    ),
}


def signal_priority(signal_type: SignalType | str) -> int:
    """Rank of a signal type, 0 is the most urgent."""
    return SignalType(signal_type).priority


def select_primary_signal(signals: list[Signal]) -> Signal | None:
    """Highest-priority signal present, regardless of score."""
    return min(signals, key=lambda s: signal_priority(s.type), default=None)


def build_intervention(signals: list[Signal], context: BehaviorContext) -> dict[str, Any] | None:
    """
    Turn signals into an intervention proposal. Pure, nothing is stored.

    Returns:
        dict with type, signal_type and message, or None without signals
    """
    primary = select_primary_signal(signals)
    if primary is None:
        return None

    intervention_type = INTERVENTION_FOR_SIGNAL[primary.type]
    message = MESSAGE_TEMPLATES[intervention_type].format(
        recent_completions=context.recent_completions,
        overdue_count=context.overdue_count,
        days_inactive=context.days_inactive,
        consistency_pct=round(context.consistency * 100),
    )
    return {
        "type": intervention_type,
        "signal_type": primary.type.value,
        "message": message,
    }


def _intervention_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    return {
        "id": d["id"],
        "user_id": d["user_id"],
        "type": d["intervention_type"],
        "signal_type": d["signal_type"],
        "message": d["ai_message"],
        "status": d["user_action"],
        "context": json.loads(d["context"]) if d["context"] else {},
        "created_at": d["created_at"],
        "resolved_at": d["resolved_at"],
    }


def record_signals(user_id: str, signals: list[Signal], now: datetime | None = None) -> int:
    """
    Persist a detection pass for audit. Best-effort: failures are logged.

    Returns:
        Number of signal rows written
    """
    if not signals:
        return 0

    created_at = store.to_db_time(now or store.utcnow())
    rows = [
        (
            store.generate_id(),
            user_id,
            s.type.value,
            s.score,
            SIGNAL_SOURCE,
            json.dumps(s.metadata),
            created_at,
        )
        for s in signals
    ]

    try:
        with store.connect() as conn:
            conn.executemany(
                """
                INSERT INTO behavior_signals
                (id, user_id, signal_type, score, source, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            conn.commit()
    except SageError as e:
        logger.warning("signal_audit_failed", user_id=user_id, count=len(rows), error=str(e))
        return 0

    return len(rows)


def _create_or_reuse(
    user_id: str,
    proposal: dict[str, Any],
    context: BehaviorContext,
    now: datetime,
    window_hours: int,
) -> tuple[dict[str, Any], bool]:
    """Insert a pending intervention unless one exists in the window."""
    created_at = store.to_db_time(now)
    window_start = store.to_db_time(now - timedelta(hours=window_hours))
    dedup_key = now.astimezone(timezone.utc).date().isoformat()
    intervention_id = store.generate_id()

    with store.connect() as conn:
        with store.transaction(conn, immediate=True):
            existing = conn.execute(
                """
                SELECT * FROM ai_interventions
                WHERE user_id = ? AND intervention_type = ? AND created_at >= ?
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, proposal["type"], window_start),
            ).fetchone()
            if existing:
                return _intervention_to_dict(existing), True

            cursor = conn.execute(
                """
                INSERT INTO ai_interventions
                (id, user_id, intervention_type, signal_type, ai_message, context,
                 user_action, dedup_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)
                ON CONFLICT(user_id, intervention_type, dedup_key) DO NOTHING
                """,
                (
                    intervention_id,
                    user_id,
                    proposal["type"],
                    proposal["signal_type"],
                    proposal["message"],
                    json.dumps(context.to_dict()),
                    dedup_key,
                    created_at,
                ),
            )

            if cursor.rowcount == 0:
                row = conn.execute(
                    """
                    SELECT * FROM ai_interventions
                    WHERE user_id = ? AND intervention_type = ? AND dedup_key = ?
                    """,
                    (user_id, proposal["type"], dedup_key),
                ).fetchone()
                return _intervention_to_dict(row), True

            row = conn.execute(
                "SELECT * FROM ai_interventions WHERE id = ?", (intervention_id,)
            ).fetchone()
            return _intervention_to_dict(row), False


def arbitrate(
    user_id: str,
    signals: list[Signal],
    context: BehaviorContext,
    now: datetime | None = None,
    config: SageConfig | None = None,
) -> dict[str, Any]:
    """
    Record signals, resolve them to one intervention, and persist it once.

    Args:
        user_id: User identifier
        signals: Signals from detect_signals
        context: The behavior context the signals came from
        now: Reference time (defaults to current UTC time)
        config: Engine configuration

    Returns:
        dict with success, intervention (or None) and deduplicated flag
    """
    if not user_id:
        return error_result(NotAuthenticated("user_id is required"))

    config = config or load_config()
    now = now or store.utcnow()

    signals_recorded = record_signals(user_id, signals, now)

    proposal = build_intervention(signals, context)
    if proposal is None:
        return {
            "success": True,
            "intervention": None,
            "deduplicated": False,
            "signals_recorded": signals_recorded,
        }

    try:
        intervention, deduplicated = store.with_retry(
            _create_or_reuse,
            user_id,
            proposal,
            context,
            now,
            config.arbiter.dedup_window_hours,
            max_retries=config.store.max_retries,
            retry_delay=config.store.retry_delay,
        )
    except SageError as e:
        logger.error("intervention_create_failed", user_id=user_id, error=str(e))
        return error_result(e, signals_recorded=signals_recorded)

    if deduplicated:
        logger.info(
            "intervention_deduplicated",
            user_id=user_id,
            intervention_id=intervention["id"],
            intervention_type=intervention["type"],
        )
    else:
        logger.info(
            "intervention_created",
            user_id=user_id,
            intervention_id=intervention["id"],
            intervention_type=intervention["type"],
            signal_type=proposal["signal_type"],
        )

    return {
        "success": True,
        "intervention": intervention,
        "deduplicated": deduplicated,
        "signals_recorded": signals_recorded,
    }


def run_detection(
    user_id: str, now: datetime | None = None, config: SageConfig | None = None
) -> dict[str, Any]:
    """
    Full detection pass: snapshot, context, signals, arbitration.

    Returns:
        arbitrate() result plus the signals and context used
    """
    if not user_id:
        return error_result(NotAuthenticated("user_id is required"))

    config = config or load_config()
    now = now or store.utcnow()

    try:
        snapshot = get_feature_snapshot(user_id, now)
    except SageError as e:
        return error_result(e)

    context = BehaviorContext.from_snapshot(snapshot)
    signals = detect_signals(context, config.signals)

    result = arbitrate(user_id, signals, context, now=now, config=config)
    result["signals"] = [s.to_dict() for s in signals]
    result["context"] = context.to_dict()
    return result


def update_intervention_status(
    intervention_id: str, user_id: str, status: str, now: datetime | None = None
) -> dict[str, Any]:
    """
    Move a pending intervention to a terminal status.

    Terminal statuses (applied, ignored, rejected) are final.
    """
    if not user_id:
        return error_result(NotAuthenticated("user_id is required"))

    if status not in TERMINAL_STATUSES:
        return {
            "success": False,
            "error": f"Invalid status. Must be one of: {list(TERMINAL_STATUSES)}",
        }

    resolved_at = store.to_db_time(now or store.utcnow())

    try:
        with store.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE ai_interventions
                SET user_action = ?, resolved_at = ?
                WHERE id = ? AND user_id = ? AND user_action = 'pending'
                """,
                (status, resolved_at, intervention_id, user_id),
            )
            conn.commit()

            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT user_action FROM ai_interventions WHERE id = ? AND user_id = ?",
                    (intervention_id, user_id),
                ).fetchone()
                if row is None:
                    raise NotFound(f"Intervention not found: {intervention_id}")
                return {
                    "success": False,
                    "error": f"Intervention already {row['user_action']}",
                    "status": row["user_action"],
                }
    except SageError as e:
        return error_result(e)

    logger.info("intervention_resolved", intervention_id=intervention_id, status=status)
    return {"success": True, "intervention_id": intervention_id, "status": status}


def list_interventions(
    user_id: str, status: str | None = None, limit: int = 20
) -> dict[str, Any]:
    """List a user's interventions, newest first."""
    if status is not None and status not in INTERVENTION_STATUSES:
        return {
            "success": False,
            "error": f"Invalid status. Must be one of: {list(INTERVENTION_STATUSES)}",
        }

    query = "SELECT * FROM ai_interventions WHERE user_id = ?"
    params: list[Any] = [user_id]
    if status:
        query += " AND user_action = ?"
        params.append(status)
    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)

    try:
        with store.connect() as conn:
            rows = conn.execute(query, params).fetchall()
    except SageError as e:
        return error_result(e)

    return {"success": True, "interventions": [_intervention_to_dict(r) for r in rows]}
