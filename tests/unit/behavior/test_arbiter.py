"""Tests for sage_engine/behavior/arbiter.py

The arbiter picks at most one intervention from co-firing signals.
Key functionality:
- Fixed priority, independent of scores
- One intervention per (user, type) per 24h
- Signals always kept for audit, best-effort
- Terminal statuses are final
"""

import sqlite3
from datetime import timedelta
from unittest.mock import patch

import pytest

from sage_engine.behavior import arbiter
from sage_engine.behavior.arbiter import (
    arbitrate,
    build_intervention,
    list_interventions,
    run_detection,
    select_primary_signal,
    signal_priority,
    update_intervention_status,
)
from sage_engine.behavior.signals import BehaviorContext, Signal, SignalType
from sage_engine.errors import StoreFailure


def make_context(**overrides) -> BehaviorContext:
    values = {
        "consistency": 0.3,
        "overdue_count": 7,
        "days_inactive": 0,
        "churn_risk": 0.1,
        "recent_completions": 1,
    }
    values.update(overrides)
    return BehaviorContext(**values)


def signal(kind: SignalType, score: float = 0.5) -> Signal:
    return Signal(type=kind, score=score)


def count_rows(store, table: str, user_id: str) -> int:
    with store.connect() as conn:
        return conn.execute(
            f"SELECT COUNT(*) AS n FROM {table} WHERE user_id = ?", (user_id,)
        ).fetchone()["n"]


# ─────────────────────────────────────────────────────────────────────────────
# Priority Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestPriority:
    def test_priority_ranking(self):
        ranked = sorted(
            ["momentum", "fatigue", "relapse_risk", "disengagement", "overload"],
            key=signal_priority,
        )

        assert ranked == ["relapse_risk", "overload", "fatigue", "disengagement", "momentum"]

    def test_priority_beats_score(self):
        """Low-score overload wins over high-score fatigue."""
        primary = select_primary_signal(
            [signal(SignalType.FATIGUE, 0.99), signal(SignalType.OVERLOAD, 0.1)]
        )

        assert primary.type is SignalType.OVERLOAD

    def test_no_signals(self):
        assert select_primary_signal([]) is None
        assert build_intervention([], make_context()) is None


class TestBuildIntervention:
    @pytest.mark.parametrize(
        "kind,expected",
        [
            (SignalType.RELAPSE_RISK, "warning"),
            (SignalType.OVERLOAD, "restructure"),
            (SignalType.FATIGUE, "motivation"),
            (SignalType.DISENGAGEMENT, "challenge"),
            (SignalType.MOMENTUM, "praise"),
        ],
    )
    def test_mapping(self, kind, expected):
        proposal = build_intervention([signal(kind)], make_context())

        assert proposal["type"] == expected
        assert proposal["signal_type"] == kind.value

    def test_message_filled_from_context(self):
        proposal = build_intervention([signal(SignalType.OVERLOAD)], make_context(overdue_count=9))

        assert "9 overdue tasks" in proposal["message"]

    def test_consistency_as_percentage(self):
        proposal = build_intervention([signal(SignalType.FATIGUE)], make_context(consistency=0.25))

        assert "25%" in proposal["message"]


# ─────────────────────────────────────────────────────────────────────────────
# Arbitration Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestArbitrate:
    def test_fatigue_and_overload_yield_restructure(self, sage_db, mock_user_id, now):
        """Co-firing fatigue + overload resolve to one restructure."""
        signals = [signal(SignalType.FATIGUE, 0.7), signal(SignalType.OVERLOAD, 0.7)]

        result = arbitrate(mock_user_id, signals, make_context(), now=now)

        assert result["success"] is True
        assert result["deduplicated"] is False
        assert result["intervention"]["type"] == "restructure"
        assert result["intervention"]["status"] == "pending"
        assert count_rows(sage_db, "ai_interventions", mock_user_id) == 1
        assert count_rows(sage_db, "behavior_signals", mock_user_id) == 2

    def test_no_signals_no_intervention(self, sage_db, mock_user_id, now):
        result = arbitrate(mock_user_id, [], make_context(), now=now)

        assert result["success"] is True
        assert result["intervention"] is None
        assert count_rows(sage_db, "ai_interventions", mock_user_id) == 0

    def test_dedup_within_window(self, sage_db, mock_user_id, now):
        """A second identical pass 2 hours later returns the same row."""
        signals = [signal(SignalType.OVERLOAD)]
        first = arbitrate(mock_user_id, signals, make_context(), now=now)

        second = arbitrate(mock_user_id, signals, make_context(), now=now + timedelta(hours=2))

        assert second["deduplicated"] is True
        assert second["intervention"]["id"] == first["intervention"]["id"]
        assert count_rows(sage_db, "ai_interventions", mock_user_id) == 1

    def test_signals_recorded_even_when_deduplicated(self, sage_db, mock_user_id, now):
        signals = [signal(SignalType.OVERLOAD)]
        arbitrate(mock_user_id, signals, make_context(), now=now)
        arbitrate(mock_user_id, signals, make_context(), now=now + timedelta(hours=1))

        assert count_rows(sage_db, "behavior_signals", mock_user_id) == 2

    def test_new_intervention_after_window(self, sage_db, mock_user_id, now):
        signals = [signal(SignalType.OVERLOAD)]
        first = arbitrate(mock_user_id, signals, make_context(), now=now)

        later = arbitrate(mock_user_id, signals, make_context(), now=now + timedelta(hours=25))

        assert later["deduplicated"] is False
        assert later["intervention"]["id"] != first["intervention"]["id"]

    def test_different_type_not_deduplicated(self, sage_db, mock_user_id, now):
        arbitrate(mock_user_id, [signal(SignalType.OVERLOAD)], make_context(), now=now)

        result = arbitrate(
            mock_user_id, [signal(SignalType.MOMENTUM)], make_context(), now=now + timedelta(hours=1)
        )

        assert result["deduplicated"] is False
        assert result["intervention"]["type"] == "praise"

    def test_users_isolated(self, sage_db, mock_user_id, other_user_id, now):
        signals = [signal(SignalType.OVERLOAD)]
        arbitrate(mock_user_id, signals, make_context(), now=now)

        result = arbitrate(other_user_id, signals, make_context(), now=now)

        assert result["deduplicated"] is False

    def test_signal_audit_failure_is_swallowed(self, sage_db, mock_user_id, now):
        """Audit write failures never block the intervention."""
        with patch.object(arbiter, "record_signals", return_value=0):
            result = arbitrate(mock_user_id, [signal(SignalType.OVERLOAD)], make_context(), now=now)

        assert result["success"] is True
        assert result["signals_recorded"] == 0

    def test_record_signals_logs_store_failure(self, sage_db, mock_user_id, now):
        with patch.object(arbiter.store, "connect", side_effect=StoreFailure("disk full")):
            recorded = arbiter.record_signals(mock_user_id, [signal(SignalType.FATIGUE)], now)

        assert recorded == 0

    def test_unique_key_backstop(self, sage_db, mock_user_id, now):
        """A row that escapes the window lookup still collides on dedup_key."""
        first = arbitrate(mock_user_id, [signal(SignalType.OVERLOAD)], make_context(), now=now)

        # Window of 1h: the earlier row is outside it but has the same UTC date
        from sage_engine.config import SageConfig

        config = SageConfig()
        config.arbiter.dedup_window_hours = 1
        result = arbitrate(
            mock_user_id,
            [signal(SignalType.OVERLOAD)],
            make_context(),
            now=now + timedelta(hours=3),
            config=config,
        )

        assert result["deduplicated"] is True
        assert result["intervention"]["id"] == first["intervention"]["id"]
        assert count_rows(sage_db, "ai_interventions", mock_user_id) == 1

    def test_requires_user(self, sage_db, now):
        result = arbitrate("", [signal(SignalType.OVERLOAD)], make_context(), now=now)

        assert result["success"] is False
        assert result["error_type"] == "NotAuthenticated"

    def test_store_failure_reported(self, sage_db, mock_user_id, now):
        with patch.object(
            arbiter, "_create_or_reuse", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            result = arbitrate(mock_user_id, [signal(SignalType.OVERLOAD)], make_context(), now=now)

        assert result["success"] is False
        assert result["error_type"] == "StoreFailure"


# ─────────────────────────────────────────────────────────────────────────────
# Status Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestStatus:
    def _create(self, user_id, now):
        result = arbitrate(user_id, [signal(SignalType.OVERLOAD)], make_context(), now=now)
        return result["intervention"]["id"]

    def test_pending_to_applied(self, sage_db, mock_user_id, now):
        intervention_id = self._create(mock_user_id, now)

        result = update_intervention_status(intervention_id, mock_user_id, "applied")

        assert result["success"] is True
        listed = list_interventions(mock_user_id)["interventions"]
        assert listed[0]["status"] == "applied"
        assert listed[0]["resolved_at"] is not None

    def test_terminal_status_is_final(self, sage_db, mock_user_id, now):
        intervention_id = self._create(mock_user_id, now)
        update_intervention_status(intervention_id, mock_user_id, "ignored")

        result = update_intervention_status(intervention_id, mock_user_id, "applied")

        assert result["success"] is False
        assert result["status"] == "ignored"

    def test_cannot_move_back_to_pending(self, sage_db, mock_user_id, now):
        intervention_id = self._create(mock_user_id, now)

        result = update_intervention_status(intervention_id, mock_user_id, "pending")

        assert result["success"] is False
        assert "Invalid status" in result["error"]

    def test_missing_intervention(self, sage_db, mock_user_id):
        result = update_intervention_status("nope", mock_user_id, "applied")

        assert result["success"] is False
        assert result["error_type"] == "NotFound"

    def test_other_users_intervention_not_found(self, sage_db, mock_user_id, other_user_id, now):
        intervention_id = self._create(mock_user_id, now)

        result = update_intervention_status(intervention_id, other_user_id, "applied")

        assert result["error_type"] == "NotFound"

    def test_list_filters_by_status(self, sage_db, mock_user_id, now):
        self._create(mock_user_id, now)

        assert len(list_interventions(mock_user_id, status="pending")["interventions"]) == 1
        assert list_interventions(mock_user_id, status="applied")["interventions"] == []


# ─────────────────────────────────────────────────────────────────────────────
# Full Detection Pass
# ─────────────────────────────────────────────────────────────────────────────


class TestRunDetection:
    def test_overloaded_user_gets_restructure(self, seed, mock_user_id, now, sage_config):
        seed.tasks(mock_user_id, overdue=7)
        seed.activity(mock_user_id)

        result = run_detection(mock_user_id, now=now, config=sage_config)

        assert result["success"] is True
        assert "overload" in [s["type"] for s in result["signals"]]
        assert result["intervention"]["type"] == "restructure"

    def test_inactive_user_gets_challenge(self, seed, mock_user_id, now, sage_config):
        seed.habits(mock_user_id, count=1, completed_days=7)
        seed.tasks(mock_user_id, done_recently=4)
        seed.activity(mock_user_id, days_ago=5)

        result = run_detection(mock_user_id, now=now, config=sage_config)

        assert result["intervention"]["type"] == "challenge"

    def test_relapse_risk_wins(self, seed, mock_user_id, now, sage_config):
        seed.tasks(mock_user_id, overdue=7)
        seed.churn(mock_user_id, 0.9)

        result = run_detection(mock_user_id, now=now, config=sage_config)

        assert result["intervention"]["type"] == "warning"
