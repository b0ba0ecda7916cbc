"""Tests for sage_engine/behavior/metrics.py

The metrics aggregator builds a normalized FeatureSnapshot per user.
Key functionality:
- Neutral values when a source has no data
- data_quality as the fraction of sources present
- A failing source is treated as absent, never fatal
- vectorize() always yields 18 floats in [0, 1]
"""

import json
import sqlite3
from unittest.mock import patch

import pytest

from sage_engine.behavior import metrics
from sage_engine.behavior.metrics import (
    CONTEXT_VECTOR_LENGTH,
    FeatureSnapshot,
    calculate_burnout_risk,
    calculate_daily_rates,
    calculate_financial_health,
    calculate_momentum,
    calculate_variance,
    get_feature_snapshot,
    vectorize,
)


# ─────────────────────────────────────────────────────────────────────────────
# Empty / Neutral Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestNeutralSnapshot:
    """A user without any data gets neutral values."""

    def test_no_data_means_zero_quality(self, sage_db, mock_user_id, now):
        """No sources present yields data_quality 0."""
        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.data_quality == 0.0
        assert snapshot.sources_available == ()

    def test_neutral_defaults(self, sage_db, mock_user_id, now):
        """Missing sources fall back to documented neutral values."""
        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.habits_rate_7d == 0.0
        assert snapshot.momentum_index == 0.5
        assert snapshot.journal_sentiment_avg == pytest.approx(0.6)
        assert snapshot.financial_health == pytest.approx(0.3)
        assert snapshot.last_journal_mood == 3
        assert snapshot.days_since_last_activity == 30
        assert snapshot.churn_risk == 0.0

    def test_snapshot_is_immutable(self, sage_db, mock_user_id, now):
        """Snapshots are value objects."""
        snapshot = get_feature_snapshot(mock_user_id, now)

        with pytest.raises(AttributeError):
            snapshot.habits_rate_7d = 1.0


# ─────────────────────────────────────────────────────────────────────────────
# Source Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestHabitMetrics:
    def test_full_week_completion(self, seed, mock_user_id, now):
        """Every habit done every day is a 7-day rate of 1."""
        seed.habits(mock_user_id, count=2, completed_days=7)

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.habits_rate_7d == pytest.approx(1.0)
        assert snapshot.habits_done_today == 2
        assert snapshot.habits_total_today == 2
        assert snapshot.momentum_index == pytest.approx(0.5)
        assert "habits" in snapshot.sources_available

    def test_recent_streak_raises_momentum(self, seed, mock_user_id, now):
        """Last 3 days better than the 4 before pushes momentum up."""
        seed.habits(mock_user_id, count=2, completed_days=3)

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.habits_rate_7d == pytest.approx(6 / 14)
        assert snapshot.momentum_index == 1.0

    def test_habits_from_other_users_ignored(self, seed, mock_user_id, other_user_id, now):
        """Only the requested user's rows count."""
        seed.habits(other_user_id, count=3)

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.habits_rate_7d == 0.0
        assert "habits" not in snapshot.sources_available


class TestTaskMetrics:
    def test_task_counts_and_ratios(self, seed, mock_user_id, now):
        """Overdue, due today, pending and recent completions."""
        seed.tasks(mock_user_id, overdue=6, due_today=2, pending=1, done_recently=1)

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.overdue_tasks == 6
        assert snapshot.due_today == 2
        assert snapshot.pending_tasks == 9
        assert snapshot.recent_completions == 1
        assert snapshot.task_overdue_ratio == pytest.approx(0.6)
        assert snapshot.task_completion_rate == pytest.approx(0.1)

    def test_old_completions_not_recent(self, seed, mock_user_id, now):
        """Completions older than 7 days do not count as recent."""
        seed.tasks(mock_user_id, done_recently=2, done_long_ago=3)

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.recent_completions == 2
        assert snapshot.task_completion_rate == pytest.approx(1.0)


class TestOtherSources:
    def test_journal_mood(self, seed, mock_user_id, now):
        """Sentiment is mean mood / 5; last mood is the most recent entry."""
        seed.journal(mock_user_id, moods=[2, 4])

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.journal_sentiment_avg == pytest.approx(0.6)
        assert snapshot.last_journal_mood == 4

    def test_financial_health(self, seed, mock_user_id, now):
        """Savings rate plus 0.3 baseline."""
        seed.finance(mock_user_id, income=1000, expenses=500)

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.financial_health == pytest.approx(0.8)

    def test_days_inactive(self, seed, mock_user_id, now):
        seed.activity(mock_user_id, days_ago=5)

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.days_since_last_activity == 5

    def test_all_sources_full_quality(self, seed, mock_user_id, now):
        """Five present sources give data_quality 1.0."""
        seed.habits(mock_user_id)
        seed.tasks(mock_user_id, pending=1)
        seed.journal(mock_user_id, moods=[3])
        seed.finance(mock_user_id, income=100)
        seed.streak(mock_user_id, current=4)
        seed.activity(mock_user_id)
        seed.churn(mock_user_id, 0.2)

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.data_quality == pytest.approx(1.0)
        assert set(snapshot.sources_available) == {"habits", "tasks", "journal", "finance", "streak"}
        assert snapshot.current_streak == 4
        assert snapshot.churn_risk == pytest.approx(0.2)

    def test_activity_and_churn_do_not_count_as_sources(self, seed, mock_user_id, now):
        seed.activity(mock_user_id)
        seed.churn(mock_user_id, 0.9)

        snapshot = get_feature_snapshot(mock_user_id, now)

        assert snapshot.data_quality == 0.0


class TestFailingSource:
    def test_failing_source_treated_as_absent(self, seed, mock_user_id, now):
        """A source read error lowers data_quality instead of failing."""
        seed.journal(mock_user_id, moods=[5])
        seed.streak(mock_user_id, current=2)

        with patch.object(
            metrics, "_fetch_journal", side_effect=sqlite3.OperationalError("no such table")
        ):
            snapshot = get_feature_snapshot(mock_user_id, now)

        assert "journal" not in snapshot.sources_available
        assert "streak" in snapshot.sources_available
        assert snapshot.data_quality == pytest.approx(0.2)
        assert snapshot.journal_sentiment_avg == pytest.approx(0.6)


# ─────────────────────────────────────────────────────────────────────────────
# Vectorization Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestVectorize:
    def test_length_and_bounds(self, seed, mock_user_id, now):
        """Always 18 floats in [0, 1]."""
        seed.habits(mock_user_id)
        seed.tasks(mock_user_id, overdue=30, due_today=15, pending=40)
        seed.streak(mock_user_id, current=90)

        vector = vectorize(get_feature_snapshot(mock_user_id, now))

        assert len(vector) == CONTEXT_VECTOR_LENGTH
        assert all(0.0 <= x <= 1.0 for x in vector)

    def test_caps_applied(self, now):
        """Counts beyond their caps saturate at 1."""
        snapshot = FeatureSnapshot(
            user_id="u",
            timestamp=now,
            pending_tasks=100,
            due_today=50,
            current_streak=365,
            days_since_last_activity=30,
        )

        vector = vectorize(snapshot)

        assert vector[11] == 1.0
        assert vector[12] == 1.0
        assert vector[13] == 1.0
        assert vector[15] == 1.0

    def test_temporal_features(self, sage_db, mock_user_id, now):
        """Hour / 24, weekday / 7 (Monday = 0), weekend flag."""
        vector = vectorize(get_feature_snapshot(mock_user_id, now))

        assert vector[8] == pytest.approx(10 / 24)
        assert vector[9] == pytest.approx(2 / 7)
        assert vector[10] == 0.0

    def test_vectorize_is_pure(self, now):
        snapshot = FeatureSnapshot(user_id="u", timestamp=now, habits_rate_7d=0.4)

        assert vectorize(snapshot) == vectorize(snapshot)

    def test_to_dict_is_json_serializable(self, sage_db, mock_user_id, now):
        snapshot = get_feature_snapshot(mock_user_id, now)

        data = json.loads(json.dumps(snapshot.to_dict()))

        assert data["user_id"] == mock_user_id
        assert data["version"] == "v35"


# ─────────────────────────────────────────────────────────────────────────────
# Derived Metric Tests
# ─────────────────────────────────────────────────────────────────────────────


class TestDerivedMetrics:
    def test_daily_rates_most_recent_first(self, now):
        today = now.date()
        logs = [{"date": today.isoformat(), "completed": 1}]

        rates = calculate_daily_rates(logs, total_habits=2, today=today, days=3)

        assert rates == [0.5, 0.0, 0.0]

    def test_variance_normalized(self):
        assert calculate_variance([0.0, 1.0]) == pytest.approx(1.0)
        assert calculate_variance([0.5, 0.5]) == 0.0
        assert calculate_variance([]) == 0.0

    def test_momentum_neutral_without_history(self):
        assert calculate_momentum([]) == 0.5

    def test_burnout_risk(self):
        """Full workday due, long streak, all overdue, lowest sentiment."""
        risk = calculate_burnout_risk(480, 20, 1.0, 0.0)

        assert risk == pytest.approx(0.35 + 0.045 + 0.25 + 0.25)

    def test_financial_health_without_income(self):
        assert calculate_financial_health([]) == pytest.approx(0.3)
        assert calculate_financial_health([{"amount": -50, "type": "expense"}]) == pytest.approx(0.3)
