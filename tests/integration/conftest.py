"""
Integration test fixtures for Sage.

Provides fixtures specific to integration testing:
- A user with a realistic week of behavior data
- Seeded, exploration-free configuration
"""

import pytest

from sage_engine.config import SageConfig


# ─────────────────────────────────────────────────────────────────────────────
# Behavior Profiles
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def overloaded_user(seed, consenting_user) -> str:
    """Consenting user with a pile of overdue tasks and a patchy week."""
    seed.habits(consenting_user, count=2, completed_days=2)
    seed.tasks(consenting_user, overdue=7, due_today=1, pending=2, done_recently=1)
    seed.journal(consenting_user, [3, 2, 2])
    seed.streak(consenting_user, 1)
    seed.activity(consenting_user, days_ago=0.5)
    return consenting_user


@pytest.fixture
def flow_config() -> SageConfig:
    config = SageConfig()
    config.policy.epsilon = 0.0
    config.policy.seed = 42
    config.store.retry_delay = 0.0
    config.learning.max_workers = 2
    return config
