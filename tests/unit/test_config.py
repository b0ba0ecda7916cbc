"""Tests for sage_engine/config.py"""

import pytest
from pydantic import ValidationError

from sage_engine.config import CONFIG_PATH, PolicyConfig, SageConfig, load_config


class TestDefaults:
    def test_defaults(self):
        config = SageConfig()

        assert config.policy.learning_rate == 0.05
        assert config.policy.epsilon == 0.1
        assert config.arbiter.dedup_window_hours == 24
        assert config.reward.strategy == "impact"
        assert config.signals.overload_overdue == 5
        assert config.learning.keep_last_experiences == 500
        assert config.safety.enabled is True
        assert (config.safety.quiet_hours_start, config.safety.quiet_hours_end) == (22, 7)
        assert config.safety.max_actions_per_day == 5
        assert config.safety.min_data_quality == 0.3
        assert config.safety.max_consecutive_nudges == 3

    def test_epsilon_bounds(self):
        with pytest.raises(ValidationError):
            PolicyConfig(epsilon=1.5)

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            SageConfig.model_validate({"reward": {"strategy": "blended"}})


class TestLoadConfig:
    def test_shipped_file_loads(self):
        assert CONFIG_PATH.exists()

        config = load_config()

        assert isinstance(config, SageConfig)
        assert config.safety == SageConfig().safety

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")

        assert config == SageConfig()

    def test_sage_section(self, tmp_path):
        path = tmp_path / "sage.yaml"
        path.write_text("sage:\n  policy:\n    epsilon: 0.3\n  reward:\n    strategy: immediate\n")

        config = load_config(path)

        assert config.policy.epsilon == 0.3
        assert config.reward.strategy == "immediate"

    def test_top_level_keys(self, tmp_path):
        path = tmp_path / "sage.yaml"
        path.write_text("arbiter:\n  dedup_window_hours: 12\n")

        assert load_config(path).arbiter.dedup_window_hours == 12

    def test_invalid_values_fall_back_to_defaults(self, tmp_path):
        path = tmp_path / "sage.yaml"
        path.write_text("sage:\n  policy:\n    epsilon: 7\n")

        assert load_config(path) == SageConfig()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "sage.yaml"
        path.write_text("")

        assert load_config(path) == SageConfig()
