"""
Configuration models for args/sage.yaml.

Every tunable of the engine lives here with its default. A missing file
yields the defaults; a file that fails validation is logged and ignored.

Usage:
    from sage_engine.config import load_config

    config = load_config()
    config.policy.learning_rate
    config.signals.overload_overdue
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from sage_engine import ARGS_DIR
from sage_engine.logging_config import get_logger

logger = get_logger(__name__)

CONFIG_PATH = ARGS_DIR / "sage.yaml"


class PolicyConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    learning_rate: float = Field(default=0.05, gt=0)
    epsilon: float = Field(default=0.1, ge=0.0, le=1.0)
    init_scale: float = Field(default=0.1, ge=0)
    confidence_scale: float = Field(default=1.0, gt=0)
    seed: Optional[int] = None


class SignalThresholds(BaseModel):
    model_config = ConfigDict(extra="allow")
    fatigue_consistency: float = Field(default=0.4, ge=0.0, le=1.0)
    fatigue_completions: int = Field(default=3, ge=0)
    overload_overdue: int = Field(default=5, ge=0)
    overload_scale: float = Field(default=10.0, gt=0)
    disengagement_days: int = Field(default=3, ge=0)
    disengagement_scale: float = Field(default=7.0, gt=0)
    momentum_consistency: float = Field(default=0.8, ge=0.0, le=1.0)
    momentum_completions: int = Field(default=5, ge=0)
    relapse_churn: float = Field(default=0.6, ge=0.0, le=1.0)
    relapse_critical: float = Field(default=0.8, ge=0.0, le=1.0)


class ArbiterConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    dedup_window_hours: int = Field(default=24, ge=1)


class ImpactRewardWeights(BaseModel):
    model_config = ConfigDict(extra="allow")
    accepted: float = 1.0
    completed: float = 2.0
    rejected: float = -2.0
    ignored: float = -1.0
    momentum_delta: float = 1.5
    overdue_ratio_delta: float = -1.8
    habits_rate_delta: float = 1.2
    min_quality_factor: float = Field(default=0.25, ge=0.0, le=1.0)


class ImmediateRewardWeights(BaseModel):
    model_config = ConfigDict(extra="allow")
    accepted: float = 1.0
    not_accepted: float = -0.5
    completed: float = 2.0
    metric_delta: float = 1.5
    explicit_helpful: float = 1.0
    explicit_not_helpful: float = -1.5
    slow_response_penalty: float = -0.5
    slow_response_seconds: float = Field(default=3600.0, gt=0)


class RewardConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    strategy: str = Field(default="impact", pattern="^(impact|immediate)$")
    impact: ImpactRewardWeights = Field(default_factory=ImpactRewardWeights)
    immediate: ImmediateRewardWeights = Field(default_factory=ImmediateRewardWeights)


class LearningConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    batch_size: int = Field(default=200, ge=1)
    item_timeout_seconds: float = Field(default=30.0, gt=0)
    max_workers: int = Field(default=4, ge=1)
    keep_last_experiences: int = Field(default=500, ge=1)


class SafetyConfig(BaseModel):
    """Gate in front of the policy. Hours are UTC, quiet when hour >= start or < end."""

    model_config = ConfigDict(extra="allow")
    enabled: bool = True
    quiet_hours_start: int = Field(default=22, ge=0, le=23)
    quiet_hours_end: int = Field(default=7, ge=0, le=23)
    max_actions_per_day: int = Field(default=5, ge=0)
    min_data_quality: float = Field(default=0.3, ge=0.0, le=1.0)
    max_consecutive_nudges: int = Field(default=3, ge=0)


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    busy_timeout_ms: int = Field(default=5000, ge=0)
    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=0.05, ge=0)


class SageConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    signals: SignalThresholds = Field(default_factory=SignalThresholds)
    arbiter: ArbiterConfig = Field(default_factory=ArbiterConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    reward: RewardConfig = Field(default_factory=RewardConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


def load_config(path: Path | None = None) -> SageConfig:
    yaml_path = path or CONFIG_PATH

    try:
        if yaml_path.exists():
            with open(yaml_path) as f:
                raw = yaml.safe_load(f) or {}
        else:
            raw = {}

        return SageConfig.model_validate(raw.get("sage", raw))
    except Exception as e:
        logger.warning("config_validation_failed", path=str(yaml_path), error=str(e))
        return SageConfig()


__all__ = [
    "ArbiterConfig",
    "CONFIG_PATH",
    "ImmediateRewardWeights",
    "ImpactRewardWeights",
    "LearningConfig",
    "PolicyConfig",
    "RewardConfig",
    "SafetyConfig",
    "SageConfig",
    "SignalThresholds",
    "StoreConfig",
    "load_config",
]
