"""
Evaluation Loop Configuration

Manages loading from environment variables and default values.
Provider settings are carried explicitly on JudgeSettings and handed to each
engine; nothing reads provider defaults from global state at call time.
"""

import os
from dataclasses import dataclass, field, asdict


def _env_bool(key: str, default: bool) -> bool:
    """Convert an environment variable to bool"""
    val = os.environ.get(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int) -> int:
    """Convert an environment variable to int"""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"The value '{val}' of environment variable '{key}' cannot be converted to an integer.")


def _env_float(key: str, default: float) -> float:
    """Convert an environment variable to float"""
    val = os.environ.get(key)
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"The value '{val}' of environment variable '{key}' cannot be converted to a number.")


def _env_str(key: str, default: str) -> str:
    """Get an environment variable as a string"""
    return os.environ.get(key, default)


def _env_optional_str(key: str) -> str | None:
    val = os.environ.get(key)
    return val or None


@dataclass
class JudgeSettings:
    """Provider, model and credentials for one judge client"""
    provider: str = "openai"  # openai / anthropic / vertex_ai
    model: str = "gpt-4o-2024-08-06"
    api_key: str | None = None
    base_url: str | None = None
    timeout_seconds: int = 60
    max_retries: int = 3  # batch job submit/poll/fetch; synchronous calls make one attempt
    retry_delay_seconds: float = 1.0
    max_tokens: int = 2048

    def to_safe_dict(self) -> dict:
        """Dictionary form with the API key masked"""
        data = asdict(self)
        if data["api_key"]:
            data["api_key"] = "***"
        return data


@dataclass
class EvaluationConfig:
    """Evaluation executor and sampler configuration"""
    max_attempts: int = 2
    correct_score_threshold: int = 8
    max_concurrency: int = 8
    lookback_days: int = 3
    claim_lease_seconds: int = 600


@dataclass
class BatchConfig:
    """Batch submission and reconciliation configuration"""
    enabled: bool = False
    window_days: int = 2
    max_batches_per_sweep: int = 50
    completion_window: str = "24h"


@dataclass
class InsightConfig:
    """Insight generator configuration"""
    max_attachments: int = 5
    max_insights_before_pause: int = 10
    max_problem_chars: int = 200
    max_solution_chars: int = 500
    max_description_chars: int = 800


@dataclass
class OptimizerConfig:
    """Prompt optimizer configuration"""
    insight_limit: int = 20
    challenger_percentage: int = 30


@dataclass
class ABConfig:
    """A/B comparison configuration"""
    sample_limit: int = 30


@dataclass
class LoopConfig:
    """Overall evaluation loop configuration"""
    judge: JudgeSettings = field(default_factory=JudgeSettings)
    evaluation: EvaluationConfig = field(default_factory=EvaluationConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    insights: InsightConfig = field(default_factory=InsightConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    ab_test: ABConfig = field(default_factory=ABConfig)

    def to_dict(self) -> dict:
        """Convert to dictionary format (API key masked)"""
        data = asdict(self)
        data["judge"] = self.judge.to_safe_dict()
        return {"loop_config": data}

    @classmethod
    def from_dict(cls, data: dict) -> "LoopConfig":
        """Create from dictionary (handles presence/absence of loop_config key)"""
        config_data = data.get("loop_config", data)
        return cls(
            judge=JudgeSettings(**config_data.get("judge", {})),
            evaluation=EvaluationConfig(**config_data.get("evaluation", {})),
            batch=BatchConfig(**config_data.get("batch", {})),
            insights=InsightConfig(**config_data.get("insights", {})),
            optimizer=OptimizerConfig(**config_data.get("optimizer", {})),
            ab_test=ABConfig(**config_data.get("ab_test", {})),
        )


def load_judge_settings(prefix: str = "JUDGE") -> JudgeSettings:
    """
    Load judge settings for one role from environment variables

    Args:
        prefix: Variable prefix, e.g. JUDGE (evaluation) or OPTIMIZER (prompt rewriting)

    Returns:
        JudgeSettings
    """
    defaults = JudgeSettings()
    return JudgeSettings(
        provider=_env_str(f"{prefix}_PROVIDER", defaults.provider),
        model=_env_str(f"{prefix}_MODEL", defaults.model),
        api_key=_env_optional_str(f"{prefix}_API_KEY"),
        base_url=_env_optional_str(f"{prefix}_BASE_URL"),
        timeout_seconds=_env_int(f"{prefix}_TIMEOUT_SECONDS", defaults.timeout_seconds),
        max_retries=_env_int(f"{prefix}_MAX_RETRIES", defaults.max_retries),
        retry_delay_seconds=_env_float(f"{prefix}_RETRY_DELAY_SECONDS", defaults.retry_delay_seconds),
        max_tokens=_env_int(f"{prefix}_MAX_TOKENS", defaults.max_tokens),
    )


def load_config() -> LoopConfig:
    """
    Load configuration from environment variables

    Uses default values when environment variables are not set.

    Returns:
        LoopConfig
    """
    evaluation = EvaluationConfig(
        max_attempts=_env_int("LOOP_MAX_ATTEMPTS", 2),
        correct_score_threshold=_env_int("LOOP_CORRECT_SCORE_THRESHOLD", 8),
        max_concurrency=_env_int("LOOP_MAX_CONCURRENCY", 8),
        lookback_days=_env_int("LOOP_LOOKBACK_DAYS", 3),
        claim_lease_seconds=_env_int("LOOP_CLAIM_LEASE_SECONDS", 600),
    )
    batch = BatchConfig(
        enabled=_env_bool("LOOP_BATCH_ENABLED", False),
        window_days=_env_int("LOOP_BATCH_WINDOW_DAYS", 2),
        max_batches_per_sweep=_env_int("LOOP_BATCH_MAX_PER_SWEEP", 50),
        completion_window=_env_str("LOOP_BATCH_COMPLETION_WINDOW", "24h"),
    )
    insights = InsightConfig(
        max_attachments=_env_int("LOOP_INSIGHT_MAX_ATTACHMENTS", 5),
        max_insights_before_pause=_env_int("LOOP_INSIGHT_PAUSE_AFTER", 10),
    )
    optimizer = OptimizerConfig(
        insight_limit=_env_int("LOOP_OPTIMIZER_INSIGHT_LIMIT", 20),
        challenger_percentage=_env_int("LOOP_CHALLENGER_PERCENTAGE", 30),
    )
    ab_test = ABConfig(
        sample_limit=_env_int("LOOP_AB_SAMPLE_LIMIT", 30),
    )
    return LoopConfig(
        judge=load_judge_settings("JUDGE"),
        evaluation=evaluation,
        batch=batch,
        insights=insights,
        optimizer=optimizer,
        ab_test=ab_test,
    )
