"""
config/settings.py — FitCoach Runtime Settings

Merges config.yaml (defaults/structure) with .env / environment (secrets).
Pydantic-powered — all fields are validated and typed.

  - ExecutorConfig carries the default retry + circuit-breaker policy applied
    to every tool that does not declare its own
  - MatcherConfig exposes every matching threshold and weight so the
    heuristics can be tuned without code changes
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a numbered list of every problem found
  - load_settings() respects FITCOACH_CONFIG as a fallback when no explicit
    config_path argument is given

There is no module-level singleton: callers load Settings once and pass it
to kernel.bootstrap.build_stack().
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_STORE_BACKENDS = {"memory", "sqlite"}


def _unit_interval(v: float, name: str) -> float:
    if not (0.0 <= v <= 1.0):
        raise ValueError(f"{name} must be between 0.0 and 1.0, got {v}")
    return v


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class CompletionConfig(BaseModel):
    """OpenAI-compatible chat completion endpoint."""
    base_url: Optional[str] = None          # None = official OpenAI endpoint
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 1024
    timeout_seconds: float = 30.0

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("completion.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("completion.max_tokens must be >= 1")
        return v


class RetrySettings(BaseModel):
    """Default exponential backoff for tool execution."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_errors: List[str] = Field(
        default_factory=lambda: ["timeout", "network", "temporary", "rate limit"]
    )

    @field_validator("max_retries")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("executor.retry.max_retries must be >= 0")
        return v


class CircuitBreakerSettings(BaseModel):
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    monitoring_window: float = 120.0

    @field_validator("failure_threshold")
    @classmethod
    def _positive_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError("executor.circuit_breaker.failure_threshold must be >= 1")
        return v


class ExecutorConfig(BaseModel):
    tool_timeout_seconds: float = 30.0
    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)


class SemanticWeights(BaseModel):
    """Per-hit weights of the keyword-overlap scorer."""
    muscle: float = 0.3
    equipment: float = 0.2
    name: float = 0.4


class MatcherConfig(BaseModel):
    min_confidence: float = 0.7
    alias_confidence: float = 0.95
    fuzzy_threshold: float = 0.7
    fuzzy_multiplier: float = 0.9
    semantic_threshold: float = 0.6
    semantic_multiplier: float = 0.8
    multi_fuzzy_threshold: float = 0.6
    multi_fuzzy_multiplier: float = 0.85
    multi_semantic_threshold: float = 0.5
    multi_semantic_multiplier: float = 0.75
    multi_alias_threshold: float = 0.8
    multi_alias_confidence: float = 0.9
    per_stage_limit: int = 10
    related_fallback_confidence: float = 0.5
    default_fallback_confidence: float = 0.4
    weights: SemanticWeights = Field(default_factory=SemanticWeights)

    @model_validator(mode="after")
    def _thresholds_in_range(self) -> "MatcherConfig":
        for name in (
            "min_confidence", "alias_confidence", "fuzzy_threshold",
            "semantic_threshold", "multi_fuzzy_threshold",
            "multi_semantic_threshold", "multi_alias_threshold",
        ):
            _unit_interval(getattr(self, name), f"matcher.{name}")
        return self


class ConversationConfig(BaseModel):
    history_limit: int = 50
    context_window_messages: int = 5
    max_context_chars: int = 2000
    max_message_chars: int = 240
    max_cached_sessions: int = 1000

    @field_validator("history_limit", "context_window_messages", "max_cached_sessions")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("conversation window and cache sizes must be >= 1")
        return v

    @field_validator("max_context_chars")
    @classmethod
    def _sane_budget(cls, v: int) -> int:
        if v < 200:
            raise ValueError("conversation.max_context_chars must be >= 200")
        return v


class OrchestratorConfig(BaseModel):
    max_confidence: float = 0.95
    no_success_confidence: float = 0.1
    failure_confidence: float = 0.3
    synthesize_with_completion: bool = True


class StoreConfig(BaseModel):
    backend: str = "memory"
    sqlite_path: str = "./data/sqlite/sessions.db"

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, v: str) -> str:
        if v not in _VALID_STORE_BACKENDS:
            raise ValueError(
                f"store.backend '{v}' is not supported. "
                f"Supported: {sorted(_VALID_STORE_BACKENDS)}"
            )
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    FitCoach runtime settings.

    Priority (highest to lowest):
      1. Environment variables (FITCOACH_<SECTION>__<FIELD>)
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FITCOACH_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")

    # -- Structured config (from config.yaml) --------------------------------
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    matcher: MatcherConfig = Field(default_factory=MatcherConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        catches cross-field problems (API key presence, retry delays that can
        never grow, a window larger than the history it slides over).
        """
        errors: list[str] = []

        # ── Completion endpoint credentials ──────────────────────────────────
        if self.completion.base_url is None and not self.openai_api_key:
            errors.append(
                "completion.base_url is unset (official OpenAI endpoint) but "
                "OPENAI_API_KEY is missing from the environment / .env file."
            )

        # ── Retry policy ─────────────────────────────────────────────────────
        retry = self.executor.retry
        if retry.max_delay < retry.base_delay:
            errors.append(
                f"executor.retry.max_delay ({retry.max_delay}) must be >= "
                f"executor.retry.base_delay ({retry.base_delay})."
            )
        if retry.backoff_multiplier < 1.0:
            errors.append("executor.retry.backoff_multiplier must be >= 1.0.")

        # ── Circuit breaker ──────────────────────────────────────────────────
        cb = self.executor.circuit_breaker
        if cb.monitoring_window < cb.reset_timeout:
            errors.append(
                "executor.circuit_breaker.monitoring_window must be >= reset_timeout."
            )

        # ── Conversation window ──────────────────────────────────────────────
        conv = self.conversation
        if conv.context_window_messages > conv.history_limit:
            errors.append(
                "conversation.context_window_messages cannot exceed "
                "conversation.history_limit."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nFitCoach startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {
    "completion", "executor", "matcher", "conversation",
    "orchestrator", "store", "logging",
}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. FITCOACH_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("FITCOACH_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    yaml_data: dict[str, Any] = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
    return Settings(**init_kwargs)
