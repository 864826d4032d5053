"""
tests/unit/test_config.py — Settings Tests

Covers:
  - defaults are valid and match the documented thresholds
  - field validators: log level, store backend, matcher thresholds
  - validate_all(): every cross-field problem reported in one ConfigError
  - load_settings(): explicit path > FITCOACH_CONFIG > config/config.yaml,
    unknown yaml sections ignored, environment overrides
"""

from __future__ import annotations

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from fitcoach.config.settings import ConfigError, Settings, load_settings
from fitcoach.tools.types import CircuitBreakerConfig, RetryConfig


# ── Helpers ───────────────────────────────────────────────────────────────────

def _write_yaml(path, data) -> str:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


# ── Defaults / field validation ───────────────────────────────────────────────

class TestDefaults:
    def test_defaults(self):
        s = Settings()
        assert s.openai_api_key is None
        assert s.matcher.min_confidence == 0.7
        assert s.matcher.alias_confidence == 0.95
        assert s.executor.retry.max_retries == 3
        assert s.executor.circuit_breaker.failure_threshold == 5
        assert s.orchestrator.max_confidence == 0.95
        assert s.store.backend == "memory"
        assert s.log_level == "INFO"

    def test_executor_policies_from_settings(self):
        s = Settings()
        retry = RetryConfig.from_settings(s.executor.retry)
        assert retry.max_retries == 3
        assert retry.base_delay == 1.0
        circuit = CircuitBreakerConfig.from_settings(s.executor.circuit_breaker)
        assert circuit.failure_threshold == 5

    def test_log_level_normalized(self):
        assert Settings(logging={"level": "debug"}).log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(PydanticValidationError):
            Settings(logging={"level": "LOUD"})

    def test_unknown_store_backend(self):
        with pytest.raises(PydanticValidationError):
            Settings(store={"backend": "redis"})

    def test_matcher_threshold_out_of_range(self):
        with pytest.raises(PydanticValidationError):
            Settings(matcher={"min_confidence": 1.5})


# ── validate_all ──────────────────────────────────────────────────────────────

class TestValidateAll:
    def test_missing_api_key(self):
        with pytest.raises(ConfigError) as exc_info:
            Settings().validate_all()
        assert "OPENAI_API_KEY" in str(exc_info.value)

    def test_custom_endpoint_needs_no_key(self):
        Settings(completion={"base_url": "http://localhost:11434/v1"}).validate_all()

    def test_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        s = Settings()
        assert s.openai_api_key == "sk-test"
        s.validate_all()

    def test_all_problems_reported(self):
        s = Settings(
            executor={
                "retry": {"base_delay": 5.0, "max_delay": 1.0, "backoff_multiplier": 0.5},
                "circuit_breaker": {"reset_timeout": 60.0, "monitoring_window": 10.0},
            },
            conversation={"history_limit": 3, "context_window_messages": 5},
        )
        with pytest.raises(ConfigError) as exc_info:
            s.validate_all()
        message = str(exc_info.value)
        assert "5 configuration problem(s)" in message
        assert "max_delay" in message
        assert "backoff_multiplier" in message
        assert "monitoring_window" in message
        assert "context_window_messages" in message


# ── load_settings ─────────────────────────────────────────────────────────────

class TestLoadSettings:
    def test_explicit_path(self, tmp_path):
        path = _write_yaml(tmp_path / "c.yaml", {
            "matcher": {"min_confidence": 0.65},
            "orchestrator": {"synthesize_with_completion": False},
            "not_a_section": {"x": 1},
        })
        s = load_settings(path)
        assert s.matcher.min_confidence == 0.65
        assert s.orchestrator.synthesize_with_completion is False

    def test_env_config_path(self, tmp_path, monkeypatch):
        path = _write_yaml(tmp_path / "env.yaml", {"store": {"backend": "sqlite"}})
        monkeypatch.setenv("FITCOACH_CONFIG", path)
        assert load_settings().store.backend == "sqlite"

    def test_explicit_path_wins_over_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FITCOACH_CONFIG", _write_yaml(tmp_path / "env.yaml", {"store": {"backend": "sqlite"}}))
        explicit = _write_yaml(tmp_path / "explicit.yaml", {"store": {"backend": "memory"}})
        assert load_settings(explicit).store.backend == "memory"

    def test_missing_file_gives_defaults(self, tmp_path):
        s = load_settings(tmp_path / "nope.yaml")
        assert s.matcher.min_confidence == 0.7

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path).store.backend == "memory"

    def test_environment_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FITCOACH_MATCHER__MIN_CONFIDENCE", "0.55")
        s = load_settings(tmp_path / "nope.yaml")
        assert s.matcher.min_confidence == 0.55
