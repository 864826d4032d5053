"""
Root conftest — isolate credential and FITCOACH_* environment variables so
Settings tests are not affected by real keys or overrides in the developer's
or CI environment.
"""
import os

import pytest

_API_KEY_ENV_VARS = [
    "OPENAI_API_KEY",
    "FITCOACH_CONFIG",
]


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch):
    """Remove key / override env vars for every test so Settings() behaves
    as if none are present unless the test explicitly provides them.
    Also disables .env file loading so local developer .env files don't
    leak real credentials into tests."""
    for var in _API_KEY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.upper().startswith("FITCOACH_"):
            monkeypatch.delenv(var, raising=False)

    import fitcoach.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_prefix="FITCOACH_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
