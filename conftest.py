"""
Test conftest: isolate AIDK_* environment variables and .env files so
Settings() behaves the same on every machine unless a test sets values
explicitly.
"""
import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    for var in list(os.environ):
        if var.upper().startswith("AIDK_"):
            monkeypatch.delenv(var, raising=False)

    # Disable .env file loading by patching Settings.model_config
    import aidk.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_prefix="AIDK_",
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
    settings_module.reset_settings()
    yield
    settings_module.reset_settings()
