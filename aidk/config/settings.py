"""
aidk/config/settings.py - AIDK Runtime Settings

Merges aidk.yaml (defaults/structure) with AIDK_* environment variables.
Pydantic-powered: all fields are validated and typed.

  - Field validators reject out-of-range values at parse time
  - validate_all() performs cross-field validation and raises ConfigError
    listing every problem found
  - load_settings() respects the AIDK_CONFIG env var as a fallback when no
    explicit config_path argument is given

Environment overrides use the AIDK_ prefix and "__" for nesting:
    AIDK_ENGINE__MAX_TICKS=20
    AIDK_TOOLS__TIMEOUT_SECONDS=5
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from aidk.exceptions import ConfigError

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_RENDERERS = {"markdown", "xml"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class EngineConfig(BaseModel):
    max_ticks: int = 10
    max_compile_iterations: int = 5
    auto_timeline: bool = True
    renderer: str = "markdown"

    @field_validator("max_ticks")
    @classmethod
    def _positive_ticks(cls, v: int) -> int:
        if v < 1:
            raise ValueError("engine.max_ticks must be >= 1")
        return v

    @field_validator("max_compile_iterations")
    @classmethod
    def _positive_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("engine.max_compile_iterations must be >= 1")
        return v

    @field_validator("renderer")
    @classmethod
    def _known_renderer(cls, v: str) -> str:
        if v.lower() not in _VALID_RENDERERS:
            raise ValueError(
                f"engine.renderer '{v}' is not supported. "
                f"Supported: {sorted(_VALID_RENDERERS)}"
            )
        return v.lower()


class RouterConfig(BaseModel):
    """A JSON-RPC tool endpoint for routed tools."""
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 30.0
    enabled: bool = True


class ToolsConfig(BaseModel):
    timeout_seconds: float = 30.0
    confirmation_timeout_seconds: float = 120.0
    client_timeout_seconds: Optional[float] = None
    max_result_chars: int = 8000
    routers: dict[str, RouterConfig] = Field(default_factory=dict)

    @field_validator("timeout_seconds", "confirmation_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("tools timeouts must be > 0 seconds")
        return v

    @field_validator("client_timeout_seconds")
    @classmethod
    def _positive_client_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("tools.client_timeout_seconds must be > 0 seconds")
        return v

    @field_validator("max_result_chars")
    @classmethod
    def _positive_chars(cls, v: int) -> int:
        if v < 1:
            raise ValueError("tools.max_result_chars must be >= 1")
        return v


class ModelConfig(BaseModel):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and not (0.0 <= v <= 2.0):
            raise ValueError("model.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("model.max_tokens must be >= 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: Optional[str] = None
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = True
    json_format: bool = False

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
    AIDK runtime settings.

    Priority (highest to lowest):
      1. Environment variables (AIDK_*)
      2. .env file
      3. aidk.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="AIDK_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Optional[Path]:
        return Path(self.logging.log_dir) if self.logging.log_dir else None

    def validate_all(self) -> None:
        """
        Full validation. Raises ConfigError listing every problem found.

        Field validators catch type/value errors at parse time; this method
        catches problems that span fields.
        """
        errors: list[str] = []

        # ── Timeouts ─────────────────────────────────────────────────────────
        client_timeout = self.tools.client_timeout_seconds
        if client_timeout is not None and client_timeout > self.tools.confirmation_timeout_seconds * 10:
            errors.append(
                f"tools.client_timeout_seconds ({client_timeout}) is more than ten "
                f"times tools.confirmation_timeout_seconds; clients would wait far "
                f"longer for results than users get to confirm."
            )

        # ── Routers ──────────────────────────────────────────────────────────
        for name, router in self.tools.routers.items():
            if not router.url.startswith(("http://", "https://")):
                errors.append(
                    f"tools.routers.{name}.url '{router.url}' must be an http(s) URL."
                )
            if router.timeout_seconds <= 0:
                errors.append(f"tools.routers.{name}.timeout_seconds must be > 0.")
            if router.enabled and router.timeout_seconds > self.tools.timeout_seconds:
                errors.append(
                    f"tools.routers.{name}.timeout_seconds ({router.timeout_seconds}) "
                    f"exceeds tools.timeout_seconds ({self.tools.timeout_seconds}); "
                    f"the executor would cancel calls first."
                )

        # ── Compile budget ───────────────────────────────────────────────────
        if self.engine.max_compile_iterations > 50:
            errors.append(
                "engine.max_compile_iterations above 50 usually hides a render "
                "loop; lower it."
            )

        # ── Report all errors together ───────────────────────────────────────
        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"AIDK configuration invalid: {len(errors)} problem(s) found:\n\n{numbered}\n",
                details={"errors": errors},
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = threading.Lock()

_KNOWN_SECTIONS = {"engine", "tools", "model", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument
      2. AIDK_CONFIG environment variable
      3. Default: config/aidk.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("AIDK_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/aidk.yaml")


def _merge_env_over_yaml(yaml_data: dict[str, Any], env_settings: Settings) -> dict[str, Any]:
    # Values explicitly set through the environment win over YAML, per field
    merged: dict[str, Any] = {}
    for section in _KNOWN_SECTIONS:
        base = dict(yaml_data.get(section) or {})
        env_section = getattr(env_settings, section)
        base.update(env_section.model_dump(exclude_unset=True))
        merged[section] = base
    return merged


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings by merging aidk.yaml with environment variables.

    Config path resolution order:
      1. config_path argument
      2. AIDK_CONFIG env var
      3. config/aidk.yaml   (default)
    """
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    unknown = set(yaml_data) - _KNOWN_SECTIONS
    if unknown:
        raise ConfigError(
            f"Unknown section(s) in {resolved_path}: {sorted(unknown)}",
            details={"path": str(resolved_path), "unknown": sorted(unknown)},
        )

    instance = Settings(**_merge_env_over_yaml(yaml_data, Settings()))
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading it from the default
    config path on first use.

    Thread-safe: guarded by _singleton_lock to prevent double-initialisation
    if called concurrently before the first load completes.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            resolved_path = _resolve_config_path(None)
            yaml_data = {k: v for k, v in _load_yaml(resolved_path).items() if k in _KNOWN_SECTIONS}
            _singleton = Settings(**_merge_env_over_yaml(yaml_data, Settings()))
    return _singleton


def reset_settings() -> None:
    """Drop the cached singleton (tests and config reloads)."""
    global _singleton
    with _singleton_lock:
        _singleton = None
