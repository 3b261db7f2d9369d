from aidk.config.settings import (
    EngineConfig,
    LoggingConfig,
    ModelConfig,
    RouterConfig,
    Settings,
    ToolsConfig,
    get_settings,
    load_settings,
    reset_settings,
)

__all__ = [
    "EngineConfig",
    "LoggingConfig",
    "ModelConfig",
    "RouterConfig",
    "Settings",
    "ToolsConfig",
    "get_settings",
    "load_settings",
    "reset_settings",
]
