from aidk.observability.logger import (
    bind_execution,
    bind_tick,
    clear_execution,
    get_logger,
    setup_logging,
    setup_logging_from_settings,
)

__all__ = [
    "bind_execution",
    "bind_tick",
    "clear_execution",
    "get_logger",
    "setup_logging",
    "setup_logging_from_settings",
]
