"""
aidk/exceptions.py - AIDK Unified Error Hierarchy

All AIDK-specific exceptions live here. Every layer of the runtime raises
typed subclasses of AidkError, never bare Exception.

Import from here, not from individual modules:
    from aidk.exceptions import CancellationError, ContextError

Hierarchy:
    AidkError
    ├── ValidationError          malformed model input (fatal, not retried)
    ├── AdapterError             provider returned an unusable response
    ├── ToolExecutionError       carried as ToolResult.is_error, never propagated
    ├── CancellationError        execution aborted through its token
    ├── ContextError             hook or slot used outside its lifecycle
    ├── StateError
    │   └── CircularDependencyError
    ├── CompileError             component render / mount failure
    ├── TimelineError            append violating timeline ordering
    └── ConfigError              invalid settings
"""

from __future__ import annotations

from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class AidkError(Exception):
    """Base class for all AIDK exceptions."""

    def __init__(self, message: str = "", *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ─────────────────────────────────────────────────────────────────────────────
# Model boundary
# ─────────────────────────────────────────────────────────────────────────────

class ValidationError(AidkError):
    """Input to model-call preparation was malformed."""


class AdapterError(AidkError):
    """The provider returned a response that could not be used."""


# ─────────────────────────────────────────────────────────────────────────────
# Tools
# ─────────────────────────────────────────────────────────────────────────────

class ToolExecutionError(AidkError):
    """
    A tool failed. Handlers may raise it to control the error text; the
    executor converts it into an error-flagged ToolResult.
    """

    def __init__(
        self,
        message: str = "",
        *,
        tool_name: str = "",
        error_type: str = "EXECUTION_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.tool_name = tool_name
        self.error_type = error_type


# ─────────────────────────────────────────────────────────────────────────────
# Execution lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class CancellationError(AidkError):
    """The execution was aborted through its cancellation token."""

    def __init__(self, reason: str = "Execution cancelled", **kwargs: Any) -> None:
        super().__init__(reason, **kwargs)
        self.reason = reason


class ContextError(AidkError):
    """A hook or bound slot was used outside a valid lifecycle context."""


class CompileError(AidkError):
    """A component failed to mount or render."""


class TimelineError(AidkError):
    """An append would break the timeline's ordering guarantees."""


# ─────────────────────────────────────────────────────────────────────────────
# State
# ─────────────────────────────────────────────────────────────────────────────

class StateError(AidkError):
    """Base for signal and state errors."""


class CircularDependencyError(StateError):
    """A computed signal read itself while evaluating."""


# ─────────────────────────────────────────────────────────────────────────────
# Config
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(AidkError):
    """Raised by Settings.validate_all() when configuration problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def error_details(exc: BaseException) -> dict[str, Any]:
    """Serialize an exception into the shape used by failed results and error events."""
    payload: dict[str, Any] = {
        "type": type(exc).__name__,
        "message": str(exc) or type(exc).__name__,
    }
    if isinstance(exc, AidkError) and exc.details:
        payload["details"] = exc.details
    if isinstance(exc, CancellationError):
        payload["reason"] = exc.reason
    return payload


__all__ = [
    "AidkError",
    "ValidationError",
    "AdapterError",
    "ToolExecutionError",
    "CancellationError",
    "ContextError",
    "CompileError",
    "TimelineError",
    "StateError",
    "CircularDependencyError",
    "ConfigError",
    "error_details",
]
