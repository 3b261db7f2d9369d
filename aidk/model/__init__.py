"""
aidk/model - Model adapter boundary.
"""

from __future__ import annotations

from aidk.model.types import TERMINAL_STOP_REASONS, ModelInput, ModelOutput, StopReason, Usage
from aidk.model.base import ModelAdapter
from aidk.model.scripted import ScriptedModel, ScriptedTurn

__all__ = [
    "TERMINAL_STOP_REASONS",
    "ModelInput",
    "ModelOutput",
    "StopReason",
    "Usage",
    "ModelAdapter",
    "ScriptedModel",
    "ScriptedTurn",
]
