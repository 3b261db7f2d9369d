"""
aidk/engine/result.py - Terminal outcome of an execution
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from aidk.content.blocks import extract_text
from aidk.content.messages import Message, TimelineEntry
from aidk.model.types import StopReason, Usage


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionResult(BaseModel):
    execution_id: str
    status: ExecutionStatus
    stop_reason: Optional[StopReason] = None
    ticks: int = 0
    output: Optional[Message] = None          # last assistant message
    timeline: list[TimelineEntry] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    error: Optional[dict[str, Any]] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def text(self) -> str:
        if self.output is None:
            return ""
        return extract_text([b for b in self.output.content if b.type == "text"])

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED
