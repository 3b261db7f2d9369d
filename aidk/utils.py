"""
aidk/utils.py - Small shared helpers
"""

from __future__ import annotations

import inspect
import uuid
from typing import Any


def short_id(prefix: str) -> str:
    """Return a short random id such as ``msg_a1b2c3d4``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


async def maybe_await(value: Any) -> Any:
    """Await value if it is awaitable; callbacks may be sync or async."""
    if inspect.isawaitable(value):
        return await value
    return value
