"""Best-effort side effects: run a store or queue write, log any failure, never raise."""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def best_effort(action: str, write: Awaitable[T], **context: Any) -> T | None:
    """Await ``write``; on failure log ``action`` with ``context`` and return None."""

    try:
        return await write
    except Exception:
        logger.exception("Failed to %s %s", action, _format_context(context))
        return None


def _format_context(context: dict[str, Any]) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(context.items()))
