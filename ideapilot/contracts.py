"""Tool result envelopes and the wrapper that keeps tool failures out of the turn.

Every tool result that reaches the model or the message history is one of::

    {"success": True, "result": <anything>}
    {"success": False, "error": {"message": str, "details": str | None, "timestamp": str}}

``wrap_tool`` turns any async tool body into a callable of that shape.  A body
that already returns an envelope is passed through untouched, so wrapping an
already wrapped tool changes nothing.
"""
from __future__ import annotations

import functools
import logging
import traceback
from typing import Any, Awaitable, Callable

from ideapilot.utils import utc_now_iso

log = logging.getLogger(__name__)

DENIAL_MESSAGE = "User denied access to tool execution"

ToolBody = Callable[..., Awaitable[Any]]


def tool_success(result: Any) -> dict[str, Any]:
    return {"success": True, "result": result}


def tool_error(message: str, details: str | None = None) -> dict[str, Any]:
    return {
        "success": False,
        "error": {"message": message, "details": details, "timestamp": utc_now_iso()},
    }


def denial_result() -> dict[str, Any]:
    """Fixed result substituted for a confirmation-required call the user denied."""
    result = tool_error(DENIAL_MESSAGE)
    result["denied"] = True
    return result


def is_envelope(value: Any) -> bool:
    if not isinstance(value, dict):
        return False
    if value.get("success") is True:
        return "result" in value
    return value.get("success") is False and isinstance(value.get("error"), dict)


def is_error(value: Any) -> bool:
    return is_envelope(value) and value["success"] is False


def wrap_tool(name: str, body: ToolBody) -> ToolBody:
    """Return an async callable that never raises.

    Exceptions raised by *body* (argument validation included) become error
    envelopes whose ``message`` is ``str(exc)`` and whose ``details`` is the
    formatted traceback.
    """
    if getattr(body, "__wrapped_tool__", False):
        return body

    @functools.wraps(body)
    async def wrapped(*args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            result = await body(*args, **kwargs)
        except Exception as exc:
            log.warning("Tool %s failed: %s", name, exc)
            return tool_error(str(exc) or exc.__class__.__name__, traceback.format_exc())
        if is_envelope(result):
            return result
        return tool_success(result)

    wrapped.__wrapped_tool__ = True  # type: ignore[attr-defined]
    return wrapped
