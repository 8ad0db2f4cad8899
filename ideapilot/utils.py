"""Shared utility functions used across ideapilot modules."""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with microseconds."""
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex[:16]


class SessionLogAdapter(logging.LoggerAdapter):
    """Prefix every record with the owning session id."""

    def process(self, msg, kwargs):
        return f"[{self.extra['session_id']}] {msg}", kwargs


@dataclass
class RuntimeContext:
    """Per-session collaborators handed to every component instead of globals."""
    session_id: str
    logger: logging.LoggerAdapter
    clock: Callable[[], str] = utc_now_iso


def runtime_context(session_id: str, clock: Callable[[], str] | None = None) -> RuntimeContext:
    logger = SessionLogAdapter(logging.getLogger("ideapilot.session"), {"session_id": session_id})
    return RuntimeContext(session_id=session_id, logger=logger, clock=clock or utc_now_iso)
