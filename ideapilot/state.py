"""Session State Store: the single persisted source of truth for one session.

All writes go through :class:`SessionStore`, which is owned by the session's
actor.  State changes are expressed as patches merged with
:func:`merge_patch`; nothing replaces the whole blob blindly except an import.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable

from sqlalchemy import delete, select, text
from sqlalchemy.orm import sessionmaker

from ideapilot.db import session_scope
from ideapilot.models import MessageRow, ScheduledTask, SessionStateRow, UserInfo
from ideapilot.schemas import (
    MODES,
    ChatMessage,
    Credential,
    Profile,
    SessionState,
    StoreUserInfo,
)
from ideapilot.utils import json_parse, new_id, utc_now_iso

log = logging.getLogger(__name__)


class _Delete:
    def __repr__(self) -> str:
        return "DELETE"


DELETE: Any = _Delete()
"""Patch value that removes a key from a mapping (e.g. an idea from ``ideas``)."""


# ---------------------------------------------------------------------------
# Normalization and merge
# ---------------------------------------------------------------------------


def default_state(clock: Callable[[], str] = utc_now_iso) -> SessionState:
    now = clock()
    return SessionState(created_at=now, updated_at=now)


def ensure_state_schema(raw: Any, clock: Callable[[], str] = utc_now_iso) -> SessionState:
    """Fill missing or invalid top-level fields with defaults and validate.

    Used both when a session row is first loaded and when an imported state
    blob is committed.  Raises ``pydantic.ValidationError`` for content that
    cannot be repaired (e.g. an idea with unknown checklist factors).
    """
    data: dict[str, Any] = dict(raw) if isinstance(raw, dict) else {}

    if data.get("mode") not in MODES:
        if "mode" in data:
            log.info("No valid mode in state (%r), defaulting to onboarding", data.get("mode"))
        data["mode"] = "onboarding"

    settings = data.get("settings")
    if not isinstance(settings, dict):
        data["settings"] = {}
    else:
        settings = dict(settings)
        if not settings.get("language"):
            settings["language"] = "en"
        if not settings.get("operators"):
            settings["operators"] = []
        if not settings.get("admin_contact"):
            settings["admin_contact"] = {"name": "", "email": ""}
        data["settings"] = settings

    now = clock()
    data.setdefault("created_at", now)
    data.setdefault("updated_at", now)
    return SessionState.model_validate(data)


def merge_patch(current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Field-level upsert of *patch* onto *current*.

    - mappings merge recursively, so sibling keys survive
    - lists and scalars replace the current value
    - an explicit ``None`` stores ``None``
    - :data:`DELETE` removes the key
    """
    merged = dict(current)
    for key, value in patch.items():
        if value is DELETE:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_patch(merged[key], value)
        else:
            merged[key] = value
    return merged


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """Persistence for one session: state blob, history, tasks, credential cache."""

    def __init__(self, factory: sessionmaker, session_id: str, clock: Callable[[], str] = utc_now_iso):
        self.factory = factory
        self.session_id = session_id
        self.clock = clock

    # -- state -------------------------------------------------------------

    def load(self) -> SessionState:
        """Return the stored state, creating and persisting a default one on first contact."""
        with session_scope(self.factory) as session:
            row = session.get(SessionStateRow, self.session_id)
            if row is None:
                state = default_state(self.clock)
                session.add(SessionStateRow(
                    id=self.session_id,
                    state=state.model_dump_json(),
                    created_at=state.created_at,
                    updated_at=state.updated_at,
                ))
                session.commit()
                log.info("Created session %s", self.session_id)
                return state
            raw = json_parse(row.state)
        return ensure_state_schema(raw, self.clock)

    def commit(self, state: SessionState, touch: bool = True) -> SessionState:
        if touch:
            state = state.model_copy(update={"updated_at": self.clock()})
        with session_scope(self.factory) as session:
            row = session.get(SessionStateRow, self.session_id)
            if row is None:
                row = SessionStateRow(id=self.session_id, created_at=state.created_at or self.clock())
                session.add(row)
            row.state = state.model_dump_json()
            row.updated_at = state.updated_at or ""
            session.commit()
        return state

    def apply(self, patch: dict[str, Any], base: SessionState | None = None) -> SessionState:
        """Merge *patch* into the current state, validate, persist and return it."""
        current = base if base is not None else self.load()
        merged = merge_patch(current.model_dump(mode="json"), patch)
        state = SessionState.model_validate(merged)
        return self.commit(state)

    # -- message history ---------------------------------------------------

    def load_messages(self) -> list[ChatMessage]:
        with session_scope(self.factory) as session:
            rows = session.execute(
                select(MessageRow)
                .where(MessageRow.session_id == self.session_id)
                .order_by(text("rowid"))
            ).scalars().all()
        messages: list[ChatMessage] = []
        for row in rows:
            data = json_parse(row.message, None)
            if not isinstance(data, dict):
                log.warning("Skipping unreadable message %s", row.id)
                continue
            messages.append(ChatMessage.model_validate(data))
        return messages

    def save_messages(self, messages: list[ChatMessage]) -> None:
        """Replace the stored history with *messages*, preserving their order."""
        with session_scope(self.factory) as session:
            session.execute(delete(MessageRow).where(MessageRow.session_id == self.session_id))
            for msg in messages:
                session.add(MessageRow(
                    id=msg.id,
                    session_id=self.session_id,
                    message=msg.model_dump_json(by_alias=True),
                    created_at=msg.created_at,
                ))
            session.commit()

    # -- credential cache --------------------------------------------------

    def store_user_info(self, info: StoreUserInfo, state: SessionState) -> SessionState:
        now = self.clock()
        with session_scope(self.factory) as session:
            row = session.get(UserInfo, info.user_id)
            if row is None:
                row = UserInfo(user_id=info.user_id, created_at=now)
                session.add(row)
            row.api_key = info.api_key
            row.email = info.email
            row.credits = info.credits
            row.payment_method = info.payment_method
            row.updated_at = now
            session.commit()
        credential = Credential(
            token=info.api_key,
            profile=Profile(
                id=info.user_id,
                email=info.email,
                credits=info.credits,
                payment_method=info.payment_method,
            ),
            verified_at=now,
        )
        return self.commit(state.model_copy(update={"credential": credential}))

    def clear_user_info(self, state: SessionState) -> SessionState:
        with session_scope(self.factory) as session:
            if state.credential is not None:
                session.execute(delete(UserInfo).where(UserInfo.user_id == state.credential.profile.id))
            session.commit()
        return self.commit(state.model_copy(update={"credential": None}))

    def cached_user_info(self, user_id: str) -> UserInfo | None:
        with session_scope(self.factory) as session:
            return session.get(UserInfo, user_id)

    # -- scheduled tasks ---------------------------------------------------

    def add_task(
        self,
        description: str,
        *,
        cron: str | None = None,
        next_run_time: str | None = None,
        callback: str = "executeTask",
        data: dict[str, Any] | None = None,
    ) -> ScheduledTask:
        task = ScheduledTask(
            id=new_id(),
            session_id=self.session_id,
            description=description,
            cron=cron,
            callback=callback,
            data=json.dumps(data or {}),
            next_run_time=next_run_time,
            created_at=self.clock(),
        )
        with session_scope(self.factory) as session:
            session.add(task)
            session.commit()
        return task

    def list_tasks(self) -> list[ScheduledTask]:
        with session_scope(self.factory) as session:
            return list(session.execute(
                select(ScheduledTask)
                .where(ScheduledTask.session_id == self.session_id)
                .order_by(ScheduledTask.created_at)
            ).scalars().all())

    def cancel_task(self, task_id: str) -> bool:
        with session_scope(self.factory) as session:
            task = session.get(ScheduledTask, (task_id, self.session_id))
            if task is None:
                return False
            session.delete(task)
            session.commit()
        return True


def public_state(state: SessionState) -> dict[str, Any]:
    """State as pushed to viewers: everything except the bearer token."""
    return state.model_dump(mode="json", exclude={"credential": {"token"}})
