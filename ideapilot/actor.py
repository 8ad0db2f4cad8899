"""Single-writer session actors.

Every mutation of a session (chat turns, mode changes, imports, credential
updates) is a job on the actor's queue and runs strictly one at a time.
Confirmation signals and aborts are the exceptions: they only resolve
futures the running turn is waiting on, so they bypass the queue.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.orm import sessionmaker

from ideapilot.channel import ChannelHub, Connection
from ideapilot.identity import IdentityVerifier
from ideapilot.llm import LLMClient
from ideapilot.modes import ModeChange, set_mode
from ideapilot.orchestrator import MAX_STEPS, ConfirmationGate, TurnOrchestrator
from ideapilot.schemas import ChatMessage, ImportOptions, ImportResult, SessionState, StoreUserInfo
from ideapilot.state import SessionStore, public_state
from ideapilot.transfer import export_session, import_session
from ideapilot.utils import new_id, runtime_context

log = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class SessionActor:
    def __init__(
        self,
        session_id: str,
        factory: sessionmaker,
        llm: LLMClient,
        verifier: IdentityVerifier,
        clock: Callable[[], str] | None = None,
        max_steps: int = MAX_STEPS,
    ):
        self.session_id = session_id
        self.runtime = runtime_context(session_id, clock)
        self.store = SessionStore(factory, session_id, self.runtime.clock)
        self.hub = ChannelHub(session_id)
        self.gate = ConfirmationGate()
        self.orchestrator = TurnOrchestrator(
            self.store, self.runtime, llm, verifier, self.hub, self.gate, max_steps=max_steps,
        )
        self._queue: asyncio.Queue[tuple[Job, asyncio.Future]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._abort = asyncio.Event()

    # -- queue -------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"session-{self.session_id}")

    async def _run(self) -> None:
        while True:
            job, fut = await self._queue.get()
            try:
                if fut.cancelled():
                    continue
                try:
                    result = await job()
                except Exception as exc:
                    if not fut.done():
                        fut.set_exception(exc)
                else:
                    if not fut.done():
                        fut.set_result(result)
            finally:
                self._queue.task_done()

    async def submit(self, job: Job) -> Any:
        """Queue *job* behind any in-flight work and wait for its result."""
        self._ensure_worker()
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((job, fut))
        return await fut

    async def close(self) -> None:
        self.gate.abandon_all()
        self._abort.set()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    # -- jobs --------------------------------------------------------------

    async def chat(self, text: str) -> ChatMessage:
        async def job() -> ChatMessage:
            self._abort = asyncio.Event()
            return await self.orchestrator.run_turn(text, self._abort)
        return await self.submit(job)

    async def set_mode(self, mode: str, force: bool = False, is_after_clear_history: bool = False) -> ModeChange:
        async def job() -> ModeChange:
            state = self.store.load()
            new_state, change = set_mode(state, mode, force, is_after_clear_history, clock=self.runtime.clock)
            if change.changed:
                new_state = self.store.commit(new_state)
                if change.notice:
                    self._append_notice(change.notice)
                await self.hub.push("state-delta", {"state": public_state(new_state)})
            return change
        return await self.submit(job)

    def _append_notice(self, text: str) -> None:
        history = self.store.load_messages()
        history.append(ChatMessage(
            id=new_id(), role="assistant", content=text,
            parts=[{"type": "text", "text": text}], created_at=self.runtime.clock(),
        ))
        self.store.save_messages(history)

    async def store_user_info(self, info: StoreUserInfo) -> SessionState:
        async def job() -> SessionState:
            state = self.store.store_user_info(info, self.store.load())
            await self.hub.push("state-delta", {"state": public_state(state)})
            return state
        return await self.submit(job)

    async def clear_user_info(self) -> SessionState:
        async def job() -> SessionState:
            state = self.store.clear_user_info(self.store.load())
            await self.hub.push("state-delta", {"state": public_state(state)})
            return state
        return await self.submit(job)

    async def export(self) -> dict[str, Any]:
        async def job() -> dict[str, Any]:
            return export_session(self.store)
        return await self.submit(job)

    async def import_snapshot(self, data: Any, options: ImportOptions) -> ImportResult:
        async def job() -> ImportResult:
            result = import_session(self.store, data, options)
            await self.hub.push("state-delta", {"state": public_state(self.store.load())})
            return result
        return await self.submit(job)

    async def state(self) -> SessionState:
        async def job() -> SessionState:
            return self.store.load()
        return await self.submit(job)

    def messages(self) -> list[ChatMessage]:
        return self.store.load_messages()

    # -- out-of-band signals -------------------------------------------------

    def confirm(self, call_id: str, approved: bool) -> bool:
        resolved = self.gate.resolve(call_id, approved)
        if not resolved:
            self.runtime.logger.warning("No pending confirmation for call %s", call_id)
        return resolved

    def abort(self) -> None:
        self.runtime.logger.info("Abort requested")
        self._abort.set()

    async def connect(self, conn: Connection) -> None:
        await self.hub.connect(conn)

    def disconnect(self, conn: Connection) -> None:
        self.hub.disconnect(conn)
        if len(self.hub) == 0 and self.gate.pending:
            dropped = self.gate.abandon_all()
            self.runtime.logger.info("Last viewer left; abandoned %d pending confirmation(s)", dropped)
            self._abort.set()


class SessionRegistry:
    """Lazily creates one actor per session id."""

    def __init__(
        self,
        factory: sessionmaker,
        llm: LLMClient,
        verifier: IdentityVerifier,
        clock: Callable[[], str] | None = None,
    ):
        self.factory = factory
        self.llm = llm
        self.verifier = verifier
        self.clock = clock
        self._actors: dict[str, SessionActor] = {}

    def get(self, session_id: str) -> SessionActor:
        actor = self._actors.get(session_id)
        if actor is None:
            actor = SessionActor(session_id, self.factory, self.llm, self.verifier, clock=self.clock)
            self._actors[session_id] = actor
        return actor

    async def close(self) -> None:
        for actor in self._actors.values():
            await actor.close()
        self._actors.clear()
