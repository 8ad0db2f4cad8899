"""Turn Orchestrator: one request/response cycle for a session.

A turn appends the user's message, then loops up to ``max_steps`` model
steps.  Each step streams text and tool-call proposals from the model through
a bounded queue.  Proposals become ``tool-invocation`` parts on the assistant
message in the order the model made them; results are written back into
those same parts, so history order never depends on how long a confirmation
took.

Suspension points are the model stream and confirmation waits.  Both race the
turn's abort event; an aborted turn keeps whatever state was already applied
and persists its history without the pending results.
"""
from __future__ import annotations

import asyncio
import json
import os
import traceback
from typing import Any, Awaitable

from ideapilot import assessment, tools  # noqa: F401  (registers the tool bodies)
from ideapilot.catalog import Tool, ToolContext, build_catalog, requires_confirmation
from ideapilot.channel import ChannelHub
from ideapilot.contracts import denial_result, tool_error
from ideapilot.identity import CredentialError, IdentityVerifier
from ideapilot.llm import LLMAuthError, LLMCallError, LLMClient, StreamEvent, ToolCall
from ideapilot.modes import MODE_DESCRIPTIONS
from ideapilot.schemas import ChatMessage, Credential, SessionState, ToolInvocation
from ideapilot.scoring import idea_progress_label
from ideapilot.state import SessionStore, public_state
from ideapilot.utils import RuntimeContext, new_id

MAX_STEPS = int(os.environ.get("MAX_STEPS", "10"))
STREAM_BUFFER = 64

_DONE = object()


class TurnAbandoned(Exception):
    """The turn stopped while waiting (abort signal or last viewer gone)."""


# ---------------------------------------------------------------------------
# Confirmation gate
# ---------------------------------------------------------------------------


class ConfirmationGate:
    """Pending approve/deny decisions keyed by tool call id."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[bool]] = {}

    def open(self, call_id: str) -> asyncio.Future[bool]:
        fut = asyncio.get_running_loop().create_future()
        self._pending[call_id] = fut
        return fut

    def resolve(self, call_id: str, approved: bool) -> bool:
        fut = self._pending.pop(call_id, None)
        if fut is None or fut.done():
            return False
        fut.set_result(approved)
        return True

    def discard(self, call_id: str) -> None:
        self._pending.pop(call_id, None)

    def abandon_all(self) -> int:
        count = 0
        for fut in self._pending.values():
            if not fut.done():
                fut.cancel()
                count += 1
        self._pending.clear()
        return count

    @property
    def pending(self) -> list[str]:
        return list(self._pending)


async def _race(aw: Awaitable[Any], abort: asyncio.Event) -> Any:
    """Await *aw* unless *abort* fires first; raise TurnAbandoned in that case."""
    task = asyncio.ensure_future(aw)
    stopper = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
    if task in done and not task.cancelled():
        return task.result()
    task.cancel()
    raise TurnAbandoned("turn aborted")


# ---------------------------------------------------------------------------
# History helpers
# ---------------------------------------------------------------------------


def filter_empty_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Drop messages with neither content nor parts, except a final assistant message."""
    kept = []
    last = len(messages) - 1
    for i, msg in enumerate(messages):
        empty = not msg.content.strip() and not msg.parts
        if not empty or (i == last and msg.role == "assistant"):
            kept.append(msg)
    return kept


def to_model_history(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Flatten stored messages into the provider-neutral shape used by ``LLMClient``.

    Invocations without a result (abandoned confirmations) are left out so
    every call the model sees is paired with its result.
    """
    out: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role != "assistant":
            out.append({"role": "user", "content": msg.content})
            continue
        if not msg.parts:
            if msg.content:
                out.append({"role": "assistant", "content": msg.content})
            continue

        text: list[str] = []
        calls: list[ToolInvocation] = []

        def flush() -> None:
            if not text and not calls:
                return
            out.append({
                "role": "assistant",
                "content": "".join(text),
                "tool_calls": [{"id": c.tool_call_id, "name": c.tool_name, "args": c.args} for c in calls],
            })
            for c in calls:
                out.append({
                    "role": "tool",
                    "tool_call_id": c.tool_call_id,
                    "name": c.tool_name,
                    "content": json.dumps(c.result, default=str),
                })
            text.clear()
            calls.clear()

        for part in msg.parts:
            if part.get("type") == "text":
                if calls:
                    flush()
                text.append(part.get("text", ""))
            elif part.get("type") == "tool-invocation":
                inv = ToolInvocation.model_validate(part["toolInvocation"])
                if inv.state in ("executed", "denied"):
                    calls.append(inv)
        flush()
    return out


def build_system_prompt(state: SessionState) -> str:
    lines = [
        "You are IdeaPilot, an assistant that helps founders assess startup ideas",
        "against a ten-factor checklist and operates in one of four modes.",
        f"Current mode: {state.mode} ({MODE_DESCRIPTIONS[state.mode]}).",
        f"Preferred language: {state.settings.language}.",
        "Use the tools to record ideas, insights and factor scores as the user shares them.",
        "Scores are 0-5; always attach the evidence and your reasoning.",
    ]
    idea = state.current_idea
    if idea is not None:
        lines.append(
            f'Current idea: "{idea.title}" ({idea.idea_id}), {idea_progress_label(idea)}, '
            f"potential {idea.derived.potential_score} ({idea.derived.potential_bucket}), "
            f"actualization {idea.derived.actualization_score} ({idea.derived.actualization_bucket})."
        )
    others = [i for i in state.ideas.values() if idea is None or i.idea_id != idea.idea_id]
    if others:
        lines.append("Other ideas: " + ", ".join(f'"{i.title}" ({i.idea_id})' for i in others))
    return "\n".join(lines)


def error_part(message: str, details: str | None, timestamp: str) -> dict[str, Any]:
    return {"type": "error", "error": {"message": message, "details": details, "timestamp": timestamp}}


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class TurnOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        runtime: RuntimeContext,
        llm: LLMClient,
        verifier: IdentityVerifier,
        hub: ChannelHub,
        gate: ConfirmationGate,
        max_steps: int = MAX_STEPS,
    ):
        self.store = store
        self.runtime = runtime
        self.llm = llm
        self.verifier = verifier
        self.hub = hub
        self.gate = gate
        self.max_steps = max_steps
        self.log = runtime.logger

    async def run_turn(self, text: str, abort: asyncio.Event | None = None) -> ChatMessage:
        """Process one user message and return the settled assistant message."""
        abort = abort or asyncio.Event()
        snapshot = self.store.load()
        catalog = build_catalog(snapshot.mode)
        ctx = ToolContext(state=snapshot, store=self.store, runtime=self.runtime)

        history = self.store.load_messages()
        history.append(ChatMessage(id=new_id(), role="user", content=text, created_at=self.runtime.clock()))
        assistant = ChatMessage(id=new_id(), role="assistant", created_at=self.runtime.clock())
        history.append(assistant)
        self.store.save_messages(history)

        self.log.info("Turn started in %s mode (%d tools)", snapshot.mode, len(catalog))
        try:
            await self._loop(ctx, catalog, history, assistant, abort)
        except TurnAbandoned:
            self.log.info("Turn abandoned with %d pending confirmation(s)", len(self.gate.pending))
        except Exception as exc:
            self.log.exception("Turn failed")
            assistant.parts.append(error_part(
                "Something went wrong while generating the response. Please try again.",
                f"{exc.__class__.__name__}: {exc}\n{traceback.format_exc()}",
                self.runtime.clock(),
            ))
        finally:
            for notice in ctx.notices:
                history.append(ChatMessage(
                    id=new_id(), role="assistant", content=notice,
                    parts=[{"type": "text", "text": notice}], created_at=self.runtime.clock(),
                ))
            self.store.save_messages(history)
        self.log.info("Turn finished (%d parts)", len(assistant.parts))
        return assistant

    async def _loop(
        self,
        ctx: ToolContext,
        catalog: dict[str, Tool],
        history: list[ChatMessage],
        assistant: ChatMessage,
        abort: asyncio.Event,
    ) -> None:
        system = build_system_prompt(ctx.state)
        schemas = [t.schema() for t in catalog.values()]
        refreshed = False
        step = 0
        while step < self.max_steps:
            if abort.is_set():
                raise TurnAbandoned("turn aborted")
            token = ctx.state.credential.token if ctx.state.credential else None
            model_history = to_model_history(filter_empty_messages(history))
            n_parts, n_chars = len(assistant.parts), len(assistant.content)
            try:
                calls = await self._model_step(system, model_history, schemas, token, assistant, abort)
            except LLMAuthError as exc:
                # partial text from the rejected attempt
                del assistant.parts[n_parts:]
                assistant.content = assistant.content[:n_chars]
                if refreshed or await self._refresh_credential(ctx) is None:
                    self.log.warning("Model call rejected after credential refresh: %s", exc)
                    assistant.parts.append(error_part(
                        "The language model rejected your credentials. Please sign in again and retry.",
                        str(exc),
                        self.runtime.clock(),
                    ))
                    return
                refreshed = True
                continue
            except LLMCallError as exc:
                self.log.warning("Model call failed: %s", exc)
                assistant.parts.append(error_part(
                    "The language model is unavailable right now. Please try again.",
                    str(exc),
                    self.runtime.clock(),
                ))
                return

            step += 1
            if not calls:
                return
            await self._run_calls(ctx, catalog, calls, history, assistant, abort)

    # -- model step ------------------------------------------------------

    async def _pump(self, events, queue: asyncio.Queue) -> None:
        try:
            async for event in events:
                await queue.put(event)
        except Exception as exc:
            await queue.put(exc)
        else:
            await queue.put(_DONE)

    async def _model_step(
        self,
        system: str,
        model_history: list[dict[str, Any]],
        schemas: list[dict[str, Any]],
        token: str | None,
        assistant: ChatMessage,
        abort: asyncio.Event,
    ) -> list[ToolCall]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=STREAM_BUFFER)
        producer = asyncio.create_task(self._pump(self.llm.stream(system, model_history, schemas, api_key=token), queue))
        calls: list[ToolCall] = []
        text_part: dict[str, Any] | None = None
        try:
            while True:
                item = await _race(queue.get(), abort)
                if item is _DONE:
                    break
                if isinstance(item, Exception):
                    raise item
                event: StreamEvent = item
                if event.kind == "text":
                    if text_part is None:
                        text_part = {"type": "text", "text": ""}
                        assistant.parts.append(text_part)
                    text_part["text"] += event.text
                    assistant.content += event.text
                    await self.hub.push("text-delta", {"messageId": assistant.id, "text": event.text})
                elif event.call is not None:
                    calls.append(event.call)
        finally:
            producer.cancel()
        return calls

    async def _refresh_credential(self, ctx: ToolContext) -> str | None:
        """Re-verify the cached bearer token once; return the token to retry with."""
        cred = ctx.state.credential
        if cred is None:
            return None
        row = self.store.cached_user_info(cred.profile.id)
        token = row.api_key if row is not None else cred.token
        try:
            profile = await self.verifier.verify(token)
        except CredentialError as exc:
            self.log.warning("Credential refresh failed: %s", exc)
            return None
        if profile is None:
            return None
        ctx.replace(ctx.state.model_copy(update={
            "credential": Credential(token=token, profile=profile, verified_at=self.runtime.clock()),
        }))
        await self.hub.push("state-delta", {"state": public_state(ctx.state)})
        ctx.changed = False
        self.log.info("Credential refreshed for %s", profile.id)
        return token

    # -- tool calls ------------------------------------------------------

    async def _run_calls(
        self,
        ctx: ToolContext,
        catalog: dict[str, Tool],
        calls: list[ToolCall],
        history: list[ChatMessage],
        assistant: ChatMessage,
        abort: asyncio.Event,
    ) -> None:
        parts: list[tuple[ToolCall, dict[str, Any]]] = []
        for call in calls:
            gated = call.name in catalog and requires_confirmation(call.name)
            inv = ToolInvocation(
                tool_call_id=call.id,
                tool_name=call.name,
                args=call.args,
                state="awaiting-confirmation" if gated else "proposed",
            )
            part = {"type": "tool-invocation", "toolInvocation": inv.model_dump(by_alias=True)}
            assistant.parts.append(part)
            parts.append((call, part))
        self.store.save_messages(history)

        # Ungated calls run at proposal time, before any confirmation wait.
        for call, part in parts:
            if part["toolInvocation"]["state"] == "proposed":
                result = await self._execute(ctx, catalog, call)
                await self._settle(ctx, history, part, "executed", result)

        for call, part in parts:
            if part["toolInvocation"]["state"] != "awaiting-confirmation":
                continue
            fut = self.gate.open(call.id)
            await self.hub.push("tool-result", {
                "toolCallId": call.id, "toolName": call.name, "args": call.args,
                "state": "awaiting-confirmation", "result": None,
            })
            try:
                approved = await _race(fut, abort)
            finally:
                self.gate.discard(call.id)
            if approved:
                part["toolInvocation"]["state"] = "approved"
                result = await self._execute(ctx, catalog, call)
                await self._settle(ctx, history, part, "executed", result)
            else:
                self.log.info("Tool %s denied by user", call.name)
                await self._settle(ctx, history, part, "denied", denial_result())

    async def _execute(self, ctx: ToolContext, catalog: dict[str, Tool], call: ToolCall) -> dict[str, Any]:
        tool = catalog.get(call.name)
        if tool is None:
            self.log.warning("Model proposed %s, not available in %s mode", call.name, ctx.state.mode)
            return tool_error(f"Tool '{call.name}' is not available in {ctx.state.mode} mode.")
        ctx.tool_call_id = call.id
        ctx.changed = False
        return await tool.execute(call.args, ctx)

    async def _settle(
        self,
        ctx: ToolContext,
        history: list[ChatMessage],
        part: dict[str, Any],
        state: str,
        result: dict[str, Any],
    ) -> None:
        inv = part["toolInvocation"]
        inv["state"] = state
        inv["result"] = result
        self.store.save_messages(history)
        await self.hub.push("tool-result", {
            "toolCallId": inv["toolCallId"], "toolName": inv["toolName"], "state": state, "result": result,
        })
        if ctx.changed:
            await self.hub.push("state-delta", {"state": public_state(ctx.state)})
            ctx.changed = False
