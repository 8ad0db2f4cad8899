from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.requests import HTTPConnection
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from ideapilot.actor import SessionActor, SessionRegistry
from ideapilot.db import init_db, session_factory
from ideapilot.identity import CredentialError, IdentityVerifier
from ideapilot.llm import LLMClient
from ideapilot.modes import InvalidModeError
from ideapilot.schemas import (
    ChatRequest,
    ConfirmRequest,
    ImportOptions,
    ImportResult,
    ModeChangeOut,
    SetModeRequest,
    StoreUserInfo,
)
from ideapilot.state import public_state
from ideapilot.transfer import ImportValidationError
from ideapilot.utils import utc_now_iso

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.registry = SessionRegistry(session_factory(), LLMClient(), IdentityVerifier())
    yield
    await app.state.registry.close()


app = FastAPI(
    title="IdeaPilot",
    version="0.1.0",
    description=(
        "Conversational assistant for assessing startup ideas. Every route is scoped to one "
        "session and requires the bearer credential of the session owner."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Session", "description": "Credential cache and mode changes."},
        {"name": "Chat", "description": "Conversation turns, history and tool confirmations."},
        {"name": "Transfer", "description": "Export and import of a whole session."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_registry(conn: HTTPConnection) -> SessionRegistry:
    return conn.app.state.registry


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def authorize(actor: SessionActor, verifier: IdentityVerifier, token: str | None) -> None:
    """Accept *token* only if it belongs to the session owner.

    The cached credential short-circuits verification.  A session without a
    cached credential accepts any verified token.
    """
    if not token:
        raise HTTPException(401, "Missing bearer credential")
    cred = actor.store.load().credential
    if cred is not None and cred.token == token:
        return
    try:
        profile = await verifier.verify(token)
    except CredentialError as exc:
        log.warning("Identity verification failed for session %s: %s", actor.session_id, exc)
        raise HTTPException(503, "Identity verifier unavailable") from exc
    if profile is None:
        raise HTTPException(401, "Invalid bearer credential")
    if cred is not None and profile.id != cred.profile.id:
        raise HTTPException(403, "Credential does not belong to this session's owner")


async def session_actor(
    session_id: str,
    authorization: str | None = Header(None),
    registry: SessionRegistry = Depends(get_registry),
) -> SessionActor:
    actor = registry.get(session_id)
    await authorize(actor, registry.verifier, _bearer(authorization))
    return actor


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Routes: Session
# ---------------------------------------------------------------------------


@app.post("/sessions/{session_id}/store-user-info", tags=["Session"],
          summary="Cache the owner's credential and profile")
async def store_user_info(
    body: StoreUserInfo,
    actor: SessionActor = Depends(session_actor),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        profile = await registry.verifier.verify(body.api_key)
    except CredentialError as exc:
        log.warning("Identity verification failed for session %s: %s", actor.session_id, exc)
        raise HTTPException(503, "Identity verifier unavailable") from exc
    if profile is None:
        raise HTTPException(401, "Invalid api_key")
    if profile.id != body.user_id:
        raise HTTPException(403, "api_key does not belong to user_id")
    state = await actor.store_user_info(body)
    return {"success": True, "state": public_state(state)}


@app.post("/sessions/{session_id}/clear-user-info", tags=["Session"],
          summary="Drop the cached credential")
async def clear_user_info(actor: SessionActor = Depends(session_actor)):
    await actor.clear_user_info()
    return {"success": True}


@app.post("/sessions/{session_id}/set-mode", response_model=ModeChangeOut, tags=["Session"],
          summary="Switch the assistant mode")
async def set_mode(body: SetModeRequest, actor: SessionActor = Depends(session_actor)):
    try:
        change = await actor.set_mode(body.mode, body.force, body.is_after_clear_history)
    except InvalidModeError as exc:
        raise HTTPException(400, str(exc)) from exc
    return ModeChangeOut(
        previous_mode=change.previous_mode,
        current_mode=change.current_mode,
        changed=change.changed,
        last_mode_change=change.timestamp,
    )


@app.get("/sessions/{session_id}/state", tags=["Session"], summary="Current session state")
async def get_state(actor: SessionActor = Depends(session_actor)):
    return public_state(await actor.state())


# ---------------------------------------------------------------------------
# Routes: Chat
# ---------------------------------------------------------------------------


@app.get("/sessions/{session_id}/get-messages", tags=["Chat"], summary="Stored conversation history")
async def get_messages(actor: SessionActor = Depends(session_actor)) -> list[dict[str, Any]]:
    try:
        return [m.model_dump(mode="json", by_alias=True) for m in actor.messages()]
    except Exception as exc:
        log.warning("Could not load messages for %s: %s", actor.session_id, exc)
        return []


@app.post("/sessions/{session_id}/chat", tags=["Chat"], summary="Run one conversation turn")
async def chat(body: ChatRequest, actor: SessionActor = Depends(session_actor)):
    if not body.message.strip():
        raise HTTPException(400, "Message must not be empty")
    message = await actor.chat(body.message)
    return message.model_dump(mode="json", by_alias=True)


@app.post("/sessions/{session_id}/confirm", tags=["Chat"], summary="Approve or deny a pending tool call")
async def confirm(body: ConfirmRequest, actor: SessionActor = Depends(session_actor)):
    if not actor.confirm(body.call_id, body.approved):
        raise HTTPException(404, f"No pending confirmation for call {body.call_id}")
    return {"success": True}


@app.post("/sessions/{session_id}/abort", tags=["Chat"], summary="Abort the running turn")
async def abort(actor: SessionActor = Depends(session_actor)):
    actor.abort()
    return {"success": True}


# ---------------------------------------------------------------------------
# Routes: Transfer
# ---------------------------------------------------------------------------


@app.get("/sessions/{session_id}/export", tags=["Transfer"], summary="Download the session as JSON")
async def export(actor: SessionActor = Depends(session_actor)):
    data = await actor.export()
    stamp = utc_now_iso().replace(":", "-").replace(".", "-")
    payload = json.dumps(data, indent=2, default=str)
    return StreamingResponse(
        iter([payload]),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="agent-export-{stamp}.json"'},
    )


async def _read_import(request: Request) -> tuple[Any, ImportOptions]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None or isinstance(upload, str):
            raise HTTPException(400, "No file uploaded")
        raw = await upload.read()
        options = ImportOptions(
            preserve_session_id=_flag(form.get("preserveSessionId"), False),
            include_messages=_flag(form.get("includeMessages"), True),
            include_scheduled_tasks=_flag(form.get("includeScheduledTasks"), True),
        )
        try:
            return json.loads(raw), options
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise HTTPException(400, f"Invalid JSON file: {exc}") from exc

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(400, f"Invalid JSON body: {exc}") from exc
    if isinstance(body, dict) and "data" in body and "metadata" not in body:
        try:
            options = ImportOptions.model_validate(body.get("options") or {})
        except ValidationError as exc:
            raise HTTPException(400, f"Invalid import options: {exc}") from exc
        return body["data"], options
    return body, ImportOptions()


@app.post("/sessions/{session_id}/import", response_model=ImportResult, tags=["Transfer"],
          summary="Restore a session export (multipart file or JSON body)")
async def import_session(request: Request, actor: SessionActor = Depends(session_actor)):
    data, options = await _read_import(request)
    try:
        return await actor.import_snapshot(data, options)
    except ImportValidationError as exc:
        raise HTTPException(400, str(exc)) from exc


# ---------------------------------------------------------------------------
# Duplex channel
# ---------------------------------------------------------------------------


async def _channel_job(websocket: WebSocket, kind: str, coro) -> None:
    try:
        result = await coro
    except (ValueError, ValidationError) as exc:
        await websocket.send_json({"type": "error", "payload": {"request": kind, "message": str(exc)}})
        return
    except Exception as exc:
        log.exception("Channel request %s failed", kind)
        await websocket.send_json({"type": "error", "payload": {"request": kind, "message": str(exc)}})
        return
    if kind == "chat":
        await websocket.send_json({"type": "message", "payload": result.model_dump(mode="json", by_alias=True)})
    elif kind == "setMode":
        await websocket.send_json({"type": "mode-changed", "payload": result.as_result()})
    elif kind == "export":
        await websocket.send_json({"type": "export", "payload": result})
    elif kind == "import":
        await websocket.send_json({"type": "import-result", "payload": result.model_dump(by_alias=True)})


@app.websocket("/sessions/{session_id}/ws")
async def channel(
    websocket: WebSocket,
    session_id: str,
    token: str | None = None,
    registry: SessionRegistry = Depends(get_registry),
):
    actor = registry.get(session_id)
    try:
        await authorize(actor, registry.verifier, token or _bearer(websocket.headers.get("authorization")))
    except HTTPException as exc:
        log.info("Rejected channel for %s: %s", session_id, exc.detail)
        await websocket.close(code=1008, reason=str(exc.detail))
        return

    await websocket.accept()
    await actor.connect(websocket)
    jobs: set[asyncio.Task] = set()

    def spawn(kind: str, coro) -> None:
        task = asyncio.create_task(_channel_job(websocket, kind, coro))
        jobs.add(task)
        task.add_done_callback(jobs.discard)

    try:
        while True:
            msg = await websocket.receive_json()
            kind = msg.get("type") if isinstance(msg, dict) else None
            if kind in ("approve", "deny"):
                actor.confirm(str(msg.get("callId", "")), kind == "approve")
            elif kind == "setMode":
                spawn(kind, actor.set_mode(msg.get("target"), bool(msg.get("force", False))))
            elif kind == "chat":
                spawn(kind, actor.chat(str(msg.get("message", ""))))
            elif kind == "abort":
                actor.abort()
            elif kind == "export":
                spawn(kind, actor.export())
            elif kind == "import":
                try:
                    options = ImportOptions.model_validate(msg.get("options") or {})
                except ValidationError as exc:
                    await websocket.send_json({"type": "error", "payload": {"request": kind, "message": str(exc)}})
                    continue
                spawn(kind, actor.import_snapshot(msg.get("data"), options))
            else:
                await websocket.send_json({"type": "error", "payload": {"message": f"Unknown message type {kind!r}"}})
    except WebSocketDisconnect:
        pass
    finally:
        actor.disconnect(websocket)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("ideapilot.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
