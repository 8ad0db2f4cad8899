"""Push side of the duplex client channel.

Any number of websocket viewers may watch one session.  Pushes go to every
open connection; a connection whose send fails is dropped.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

from ideapilot.utils import utc_now_iso

log = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ChannelHub:
    def __init__(self, session_id: str):
        self.session_id = session_id
        self._connections: list[Connection] = []

    def __len__(self) -> int:
        return len(self._connections)

    async def connect(self, conn: Connection) -> None:
        self._connections.append(conn)
        await conn.send_json({"type": "connection-ready", "timestamp": utc_now_iso()})
        log.info("Session %s: viewer connected (%d open)", self.session_id, len(self._connections))

    def disconnect(self, conn: Connection) -> None:
        if conn in self._connections:
            self._connections.remove(conn)
        log.info("Session %s: viewer disconnected (%d open)", self.session_id, len(self._connections))

    async def push(self, type: str, payload: Any) -> None:
        message = {"type": type, "payload": payload, "timestamp": utc_now_iso()}
        for conn in list(self._connections):
            try:
                await conn.send_json(message)
            except Exception as exc:
                log.warning("Session %s: push %s failed, dropping viewer: %s", self.session_id, type, exc)
                self.disconnect(conn)
