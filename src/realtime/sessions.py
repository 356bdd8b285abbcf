"""
Session registry.

Maps a recipient key (``rider:{id}`` / ``driver:{id}``) to the one
connected session for that identity.  A reconnect replaces the previous
session; a late ``unregister`` from the replaced session is ignored so it
cannot evict its successor.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Optional, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from src.domain.entities import Identity
from src.domain.enums import Role

logger = logging.getLogger(__name__)


def session_key(role: Role, user_id: str) -> str:
    return f"{role.value}:{user_id}"


class Session(Protocol):
    id: str
    identity: Identity

    async def send(self, message: dict[str, Any]) -> None: ...


class WebSocketSession:
    """A connected websocket bound to an authenticated identity."""

    def __init__(self, websocket: WebSocket, identity: Identity):
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity

    @property
    def key(self) -> str:
        return self.identity.channel_key

    async def send(self, message: dict[str, Any]) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise ConnectionError(f"Session {self.id} is closed")
        try:
            await self.websocket.send_text(json.dumps(message, default=str))
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise ConnectionError(f"Session {self.id} is closed") from exc


class SessionRegistry:
    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def register(self, key: str, session: Session) -> Optional[Session]:
        """Bind *session* to *key*; returns the session it replaced, if any."""
        previous = self._sessions.get(key)
        self._sessions[key] = session
        if previous is not None and previous is not session:
            logger.info("Session for %s replaced", key)
            return previous
        return None

    def unregister(self, key: str, session: Optional[Session] = None) -> bool:
        current = self._sessions.get(key)
        if current is None or (session is not None and current is not session):
            return False
        del self._sessions[key]
        return True

    def lookup(self, key: str) -> Optional[Session]:
        return self._sessions.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
