from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from fastapi import WebSocket, WebSocketDisconnect

from common.router import MessageRouter, Subscription
from common.schemas import Message, MessageType

logger = logging.getLogger(__name__)


@dataclass
class DisplaySession:
    session_id: str
    ws: WebSocket | None
    subscriptions: list[Subscription] = field(default_factory=list)
    delivered: int = 0

    async def forward(self, message: Message) -> None:
        if self.ws is None:
            return
        try:
            await self.ws.send_text(message.model_dump_json(by_alias=True))
            self.delivered += 1
        except (WebSocketDisconnect, RuntimeError):
            # best-effort channel: a listener that went away just misses it
            logger.debug("Display %s gone; %s dropped", self.session_id, message.type)


class SessionManager:
    """Tracks connected display surfaces and their router subscriptions."""

    def __init__(self, router: MessageRouter, max_sessions: int = 10) -> None:
        self._router = router
        self._max = max_sessions
        self._sessions: dict[str, DisplaySession] = {}
        self._lock = asyncio.Lock()

    async def create(self, session_id: str, ws: WebSocket | None) -> DisplaySession:
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise RuntimeError(f"Max display sessions ({self._max}) reached")
            if session_id in self._sessions:
                raise RuntimeError(f"Display session {session_id} already exists")
            session = DisplaySession(session_id=session_id, ws=ws)
            session.subscriptions = [
                self._router.on_message(MessageType.transcription_result, session.forward),
                self._router.on_message(MessageType.error, session.forward),
            ]
            self._sessions[session_id] = session
            logger.info("Display session created: %s (%d active)", session_id, len(self._sessions))
            return session

    async def remove(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                for sub in session.subscriptions:
                    self._router.off(sub)
            logger.info("Display session removed: %s (%d active)", session_id, len(self._sessions))

    def get(self, session_id: str) -> DisplaySession | None:
        return self._sessions.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)
