"""
WebSocket sessions for the edge gateway.
Client → WebSocket → this manager: keep-alive pings, pong bookkeeping and
echo replies. Reconnecting is left to the client.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

log = logging.getLogger("edge-gateway.ws")

# Close codes (RFC 6455 / IANA registry)
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_TRY_AGAIN_LATER = 1013


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionDecodeError(ValueError):
    """Inbound frame is not a valid envelope. Answered, never fatal."""


class Envelope(BaseModel):
    type: Literal["ping", "pong", "message", "response", "error"]
    data: Any = None
    timestamp: Optional[float] = None


@dataclass
class Session:
    connection_id: str
    websocket: Any
    opened_at: int
    state: SessionState = SessionState.CONNECTING
    last_ping_at: Optional[int] = None
    last_pong_at: Optional[int] = None
    awaiting_pong: bool = False
    missed_pongs: int = 0
    keepalive: Optional[asyncio.Task] = None
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def decode_envelope(raw: str) -> tuple[Envelope, dict[str, Any]]:
    """Parse one text frame into an envelope plus the raw payload."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise SessionDecodeError(f"Invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise SessionDecodeError("Envelope must be a JSON object")
    try:
        return Envelope.model_validate(payload), payload
    except ValidationError as e:
        raise SessionDecodeError(f"Invalid envelope: {e.errors()[0]['msg']}") from e


class SessionManager:
    """Owns every open session and its keep-alive task."""

    def __init__(
        self,
        keepalive_interval: float = 30.0,
        send_timeout: float = 60.0,
        max_connections: int = 1000,
        max_missed_pongs: int = 2,
    ):
        self.keepalive_interval = keepalive_interval
        self.send_timeout = send_timeout
        self.max_connections = max_connections
        self.max_missed_pongs = max_missed_pongs
        self._sessions: dict[str, Session] = {}
        self.total_opened = 0

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    async def open(self, websocket: WebSocket) -> Optional[Session]:
        """Accept the upgrade and start keep-alive. None when at capacity."""
        if len(self._sessions) >= self.max_connections:
            log.warning(f"WS rejected: at capacity ({self.max_connections})")
            await websocket.accept()
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return None
        # Slot is reserved before the first await.
        session = Session(connection_id=uuid.uuid4().hex, websocket=websocket, opened_at=now_ms())
        self._sessions[session.connection_id] = session
        try:
            await websocket.accept()
        except BaseException:
            self._sessions.pop(session.connection_id, None)
            session.state = SessionState.CLOSED
            raise
        if session.state is not SessionState.CONNECTING:
            return None
        session.state = SessionState.OPEN
        self.total_opened += 1
        session.keepalive = asyncio.create_task(self._keepalive_loop(session))
        log.info(f"WS connected: {session.connection_id} (active={self.active_count})")
        return session

    async def serve(self, websocket: WebSocket) -> None:
        """Run one connection until either side closes it."""
        session = await self.open(websocket)
        if session is None:
            return
        try:
            while session.state is SessionState.OPEN:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
                reply = self.handle_message(session, raw)
                if reply is not None and not await self.send(session, reply):
                    break
        except WebSocketDisconnect:
            log.info(f"WS disconnected: {session.connection_id}")
        finally:
            await self.close(session, send_close=False)

    def handle_message(self, session: Session, raw: str) -> Optional[dict[str, Any]]:
        """Process one inbound frame and return the reply envelope, if any."""
        try:
            env, payload = decode_envelope(raw)
        except SessionDecodeError as e:
            log.debug(f"[{session.connection_id}] {e}")
            return {"type": "error", "error": str(e), "timestamp": now_ms()}

        now = now_ms()
        if env.type == "pong":
            session.last_pong_at = now
            session.awaiting_pong = False
            session.missed_pongs = 0
            return None
        if env.type == "ping":
            return {"type": "pong", "timestamp": now}

        reply: dict[str, Any] = {"type": "response", "data": payload, "timestamp": now}
        if env.timestamp is not None:
            reply["latency"] = round(now - env.timestamp)
        return reply

    async def send(self, session: Session, payload: dict[str, Any]) -> bool:
        """Send one envelope. A failed send closes the session."""
        if session.state is not SessionState.OPEN:
            return False
        try:
            async with session.send_lock:
                await asyncio.wait_for(
                    session.websocket.send_text(json.dumps(payload)), self.send_timeout
                )
        except Exception as e:
            log.info(f"WS send to {session.connection_id} failed: {type(e).__name__}: {e}")
            await self.close(session, send_close=False)
            return False
        return True

    async def ping(self, session: Session) -> bool:
        session.last_ping_at = now_ms()
        session.awaiting_pong = True
        return await self.send(session, {"type": "ping", "timestamp": session.last_ping_at})

    async def _keepalive_loop(self, session: Session) -> None:
        while session.state is SessionState.OPEN:
            await asyncio.sleep(self.keepalive_interval)
            if session.state is not SessionState.OPEN:
                break
            if session.awaiting_pong:
                session.missed_pongs += 1
                if self.max_missed_pongs and session.missed_pongs >= self.max_missed_pongs:
                    log.info(
                        f"WS {session.connection_id}: {session.missed_pongs} missed pongs, closing"
                    )
                    await self.close(session, code=CLOSE_GOING_AWAY, reason="missed pong")
                    break
            if not await self.ping(session):
                break

    def _cancel_keepalive(self, session: Session) -> None:
        task, session.keepalive = session.keepalive, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def close(
        self,
        session: Session,
        code: int = CLOSE_NORMAL,
        reason: str = "",
        send_close: bool = True,
    ) -> bool:
        """Tear a session down. Idempotent; True only for the call that closed it."""
        if session.state in (SessionState.CLOSING, SessionState.CLOSED):
            return False
        session.state = SessionState.CLOSING
        self._cancel_keepalive(session)
        self._sessions.pop(session.connection_id, None)
        if send_close:
            try:
                await session.websocket.close(code=code, reason=reason)
            except Exception as e:
                log.debug(f"WS close for {session.connection_id} failed: {e}")
        session.state = SessionState.CLOSED
        log.info(f"WS closed: {session.connection_id} (active={self.active_count})")
        return True

    async def close_all(self, code: int = CLOSE_GOING_AWAY) -> None:
        for session in list(self._sessions.values()):
            await self.close(session, code=code, reason="shutdown")


__all__ = [
    "Envelope",
    "Session",
    "SessionDecodeError",
    "SessionManager",
    "SessionState",
    "decode_envelope",
]
