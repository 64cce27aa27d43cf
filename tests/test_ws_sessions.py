"""Tests for WebSocket sessions: keep-alive, envelopes and teardown."""

import asyncio
import json
import time
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from edge_gateway import AppSettings, BackendConfig, create_app
from ws_sessions import (
    CLOSE_GOING_AWAY,
    CLOSE_TRY_AGAIN_LATER,
    SessionDecodeError,
    SessionManager,
    SessionState,
    decode_envelope,
)


def make_settings(**kw) -> AppSettings:
    kw.setdefault("scheduler_enabled", False)
    return AppSettings(
        backends=[BackendConfig(url="https://primary.example", priority=1, region="us-east")],
        **kw,
    )


def receive_skipping_pings(ws) -> dict:
    while True:
        msg = ws.receive_json()
        if msg.get("type") != "ping":
            return msg


class FakeWebSocket:
    """Just enough of the Starlette WebSocket surface for the manager."""

    def __init__(self, fail_send: bool = False) -> None:
        self.fail_send = fail_send
        self.accepted = False
        self.sent: list[dict] = []
        self.closed_with: Optional[int] = None

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, data: str) -> None:
        if self.fail_send:
            raise RuntimeError("transport closed")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = code


# ══════════════════════════════════════════════════════════════════════════════
#  Through the app
# ══════════════════════════════════════════════════════════════════════════════


# ── 1. Keep-alive ping, pong and echo ────────────────────────────────────


def test_ws_keepalive_and_echo() -> None:
    app = create_app(settings=make_settings(ws_keepalive_seconds=0.2, ws_max_missed_pongs=3))
    with TestClient(app) as c:
        with c.websocket_connect("/ws") as ws:
            ping = ws.receive_json()
            assert ping["type"] == "ping"
            assert isinstance(ping["timestamp"], int)
            ws.send_json({"type": "pong", "timestamp": ping["timestamp"]})

            sent_at = time.time() * 1000 - 5
            ws.send_json({"type": "message", "data": {"hello": "world"}, "timestamp": sent_at})
            reply = receive_skipping_pings(ws)
            assert reply["type"] == "response"
            assert reply["data"]["data"] == {"hello": "world"}
            assert reply["latency"] >= 5

            ws.send_json({"type": "message", "data": "no clock"})
            reply = receive_skipping_pings(ws)
            assert reply["type"] == "response"
            assert "latency" not in reply


# ── 2. Malformed frames are answered, not fatal ──────────────────────────


def test_ws_malformed_payload_returns_error_envelope() -> None:
    app = create_app(settings=make_settings(ws_keepalive_seconds=30))
    with TestClient(app) as c:
        with c.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            err = ws.receive_json()
            assert err["type"] == "error"
            assert "Invalid JSON" in err["error"]

            ws.send_json({"type": "bogus"})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"


# ── 3. Any path upgrades; connections are tracked ────────────────────────


def test_ws_any_path_and_connection_metrics() -> None:
    app = create_app(settings=make_settings(ws_keepalive_seconds=30))
    with TestClient(app) as c:
        with c.websocket_connect("/realtime/chat") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"

            metrics = c.get("/metrics").json()["metrics"]
            assert metrics["activeConnections"] == 1
            assert metrics["totalConnections"] == 1


# ── 4. Capacity limit ────────────────────────────────────────────────────


def test_ws_over_capacity_closed_with_1013() -> None:
    app = create_app(settings=make_settings(ws_keepalive_seconds=30, ws_max_connections=1))
    with TestClient(app) as c:
        with c.websocket_connect("/ws") as first:
            first.send_json({"type": "ping"})
            assert first.receive_json()["type"] == "pong"

            with c.websocket_connect("/ws") as second:
                with pytest.raises(WebSocketDisconnect) as exc:
                    second.receive_json()
                assert exc.value.code == CLOSE_TRY_AGAIN_LATER

            first.send_json({"type": "ping"})
            assert first.receive_json()["type"] == "pong"


# ══════════════════════════════════════════════════════════════════════════════
#  Session manager
# ══════════════════════════════════════════════════════════════════════════════


# ── 5. Failed send tears the session down once ──────────────────────────


def test_failed_send_cancels_keepalive() -> None:
    async def _test():
        mgr = SessionManager(keepalive_interval=60)
        ws = FakeWebSocket()
        session = await mgr.open(ws)
        task = session.keepalive
        assert mgr.active_count == 1

        ws.fail_send = True
        assert await mgr.send(session, {"type": "response"}) is False
        await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()
        assert session.keepalive is None
        assert session.state is SessionState.CLOSED
        assert mgr.active_count == 0
        assert ws.closed_with is None
        assert await mgr.close(session) is False
        assert await mgr.send(session, {"type": "response"}) is False

    asyncio.run(_test())


def test_failed_keepalive_ping_ends_loop() -> None:
    async def _test():
        mgr = SessionManager(keepalive_interval=0.01)
        ws = FakeWebSocket(fail_send=True)
        session = await mgr.open(ws)
        task = session.keepalive
        await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), 1.0)

        assert task.done()
        assert session.state is SessionState.CLOSED
        assert mgr.active_count == 0

    asyncio.run(_test())


# ── 6. Close is idempotent ───────────────────────────────────────────────


def test_close_is_idempotent() -> None:
    async def _test():
        mgr = SessionManager(keepalive_interval=60)
        ws = FakeWebSocket()
        session = await mgr.open(ws)

        assert await mgr.close(session, code=1000) is True
        assert await mgr.close(session, code=1001) is False
        assert ws.closed_with == 1000
        assert mgr.active_count == 0
        assert mgr.total_opened == 1

    asyncio.run(_test())


# ── 7. Missed pongs close the session ────────────────────────────────────


def test_missed_pongs_close_with_going_away() -> None:
    async def _test():
        mgr = SessionManager(keepalive_interval=0.01, max_missed_pongs=2)
        ws = FakeWebSocket()
        session = await mgr.open(ws)
        task = session.keepalive
        await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), 1.0)

        assert ws.closed_with == CLOSE_GOING_AWAY
        assert session.state is SessionState.CLOSED
        assert [m["type"] for m in ws.sent] == ["ping", "ping"]

    asyncio.run(_test())


def test_pong_resets_missed_count() -> None:
    async def _test():
        mgr = SessionManager(keepalive_interval=60)
        session = await mgr.open(FakeWebSocket())
        session.awaiting_pong = True
        session.missed_pongs = 1

        assert mgr.handle_message(session, '{"type": "pong"}') is None
        assert session.awaiting_pong is False
        assert session.missed_pongs == 0
        assert session.last_pong_at is not None
        await mgr.close_all()

    asyncio.run(_test())


# ── 8. Capacity ──────────────────────────────────────────────────────────


def test_open_at_capacity_returns_none() -> None:
    async def _test():
        mgr = SessionManager(keepalive_interval=60, max_connections=1)
        first = FakeWebSocket()
        assert await mgr.open(first) is not None

        second = FakeWebSocket()
        assert await mgr.open(second) is None
        assert second.accepted is True
        assert second.closed_with == CLOSE_TRY_AGAIN_LATER
        assert mgr.active_count == 1

        await mgr.close_all()
        assert first.closed_with == CLOSE_GOING_AWAY
        assert mgr.active_count == 0

    asyncio.run(_test())


class SlowAcceptWebSocket(FakeWebSocket):
    async def accept(self) -> None:
        await asyncio.sleep(0)
        self.accepted = True


def test_concurrent_opens_respect_capacity() -> None:
    async def _test():
        mgr = SessionManager(keepalive_interval=60, max_connections=1)
        sockets = [SlowAcceptWebSocket() for _ in range(5)]
        sessions = await asyncio.gather(*(mgr.open(ws) for ws in sockets))

        opened = [s for s in sessions if s is not None]
        assert len(opened) == 1
        assert mgr.active_count == 1
        assert mgr.total_opened == 1
        rejected = [ws for ws, s in zip(sockets, sessions) if s is None]
        assert all(ws.closed_with == CLOSE_TRY_AGAIN_LATER for ws in rejected)

        await mgr.close_all()

    asyncio.run(_test())


class BrokenAcceptWebSocket(FakeWebSocket):
    async def accept(self) -> None:
        raise RuntimeError("handshake failed")


def test_failed_accept_releases_slot() -> None:
    async def _test():
        mgr = SessionManager(keepalive_interval=60, max_connections=1)
        with pytest.raises(RuntimeError):
            await mgr.open(BrokenAcceptWebSocket())
        assert mgr.active_count == 0

        assert await mgr.open(FakeWebSocket()) is not None
        assert mgr.total_opened == 1
        await mgr.close_all()

    asyncio.run(_test())


# ── 9. Envelope decoding ─────────────────────────────────────────────────


def test_decode_envelope() -> None:
    env, payload = decode_envelope('{"type": "message", "data": [1, 2], "extra": true}')
    assert env.type == "message"
    assert env.data == [1, 2]
    assert env.timestamp is None
    assert payload["extra"] is True

    for raw in ("nope", "[1, 2]", '{"data": 1}', '{"type": "shout"}'):
        with pytest.raises(SessionDecodeError):
            decode_envelope(raw)
