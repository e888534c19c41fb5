from __future__ import annotations

import asyncio
import contextlib
import json
import socket

import pytest
import websockets

from brawler.audio_out import VirtualSink
from brawler.clock import ManualTime
from brawler.config import SessionConfig
from brawler.server import serve_ws
from brawler.session import Session


def _free_port() -> int:
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    addr, port = s.getsockname()
    s.close()
    return port


async def _recv_until(ws, pred, timeout: float = 3.0):
    msgs = []
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=deadline - loop.time())
        except asyncio.TimeoutError:
            break
        obj = json.loads(raw)
        msgs.append(obj)
        if pred(obj):
            break
    return msgs


def _reply(req_id):
    return lambda obj: obj.get("id") == req_id


@contextlib.asynccontextmanager
async def _running_server(session: Session):
    port = _free_port()
    ready = asyncio.Event()
    task = asyncio.create_task(serve_ws(session, "127.0.0.1", port, ready=ready))
    try:
        await asyncio.wait_for(ready.wait(), timeout=3.0)
        async with websockets.connect(f"ws://127.0.0.1:{port}") as ws:
            yield ws
    finally:
        task.cancel()
        with contextlib.suppress(BaseException):
            await task


def _session(**overrides) -> Session:
    config = SessionConfig(tempo=120.0, **overrides)
    session = Session(config, VirtualSink(), time_source=ManualTime(0.0))
    session.start(run_scheduler=False)
    return session


@pytest.mark.asyncio
async def test_hello_then_state_on_connect():
    session = _session()
    async with _running_server(session) as ws:
        hello = json.loads(await ws.recv())
        state = json.loads(await ws.recv())
        assert hello["type"] == "hello"
        assert hello["payload"]["packs"] == ["amen", "think"]
        assert state["type"] == "state"
        assert state["payload"]["bpm"] == 120.0
        assert state["payload"]["transport"] == "playing"


@pytest.mark.asyncio
async def test_action_ack_and_broadcast():
    session = _session()
    async with _running_server(session) as ws:
        await _recv_until(ws, lambda o: o.get("type") == "state")
        await ws.send(json.dumps({"type": "action", "id": 7, "payload": {"type": "PAD_PRESS", "padId": 1, "velocity": 0.8}}))
        msgs = await _recv_until(ws, _reply(7))
        ack = msgs[-1]
        assert ack["type"] == "ack"
        assert ack["payload"]["ok"] is True
        # Bus events come through the broadcast queue, possibly after the ack
        if not any(m.get("type") == "voice" for m in msgs):
            msgs += await _recv_until(ws, lambda o: o.get("type") == "voice")
        voice = [m for m in msgs if m.get("type") == "voice"]
        assert voice and voice[0]["payload"]["slice"] == "KICK"
        assert session.scoring.hit_count == 1


@pytest.mark.asyncio
async def test_failed_action_is_an_error_reply():
    session = _session()
    async with _running_server(session) as ws:
        await _recv_until(ws, lambda o: o.get("type") == "state")
        await ws.send(json.dumps({"type": "action", "id": 3, "payload": {"type": "DROP_TRIGGER"}}))
        reply = (await _recv_until(ws, _reply(3)))[-1]
        assert reply["type"] == "error"
        assert reply["payload"]["error"] == "InsufficientHype"


@pytest.mark.asyncio
async def test_settings_and_queries():
    session = _session()
    async with _running_server(session) as ws:
        await _recv_until(ws, lambda o: o.get("type") == "state")

        await ws.send(json.dumps({"type": "setSidechain", "id": 1, "preset": "Light"}))
        reply = (await _recv_until(ws, _reply(1)))[-1]
        assert reply["payload"]["db"] == 4.0

        await ws.send(json.dumps({"type": "setPack", "id": 2, "pack": "nope"}))
        reply = (await _recv_until(ws, _reply(2)))[-1]
        assert reply["type"] == "error"

        ops = [{"op": "replace", "path": "/transport/tempo", "value": 150}]
        await ws.send(json.dumps({"type": "applyPatch", "id": 3, "payload": {"ops": ops}}))
        reply = (await _recv_until(ws, _reply(3)))[-1]
        assert reply["type"] == "ack"
        assert session.transport.tempo == 150.0

        ops = [{"op": "replace", "path": "/session/seconds", "value": 10}]
        await ws.send(json.dumps({"type": "applyPatch", "id": 4, "payload": {"ops": ops}}))
        reply = (await _recv_until(ws, _reply(4)))[-1]
        assert reply["type"] == "error"
        assert reply["payload"]["details"] == ["/session/seconds"]

        await ws.send(json.dumps({"type": "ping", "id": 5}))
        reply = (await _recv_until(ws, _reply(5)))[-1]
        assert reply["type"] == "pong"

        await ws.send(json.dumps({"type": "bogus", "id": 6}))
        reply = (await _recv_until(ws, _reply(6)))[-1]
        assert reply["payload"]["error"] == "unknown_type"


@pytest.mark.asyncio
async def test_summary_after_stop():
    session = _session()
    async with _running_server(session) as ws:
        await _recv_until(ws, lambda o: o.get("type") == "state")
        await ws.send(json.dumps({"type": "getSummary", "id": 1}))
        reply = (await _recv_until(ws, _reply(1)))[-1]
        assert reply["type"] == "error"

        await ws.send(json.dumps({"type": "stop", "id": 2}))
        reply = (await _recv_until(ws, _reply(2)))[-1]
        assert reply["payload"]["summary"]["hitCount"] == 0

        await ws.send(json.dumps({"type": "getSummary", "id": 3}))
        reply = (await _recv_until(ws, _reply(3)))[-1]
        assert reply["type"] == "summary"
        assert reply["payload"]["timing"] == 50.0


@pytest.mark.asyncio
async def test_invalid_json_keeps_connection():
    session = _session()
    async with _running_server(session) as ws:
        await _recv_until(ws, lambda o: o.get("type") == "state")
        await ws.send("{nope")
        msgs = await _recv_until(ws, lambda o: o.get("type") == "error")
        assert msgs[-1]["payload"]["error"] == "invalid_json"
        await ws.send(json.dumps({"type": "ping", "id": 9}))
        assert (await _recv_until(ws, _reply(9)))[-1]["type"] == "pong"
