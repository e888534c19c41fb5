from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import threading
import time
from typing import Any, Dict, Set

import websockets

from brawler.audio_out import MidoSink, VirtualSink, open_mido_output
from brawler.config import ConfigError, load_config
from brawler.events import Event
from brawler.session import ACTION_TYPES, Session


log = logging.getLogger(__name__)

PROTOCOL = 1
STATE_INTERVAL_S = 0.5


def _msg(kind: str, payload: Any = None, req_id: Any = None) -> str:
    obj: Dict[str, Any] = {"type": kind, "ts": time.time()}
    if req_id is not None:
        obj["id"] = req_id
    if payload is not None:
        obj["payload"] = payload
    return json.dumps(obj)


async def serve_ws(session: Session, host: str, port: int, ready: asyncio.Event | None = None):
    """Serve the session to UI clients until cancelled.

    - Every bus event is broadcast as {"type", "ts", "payload"}.
    - state + metrics go out every STATE_INTERVAL_S.
    - Client-supplied timestamps are ignored; actions are stamped on arrival.
    """
    clients: Set[Any] = set()
    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()

    def on_event(ev: Event) -> None:
        # Bus events fire on the scheduler thread; hop onto the event loop
        loop.call_soon_threadsafe(outbox.put_nowait, ev.to_dict())

    unsubscribe = session.bus.subscribe(None, on_event)

    async def broadcast(obj: Dict[str, Any]):
        if not clients:
            return
        msg = json.dumps(obj)
        await asyncio.gather(*[c.send(msg) for c in list(clients)], return_exceptions=True)

    async def pump_events():
        while True:
            obj = await outbox.get()
            await broadcast(obj)

    async def state_task():
        while True:
            await asyncio.sleep(STATE_INTERVAL_S)
            await broadcast({"type": "metrics", "ts": time.time(), "payload": session.get_metrics()})
            await broadcast({"type": "state", "ts": time.time(), "payload": session.get_state()})

    async def dispatch(ws, obj: Dict[str, Any]) -> None:
        t = obj.get("type")
        req_id = obj.get("id")
        log.debug("recv type=%s", t)
        if t == "action":
            action = dict(obj.get("payload") or {})
            action.pop("ts", None)
            res = session.handle_action(action)
            await ws.send(_msg("ack" if res.get("ok") else "error", res, req_id))
        elif t == "start":
            session.start()
            await ws.send(_msg("ack", {"ok": True}, req_id))
        elif t == "stop":
            summary = await asyncio.to_thread(session.stop)
            await ws.send(_msg("ack", {"ok": True, "summary": summary.to_dict() if summary else None}, req_id))
        elif t == "getState":
            await ws.send(_msg("state", session.get_state(), req_id))
        elif t == "getSummary":
            summary = session.scoring.summary
            if summary is None:
                await ws.send(_msg("error", {"ok": False, "error": "SessionRunning"}, req_id))
            else:
                await ws.send(_msg("summary", summary.to_dict(), req_id))
        elif t == "setSidechain":
            res = session.set_sidechain(str(obj.get("preset", "")))
            await ws.send(_msg("ack", res, req_id))
        elif t == "setPack":
            res = session.set_pack(str(obj.get("pack", "")))
            await ws.send(_msg("ack" if res.get("ok") else "error", res, req_id))
        elif t == "applyPatch":
            ops = (obj.get("payload") or {}).get("ops")
            if not isinstance(ops, list):
                await ws.send(_msg("error", {"ok": False, "error": "invalid_ops"}, req_id))
                return
            try:
                res = session.apply_settings_patch(ops)
            except ConfigError as e:
                await ws.send(_msg("error", {"ok": False, "error": str(e), "details": e.details}, req_id))
                return
            await ws.send(_msg("ack" if res.get("ok") else "error", res, req_id))
        elif t == "ping":
            await ws.send(_msg("pong", None, req_id))
        else:
            await ws.send(_msg("error", {"ok": False, "error": "unknown_type", "type": t}, req_id))

    async def handler(ws, *maybe_path):
        log.info("client connected: %s", getattr(ws, "remote_address", None))
        clients.add(ws)
        await ws.send(_msg("hello", {"protocol": PROTOCOL, "actions": list(ACTION_TYPES), "packs": session.samples.packs()}))
        await ws.send(_msg("state", session.get_state()))
        try:
            async for message in ws:
                try:
                    obj = json.loads(message)
                except ValueError:
                    await ws.send(_msg("error", {"ok": False, "error": "invalid_json"}))
                    continue
                if not isinstance(obj, dict):
                    await ws.send(_msg("error", {"ok": False, "error": "invalid_message"}))
                    continue
                await dispatch(ws, obj)
        finally:
            clients.discard(ws)

    tasks = []
    try:
        async with websockets.serve(handler, host, port):
            log.info("listening on ws://%s:%s", host, port)
            tasks = [asyncio.create_task(pump_events()), asyncio.create_task(state_task())]
            if ready is not None:
                ready.set()
            await asyncio.Future()
    finally:
        unsubscribe()
        for task in tasks:
            task.cancel()


def start_ws_server(session: Session, host: str = "127.0.0.1", port: int = 8765) -> threading.Thread:
    """Run serve_ws on a daemon thread with its own event loop."""

    def _runner():
        asyncio.run(serve_ws(session, host, port))

    th = threading.Thread(target=_runner, name="brawler-ws", daemon=True)
    th.start()
    print(f"[ws] serving on ws://{host}:{port}")
    return th


def main(argv=None):
    ap = argparse.ArgumentParser(description="Break Brawler WS server (actions in, events/state out)")
    ap.add_argument("--settings", help="Path to brawler-1.0 settings JSON")
    ap.add_argument("--port", help="Substring to match a MIDI output port (drum module)")
    ap.add_argument("--virtual", action="store_true", help="Use the recording virtual sink instead of MIDI")
    ap.add_argument("--ws-host", default="127.0.0.1")
    ap.add_argument("--ws-port", type=int, default=8765)
    ap.add_argument("--autostart", action="store_true", help="Start the session immediately")
    ap.add_argument("--log-level", default="INFO")
    args = ap.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        config = load_config(args.settings)
    except ConfigError as e:
        print(f"[ws] {e}")
        for d in e.details:
            print(f" - {d}")
        return 2

    session = Session(config, VirtualSink())
    if not args.virtual:
        session.attach_sink(MidoSink(open_mido_output(args.port), time_source=session.scheduler.now))

    if args.autostart:
        session.start()

    def shutdown(*_):
        summary = session.stop()
        print("[ws] shutting down")
        if summary:
            print(f"[ws] summary {json.dumps(summary.to_dict())}")
        raise SystemExit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    # Always bind to localhost unless told otherwise
    print(f"[ws] serving on ws://{args.ws_host}:{args.ws_port}")
    asyncio.run(serve_ws(session, args.ws_host, args.ws_port))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
