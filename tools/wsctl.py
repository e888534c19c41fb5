from __future__ import annotations

import argparse
import asyncio
import json

import websockets


async def run(url: str, cmd: str, args: argparse.Namespace):
    async with websockets.connect(url) as ws:
        # hello + state arrive first
        hello = json.loads(await ws.recv())
        state = json.loads(await ws.recv())
        print(f"[wsctl] packs={hello['payload'].get('packs')} transport={state['payload'].get('transport')}")
        if cmd == "start":
            msg = {"type": "start"}
        elif cmd == "stop":
            msg = {"type": "stop"}
        elif cmd == "pad":
            msg = {"type": "action", "payload": {"type": "PAD_PRESS", "padId": int(args.pad), "velocity": float(args.velocity)}}
        elif cmd == "roll":
            kind = "ROLL_STOP" if args.off else "ROLL_START"
            msg = {"type": "action", "payload": {"type": kind, "padId": int(args.pad), "rate": int(args.rate)}}
        elif cmd == "drop":
            msg = {"type": "action", "payload": {"type": "DROP_TRIGGER"}}
        elif cmd == "sidechain":
            msg = {"type": "setSidechain", "preset": args.preset}
        elif cmd == "tempo":
            ops = [{"op": "replace", "path": "/transport/tempo", "value": float(args.bpm)}]
            msg = {"type": "applyPatch", "payload": {"ops": ops}}
        else:
            msg = {"type": "getState"}
        msg["id"] = 1
        await ws.send(json.dumps(msg))
        # Print the reply plus whatever else shows up shortly after
        for _ in range(int(args.count)):
            try:
                print(await asyncio.wait_for(ws.recv(), timeout=2.0))
            except asyncio.TimeoutError:
                break


def main():
    ap = argparse.ArgumentParser(description="Simple WS controller for Break Brawler")
    ap.add_argument("--url", default="ws://127.0.0.1:8765")
    ap.add_argument("--count", default=3, help="Messages to print after sending")
    sub = ap.add_subparsers(dest="cmd", required=True)
    sub.add_parser("start")
    sub.add_parser("stop")
    sub.add_parser("state")
    sub.add_parser("drop")
    p_pad = sub.add_parser("pad"); p_pad.add_argument("pad"); p_pad.add_argument("--velocity", default=1.0)
    p_roll = sub.add_parser("roll"); p_roll.add_argument("pad"); p_roll.add_argument("--rate", default=16); p_roll.add_argument("--off", action="store_true")
    p_sc = sub.add_parser("sidechain"); p_sc.add_argument("preset", choices=["Light", "Classic", "Heavy"])
    p_tempo = sub.add_parser("tempo"); p_tempo.add_argument("--bpm", required=True)
    args = ap.parse_args()
    asyncio.run(run(args.url, args.cmd, args))


if __name__ == "__main__":
    main()
