from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
import time
from typing import List, Optional

from brawler.audio_out import MidoSink, VirtualSink, open_mido_output
from brawler.config import ConfigError, load_config
from brawler.events import BAR, DROP_WINDOW, TELEMETRY
from brawler.session import DROP_TRIGGER, PAD_PRESS, ROLL_START, ROLL_STOP, Session
from brawler.tempo_map import beats_to_seconds


# One bar of sixteenths: kick / hat / snare / ghost, in the shape of the amen break
DEMO_BAR: List[Optional[int]] = [1, None, 3, None, 2, None, 3, 4, None, 4, 1, 1, 2, None, 3, 4]


def schedule_demo(session: Session) -> None:
    """Drive the session from its own timeline: a sixteenth groove, a roll before
    each drop window, and a drop whenever the window opens with enough hype.
    """
    step = {"i": 0}
    sixteenth = beats_to_seconds(0.25, session.transport.tempo)

    def _tick(target: float) -> None:
        pad = DEMO_BAR[step["i"] % len(DEMO_BAR)]
        step["i"] += 1
        if pad is not None:
            session.handle_action({"type": PAD_PRESS, "padId": pad, "velocity": 0.9, "ts": target})

    def _on_window(ev) -> None:
        if not ev.payload.get("open"):
            return
        session.handle_action({"type": ROLL_STOP, "padId": 2, "ts": ev.ts})
        if session.scoring.can_spend_hype():
            session.handle_action({"type": DROP_TRIGGER, "ts": ev.ts})

    def _on_bar(ev) -> None:
        bpp = session.transport.bars_per_phrase
        if ev.payload["bar"] % bpp == bpp - 1:
            session.handle_action({"type": ROLL_START, "padId": 2, "rate": 32, "ts": ev.ts})

    session.bus.subscribe(DROP_WINDOW, _on_window)
    session.bus.subscribe(BAR, _on_bar)
    start = session.transport.next_grid_time(0.25, session.now())
    session.scheduler.schedule_repeat(_tick, sixteenth, start)


def run(config_path: Optional[str], port_filter: Optional[str], virtual: bool = False, seconds: Optional[float] = None,
        print_metrics: bool = False, ws: bool = False, demo: bool = False) -> int:
    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f"[brawler] {e}")
        for d in e.details:
            print(f" - {d}")
        return 2
    if seconds:
        config.session_seconds = float(seconds)

    session = Session(config, VirtualSink())
    if not virtual:
        session.attach_sink(MidoSink(open_mido_output(port_filter), time_source=session.scheduler.now))

    done = threading.Event()

    def on_telemetry(ev) -> None:
        if ev.payload.get("type") == "sessionEnd":
            done.set()

    session.bus.subscribe(TELEMETRY, on_telemetry)

    def metrics_printer():
        while not done.is_set():
            m = session.get_metrics()
            s = session.scoring.snapshot()
            print(
                f"[metrics] voices={m['voices']['voices_started']} rolls={m['voices']['roll_ticks']} "
                f"late_p95={m['scheduler']['lateMsP95']}ms score={s['score']} combo={s['combo']} hype={s['hype']:.0f}"
            )
            time.sleep(1.0)

    def shutdown(*_):
        summary = session.stop()
        if summary:
            print(f"[brawler] summary {json.dumps(summary.to_dict())}")
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    if ws:
        from brawler.server import start_ws_server

        start_ws_server(session)
    session.start()
    if demo:
        with session.lock:
            schedule_demo(session)
    print(f"[brawler] playing {config.tempo:g} BPM for {config.session_seconds:g}s (pack={session.samples.pack_id})")
    if print_metrics:
        threading.Thread(target=metrics_printer, daemon=True).start()

    done.wait()
    summary = session.stop()
    print(f"[brawler] summary {json.dumps(summary.to_dict() if summary else None)}")
    return 0


def main(argv=None):
    ap = argparse.ArgumentParser(description="Run a Break Brawler session locally")
    ap.add_argument("--settings", help="Path to brawler-1.0 settings JSON (defaults when omitted)")
    ap.add_argument("--port", help="Substring to match MIDI output port of a drum module")
    ap.add_argument("--virtual", action="store_true", help="No MIDI; record voices in memory only")
    ap.add_argument("--seconds", type=float, help="Override session length")
    ap.add_argument("--demo", action="store_true", help="Play a scripted groove with rolls and drops")
    ap.add_argument("--metrics", action="store_true", help="Print runtime metrics once per second")
    ap.add_argument("--ws", action="store_true", help="Start the WS server (ws://127.0.0.1:8765)")
    ap.add_argument("--log-level", default="WARNING")
    args = ap.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return run(
        args.settings,
        args.port,
        virtual=bool(args.virtual),
        seconds=args.seconds,
        print_metrics=bool(args.metrics),
        ws=bool(args.ws),
        demo=bool(args.demo),
    )


if __name__ == "__main__":
    raise SystemExit(main())
