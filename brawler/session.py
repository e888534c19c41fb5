from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from brawler.audio_out import CoreSink, VirtualSink
from brawler.clock import LookaheadScheduler, ScheduleHandle, TimeSource
from brawler.config import SessionConfig, apply_settings_patch
from brawler.events import STATUS, EventBus, Fault
from brawler.samples import PAD_SLICES, SampleBank, load_pack_dir
from brawler.scoring import ScoringEngine, SessionSummary
from brawler.transport import TransportClock
from brawler.voice_engine import VoiceEngine


log = logging.getLogger(__name__)

PAD_PRESS = "PAD_PRESS"
ROLL_START = "ROLL_START"
ROLL_STOP = "ROLL_STOP"
PAD_HOLD_RELEASE = "PAD_HOLD_RELEASE"
DROP_TRIGGER = "DROP_TRIGGER"
ACTION_TYPES = (PAD_PRESS, ROLL_START, ROLL_STOP, PAD_HOLD_RELEASE, DROP_TRIGGER)


def _pad(value: Any) -> Any:
    # UI layers send pad ids as strings ("3"); unknown shapes pass through for UnknownPad
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return value


class Session:
    """One play session: a scheduler timeline plus transport, voices and scoring.

    Every public method takes the scheduler lock, so control events and
    scheduled callbacks never interleave mid-update.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        sink: Optional[CoreSink] = None,
        time_source: TimeSource = time.monotonic,
        samples: Optional[SampleBank] = None,
    ):
        self.config = config or SessionConfig()
        self.bus = EventBus()
        self.scheduler = LookaheadScheduler(
            time_source=time_source,
            lookahead=self.config.lookahead,
            interval=self.config.scheduler_interval,
        )
        self.transport = TransportClock(
            self.scheduler,
            self.bus,
            tempo=self.config.tempo,
            beats_per_bar=self.config.beats_per_bar,
            bars_per_phrase=self.config.bars_per_phrase,
        )
        self.sink = sink if sink is not None else VirtualSink()
        self.voices = VoiceEngine(self.transport, self.sink, self.bus)
        self.voices.set_sidechain_amount(self.config.sidechain)
        self.scoring = ScoringEngine(self.transport, self.bus, session_seconds=self.config.session_seconds)
        self.samples = samples or SampleBank.with_builtin_packs(self.config.pack)
        for pack_id, directory in self.config.pack_dirs.items():
            load_pack_dir(self.samples, pack_id, Path(directory))
        if self.config.pack_dirs and self.config.pack in self.config.pack_dirs:
            self.samples.set_pack(self.config.pack)
        self.started_at: Optional[float] = None
        self._end_handle: Optional[ScheduleHandle] = None
        self._ttf_sent = False

    @property
    def lock(self):
        return self.scheduler.lock

    def attach_sink(self, sink: CoreSink) -> None:
        """Swap the output sink (MIDI sinks take this session's clock as their time source)."""
        with self.lock:
            self.sink = sink
            self.voices.sink = sink

    def now(self) -> float:
        return self.scheduler.now()

    # --- Lifecycle ---
    def start(self, run_scheduler: bool = True) -> None:
        """Initialize voices, start transport and scoring, arm the session timer.

        run_scheduler=False leaves dispatch to explicit `advance()` calls.
        """
        with self.lock:
            if self.scoring.is_running:
                return
            now = self.now()
            self.voices.initialize(self.samples)
            self.transport.start(now)
            self.scoring.start_session(now)
            self.started_at = now
            self._ttf_sent = False
            self._end_handle = self.scheduler.schedule_once(self._on_session_timeout, now + self.config.session_seconds)
        if run_scheduler:
            self.scheduler.start()

    def stop(self) -> Optional[SessionSummary]:
        """Stop everything; freezes scoring if the session was running."""
        with self.lock:
            summary = None
            now = self.now()
            if self.scoring.is_running:
                summary = self.scoring.end_session(now)
            self._shutdown(now)
            self.sink.panic()
        self.scheduler.stop()
        self.sink.close()
        return summary or self.scoring.summary

    def _on_session_timeout(self, target: float) -> None:
        log.info("session time elapsed")
        self.scoring.end_session(target)
        self._shutdown(target)

    def _shutdown(self, at: float) -> None:
        self.scheduler.cancel(self._end_handle)
        self._end_handle = None
        self.voices.stop_all(at)
        self.transport.stop()

    def advance(self, now: Optional[float] = None) -> int:
        """Dispatch events due at `now` (default: the current time).

        Audio triggers go out up to the scheduler lookahead early; transport
        and session state change only once their time has been reached.
        """
        if now is None:
            now = self.now()
        return self.scheduler.pump(now)

    # --- Actions from the input layer ---
    def handle_action(self, action: Dict[str, Any]) -> Dict[str, Any]:
        """Apply one input action. Returns {"ok": bool, ...}; never raises for bad input.

        An optional "ts" (wall clock) orders the action against pending
        scheduled events: everything due at or before ts runs first.
        """
        kind = action.get("type") if isinstance(action, dict) else None
        with self.lock:
            ts = action.get("ts") if isinstance(action, dict) else None
            now = float(ts) if isinstance(ts, (int, float)) and not isinstance(ts, bool) else self.now()
            self.scheduler.pump(now)
            if kind == PAD_PRESS:
                res = self._pad_press(_pad(action.get("padId")), action.get("velocity", 1.0), now)
            elif kind == ROLL_START:
                res = self._roll_start(_pad(action.get("padId")), action.get("rate", 16), now)
            elif kind == ROLL_STOP:
                res = {"ok": self.voices.stop_roll(_pad(action.get("padId")), now)}
            elif kind == PAD_HOLD_RELEASE:
                duration = action.get("durationMs", action.get("duration", 0))
                res = self._hold_release(_pad(action.get("padId")), duration, now)
            elif kind == DROP_TRIGGER:
                res = self._drop(now)
            else:
                log.warning("unknown action %r", kind)
                self.bus.emit(STATUS, now, ok=False, error="UnknownAction", action=kind)
                res = {"ok": False, "error": "UnknownAction"}
            self._maybe_ttf()
            return res

    def _pad_press(self, pad_id: Any, velocity: Any, now: float) -> Dict[str, Any]:
        if not self.scoring.is_running:
            self.bus.fault(Fault.SESSION_ENDED, now, op="padPress")
            return {"ok": False, "error": Fault.SESSION_ENDED.value}
        try:
            velocity = float(velocity)
        except (TypeError, ValueError):
            velocity = 1.0
        voice = self.voices.play_slice(pad_id, velocity, at=now)
        if not isinstance(pad_id, int) or pad_id not in PAD_SLICES or velocity <= 0:
            return {"ok": False}
        # A missing buffer is silent but still counts as a hit
        self.scoring.handle_hit(pad_id, velocity, now)
        return {"ok": True, "voiceId": voice.id if voice else None, "combo": self.scoring.combo}

    def _roll_start(self, pad_id: Any, rate: Any, now: float) -> Dict[str, Any]:
        if not self.scoring.is_running:
            self.bus.fault(Fault.SESSION_ENDED, now, op="rollStart")
            return {"ok": False, "error": Fault.SESSION_ENDED.value}
        if isinstance(rate, str) and rate.isdigit():
            rate = int(rate)
        roll = self.voices.start_roll(pad_id, rate, at=now)
        if roll is None:
            return {"ok": False}
        self.scoring.handle_roll_start(pad_id, now)
        return {"ok": True, "rate": roll.rate}

    def _hold_release(self, pad_id: Any, duration: Any, now: float) -> Dict[str, Any]:
        try:
            duration = float(duration)
        except (TypeError, ValueError):
            duration = 0.0
        if not self.scoring.is_running:
            self.bus.fault(Fault.SESSION_ENDED, now, op="holdRelease")
            return {"ok": False, "error": Fault.SESSION_ENDED.value}
        clean = self.scoring.handle_hold_release(pad_id, duration, now)
        return {"ok": True, "clean": clean}

    def _drop(self, now: float) -> Dict[str, Any]:
        if not self.scoring.is_running:
            self.bus.fault(Fault.SESSION_ENDED, now, op="drop")
            return {"ok": False, "error": Fault.SESSION_ENDED.value}
        hype = self.scoring.hype
        if not self.scoring.can_spend_hype():
            self.bus.fault(Fault.INSUFFICIENT_HYPE, now, hype=hype)
            return {"ok": False, "error": Fault.INSUFFICIENT_HYPE.value}
        window = "on" if now < self.transport.drop_window.window_start + self.transport.beat_seconds else "late"
        if not self.voices.trigger_drop(hype, at=now):
            return {"ok": False, "error": Fault.DROP_WINDOW_CLOSED.value}
        self.scoring.spend_hype(now, window=window)
        return {"ok": True, "hypeSpent": hype, "window": window}

    def _maybe_ttf(self) -> None:
        first = self.voices.first_sound_time
        if self._ttf_sent or first is None or self.started_at is None:
            return
        self._ttf_sent = True
        ttf_ms = round((first - self.started_at) * 1000.0, 3)
        log.info("TTF sound: %.0fms", ttf_ms)
        self.scoring.emit_telemetry("ttfSound", first, time=ttf_ms)

    # --- Settings ---
    def set_sidechain(self, preset: str) -> Dict[str, Any]:
        with self.lock:
            amount = self.voices.set_sidechain_amount(preset)
            self.config.sidechain = self.voices.sidechain_preset
            return {"ok": True, "preset": self.voices.sidechain_preset, "db": amount}

    def set_pack(self, pack_id: str) -> Dict[str, Any]:
        with self.lock:
            if not self.samples.set_pack(pack_id):
                return {"ok": False, "error": "UnknownPack", "packs": self.samples.packs()}
            self.config.pack = pack_id
            return {"ok": True, "pack": pack_id}

    def apply_settings_patch(self, ops) -> Dict[str, Any]:
        """Apply live settings (tempo, sidechain, pack) from an RFC 6902 patch.

        Raises ConfigError when the patch is rejected; nothing changes then.
        """
        with self.lock:
            patched = apply_settings_patch(self.config.to_doc(), ops)
            new = SessionConfig.from_doc(patched)
            if new.pack != self.config.pack and new.pack not in self.samples.packs():
                return {"ok": False, "error": "UnknownPack", "packs": self.samples.packs()}
            if new.tempo != self.config.tempo:
                self.transport.configure(new.tempo, self.transport.beats_per_bar, self.transport.bars_per_phrase)
            self.set_sidechain(new.sidechain)
            self.set_pack(new.pack)
            self.config.tempo = new.tempo
            return {"ok": True, "settings": self.config.to_doc()}

    # --- Queries ---
    def get_state(self) -> Dict[str, Any]:
        with self.lock:
            now = self.now()
            summary = self.scoring.summary
            return {
                "transport": "playing" if self.transport.playing else "stopped",
                "bpm": self.transport.tempo,
                "position": self.transport.current_position(),
                "isDropWindow": self.transport.is_drop_window,
                "timeToNextDropWindow": round(self.transport.time_to_next_drop_window(now), 4),
                "scoring": self.scoring.snapshot(),
                "rolls": self.voices.active_rolls(),
                "sidechain": {"preset": self.voices.sidechain_preset, "db": self.voices.sidechain_amount},
                "pack": self.samples.pack_id,
                "summary": summary.to_dict() if summary else None,
                "metrics": self.get_metrics(),
            }

    def get_metrics(self) -> Dict[str, Any]:
        return {"voices": self.voices.get_metrics(), "scheduler": self.scheduler.get_metrics()}
