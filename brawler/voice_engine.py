from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from brawler.audio_out import CoreSink, GainPoint, Voice
from brawler.clock import LookaheadScheduler, ScheduleHandle
from brawler.events import VOICE, EventBus, Fault
from brawler.samples import IMPACT_SLICE, PAD_SLICES, SampleBank, SampleBuffer
from brawler.tempo_map import beats_to_seconds, roll_interval_beats
from brawler.transport import TransportClock


log = logging.getLogger(__name__)

ROLL_RATES = (16, 32, 64)
DEFAULT_ROLL_RATE = 16
ROLL_VELOCITY = 0.7

SIDECHAIN_PRESETS: Dict[str, float] = {"Light": 4.0, "Classic": 6.0, "Heavy": 8.0}
DEFAULT_SIDECHAIN = "Classic"
DUCK_ATTACK_S = 0.010
DUCK_RELEASE_S = 0.300

# Accent slice fired on every successful drop
ACCENT_PAD = 5


class MasterGain:
    """Automation curve for the single master output gain.

    Mirrors an audio-param timeline: step and linear-ramp breakpoints,
    `cancel_scheduled_values(t)` drops every breakpoint at or after t
    and holds the value the curve had reached at t.
    """

    def __init__(self, value: float = 1.0):
        self.base = float(value)
        self.points: List[GainPoint] = []

    def value_at(self, t: float) -> float:
        value, prev_t = self.base, None
        for p in self.points:
            if p.time > t:
                if p.ramp == "linear" and prev_t is not None and p.time > prev_t:
                    frac = (t - prev_t) / (p.time - prev_t)
                    return value + (p.value - value) * frac
                return value
            value, prev_t = p.value, p.time
        return value

    def cancel_scheduled_values(self, t: float) -> None:
        # History before t collapses into the held value; the curve stays bounded
        self.base = self.value_at(t)
        self.points = []

    def set_value_at_time(self, value: float, t: float) -> None:
        self._insert(GainPoint(time=t, value=float(value), ramp="set"))

    def linear_ramp_to_value_at_time(self, value: float, t: float) -> None:
        self._insert(GainPoint(time=t, value=float(value), ramp="linear"))

    def _insert(self, point: GainPoint) -> None:
        self.points.append(point)
        self.points.sort(key=lambda p: p.time)


@dataclass
class RollSchedule:
    pad_id: int
    rate: int
    handle: Optional[ScheduleHandle] = None
    # Tick voices already handed to the sink, newest last
    queued: List[Voice] = field(default_factory=list)


@dataclass
class VoiceSlot:
    pad_id: int
    current: Optional[Voice] = None
    done_handle: Optional[ScheduleHandle] = None
    roll: Optional[RollSchedule] = None


class VoiceEngine:
    """Turns play/roll/drop commands into scheduled voice triggers.

    - At most one immediate voice per pad; a new trigger stops the prior one.
    - Scheduled (roll) triggers never touch the pad's current-voice slot.
    - Rolls are scheduler repeats on the transport grid; each tick plays at
      the tick's target time.
    - Nothing here raises for the fault taxonomy: every failure returns a
      falsy value and emits a status event.
    """

    def __init__(self, transport: TransportClock, sink: CoreSink, bus: Optional[EventBus] = None):
        self.transport = transport
        self.scheduler: LookaheadScheduler = transport.scheduler
        self.sink = sink
        self.bus = bus or transport.bus
        self.samples: Optional[SampleBank] = None
        self.initialized = False
        self.slots: Dict[int, VoiceSlot] = {pad: VoiceSlot(pad) for pad in PAD_SLICES}
        self.master = MasterGain(1.0)
        self.sidechain_preset = DEFAULT_SIDECHAIN
        self.sidechain_amount = SIDECHAIN_PRESETS[DEFAULT_SIDECHAIN]
        self._ids = itertools.count(1)
        self.first_sound_time: Optional[float] = None
        self.metrics: Dict[str, int] = {
            "voices_started": 0,
            "voices_stopped": 0,
            "voices_cancelled": 0,
            "roll_ticks": 0,
            "drops": 0,
            "ducks": 0,
        }

    def initialize(self, samples: SampleBank) -> None:
        with self.scheduler.lock:
            self.samples = samples
            self.initialized = True
            log.info("voice engine initialized (pack=%s)", samples.pack_id)

    # --- Guards ---
    def _ready(self, op: str) -> bool:
        if self.initialized and self.samples is not None:
            return True
        self.bus.fault(Fault.ENGINE_NOT_INITIALIZED, self.scheduler.now(), op=op)
        return False

    def _slot(self, pad_id, op: str) -> Optional[VoiceSlot]:
        slot = self.slots.get(pad_id) if isinstance(pad_id, int) else None
        if slot is None:
            self.bus.fault(Fault.UNKNOWN_PAD, self.scheduler.now(), op=op, padId=pad_id)
        return slot

    def _buffer(self, slice_name: str, op: str) -> Optional[SampleBuffer]:
        buf = self.samples.get(slice_name) if self.samples else None
        if buf is None:
            self.bus.fault(Fault.MISSING_SAMPLE, self.scheduler.now(), op=op, slice=slice_name)
        return buf

    def _start(self, pad_id: Optional[int], slice_name: str, buf: SampleBuffer, gain: float, when: float, kind: str) -> Voice:
        voice = Voice(
            id=next(self._ids),
            pad_id=pad_id,
            slice_name=slice_name,
            gain=gain,
            start=when,
            end=when + buf.duration,
            kind=kind,
        )
        self.sink.start_voice(voice, buf)
        self.metrics["voices_started"] += 1
        if self.first_sound_time is None:
            self.first_sound_time = when
        self.bus.emit(VOICE, when, voiceId=voice.id, padId=pad_id, slice=slice_name, gain=gain, kind=kind)
        return voice

    # --- Slices ---
    def play_slice(
        self,
        pad_id: int,
        velocity: float = 1.0,
        scheduled_time: Optional[float] = None,
        at: Optional[float] = None,
    ) -> Optional[Voice]:
        """Trigger the slice mapped to pad_id.

        Immediate when scheduled_time is None: starts at `at` (default now)
        and replaces the pad's current voice. Otherwise queued for that grid
        time and left out of the slot.
        """
        with self.scheduler.lock:
            if not self._ready("playSlice"):
                return None
            slot = self._slot(pad_id, "playSlice")
            if slot is None:
                return None
            velocity = float(velocity)
            if velocity <= 0:
                log.debug("ignoring non-positive velocity %s on pad %s", velocity, pad_id)
                return None
            velocity = min(1.0, velocity)
            slice_name = PAD_SLICES[pad_id]
            buf = self._buffer(slice_name, "playSlice")
            if buf is None:
                return None
            if scheduled_time is not None:
                return self._start(pad_id, slice_name, buf, velocity, float(scheduled_time), "roll")
            now = self._at(at)
            self.stop_slice(pad_id, now)
            voice = self._start(pad_id, slice_name, buf, velocity, now, "slice")
            slot.current = voice
            slot.done_handle = self.scheduler.schedule_once(lambda _t, v=voice: self._on_voice_end(v), voice.end)
            return voice

    def _at(self, at: Optional[float]) -> float:
        return self.scheduler.now() if at is None else float(at)

    def _on_voice_end(self, voice: Voice) -> None:
        slot = self.slots.get(voice.pad_id)
        if slot is not None and slot.current is voice:
            slot.current = None
            slot.done_handle = None

    def stop_slice(self, pad_id: int, at: Optional[float] = None) -> bool:
        """Stop the pad's current immediate voice. No-op if none is playing."""
        with self.scheduler.lock:
            slot = self.slots.get(pad_id)
            if slot is None or slot.current is None:
                return False
            self.scheduler.cancel(slot.done_handle)
            self.sink.stop_voice(slot.current, self._at(at))
            self.metrics["voices_stopped"] += 1
            slot.current = None
            slot.done_handle = None
            return True

    def current_voice(self, pad_id: int) -> Optional[Voice]:
        slot = self.slots.get(pad_id)
        return slot.current if slot else None

    # --- Rolls ---
    def start_roll(self, pad_id: int, rate: int = DEFAULT_ROLL_RATE, at: Optional[float] = None) -> Optional[RollSchedule]:
        """Repeat the pad's slice every 1/rate beat, aligned to the transport grid.

        Ticks are lead events: each reaches the sink up to the scheduler
        lookahead before its grid time.
        """
        with self.scheduler.lock:
            if not self._ready("startRoll"):
                return None
            slot = self._slot(pad_id, "startRoll")
            if slot is None:
                return None
            now = self._at(at)
            if rate not in ROLL_RATES:
                self.bus.fault(Fault.INVALID_RATE, now, padId=pad_id, rate=rate, using=DEFAULT_ROLL_RATE)
                rate = DEFAULT_ROLL_RATE
            self.stop_roll(pad_id, now)
            interval_beats = roll_interval_beats(rate)
            interval = beats_to_seconds(interval_beats, self.transport.tempo)
            first = self.transport.next_grid_time(interval_beats, now)
            roll = RollSchedule(pad_id=pad_id, rate=rate)

            def _tick(grid_time: float) -> None:
                self.metrics["roll_ticks"] += 1
                voice = self.play_slice(pad_id, ROLL_VELOCITY, grid_time)
                if voice is not None:
                    current = self.scheduler.now()
                    roll.queued = [v for v in roll.queued if v.start >= current]
                    roll.queued.append(voice)

            roll.handle = self.scheduler.schedule_repeat(_tick, interval, first, lead=True)
            slot.roll = roll
            log.debug("roll started pad=%s rate=%s/beat first=%.4f", pad_id, rate, first)
            return roll

    def stop_roll(self, pad_id: int, at: Optional[float] = None) -> bool:
        """Cancel the pad's roll, including ticks already queued for `at` or later.

        Idempotent; False when none was active.
        """
        with self.scheduler.lock:
            slot = self.slots.get(pad_id)
            if slot is None or slot.roll is None:
                return False
            roll = slot.roll
            self.scheduler.cancel(roll.handle)
            when = self._at(at)
            for voice in roll.queued:
                if voice.start >= when:
                    self.sink.cancel_voice(voice)
                    self.metrics["voices_cancelled"] += 1
            roll.queued = []
            slot.roll = None
            return True

    def stop_all(self, at: Optional[float] = None) -> None:
        with self.scheduler.lock:
            for pad_id in self.slots:
                self.stop_roll(pad_id, at)
                self.stop_slice(pad_id, at)

    def active_rolls(self) -> Dict[int, int]:
        return {pad: slot.roll.rate for pad, slot in self.slots.items() if slot.roll}

    # --- Drop ---
    def trigger_drop(self, hype_level: float, at: Optional[float] = None) -> bool:
        with self.scheduler.lock:
            if not self._ready("triggerDrop"):
                return False
            now = self._at(at)
            if not self.transport.drop_window.contains(now):
                self.bus.fault(Fault.DROP_WINDOW_CLOSED, now, hype=hype_level)
                return False
            buf = self.samples.get(IMPACT_SLICE) or self.samples.get("KICK")
            if buf is not None:
                gain = max(0.5, min(1.0, float(hype_level) / 100.0))
                self._start(None, buf.name, buf, gain, now, "impact")
            self.apply_sidechain(now)
            self.play_slice(ACCENT_PAD, 1.0, at=now)
            self.metrics["drops"] += 1
            log.info("drop fired (hype=%s)", hype_level)
            return True

    # --- Sidechain ---
    def set_sidechain_amount(self, preset: str) -> float:
        with self.scheduler.lock:
            if preset not in SIDECHAIN_PRESETS:
                log.info("unknown sidechain preset %r; using %s", preset, DEFAULT_SIDECHAIN)
                preset = DEFAULT_SIDECHAIN
            self.sidechain_preset = preset
            self.sidechain_amount = SIDECHAIN_PRESETS[preset]
            return self.sidechain_amount

    def apply_sidechain(self, when: float) -> List[GainPoint]:
        # Linear dB/20 depth, not 10**(dB/20)
        duck_amount = self.sidechain_amount / 20.0
        held = self.master.value_at(when)
        self.master.cancel_scheduled_values(when)
        self.master.set_value_at_time(held, when)
        self.master.linear_ramp_to_value_at_time(max(0.0, held - duck_amount), when + DUCK_ATTACK_S)
        self.master.linear_ramp_to_value_at_time(1.0, when + DUCK_ATTACK_S + DUCK_RELEASE_S)
        self.metrics["ducks"] += 1
        points = list(self.master.points)
        self.sink.gain_automation(points)
        return points

    def get_metrics(self) -> Dict[str, int]:
        return dict(self.metrics)
