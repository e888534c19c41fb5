from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple

import mido

if TYPE_CHECKING:
    from brawler.samples import SampleBuffer


log = logging.getLogger(__name__)


@dataclass
class Voice:
    """One triggered buffer. `kind` is 'slice', 'roll' or 'impact'."""

    id: int
    pad_id: Optional[int]
    slice_name: str
    gain: float
    start: float
    end: float
    kind: str = "slice"


@dataclass(frozen=True)
class GainPoint:
    """Master-gain automation breakpoint. ramp: 'set' (step) or 'linear'."""

    time: float
    value: float
    ramp: str = "set"


class CoreSink:
    """Abstract sink interface used by VoiceEngine."""

    def start_voice(self, voice: Voice, buffer: "SampleBuffer") -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def stop_voice(self, voice: Voice, when: float) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def cancel_voice(self, voice: Voice) -> None:  # pragma: no cover - interface
        """Withdraw a voice handed over ahead of its start time."""
        raise NotImplementedError

    def gain_automation(self, points: Sequence[GainPoint]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def panic(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def close(self) -> None:
        pass


class VirtualSink(CoreSink):
    """A minimal sink capturing events for tests and demos.

    Records tuples like (type, args...). Types: 'start', 'stop', 'cancel', 'gain', 'panic'.
    """

    def __init__(self) -> None:
        self.events: List[Tuple[Any, ...]] = []

    def start_voice(self, voice: Voice, buffer: "SampleBuffer") -> None:
        self.events.append(("start", voice.id, voice.pad_id, voice.slice_name, voice.gain, voice.start, voice.kind))

    def stop_voice(self, voice: Voice, when: float) -> None:
        self.events.append(("stop", voice.id, voice.pad_id, when))

    def cancel_voice(self, voice: Voice) -> None:
        self.events.append(("cancel", voice.id, voice.pad_id, voice.start))

    def gain_automation(self, points: Sequence[GainPoint]) -> None:
        self.events.append(("gain", tuple(points)))

    def panic(self) -> None:
        self.events.append(("panic",))

    def of_type(self, kind: str) -> List[Tuple[Any, ...]]:
        return [e for e in self.events if e[0] == kind]


# General MIDI percussion keys used when driving an external drum module
GM_DRUM_NOTES: Dict[str, int] = {
    "KICK": 36,
    "SNARE": 38,
    "HAT": 42,
    "GHOST": 37,
    "CRASH": 49,
    "RIDE": 51,
    "IMPACT": 35,
}
DRUM_CHANNEL = 9
CC_VOLUME = 7
# Intermediate CC writes per linear ramp segment
RAMP_STEPS = 4
# Send-queue key shared by all pending master-gain writes
GAIN_KEY = "gain"


class MidoSink(CoreSink):
    """Triggers slices on an external drum module; master gain rides CC7.

    MIDI has no timestamped send, so each message waits on a send queue
    until its target time on `time_source` (the session clock) and a sender
    thread writes it then. Without a time source messages go out at once.
    """

    def __init__(
        self,
        out_port,
        time_source: Optional[Callable[[], float]] = None,
        channel: int = DRUM_CHANNEL,
        run_sender: bool = True,
    ):
        self.out = out_port
        self.time_source = time_source
        self.channel = int(channel)
        self.run_sender = run_sender
        # (when, seq, key, message); key is the voice id for note-ons, GAIN_KEY for CC7 writes
        self._queue: List[Tuple[float, int, Any, mido.Message]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def _note(self, kind: str, voice: Voice, velocity: int) -> Optional[mido.Message]:
        note = GM_DRUM_NOTES.get(voice.slice_name)
        if note is None:
            return None
        return mido.Message(kind, note=note, velocity=velocity, channel=self.channel)

    def _volume(self, value: float) -> mido.Message:
        cc = max(0, min(127, int(round(value * 127))))
        return mido.Message("control_change", control=CC_VOLUME, value=cc, channel=self.channel)

    def _post(self, when: float, msg: mido.Message, key: Any = None) -> None:
        if self.time_source is None:
            self.out.send(msg)
            return
        with self._cond:
            heapq.heappush(self._queue, (float(when), next(self._seq), key, msg))
            self._cond.notify()
        if self.run_sender:
            self._ensure_sender()

    def _drop(self, key: Any) -> None:
        with self._cond:
            kept = [item for item in self._queue if item[2] != key]
            heapq.heapify(kept)
            self._queue = kept

    # --- CoreSink ---
    def start_voice(self, voice: Voice, buffer: "SampleBuffer") -> None:
        vel = max(1, min(127, int(round(voice.gain * 127))))
        msg = self._note("note_on", voice, vel)
        if msg is not None:
            self._post(voice.start, msg, key=voice.id)

    def stop_voice(self, voice: Voice, when: float) -> None:
        msg = self._note("note_off", voice, 0)
        if msg is not None:
            self._post(when, msg)

    def cancel_voice(self, voice: Voice) -> None:
        self._drop(voice.id)

    def gain_automation(self, points: Sequence[GainPoint]) -> None:
        if self.time_source is None:
            if points:
                self.out.send(self._volume(points[-1].value))
            return
        # Replace, never stack: drop any CC writes still pending from the last curve
        self._drop(GAIN_KEY)
        prev: Optional[GainPoint] = None
        for p in points:
            if p.ramp == "linear" and prev is not None:
                for i in range(1, RAMP_STEPS + 1):
                    frac = i / float(RAMP_STEPS)
                    t = prev.time + (p.time - prev.time) * frac
                    v = prev.value + (p.value - prev.value) * frac
                    self._post(t, self._volume(v), key=GAIN_KEY)
            else:
                self._post(p.time, self._volume(p.value), key=GAIN_KEY)
            prev = p

    def panic(self) -> None:
        with self._cond:
            self._queue = []
        # All Sound Off (120) then All Notes Off (123) on the drum channel
        self.out.send(mido.Message("control_change", control=120, value=0, channel=self.channel))
        self.out.send(mido.Message("control_change", control=123, value=0, channel=self.channel))

    def close(self) -> None:
        self._stop.set()
        with self._cond:
            self._cond.notify()
        if self._t:
            self._t.join(timeout=1.0)
            self._t = None

    # --- Sending ---
    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def flush(self, now: float) -> int:
        """Send every queued message due at or before `now`, in time order."""
        due: List[mido.Message] = []
        with self._cond:
            while self._queue and self._queue[0][0] <= now:
                due.append(heapq.heappop(self._queue)[3])
        for msg in due:
            self.out.send(msg)
        return len(due)

    def _ensure_sender(self) -> None:
        if self._t and self._t.is_alive():
            return
        self._stop.clear()
        self._t = threading.Thread(target=self._run, name="brawler-midi-out", daemon=True)
        self._t.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            now = self.time_source()
            if self.flush(now):
                continue
            with self._cond:
                if not self._queue:
                    self._cond.wait(0.05)
                    continue
                due = self._queue[0][0]
            time.sleep(min(0.002, max(0.0, due - now)))


class NullOutput:
    """Stand-in port for hosts without a MIDI output (CI, sandboxes)."""

    def send(self, *_args, **_kwargs) -> None:
        pass

    def close(self) -> None:
        pass


def open_mido_output(name_filter: Optional[str] = None):
    """Open a Mido output port, or a NullOutput when none is reachable.

    - With a filter, the first port whose name contains it is used.
    - Without one, the first available port is used.
    """
    try:
        names = mido.get_output_names()
    except Exception as e:
        # rtmidi backend missing or system MIDI inaccessible
        log.warning("MIDI outputs unavailable: %s", e)
        return NullOutput()
    if name_filter:
        names = [n for n in names if name_filter in n]
    if not names:
        log.warning("no MIDI output matching %r; using null output", name_filter)
        return NullOutput()
    try:
        return mido.open_output(names[0])
    except Exception as e:
        log.warning("could not open MIDI output %r: %s", names[0], e)
        return NullOutput()
