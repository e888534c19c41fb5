from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from brawler.clock import LookaheadScheduler, ScheduleHandle
from brawler.events import BAR, BEAT, DROP_WINDOW, PHRASE, EventBus
from brawler.tempo_map import bar_seconds, beats_to_seconds, seconds_per_beat, seconds_to_beats


log = logging.getLogger(__name__)

# Bar counter wraps after this many phrases
PHRASES_PER_CYCLE = 4


@dataclass
class DropWindow:
    is_open: bool = False
    window_start: float = 0.0
    window_end: float = 0.0

    def contains(self, t: float) -> bool:
        return self.is_open and self.window_start <= t < self.window_end


class TransportClock:
    """Beat/bar/phrase clock at a fixed tempo, owning the drop-window state.

    - Two repeats drive state: one per beat, one per bar. Both receive the
      target time of the boundary they fire for.
    - The drop window opens on the last beat of the last bar of a phrase and
      closes one bar later (dedicated one-shot plus a per-beat check).
    """

    def __init__(
        self,
        scheduler: LookaheadScheduler,
        bus: Optional[EventBus] = None,
        tempo: float = 172.0,
        beats_per_bar: int = 4,
        bars_per_phrase: int = 4,
    ):
        self.scheduler = scheduler
        self.bus = bus or EventBus()
        self.tempo = 172.0
        self.beats_per_bar = 4
        self.bars_per_phrase = 4
        self.current_beat = 0
        self.current_bar = 0
        self.current_phrase = 0
        self.playing = False
        self.origin: float = 0.0
        self.last_beat_time: float = 0.0
        self.drop_window = DropWindow()
        self._beat_handle: Optional[ScheduleHandle] = None
        self._bar_handle: Optional[ScheduleHandle] = None
        self._close_handle: Optional[ScheduleHandle] = None
        self.configure(tempo, beats_per_bar, bars_per_phrase)

    # --- Configuration ---
    def configure(self, tempo: float, beats_per_bar: int = 4, bars_per_phrase: int = 4) -> bool:
        tempo = float(tempo)
        beats_per_bar = int(beats_per_bar)
        bars_per_phrase = int(bars_per_phrase)
        if not math.isfinite(tempo) or tempo <= 0 or beats_per_bar < 1 or bars_per_phrase < 1:
            log.warning("rejecting transport config tempo=%s beatsPerBar=%s barsPerPhrase=%s", tempo, beats_per_bar, bars_per_phrase)
            return False
        with self.scheduler.lock:
            self.tempo = tempo
            self.beats_per_bar = beats_per_bar
            self.bars_per_phrase = bars_per_phrase
            if self.playing:
                # Keep counters (wrapped into the new meter); re-grid from the next beat at the new tempo
                self.current_beat %= self.beats_per_bar
                self.current_bar %= self.bar_cycle
                next_beat = self.last_beat_time + self.beat_seconds
                self.origin = next_beat - beats_to_seconds(self._total_beats() + 1, self.tempo)
                self._install_repeats(next_beat)
        return True

    @property
    def beat_seconds(self) -> float:
        return seconds_per_beat(self.tempo)

    @property
    def bar_seconds(self) -> float:
        return bar_seconds(self.tempo, self.beats_per_bar)

    @property
    def phrase_beats(self) -> int:
        return self.beats_per_bar * self.bars_per_phrase

    @property
    def bar_cycle(self) -> int:
        return self.bars_per_phrase * PHRASES_PER_CYCLE

    # --- Transport control ---
    def start(self, at: Optional[float] = None) -> None:
        with self.scheduler.lock:
            if self.playing:
                return
            self._reset_counters()
            self.origin = self.scheduler.now() if at is None else float(at)
            self.last_beat_time = self.origin
            self.playing = True
            self._install_repeats(self.origin + self.beat_seconds)
            log.info("transport started at %.1f BPM", self.tempo)

    def stop(self) -> None:
        with self.scheduler.lock:
            self.scheduler.cancel(self._beat_handle)
            self.scheduler.cancel(self._bar_handle)
            self.scheduler.cancel(self._close_handle)
            self._beat_handle = self._bar_handle = self._close_handle = None
            was_open = self.drop_window.is_open
            self.playing = False
            self._reset_counters()
            if was_open:
                self.bus.emit(DROP_WINDOW, self.scheduler.now(), open=False)
            log.info("transport stopped")

    def _reset_counters(self) -> None:
        self.current_beat = 0
        self.current_bar = 0
        self.current_phrase = 0
        self.drop_window = DropWindow()

    def _install_repeats(self, first_beat: float) -> None:
        self.scheduler.cancel(self._beat_handle)
        self.scheduler.cancel(self._bar_handle)
        beats_into_bar = self.current_beat + 1
        first_bar = first_beat + beats_to_seconds((self.beats_per_bar - beats_into_bar) % self.beats_per_bar, self.tempo)
        # Bar repeat first so it precedes the beat repeat at shared boundaries
        self._bar_handle = self.scheduler.schedule_repeat(self.handle_bar, self.bar_seconds, first_bar)
        self._beat_handle = self.scheduler.schedule_repeat(self.handle_beat, self.beat_seconds, first_beat)

    # --- Periodic handlers ---
    def handle_beat(self, time: float) -> None:
        self.current_beat = (self.current_beat + 1) % self.beats_per_bar
        self.last_beat_time = time
        last_beat_of_phrase = (
            self.current_beat == self.beats_per_bar - 1
            and self.current_bar % self.bars_per_phrase == self.bars_per_phrase - 1
        )
        if self.drop_window.is_open and time >= self.drop_window.window_end:
            self.close_drop_window(time)
        if last_beat_of_phrase:
            self.open_drop_window(time)
        self.bus.emit(BEAT, time, beat=self.current_beat, bar=self.current_bar)

    def handle_bar(self, time: float) -> None:
        self.current_bar = (self.current_bar + 1) % self.bar_cycle
        if self.current_bar % self.bars_per_phrase == 0:
            self.current_phrase += 1
            self.bus.emit(PHRASE, time, phrase=self.current_phrase)
        self.bus.emit(BAR, time, bar=self.current_bar)

    # --- Drop window ---
    def open_drop_window(self, time: float) -> None:
        if self.drop_window.is_open:
            return
        end = time + self.bar_seconds
        self.drop_window = DropWindow(is_open=True, window_start=time, window_end=end)
        self._close_handle = self.scheduler.schedule_once(self.close_drop_window, end)
        log.debug("drop window open %.3f..%.3f", time, end)
        self.bus.emit(DROP_WINDOW, time, open=True, windowStart=time, windowEnd=end)

    def close_drop_window(self, time: float) -> None:
        if not self.drop_window.is_open:
            return
        self.scheduler.cancel(self._close_handle)
        self._close_handle = None
        self.drop_window = DropWindow(
            is_open=False,
            window_start=self.drop_window.window_start,
            window_end=self.drop_window.window_end,
        )
        log.debug("drop window closed at %.3f", time)
        self.bus.emit(DROP_WINDOW, time, open=False)

    @property
    def is_drop_window(self) -> bool:
        return self.drop_window.is_open

    # --- Queries ---
    def _total_beats(self) -> int:
        return self.current_bar * self.beats_per_bar + self.current_beat

    def current_position(self) -> Dict[str, Any]:
        return {
            "bar": self.current_bar,
            "beat": self.current_beat,
            "phrase": self.current_phrase,
            "isDropWindow": self.drop_window.is_open,
        }

    def time_to_next_drop_window(self, now: Optional[float] = None) -> float:
        """Seconds until the next drop window opens (0 while one is open)."""
        if self.drop_window.is_open:
            return 0.0
        pos = self._total_beats() % self.phrase_beats
        beats_until = (self.phrase_beats - 1 - pos) % self.phrase_beats
        if beats_until == 0:
            beats_until = self.phrase_beats
        seconds = beats_to_seconds(beats_until, self.tempo)
        if self.playing:
            now = self.scheduler.now() if now is None else now
            seconds -= max(0.0, now - self.last_beat_time)
        return max(0.0, seconds)

    def musical_time(self, wall_time: float) -> float:
        """Beats elapsed since the transport origin."""
        return seconds_to_beats(wall_time - self.origin, self.tempo)

    def wall_time(self, beats: float) -> float:
        return self.origin + beats_to_seconds(beats, self.tempo)

    def next_grid_time(self, subdivision_beats: float, after: float) -> float:
        """First grid point (multiple of subdivision_beats from origin) at or after `after`."""
        if not self.playing or subdivision_beats <= 0:
            return after
        beats = self.musical_time(after)
        n = math.ceil(beats / subdivision_beats - 1e-9)
        return self.wall_time(n * subdivision_beats)
