from __future__ import annotations

import logging
import math
import statistics
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, List, Optional

from brawler.events import HYPE, TELEMETRY, EventBus, Fault
from brawler.tempo_map import sixteenth_ms
from brawler.transport import TransportClock


log = logging.getLogger(__name__)

SESSION_SECONDS = 90.0

COMBO_GAP_MS = 1000.0
COMBO_CAP = 10
BASE_HIT_SCORE = 100
TIMING_ERROR_CAP_MS = 100.0

HYPE_MAX = 100.0
HYPE_PER_HIT = 5.0
HYPE_PER_ROLL = 15.0
HYPE_PER_RELEASE = 10.0
HYPE_DROP_THRESHOLD = 50.0
DROP_SCORE_PER_HYPE = 10

FLOW_GAIN = 2.0
FLOW_LOSS = 5.0
TASTE_PENALTY = 5.0

# Hold-release window (exclusive bounds, ms)
RELEASE_MIN_MS = 400.0
RELEASE_MAX_MS = 600.0

PATTERN_HISTORY = 16
PATTERN_SPAN = 4


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def timing_error_ms(interval_ms: float, grid_ms: float) -> float:
    """Distance of an inter-hit interval from the sixteenth grid, clamped to 0..100 ms."""
    if grid_ms <= 0:
        return 0.0
    return _clamp(abs(math.fmod(interval_ms, grid_ms)), 0.0, TIMING_ERROR_CAP_MS)


@dataclass(frozen=True)
class SessionSummary:
    score: int
    timing: float
    flow: float
    taste: float
    hit_count: int
    duration: float

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["hitCount"] = d.pop("hit_count")
        return d


class ScoringEngine:
    """Combo/hype/flow/taste accumulators over one timed session.

    All timestamps are wall-clock seconds; scoring math runs in ms.
    Reads the transport only for tempo (grid interval).
    """

    def __init__(self, transport: TransportClock, bus: Optional[EventBus] = None, session_seconds: float = SESSION_SECONDS):
        self.transport = transport
        self.bus = bus or transport.bus
        self.session_seconds = float(session_seconds)
        self._reset()

    def _reset(self) -> None:
        self.score = 0
        self.combo = 0
        self.max_combo = 0
        self.hype = 0.0
        self.flow_score = 50.0
        self.taste_score = 100.0
        self.hit_count = 0
        self.timing_accuracy: List[float] = []
        self.pattern_history: Deque[int] = deque(maxlen=PATTERN_HISTORY)
        self.session_start: Optional[float] = None
        self.session_duration = 0.0
        self.last_hit_time: Optional[float] = None
        self.is_running = False
        self.summary: Optional[SessionSummary] = None
        self.telemetry_events: List[Dict[str, Any]] = []

    # --- Session lifecycle ---
    def start_session(self, now: float) -> None:
        self._reset()
        self.session_start = float(now)
        self.is_running = True
        log.info("session started (%.0fs)", self.session_seconds)

    @property
    def session_end_time(self) -> Optional[float]:
        if self.session_start is None:
            return None
        return self.session_start + self.session_seconds

    def _accepting(self, now: float, op: str) -> bool:
        if self.is_running and self.session_end_time is not None and now >= self.session_end_time:
            self.end_session(self.session_end_time)
        if self.is_running:
            return True
        self.bus.fault(Fault.SESSION_ENDED, now, op=op)
        return False

    def end_session(self, now: float) -> SessionSummary:
        """Freeze scoring and build the summary. Repeat calls return the same summary."""
        if self.summary is not None:
            return self.summary
        self.is_running = False
        start = self.session_start if self.session_start is not None else now
        self.session_duration = max(0.0, min(float(now), start + self.session_seconds) - start)
        timing = _clamp(100.0 - statistics.fmean(self.timing_accuracy)) if self.timing_accuracy else 50.0
        self.summary = SessionSummary(
            score=int(self.score),
            timing=round(timing, 2),
            flow=self.flow_score,
            taste=self.taste_score,
            hit_count=self.hit_count,
            duration=round(self.session_duration, 3),
        )
        self.emit_telemetry("sessionEnd", now, **self.summary.to_dict())
        log.info("session ended: %s", self.summary)
        return self.summary

    # --- Inputs ---
    def handle_hit(self, pad_id: int, velocity: float, now: float) -> bool:
        if not self._accepting(now, "hit"):
            return False
        ref = self.last_hit_time if self.last_hit_time is not None else self.session_start
        since_ms = (now - (ref if ref is not None else now)) * 1000.0
        self.last_hit_time = now
        self.hit_count += 1

        error = timing_error_ms(since_ms, sixteenth_ms(self.transport.tempo))
        self.timing_accuracy.append(error)

        if since_ms < COMBO_GAP_MS:
            self.combo += 1
            self.flow_score = _clamp(self.flow_score + FLOW_GAIN)
        else:
            self.combo = 1
            self.flow_score = _clamp(self.flow_score - FLOW_LOSS)
        self.max_combo = max(self.max_combo, self.combo)
        self.score += BASE_HIT_SCORE * min(self.combo, COMBO_CAP)

        self._add_hype(HYPE_PER_HIT, now, "hit")
        self._track_pattern(pad_id)
        self.emit_telemetry("hit", now, padId=pad_id, velocity=velocity, timingErrorMs=round(error, 3), combo=self.combo)
        return True

    def handle_roll_start(self, pad_id: int, now: float) -> bool:
        if not self._accepting(now, "rollStart"):
            return False
        self._add_hype(HYPE_PER_ROLL, now, "roll")
        self.emit_telemetry("roll", now, padId=pad_id)
        return True

    def handle_hold_release(self, pad_id: int, duration_ms: float, now: float) -> bool:
        """Grant release hype when the hold lasted strictly between 400 and 600 ms."""
        if not self._accepting(now, "holdRelease"):
            return False
        clean = RELEASE_MIN_MS < float(duration_ms) < RELEASE_MAX_MS
        if clean:
            self._add_hype(HYPE_PER_RELEASE, now, "release")
        self.emit_telemetry("hold", now, padId=pad_id, durationMs=duration_ms, clean=clean)
        return clean

    def can_spend_hype(self) -> bool:
        return self.hype >= HYPE_DROP_THRESHOLD

    def spend_hype(self, now: float, window: str = "on") -> bool:
        if not self._accepting(now, "spendHype"):
            return False
        if not self.can_spend_hype():
            self.bus.fault(Fault.INSUFFICIENT_HYPE, now, hype=self.hype, needed=HYPE_DROP_THRESHOLD)
            return False
        spent = self.hype
        self.score += int(spent * DROP_SCORE_PER_HYPE)
        self.hype = 0.0
        self.bus.emit(HYPE, now, hype=self.hype, reason="drop")
        self.emit_telemetry("drop", now, window=window, hypeSpent=spent)
        return True

    # --- Internals ---
    def _add_hype(self, amount: float, now: float, reason: str) -> None:
        before = self.hype
        self.hype = _clamp(self.hype + amount, 0.0, HYPE_MAX)
        if self.hype != before:
            self.bus.emit(HYPE, now, hype=self.hype, reason=reason)

    def _track_pattern(self, pad_id: int) -> None:
        self.pattern_history.append(pad_id)
        if len(self.pattern_history) < 2 * PATTERN_SPAN:
            return
        recent = list(self.pattern_history)[-2 * PATTERN_SPAN:]
        if recent[:PATTERN_SPAN] == recent[PATTERN_SPAN:]:
            self.taste_score = _clamp(self.taste_score - TASTE_PENALTY)
            log.debug("repeated 4-hit pattern %s; taste=%.0f", recent[PATTERN_SPAN:], self.taste_score)

    def emit_telemetry(self, kind: str, now: float, **data: Any) -> Dict[str, Any]:
        record = {"type": kind, "timestamp": now}
        if self.session_start is not None:
            record["sessionTime"] = round((now - self.session_start) * 1000.0, 3)
        record.update(data)
        self.telemetry_events.append(record)
        self.bus.emit(TELEMETRY, now, **record)
        return record

    # --- Queries ---
    def snapshot(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "combo": self.combo,
            "maxCombo": self.max_combo,
            "hype": self.hype,
            "flow": self.flow_score,
            "taste": self.taste_score,
            "hitCount": self.hit_count,
            "running": self.is_running,
        }
