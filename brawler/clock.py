from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Tuple


log = logging.getLogger(__name__)

TimeSource = Callable[[], float]
# Callbacks receive the target time of the event they fire for.
EventCallback = Callable[[float], None]


@dataclass(frozen=True)
class ScheduleHandle:
    id: int


@dataclass
class _Entry:
    handle: ScheduleHandle
    callback: EventCallback
    start: float
    interval: Optional[float]
    lead: bool = False
    count: int = 0
    cancelled: bool = False

    def target(self) -> float:
        if self.interval is None:
            return self.start
        # start + n*interval avoids accumulating float drift across repeats
        return self.start + self.count * self.interval


class LookaheadScheduler:
    """Single logical timeline with look-ahead dispatch for sink triggers.

    - State events (transport counters, windows, timers) fire once their
      target time has been reached, never earlier.
    - Lead events (audio triggers) fire up to `lookahead` seconds before
      their target so downstream sinks can queue them precisely.
    - Dispatch order is (target time, insertion order), never arrival order.
    - `lock` is the timeline lock; control code must hold it while mutating
      state that scheduled callbacks also touch.
    """

    def __init__(self, time_source: TimeSource = time.monotonic, lookahead: float = 0.1, interval: float = 0.025):
        self.now: TimeSource = time_source
        self.lookahead = float(lookahead)
        self.interval = float(interval)
        self.lock = threading.RLock()
        self._heap: List[Tuple[float, int, _Entry]] = []
        self._lead_heap: List[Tuple[float, int, _Entry]] = []
        self._entries: Dict[int, _Entry] = {}
        self._ids = itertools.count(1)
        self._seq = itertools.count()
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._late_ms: Deque[float] = deque(maxlen=512)
        self.dispatched = 0

    # --- Scheduling ---
    def schedule_once(self, callback: EventCallback, when: float, lead: bool = False) -> ScheduleHandle:
        return self._add(callback, float(when), None, lead)

    def schedule_repeat(self, callback: EventCallback, interval: float, start: float, lead: bool = False) -> ScheduleHandle:
        if interval <= 0:
            raise ValueError("repeat interval must be positive")
        return self._add(callback, float(start), float(interval), lead)

    def cancel(self, handle: Optional[ScheduleHandle]) -> bool:
        """Cancel a pending event. Safe to call repeatedly or after it fired."""
        if handle is None:
            return False
        with self.lock:
            entry = self._entries.pop(handle.id, None)
            if entry is None:
                return False
            entry.cancelled = True
            return True

    def is_active(self, handle: Optional[ScheduleHandle]) -> bool:
        if handle is None:
            return False
        with self.lock:
            return handle.id in self._entries

    def pending(self) -> int:
        with self.lock:
            return len(self._entries)

    def _add(self, callback: EventCallback, start: float, interval: Optional[float], lead: bool) -> ScheduleHandle:
        with self.lock:
            handle = ScheduleHandle(next(self._ids))
            entry = _Entry(handle=handle, callback=callback, start=start, interval=interval, lead=lead)
            self._entries[handle.id] = entry
            self._push(entry)
            return handle

    def _push(self, entry: _Entry) -> None:
        heap = self._lead_heap if entry.lead else self._heap
        heapq.heappush(heap, (entry.target(), next(self._seq), entry))

    # --- Dispatch ---
    def _next_due(self, now: float) -> Optional[List[Tuple[float, int, _Entry]]]:
        due = []
        if self._heap and self._heap[0][0] <= now:
            due.append(self._heap)
        if self._lead_heap and self._lead_heap[0][0] <= now + self.lookahead:
            due.append(self._lead_heap)
        if not due:
            return None
        return min(due, key=lambda heap: heap[0][:2])

    def pump(self, now: float) -> int:
        """Dispatch state events due by `now` and lead events due by `now + lookahead`.

        Returns the number of callbacks run.
        """
        fired = 0
        with self.lock:
            while True:
                heap = self._next_due(now)
                if heap is None:
                    break
                target, _, entry = heapq.heappop(heap)
                if entry.cancelled:
                    continue
                if entry.interval is None:
                    self._entries.pop(entry.handle.id, None)
                else:
                    entry.count += 1
                    self._push(entry)
                intended = target - self.lookahead if entry.lead else target
                self._late_ms.append(max(0.0, (self.now() - intended) * 1000.0))
                try:
                    entry.callback(target)
                except Exception:
                    log.exception("scheduled callback failed (target=%.4f)", target)
                fired += 1
            self.dispatched += fired
        return fired

    # --- Background loop ---
    def start(self) -> None:
        if self._t and self._t.is_alive():
            return
        self._stop.clear()
        self._t = threading.Thread(target=self._run, name="brawler-scheduler", daemon=True)
        self._t.start()

    def stop(self) -> None:
        self._stop.set()
        if self._t:
            self._t.join(timeout=1.0)
            self._t = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.pump(self.now())
            self._stop.wait(self.interval)

    # --- Metrics ---
    def _percentile(self, values: List[float], pct: float) -> float:
        if not values:
            return 0.0
        xs = sorted(values)
        k = (len(xs) - 1) * pct
        f = int(k)
        c = min(f + 1, len(xs) - 1)
        if f == c:
            return xs[f]
        d0 = xs[f] * (c - k)
        d1 = xs[c] * (k - f)
        return d0 + d1

    def get_metrics(self) -> dict:
        # Lateness against the intended dispatch time (target, or target - lookahead for lead events)
        with self.lock:
            samples = list(self._late_ms)
            pending = len(self._entries)
        return {
            "lateMsP95": round(self._percentile(samples, 0.95), 3),
            "lateMsP99": round(self._percentile(samples, 0.99), 3),
            "pending": pending,
            "dispatched": self.dispatched,
        }


class ManualTime:
    """Settable time source for deterministic drivers (tests, offline runs)."""

    def __init__(self, t: float = 0.0):
        self.t = float(t)

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> float:
        self.t += float(dt)
        return self.t
