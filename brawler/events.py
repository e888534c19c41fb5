from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


log = logging.getLogger(__name__)


class Fault(str, Enum):
    """Locally recoverable failures. Reported, never raised."""

    UNKNOWN_PAD = "UnknownPad"
    DROP_WINDOW_CLOSED = "DropWindowClosed"
    INSUFFICIENT_HYPE = "InsufficientHype"
    SESSION_ENDED = "SessionEnded"
    ENGINE_NOT_INITIALIZED = "EngineNotInitialized"
    MISSING_SAMPLE = "MissingSample"
    INVALID_RATE = "InvalidRate"


# Event type names (also the websocket message "type")
BEAT = "beat"
BAR = "bar"
PHRASE = "phrase"
DROP_WINDOW = "dropWindow"
HYPE = "hype"
VOICE = "voice"
TELEMETRY = "telemetry"
STATUS = "status"


@dataclass(frozen=True)
class Event:
    type: str
    ts: float
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "ts": self.ts, "payload": dict(self.payload)}


Subscriber = Callable[[Event], None]


class EventBus:
    """Explicit observer registration for state-change and telemetry events."""

    def __init__(self) -> None:
        self._subs: Dict[Optional[str], List[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Optional[str], callback: Subscriber) -> Callable[[], None]:
        """Register callback for one event type, or every event when type is None.

        Returns a function that removes the subscription.
        """
        with self._lock:
            self._subs.setdefault(event_type, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                subs = self._subs.get(event_type, [])
                if callback in subs:
                    subs.remove(callback)

        return _unsubscribe

    def emit(self, event_type: str, ts: float, **payload: Any) -> Event:
        ev = Event(type=event_type, ts=float(ts), payload=payload)
        with self._lock:
            targets = list(self._subs.get(event_type, [])) + list(self._subs.get(None, []))
        for cb in targets:
            try:
                cb(ev)
            except Exception:
                log.exception("event subscriber failed for %s", event_type)
        return ev

    def fault(self, fault: Fault, ts: float, **detail: Any) -> Event:
        if fault is Fault.MISSING_SAMPLE:
            log.info("%s %s", fault.value, detail)
        else:
            log.warning("%s %s", fault.value, detail)
        return self.emit(STATUS, ts, ok=False, error=fault.value, **detail)


class EventRecorder:
    """Collects events in arrival order; handy for UI adapters and tests."""

    def __init__(self, bus: EventBus, event_type: Optional[str] = None):
        self.events: List[Event] = []
        self._unsub = bus.subscribe(event_type, self.events.append)

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.type == event_type]

    def close(self) -> None:
        self._unsub()
