from __future__ import annotations

# Two time domains: wall clock (seconds, float) and musical clock (beats, float).
# Never compare across domains without going through these helpers.

MIN_BPM = 1.0


def _bpm(bpm: float) -> float:
    return max(MIN_BPM, float(bpm))


def seconds_per_beat(bpm: float) -> float:
    return 60.0 / _bpm(bpm)


def beats_to_seconds(beats: float, bpm: float) -> float:
    """Convert a musical duration (beats) to wall-clock seconds."""
    return float(beats) * seconds_per_beat(bpm)


def seconds_to_beats(seconds: float, bpm: float) -> float:
    """Convert a wall-clock duration (seconds) to beats."""
    return float(seconds) / seconds_per_beat(bpm)


def bar_seconds(bpm: float, beats_per_bar: int) -> float:
    return beats_to_seconds(max(1, int(beats_per_bar)), bpm)


def sixteenth_ms(bpm: float) -> float:
    """Scoring grid interval: one sixteenth note in milliseconds."""
    return 60000.0 / _bpm(bpm) / 4.0


def roll_interval_beats(rate: int) -> float:
    """Roll tick spacing in beats: `rate` ticks per beat."""
    return 1.0 / max(1, int(rate))
