from __future__ import annotations

import logging
import wave
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


log = logging.getLogger(__name__)

SLICE_NAMES = ("KICK", "SNARE", "HAT", "GHOST", "CRASH", "RIDE")
# Optional slice for the drop impact voice; KICK stands in when a pack lacks it
IMPACT_SLICE = "IMPACT"

PAD_SLICES: Dict[int, str] = {
    1: "KICK",
    2: "SNARE",
    3: "HAT",
    4: "GHOST",
    5: "CRASH",
    6: "RIDE",
}

DEFAULT_SAMPLE_RATE = 44100


@dataclass(frozen=True)
class SampleBuffer:
    """A decoded buffer handed to the core by the sample provider.

    The core only needs identity and length; `data` is opaque and passed
    through to the sink untouched.
    """

    name: str
    frames: int
    sample_rate: int = DEFAULT_SAMPLE_RATE
    data: Any = field(default=None, compare=False, repr=False)

    @property
    def duration(self) -> float:
        return self.frames / float(self.sample_rate) if self.sample_rate > 0 else 0.0


def placeholder_pack(durations: Mapping[str, float], sample_rate: int = DEFAULT_SAMPLE_RATE) -> Dict[str, SampleBuffer]:
    return {
        name: SampleBuffer(name=name, frames=int(round(seconds * sample_rate)), sample_rate=sample_rate)
        for name, seconds in durations.items()
    }


# Tail lengths of the stock break kits; buffers are supplied by the host at runtime
BUILTIN_PACKS: Dict[str, Dict[str, float]] = {
    "amen": {"KICK": 0.5, "SNARE": 0.2, "HAT": 0.05, "GHOST": 0.2, "CRASH": 2.0, "RIDE": 0.5},
    "think": {"KICK": 0.4, "SNARE": 0.25, "HAT": 0.08, "GHOST": 0.15, "CRASH": 1.5, "RIDE": 0.6},
}


class SampleBank:
    """Slice name -> buffer mapping, swappable at runtime by pack id."""

    def __init__(self, packs: Optional[Mapping[str, Mapping[str, SampleBuffer]]] = None, pack: Optional[str] = None):
        self._packs: Dict[str, Dict[str, SampleBuffer]] = {}
        for pack_id, mapping in (packs or {}).items():
            self.register_pack(pack_id, mapping)
        self.pack_id: Optional[str] = None
        if pack is not None:
            self.set_pack(pack)
        elif self._packs:
            self.pack_id = next(iter(self._packs))

    @classmethod
    def with_builtin_packs(cls, pack: str = "amen") -> "SampleBank":
        return cls({pid: placeholder_pack(d) for pid, d in BUILTIN_PACKS.items()}, pack=pack)

    def register_pack(self, pack_id: str, mapping: Mapping[str, SampleBuffer]) -> None:
        self._packs[str(pack_id)] = {str(k).upper(): v for k, v in mapping.items()}

    def set_pack(self, pack_id: str) -> bool:
        if pack_id not in self._packs:
            log.warning("unknown sample pack %r", pack_id)
            return False
        self.pack_id = pack_id
        log.info("sample pack -> %s", pack_id)
        return True

    def packs(self) -> list:
        return sorted(self._packs)

    def get(self, slice_name: str) -> Optional[SampleBuffer]:
        if self.pack_id is None:
            return None
        return self._packs[self.pack_id].get(slice_name)


def wav_buffer(path: Path, name: str) -> SampleBuffer:
    # Header only: frame count and rate. Audio data stays with the host.
    with wave.open(str(path), "rb") as w:
        return SampleBuffer(name=name, frames=int(w.getnframes()), sample_rate=int(w.getframerate()), data=str(path))


def load_pack_dir(bank: SampleBank, pack_id: str, directory: Path) -> Dict[str, SampleBuffer]:
    """Register a pack from a directory holding KICK.wav ... RIDE.wav (IMPACT.wav optional)."""
    directory = Path(directory)
    mapping: Dict[str, SampleBuffer] = {}
    for name in SLICE_NAMES + (IMPACT_SLICE,):
        path = directory / f"{name}.wav"
        if path.exists():
            mapping[name] = wav_buffer(path, name)
        elif name != IMPACT_SLICE:
            log.warning("pack %s: missing %s", pack_id, path.name)
    bank.register_pack(pack_id, mapping)
    return mapping
