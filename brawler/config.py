from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import jsonpatch

from brawler.validator import SETTINGS_VERSION, validate_settings


class ConfigError(Exception):
    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.details = list(details or [])


@dataclass
class SessionConfig:
    tempo: float = 172.0
    beats_per_bar: int = 4
    bars_per_phrase: int = 4
    session_seconds: float = 90.0
    lookahead: float = 0.1
    scheduler_interval: float = 0.025
    sidechain: str = "Classic"
    pack: str = "amen"
    pack_dirs: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "SessionConfig":
        errors = validate_settings(doc)
        if errors:
            raise ConfigError("invalid settings", errors)
        cfg = cls()
        tr = doc.get("transport", {})
        cfg.tempo = float(tr.get("tempo", cfg.tempo))
        cfg.beats_per_bar = int(tr.get("beatsPerBar", cfg.beats_per_bar))
        cfg.bars_per_phrase = int(tr.get("barsPerPhrase", cfg.bars_per_phrase))
        cfg.session_seconds = float(doc.get("session", {}).get("seconds", cfg.session_seconds))
        audio = doc.get("audio", {})
        cfg.sidechain = str(audio.get("sidechain", cfg.sidechain))
        cfg.pack = str(audio.get("pack", cfg.pack))
        cfg.lookahead = float(audio.get("lookaheadMs", cfg.lookahead * 1000.0)) / 1000.0
        cfg.scheduler_interval = float(audio.get("schedulerIntervalMs", cfg.scheduler_interval * 1000.0)) / 1000.0
        cfg.pack_dirs = dict(doc.get("packs", {}))
        return cfg

    def to_doc(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "version": SETTINGS_VERSION,
            "transport": {"tempo": self.tempo, "beatsPerBar": self.beats_per_bar, "barsPerPhrase": self.bars_per_phrase},
            "session": {"seconds": self.session_seconds},
            "audio": {
                "sidechain": self.sidechain,
                "pack": self.pack,
                "lookaheadMs": round(self.lookahead * 1000.0, 3),
                "schedulerIntervalMs": round(self.scheduler_interval * 1000.0, 3),
            },
        }
        if self.pack_dirs:
            doc["packs"] = dict(self.pack_dirs)
        return doc


def load_config(path: Optional[str]) -> SessionConfig:
    """Load settings JSON from path; defaults when path is None."""
    if not path:
        return SessionConfig()
    if not os.path.exists(path):
        raise ConfigError(f"settings file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except ValueError as e:
        raise ConfigError(f"settings file is not valid JSON: {path}", [str(e)]) from e
    return SessionConfig.from_doc(doc)


# Paths a running session may patch; anything else needs a restart
LIVE_PATHS = ("/transport/tempo", "/audio/sidechain", "/audio/pack")


def apply_settings_patch(doc: Dict[str, Any], ops: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Apply an RFC 6902 patch to a copy of a settings doc and validate the result.

    Raises ConfigError for non-live paths, malformed ops, or invalid results.
    """
    for op in ops:
        path = str(op.get("path", "")) if isinstance(op, dict) else ""
        if path not in LIVE_PATHS:
            raise ConfigError("patch touches a non-live setting", [path or "<missing path>"])
    try:
        patched = jsonpatch.JsonPatch(ops).apply(copy.deepcopy(doc), in_place=False)
    except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as e:
        raise ConfigError("patch failed to apply", [str(e)]) from e
    errors = validate_settings(patched)
    if errors:
        raise ConfigError("patched settings are invalid", errors)
    return patched
