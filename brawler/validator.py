from __future__ import annotations

import argparse
import hashlib
import json
import math
import sys
from typing import Any, Dict, List


SETTINGS_VERSION = "brawler-1.0"
KNOWN_SIDECHAIN = ("Light", "Classic", "Heavy")


def _err(errors: List[str], path: str, msg: str) -> None:
    errors.append(f"{path}: {msg}")


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(float(v))


def validate_settings(doc: Dict[str, Any]) -> List[str]:
    """Validate a session settings document.

    Returns a list of human-readable errors with JSON-pointer-like paths.
    Every section is optional; present keys must be well-formed.
    """
    errors: List[str] = []
    if not isinstance(doc, dict):
        return ["/: settings must be an object"]

    if doc.get("version", SETTINGS_VERSION) != SETTINGS_VERSION:
        _err(errors, "/version", f"must equal '{SETTINGS_VERSION}'")

    tr = doc.get("transport")
    if tr is not None:
        if not isinstance(tr, dict):
            _err(errors, "/transport", "must be an object if present")
        else:
            if "tempo" in tr and (not _is_number(tr["tempo"]) or not (20 <= float(tr["tempo"]) <= 400)):
                _err(errors, "/transport/tempo", "number 20..400 (BPM) required")
            for key in ("beatsPerBar", "barsPerPhrase"):
                if key in tr:
                    v = tr[key]
                    if not isinstance(v, int) or isinstance(v, bool) or not (1 <= v <= 16):
                        _err(errors, f"/transport/{key}", "integer 1..16 required")

    sess = doc.get("session")
    if sess is not None:
        if not isinstance(sess, dict):
            _err(errors, "/session", "must be an object if present")
        elif "seconds" in sess and (not _is_number(sess["seconds"]) or float(sess["seconds"]) <= 0):
            _err(errors, "/session/seconds", "number > 0 required")

    audio = doc.get("audio")
    if audio is not None:
        if not isinstance(audio, dict):
            _err(errors, "/audio", "must be an object if present")
        else:
            if "sidechain" in audio and audio["sidechain"] not in KNOWN_SIDECHAIN:
                _err(errors, "/audio/sidechain", "must be 'Light'|'Classic'|'Heavy'")
            if "pack" in audio and (not isinstance(audio["pack"], str) or not audio["pack"]):
                _err(errors, "/audio/pack", "non-empty string required")
            if "lookaheadMs" in audio and (not _is_number(audio["lookaheadMs"]) or not (0 <= float(audio["lookaheadMs"]) <= 1000)):
                _err(errors, "/audio/lookaheadMs", "number 0..1000 required")
            if "schedulerIntervalMs" in audio and (not _is_number(audio["schedulerIntervalMs"]) or not (1 <= float(audio["schedulerIntervalMs"]) <= 500)):
                _err(errors, "/audio/schedulerIntervalMs", "number 1..500 required")

    packs = doc.get("packs")
    if packs is not None:
        if not isinstance(packs, dict):
            _err(errors, "/packs", "must be an object (packId -> directory) if present")
        else:
            for pid, path in packs.items():
                if not isinstance(path, str) or not path:
                    _err(errors, f"/packs/{pid}", "directory path string required")

    known = {"version", "transport", "session", "audio", "packs"}
    for key in doc:
        if key not in known:
            _err(errors, f"/{key}", "unknown section")

    return errors


def sha256_canonical(doc: Dict[str, Any]) -> str:
    """Compute SHA-256 of canonical JSON string (sorted keys, compact)."""
    s = json.dumps(doc, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description=f"Validate {SETTINGS_VERSION} session settings JSON")
    ap.add_argument("path", help="Path to settings JSON file")
    ap.add_argument("--print-hash", action="store_true", help="Print SHA-256 of canonical JSON")
    args = ap.parse_args(argv)

    try:
        with open(args.path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except (OSError, ValueError) as e:
        print(f"error: failed to read {args.path}: {e}", file=sys.stderr)
        return 2

    errors = validate_settings(doc)
    if errors:
        print("invalid settings:")
        for e in errors:
            print(f" - {e}")
        return 1
    if args.print_hash:
        print(sha256_canonical(doc))
    print("ok: valid settings")
    return 0


if __name__ == "__main__":
    sys.exit(main())
