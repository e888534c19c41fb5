from __future__ import annotations

import argparse

from brawler.audio_out import MidoSink, open_mido_output


def main():
    ap = argparse.ArgumentParser(description="Silence the drum module (All Sound Off / All Notes Off)")
    ap.add_argument("--port", required=True, help="Substring to match MIDI output port")
    ap.add_argument("--channel", type=int, default=10, help="MIDI channel 1-16 (default: 10, GM drums)")
    args = ap.parse_args()
    out = open_mido_output(args.port)
    MidoSink(out, channel=args.channel - 1).panic()
    print(f"panic sent on channel {args.channel} (CC120/123)")


if __name__ == "__main__":
    main()
