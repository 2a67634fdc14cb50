#!/usr/bin/env python3
"""
Sample heartbeat worker.

Appends one timestamped line per invocation to a local history file.
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from pathlib import Path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Record a heartbeat for the demo schedule.")
    parser.add_argument("--output", default="workers/sample/state/heartbeats.jsonl")
    parser.add_argument("--label", default="heartbeat")
    parser.add_argument("--fail", action="store_true", help="Exit non-zero after recording")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    event = {
        "fired_at": datetime.now(tz=timezone.utc).isoformat(),
        "label": args.label,
    }

    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(event) + "\n")

    print(f"Heartbeat recorded: label={args.label}, output={output_path}")
    return 1 if args.fail else 0


if __name__ == "__main__":
    raise SystemExit(main())
