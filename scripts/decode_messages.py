#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

# Ensure repository root is importable when running the script directly.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gps_server.decoders import decode_message
from gps_server.rawlog import read_logged_messages


def _collect(args: argparse.Namespace) -> list[str]:
    messages: list[str] = list(args.message)
    if args.file:
        lines = Path(args.file).read_text(encoding="utf-8").splitlines()
        messages.extend(line.strip() for line in lines if line.strip())
    if args.raw_log:
        messages.extend(read_logged_messages(args.raw_log))
    return messages


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Decode GPS device messages and print one JSON record per line."
    )
    parser.add_argument("message", nargs="*", help="Raw device message(s)")
    parser.add_argument("--file", help="Text file with one message per line")
    parser.add_argument("--raw-log", help="Raw text log written by the gateway")
    parser.add_argument(
        "--only-attributable",
        action="store_true",
        help="Skip records without an IMEI",
    )
    args = parser.parse_args()

    messages = _collect(args)
    if not messages:
        parser.error("no messages given")

    for message in messages:
        record = decode_message(message)
        if args.only_attributable and not record.attributable:
            continue
        print(json.dumps(record.as_dict()))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
