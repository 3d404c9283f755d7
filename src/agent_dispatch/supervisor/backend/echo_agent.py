"""Local stand-in agent for CLI backend integration tests.

Prints a result envelope the way the real agent CLI does with
``--output-format json``; flags make it misbehave on purpose.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Run a deterministic fake agent."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", "--prompt", required=True)
    parser.add_argument("--resume", default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--garbage", action="store_true")
    parser.add_argument("--ansi", action="store_true")
    parser.add_argument("--noise", action="store_true")
    parser.add_argument("--ignore-sigterm", action="store_true")
    args = parser.parse_args(argv)

    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.exit_code != 0:
        print(f"echo agent failed on purpose: {args.prompt}", file=sys.stderr)
        return args.exit_code
    if args.garbage:
        print("this is not an envelope")
        return 0
    if args.noise:
        print("loading workspace...")
        print("\x1b[2mthinking\x1b[0m")

    envelope = json.dumps(
        {
            "result": args.prompt,
            "session_id": args.resume or "echo-session-1",
            "resumed": args.resume is not None,
            "force_color": os.getenv("FORCE_COLOR"),
        },
        ensure_ascii=False,
    )
    if args.ansi:
        envelope = f"\x1b[32m{envelope}\x1b[0m"
    print(envelope)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
