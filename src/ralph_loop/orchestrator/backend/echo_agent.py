"""Local stand-in for the coding CLI used by integration tests.

Reads the prompt (stdin or trailing argument) and prints stream-json events
the way ``claude --print --output-format stream-json`` does.
"""

from __future__ import annotations

import argparse
import json
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Emit a deterministic event stream and exit."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--session-id", default="echo-session")
    parser.add_argument("--promise", default=None, help="Wrap this text in <promise> tags.")
    parser.add_argument("--input-tokens", type=int, default=10)
    parser.add_argument("--output-tokens", type=int, default=5)
    parser.add_argument("--results", type=int, default=1, help="How many result events.")
    parser.add_argument("--hang-seconds", type=float, default=0.0)
    parser.add_argument("--stderr", default=None, help="Line to print on stderr.")
    parser.add_argument("--garbage", action="store_true", help="Print a non-JSON line first.")
    parser.add_argument("prompt", nargs="?", default=None)
    args = parser.parse_args(argv)

    prompt = args.prompt if args.prompt is not None else sys.stdin.read()

    if args.garbage:
        _emit_raw("not json at all")
    if args.stderr:
        print(args.stderr, file=sys.stderr, flush=True)
    _emit({"type": "system", "subtype": "init", "session_id": args.session_id})

    text = f"echo: {prompt.strip()}"
    if args.promise:
        text = f"{text}\n<promise>{args.promise}</promise>"
    _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})

    for _ in range(args.results):
        _emit(
            {
                "type": "result",
                "session_id": args.session_id,
                "usage": {
                    "input_tokens": args.input_tokens,
                    "output_tokens": args.output_tokens,
                },
                "total_cost_usd": 0.01,
            },
        )

    if args.hang_seconds > 0:
        time.sleep(args.hang_seconds)
    return 0


def _emit(payload: dict[str, object]) -> None:
    _emit_raw(json.dumps(payload))


def _emit_raw(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
