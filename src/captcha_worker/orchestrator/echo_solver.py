"""Local deterministic solver for integration tests and offline demos.

Speaks the same stdin/stdout protocol as the real solver binary:

- ``auth`` mode reads one handshake line and prints one status object.
- task mode acknowledges the handshake, answers ``get_task`` with synthetic
  tasks and ``submit_solution`` with ``solution_saved``.
- with ``--no-ack`` task mode behaves like the production binary: the
  handshake result goes to stderr only and a rejected key ends the process
  with exit code 0.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, TextIO


def main(argv: list[str] | None = None) -> int:
    """Run the echo solver on stdin/stdout."""

    parser = argparse.ArgumentParser(prog="echo_solver")
    parser.add_argument("mode", nargs="?", choices=("auth", "tasks"), default="tasks")
    parser.add_argument(
        "--valid-key",
        action="append",
        default=[],
        help="Accepted credential. Repeatable; any non-empty key when omitted.",
    )
    parser.add_argument("--balance", default="42.5")
    parser.add_argument("--tasks", type=int, default=3, help="How many tasks to hand out.")
    parser.add_argument("--url", default="https://example.com/challenge")
    parser.add_argument("--sitekey", default="test-sitekey")
    parser.add_argument("--type", dest="captcha_type", default="recaptcha")
    parser.add_argument(
        "--garbage",
        action="store_true",
        help="Print a malformed line before every task.",
    )
    parser.add_argument(
        "--no-ack",
        action="store_true",
        help="Report the handshake on stderr only, never on stdout.",
    )
    parser.add_argument(
        "--crash-after-tasks",
        type=int,
        default=None,
        help="Exit with code 3 right after handing out this many tasks.",
    )
    args = parser.parse_args(argv)

    if args.mode == "auth":
        return _run_auth(args, sys.stdin)
    return _run_tasks(args, sys.stdin)


def _run_auth(args: argparse.Namespace, source: TextIO) -> int:
    line = source.readline()
    if not line.strip():
        _emit({"status": "error", "message": "no_input"})
        return 0
    reply, _ = _check_handshake(args, line)
    _emit(reply)
    return 0


def _run_tasks(args: argparse.Namespace, source: TextIO) -> int:
    first = source.readline()
    if not first.strip():
        _log("no handshake received")
        return 1
    reply, ok = _check_handshake(args, first)
    if args.no_ack:
        _log("handshake accepted" if ok else f"handshake rejected: {reply['message']}")
        if not ok:
            return 0
    else:
        _emit(reply)
        if not ok:
            _log("handshake rejected")
            return 1

    issued = 0
    for raw in source:
        line = raw.strip()
        if not line:
            continue
        try:
            command = json.loads(line)
        except json.JSONDecodeError:
            _log(f"invalid JSON: {line}")
            continue

        name = command.get("command") if isinstance(command, dict) else None
        if name == "get_task":
            if issued >= args.tasks:
                _emit({"status": "error", "message": "no_tasks"})
                continue
            issued += 1
            if args.garbage:
                print("not json at all", flush=True)
            _emit(
                {
                    "url": args.url,
                    "sitekey": args.sitekey,
                    "type": args.captcha_type,
                    "task_id": issued,
                },
            )
            if args.crash_after_tasks is not None and issued >= args.crash_after_tasks:
                _log("crashing on purpose")
                return 3
        elif name == "submit_solution":
            if not command.get("solution"):
                _emit({"status": "error", "message": "empty_solution"})
                continue
            _log(f"solution for task {command.get('task_id')!r} saved")
            _emit({"status": "solution_saved"})
        else:
            _log(f"unknown command: {line}")

    _log("stdin closed")
    return 0


def _check_handshake(args: argparse.Namespace, line: str) -> tuple[dict[str, Any], bool]:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return {"status": "error", "message": "invalid_json"}, False
    key = payload.get("api_key") if isinstance(payload, dict) else None
    if not isinstance(key, str) or not key:
        return {"status": "error", "message": "invalid"}, False
    if args.valid_key and key not in args.valid_key:
        return {"status": "error", "message": "invalid"}, False
    return {"status": "ok", "balance": float(args.balance)}, True


def _emit(payload: dict[str, Any]) -> None:
    print(json.dumps(payload), flush=True)


def _log(message: str) -> None:
    print(f"echo_solver: {message}", file=sys.stderr, flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
