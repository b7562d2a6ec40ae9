"""Local stand-in for the `codex exec` CLI used by integration tests.

Behaviour is driven by directives on the first line of the prompt read from
stdin, for example ``[agent:fail] [agent:sleep=2] Review the parser``:

- ``fail``: print an error to stderr and exit 2 without writing output.
- ``sleep=<seconds>``: sleep before answering.
- ``stdout-only``: emit the JSONL stream but skip the last-message file.

Set ``ECHO_AGENT_FLOOD_BYTES`` to write that many bytes to stdout before stdin
is read. Set ``ECHO_AGENT_STATE_DIR`` to record one JSON line per invocation in
``invocations.jsonl`` together with the number of agents running at start.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import time
from pathlib import Path

_DIRECTIVE = re.compile(r"\[agent:([a-z-]+)(?:=([^\]]+))?\]")


def main(argv: list[str] | None = None) -> int:
    """Run deterministic fake review behaviour."""

    parser = argparse.ArgumentParser(prog="codex")
    parser.add_argument("--version", action="version", version="codex-echo 0.0.1")
    parser.add_argument("command", choices=["exec"])
    parser.add_argument("--model", default=None)
    parser.add_argument("--full-auto", action="store_true")
    parser.add_argument("--skip-git-repo-check", action="store_true")
    parser.add_argument("--ephemeral", action="store_true")
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--output-last-message", default=None)
    parser.add_argument("rest", nargs="*")
    args = parser.parse_intermixed_args(argv)

    mode = "review" if "review" in args.rest else "stage"
    state_dir = os.getenv("ECHO_AGENT_STATE_DIR")
    marker = _mark_running(state_dir)
    try:
        return _run(args=args, mode=mode, state_dir=state_dir)
    finally:
        if marker is not None:
            marker.unlink(missing_ok=True)


def _run(*, args: argparse.Namespace, mode: str, state_dir: str | None) -> int:
    flood = 0
    flood_env = os.getenv("ECHO_AGENT_FLOOD_BYTES")
    if flood_env:
        flood = int(flood_env)
        sys.stdout.write("x" * flood + "\n")
        sys.stdout.flush()

    prompt = sys.stdin.read()
    first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
    directives = {name: value for name, value in _DIRECTIVE.findall(first_line)}
    _record_invocation(state_dir, mode=mode, first_line=first_line, args=args, flood=flood)

    if "sleep" in directives:
        time.sleep(float(directives["sleep"]))

    if "fail" in directives:
        print(f"simulated failure for: {_strip_directives(first_line)}", file=sys.stderr)
        return 2

    message = f"{mode} result for: {_strip_directives(first_line)}"
    if args.json:
        events = [
            {"type": "thread.started", "thread_id": "echo"},
            {"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}},
            {"type": "item.completed", "item": {"type": "agent_message", "text": message}},
            {"type": "turn.completed", "usage": {"input_tokens": len(prompt)}},
        ]
        for event in events:
            print(json.dumps(event))
    else:
        print(message)

    if args.output_last_message and "stdout-only" not in directives:
        Path(args.output_last_message).write_text(message, "utf-8")
    return 0


def _strip_directives(line: str) -> str:
    return _DIRECTIVE.sub("", line).strip()


def _mark_running(state_dir: str | None) -> Path | None:
    if not state_dir:
        return None
    running_dir = Path(state_dir) / "running"
    running_dir.mkdir(parents=True, exist_ok=True)
    marker = running_dir / f"{os.getpid()}"
    marker.write_text("", "utf-8")
    return marker


def _record_invocation(
    state_dir: str | None,
    *,
    mode: str,
    first_line: str,
    args: argparse.Namespace,
    flood: int,
) -> None:
    if not state_dir:
        return
    running = sum(1 for _ in (Path(state_dir) / "running").iterdir())
    entry = {
        "mode": mode,
        "first_line": first_line,
        "model": args.model,
        "full_auto": args.full_auto,
        "skip_git_repo_check": args.skip_git_repo_check,
        "ephemeral": args.ephemeral,
        "output_last_message": args.output_last_message,
        "running": running,
        "flood": flood,
    }
    with (Path(state_dir) / "invocations.jsonl").open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry) + "\n")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
