"""Best-effort recovery of the final agent message from a JSONL event stream."""

from __future__ import annotations

import json

_COMPLETED_EVENT = "item.completed"
_AGENT_MESSAGE = "agent_message"


def parse_last_agent_message(stdout_text: str) -> str | None:
    """Return the text of the last completed `agent_message` item, if any.

    Lines that are not JSON objects, and events of any other type, are skipped
    so newer CLI event kinds never break recovery.
    """

    last_message: str | None = None
    for line in stdout_text.splitlines():
        candidate = line.strip()
        if not candidate.startswith("{"):
            continue
        try:
            event = json.loads(candidate)
        except (ValueError, RecursionError):
            continue
        if not isinstance(event, dict) or event.get("type") != _COMPLETED_EVENT:
            continue
        item = event.get("item")
        if not isinstance(item, dict) or item.get("type") != _AGENT_MESSAGE:
            continue
        text = item.get("text")
        if isinstance(text, str):
            last_message = text
    return last_message
