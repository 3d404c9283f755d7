"""Agent stdout cleanup and result-envelope parsing."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

ANSI_ESCAPE = re.compile(r"\x1B\[[0-9;]*[a-zA-Z]")


class EnvelopeError(ValueError):
    """Agent stdout did not contain a usable result envelope."""


@dataclass(slots=True)
class ResultEnvelope:
    """Machine-readable result printed by the agent on success."""

    result: str
    session_id: str | None = None


def strip_ansi(text: str) -> str:
    """Remove terminal color/cursor sequences."""

    return ANSI_ESCAPE.sub("", text)


def parse_result_envelope(stdout_text: str) -> ResultEnvelope:
    """Parse the JSON envelope, tolerating log lines printed before it."""

    text = strip_ansi(stdout_text).strip()
    if not text:
        raise EnvelopeError("agent produced no output")

    payload = _try_load_dict(text)
    if payload is None:
        for line in reversed(text.splitlines()):
            candidate = line.strip()
            if not candidate.startswith("{"):
                continue
            payload = _try_load_dict(candidate)
            if payload is not None:
                break
    if payload is None:
        raise EnvelopeError(f"no JSON object found in output: {_preview(text)}")

    result = payload.get("result")
    if not isinstance(result, str):
        raise EnvelopeError("envelope field 'result' must be a string")
    session_id = payload.get("session_id")
    if session_id is not None and not isinstance(session_id, str):
        raise EnvelopeError("envelope field 'session_id' must be a string")
    return ResultEnvelope(result=result, session_id=session_id or None)


def _try_load_dict(text: str) -> dict[str, object] | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def _preview(text: str, limit: int = 200) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 3] + "..."
