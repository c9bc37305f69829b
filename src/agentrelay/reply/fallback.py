"""Best-effort text recovery from raw agent stdout.

Used when a run produced no structured assistant payload: the reducer digs
through the captured output for anything resembling a reply.
"""

from __future__ import annotations

import json
import re
from typing import Any

from agentrelay.reply.events import MessageDelta, MessageEnd, parse_event

_BRACKET_TAG_RE = re.compile(r"\[[^\]]+\]\s*")
_LINE_LABEL_RE = re.compile(r"^[ \t]*[A-Za-z0-9+()\-_. ]+:\s*", re.MULTILINE)
_WS_RUN_RE = re.compile(r"\s+")
_LOOSE_TEXT_RE = re.compile(r'"text"\s*:\s*"([^"]+?)"')


def strip_structural_prefixes(text: str) -> str:
    """Remove ``[tag]`` markers and ``Label:`` line prefixes, collapse whitespace."""
    text = _BRACKET_TAG_RE.sub("", text)
    text = _LINE_LABEL_RE.sub("", text)
    return _WS_RUN_RE.sub(" ", text).strip()


def _normalize(text: str | None) -> str:
    return strip_structural_prefixes((text or "").strip()).lower()


def is_prompt_echo(candidate: str | None, body: str | None, body_stripped: str | None = None) -> bool:
    """True when *candidate* is just the prompt handed back to us."""
    if not candidate:
        return False
    if candidate == (body or "") or candidate == (body_stripped or ""):
        return True
    body_norm = _normalize(body if body is not None else body_stripped)
    return bool(body_norm) and body_norm == _normalize(candidate)


def _keep_line(evt: Any) -> bool:
    if not isinstance(evt, dict):
        return True
    ev_type = evt.get("type")
    if ev_type in ("message_start", "message_update", "input_audio_buffer.append"):
        return False

    msg = evt.get("message") or evt.get("assistantMessageEvent")
    role = msg.get("role") if isinstance(msg, dict) else None
    is_tool = isinstance(role, str) and "tool" in role.lower()
    if role != "assistant" and not is_tool:
        return False

    if role == "assistant" and isinstance(msg.get("content"), list):
        has_text = any(isinstance(c, dict) and c.get("type") == "text" for c in msg["content"])
        usage = msg.get("usage")
        has_usage = isinstance(usage, dict) and (
            usage.get("input") is not None or usage.get("output") is not None
        )
        if not has_text and not has_usage:
            return False
    return True


def strip_rpc_noise(raw: str) -> str:
    """Drop RPC streaming scaffolding, keeping assistant/tool frames and plain text."""
    kept = []
    for line in re.split(r"\n+", raw):
        try:
            evt = json.loads(line)
        except ValueError:
            evt = None
        if evt is not None and not _keep_line(evt):
            continue
        if line.strip():
            kept.append(line)
    return "\n".join(kept)


def extract_rpc_assistant_text(raw: str) -> str | None:
    """Last assistant text in *raw*: a final message, or deltas streamed after it."""
    if not raw.strip():
        return None
    delta_buffer = ""
    last: str | None = None
    for line in re.split(r"\n+", raw):
        event = parse_event(line)
        match event:
            case MessageEnd(final=True) if event.text:
                last = event.text
                delta_buffer = ""
            case MessageDelta(kind="text_delta", text=chunk) if chunk:
                delta_buffer += chunk
                last = delta_buffer
    if last is None:
        return None
    return last.strip() or None


def extract_assistant_text_loosely(raw: str) -> str | None:
    """Grab the last ``"text":"..."`` occurrence from a JSON-ish blob."""
    matches = _LOOSE_TEXT_RE.findall(raw)
    if not matches:
        return None
    return matches[-1].replace("\\n", "\n").strip() or None
