"""Tagged envelopes for the agent's line-delimited JSON protocol.

``parse_event`` maps one stdout line to an envelope, or to ``None`` when the
line is not a JSON object. Unknown ``type`` values become ``Unrecognized``
so callers can ignore them without special-casing.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from agentrelay.reply.tool_meta import infer_tool_meta, infer_tool_name, tool_call_id

_TOOL_RESULT_ROLES = ("toolResult", "tool_result")
_TEXT_EVENT_TYPES = ("text_delta", "text_start", "text_end")


@dataclass(frozen=True)
class ToolStart:
    tool_name: str | None
    tool_call_id: str | None
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    tool_name: str | None
    tool_call_id: str | None
    meta: str | None
    text: str = ""


@dataclass(frozen=True)
class MessageDelta:
    """A streamed assistant text chunk (``message_update``)."""

    text: str
    kind: str = "text_delta"


@dataclass(frozen=True)
class MessageEnd:
    """A complete assistant message (``message`` or ``message_end``)."""

    message: dict[str, Any]
    final: bool = True

    @property
    def text_blocks(self) -> list[str]:
        content = self.message.get("content")
        if not isinstance(content, list):
            return []
        blocks = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                text = part.get("text")
                if isinstance(text, str) and text.strip():
                    blocks.append(text.strip())
        return blocks

    @property
    def text(self) -> str:
        return "\n".join(self.text_blocks).strip()


@dataclass(frozen=True)
class Unrecognized:
    type: str | None


Event: TypeAlias = ToolStart | ToolResult | MessageDelta | MessageEnd | Unrecognized


def _tool_result_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if not isinstance(content, list):
        return ""
    texts = [
        part["text"]
        for part in content
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    ]
    return "\n".join(texts).strip()


def _parse_message(ev_type: str, message: Any) -> Event:
    if not isinstance(message, dict):
        return Unrecognized(ev_type)
    role = message.get("role")
    if role in _TOOL_RESULT_ROLES:
        return ToolResult(
            tool_name=infer_tool_name(message),
            tool_call_id=tool_call_id(message),
            meta=infer_tool_meta(message),
            text=_tool_result_text(message),
        )
    if role == "assistant":
        return MessageEnd(message=message, final=ev_type == "message_end")
    return Unrecognized(ev_type)


def parse_event(line: str) -> Event | None:
    """Parse one stdout line. Returns None for anything that isn't a JSON object."""
    try:
        raw = json.loads(line)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(raw, dict):
        return None

    ev_type = raw.get("type")
    match ev_type:
        case "tool_execution_start":
            args = raw.get("args")
            return ToolStart(
                tool_name=raw.get("toolName") if isinstance(raw.get("toolName"), str) else None,
                tool_call_id=raw.get("toolCallId") if isinstance(raw.get("toolCallId"), str) else None,
                args=args if isinstance(args, dict) else {},
            )
        case "message" | "message_end":
            return _parse_message(ev_type, raw.get("message"))
        case "message_update":
            inner = raw.get("assistantMessageEvent")
            if not isinstance(inner, dict) or inner.get("type") not in _TEXT_EVENT_TYPES:
                return Unrecognized(ev_type)
            chunk = inner.get("delta")
            if not isinstance(chunk, str):
                chunk = inner.get("content") if isinstance(inner.get("content"), str) else ""
            return MessageDelta(text=chunk, kind=inner["type"])
        case _:
            return Unrecognized(ev_type if isinstance(ev_type, str) else None)
