"""Reply assembly — from agent protocol lines to outbound payloads.

Submodules:
  events         — line → tagged event envelope
  tool_meta      — tool name/meta inference, aggregate formatting
  media          — MEDIA token and voice tag extraction
  fallback       — text recovery from raw stdout, prompt echo detection
  reducer        — StreamReducer (debounced tool aggregates, deduped text)
  command_reply  — queued run + outcome classification
"""

from agentrelay.reply.command_reply import (
    CommandReplyMeta,
    CommandReplyParams,
    CommandReplyResult,
    run_command_reply,
)
from agentrelay.reply.events import (
    Event,
    MessageDelta,
    MessageEnd,
    ToolResult,
    ToolStart,
    Unrecognized,
    parse_event,
)
from agentrelay.reply.media import MediaSplit, split_media_from_output
from agentrelay.reply.reducer import NO_OUTPUT_TEXT, StreamReducer

__all__ = [
    "NO_OUTPUT_TEXT",
    "CommandReplyMeta",
    "CommandReplyParams",
    "CommandReplyResult",
    "Event",
    "MediaSplit",
    "MessageDelta",
    "MessageEnd",
    "StreamReducer",
    "ToolResult",
    "ToolStart",
    "Unrecognized",
    "parse_event",
    "run_command_reply",
    "split_media_from_output",
]
