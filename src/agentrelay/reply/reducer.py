"""Stream reducer — turns agent protocol lines into reply payloads.

One reducer per run. Lines arrive via ``handle_line`` (the runner's
``on_event`` callback) and are reduced into:

  - tool aggregates: consecutive results of the same tool, flushed after a
    quiet period or once enough metas pile up
  - assistant text: each distinct final message, deduplicated
  - a fallback payload at ``finish`` when the run produced no assistant text

With an ``on_partial`` callback, payloads are delivered live, in order,
by a single delivery task. Without one, everything is returned as a batch
from ``finish``.
"""

from __future__ import annotations

import asyncio
import inspect
import re
import uuid
from pathlib import Path
from typing import Any

from agentrelay.agent_events import agent_event_bus, emit_agent_event
from agentrelay.config import get_settings
from agentrelay.logger import logger
from agentrelay.reply.events import MessageDelta, MessageEnd, ToolResult, ToolStart, parse_event
from agentrelay.reply.fallback import (
    extract_assistant_text_loosely,
    extract_rpc_assistant_text,
    is_prompt_echo,
    strip_rpc_noise,
)
from agentrelay.reply.media import split_media_from_output
from agentrelay.reply.tool_meta import format_tool_aggregate, infer_tool_meta
from agentrelay.types import AgentEvent, OnAgentEvent, OnPartialReply, ReplyPayload, RunResult
from agentrelay.utils import DebounceTimer, create_background_task

NO_OUTPUT_TEXT = "(command produced no output)"

_URL_RE = re.compile(r"^https?://", re.IGNORECASE)


class StreamReducer:
    def __init__(
        self,
        *,
        on_partial: OnPartialReply | None = None,
        on_agent_event: OnAgentEvent | None = None,
        run_id: str | None = None,
        debounce_ms: int | None = None,
        flush_count: int | None = None,
        media_max_mb: float | None = None,
    ) -> None:
        s = get_settings()
        self.run_id = run_id or str(uuid.uuid4())
        self._on_partial = on_partial
        self._on_agent_event = on_agent_event
        self._flush_count = s.reply.tool_flush_count if flush_count is None else flush_count
        self._media_max_mb = s.agent.media_max_mb if media_max_mb is None else media_max_mb
        debounce = s.reply.tool_debounce_ms if debounce_ms is None else debounce_ms
        self._timer = DebounceTimer(debounce / 1000, self._flush_tool)

        self._pending_tool_name: str | None = None
        self._pending_metas: list[str] = []
        self._starts: dict[str, ToolStart] = {}
        self._last_start: ToolStart | None = None

        self._delta_buffer = ""
        self._last_streamed: str | None = None

        self._payloads: list[ReplyPayload] = []
        self._deliveries: asyncio.Queue[ReplyPayload | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

    # --- Public state ---

    @property
    def payloads(self) -> list[ReplyPayload]:
        """Every payload emitted while streaming, in order."""
        return list(self._payloads)

    @property
    def last_assistant_text(self) -> str | None:
        return self._last_streamed or (self._delta_buffer.strip() or None)

    @property
    def streamed_any(self) -> bool:
        return bool(self._payloads)

    # --- Line handling ---

    def handle_line(self, line: str) -> None:
        """Reduce one stdout line. Lines that aren't protocol events are ignored."""
        if self._closed:
            return
        event = parse_event(line)
        match event:
            case ToolStart():
                self._on_tool_start(event)
            case ToolResult():
                self._on_tool_result(event)
            case MessageDelta(kind="text_delta", text=chunk) if chunk:
                self._delta_buffer += chunk
            case MessageEnd():
                self._on_message_end(event)
            case _:
                pass

    def _on_tool_start(self, event: ToolStart) -> None:
        if event.tool_call_id:
            self._starts[event.tool_call_id] = event
        self._last_start = event
        self._agent_event(
            "tool",
            {
                "phase": "start",
                "name": event.tool_name,
                "toolCallId": event.tool_call_id,
                "args": event.args,
            },
        )

    def _on_tool_result(self, event: ToolResult) -> None:
        start = self._starts.get(event.tool_call_id) if event.tool_call_id else None
        if start is None:
            start = self._last_start
        name = event.tool_name or (start.tool_name if start else None)
        meta = event.meta
        if meta is None and start is not None:
            meta = infer_tool_meta({"toolName": name or "", "args": start.args})

        self._agent_event(
            "tool",
            {"phase": "result", "name": name, "toolCallId": event.tool_call_id, "meta": meta},
        )

        if self._pending_tool_name and name and name != self._pending_tool_name:
            self._flush_tool()
        if not self._pending_tool_name:
            self._pending_tool_name = name
        if meta:
            self._pending_metas.append(meta)

        if self._flush_count > 0 and len(self._pending_metas) >= self._flush_count:
            self._flush_tool()
            return
        self._timer.arm()

    def _on_message_end(self, event: MessageEnd) -> None:
        # Tool activity happened before this message, so it goes out first.
        self._flush_tool()
        text = event.text
        if not text:
            return
        self._delta_buffer = ""
        if event.final:
            self._agent_event("assistant", {"text": text})
        if text == self._last_streamed:
            return
        self._last_streamed = text
        self._emit(text)

    def _flush_tool(self) -> None:
        self._timer.cancel()
        if not self._pending_tool_name and not self._pending_metas:
            return
        text = format_tool_aggregate(self._pending_tool_name, self._pending_metas)
        self._pending_tool_name = None
        self._pending_metas = []
        self._emit(text)

    # --- Emission ---

    def _filter_media(self, urls: list[str]) -> list[str]:
        if not urls or not self._media_max_mb:
            return urls
        max_bytes = self._media_max_mb * 1024 * 1024
        kept = []
        for url in urls:
            if _URL_RE.match(url):
                kept.append(url)
                continue
            try:
                size = Path(url).resolve().stat().st_size
            except OSError:
                kept.append(url)
                continue
            if size <= max_bytes:
                kept.append(url)
            else:
                logger.info(
                    "Skipping media over size cap",
                    media=url,
                    size_mb=round(size / (1024 * 1024), 2),
                    cap_mb=self._media_max_mb,
                )
        return kept

    def _build_payload(self, text: str) -> ReplyPayload | None:
        split = split_media_from_output(text)
        media = self._filter_media(split.media_urls)
        payload = ReplyPayload(
            text=split.text or None,
            media_url=media[0] if media else None,
            media_urls=media or None,
            audio_as_voice=split.audio_as_voice,
        )
        return None if payload.is_empty() else payload

    def _emit(self, text: str) -> bool:
        payload = self._build_payload(text)
        if payload is None:
            return False
        self._payloads.append(payload)
        if self._on_partial is not None:
            if self._worker is None:
                self._worker = create_background_task(
                    self._deliver(), name=f"reply-delivery-{self.run_id}"
                )
            self._deliveries.put_nowait(payload)
        return True

    async def _deliver(self) -> None:
        assert self._on_partial is not None
        while True:
            payload = await self._deliveries.get()
            if payload is None:
                return
            try:
                result = self._on_partial(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Partial reply delivery failed", run_id=self.run_id)

    def _agent_event(self, stream: str, data: dict[str, Any]) -> None:
        event = AgentEvent(run_id=self.run_id, stream=stream, data=data)
        emit_agent_event(event)
        if self._on_agent_event is not None:
            try:
                self._on_agent_event(event)
            except Exception:
                logger.exception("on_agent_event callback failed", run_id=self.run_id)

    # --- Completion ---

    def close(self) -> None:
        """Flush the pending tool aggregate and stop reacting to new lines."""
        if self._closed:
            return
        self._flush_tool()
        self._closed = True
        agent_event_bus.clear_run(self.run_id)

    def finish(
        self,
        result: RunResult,
        prompt: str | None,
        prompt_stripped: str | None = None,
    ) -> list[ReplyPayload]:
        """Close the stream and compute the final payloads.

        The fallback is computed only when nothing was emitted from the
        structured stream, so a run yields either its streamed payloads or a
        single fallback. In batch mode (no ``on_partial``) the streamed
        payloads are returned; in live mode they were already delivered.
        """
        self.close()

        final: list[ReplyPayload] = []
        if not self._payloads:
            fallback = self._fallback_text(result.stdout)
            if fallback and is_prompt_echo(fallback, prompt, prompt_stripped):
                logger.info("Suppressed fallback that echoes the prompt", run_id=self.run_id)
                fallback = None
            if fallback:
                payload = self._build_payload(fallback)
                if payload is not None:
                    final.append(payload)

        if not self._payloads and not final:
            logger.warning(
                "No text or media produced, sending no-output notice",
                run_id=self.run_id,
                exit_code=result.exit_code,
            )
            final.append(ReplyPayload(text=NO_OUTPUT_TEXT))

        if self._on_partial is None:
            return self._payloads + final
        return final

    def _fallback_text(self, stdout: str) -> str | None:
        trimmed = strip_rpc_noise(stdout.strip())
        return (
            self._delta_buffer.strip()
            or extract_rpc_assistant_text(stdout)
            or extract_assistant_text_loosely(trimmed)
            or trimmed
            or None
        )

    async def drain(self) -> None:
        """Wait until every live payload has been handed to ``on_partial``."""
        if self._worker is None:
            return
        self._deliveries.put_nowait(None)
        await self._worker
        self._worker = None

    def cancel(self) -> None:
        """Drop pending work without delivering it."""
        self._timer.cancel()
        self._closed = True
        agent_event_bus.clear_run(self.run_id)
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
