"""Inbound pipeline — one message in, reply payloads out.

Ties the pieces together for a surface adapter or the CLI:

  1. abort triggers are answered immediately
  2. a pending abort flag short-circuits the run
  3. the session entry is loaded or created, and saved
  4. queued system events are prepended to the prompt
  5. the agent runs through the command queue with its live handle
     registered for aborts
  6. session state is written back
"""

from __future__ import annotations

import uuid
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import cast, get_args

from agentrelay.command_queue import CommandQueue
from agentrelay.config import ThinkLevel, get_settings
from agentrelay.cron import AgentTurnPayload, CronJob, CronRunOutcome
from agentrelay.logger import logger
from agentrelay.reply import CommandReplyParams, CommandReplyResult, run_command_reply
from agentrelay.rpc_runner import RunHandle, TemplateContext
from agentrelay.sessions import (
    AbortRegistry,
    SessionStore,
    build_agent_session_key,
    is_abort_trigger,
    resolve_session_key,
)
from agentrelay.types import InboundMessage, OnAgentEvent, OnPartialReply, ReplyPayload, SessionEntry
from agentrelay.utils import now_ms

ABORTED_TEXT = "⚙️ Agent was aborted."
ABORTED_NO_RUN_TEXT = "⚙️ Agent was aborted. (no active run)"

_MAX_SYSTEM_EVENTS = 20

Deliver = Callable[[str | None, str | None, list[ReplyPayload]], Awaitable[None]]
"""``deliver(channel, to, payloads)`` — send cron output to a surface."""


class SystemEventQueue:
    """Short per-session queue of ``System:`` lines for the next agent turn."""

    def __init__(self, max_events: int = _MAX_SYSTEM_EVENTS) -> None:
        self._events: defaultdict[str, deque[str]] = defaultdict(lambda: deque(maxlen=max_events))

    def enqueue(self, session_key: str, text: str) -> None:
        text = text.strip()
        if not text:
            return
        events = self._events[session_key]
        # Same event twice in a row is noise.
        if events and events[-1] == text:
            return
        events.append(text)

    def drain(self, session_key: str) -> list[str]:
        events = self._events.pop(session_key, None)
        return list(events) if events else []

    def peek(self, session_key: str) -> list[str]:
        return list(self._events.get(session_key, ()))


def prepend_system_events(body: str, events: list[str]) -> str:
    if not events:
        return body
    lines = "\n".join(f"System: {text}" for text in events)
    return f"{lines}\n\n{body}" if body else lines


@dataclass
class PipelineDeps:
    queue: CommandQueue
    registry: AbortRegistry
    system_events: SystemEventQueue = field(default_factory=SystemEventQueue)
    deliver: Deliver | None = None

    @property
    def store(self) -> SessionStore:
        return self.registry.store


def build_pipeline_deps(queue: CommandQueue | None = None) -> PipelineDeps:
    """Wire default dependencies from settings."""
    s = get_settings()
    return PipelineDeps(
        queue=queue or CommandQueue(),
        registry=AbortRegistry(SessionStore(s.session_store_path)),
    )


def _session_key_for(message: InboundMessage) -> str:
    target = (message.target_session_key or "").strip()
    if target:
        return target
    return resolve_session_key(
        message.sender,
        chat_type=message.chat_type,
        group_id=message.group_id,
        surface=message.surface,
    )


def _main_session_key() -> str:
    s = get_settings()
    return build_agent_session_key(s.session.agent_id, s.session.main_key)


async def run_turn(
    message: InboundMessage,
    deps: PipelineDeps,
    *,
    on_partial_reply: OnPartialReply | None = None,
    on_agent_event: OnAgentEvent | None = None,
    timeout_ms: int | None = None,
    think_level: ThinkLevel | None = None,
) -> CommandReplyResult:
    """Run one inbound message and return payloads plus run metadata."""
    s = get_settings()
    key = _session_key_for(message)

    if is_abort_trigger(message.body):
        outcome = deps.registry.abort(key, sender=message.sender)
        text = ABORTED_TEXT if outcome.aborted else ABORTED_NO_RUN_TEXT
        return CommandReplyResult(payloads=[ReplyPayload(text=text)])

    if deps.registry.consume_abort_flag(key, sender=message.sender):
        logger.info("Skipping run after abort", session_key=key)
        return CommandReplyResult(payloads=[ReplyPayload(text=ABORTED_TEXT)])

    target = deps.registry.resolve_abort_target(key)
    entry = target.entry if target else SessionEntry()
    store_key = target.key if target else key
    is_new_session = not entry.session_id
    if is_new_session:
        entry.session_id = str(uuid.uuid4())
        logger.info("Starting new session", session_key=store_key, session_id=entry.session_id)
    session_id = entry.session_id
    assert session_id is not None
    # Saved before the run so an abort arriving mid-run can find the session.
    entry.updated_at = now_ms()
    deps.store.update(store_key, entry)

    body = prepend_system_events(message.body, deps.system_events.drain(key))
    ctx = TemplateContext(
        body=body,
        body_stripped=message.body.strip(),
        session_id=session_id,
        sender=message.sender,
        surface=message.surface,
    )

    handles: list[RunHandle] = []

    def on_spawn(handle: RunHandle) -> None:
        handles.append(handle)
        deps.registry.register_run(session_id, handle)

    try:
        result = await run_command_reply(
            CommandReplyParams(
                agent=s.agent,
                ctx=ctx,
                queue=deps.queue,
                is_new_session=is_new_session,
                is_first_turn=is_new_session,
                system_sent=entry.system_sent,
                timeout_ms=timeout_ms,
                think_level=think_level,
                on_partial_reply=on_partial_reply,
                on_agent_event=on_agent_event,
                on_spawn=on_spawn,
            )
        )
    finally:
        for handle in handles:
            deps.registry.unregister_run(session_id, handle)

    # Reload: an abort may have stamped the entry while we were running.
    entries = deps.store.load()
    fresh = entries.get(store_key, entry)
    fresh.session_id = fresh.session_id or session_id
    fresh.system_sent = fresh.system_sent or bool(s.agent.template)
    fresh.updated_at = now_ms()
    if result.meta.killed and not result.meta.timed_out:
        # The abort already stopped this run; don't swallow the next message too.
        fresh.aborted_last_run = False
    entries[store_key] = fresh
    deps.store.save(entries)

    logger.info(
        "Inbound message handled",
        session_key=store_key,
        payloads=len(result.payloads),
        duration_ms=result.meta.duration_ms,
        queued_ms=result.meta.queued_ms,
    )
    return result


async def get_reply(
    message: InboundMessage,
    deps: PipelineDeps,
    *,
    on_partial_reply: OnPartialReply | None = None,
    on_agent_event: OnAgentEvent | None = None,
) -> list[ReplyPayload]:
    result = await run_turn(
        message,
        deps,
        on_partial_reply=on_partial_reply,
        on_agent_event=on_agent_event,
    )
    return result.payloads


class PipelineCronDeps:
    """Cron service dependencies backed by the inbound pipeline."""

    def __init__(self, deps: PipelineDeps) -> None:
        self._deps = deps

    async def enqueue_system_event(self, text: str) -> None:
        self._deps.system_events.enqueue(_main_session_key(), text)

    async def run_agent_turn(self, job: CronJob) -> CronRunOutcome:
        payload = job.payload
        assert isinstance(payload, AgentTurnPayload)
        s = get_settings()
        message = InboundMessage(
            body=payload.message,
            sender="cron",
            surface="cron",
            target_session_key=build_agent_session_key(s.session.agent_id, f"cron:{job.id}"),
        )
        think_level = cast(ThinkLevel, payload.thinking) if payload.thinking in get_args(ThinkLevel) else None
        result = await run_turn(
            message,
            self._deps,
            timeout_ms=payload.timeout_seconds * 1000 if payload.timeout_seconds else None,
            think_level=think_level,
        )

        meta = result.meta
        failed = (
            meta.error is not None
            or meta.timed_out
            or meta.killed
            or (meta.exit_code or 0) != 0
            or meta.signal is not None
        )
        summary = next((p.text for p in result.payloads if p.text), None)

        if payload.deliver and self._deps.deliver is not None and result.payloads:
            await self._deps.deliver(payload.channel, payload.to, result.payloads)

        if failed:
            return CronRunOutcome(status="error", error=summary or "agent run failed", summary=summary)
        return CronRunOutcome(status="ok", summary=summary)
