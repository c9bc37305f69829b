"""Command reply — one queued agent run turned into reply payloads.

Builds the invocation, submits it to the command queue with a fresh
StreamReducer as the line callback, then classifies the outcome. Subprocess
failures (non-zero exit, timeout, kill) become a single error payload; only
argv construction errors propagate.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from agentrelay.command_queue import CommandQueue
from agentrelay.config import AgentConfig, ThinkLevel, get_settings
from agentrelay.logger import logger
from agentrelay.reply.fallback import (
    extract_assistant_text_loosely,
    extract_rpc_assistant_text,
    strip_rpc_noise,
)
from agentrelay.reply.reducer import StreamReducer
from agentrelay.rpc_runner import OnSpawn, TemplateContext, build_agent_argv
from agentrelay.types import OnAgentEvent, OnPartialReply, ReplyPayload, RpcJob, RunResult

_EXIT_OUTPUT_CHARS = 500
_TIMEOUT_OUTPUT_CHARS = 800


@dataclass
class CommandReplyParams:
    agent: AgentConfig
    ctx: TemplateContext
    queue: CommandQueue
    is_new_session: bool = True
    is_first_turn: bool = True
    system_sent: bool = False
    timeout_ms: int | None = None
    think_level: ThinkLevel | None = None
    on_partial_reply: OnPartialReply | None = None
    on_agent_event: OnAgentEvent | None = None
    on_spawn: OnSpawn | None = None
    run_id: str | None = None
    sessions_dir: Path | None = None


@dataclass
class CommandReplyMeta:
    duration_ms: int
    queued_ms: int | None = None
    queued_ahead: int | None = None
    exit_code: int | None = None
    signal: str | None = None
    killed: bool = False
    timed_out: bool = False
    error: str | None = None


@dataclass
class CommandReplyResult:
    payloads: list[ReplyPayload] = field(default_factory=list)
    meta: CommandReplyMeta = field(default_factory=lambda: CommandReplyMeta(duration_ms=0))


def _clip(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def _format_seconds(ms: int) -> str:
    return f"{ms / 1000:g}s"


def _partial_output(stdout: str) -> str:
    return (
        extract_rpc_assistant_text(stdout)
        or extract_assistant_text_loosely(stdout)
        or strip_rpc_noise(stdout).strip()
    )


def timeout_text(timeout_ms: int, cwd: str | None, stdout: str) -> str:
    base = (
        f"Command timed out after {_format_seconds(timeout_ms)}"
        f"{f' (cwd: {cwd})' if cwd else ''}. Try a shorter prompt or split the request."
    )
    partial = _partial_output(stdout)
    if not partial:
        return base
    return f"{base}\n\nPartial output before timeout:\n{_clip(partial, _TIMEOUT_OUTPUT_CHARS)}"


def exit_failure_text(result: RunResult) -> str:
    code = result.exit_code if result.exit_code is not None else "unknown"
    text = f"⚠️ Command exited with code {code}"
    if result.signal:
        text += f" ({result.signal})"
    summary = (
        extract_rpc_assistant_text(result.stdout)
        or strip_rpc_noise(result.stdout.strip())
        or result.stderr.strip()
    )
    if summary:
        text += f"\n\nOutput: {_clip(summary, _EXIT_OUTPUT_CHARS)}"
    return text


def killed_text(result: RunResult) -> str:
    code = result.exit_code if result.exit_code is not None else "unknown"
    return f"⚠️ Command was killed before completion (exit code {code})"


async def run_command_reply(params: CommandReplyParams) -> CommandReplyResult:
    """Run one agent turn through the queue and reduce its output.

    Raises AgentConfigError when the agent command can't be built.
    """
    s = get_settings()
    ctx = params.ctx
    timeout_ms = params.timeout_ms or s.agent_timeout_ms
    invocation = build_agent_argv(
        params.agent,
        ctx,
        sessions_dir=params.sessions_dir or s.sessions_dir,
        is_new_session=params.is_new_session,
        is_first_turn=params.is_first_turn,
        system_sent=params.system_sent,
        think_level=params.think_level,
    )
    run_id = params.run_id or str(uuid.uuid4())
    logger.info(
        "Command reply start",
        run_id=run_id,
        session_id=ctx.session_id,
        new_session=params.is_new_session,
        cwd=invocation.cwd,
        command=invocation.argv,
    )

    meta = CommandReplyMeta(duration_ms=0)

    def on_wait(wait_ms: int, queued_ahead: int) -> None:
        meta.queued_ms = wait_ms
        meta.queued_ahead = queued_ahead
        logger.debug("Command reply queued", run_id=run_id, wait_ms=wait_ms, queued_ahead=queued_ahead)

    reducer = StreamReducer(
        on_partial=params.on_partial_reply,
        on_agent_event=params.on_agent_event,
        run_id=run_id,
    )
    job = RpcJob(
        argv=tuple(invocation.argv),
        prompt=invocation.prompt,
        timeout_ms=timeout_ms,
        on_event=reducer.handle_line,
        cwd=invocation.cwd,
    )

    started = time.monotonic()
    try:
        result = await params.queue.submit(job, on_wait=on_wait, on_spawn=params.on_spawn)
    except Exception as exc:
        reducer.close()
        await reducer.drain()
        meta.duration_ms = int((time.monotonic() - started) * 1000)
        meta.error = str(exc)
        logger.error("Command reply failed", run_id=run_id, duration_ms=meta.duration_ms, err=str(exc))
        return CommandReplyResult(payloads=[ReplyPayload(text=f"⚠️ Command failed: {exc}")], meta=meta)

    meta.duration_ms = int((time.monotonic() - started) * 1000)
    meta.exit_code = result.exit_code
    meta.signal = result.signal
    meta.killed = result.killed
    meta.timed_out = result.killed and result.duration_ms >= timeout_ms

    if result.stderr.strip():
        logger.debug("Command reply stderr", run_id=run_id, stderr=result.stderr.strip())

    if meta.timed_out:
        reducer.close()
        payloads = [ReplyPayload(text=timeout_text(timeout_ms, invocation.cwd, result.stdout))]
        logger.error("Command reply timed out", run_id=run_id, duration_ms=meta.duration_ms, timeout_ms=timeout_ms)
    elif result.killed:
        reducer.close()
        payloads = [ReplyPayload(text=killed_text(result))]
        logger.warning("Command reply killed before completion", run_id=run_id, exit_code=result.exit_code)
    elif (result.exit_code or 0) != 0 or result.signal:
        reducer.close()
        payloads = [ReplyPayload(text=exit_failure_text(result))]
        logger.warning(
            "Command reply failed",
            run_id=run_id,
            exit_code=result.exit_code,
            signal=result.signal,
            stderr=_clip(result.stderr, 4000),
        )
    else:
        payloads = reducer.finish(result, ctx.body, ctx.body_stripped)

    await reducer.drain()
    logger.info(
        "Command reply finished",
        run_id=run_id,
        duration_ms=meta.duration_ms,
        payloads=len(payloads),
        streamed=len(reducer.payloads),
    )
    return CommandReplyResult(payloads=payloads, meta=meta)
