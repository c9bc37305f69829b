"""Process management — spawn, prompt delivery, line streaming, timeout kill.

Provides:
  - force_rpc_mode() — pin the execution mode flag in argv
  - RunHandle — live handle handed to callers for external aborts
  - read_stderr() — reads stderr, logs lines, accumulates with truncation
  - run_rpc() — one subprocess per call, streaming stdout lines to a callback
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
import time
from asyncio.subprocess import PIPE
from collections.abc import Callable, Sequence

from agentrelay.config import get_settings
from agentrelay.logger import logger
from agentrelay.types import OnEvent, RunResult
from agentrelay.utils import create_background_task

RPC_MODE = "rpc"

#: Maximum bytes per JSONL line from subprocess stdout (1 MB).
_MAX_LINE_BYTES = 1_048_576

#: Seconds to wait after SIGTERM before SIGKILL.
_TERM_GRACE_SECONDS = 2.0


def force_rpc_mode(argv: Sequence[str]) -> list[str]:
    """Return a copy of *argv* with ``--mode rpc`` set.

    An existing ``--mode <x>`` or ``--mode=<x>`` is overwritten; otherwise
    the flag is appended. Configured modes are never honoured.
    """
    out = list(argv)
    for i, part in enumerate(out):
        if part == "--mode":
            if i + 1 < len(out):
                out[i + 1] = RPC_MODE
            else:
                out.append(RPC_MODE)
            return out
        if part.startswith("--mode="):
            out[i] = f"--mode={RPC_MODE}"
            return out
    out.extend(["--mode", RPC_MODE])
    return out


def encode_prompt(prompt: str) -> bytes:
    """Encode the prompt as the single RPC command written to stdin."""
    return (json.dumps({"type": "prompt", "message": prompt}, ensure_ascii=False) + "\n").encode()


class RunHandle:
    """Live handle for one running subprocess.

    Registered with the abort registry so an abort request can reach the
    process while it is still running.
    """

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self.killed = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def running(self) -> bool:
        return self._proc.returncode is None

    def abort(self) -> bool:
        """Terminate the process. Returns False if it had already exited."""
        if not self.running:
            return False
        self.killed = True
        create_background_task(_terminate(self._proc), name=f"abort-{self.pid}")
        return True


OnSpawn = Callable[[RunHandle], None]


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM, short grace period, then SIGKILL."""
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=_TERM_GRACE_SECONDS)
    except TimeoutError:
        logger.warning("Agent process ignored SIGTERM, force killing", pid=proc.pid)
        with contextlib.suppress(ProcessLookupError):
            proc.kill()


async def read_stderr(stream: asyncio.StreamReader, max_output_size: int, label: str) -> str:
    """Drain stderr, echoing each line at debug level.

    At most *max_output_size* characters are kept; the rest is logged only.
    """
    kept: list[str] = []
    budget = max_output_size
    while chunk := await stream.read(8192):
        text = chunk.decode(errors="replace")
        for line in filter(None, text.strip().splitlines()):
            logger.debug(line, agent=label)
        if budget < 0:
            continue
        kept.append(text[:budget])
        budget -= len(text)
        if budget < 0:
            logger.warning("Agent stderr truncated", agent=label, limit=max_output_size)
    return "".join(kept)


async def _read_stdout_lines(
    stream: asyncio.StreamReader,
    on_event: OnEvent,
    max_output_size: int,
    label: str,
) -> str:
    """Dispatch each complete stdout line to *on_event* as it arrives."""
    lines: list[str] = []
    size = 0
    truncated = False
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # Line exceeded the stream limit; asyncio already dropped it.
            logger.warning("Dropped oversized stdout line", agent=label, limit=_MAX_LINE_BYTES)
            continue
        if not raw:
            break
        line = raw.decode(errors="replace").rstrip("\r\n")

        if not truncated:
            if size + len(line) + 1 > max_output_size:
                truncated = True
                logger.warning("Agent stdout truncated", agent=label, size=size)
            else:
                lines.append(line)
                size += len(line) + 1

        if not line.strip():
            continue
        try:
            on_event(line)
        except Exception:
            logger.exception("on_event callback failed", agent=label)

    return "\n".join(lines)


async def run_rpc(
    argv: Sequence[str],
    cwd: str | None,
    prompt: str,
    timeout_ms: int,
    on_event: OnEvent,
    *,
    on_spawn: OnSpawn | None = None,
    max_output_size: int | None = None,
) -> RunResult:
    """Spawn the agent in RPC mode, deliver *prompt*, stream stdout lines.

    On timeout the process is terminated and the result reports
    ``killed=True`` with whatever output was captured. Timeouts are not
    raised; classifying them is up to the caller. Spawn failures
    (``OSError``) propagate.
    """
    rpc_argv = force_rpc_mode(argv)
    if max_output_size is None:
        max_output_size = get_settings().agent.max_output_size
    label = rpc_argv[0]

    start = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *rpc_argv,
        cwd=cwd,
        stdin=PIPE,
        stdout=PIPE,
        stderr=PIPE,
        limit=_MAX_LINE_BYTES,
    )
    handle = RunHandle(proc)
    logger.debug("Agent process spawned", agent=label, pid=proc.pid, cwd=cwd)
    if on_spawn is not None:
        on_spawn(handle)

    def kill_on_timeout() -> None:
        logger.error(
            "Agent run timed out, terminating",
            agent=label,
            pid=proc.pid,
            timeout_ms=timeout_ms,
        )
        handle.abort()

    timeout_handle = asyncio.get_running_loop().call_later(timeout_ms / 1000, kill_on_timeout)

    assert proc.stdin is not None
    assert proc.stdout is not None
    assert proc.stderr is not None

    try:
        try:
            proc.stdin.write(encode_prompt(prompt))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.debug("Agent closed stdin before prompt was written", agent=label, err=str(exc))
        finally:
            proc.stdin.close()

        stdout, stderr = await asyncio.gather(
            _read_stdout_lines(proc.stdout, on_event, max_output_size, label),
            read_stderr(proc.stderr, max_output_size, label),
        )
        returncode = await proc.wait()
    finally:
        timeout_handle.cancel()
        if proc.returncode is None:
            # Interrupted before exit, e.g. the awaiting task was cancelled.
            logger.warning("Agent run cancelled, terminating process", agent=label, pid=proc.pid)
            await asyncio.shield(_terminate(proc))

    exit_code: int | None = returncode
    signal_name: str | None = None
    if returncode is not None and returncode < 0:
        exit_code = None
        try:
            signal_name = signal.Signals(-returncode).name
        except ValueError:
            signal_name = f"SIG{-returncode}"

    duration_ms = (time.monotonic() - start) * 1000
    logger.debug(
        "Agent process exited",
        agent=label,
        exit_code=exit_code,
        signal=signal_name,
        killed=handle.killed,
        duration_ms=round(duration_ms),
    )
    return RunResult(
        stdout=stdout,
        stderr=stderr,
        exit_code=exit_code,
        signal=signal_name,
        killed=handle.killed,
        duration_ms=duration_ms,
    )
