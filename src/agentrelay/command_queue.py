"""Command queue — bounds concurrent agent runs with FIFO admission.

asyncio.ensure_future doesn't run the coroutine synchronously up to the
first await. So we must eagerly bump the active count in the synchronous
caller, then release it in the async finally block.

No priorities and no preemption: reordering agent turns would break the
conversational ordering users expect. Admission is FIFO, completion order
is not guaranteed.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from agentrelay.config import get_settings
from agentrelay.logger import logger
from agentrelay.rpc_runner import OnSpawn, run_rpc
from agentrelay.types import RpcJob, RunResult

T = TypeVar("T")

OnWait = Callable[[int, int], None]
"""``on_wait(wait_ms, queued_ahead)`` — fired once before a queued job starts."""


@dataclass
class QueuedCommand:
    id: int
    fn: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    enqueued_at: float  # time.monotonic()
    queued_ahead: int
    on_wait: OnWait | None = None


class CommandQueue:
    """Global concurrency limit for agent subprocess runs.

    A failing job only fails its own awaiter — the queue keeps draining.
    """

    def __init__(
        self,
        max_concurrent: int | None = None,
        warn_after_ms: int | None = None,
    ) -> None:
        s = get_settings()
        self._max_concurrent = max(1, max_concurrent or s.queue.max_concurrent)
        self._warn_after_ms = s.queue.warn_after_ms if warn_after_ms is None else warn_after_ms
        self._pending: deque[QueuedCommand] = deque()
        self._active_count = 0
        self._ids = itertools.count(1)
        self._running: set[asyncio.Future[None]] = set()
        self._shutting_down = False

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_count(self) -> int:
        return self._active_count

    @property
    def queued_count(self) -> int:
        return len(self._pending)

    async def enqueue(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        on_wait: OnWait | None = None,
    ) -> T:
        """Run *fn* once a slot is free and return its result.

        Jobs that start immediately never see ``on_wait``. Jobs that had to
        wait get exactly one ``on_wait(wait_ms, queued_ahead)`` call right
        before they start.
        """
        if self._shutting_down:
            raise RuntimeError("CommandQueue is shut down")

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        entry = QueuedCommand(
            id=next(self._ids),
            fn=fn,
            future=future,
            enqueued_at=time.monotonic(),
            queued_ahead=len(self._pending),
            on_wait=on_wait,
        )

        if self._active_count < self._max_concurrent and not self._pending:
            self._start(entry, waited=False)
        else:
            self._pending.append(entry)
            logger.debug(
                "At concurrency limit, command queued",
                command_id=entry.id,
                active_count=self._active_count,
                queued_ahead=entry.queued_ahead,
            )

        return await future

    async def submit(
        self,
        job: RpcJob,
        *,
        on_wait: OnWait | None = None,
        on_spawn: OnSpawn | None = None,
    ) -> RunResult:
        """Queue one agent subprocess run."""

        async def _run() -> RunResult:
            return await run_rpc(
                list(job.argv),
                job.cwd,
                job.prompt,
                job.timeout_ms,
                job.on_event,
                on_spawn=on_spawn,
            )

        return await self.enqueue(_run, on_wait=on_wait)

    def snapshot(self) -> dict[str, int]:
        """Return queue counters for status reporting."""
        return {
            "active_count": self._active_count,
            "queued_count": len(self._pending),
            "max_concurrent": self._max_concurrent,
        }

    def _start(self, entry: QueuedCommand, *, waited: bool) -> None:
        # Eagerly take the slot before scheduling the coroutine
        self._active_count += 1

        if waited:
            wait_ms = int((time.monotonic() - entry.enqueued_at) * 1000)
            if wait_ms >= self._warn_after_ms:
                logger.warning(
                    "Command waited in queue",
                    command_id=entry.id,
                    wait_ms=wait_ms,
                    queued_ahead=entry.queued_ahead,
                )
            if entry.on_wait is not None:
                try:
                    entry.on_wait(wait_ms, entry.queued_ahead)
                except Exception:
                    logger.exception("on_wait callback failed", command_id=entry.id)

        task = asyncio.ensure_future(self._run(entry))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, entry: QueuedCommand) -> None:
        """Run one admitted command. The slot was taken by ``_start``."""
        try:
            result = await entry.fn()
        except asyncio.CancelledError:
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as exc:
            logger.debug("Queued command failed", command_id=entry.id, err=str(exc))
            if not entry.future.done():
                entry.future.set_exception(exc)
        else:
            if not entry.future.done():
                entry.future.set_result(result)
        finally:
            self._active_count -= 1
            self._drain()

    def _drain(self) -> None:
        """Admit waiting commands until the concurrency limit is hit."""
        if self._shutting_down:
            return
        while self._pending and self._active_count < self._max_concurrent:
            entry = self._pending.popleft()
            if entry.future.done():
                # Awaiter was cancelled while the command sat in the queue
                continue
            self._start(entry, waited=True)

    async def shutdown(self) -> None:
        """Stop admitting commands and cancel everything still queued.

        Running commands are left to finish; their subprocesses are owned by
        the runner and its timeout.
        """
        self._shutting_down = True
        dropped = 0
        while self._pending:
            entry = self._pending.popleft()
            if not entry.future.done():
                entry.future.cancel()
                dropped += 1
        logger.info(
            "CommandQueue shutdown",
            active_count=self._active_count,
            dropped=dropped,
        )
