"""Shared utility functions.

Small helpers used across multiple modules: atomic JSON writes, mtime
lookups, background task creation, and the debounce timer used by the
stream reducer.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

from agentrelay.logger import logger


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def write_json_atomic(path: Path, data: Any, *, indent: int | None = None) -> None:
    """Serialize *data* to a sibling .tmp file, then rename it over *path*.

    Readers of the session and cron stores see either the previous file or
    the new one. Missing parent directories are created.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=indent, ensure_ascii=False))
    tmp.replace(path)


def get_file_mtime_ms(path: Path) -> float | None:
    """Return the file's mtime in epoch milliseconds, or None if it is missing."""
    try:
        return path.stat().st_mtime_ns / 1_000_000
    except OSError:
        return None


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Start *coro* as a task whose failure is logged rather than lost.

    Used for reducer flushes, event listeners and cron runs that nobody awaits.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Done-callback for create_background_task."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # logger.exception() won't work here because we're in a
        # done-callback, not an except handler.
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )


class DebounceTimer:
    """Cancellable one-shot timer: arm, cancel, fire at most once per arming.

    Re-arming cancels the pending countdown first, so at most one callback
    is ever scheduled. Must be created inside a running event loop.
    """

    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self._delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._loop = asyncio.get_running_loop()

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        """Cancel any pending countdown and start a fresh one."""
        self.cancel()
        self._handle = self._loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        """Cancel the timer without firing the callback."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._callback()
