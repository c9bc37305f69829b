"""Lightweight asyncio event bus for agent lifecycle events.

The stream reducer publishes tool/assistant activity here so observers
(status displays, tracing) can follow runs without being wired into every
call site.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Coroutine
from typing import Any, TypeAlias

from agentrelay.logger import logger
from agentrelay.types import AgentEvent

Listener: TypeAlias = Callable[[AgentEvent], Coroutine[Any, Any, None]]


class AgentEventBus:
    """Fire-and-forget async dispatcher for :class:`AgentEvent`."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._seq: dict[str, int] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to all agent events. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: AgentEvent) -> None:
        """Emit an event to all subscribers. Non-blocking.

        Each event is stamped with a per-run sequence number (``data["seq"]``)
        so listeners can order events even though delivery is concurrent.
        """
        seq = self._seq.get(event.run_id, 0) + 1
        self._seq[event.run_id] = seq
        event.data.setdefault("seq", seq)
        if not self._listeners:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        for listener in list(self._listeners):
            asyncio.ensure_future(_safe_call(listener, event))

    def clear_run(self, run_id: str) -> None:
        """Forget the sequence counter for a finished run."""
        self._seq.pop(run_id, None)


async def _safe_call(listener: Listener, event: AgentEvent) -> None:
    try:
        await listener(event)
    except Exception as exc:
        logger.warning("AgentEventBus listener error", err=str(exc))


agent_event_bus = AgentEventBus()


def emit_agent_event(event: AgentEvent) -> None:
    agent_event_bus.emit(event)
