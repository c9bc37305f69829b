"""Abort registry — stop a live agent run or flag the next one.

Two tiers of abort intent:

  - persisted: ``aborted_last_run`` on the SessionEntry in the session store
  - memory: a process-lifetime map for keys that have no entry yet (an
    abort can arrive before the session's first run created one)

The persisted entry wins when present. Live runs are tracked by session id
so an abort can signal the subprocess directly.
"""

from __future__ import annotations

from dataclasses import dataclass

from agentrelay.logger import logger
from agentrelay.reply.fallback import strip_structural_prefixes
from agentrelay.rpc_runner import RunHandle
from agentrelay.sessions.keys import parse_agent_session_key
from agentrelay.sessions.store import SessionStore
from agentrelay.types import SessionEntry
from agentrelay.utils import now_ms

ABORT_TRIGGERS = frozenset({"stop", "esc", "abort", "wait", "exit"})
STOP_COMMAND = "/stop"


def is_abort_trigger(text: str | None) -> bool:
    if not text:
        return False
    normalized = strip_structural_prefixes(text).strip().lower()
    return normalized in ABORT_TRIGGERS or normalized == STOP_COMMAND


@dataclass
class AbortTarget:
    entry: SessionEntry
    key: str


@dataclass(frozen=True)
class AbortOutcome:
    handled: bool
    aborted: bool


class AbortRegistry:
    def __init__(self, store: SessionStore) -> None:
        self.store = store
        self.memory: dict[str, bool] = {}
        self._runs: dict[str, RunHandle] = {}

    # --- Live runs ---

    def register_run(self, session_id: str, handle: RunHandle) -> None:
        self._runs[session_id] = handle

    def unregister_run(self, session_id: str, handle: RunHandle | None = None) -> None:
        """Forget the live run. With *handle*, only if it is still the registered one."""
        current = self._runs.get(session_id)
        if current is not None and (handle is None or current is handle):
            del self._runs[session_id]

    def is_running(self, session_id: str) -> bool:
        handle = self._runs.get(session_id)
        return handle is not None and handle.running

    def abort_run(self, session_id: str) -> bool:
        handle = self._runs.get(session_id)
        if handle is None:
            return False
        aborted = handle.abort()
        if aborted:
            logger.info("Aborted live agent run", session_id=session_id, pid=handle.pid)
        return aborted

    # --- Abort intent ---

    def resolve_abort_target(
        self,
        key: str | None,
        entries: dict[str, SessionEntry] | None = None,
    ) -> AbortTarget | None:
        """Find the entry for *key*: the key itself, then its legacy ``rest`` form."""
        if not key:
            return None
        if entries is None:
            entries = self.store.load()
        if key in entries:
            return AbortTarget(entry=entries[key], key=key)
        parts = parse_agent_session_key(key)
        if parts is not None and parts.rest in entries:
            return AbortTarget(entry=entries[parts.rest], key=parts.rest)
        return None

    def abort(self, key: str | None, *, sender: str | None = None) -> AbortOutcome:
        """Record an abort request for *key* (falling back to *sender*).

        Signals the live run when one is registered. The entry is stamped
        and persisted whether or not a run was live, so the next run for the
        key short-circuits.
        """
        abort_key = key or sender
        if key:
            entries = self.store.load()
            target = self.resolve_abort_target(key, entries)
            if target is not None:
                session_id = target.entry.session_id
                aborted = self.abort_run(session_id) if session_id else False
                target.entry.aborted_last_run = True
                target.entry.updated_at = now_ms()
                entries[target.key] = target.entry
                self.store.save(entries)
                logger.info("Abort recorded", key=target.key, aborted=aborted)
                return AbortOutcome(handled=True, aborted=aborted)

        if abort_key:
            self.memory[abort_key] = True
            logger.info("Abort recorded in memory", key=abort_key)
        return AbortOutcome(handled=True, aborted=False)

    def consume_abort_flag(self, key: str | None, *, sender: str | None = None) -> bool:
        """Check and clear the abort flag for *key*. Called at run start."""
        remembered = False
        for candidate in (key, sender):
            if candidate and self.memory.pop(candidate, False):
                remembered = True

        if not key:
            return remembered
        entries = self.store.load()
        target = self.resolve_abort_target(key, entries)
        if target is None:
            return remembered
        if not target.entry.aborted_last_run:
            return False
        target.entry.aborted_last_run = False
        target.entry.updated_at = now_ms()
        entries[target.key] = target.entry
        self.store.save(entries)
        return True
