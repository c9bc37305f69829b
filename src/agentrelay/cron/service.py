"""Cron service — keeps the job store loaded and fires due jobs.

Due jobs are collected under the service lock, executed outside it (agent
turns can take minutes), then their results are applied under the lock
against a freshly checked store so external edits made in the meantime
aren't overwritten.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

from agentrelay.config import get_settings
from agentrelay.cron.schedule import compute_next_run_at_ms
from agentrelay.cron.store import (
    CronServiceState,
    ensure_loaded,
    persist,
    warn_if_disabled,
)
from agentrelay.cron.types import (
    AgentTurnPayload,
    AtSchedule,
    CronJob,
    SystemEventPayload,
)
from agentrelay.errors import CronStoreError
from agentrelay.logger import logger
from agentrelay.utils import create_background_task, now_ms

# Upper bound on how long the timer sleeps, so external edits are noticed.
MAX_TIMER_DELAY_MS = 60_000


@dataclass
class CronRunOutcome:
    status: Literal["ok", "error", "skipped"]
    error: str | None = None
    summary: str | None = None


class CronDependencies(Protocol):
    """What the service needs from the rest of the app to run a job."""

    async def enqueue_system_event(self, text: str) -> None: ...

    async def run_agent_turn(self, job: CronJob) -> CronRunOutcome: ...


def _patch_to_fields(patch: dict[str, Any]) -> dict[str, Any]:
    by_alias = {
        (info.alias or name): name for name, info in CronJob.model_fields.items()
    }
    fields: dict[str, Any] = {}
    for key, value in patch.items():
        name = by_alias.get(key, key)
        if name not in CronJob.model_fields:
            raise ValueError(f"Unknown cron job field: {key}")
        fields[name] = value
    return fields


class CronService:
    def __init__(
        self,
        deps: CronDependencies,
        *,
        store_path: Path | None = None,
        enabled: bool | None = None,
        now_ms_fn: Callable[[], int] | None = None,
    ) -> None:
        s = get_settings()
        self._deps = deps
        self.state = CronServiceState(
            store_path=store_path or s.cron_store_path,
            cron_enabled=s.cron.enabled if enabled is None else enabled,
            now_ms=now_ms_fn or now_ms,
        )
        self._lock = asyncio.Lock()
        self._timer: asyncio.TimerHandle | None = None
        self._in_flight: set[str] = set()
        self._running = False

    # --- Lifecycle ---

    async def start(self) -> None:
        async with self._lock:
            ensure_loaded(self.state)
            warn_if_disabled(self.state, "start")
        self._running = True
        logger.info(
            "Cron service started",
            enabled=self.state.cron_enabled,
            jobs=len(self._jobs()),
            store_path=str(self.state.store_path),
        )
        self._arm_timer()

    def stop(self) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def status(self) -> dict[str, Any]:
        async with self._lock:
            ensure_loaded(self.state)
            return {
                "enabled": self.state.cron_enabled,
                "store_path": str(self.state.store_path),
                "jobs": len(self._jobs()),
                "next_wake_at_ms": self._next_wake_ms(),
            }

    # --- Job management ---

    async def list_jobs(self, *, include_disabled: bool = False) -> list[CronJob]:
        async with self._lock:
            ensure_loaded(self.state)
            jobs = [j for j in self._jobs() if include_disabled or j.enabled]
        return sorted(
            jobs,
            key=lambda j: 2**62 if j.state.next_run_at_ms is None else j.state.next_run_at_ms,
        )

    async def add(
        self,
        *,
        name: str,
        schedule: dict[str, Any] | Any,
        payload: dict[str, Any] | Any,
        description: str | None = None,
        enabled: bool = True,
        delete_after_run: bool = False,
    ) -> CronJob:
        now = self.state.now_ms()
        job = CronJob.model_validate(
            {
                "id": str(uuid.uuid4()),
                "name": name.strip(),
                "description": (description or "").strip() or None,
                "enabled": enabled,
                "created_at_ms": now,
                "updated_at_ms": now,
                "delete_after_run": delete_after_run,
                "schedule": schedule,
                "payload": payload,
            }
        )
        async with self._lock:
            ensure_loaded(self.state)
            warn_if_disabled(self.state, "add")
            self._recompute(job)
            assert self.state.store is not None
            self.state.store.jobs.append(job)
            persist(self.state)
        logger.info("Cron job added", job_id=job.id, name=job.name, next_run_at_ms=job.state.next_run_at_ms)
        self._arm_timer()
        return job

    async def update(self, job_id: str, patch: dict[str, Any]) -> CronJob:
        """Apply a partial update. Raises KeyError for an unknown job."""
        fields = _patch_to_fields(patch)
        async with self._lock:
            ensure_loaded(self.state)
            current = self._find(job_id)
            data = current.model_dump()
            data.update(fields)
            data["id"] = current.id
            data["updated_at_ms"] = self.state.now_ms()
            updated = CronJob.model_validate(data)
            self._recompute(updated)
            self._replace(updated)
            persist(self.state)
        logger.info("Cron job updated", job_id=job_id, fields=sorted(fields))
        self._arm_timer()
        return updated

    async def toggle(self, job_id: str, enabled: bool | None = None) -> CronJob:
        async with self._lock:
            ensure_loaded(self.state)
            job = self._find(job_id)
            job.enabled = (not job.enabled) if enabled is None else enabled
            job.updated_at_ms = self.state.now_ms()
            self._recompute(job)
            persist(self.state)
        logger.info("Cron job toggled", job_id=job_id, enabled=job.enabled)
        self._arm_timer()
        return job

    async def remove(self, job_id: str) -> bool:
        async with self._lock:
            ensure_loaded(self.state)
            assert self.state.store is not None
            before = len(self.state.store.jobs)
            self.state.store.jobs = [j for j in self.state.store.jobs if j.id != job_id]
            removed = len(self.state.store.jobs) != before
            if removed:
                persist(self.state)
        if removed:
            logger.info("Cron job removed", job_id=job_id)
            self._arm_timer()
        return removed

    async def run(self, job_id: str, *, force: bool = False) -> CronRunOutcome:
        """Run one job now. Without *force*, only if it is due."""
        async with self._lock:
            ensure_loaded(self.state)
            job = self._find(job_id)
            due = job.enabled and job.state.next_run_at_ms is not None and (
                job.state.next_run_at_ms <= self.state.now_ms()
            )
            if not force and not due:
                return CronRunOutcome(status="skipped", error="not due")
            if job.id in self._in_flight:
                return CronRunOutcome(status="skipped", error="already running")
            self._in_flight.add(job.id)

        outcome = await self._run_and_record(job)
        self._arm_timer()
        return outcome

    # --- Execution ---

    async def _execute(self, job: CronJob) -> CronRunOutcome:
        try:
            match job.payload:
                case SystemEventPayload(text=text):
                    await self._deps.enqueue_system_event(text)
                    return CronRunOutcome(status="ok")
                case AgentTurnPayload():
                    return await self._deps.run_agent_turn(job)
        except Exception as exc:
            logger.exception("Cron job failed", job_id=job.id, name=job.name)
            return CronRunOutcome(status="error", error=str(exc))
        return CronRunOutcome(status="skipped", error="unsupported payload")

    async def _run_and_record(self, job: CronJob) -> CronRunOutcome:
        started = self.state.now_ms()
        logger.info("Running cron job", job_id=job.id, name=job.name, kind=job.payload.kind)
        try:
            outcome = await self._execute(job)
        finally:
            self._in_flight.discard(job.id)
        finished = self.state.now_ms()

        async with self._lock:
            ensure_loaded(self.state)
            self._apply_outcome(job.id, outcome, started, finished - started)
            persist(self.state)
        logger.info(
            "Cron job finished",
            job_id=job.id,
            status=outcome.status,
            duration_ms=finished - started,
            err=outcome.error,
        )
        return outcome

    def _apply_outcome(
        self,
        job_id: str,
        outcome: CronRunOutcome,
        started_ms: int,
        duration_ms: int,
    ) -> None:
        assert self.state.store is not None
        job = next((j for j in self.state.store.jobs if j.id == job_id), None)
        if job is None:
            # Removed while it was running.
            return
        job.state.last_run_at_ms = started_ms
        job.state.last_status = outcome.status
        job.state.last_error = outcome.error
        job.state.last_duration_ms = duration_ms

        if isinstance(job.schedule, AtSchedule):
            if job.delete_after_run and outcome.status == "ok":
                self.state.store.jobs.remove(job)
                logger.info("One-shot cron job deleted after run", job_id=job_id)
                return
            job.enabled = False
        self._recompute(job)

    async def _tick(self) -> None:
        due: list[CronJob] = []
        try:
            async with self._lock:
                ensure_loaded(self.state)
                now = self.state.now_ms()
                due = [
                    job
                    for job in self._jobs()
                    if job.enabled
                    and job.id not in self._in_flight
                    and job.state.next_run_at_ms is not None
                    and job.state.next_run_at_ms <= now
                ]
                self._in_flight.update(job.id for job in due)

            for job in due:
                await self._run_and_record(job)
        except CronStoreError as exc:
            logger.error("Cron store unreadable, will retry", err=str(exc))
        finally:
            self._in_flight.difference_update(job.id for job in due)
            self._arm_timer()

    def _arm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._running or not self.state.cron_enabled:
            return

        next_wake = self._next_wake_ms()
        now = self.state.now_ms()
        delay_ms = MAX_TIMER_DELAY_MS if next_wake is None else next_wake - now
        delay_ms = max(0, min(delay_ms, MAX_TIMER_DELAY_MS))
        self._timer = asyncio.get_running_loop().call_later(delay_ms / 1000, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        create_background_task(self._tick(), name="cron-tick")

    # --- Helpers ---

    def _jobs(self) -> list[CronJob]:
        return self.state.store.jobs if self.state.store is not None else []

    def _find(self, job_id: str) -> CronJob:
        for job in self._jobs():
            if job.id == job_id:
                return job
        raise KeyError(job_id)

    def _replace(self, job: CronJob) -> None:
        assert self.state.store is not None
        self.state.store.jobs = [job if j.id == job.id else j for j in self.state.store.jobs]

    def _recompute(self, job: CronJob) -> None:
        if not job.enabled:
            job.state.next_run_at_ms = None
            return
        job.state.next_run_at_ms = compute_next_run_at_ms(
            job.schedule,
            self.state.now_ms(),
            last_run_at_ms=job.state.last_run_at_ms,
            loaded_at_ms=job.created_at_ms or self.state.loaded_at_ms,
        )

    def _next_wake_ms(self) -> int | None:
        pending = [
            job.state.next_run_at_ms
            for job in self._jobs()
            if job.enabled and job.state.next_run_at_ms is not None
        ]
        return min(pending) if pending else None

