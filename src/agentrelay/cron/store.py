"""Cron store persistence with mtime-based reload.

The job file may be edited by hand (or by another process) while the
service runs. ``ensure_loaded`` only rereads it when the on-disk mtime has
moved past the value recorded at the last load or save, and ``persist``
records the mtime of its own write so that write isn't mistaken for an
external edit.

Nothing here takes a file lock; interleaved external writes are picked up
on a best-effort basis.
"""

from __future__ import annotations

import json
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agentrelay.cron.normalize import (
    infer_legacy_name,
    migrate_legacy_payload,
    migrate_legacy_schedule,
    normalize_optional_text,
)
from agentrelay.cron.schedule import compute_next_run_at_ms
from agentrelay.cron.types import CronJob, CronStoreFile
from agentrelay.errors import CronStoreError
from agentrelay.logger import logger
from agentrelay.utils import get_file_mtime_ms, now_ms, write_json_atomic


@dataclass
class CronServiceState:
    store_path: Path
    cron_enabled: bool = True
    now_ms: Callable[[], int] = now_ms
    store: CronStoreFile | None = None
    # Records that failed validation; kept verbatim so a save doesn't drop them.
    unparsed_jobs: list[dict[str, Any]] = field(default_factory=list)
    loaded_at_ms: int | None = None
    file_mtime_ms: float | None = None
    warned_disabled: bool = False


def load_cron_store(path: Path) -> dict[str, Any]:
    """Read the raw store. A missing file is an empty store.

    Raises CronStoreError when the file exists but isn't a valid store.
    """
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError:
        return {"version": 1, "jobs": []}
    except (OSError, json.JSONDecodeError) as exc:
        raise CronStoreError(path, str(exc)) from exc

    if not isinstance(raw, dict):
        raise CronStoreError(path, "expected a JSON object")
    jobs = raw.get("jobs", [])
    if not isinstance(jobs, list):
        raise CronStoreError(path, "'jobs' must be a list")
    return {"version": 1, "jobs": [job for job in jobs if isinstance(job, dict)]}


def save_cron_store(
    path: Path,
    store: CronStoreFile,
    unparsed_jobs: list[dict[str, Any]] | None = None,
) -> None:
    """Write the whole store atomically, then refresh the ``.bak`` copy."""
    data = {
        "version": 1,
        "jobs": [job.to_json() for job in store.jobs] + list(unparsed_jobs or []),
    }
    write_json_atomic(path, data, indent=2)
    try:
        shutil.copyfile(path, path.with_suffix(path.suffix + ".bak"))
    except OSError as exc:
        logger.debug("Could not write cron store backup", path=str(path), err=str(exc))


def _normalize_raw_job(raw: dict[str, Any]) -> bool:
    mutated = False

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raw["name"] = infer_legacy_name(raw.get("schedule"), raw.get("payload"))
        mutated = True
    elif name != name.strip():
        raw["name"] = name.strip()
        mutated = True

    description = normalize_optional_text(raw.get("description"))
    if raw.get("description") != description:
        if description is None:
            raw.pop("description", None)
        else:
            raw["description"] = description
        mutated = True

    payload = raw.get("payload")
    if isinstance(payload, dict) and migrate_legacy_payload(payload):
        mutated = True
    schedule = raw.get("schedule")
    if isinstance(schedule, dict) and migrate_legacy_schedule(schedule):
        mutated = True
    return mutated


def recompute_next_runs(state: CronServiceState) -> None:
    if state.store is None:
        return
    now = state.now_ms()
    for job in state.store.jobs:
        if not job.enabled:
            job.state.next_run_at_ms = None
            continue
        job.state.next_run_at_ms = compute_next_run_at_ms(
            job.schedule,
            now,
            last_run_at_ms=job.state.last_run_at_ms,
            loaded_at_ms=job.created_at_ms or state.loaded_at_ms,
        )


def ensure_loaded(state: CronServiceState) -> bool:
    """Load the store if it was never loaded or changed on disk.

    Returns True when a reload happened.
    """
    mtime = get_file_mtime_ms(state.store_path)
    needs_reload = state.store is None or (
        mtime is not None and (state.file_mtime_ms is None or mtime > state.file_mtime_ms)
    )
    if not needs_reload:
        return False

    loaded = load_cron_store(state.store_path)
    jobs: list[CronJob] = []
    unparsed: list[dict[str, Any]] = []
    mutated = False
    for raw in loaded["jobs"]:
        if _normalize_raw_job(raw):
            mutated = True
        try:
            jobs.append(CronJob.model_validate(raw))
        except ValidationError as exc:
            logger.warning(
                "Skipping invalid cron job",
                job_id=raw.get("id"),
                err=str(exc).splitlines()[0],
            )
            unparsed.append(raw)

    state.store = CronStoreFile(jobs=jobs)
    state.unparsed_jobs = unparsed
    state.loaded_at_ms = state.now_ms()
    state.file_mtime_ms = mtime
    logger.debug(
        "Cron store loaded",
        path=str(state.store_path),
        jobs=len(jobs),
        invalid=len(unparsed),
        migrated=mutated,
    )

    recompute_next_runs(state)
    if mutated:
        persist(state)
    return True


def persist(state: CronServiceState) -> None:
    if state.store is None:
        return
    save_cron_store(state.store_path, state.store, state.unparsed_jobs)
    state.file_mtime_ms = get_file_mtime_ms(state.store_path)


def warn_if_disabled(state: CronServiceState, action: str) -> None:
    """Log once that jobs won't fire on their own."""
    if state.cron_enabled or state.warned_disabled:
        return
    state.warned_disabled = True
    logger.warning(
        "Cron scheduler disabled; jobs will not run automatically",
        action=action,
        store_path=str(state.store_path),
    )
