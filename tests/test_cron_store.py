"""Tests for cron store persistence, legacy migration and mtime reloads."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from agentrelay.cron import (
    CronServiceState,
    EverySchedule,
    SystemEventPayload,
    ensure_loaded,
    load_cron_store,
    persist,
)
from agentrelay.cron.normalize import infer_legacy_name, migrate_legacy_payload, migrate_legacy_schedule
from agentrelay.errors import CronStoreError

NOW = 1_700_000_000_000


def _write(path: Path, jobs: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"version": 1, "jobs": jobs}))


def _bump_mtime(path: Path, seconds: float = 10) -> None:
    st = path.stat()
    os.utime(path, (st.st_atime + seconds, st.st_mtime + seconds))


def _job(job_id: str = "j1", **overrides) -> dict:
    job = {
        "id": job_id,
        "name": "Ping",
        "enabled": True,
        "createdAtMs": NOW,
        "updatedAtMs": NOW,
        "schedule": {"kind": "every", "amount": 5, "unit": "minutes"},
        "payload": {"kind": "systemEvent", "text": "ping"},
    }
    job.update(overrides)
    return job


@pytest.fixture
def store_path(tmp_path) -> Path:
    return tmp_path / "cron" / "jobs.json"


@pytest.fixture
def state(store_path) -> CronServiceState:
    return CronServiceState(store_path=store_path, now_ms=lambda: NOW)


class TestLoadCronStore:
    def test_missing_file_is_empty(self, store_path):
        assert load_cron_store(store_path) == {"version": 1, "jobs": []}

    def test_invalid_json_raises(self, store_path):
        store_path.parent.mkdir(parents=True)
        store_path.write_text("{oops")
        with pytest.raises(CronStoreError) as exc_info:
            load_cron_store(store_path)
        assert exc_info.value.path == str(store_path)

    def test_jobs_must_be_list(self, store_path):
        store_path.parent.mkdir(parents=True)
        store_path.write_text(json.dumps({"jobs": {}}))
        with pytest.raises(CronStoreError, match="must be a list"):
            load_cron_store(store_path)


class TestEnsureLoaded:
    def test_loads_and_computes_next_run(self, state, store_path):
        _write(store_path, [_job()])
        assert ensure_loaded(state) is True

        assert state.store is not None
        job = state.store.jobs[0]
        assert isinstance(job.schedule, EverySchedule)
        assert isinstance(job.payload, SystemEventPayload)
        assert job.state.next_run_at_ms == NOW + 5 * 60_000

    def test_unchanged_mtime_skips_reload(self, state, store_path, monkeypatch):
        _write(store_path, [_job()])
        ensure_loaded(state)

        calls: list[Path] = []
        monkeypatch.setattr(
            "agentrelay.cron.store.load_cron_store",
            lambda path: calls.append(path) or {"version": 1, "jobs": []},
        )
        assert ensure_loaded(state) is False
        assert calls == []

    def test_unchanged_mtime_keeps_in_memory_next_runs(self, store_path):
        clock = [NOW]
        state = CronServiceState(store_path=store_path, now_ms=lambda: clock[0])
        _write(store_path, [_job()])
        ensure_loaded(state)
        assert state.store is not None
        state.store.jobs[0].state.next_run_at_ms = NOW + 42

        clock[0] = NOW + 3_600_000
        assert ensure_loaded(state) is False
        assert state.store.jobs[0].state.next_run_at_ms == NOW + 42

    def test_external_edit_reloaded(self, state, store_path):
        _write(store_path, [_job()])
        ensure_loaded(state)

        _write(store_path, [_job(name="Renamed")])
        _bump_mtime(store_path)
        assert ensure_loaded(state) is True
        assert state.store is not None
        assert state.store.jobs[0].name == "Renamed"

    def test_own_write_not_treated_as_edit(self, state, store_path):
        _write(store_path, [_job()])
        ensure_loaded(state)
        assert state.store is not None
        state.store.jobs[0].name = "Changed in memory"
        persist(state)

        assert ensure_loaded(state) is False
        assert state.store.jobs[0].name == "Changed in memory"

    def test_missing_file_loads_empty_store(self, state):
        assert ensure_loaded(state) is True
        assert state.store is not None
        assert state.store.jobs == []
        assert ensure_loaded(state) is False

    def test_invalid_jobs_preserved(self, state, store_path):
        bad = {"id": "bad", "name": "Broken", "schedule": {"kind": "sometimes"}, "payload": {}}
        _write(store_path, [_job(), bad])
        ensure_loaded(state)

        assert state.store is not None
        assert [j.id for j in state.store.jobs] == ["j1"]
        assert [j["id"] for j in state.unparsed_jobs] == ["bad"]

        persist(state)
        on_disk = json.loads(store_path.read_text())
        assert [j["id"] for j in on_disk["jobs"]] == ["j1", "bad"]

    def test_legacy_job_migrated_and_rewritten(self, state, store_path):
        legacy = {
            "id": "old",
            "name": "  ",
            "description": "   ",
            "schedule": {"kind": "every", "every_ms": 7_200_000},
            "payload": {"kind": "system_event", "message": "Check the backups\nthen report"},
        }
        _write(store_path, [legacy])
        ensure_loaded(state)

        assert state.store is not None
        job = state.store.jobs[0]
        assert job.name == "Check the backups"
        assert job.description is None
        assert isinstance(job.schedule, EverySchedule)
        assert (job.schedule.amount, job.schedule.unit) == (2, "hours")
        assert isinstance(job.payload, SystemEventPayload)
        assert job.payload.text == "Check the backups\nthen report"

        on_disk = json.loads(store_path.read_text())["jobs"][0]
        assert on_disk["schedule"] == {"kind": "every", "amount": 2, "unit": "hours"}
        assert on_disk["payload"]["kind"] == "systemEvent"
        assert "description" not in on_disk
        assert store_path.with_suffix(".json.bak").exists()

    def test_migrated_store_round_trips_clean(self, state, store_path, monkeypatch):
        legacy = {
            "id": "old",
            "schedule": {"kind": "cron", "expr": "0 9 * * *", "tz": "UTC"},
            "payload": {"kind": "agent_turn", "text": "Summarize the inbox", "provider": "telegram"},
        }
        _write(store_path, [legacy])
        ensure_loaded(state)
        assert state.store is not None
        first = [job.model_dump(by_alias=True) for job in state.store.jobs]

        saves: list[Path] = []
        monkeypatch.setattr(
            "agentrelay.cron.store.save_cron_store", lambda path, *args: saves.append(path)
        )
        reloaded = CronServiceState(store_path=store_path, now_ms=lambda: NOW)
        assert ensure_loaded(reloaded) is True
        assert reloaded.store is not None
        assert [job.model_dump(by_alias=True) for job in reloaded.store.jobs] == first
        assert saves == []


class TestLegacyMigration:
    def test_payload_kind_inferred(self):
        payload = {"text": "hello"}
        assert migrate_legacy_payload(payload)
        assert payload == {"kind": "systemEvent", "text": "hello"}

    def test_agent_turn_provider_and_timeout(self):
        payload = {"kind": "agent_turn", "text": "run", "provider": "telegram", "timeout_seconds": 30}
        assert migrate_legacy_payload(payload)
        assert payload == {
            "kind": "agentTurn",
            "message": "run",
            "channel": "telegram",
            "timeoutSeconds": 30,
        }

    def test_current_payload_untouched(self):
        payload = {"kind": "agentTurn", "message": "x"}
        assert not migrate_legacy_payload(payload)

    def test_schedule_keys(self):
        schedule = {"kind": "at", "at_ms": 5}
        assert migrate_legacy_schedule(schedule)
        assert schedule == {"kind": "at", "atMs": 5}

    def test_odd_interval_rounded_to_seconds(self):
        schedule = {"kind": "every", "everyMs": 1_500}
        migrate_legacy_schedule(schedule)
        assert (schedule["amount"], schedule["unit"]) == (2, "seconds")

    @pytest.mark.parametrize(
        ("schedule", "payload", "name"),
        [
            ({"kind": "cron", "expr": "0 9 * * *"}, {}, "Cron: 0 9 * * *"),
            ({"kind": "every", "amount": 3, "unit": "hours"}, None, "Every 3 hours"),
            ({"kind": "at", "atMs": 1}, {"text": "  "}, "One-shot job"),
            (None, None, "Cron job"),
            ({}, {"message": "x" * 80}, "x" * 59 + "…"),
        ],
    )
    def test_infer_legacy_name(self, schedule, payload, name):
        assert infer_legacy_name(schedule, payload) == name
