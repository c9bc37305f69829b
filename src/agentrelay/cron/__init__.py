"""Cron jobs — persisted schedules that feed the agent pipeline.

  types      — pydantic job/schedule/payload models
  normalize  — legacy record migration
  schedule   — next-run computation
  store      — load/save with mtime-based reload
  service    — CronService (timer, job management, execution)
"""

from agentrelay.cron.schedule import compute_next_run_at_ms
from agentrelay.cron.service import CronDependencies, CronRunOutcome, CronService
from agentrelay.cron.store import (
    CronServiceState,
    ensure_loaded,
    load_cron_store,
    persist,
    save_cron_store,
)
from agentrelay.cron.types import (
    AgentTurnPayload,
    AtSchedule,
    CronExprSchedule,
    CronJob,
    CronJobState,
    CronStoreFile,
    EverySchedule,
    SystemEventPayload,
)

__all__ = [
    "AgentTurnPayload",
    "AtSchedule",
    "CronDependencies",
    "CronExprSchedule",
    "CronJob",
    "CronJobState",
    "CronRunOutcome",
    "CronService",
    "CronServiceState",
    "CronStoreFile",
    "EverySchedule",
    "SystemEventPayload",
    "compute_next_run_at_ms",
    "ensure_loaded",
    "load_cron_store",
    "persist",
    "save_cron_store",
]
