"""Cron types (Pydantic models with camelCase JSON aliases)."""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

EveryUnit = Literal["seconds", "minutes", "hours", "days"]

UNIT_MS: dict[str, int] = {
    "seconds": 1_000,
    "minutes": 60_000,
    "hours": 3_600_000,
    "days": 86_400_000,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AtSchedule(_CamelModel):
    """Run once at a fixed instant."""

    kind: Literal["at"] = "at"
    at_ms: int = Field(alias="atMs")


class EverySchedule(_CamelModel):
    """Run on a fixed interval, optionally aligned to an anchor instant."""

    kind: Literal["every"] = "every"
    amount: int = Field(gt=0)
    unit: EveryUnit = "minutes"
    anchor_ms: int | None = Field(None, alias="anchorMs")

    @property
    def every_ms(self) -> int:
        return self.amount * UNIT_MS[self.unit]


class CronExprSchedule(_CamelModel):
    """Run on a cron expression in an optional IANA timezone."""

    kind: Literal["cron"] = "cron"
    expr: str
    tz: str | None = None


CronSchedule = Annotated[
    AtSchedule | EverySchedule | CronExprSchedule,
    Field(discriminator="kind"),
]


class SystemEventPayload(_CamelModel):
    """Inject a ``System:`` line into the next agent turn."""

    kind: Literal["systemEvent"] = "systemEvent"
    text: str


class AgentTurnPayload(_CamelModel):
    """Run a full agent turn with *message* as the prompt."""

    kind: Literal["agentTurn"] = "agentTurn"
    message: str
    thinking: str | None = None
    timeout_seconds: int | None = Field(None, alias="timeoutSeconds")
    deliver: bool = False
    channel: str | None = None
    to: str | None = None


CronPayload = Annotated[
    SystemEventPayload | AgentTurnPayload,
    Field(discriminator="kind"),
]


class CronJobState(_CamelModel):
    """Runtime state of a job."""

    next_run_at_ms: int | None = Field(None, alias="nextRunAtMs")
    last_run_at_ms: int | None = Field(None, alias="lastRunAtMs")
    last_status: Literal["ok", "error", "skipped"] | None = Field(None, alias="lastStatus")
    last_error: str | None = Field(None, alias="lastError")
    last_duration_ms: int | None = Field(None, alias="lastDurationMs")


class CronJob(_CamelModel):
    """A scheduled job."""

    id: str
    name: str
    description: str | None = None
    enabled: bool = True
    created_at_ms: int = Field(0, alias="createdAtMs")
    updated_at_ms: int = Field(0, alias="updatedAtMs")
    delete_after_run: bool = Field(False, alias="deleteAfterRun")
    schedule: CronSchedule
    payload: CronPayload
    state: CronJobState = Field(default_factory=CronJobState)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CronStoreFile(_CamelModel):
    """On-disk shape of the cron store."""

    version: Literal[1] = 1
    jobs: list[CronJob] = Field(default_factory=list)
