"""Relay settings: agent command, queue limits, reply tuning, session and cron stores.

Non-secret settings live in config.toml. Environment variables override
using ``__`` as the nested delimiter (e.g. ``QUEUE__MAX_CONCURRENT=4``).

Sources, strongest first: constructor args, environment, .env, config.toml.

Usage::

    from agentrelay.config import get_settings

    s = get_settings()
    print(s.agent.command)
    print(s.queue.max_concurrent)
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

ThinkLevel = Literal["off", "minimal", "low", "medium", "high"]

# ---------------------------------------------------------------------------
# One model per [section] of config.toml
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Sub-model that rejects unknown keys, so a misspelled option is an error."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    # argv template; {{Body}} marks where the prompt would go (it is sent on stdin)
    command: list[str] = ["pi", "{{Body}}"]
    cwd: str | None = None
    timeout_seconds: int = 600
    think_level: ThinkLevel = "off"
    template: str | None = None  # system prefix inserted after argv[0]
    send_system_once: bool = False
    session_args_new: list[str] | None = None  # None → --session <sessions_dir>/{{SessionId}}.jsonl
    session_args_resume: list[str] | None = None
    session_args_before_body: bool = True
    sessions_dir: str | None = None  # None → ~/.agentrelay/sessions
    media_max_mb: float | None = None
    max_output_size: int = 10485760  # 10MB

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("timeout_seconds must be positive")
        return v


class QueueConfig(_StrictModel):
    max_concurrent: int = 1
    warn_after_ms: int = 2000

    @field_validator("max_concurrent")
    @classmethod
    def clamp_max_concurrent(cls, v: int) -> int:
        return max(1, v)


class ReplyConfig(_StrictModel):
    tool_debounce_ms: int = 500
    tool_flush_count: int = 5


class SessionConfig(_StrictModel):
    store: str | None = None  # None → <data_dir>/sessions.json
    scope: Literal["per-sender", "global"] = "per-sender"
    agent_id: str = "main"
    main_key: str = "main"


class CronConfig(_StrictModel):
    enabled: bool = True
    store: str | None = None  # None → <data_dir>/cron/jobs.json


class SchedulerConfig(_StrictModel):
    timezone: str = ""  # blank means detect from TZ or /etc/localtime


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    queue: QueueConfig = QueueConfig()
    reply: ReplyConfig = ReplyConfig()
    session: SessionConfig = SessionConfig()
    cron: CronConfig = CronConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Constructor args, then environment, then .env, then config.toml."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Derived paths and values ---

    @cached_property
    def agent_timeout_ms(self) -> int:
        return self.agent.timeout_seconds * 1000

    @cached_property
    def timezone(self) -> str:
        if self.scheduler.timezone:
            return self.scheduler.timezone
        return _detect_timezone()

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def home_dir(self) -> Path:
        return Path.home()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def sessions_dir(self) -> Path:
        if self.agent.sessions_dir:
            return _resolve_user_path(self.agent.sessions_dir, self.home_dir)
        return self.home_dir / ".agentrelay" / "sessions"

    @cached_property
    def session_store_path(self) -> Path:
        if self.session.store:
            return _resolve_user_path(self.session.store, self.home_dir)
        return self.data_dir / "sessions.json"

    @cached_property
    def cron_store_path(self) -> Path:
        if self.cron.store:
            return _resolve_user_path(self.cron.store, self.home_dir)
        return self.data_dir / "cron" / "jobs.json"


def _resolve_user_path(raw: str, home: Path) -> Path:
    """Expand a leading ``~`` against *home* and resolve relative paths."""
    if raw == "~" or raw.startswith("~/"):
        return home / raw[2:]
    return Path(raw).resolve()


# ---------------------------------------------------------------------------
# Timezone detection
# ---------------------------------------------------------------------------


def _detect_timezone() -> str:
    if tz := os.environ.get("TZ"):
        return tz
    try:
        link = os.readlink("/etc/localtime")
        parts = link.split("zoneinfo/")
        if len(parts) > 1:
            return parts[1]
    except OSError:
        pass  # /etc/localtime missing or not a symlink; fall back to UTC
    return "UTC"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide Settings, building it on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached Settings so the next get_settings() rebuilds it."""
    global _settings
    _settings = None
