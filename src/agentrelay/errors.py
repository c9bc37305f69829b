"""Exception types raised across agentrelay.

Subprocess failures are never raised. They are converted into reply
payloads by the command reply path. Only configuration and storage problems
surface as exceptions.
"""

from __future__ import annotations

from pathlib import Path


class AgentRelayError(Exception):
    """Base class for all agentrelay errors."""


class AgentConfigError(AgentRelayError):
    """The agent command could not be built from configuration."""


class CronStoreError(AgentRelayError):
    """The cron store file exists but could not be read or parsed."""

    def __init__(self, path: str | Path, reason: str) -> None:
        super().__init__(f"Failed to load cron store {path}: {reason}")
        self.path = str(path)
        self.reason = reason
