"""Session store — flat JSON mapping of session key to SessionEntry."""

from __future__ import annotations

import json
from pathlib import Path

from agentrelay.logger import logger
from agentrelay.types import SessionEntry
from agentrelay.utils import write_json_atomic


class SessionStore:
    """Load/save the session file. Each call hits disk; callers hold the dict."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> dict[str, SessionEntry]:
        """Read the store. Missing or unreadable files yield an empty mapping."""
        try:
            raw = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read session store", path=str(self.path), err=str(exc))
            return {}
        if not isinstance(raw, dict):
            logger.warning("Session store is not a JSON object", path=str(self.path))
            return {}
        return {
            key: SessionEntry.from_dict(value)
            for key, value in raw.items()
            if isinstance(value, dict)
        }

    def save(self, entries: dict[str, SessionEntry]) -> None:
        write_json_atomic(
            self.path,
            {key: entry.to_dict() for key, entry in entries.items()},
            indent=2,
        )

    def get(self, key: str) -> SessionEntry | None:
        return self.load().get(key)

    def update(self, key: str, entry: SessionEntry) -> None:
        """Read-modify-write a single entry."""
        entries = self.load()
        entries[key] = entry
        self.save(entries)
