"""Shared test fixtures for agentrelay."""

from __future__ import annotations

import json
import sys
import textwrap
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "agent_timeout_ms",
        "timezone",
        "project_root",
        "home_dir",
        "data_dir",
        "sessions_dir",
        "session_store_path",
        "cron_store_path",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (agent, queue, etc.) and cached property
    overrides (data_dir, sessions_dir, timezone, etc.).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(queue=QueueConfig(max_concurrent=3))
    """
    from agentrelay.config import (
        AgentConfig,
        CronConfig,
        LoggingConfig,
        QueueConfig,
        ReplyConfig,
        SchedulerConfig,
        SessionConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "agent": AgentConfig(),
        "queue": QueueConfig(),
        "reply": ReplyConfig(),
        "session": SessionConfig(),
        "cron": CronConfig(),
        "scheduler": SchedulerConfig(timezone="UTC"),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def tool_start_line(name: str, call_id: str, args: dict[str, Any] | None = None) -> str:
    return json.dumps(
        {"type": "tool_execution_start", "toolName": name, "toolCallId": call_id, "args": args or {}}
    )


def tool_result_line(
    name: str | None = None,
    call_id: str | None = None,
    *,
    text: str = "ok",
    details: dict[str, Any] | None = None,
    event_type: str = "message",
) -> str:
    message: dict[str, Any] = {"role": "toolResult", "content": [{"type": "text", "text": text}]}
    if name:
        message["toolName"] = name
    if call_id:
        message["toolCallId"] = call_id
    if details:
        message["details"] = details
    return json.dumps({"type": event_type, "message": message})


def assistant_end_line(text: str, *, event_type: str = "message_end") -> str:
    return json.dumps(
        {
            "type": event_type,
            "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
        }
    )


def text_delta_line(delta: str) -> str:
    return json.dumps(
        {
            "type": "message_update",
            "assistantMessageEvent": {"type": "text_delta", "delta": delta},
        }
    )


# Prelude for fake agent scripts: reads the RPC prompt from stdin and gives
# the script body ``prompt``, ``argv`` and ``emit(line)``.
_AGENT_PRELUDE = """\
import json
import sys
import time

request = json.loads(sys.stdin.readline() or "{}")
prompt = request.get("message", "")
argv = sys.argv[1:]


def emit(line):
    if not isinstance(line, str):
        line = json.dumps(line)
    print(line, flush=True)

"""


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no config.toml,
    no .env. All paths point into the test's tmp_path.
    """
    safe = make_settings(
        project_root=tmp_path,
        home_dir=tmp_path / "home",
        data_dir=tmp_path / "data",
        sessions_dir=tmp_path / "sessions",
        timezone="UTC",
    )
    monkeypatch.setattr("agentrelay.config._settings", safe)
    return safe


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_agent(tmp_path):
    """Factory fixture: write an executable fake agent script and return its argv.

    The body runs after the prelude, so it can use ``prompt``, ``argv`` and
    ``emit()``. Append ``"{{Body}}"`` to use the command as an agent config.
    """
    counter = 0

    def _make(body: str) -> list[str]:
        nonlocal counter
        counter += 1
        script = tmp_path / f"fake_agent_{counter}.py"
        script.write_text(f"#!{sys.executable}\n" + _AGENT_PRELUDE + textwrap.dedent(body))
        script.chmod(0o755)
        return [str(script)]

    return _make
