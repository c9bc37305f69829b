"""Session state and abort handling.

  keys   — session key construction and parsing
  store  — JSON session store
  abort  — AbortRegistry (persisted + in-memory abort intent, live runs)
"""

from agentrelay.sessions.abort import (
    ABORT_TRIGGERS,
    AbortOutcome,
    AbortRegistry,
    AbortTarget,
    is_abort_trigger,
)
from agentrelay.sessions.keys import (
    SessionKeyParts,
    build_agent_session_key,
    parse_agent_session_key,
    resolve_session_key,
)
from agentrelay.sessions.store import SessionStore

__all__ = [
    "ABORT_TRIGGERS",
    "AbortOutcome",
    "AbortRegistry",
    "AbortTarget",
    "SessionKeyParts",
    "SessionStore",
    "build_agent_session_key",
    "is_abort_trigger",
    "parse_agent_session_key",
    "resolve_session_key",
]
