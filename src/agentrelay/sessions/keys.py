"""Session key construction and parsing.

Keys are namespaced under the agent id: ``agent:<agent_id>:<rest>``. Older
stores were keyed by ``rest`` alone, which is why parsing exposes it.
"""

from __future__ import annotations

from dataclasses import dataclass

from agentrelay.config import get_settings

AGENT_NAMESPACE = "agent"


@dataclass(frozen=True)
class SessionKeyParts:
    namespace: str
    agent_id: str
    rest: str


def parse_agent_session_key(key: str | None) -> SessionKeyParts | None:
    """Split ``agent:<id>:<rest>``. Returns None for anything else."""
    if not key:
        return None
    parts = key.strip().split(":", 2)
    if len(parts) != 3 or parts[0] != AGENT_NAMESPACE:
        return None
    namespace, agent_id, rest = parts
    if not agent_id or not rest:
        return None
    return SessionKeyParts(namespace=namespace, agent_id=agent_id, rest=rest)


def build_agent_session_key(agent_id: str, rest: str) -> str:
    return f"{AGENT_NAMESPACE}:{agent_id}:{rest}"


def resolve_agent_id(key: str | None) -> str:
    parts = parse_agent_session_key(key)
    return parts.agent_id if parts else get_settings().session.agent_id


def resolve_session_key(
    sender: str,
    *,
    chat_type: str = "direct",
    group_id: str | None = None,
    surface: str = "",
    scope: str | None = None,
    agent_id: str | None = None,
    main_key: str | None = None,
) -> str:
    """Session key for an inbound message.

    Global scope shares one session. Otherwise groups get one session each
    and direct chats are keyed by the normalized sender.
    """
    s = get_settings()
    scope = scope or s.session.scope
    agent_id = agent_id or s.session.agent_id

    if scope == "global":
        return build_agent_session_key(agent_id, "global")
    if chat_type == "group" and group_id:
        return build_agent_session_key(agent_id, f"{surface or 'group'}:group:{group_id}")
    normalized = sender.strip().lower()
    return build_agent_session_key(agent_id, normalized or (main_key or s.session.main_key))
