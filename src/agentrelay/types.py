"""Data models for agentrelay."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

OnEvent = Callable[[str], None]
OnPartialReply = Callable[["ReplyPayload"], Awaitable[None] | None]
OnAgentEvent = Callable[["AgentEvent"], None]


@dataclass(frozen=True)
class RpcJob:
    """One agent invocation as submitted to the command queue."""

    argv: tuple[str, ...]
    prompt: str
    timeout_ms: int
    on_event: OnEvent
    cwd: str | None = None


@dataclass
class RunResult:
    """Outcome of one subprocess run. Produced exactly once per job."""

    stdout: str
    stderr: str
    exit_code: int | None
    signal: str | None
    killed: bool
    duration_ms: float = 0.0


@dataclass
class ReplyPayload:
    """One outbound reply. At least one of text/media is set when emitted."""

    text: str | None = None
    media_url: str | None = None
    media_urls: list[str] | None = None
    audio_as_voice: bool = False

    def is_empty(self) -> bool:
        return not self.text and not self.media_urls and not self.media_url


@dataclass
class SessionEntry:
    """Persisted per-session state, keyed by session key in the store file."""

    session_id: str | None = None
    aborted_last_run: bool = False
    updated_at: int = 0  # ms since epoch
    system_sent: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> SessionEntry:
        return cls(
            session_id=raw.get("sessionId"),
            aborted_last_run=bool(raw.get("abortedLastRun", False)),
            updated_at=int(raw.get("updatedAt") or 0),
            system_sent=bool(raw.get("systemSent", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "abortedLastRun": self.aborted_last_run,
            "updatedAt": self.updated_at,
        }
        if self.session_id is not None:
            d["sessionId"] = self.session_id
        if self.system_sent:
            d["systemSent"] = True
        return d


@dataclass
class AgentEvent:
    """Tool/assistant lifecycle event forwarded to observers during a run."""

    run_id: str
    stream: str  # "tool" | "assistant"
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class InboundMessage:
    """Surface-agnostic inbound message handed to the pipeline by an adapter."""

    body: str
    sender: str
    chat_type: str = "direct"  # "direct" | "group"
    group_id: str | None = None
    surface: str = ""
    # Explicit session target (e.g. a command aimed at another session)
    target_session_key: str | None = None
