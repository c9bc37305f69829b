"""Agent argv construction — templating, session flags, thinking flag.

The prompt body is never passed on the command line: in RPC mode it is
written to stdin, so the ``{{Body}}`` part is lifted out of the command and
returned separately.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from agentrelay.config import AgentConfig, ThinkLevel
from agentrelay.errors import AgentConfigError
from agentrelay.logger import logger
from agentrelay.rpc_runner._process import force_rpc_mode

_TEMPLATE_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_BODY_TEMPLATE_RE = re.compile(r"\{\{\s*Body(Stripped)?\s*\}\}")


@dataclass
class TemplateContext:
    """Values available to ``{{Key}}`` placeholders in the agent command."""

    body: str = ""
    body_stripped: str | None = None
    session_id: str | None = None
    sender: str | None = None
    surface: str | None = None
    extra: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, str]:
        values = {
            "Body": self.body,
            "BodyStripped": self.body_stripped if self.body_stripped is not None else self.body,
            "SessionId": self.session_id or "",
            "From": self.sender or "",
            "Surface": self.surface or "",
        }
        values.update(self.extra)
        return values


def apply_template(template: str, ctx: TemplateContext) -> str:
    """Replace ``{{Key}}`` placeholders; unknown keys render as empty strings."""
    values = ctx.as_dict()
    return _TEMPLATE_RE.sub(lambda m: values.get(m.group(1), ""), template)


@dataclass
class AgentInvocation:
    argv: list[str]
    prompt: str
    cwd: str | None = None


def _has_flag(argv: list[str], flag: str) -> bool:
    return any(part == flag or part.startswith(f"{flag}=") for part in argv)


def _session_args(
    cfg: AgentConfig,
    ctx: TemplateContext,
    *,
    is_new_session: bool,
    sessions_dir: Path,
) -> list[str]:
    default = ["--session", str(sessions_dir / "{{SessionId}}.jsonl")]
    raw = cfg.session_args_new if is_new_session else cfg.session_args_resume
    args = [apply_template(part, ctx) for part in (raw if raw is not None else default)]

    # Session files are written by the agent; make sure the directory exists.
    if "--session" in args:
        idx = args.index("--session")
        if idx + 1 < len(args) and "://" not in args[idx + 1]:
            try:
                Path(args[idx + 1]).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.warning("Could not create session directory", path=args[idx + 1], err=str(exc))

    # Resuming needs --continue, otherwise the agent starts from a blank history.
    if not is_new_session and "--continue" not in args:
        args.append("--continue")
    return args


def build_agent_argv(
    cfg: AgentConfig,
    ctx: TemplateContext,
    *,
    sessions_dir: Path,
    is_new_session: bool,
    is_first_turn: bool,
    system_sent: bool,
    think_level: ThinkLevel | None = None,
) -> AgentInvocation:
    """Build the argv and stdin prompt for one agent run.

    Raises AgentConfigError when the configured command is empty.
    """
    if not cfg.command:
        raise AgentConfigError("agent.command is required")

    body_index = next(
        (i for i, part in enumerate(cfg.command) if _BODY_TEMPLATE_RE.search(part)),
        None,
    )
    argv = [apply_template(part, ctx) for part in cfg.command]

    if cfg.template and (not cfg.send_system_once or is_first_turn or not system_sent):
        argv.insert(1, apply_template(cfg.template, ctx))
        if body_index is not None and body_index >= 1:
            body_index += 1

    prompt = argv.pop(body_index) if body_index is not None else ""
    if not prompt.strip():
        prompt = ctx.body or (ctx.body_stripped or "")

    session_args: list[str] = []
    if ctx.session_id:
        session_args = _session_args(
            cfg, ctx, is_new_session=is_new_session, sessions_dir=sessions_dir
        )

    before_body = argv + session_args if cfg.session_args_before_body else argv
    after_body = [] if cfg.session_args_before_body else session_args

    level = think_level or cfg.think_level
    if level != "off" and not _has_flag(before_body + after_body, "--thinking"):
        before_body = [*before_body, "--thinking", level]

    cwd = str(Path(cfg.cwd).expanduser()) if cfg.cwd and cfg.cwd.strip() else None
    return AgentInvocation(
        argv=force_rpc_mode(before_body + after_body),
        prompt=prompt,
        cwd=cwd,
    )
