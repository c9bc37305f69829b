"""RPC runner — one agent subprocess per job.

Builds the agent argv, writes the prompt to stdin, streams stdout lines to
a callback as they arrive, and terminates the process on timeout.

This package is split into focused submodules:
  _argv     — argv templating, session/thinking flags, prompt extraction
  _process  — spawn, line streaming, stderr capture, timeout termination
"""

from agentrelay.rpc_runner._argv import (
    AgentInvocation,
    TemplateContext,
    apply_template,
    build_agent_argv,
)
from agentrelay.rpc_runner._process import (
    RPC_MODE,
    OnSpawn,
    RunHandle,
    encode_prompt,
    force_rpc_mode,
    read_stderr,
    run_rpc,
)

__all__ = [
    "RPC_MODE",
    "AgentInvocation",
    "OnSpawn",
    "RunHandle",
    "TemplateContext",
    "apply_template",
    "build_agent_argv",
    "encode_prompt",
    "force_rpc_mode",
    "read_stderr",
    "run_rpc",
]
