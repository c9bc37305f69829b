"""Entry point for `python -m agentrelay` / `agentrelay`.

Subcommands:
    agentrelay ask TEXT                 Run one message through the agent
    agentrelay cron list                List cron jobs
    agentrelay cron add ...             Add a cron job
    agentrelay cron run ID [--force]    Run a job now
    agentrelay cron remove ID           Delete a job
    agentrelay cron toggle ID           Enable/disable a job
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import UTC, datetime
from typing import Any

from agentrelay.config import get_settings
from agentrelay.errors import AgentRelayError
from agentrelay.logger import configure_logging
from agentrelay.types import InboundMessage, ReplyPayload


def _print_payload(payload: ReplyPayload) -> None:
    if payload.text:
        print(payload.text)
    for url in payload.media_urls or []:
        print(f"[media] {url}")


async def _ask(args: argparse.Namespace) -> int:
    from agentrelay.inbound import build_pipeline_deps, get_reply

    deps = build_pipeline_deps()
    message = InboundMessage(body=args.text, sender=args.sender, surface="cli")
    payloads = await get_reply(message, deps, on_partial_reply=_print_payload)
    for payload in payloads:
        _print_payload(payload)
    await deps.queue.shutdown()
    return 0


def _format_ms(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, UTC).isoformat(timespec="seconds")


def _schedule_from_args(args: argparse.Namespace) -> dict[str, Any]:
    if args.at:
        at = datetime.fromisoformat(args.at)
        if at.tzinfo is None:
            at = at.replace(tzinfo=UTC)
        return {"kind": "at", "atMs": int(at.timestamp() * 1000)}
    if args.every:
        amount, _, unit = args.every.partition(" ")
        return {"kind": "every", "amount": int(amount), "unit": unit or "minutes"}
    return {"kind": "cron", "expr": args.cron, "tz": args.tz}


async def _cron(args: argparse.Namespace) -> int:
    from agentrelay.cron import CronService
    from agentrelay.inbound import PipelineCronDeps, build_pipeline_deps

    deps = build_pipeline_deps()
    service = CronService(PipelineCronDeps(deps))

    match args.cron_command:
        case "list":
            for job in await service.list_jobs(include_disabled=True):
                state = "on " if job.enabled else "off"
                print(
                    f"{job.id}  [{state}]  {job.name}  "
                    f"next={_format_ms(job.state.next_run_at_ms)}  "
                    f"last={job.state.last_status or '-'}"
                )
        case "add":
            if args.system:
                payload: dict[str, Any] = {"kind": "systemEvent", "text": args.message}
            else:
                payload = {"kind": "agentTurn", "message": args.message, "deliver": args.deliver}
            job = await service.add(
                name=args.name,
                description=args.description,
                schedule=_schedule_from_args(args),
                payload=payload,
                delete_after_run=args.delete_after_run,
            )
            print(json.dumps(job.to_json(), indent=2, ensure_ascii=False))
        case "run":
            outcome = await service.run(args.job_id, force=args.force)
            print(f"{outcome.status}{f': {outcome.error}' if outcome.error else ''}")
            if outcome.summary:
                print(outcome.summary)
        case "remove":
            if not await service.remove(args.job_id):
                print(f"No such job: {args.job_id}", file=sys.stderr)
                return 1
        case "toggle":
            job = await service.toggle(args.job_id)
            print(f"{job.id} {'enabled' if job.enabled else 'disabled'}")

    await deps.queue.shutdown()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Relay chat messages to a coding agent",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Run one message through the agent")
    ask.add_argument("text")
    ask.add_argument("--sender", default="cli", help="Sender id used for the session key")

    cron = sub.add_parser("cron", help="Manage cron jobs")
    cron_sub = cron.add_subparsers(dest="cron_command", required=True)
    cron_sub.add_parser("list", help="List jobs")

    add = cron_sub.add_parser("add", help="Add a job")
    add.add_argument("--name", required=True)
    add.add_argument("--description")
    add.add_argument("--message", required=True, help="Prompt (or system event text)")
    add.add_argument("--system", action="store_true", help="Enqueue a system event instead of an agent turn")
    add.add_argument("--deliver", action="store_true")
    add.add_argument("--delete-after-run", action="store_true")
    when = add.add_mutually_exclusive_group(required=True)
    when.add_argument("--at", help="ISO timestamp for a one-shot job")
    when.add_argument("--every", help='Interval, e.g. "15 minutes"')
    when.add_argument("--cron", help="Cron expression")
    add.add_argument("--tz", help="Timezone for --cron")

    run = cron_sub.add_parser("run", help="Run a job now")
    run.add_argument("job_id")
    run.add_argument("--force", action="store_true", help="Run even if not due")

    for name in ("remove", "toggle"):
        p = cron_sub.add_parser(name)
        p.add_argument("job_id")

    return parser


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    configure_logging(get_settings().logging.level)

    try:
        match args.command:
            case "ask":
                code = asyncio.run(_ask(args))
            case "cron":
                code = asyncio.run(_cron(args))
            case _:
                code = 2
    except (AgentRelayError, KeyError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
