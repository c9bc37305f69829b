"""Normalization of raw cron job records loaded from disk.

These work on the raw JSON dicts, before validation, and mutate them in
place. Each migrator returns True when it changed something so the loader
knows the file needs rewriting.
"""

from __future__ import annotations

from typing import Any

from agentrelay.cron.types import UNIT_MS

_NAME_MAX_CHARS = 60

_PAYLOAD_KIND_ALIASES = {
    "system_event": "systemEvent",
    "systemevent": "systemEvent",
    "system": "systemEvent",
    "agent_turn": "agentTurn",
    "agentturn": "agentTurn",
    "agent": "agentTurn",
}


def normalize_optional_text(value: Any) -> str | None:
    """Trimmed string, or None for non-strings and blank strings."""
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _truncate(text: str) -> str:
    if len(text) <= _NAME_MAX_CHARS:
        return text
    return text[: _NAME_MAX_CHARS - 1].rstrip() + "…"


def infer_legacy_name(schedule: Any, payload: Any) -> str:
    """Derive a display name for a job that was saved without one."""
    if isinstance(payload, dict):
        text = payload.get("text") or payload.get("message")
        if isinstance(text, str):
            first_line = next((line.strip() for line in text.splitlines() if line.strip()), "")
            if first_line:
                return _truncate(first_line)

    if isinstance(schedule, dict):
        kind = schedule.get("kind")
        if kind == "cron" and isinstance(schedule.get("expr"), str):
            return f"Cron: {schedule['expr'].strip()}"
        if kind == "every":
            amount, unit = schedule.get("amount"), schedule.get("unit")
            if amount and unit:
                return f"Every {amount} {unit}"
            if schedule.get("everyMs"):
                return f"Every {schedule['everyMs']}ms"
        if kind == "at":
            return "One-shot job"
    return "Cron job"


def migrate_legacy_payload(payload: dict[str, Any]) -> bool:
    """Bring an old payload shape up to the current one, in place."""
    mutated = False

    kind = payload.get("kind")
    if isinstance(kind, str) and kind not in ("systemEvent", "agentTurn"):
        alias = _PAYLOAD_KIND_ALIASES.get(kind.lower())
        if alias:
            payload["kind"] = alias
            mutated = True
    elif kind is None:
        payload["kind"] = "systemEvent" if "text" in payload and "message" not in payload else "agentTurn"
        mutated = True

    if payload.get("kind") == "systemEvent" and "text" not in payload and "message" in payload:
        payload["text"] = payload.pop("message")
        mutated = True
    if payload.get("kind") == "agentTurn" and "message" not in payload and "text" in payload:
        payload["message"] = payload.pop("text")
        mutated = True

    # Older agent turns targeted a "provider" rather than a channel.
    if "provider" in payload:
        provider = payload.pop("provider")
        if payload.get("channel") is None and isinstance(provider, str):
            payload["channel"] = provider
        mutated = True

    if "timeout_seconds" in payload:
        payload.setdefault("timeoutSeconds", payload.pop("timeout_seconds"))
        mutated = True
    return mutated


def _best_unit(every_ms: int) -> tuple[int, str]:
    for unit in ("days", "hours", "minutes", "seconds"):
        size = UNIT_MS[unit]
        if every_ms % size == 0:
            return every_ms // size, unit
    # Not a whole number of seconds; round to the nearest one.
    return max(1, round(every_ms / 1000)), "seconds"


def migrate_legacy_schedule(schedule: dict[str, Any]) -> bool:
    """Convert ``everyMs`` intervals and snake_case keys, in place."""
    mutated = False
    for old, new in (("at_ms", "atMs"), ("anchor_ms", "anchorMs"), ("every_ms", "everyMs")):
        if old in schedule:
            schedule.setdefault(new, schedule.pop(old))
            mutated = True

    if schedule.get("kind") == "every" and "everyMs" in schedule:
        every_ms = schedule.pop("everyMs")
        if isinstance(every_ms, int | float) and every_ms > 0:
            schedule["amount"], schedule["unit"] = _best_unit(int(every_ms))
        mutated = True
    return mutated
