"""Next-run computation for cron schedules."""

from __future__ import annotations

import math
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from agentrelay.config import get_settings
from agentrelay.cron.types import AtSchedule, CronExprSchedule, CronSchedule, EverySchedule
from agentrelay.logger import logger


def compute_next_run_at_ms(
    schedule: CronSchedule,
    now_ms: int,
    *,
    last_run_at_ms: int | None = None,
    loaded_at_ms: int | None = None,
) -> int | None:
    """Next due instant in epoch ms, or None when the schedule won't fire again.

    An ``at`` instant that has not run yet stays due even once it is in the
    past, so a one-shot missed while the service was down fires on start.
    ``every`` intervals count from the last run, else the anchor, else the
    time the store was loaded; the result is the first multiple strictly
    after *now_ms*.
    """
    match schedule:
        case AtSchedule():
            if last_run_at_ms is not None and last_run_at_ms >= schedule.at_ms:
                return None
            return schedule.at_ms

        case EverySchedule():
            every = schedule.every_ms
            base = next(
                (
                    candidate
                    for candidate in (last_run_at_ms, schedule.anchor_ms, loaded_at_ms)
                    if candidate is not None
                ),
                now_ms,
            )
            if base > now_ms:
                return base
            steps = max(1, math.ceil((now_ms - base) / every))
            next_ms = base + steps * every
            if next_ms <= now_ms:
                next_ms += every
            return next_ms

        case CronExprSchedule():
            tz_name = schedule.tz or get_settings().timezone
            try:
                tz = ZoneInfo(tz_name)
            except (ZoneInfoNotFoundError, ValueError):
                logger.warning("Unknown cron timezone, using UTC", tz=tz_name)
                tz = ZoneInfo("UTC")
            start = datetime.fromtimestamp(now_ms / 1000, tz)
            try:
                cron = croniter(schedule.expr, start)
                nxt = cron.get_next(datetime)
            except (ValueError, KeyError) as exc:
                logger.warning("Invalid cron expression", expr=schedule.expr, err=str(exc))
                return None
            return int(nxt.timestamp() * 1000)

    return None
