"""Tests for next-run computation."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from agentrelay.cron import AtSchedule, CronExprSchedule, EverySchedule, compute_next_run_at_ms


def _ms(*args: int) -> int:
    return int(datetime(*args, tzinfo=UTC).timestamp() * 1000)


class TestAtSchedule:
    def test_future(self):
        assert compute_next_run_at_ms(AtSchedule(at_ms=5_000), 1_000) == 5_000

    def test_missed_one_shot_still_due(self):
        assert compute_next_run_at_ms(AtSchedule(at_ms=5_000), 9_000) == 5_000

    def test_already_ran(self):
        assert compute_next_run_at_ms(AtSchedule(at_ms=5_000), 9_000, last_run_at_ms=5_000) is None


class TestEverySchedule:
    def test_every_ms(self):
        assert EverySchedule(amount=3, unit="hours").every_ms == 3 * 3_600_000

    def test_amount_must_be_positive(self):
        with pytest.raises(ValidationError):
            EverySchedule(amount=0)

    def test_from_anchor(self):
        schedule = EverySchedule(amount=1, unit="minutes", anchor_ms=0)
        assert compute_next_run_at_ms(schedule, 90_000) == 120_000

    def test_strictly_after_now(self):
        schedule = EverySchedule(amount=1, unit="minutes", anchor_ms=0)
        assert compute_next_run_at_ms(schedule, 120_000) == 180_000

    def test_last_run_takes_precedence(self):
        schedule = EverySchedule(amount=10, unit="seconds", anchor_ms=0)
        assert compute_next_run_at_ms(schedule, 25_000, last_run_at_ms=23_000) == 33_000

    def test_zero_last_run_is_a_real_run(self):
        schedule = EverySchedule(amount=10, unit="seconds", anchor_ms=5_000)
        assert compute_next_run_at_ms(schedule, 25_000, last_run_at_ms=0) == 30_000

    def test_future_anchor(self):
        schedule = EverySchedule(amount=10, unit="seconds", anchor_ms=50_000)
        assert compute_next_run_at_ms(schedule, 1_000) == 50_000

    def test_loaded_at_used_without_anchor(self):
        schedule = EverySchedule(amount=5, unit="seconds")
        assert compute_next_run_at_ms(schedule, 12_000, loaded_at_ms=10_000) == 15_000


class TestCronExprSchedule:
    def test_utc(self):
        schedule = CronExprSchedule(expr="0 9 * * *", tz="UTC")
        now = _ms(2026, 1, 5, 8, 0)
        assert compute_next_run_at_ms(schedule, now) == _ms(2026, 1, 5, 9, 0)

    def test_named_timezone(self):
        schedule = CronExprSchedule(expr="0 9 * * *", tz="America/New_York")
        now = _ms(2026, 1, 5, 8, 0)
        # 09:00 EST is 14:00 UTC.
        assert compute_next_run_at_ms(schedule, now) == _ms(2026, 1, 5, 14, 0)

    def test_settings_timezone_by_default(self):
        schedule = CronExprSchedule(expr="30 * * * *")
        assert compute_next_run_at_ms(schedule, _ms(2026, 1, 5, 8, 40)) == _ms(2026, 1, 5, 9, 30)

    def test_unknown_timezone_falls_back_to_utc(self):
        schedule = CronExprSchedule(expr="0 9 * * *", tz="Mars/Olympus")
        assert compute_next_run_at_ms(schedule, _ms(2026, 1, 5, 8, 0)) == _ms(2026, 1, 5, 9, 0)

    def test_invalid_expression(self):
        assert compute_next_run_at_ms(CronExprSchedule(expr="not a cron"), 0) is None
