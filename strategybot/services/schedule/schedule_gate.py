"""Trading-window gate.

Window semantics per schedule type:
- hourly:  minute-of-hour range taken from start/end time, every hour
- daily:   time-of-day range, may wrap past midnight
- weekly:  daily window + days_of_week
- monthly: daily window + day_of_month
- custom:  daily window + days_of_week when given

start/end date bounds apply to every type; an exclusion date always blocks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional

from strategybot.models.bot_config import Schedule, ScheduleType


@dataclass(frozen=True)
class ScheduleDecision:
    allowed: bool
    reason: str = "ok"


ALWAYS_OPEN = ScheduleDecision(True, "no_schedule")


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def _in_range(value: int, start: int, end: int) -> bool:
    if start <= end:
        return start <= value <= end
    return value >= start or value <= end


def _same_zone(bound: datetime, now: datetime) -> datetime:
    if bound.tzinfo is None and now.tzinfo is not None:
        return bound.replace(tzinfo=now.tzinfo)
    if bound.tzinfo is not None and now.tzinfo is None:
        return bound.replace(tzinfo=None)
    return bound


def js_weekday(now: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return now.isoweekday() % 7


class ScheduleGate:
    def __init__(self, schedule: Optional[Schedule]) -> None:
        self.schedule = schedule

    def check(self, now: datetime) -> ScheduleDecision:
        s = self.schedule
        if s is None or not s.is_enabled:
            return ALWAYS_OPEN

        today = now.date()
        for exclusion in s.exclusions:
            if exclusion.date == today:
                return ScheduleDecision(False, f"excluded: {exclusion.reason or today.isoformat()}")

        if s.start_date and now < _same_zone(s.start_date, now):
            return ScheduleDecision(False, "before_start_date")
        if s.end_date and now > _same_zone(s.end_date, now):
            return ScheduleDecision(False, "after_end_date")

        if s.type == ScheduleType.HOURLY:
            if s.start_time and s.end_time and not _in_range(now.minute, s.start_time.minute, s.end_time.minute):
                return ScheduleDecision(False, "outside_hourly_window")
        elif s.start_time and s.end_time:
            if not _in_range(_minutes(now.time()), _minutes(s.start_time), _minutes(s.end_time)):
                return ScheduleDecision(False, "outside_time_window")

        if s.type == ScheduleType.MONTHLY and s.day_of_month and now.day != s.day_of_month:
            return ScheduleDecision(False, "wrong_day_of_month")

        if s.days_of_week and js_weekday(now) not in s.days_of_week:
            return ScheduleDecision(False, "wrong_day_of_week")

        return ScheduleDecision(True)
