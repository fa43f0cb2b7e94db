"""Polling cadence selection.

Drops are expected inside a weekly "hot window" (configured weekdays, hour
range ``[start, end)``). The monitor polls hardest inside the window, ramps
up shortly before it, stays alert around its edges and idles otherwise.
All comparisons use the whole hour of the local time; minutes are ignored.

The window must not wrap past midnight (``config.validate`` enforces
``start < end``), and the prep and standby margins are measured within the
same calendar day. With ``end=23`` the hour after midnight belongs to a
different weekday and is snooze, not standby.
"""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass
from typing import FrozenSet, Optional

import pytz

from . import config

THROTTLE = "throttle"
PREP = "prep"
STANDBY = "standby"
SNOOZE = "snooze"

# Hours either side of a window boundary that count as standby.
STANDBY_MARGIN_HOURS = 2


@dataclass(frozen=True)
class ScheduleSettings:
    hot_weekdays: FrozenSet[int]
    start_hour: int
    end_hour: int
    prep_lead_hours: int
    throttle_interval: float
    standby_interval: float
    snooze_interval: float
    timezone: str = "UTC"

    @classmethod
    def from_config(cls) -> "ScheduleSettings":
        return cls(
            hot_weekdays=frozenset(config.HOT_WEEKDAYS),
            start_hour=config.HOT_WINDOW_START_HOUR,
            end_hour=config.HOT_WINDOW_END_HOUR,
            prep_lead_hours=config.PREP_LEAD_HOURS,
            throttle_interval=config.THROTTLE_INTERVAL_SECONDS,
            standby_interval=config.STANDBY_INTERVAL_SECONDS,
            snooze_interval=config.SNOOZE_INTERVAL_SECONDS,
            timezone=config.MONITOR_TIMEZONE,
        )


@dataclass(frozen=True)
class Schedule:
    interval: float
    mode: str


def _localize(now: _dt.datetime, tz_name: str) -> _dt.datetime:
    tz = pytz.timezone(tz_name)
    if now.tzinfo is None:
        return tz.localize(now)
    return now.astimezone(tz)


def select_schedule(now: _dt.datetime, settings: ScheduleSettings) -> Schedule:
    """Return the polling interval and mode for ``now``.

    Naive datetimes are taken to already be in ``settings.timezone``.
    """
    local = _localize(now, settings.timezone)
    hour = local.hour

    if local.weekday() in settings.hot_weekdays:
        start, end = settings.start_hour, settings.end_hour

        if start <= hour < end:
            return Schedule(settings.throttle_interval, THROTTLE)

        hours_until_start = start - hour
        if settings.prep_lead_hours > 0 and 0 < hours_until_start <= settings.prep_lead_hours:
            scaled = settings.standby_interval * hours_until_start / settings.prep_lead_hours
            interval = min(settings.standby_interval, max(settings.throttle_interval, scaled))
            return Schedule(interval, PREP)

        if abs(hour - start) <= STANDBY_MARGIN_HOURS or abs(hour - end) <= STANDBY_MARGIN_HOURS:
            return Schedule(settings.standby_interval, STANDBY)

    return Schedule(settings.snooze_interval, SNOOZE)


def current_schedule(settings: Optional[ScheduleSettings] = None) -> Schedule:
    settings = settings or ScheduleSettings.from_config()
    return select_schedule(_dt.datetime.now(pytz.utc), settings)


__all__ = [
    "THROTTLE",
    "PREP",
    "STANDBY",
    "SNOOZE",
    "ScheduleSettings",
    "Schedule",
    "select_schedule",
    "current_schedule",
]
