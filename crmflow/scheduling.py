"""Time arithmetic for wait steps and working-hours windows."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from .models import WaitConfig, WorkflowSettings

UNIT_SECONDS = {
    "minutes": 60,
    "hours": 60 * 60,
    "days": 24 * 60 * 60,
    "weeks": 7 * 24 * 60 * 60,
}


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def wait_until(config: WaitConfig, now: datetime, settings: WorkflowSettings) -> datetime:
    """Return when an enrollment parked on a wait step becomes due again."""
    now = ensure_aware(now)
    if config.duration is not None:
        return now + timedelta(seconds=config.duration * UNIT_SECONDS[config.unit])
    if config.until is not None:
        return max(ensure_aware(config.until), now)

    tz = ZoneInfo(settings.timezone)
    at = _parse_hhmm(config.next_business_day_at or "09:00")
    day = now.astimezone(tz).date() + timedelta(days=1)
    while day.isoweekday() not in settings.working_hours.days:
        day += timedelta(days=1)
    return datetime.combine(day, at, tzinfo=tz).astimezone(timezone.utc)


def within_working_hours(when: datetime, settings: WorkflowSettings) -> bool:
    if not settings.working_hours_only:
        return True
    hours = settings.working_hours
    local = ensure_aware(when).astimezone(ZoneInfo(settings.timezone))
    start, end = _parse_hhmm(hours.start), _parse_hhmm(hours.end)
    return local.isoweekday() in hours.days and start <= local.time() < end


def next_working_time(when: datetime, settings: WorkflowSettings) -> datetime:
    """Return ``when`` if it falls in working hours, else the next window start."""
    when = ensure_aware(when)
    if within_working_hours(when, settings):
        return when

    hours = settings.working_hours
    tz = ZoneInfo(settings.timezone)
    local = when.astimezone(tz)
    start = _parse_hhmm(hours.start)
    day = local.date()
    if local.isoweekday() not in hours.days or local.time() >= start:
        day += timedelta(days=1)
    while day.isoweekday() not in hours.days:
        day += timedelta(days=1)
    return datetime.combine(day, start, tzinfo=tz).astimezone(timezone.utc)
