"""Cron and timezone helpers.

Next-fire computation happens in the schedule's IANA timezone (so DST
transitions are honored) and the result is returned in UTC.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from core.exceptions import InvalidCronExpression, InvalidTimezone, ValidationError

CRON_FIELDS = 5


def validate_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name, raising InvalidTimezone."""
    if not name or not isinstance(name, str):
        raise InvalidTimezone(str(name))
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidTimezone(name)


def validate_cron(expression: str) -> str:
    """Check a standard 5-field cron expression, raising InvalidCronExpression."""
    if not isinstance(expression, str):
        raise InvalidCronExpression(str(expression))
    normalized = " ".join(expression.split())
    if len(normalized.split(" ")) != CRON_FIELDS or not croniter.is_valid(normalized):
        raise InvalidCronExpression(expression)
    return normalized


def next_cron_fire(expression: str, tz_name: str, after: datetime) -> datetime:
    """First fire time strictly after `after`, as an aware UTC datetime."""
    tz = validate_timezone(tz_name)
    expression = validate_cron(expression)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local_start = after.astimezone(tz)
    next_local = croniter(expression, local_start).get_next(datetime)
    return next_local.astimezone(timezone.utc)


def upcoming_cron_fires(expression: str, tz_name: str, after: datetime, count: int) -> list[datetime]:
    fires = []
    current = after
    for _ in range(count):
        current = next_cron_fire(expression, tz_name, current)
        fires.append(current)
    return fires


# ─── Builder ───────────────────────────────────────────────────

def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not isinstance(value, int) or not low <= value <= high:
        raise ValidationError(f"{name} must be between {low}-{high}")


class ScheduleBuilder:
    """Builds common cron expressions.

    >>> ScheduleBuilder.daily_at(9, 30)
    '30 9 * * *'
    """

    DESCRIPTIONS = {
        "0 0 * * *": "Daily at midnight",
        "0 9 * * *": "Daily at 9:00 AM",
        "0 0 * * 0": "Weekly on Sunday at midnight",
        "0 0 1 * *": "Monthly on the 1st at midnight",
        "0 * * * *": "Every hour",
        "*/5 * * * *": "Every 5 minutes",
        "*/10 * * * *": "Every 10 minutes",
        "*/15 * * * *": "Every 15 minutes",
        "*/30 * * * *": "Every 30 minutes",
        "0 9-17 * * 1-5": "Hourly during business hours (9 AM - 5 PM, Mon-Fri)",
        "0 9 * * 1-5": "Daily at 9 AM on weekdays",
        "0 0 * * 0,6": "Daily at midnight on weekends",
    }

    @staticmethod
    def every_minutes(minutes: int) -> str:
        _check_range("Minutes", minutes, 1, 59)
        return f"*/{minutes} * * * *"

    @staticmethod
    def every_hours(hours: int) -> str:
        _check_range("Hours", hours, 1, 23)
        return f"0 */{hours} * * *"

    @staticmethod
    def hourly() -> str:
        return "0 * * * *"

    @staticmethod
    def daily_at(hour: int, minute: int = 0) -> str:
        _check_range("Hour", hour, 0, 23)
        _check_range("Minute", minute, 0, 59)
        return f"{minute} {hour} * * *"

    @staticmethod
    def weekly_on(day_of_week: int, hour: int = 0, minute: int = 0) -> str:
        """`day_of_week`: 0 = Sunday ... 6 = Saturday."""
        _check_range("Day of week", day_of_week, 0, 6)
        _check_range("Hour", hour, 0, 23)
        _check_range("Minute", minute, 0, 59)
        return f"{minute} {hour} * * {day_of_week}"

    @staticmethod
    def monthly_on(day_of_month: int, hour: int = 0, minute: int = 0) -> str:
        _check_range("Day of month", day_of_month, 1, 31)
        _check_range("Hour", hour, 0, 23)
        _check_range("Minute", minute, 0, 59)
        return f"{minute} {hour} {day_of_month} * *"

    @staticmethod
    def weekdays_at(hour: int = 9, minute: int = 0) -> str:
        _check_range("Hour", hour, 0, 23)
        _check_range("Minute", minute, 0, 59)
        return f"{minute} {hour} * * 1-5"

    @staticmethod
    def business_hours() -> str:
        return "0 9-17 * * 1-5"

    @staticmethod
    def is_valid(expression: str) -> bool:
        try:
            validate_cron(expression)
        except InvalidCronExpression:
            return False
        return True

    @classmethod
    def describe(cls, expression: str) -> str:
        normalized = " ".join(expression.split())
        return cls.DESCRIPTIONS.get(normalized, f"Custom schedule: {normalized}")

    @staticmethod
    def next_runs(expression: str, tz_name: str = "UTC", count: int = 5, after: Optional[datetime] = None) -> list[datetime]:
        return upcoming_cron_fires(expression, tz_name, after or datetime.now(timezone.utc), count)
