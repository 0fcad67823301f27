"""
Cron schedule parsing.

Accepts 5-field cron, 6-field cron with a leading seconds field, the
usual @macros, and shorthand phrases such as "every 5 minutes",
"every day at 9am" or "every weekday at 18:30". Everything is normalised
to cron fields and evaluated with croniter, in naive UTC.
"""

import re
from datetime import datetime

from croniter import croniter

from dbqueue.errors import InvalidScheduleError

MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

DAYS = {
    "sunday": "0",
    "monday": "1",
    "tuesday": "2",
    "wednesday": "3",
    "thursday": "4",
    "friday": "5",
    "saturday": "6",
    "weekday": "1-5",
    "weekend": "0,6",
}

UNITS = {
    "second": "second",
    "seconds": "second",
    "minute": "minute",
    "minutes": "minute",
    "min": "minute",
    "mins": "minute",
    "hour": "hour",
    "hours": "hour",
    "day": "day",
    "days": "day",
    "week": "week",
    "weeks": "week",
    "month": "month",
    "months": "month",
    "year": "year",
    "years": "year",
}

# Largest step a cron field can express for each repeating unit
STEP_LIMITS = {"second": 59, "minute": 59, "hour": 23, "day": 31, "month": 12}

EVERY_PATTERN = re.compile(
    r"^every\s+(?:(?P<count>\d+)\s+)?(?P<unit>[a-z]+)"
    r"(?:\s+at\s+(?P<time>.+))?$"
)
TIME_PATTERN = re.compile(r"^(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>am|pm)?$")


class CronSchedule:
    """
    A parsed recurring schedule.

    Attributes:
        source: The schedule as written.
        expression: The normalised cron expression. Six fields when a
            seconds field is present, in croniter's order (seconds last).
    """

    def __init__(self, source: str):
        self.source = source
        self.expression = self.normalize(source)
        if not croniter.is_valid(self.expression):
            raise InvalidScheduleError(f"Invalid recurring schedule: {source!r}")

    @classmethod
    def parse(cls, source: str) -> "CronSchedule":
        return cls(source)

    @classmethod
    def normalize(cls, source: str) -> str:
        """
        Translate a schedule into a croniter expression.

        Raises:
            InvalidScheduleError: If the schedule cannot be understood.
        """
        text = " ".join(source.strip().lower().split())
        if not text:
            raise InvalidScheduleError("Empty recurring schedule")

        if text in MACROS:
            return MACROS[text]

        fields = text.split(" ")
        if text[0].isdigit() or text[0] in "*/":
            if len(fields) == 5:
                return text
            if len(fields) == 6:
                # Leading seconds field goes last for croniter
                return " ".join(fields[1:] + fields[:1])
            raise InvalidScheduleError(f"Invalid recurring schedule: {source!r}")

        return cls._from_phrase(text, source)

    @classmethod
    def _from_phrase(cls, text: str, source: str) -> str:
        match = EVERY_PATTERN.match(text)
        if match is None:
            raise InvalidScheduleError(f"Invalid recurring schedule: {source!r}")

        count = int(match.group("count") or 1)
        word = match.group("unit")
        at = match.group("time")
        if count < 1:
            raise InvalidScheduleError(f"Invalid recurring schedule: {source!r}")

        if word in DAYS:
            if count != 1:
                raise InvalidScheduleError(f"Invalid recurring schedule: {source!r}")
            hour, minute = cls._parse_time(at, source) if at else (0, 0)
            return f"{minute} {hour} * * {DAYS[word]}"

        unit = UNITS.get(word)
        if unit is None:
            raise InvalidScheduleError(f"Invalid recurring schedule: {source!r}")
        if count > STEP_LIMITS.get(unit, count):
            raise InvalidScheduleError(
                f"Invalid recurring schedule: {source!r} (every {count} {unit}s does not fit a cron field)"
            )

        step = "*" if count == 1 else f"*/{count}"
        if unit in ("second", "minute", "hour") and at:
            raise InvalidScheduleError(f"Invalid recurring schedule: {source!r}")

        if unit == "second":
            return f"* * * * * {step}"
        if unit == "minute":
            return f"{step} * * * *"
        if unit == "hour":
            return f"0 {step} * * *"

        hour, minute = cls._parse_time(at, source) if at else (0, 0)
        if unit == "day":
            return f"{minute} {hour} {step} * *"
        if unit == "week":
            if count != 1:
                raise InvalidScheduleError(f"Invalid recurring schedule: {source!r}")
            return f"{minute} {hour} * * 0"
        if unit == "month":
            return f"{minute} {hour} 1 {step} *"
        if count != 1:
            raise InvalidScheduleError(f"Invalid recurring schedule: {source!r}")
        return f"{minute} {hour} 1 1 *"

    @staticmethod
    def _parse_time(text: str, source: str) -> tuple[int, int]:
        text = text.strip()
        if text == "noon":
            return 12, 0
        if text == "midnight":
            return 0, 0

        match = TIME_PATTERN.match(text)
        if match is None:
            raise InvalidScheduleError(f"Invalid time in recurring schedule: {source!r}")

        hour = int(match.group("hour"))
        minute = int(match.group("minute") or 0)
        meridiem = match.group("meridiem")
        if meridiem:
            if not 1 <= hour <= 12:
                raise InvalidScheduleError(f"Invalid time in recurring schedule: {source!r}")
            hour = hour % 12 + (12 if meridiem == "pm" else 0)

        if hour > 23 or minute > 59:
            raise InvalidScheduleError(f"Invalid time in recurring schedule: {source!r}")
        return hour, minute

    def next_time(self, after: datetime) -> datetime:
        """First occurrence strictly after the given time."""
        return croniter(self.expression, after).get_next(datetime)

    def previous_time(self, before: datetime) -> datetime:
        """Last occurrence strictly before the given time."""
        return croniter(self.expression, before).get_prev(datetime)

    def __repr__(self) -> str:
        return f"CronSchedule({self.source!r} -> {self.expression!r})"
