"""Schedule parsing — duration literals, bare seconds, and cron expressions.

A schedule string normalizes to ``(cron_expr, interval)``:

- ``"30s"``, ``"1h30m"`` or ``"45"`` (seconds) → ``("@every 30s", timedelta(seconds=30))``
- ``"*/5 * * * *"``, ``"0 */5 * * * *"``, ``"@daily"`` → ``(schedule, timedelta(0))``

Six-field cron expressions carry a leading seconds field.  Numeric
day-of-week values follow crontab conventions (``0``/``7`` = Sunday), and
stepped weekday items such as ``*/2`` count from Sunday.

When both day-of-month and day-of-week are restricted, a day must match
both: ``0 0 0 13 * 5`` fires on Friday the 13th only, not on every 13th and
every Friday as crontab would.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from tickwork.scheduler.errors import InvalidScheduleError

EVERY_PREFIX = "@every "

# Longest units first so "ms" wins over "m"
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_INTEGER = re.compile(r"\d+")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_SHORTHANDS = {
    "@yearly": "0 0 0 1 1 *",
    "@annually": "0 0 0 1 1 *",
    "@monthly": "0 0 0 1 * *",
    "@weekly": "0 0 0 * * 0",
    "@daily": "0 0 0 * * *",
    "@midnight": "0 0 0 * * *",
    "@hourly": "0 0 * * * *",
}

_EVERY_KEYWORD = "@every"
_DOW_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")
_DOW_INDEX = {name: number for number, name in enumerate(_DOW_NAMES[:7])}


def _to_timedelta(seconds: float, text: str) -> timedelta:
    try:
        return timedelta(seconds=seconds)
    except OverflowError as exc:
        raise InvalidScheduleError(f"Duration out of range: {text!r}") from exc


def check_interval(interval: timedelta, schedule: str) -> None:
    """Reject an interval that is not positive or whose next run is past ``datetime.max``.

    Raises:
        InvalidScheduleError: If *interval* cannot be scheduled.
    """
    if interval <= timedelta(0):
        raise InvalidScheduleError(f"Interval must be positive: {schedule!r}")
    try:
        datetime.now(UTC) + interval
    except OverflowError as exc:
        raise InvalidScheduleError(f"Interval too long: {schedule!r}") from exc


def parse_duration(text: str) -> timedelta:
    """Parse a duration literal such as ``"30s"``, ``"1h30m"`` or ``"1.5h"``.

    Raises:
        InvalidScheduleError: If *text* is not a duration literal.
    """
    s = text.strip()
    sign = 1
    if s[:1] in ("+", "-"):
        sign = -1 if s[0] == "-" else 1
        s = s[1:]
    if not s:
        raise InvalidScheduleError(f"Invalid duration: {text!r}")

    total = 0.0
    pos = 0
    while pos < len(s):
        match = _DURATION_PART.match(s, pos)
        if match is None:
            raise InvalidScheduleError(f"Invalid duration: {text!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    return _to_timedelta(sign * total, text)


def format_duration(value: timedelta) -> str:
    """Render *value* in the compact form accepted by :func:`parse_duration`."""
    micros = value // timedelta(microseconds=1)
    if micros <= 0:
        return "0s"
    if micros < 1_000_000:
        if micros % 1000 == 0:
            return f"{micros // 1000}ms"
        return f"{micros}us"

    hours, rem = divmod(micros, 3_600_000_000)
    minutes, rem = divmod(rem, 60_000_000)
    seconds, fraction = divmod(rem, 1_000_000)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if fraction:
        parts.append(f"{seconds}.{fraction:06d}".rstrip("0") + "s")
    elif seconds:
        parts.append(f"{seconds}s")
    return "".join(parts)


def every(interval: timedelta) -> str:
    """Return the ``@every`` expression for a fixed interval."""
    return EVERY_PREFIX + format_duration(interval)


def _day_of_week_number(token: str) -> int | None:
    if token.isdigit():
        number = int(token)
        return number if number < len(_DOW_NAMES) else None
    return _DOW_INDEX.get(token.lower())


def _expand_day_of_week_step(item: str, base: str, step: str) -> str:
    # CronTrigger counts weekdays from Monday, so stepped items are listed out
    if not step.isdigit() or int(step) == 0:
        return item
    if base == "*":
        start, end = 0, 6
    else:
        first, dash, last = base.partition("-")
        start = _day_of_week_number(first)
        end = _day_of_week_number(last) if dash else 6
        if start is None or end is None or start > end:
            return item
    days = sorted({day % 7 for day in range(start, end + 1, int(step))})
    return ",".join(_DOW_NAMES[day] for day in days)


def _translate_day_of_week_item(item: str) -> str:
    base, sep, step = item.partition("/")
    if sep:
        return _expand_day_of_week_step(item, base, step)
    first, dash, last = item.partition("-")
    if not first.isdigit() or (dash and not last.isdigit()):
        return item
    start = int(first)
    end = int(last) if dash else None
    if start >= len(_DOW_NAMES) or (end is not None and end >= len(_DOW_NAMES)):
        # Out of range; let CronTrigger reject it
        return item
    if end is None:
        return _DOW_NAMES[start]
    if start == 0:
        # CronTrigger weeks start on Monday, so a Sunday-first range must be split
        if end == 0:
            return "sun"
        if end == 7:
            return "*"
        return f"sun,mon-{_DOW_NAMES[end]}"
    return f"{_DOW_NAMES[start]}-{_DOW_NAMES[end]}"


def _translate_day_of_week(field: str) -> str:
    return ",".join(_translate_day_of_week_item(item) for item in field.split(","))


def build_trigger(cron_expr: str, timezone: str = "UTC") -> IntervalTrigger | CronTrigger:
    """Build the APScheduler trigger for a normalized cron expression.

    Raises:
        InvalidScheduleError: If the expression cannot be turned into a trigger.
    """
    expr = cron_expr.strip()
    try:
        if expr.startswith(_EVERY_KEYWORD):
            interval = parse_duration(expr[len(_EVERY_KEYWORD):])
            check_interval(interval, cron_expr)
            return IntervalTrigger(seconds=interval.total_seconds(), timezone=timezone)

        expr = _SHORTHANDS.get(expr, expr)
        fields = expr.split()
        if len(fields) == 5:
            fields.insert(0, "0")
        if len(fields) != 6:
            raise InvalidScheduleError(f"Invalid cron expression: {cron_expr!r}")

        second, minute, hour, day, month, day_of_week = fields
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(day_of_week),
            timezone=timezone,
        )
    except InvalidScheduleError:
        raise
    except (ValueError, TypeError, OverflowError) as exc:
        raise InvalidScheduleError(f"Invalid cron expression {cron_expr!r}: {exc}") from exc


def parse_schedule(schedule: str) -> tuple[str, timedelta]:
    """Normalize a schedule string into ``(cron_expr, interval)``.

    Duration literals and bare integers (seconds) yield a positive interval
    and a derived ``@every`` expression.  Cron expressions (5 or 6 fields,
    ``@every …`` or a named shorthand) are validated and returned unchanged
    with a zero interval.

    Raises:
        InvalidScheduleError: If no form matches or cron validation fails.
    """
    text = (schedule or "").strip()
    if not text:
        raise InvalidScheduleError("Schedule is empty")

    if _INTEGER.fullmatch(text):
        interval = _to_timedelta(int(text), text)
    else:
        try:
            interval = parse_duration(text)
        except InvalidScheduleError:
            interval = None

    if interval is not None:
        check_interval(interval, schedule)
        return every(interval), interval

    fields = text.split()
    if len(fields) in (5, 6) or text.startswith("@"):
        build_trigger(text)
        return text, timedelta(0)

    raise InvalidScheduleError(f"Invalid schedule format: {schedule!r}")
