"""Parsing and formatting of human readable durations and PostgreSQL intervals."""

from __future__ import annotations

import re
from datetime import timedelta

from .errors import MinervaRuntimeError

_NANOS_PER_SECOND = 1_000_000_000
_SECONDS_PER_DAY = 86_400
_SECONDS_PER_MONTH = 2_630_016
_SECONDS_PER_YEAR = 31_557_600

_UNIT_NANOS = {
    **dict.fromkeys(("nanos", "nsec", "ns"), 1),
    **dict.fromkeys(("usec", "us"), 1_000),
    **dict.fromkeys(("millis", "msec", "ms"), 1_000_000),
    **dict.fromkeys(("seconds", "second", "secs", "sec", "s"), _NANOS_PER_SECOND),
    **dict.fromkeys(("minutes", "minute", "min", "mins", "m"), 60 * _NANOS_PER_SECOND),
    **dict.fromkeys(("hours", "hour", "hr", "hrs", "h"), 3_600 * _NANOS_PER_SECOND),
    **dict.fromkeys(("days", "day", "d"), _SECONDS_PER_DAY * _NANOS_PER_SECOND),
    **dict.fromkeys(("weeks", "week", "w"), 7 * _SECONDS_PER_DAY * _NANOS_PER_SECOND),
    **dict.fromkeys(("months", "month", "M"), _SECONDS_PER_MONTH * _NANOS_PER_SECOND),
    **dict.fromkeys(("years", "year", "y"), _SECONDS_PER_YEAR * _NANOS_PER_SECOND),
}

_TOKEN_RE = re.compile(r"\s*([0-9]+)\s*([A-Za-z]+)")
_BARE_NUMBER_RE = re.compile(r"\s*([0-9]+)\s*")
_MONTH_RE = re.compile(r"mon(s|th|ths)?")
_CLOCK_RE = re.compile(r"^(\d{2}):(\d{2}):(\d{2})$")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"1h 30m"`` or ``"2 months 29 days"``.

    Raises ValueError when the text is not a valid duration.
    """
    if not text.strip():
        raise ValueError("value was empty")

    end = len(text.rstrip())
    pos = 0
    total_nanos = 0

    while pos < end:
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            bare = _BARE_NUMBER_RE.fullmatch(text, pos)
            if bare is not None:
                number = bare.group(1)
                raise ValueError(
                    f"time unit needed, for example {number}sec or {number}ms"
                )
            offset = pos + len(text[pos:]) - len(text[pos:].lstrip())
            raise ValueError(f"invalid character at {offset}")

        number, unit = match.groups()
        try:
            unit_nanos = _UNIT_NANOS[unit]
        except KeyError:
            raise ValueError(
                f"unknown time unit {unit!r}, supported units: ns, us, ms, "
                "sec, min, hours, days, weeks, months, years (and few variations)"
            ) from None
        total_nanos += int(number) * unit_nanos
        pos = match.end()

    return timedelta(microseconds=total_nanos // 1_000)


def parse_interval(interval_str: str) -> timedelta:
    """Parse a PostgreSQL interval in text form into a timedelta."""
    clock = _CLOCK_RE.match(interval_str)
    if clock is not None:
        hours, minutes, seconds = clock.groups()
        normalized = f"{hours} hours {minutes} minutes {seconds} seconds"
    else:
        normalized = _MONTH_RE.sub("month", interval_str, count=1)

    try:
        return parse_duration(normalized)
    except ValueError as exc:
        raise MinervaRuntimeError(
            f"Could not parse '{normalized}' as interval: {exc}"
        ) from exc


def format_duration(duration: timedelta) -> str:
    """Render a timedelta in the compact form accepted by :func:`parse_duration`."""
    total_micros = duration // timedelta(microseconds=1)
    if total_micros < 0:
        raise ValueError("negative durations cannot be formatted")

    seconds, micros = divmod(total_micros, 1_000_000)
    if seconds == 0 and micros == 0:
        return "0s"

    years, rest = divmod(seconds, _SECONDS_PER_YEAR)
    months, rest = divmod(rest, _SECONDS_PER_MONTH)
    days, day_seconds = divmod(rest, _SECONDS_PER_DAY)
    hours, rest = divmod(day_seconds, 3_600)
    minutes, secs = divmod(rest, 60)
    millis, micros = divmod(micros, 1_000)

    parts = [
        f"{value}{name}{'s' if value > 1 else ''}"
        for value, name in ((years, "year"), (months, "month"), (days, "day"))
        if value
    ]
    parts.extend(
        f"{value}{unit}"
        for value, unit in (
            (hours, "h"),
            (minutes, "m"),
            (secs, "s"),
            (millis, "ms"),
            (micros, "us"),
        )
        if value
    )
    return " ".join(parts)