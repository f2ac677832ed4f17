"""Timezone resolution, civil-day conversion and clock utilities for series_engine."""

from __future__ import annotations

import datetime
import logging
import os
import zoneinfo
from functools import lru_cache
from typing import ClassVar, Union

from dateutil import parser as date_parser

from ..exceptions import InvalidTimezoneError

logger = logging.getLogger(__name__)

DEFAULT_SERIES_TIMEZONE = "UTC"

TEST_TIME_ENV_VAR = "SERIES_ENGINE_TEST_TIME"

DateLike = Union[datetime.datetime, datetime.date, str]


class TimezoneResolver:
    """Maps user-supplied zone names onto canonical IANA identifiers."""

    # Obsolete/deprecated IANA names and common aliases
    TZ_ALIAS_MAP: ClassVar[dict[str, str]] = {
        "US/Pacific": "America/Los_Angeles",
        "US/Mountain": "America/Denver",
        "US/Central": "America/Chicago",
        "US/Eastern": "America/New_York",
        "US/Alaska": "America/Anchorage",
        "US/Hawaii": "Pacific/Honolulu",
        "US/Arizona": "America/Phoenix",
        "UTC": "UTC",
        "GMT": "UTC",
        "Etc/UTC": "UTC",
        "Etc/GMT": "UTC",
        "Etc/Universal": "UTC",
        "Universal": "UTC",
        "Zulu": "UTC",
        "Asia/Rangoon": "Asia/Yangon",
        "America/Godthab": "America/Nuuk",
    }

    def resolve(self, tz_name: str) -> str:
        """Return the canonical name for ``tz_name``, or raise if it is unknown.

        Raises:
            InvalidTimezoneError: If the zone is empty or not in the tz database
        """
        if not tz_name or not isinstance(tz_name, str):
            raise InvalidTimezoneError(tz_name)
        canonical = self.TZ_ALIAS_MAP.get(tz_name.strip(), tz_name.strip())
        try:
            zoneinfo.ZoneInfo(canonical)
        except (zoneinfo.ZoneInfoNotFoundError, ValueError):
            raise InvalidTimezoneError(tz_name) from None
        return canonical


class TimeProvider:
    """Provides current time with test time override support."""

    def now_utc(self) -> datetime.datetime:
        """Return current UTC time with tzinfo.

        Can be overridden for testing via SERIES_ENGINE_TEST_TIME environment
        variable. Format: ISO 8601 datetime string (e.g., "2025-10-06T08:00:00-04:00").
        Naive values are treated as UTC.
        """
        test_time = os.environ.get(TEST_TIME_ENV_VAR)
        if test_time:
            try:
                dt = date_parser.isoparse(test_time)
                if dt.tzinfo is not None:
                    return dt.astimezone(datetime.UTC)
                return dt.replace(tzinfo=datetime.UTC)
            except (ValueError, OverflowError) as e:
                logger.warning("Failed to parse %s=%r: %s", TEST_TIME_ENV_VAR, test_time, e)

        return datetime.datetime.now(datetime.UTC)


_resolver = TimezoneResolver()
_time_provider = TimeProvider()


def now_utc() -> datetime.datetime:
    """Get current UTC time (convenience function)."""
    return _time_provider.now_utc()


def normalize_timezone_name(tz_name: str) -> str:
    """Validate ``tz_name`` and return its canonical IANA identifier.

    Raises:
        InvalidTimezoneError: If the name cannot be resolved
    """
    return _resolver.resolve(tz_name)


@lru_cache(maxsize=64)
def _zone_for(canonical: str) -> zoneinfo.ZoneInfo:
    return zoneinfo.ZoneInfo(canonical)


def get_zone(tz_name: str) -> zoneinfo.ZoneInfo:
    """Return the ``ZoneInfo`` for a zone name or alias.

    Raises:
        InvalidTimezoneError: If the name cannot be resolved
    """
    return _zone_for(normalize_timezone_name(tz_name))


def ensure_utc(dt: datetime.datetime) -> datetime.datetime:
    """Return ``dt`` as an aware UTC datetime; naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.UTC)
    return dt.astimezone(datetime.UTC)


def parse_date_like(value: DateLike) -> Union[datetime.datetime, datetime.date]:
    """Parse an ISO string into a date or datetime; pass dates and datetimes through.

    A string holding only a calendar date (``YYYY-MM-DD``) yields a ``date``
    so callers can treat it as a civil day rather than as UTC midnight.

    Raises:
        ValueError: If the string is not ISO 8601
    """
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Unsupported date value: {value!r}")
    text = value.strip()
    parsed = date_parser.isoparse(text)
    if len(text) == 10 and parsed.time() == datetime.time(0, 0):
        return parsed.date()
    return parsed


def to_wall_clock(value: DateLike, tz: Union[str, zoneinfo.ZoneInfo]) -> datetime.datetime:
    """Return ``value`` as a naive wall-clock datetime observed in ``tz``.

    Aware datetimes are converted into the zone. Naive datetimes are already
    wall-clock time in ``tz`` and plain dates become local midnight.
    """
    parsed = parse_date_like(value)
    if not isinstance(parsed, datetime.datetime):
        return datetime.datetime.combine(parsed, datetime.time.min)
    if parsed.tzinfo is None:
        return parsed
    zone = get_zone(tz) if isinstance(tz, str) else tz
    return parsed.astimezone(zone).replace(tzinfo=None)


def to_civil_date(value: DateLike, tz: Union[str, zoneinfo.ZoneInfo]) -> datetime.date:
    """Return the calendar date ``value`` falls on as observed in ``tz``."""
    return to_wall_clock(value, tz).date()


def to_utc_instant(value: DateLike, tz: Union[str, zoneinfo.ZoneInfo]) -> datetime.datetime:
    """Return ``value`` as an aware UTC instant, reading naive values in ``tz``."""
    parsed = parse_date_like(value)
    if isinstance(parsed, datetime.datetime) and parsed.tzinfo is not None:
        return parsed.astimezone(datetime.UTC)
    return localize(to_wall_clock(parsed, tz), tz)


def localize(naive: datetime.datetime, tz: Union[str, zoneinfo.ZoneInfo]) -> datetime.datetime:
    """Attach ``tz`` to a naive wall-clock datetime and convert to UTC.

    Ambiguous wall-clock times resolve to the first occurrence (fold=0);
    non-existent ones shift forward by the DST gap, as ``zoneinfo`` does.
    """
    zone = get_zone(tz) if isinstance(tz, str) else tz
    return naive.replace(tzinfo=zone).astimezone(datetime.UTC)


def start_of_day_utc(day: datetime.date, tz: Union[str, zoneinfo.ZoneInfo]) -> datetime.datetime:
    """Return the UTC instant at which ``day`` begins in ``tz``."""
    return localize(datetime.datetime.combine(day, datetime.time.min), tz)


def format_in_timezone(
    instant: datetime.datetime, tz: Union[str, zoneinfo.ZoneInfo], fmt: str = "%Y-%m-%d"
) -> str:
    """Format an instant as observed in ``tz``."""
    zone = get_zone(tz) if isinstance(tz, str) else tz
    return ensure_utc(instant).astimezone(zone).strftime(fmt)
