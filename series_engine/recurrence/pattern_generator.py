"""Recurrence pattern expansion and membership testing.

Every function here is pure: the zone, rule and exception dates are passed
in explicitly and nothing is cached between calls apart from ``ZoneInfo``
lookups. Patterns are expanded in civil time within the series zone at the
anchor's wall-clock time, then normalized to aware UTC instants.

Naive datetimes given to these functions are read as wall-clock time in
the series zone; plain dates (or ``YYYY-MM-DD`` strings) are civil days.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Optional, Union

from dateutil.relativedelta import relativedelta
from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, YEARLY, rrule
from icalendar.prop import vRecur
from pydantic import ValidationError

from ..core.timezone_utils import (
    DateLike,
    format_in_timezone,
    get_zone,
    localize,
    to_civil_date,
    to_utc_instant,
    to_wall_clock,
)
from ..exceptions import InvalidRecurrenceRuleError
from ..models import (
    Frequency,
    RecurrenceRule,
    Weekday,
    combination_can_occur,
    normalize_exception_dates,
)

logger = logging.getLogger(__name__)

DEFAULT_GENERATION_CAP = 100
MAX_GENERATION_CAP = 1000
DEFAULT_HORIZON_YEARS = 100

RuleInput = Union[RecurrenceRule, Mapping[str, Any]]

_FREQUENCIES = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}

_WEEKDAYS = {
    Weekday.MO: MO,
    Weekday.TU: TU,
    Weekday.WE: WE,
    Weekday.TH: TH,
    Weekday.FR: FR,
    Weekday.SA: SA,
    Weekday.SU: SU,
}

# Input keys (including accepted aliases) -> rule field reported in errors
_FIELD_NAMES = {
    "byWeekday": "by_weekday",
    "byweekday": "by_weekday",
    "byday": "by_weekday",
    "byMonth": "by_month",
    "bymonth": "by_month",
    "byMonthDay": "by_month_day",
    "bymonthday": "by_month_day",
}

_UNITS = {
    Frequency.DAILY: "day",
    Frequency.WEEKLY: "week",
    Frequency.MONTHLY: "month",
    Frequency.YEARLY: "year",
}

# RRULE parts understood by parse_rrule_string
_SUPPORTED_RRULE_PARTS = {"FREQ", "INTERVAL", "COUNT", "UNTIL", "BYDAY", "BYMONTH", "BYMONTHDAY", "WKST"}


def validate_recurrence_rule(rule: RuleInput) -> RecurrenceRule:
    """Validate a rule mapping (or pass a validated rule through).

    Args:
        rule: ``RecurrenceRule`` or mapping with rule fields

    Returns:
        The validated, immutable rule

    Raises:
        InvalidRecurrenceRuleError: Naming the first offending field
    """
    if isinstance(rule, RecurrenceRule):
        return rule
    if not isinstance(rule, Mapping):
        raise InvalidRecurrenceRuleError(
            f"Recurrence rule must be a mapping, got {type(rule).__name__}"
        )

    try:
        return RecurrenceRule.model_validate(dict(rule))
    except ValidationError as e:
        error = e.errors()[0]
        loc = error.get("loc") or ()
        field = str(loc[0]) if loc else None
        if field is not None:
            field = _FIELD_NAMES.get(field, field)
        message = str(error.get("msg", "invalid value")).removeprefix("Value error, ")
        logger.debug("Rejected recurrence rule %r: %s=%s", dict(rule), field, message)
        raise InvalidRecurrenceRuleError(
            f"Invalid recurrence rule field {field!r}: {message}", field=field
        ) from e


def _effective_filters(
    rule: RecurrenceRule, anchor_day: datetime.date
) -> tuple[frozenset[int], frozenset[int], frozenset[Weekday]]:
    """Return (months, month days, weekdays) including the anchor-derived defaults.

    A rule without any day selector repeats on the anchor's weekday (WEEKLY),
    day of month (MONTHLY) or day and month (YEARLY).
    """
    months = rule.by_month
    month_days = rule.by_month_day
    weekdays = rule.by_weekday

    if not month_days and not weekdays:
        if rule.frequency == Frequency.WEEKLY:
            weekdays = frozenset([Weekday.from_date(anchor_day)])
        elif rule.frequency == Frequency.MONTHLY:
            month_days = frozenset([anchor_day.day])
        elif rule.frequency == Frequency.YEARLY:
            months = months or frozenset([anchor_day.month])
            month_days = frozenset([anchor_day.day])

    return months, month_days, weekdays


def _build_rrule(
    rule: RecurrenceRule,
    dtstart: datetime.datetime,
    until: Optional[datetime.datetime] = None,
) -> rrule:
    kwargs: dict[str, Any] = {"dtstart": dtstart, "interval": rule.interval, "wkst": MO}
    if rule.by_weekday:
        kwargs["byweekday"] = tuple(
            _WEEKDAYS[day] for day in sorted(rule.by_weekday, key=lambda d: d.number)
        )
    if rule.by_month:
        kwargs["bymonth"] = tuple(sorted(rule.by_month))
    if rule.by_month_day:
        kwargs["bymonthday"] = tuple(sorted(rule.by_month_day))
    if rule.count is not None:
        kwargs["count"] = rule.count
    else:
        kwargs["until"] = until
    return rrule(_FREQUENCIES[rule.frequency], **kwargs)


def _excluded_days(
    exceptions: Optional[Iterable[DateLike]], time_zone: str
) -> set[datetime.date]:
    if not exceptions:
        return set()
    try:
        days = normalize_exception_dates(exceptions, time_zone)
    except ValueError as e:
        raise InvalidRecurrenceRuleError(f"Invalid exception date: {e}", field="exceptions") from e
    return {datetime.date.fromisoformat(day) for day in days}


def generate_occurrences(
    anchor_date: DateLike,
    rule: RuleInput,
    time_zone: str = "UTC",
    exceptions: Optional[Iterable[DateLike]] = None,
    cap: Optional[int] = None,
    start_after: Optional[DateLike] = None,
    horizon_years: int = DEFAULT_HORIZON_YEARS,
) -> list[datetime.datetime]:
    """Expand a rule into a finite, strictly ascending list of UTC instants.

    Args:
        anchor_date: Pattern start; its wall-clock time is kept for every date
        rule: Recurrence rule (validated here)
        time_zone: IANA zone the pattern is observed in
        exceptions: Civil dates removed from the output (datetimes are read in ``time_zone``)
        cap: Maximum number of dates returned (default 100, never above 1000)
        start_after: Skip instants earlier than this
        horizon_years: Expansion stops this many years after the anchor when
            the rule has neither count nor until

    Returns:
        Aware UTC datetimes in ascending order

    Raises:
        InvalidRecurrenceRuleError: If the rule is malformed
        InvalidTimezoneError: If the zone is unknown

    Note:
        ``count`` counts pattern positions before exclusion, so excluding a
        date shortens a counted series rather than extending it.
    """
    rule = validate_recurrence_rule(rule)
    zone = get_zone(time_zone)

    limit = DEFAULT_GENERATION_CAP if cap is None else min(cap, MAX_GENERATION_CAP)
    if limit <= 0:
        return []

    anchor_local = to_wall_clock(anchor_date, zone)
    months, month_days, _ = _effective_filters(rule, anchor_local.date())
    if not combination_can_occur(months, month_days):
        logger.debug("Rule %s never occurs from anchor %s", rule, anchor_local)
        return []

    excluded = _excluded_days(exceptions, time_zone)
    threshold = to_utc_instant(start_after, zone) if start_after is not None else None

    until: Optional[datetime.datetime] = None
    if rule.until is not None:
        until = datetime.datetime.combine(rule.until, datetime.time.max)
    elif not rule.is_bounded:
        until = anchor_local + relativedelta(years=horizon_years)

    results: list[datetime.datetime] = []
    for local_dt in _build_rrule(rule, anchor_local, until):
        if local_dt.date() in excluded:
            continue
        instant = localize(local_dt, zone)
        if threshold is not None and instant < threshold:
            continue
        results.append(instant)
        if len(results) >= limit:
            break

    return results


def _week_start(day: datetime.date) -> datetime.date:
    return day - datetime.timedelta(days=day.weekday())


def _period_offset(frequency: Frequency, anchor_day: datetime.date, day: datetime.date) -> int:
    if frequency == Frequency.DAILY:
        return (day - anchor_day).days
    if frequency == Frequency.WEEKLY:
        return (_week_start(day) - _week_start(anchor_day)).days // 7
    if frequency == Frequency.MONTHLY:
        return (day.year - anchor_day.year) * 12 + day.month - anchor_day.month
    return day.year - anchor_day.year


def is_date_in_recurrence_pattern(
    candidate_date: DateLike,
    anchor_date: DateLike,
    rule: RuleInput,
    time_zone: str = "UTC",
    exceptions: Optional[Iterable[DateLike]] = None,
) -> bool:
    """Check whether the civil day of ``candidate_date`` is a member of the pattern.

    Works arithmetically (period offset modulo interval plus the by-filters)
    and only walks the expansion when the rule is bounded by ``count``.

    Raises:
        InvalidRecurrenceRuleError: If the rule is malformed
        InvalidTimezoneError: If the zone is unknown
    """
    rule = validate_recurrence_rule(rule)
    zone = get_zone(time_zone)

    anchor_local = to_wall_clock(anchor_date, zone)
    anchor_day = anchor_local.date()
    day = to_civil_date(candidate_date, zone)

    if day < anchor_day:
        return False
    if rule.until is not None and day > rule.until:
        return False
    if day in _excluded_days(exceptions, time_zone):
        return False

    months, month_days, weekdays = _effective_filters(rule, anchor_day)
    if months and day.month not in months:
        return False
    if month_days and day.day not in month_days:
        return False
    if weekdays and Weekday.from_date(day) not in weekdays:
        return False

    if _period_offset(rule.frequency, anchor_day, day) % rule.interval != 0:
        return False

    if rule.count is not None:
        for local_dt in _build_rrule(rule, anchor_local):
            if local_dt.date() >= day:
                return local_dt.date() == day
        return False

    return True


def is_same_day(instant_a: DateLike, instant_b: DateLike, time_zone: str = "UTC") -> bool:
    """Compare two instants by their civil date in ``time_zone``.

    Examples:
        >>> is_same_day("2025-10-05T23:30:00Z", "2025-10-06T01:30:00Z", "America/New_York")
        True
        >>> is_same_day("2025-10-05T23:30:00Z", "2025-10-06T01:30:00Z", "UTC")
        False
    """
    zone = get_zone(time_zone)
    return to_civil_date(instant_a, zone) == to_civil_date(instant_b, zone)


def resolve_canonical_date(
    candidate_date: DateLike, anchor_date: DateLike, time_zone: str = "UTC"
) -> datetime.datetime:
    """Map a requested date onto the pattern instant of its civil day.

    The result is the candidate's civil day in ``time_zone`` at the anchor's
    wall-clock time, as an aware UTC instant. Callers passing a date, a
    midnight timestamp or the exact instant all resolve to the same key.
    """
    zone = get_zone(time_zone)
    anchor_time = to_wall_clock(anchor_date, zone).time()
    day = to_civil_date(candidate_date, zone)
    return localize(datetime.datetime.combine(day, anchor_time), zone)


def _join_names(names: list[str]) -> str:
    return ", ".join(names)


def describe_pattern(rule: RuleInput) -> str:
    """Return a human readable summary of the rule.

    Examples:
        "Every week", "Every 2 weeks until 2025-12-01",
        "Every day (10 times)", "Every week on Monday, Wednesday, Friday"
    """
    rule = validate_recurrence_rule(rule)
    unit = _UNITS[rule.frequency]

    if rule.interval == 1:
        text = f"Every {unit}"
    else:
        text = f"Every {rule.interval} {unit}s"

    if rule.by_weekday:
        days = sorted(rule.by_weekday, key=lambda d: d.number)
        text += " on " + _join_names([d.full_name for d in days])
    if rule.by_month_day:
        text += " on day " + _join_names([str(d) for d in sorted(rule.by_month_day)])
    if rule.by_month:
        text += " in " + _join_names(
            [datetime.date(2000, m, 1).strftime("%B") for m in sorted(rule.by_month)]
        )

    if rule.until is not None:
        text += f" until {rule.until.isoformat()}"
    elif rule.count is not None:
        text += f" ({rule.count} time{'s' if rule.count != 1 else ''})"

    return text


def to_rrule_string(rule: RuleInput) -> str:
    """Serialize the rule as an RFC 5545 RRULE value (without the ``RRULE:`` prefix)."""
    rule = validate_recurrence_rule(rule)
    parts: dict[str, Any] = {"FREQ": rule.frequency.value}
    if rule.interval > 1:
        parts["INTERVAL"] = rule.interval
    if rule.count is not None:
        parts["COUNT"] = rule.count
    if rule.until is not None:
        parts["UNTIL"] = rule.until
    if rule.by_weekday:
        parts["BYDAY"] = [d.value for d in sorted(rule.by_weekday, key=lambda d: d.number)]
    if rule.by_month_day:
        parts["BYMONTHDAY"] = sorted(rule.by_month_day)
    if rule.by_month:
        parts["BYMONTH"] = sorted(rule.by_month)
    return vRecur(parts).to_ical().decode("utf-8")


def _first(values: Any) -> Any:
    if isinstance(values, list):
        return values[0] if values else None
    return values


def parse_rrule_string(text: str) -> RecurrenceRule:
    """Parse an RFC 5545 RRULE value into a validated rule.

    Accepts an optional ``RRULE:`` prefix. Only the parts this engine can
    expand are allowed; ordinal weekdays such as ``1MO`` are rejected.

    Raises:
        InvalidRecurrenceRuleError: If the text is malformed or unsupported
    """
    value = text.strip()
    if value.upper().startswith("RRULE:"):
        value = value[len("RRULE:") :]
    if not value:
        raise InvalidRecurrenceRuleError("Empty RRULE", field="frequency")

    try:
        recur = vRecur.from_ical(value)
    except ValueError as e:
        raise InvalidRecurrenceRuleError(f"Malformed RRULE {text!r}: {e}") from e

    unsupported = sorted(set(recur) - _SUPPORTED_RRULE_PARTS)
    if unsupported:
        raise InvalidRecurrenceRuleError(
            f"Unsupported RRULE parts: {', '.join(unsupported)}", field=unsupported[0].lower()
        )
    wkst = _first(recur.get("WKST"))
    if wkst is not None and str(wkst).upper() != "MO":
        raise InvalidRecurrenceRuleError("Only WKST=MO is supported", field="wkst")

    data: dict[str, Any] = {"frequency": _first(recur.get("FREQ"))}
    if "INTERVAL" in recur:
        data["interval"] = int(_first(recur["INTERVAL"]))
    if "COUNT" in recur:
        data["count"] = int(_first(recur["COUNT"]))
    if "UNTIL" in recur:
        data["until"] = _first(recur["UNTIL"])
    if "BYDAY" in recur:
        data["by_weekday"] = [str(d) for d in recur["BYDAY"]]
    if "BYMONTH" in recur:
        data["by_month"] = [int(m) for m in recur["BYMONTH"]]
    if "BYMONTHDAY" in recur:
        data["by_month_day"] = [int(d) for d in recur["BYMONTHDAY"]]

    return validate_recurrence_rule(data)


def format_date_in_timezone(
    instant: datetime.datetime, time_zone: str = "UTC", fmt: str = "%Y-%m-%d"
) -> str:
    """Format an instant as observed in ``time_zone``."""
    return format_in_timezone(instant, get_zone(time_zone), fmt)
