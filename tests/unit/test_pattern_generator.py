"""Unit tests for recurrence pattern expansion and membership."""

from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from series_engine.exceptions import InvalidRecurrenceRuleError, InvalidTimezoneError
from series_engine.models import RecurrenceRule
from series_engine.recurrence.pattern_generator import (
    MAX_GENERATION_CAP,
    describe_pattern,
    format_date_in_timezone,
    generate_occurrences,
    is_date_in_recurrence_pattern,
    is_same_day,
    parse_rrule_string,
    resolve_canonical_date,
    to_rrule_string,
    validate_recurrence_rule,
)

pytestmark = pytest.mark.unit

NY = "America/New_York"
NY_ZONE = ZoneInfo(NY)


def local_days(instants, zone=NY_ZONE):
    return [instant.astimezone(zone).date() for instant in instants]


class TestValidateRecurrenceRule:
    def test_passes_validated_rule_through(self):
        rule = RecurrenceRule(frequency="DAILY")
        assert validate_recurrence_rule(rule) is rule

    def test_accepts_mapping_with_aliases(self):
        rule = validate_recurrence_rule({"frequency": "weekly", "byWeekday": ["mo", "fr"]})
        assert rule.frequency.value == "WEEKLY"
        assert {d.value for d in rule.by_weekday} == {"MO", "FR"}

    @pytest.mark.parametrize(
        "rule,field",
        [
            ({"frequency": "HOURLY"}, "frequency"),
            ({}, "frequency"),
            ({"frequency": "DAILY", "interval": 0}, "interval"),
            ({"frequency": "DAILY", "interval": True}, "interval"),
            ({"frequency": "DAILY", "count": -1}, "count"),
            ({"frequency": "DAILY", "until": "not-a-date"}, "until"),
            ({"frequency": "DAILY", "count": 3, "until": "2025-12-01"}, "until"),
            ({"frequency": "WEEKLY", "by_weekday": ["XX"]}, "by_weekday"),
            ({"frequency": "WEEKLY", "byWeekday": ["XX"]}, "by_weekday"),
            ({"frequency": "YEARLY", "by_month": [13]}, "by_month"),
            ({"frequency": "MONTHLY", "by_month_day": [0]}, "by_month_day"),
            ({"frequency": "YEARLY", "by_month": [2], "by_month_day": [30, 31]}, "by_month_day"),
            ({"frequency": "DAILY", "hourly": 2}, "hourly"),
        ],
    )
    def test_rejects_malformed_rule_naming_field(self, rule, field):
        with pytest.raises(InvalidRecurrenceRuleError) as exc_info:
            validate_recurrence_rule(rule)
        assert exc_info.value.field == field
        assert field in str(exc_info.value)

    def test_rejects_non_mapping(self):
        with pytest.raises(InvalidRecurrenceRuleError, match="must be a mapping"):
            validate_recurrence_rule("FREQ=DAILY")


class TestGenerateOccurrences:
    def test_weekly_scenario_alternates_mon_wed_fri(self):
        rule = {"frequency": "WEEKLY", "interval": 1, "by_weekday": ["MO", "WE", "FR"]}

        dates = generate_occurrences("2025-10-01T18:00:00", rule, NY, cap=5)

        assert local_days(dates) == [
            date(2025, 10, 1),
            date(2025, 10, 3),
            date(2025, 10, 6),
            date(2025, 10, 8),
            date(2025, 10, 10),
        ]
        assert [d.astimezone(NY_ZONE).strftime("%a") for d in dates] == [
            "Wed",
            "Fri",
            "Mon",
            "Wed",
            "Fri",
        ]

    def test_daily_bounded_rule_stops_after_count(self):
        rule = {"frequency": "DAILY", "interval": 1, "count": 10}
        anchor = datetime(2025, 10, 1, 9, 0, tzinfo=UTC)

        dates = generate_occurrences(anchor, rule, cap=50)

        assert len(dates) == 10
        assert all(b - a == timedelta(days=1) for a, b in zip(dates, dates[1:]))
        assert generate_occurrences(anchor, rule, start_after=dates[-1] + timedelta(seconds=1)) == []

    @pytest.mark.parametrize(
        "rule",
        [
            {"frequency": "DAILY", "interval": 3},
            {"frequency": "WEEKLY", "interval": 2, "by_weekday": ["TU", "TH"]},
            {"frequency": "MONTHLY", "by_month_day": [1, 15, 31]},
            {"frequency": "MONTHLY", "by_weekday": ["SU"]},
            {"frequency": "YEARLY", "by_month": [3, 9]},
        ],
    )
    def test_output_is_strictly_ascending(self, rule):
        dates = generate_occurrences("2025-10-01T18:00:00", rule, NY, cap=60)

        assert dates
        assert all(a < b for a, b in zip(dates, dates[1:]))

    @pytest.mark.parametrize(
        "rule",
        [
            {"frequency": "DAILY", "interval": 3},
            {"frequency": "WEEKLY"},
            {"frequency": "WEEKLY", "interval": 2, "by_weekday": ["TU", "TH"]},
            {"frequency": "MONTHLY", "interval": 2, "by_month_day": [1, 15]},
            {"frequency": "MONTHLY", "by_weekday": ["MO"]},
            {"frequency": "YEARLY"},
            {"frequency": "WEEKLY", "by_weekday": ["MO", "WE", "FR"], "count": 7},
        ],
    )
    def test_generated_dates_match_membership_check(self, rule):
        anchor = "2025-10-01T18:00:00"
        dates = generate_occurrences(anchor, rule, NY, cap=12)
        generated = set(local_days(dates))

        day = date(2025, 10, 1)
        while day <= max(generated):
            assert is_date_in_recurrence_pattern(day, anchor, rule, NY) == (day in generated), day
            day += timedelta(days=1)

    def test_keeps_wall_clock_time_across_dst(self):
        rule = {"frequency": "WEEKLY", "by_weekday": ["MO", "FR"]}

        dates = generate_occurrences("2025-10-31T18:00:00", rule, NY, cap=2)

        assert dates == [
            datetime(2025, 10, 31, 22, 0, tzinfo=UTC),
            datetime(2025, 11, 3, 23, 0, tzinfo=UTC),
        ]

    def test_aware_anchor_is_read_in_series_zone(self):
        # 02:00Z on Oct 2 is still Oct 1 in New York
        dates = generate_occurrences(
            datetime(2025, 10, 2, 2, 0, tzinfo=UTC), {"frequency": "DAILY"}, NY, cap=2
        )

        assert local_days(dates) == [date(2025, 10, 1), date(2025, 10, 2)]
        assert dates[0] == datetime(2025, 10, 2, 2, 0, tzinfo=UTC)

    def test_exceptions_are_removed(self):
        rule = {"frequency": "WEEKLY", "by_weekday": ["MO", "WE", "FR"]}

        dates = generate_occurrences(
            "2025-10-01T18:00:00", rule, NY, exceptions=["2025-10-06", date(2025, 10, 8)], cap=4
        )

        assert local_days(dates) == [
            date(2025, 10, 1),
            date(2025, 10, 3),
            date(2025, 10, 10),
            date(2025, 10, 13),
        ]

    def test_exceptions_consume_count(self):
        dates = generate_occurrences(
            "2025-10-01", {"frequency": "DAILY", "count": 5}, exceptions=["2025-10-02"]
        )

        assert local_days(dates, UTC) == [
            date(2025, 10, 1),
            date(2025, 10, 3),
            date(2025, 10, 4),
            date(2025, 10, 5),
        ]

    def test_until_is_inclusive(self):
        dates = generate_occurrences(
            "2025-10-01T18:00:00", {"frequency": "WEEKLY", "until": "2025-10-15"}, NY
        )

        assert local_days(dates) == [date(2025, 10, 1), date(2025, 10, 8), date(2025, 10, 15)]

    def test_open_ended_rule_uses_default_cap(self):
        assert len(generate_occurrences("2025-01-01", {"frequency": "DAILY"})) == 100

    def test_cap_is_clamped(self):
        dates = generate_occurrences("2025-01-01", {"frequency": "DAILY"}, cap=5000)
        assert len(dates) == MAX_GENERATION_CAP

    @pytest.mark.parametrize("cap", [0, -3])
    def test_non_positive_cap_returns_nothing(self, cap):
        assert generate_occurrences("2025-01-01", {"frequency": "DAILY"}, cap=cap) == []

    def test_horizon_bounds_open_ended_rules(self):
        dates = generate_occurrences(
            "2025-01-01", {"frequency": "WEEKLY"}, cap=MAX_GENERATION_CAP, horizon_years=1
        )

        assert 52 <= len(dates) <= 53
        assert dates[-1] <= datetime(2026, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize(
        "bound", [{"count": 8}, {"until": "2032-12-31"}], ids=["count", "until"]
    )
    def test_horizon_does_not_cut_bounded_rules(self, bound):
        dates = generate_occurrences("2025-01-01", {"frequency": "YEARLY", **bound}, horizon_years=2)

        assert len(dates) == 8
        assert local_days(dates, UTC)[-1] == date(2032, 1, 1)

    def test_exception_instants_are_read_in_series_zone(self):
        # 01:30Z on the 6th is still the evening of the 5th in New York
        dates = generate_occurrences(
            "2025-10-04T09:00:00", {"frequency": "DAILY"}, NY, exceptions=["2025-10-06T01:30:00Z"], cap=3
        )

        assert local_days(dates) == [date(2025, 10, 4), date(2025, 10, 6), date(2025, 10, 7)]

    def test_impossible_implicit_combination_is_empty(self):
        # The anchor supplies day 31, which February never has
        assert generate_occurrences("2025-01-31", {"frequency": "YEARLY", "by_month": [2]}) == []

    def test_start_after_skips_earlier_instants(self):
        rule = {"frequency": "WEEKLY", "by_weekday": ["MO", "WE", "FR"]}

        dates = generate_occurrences(
            "2025-10-01T18:00:00",
            rule,
            NY,
            cap=2,
            start_after=datetime(2025, 10, 6, 12, 0, tzinfo=UTC),
        )

        assert local_days(dates) == [date(2025, 10, 6), date(2025, 10, 8)]

    def test_is_restartable(self):
        rule = {"frequency": "MONTHLY", "by_month_day": [1, 15]}
        first = generate_occurrences("2025-10-01T09:30:00", rule, NY, cap=20)
        assert generate_occurrences("2025-10-01T09:30:00", rule, NY, cap=20) == first

    def test_unknown_timezone_raises(self):
        with pytest.raises(InvalidTimezoneError):
            generate_occurrences("2025-10-01", {"frequency": "DAILY"}, "Mars/Olympus")

    def test_invalid_exception_date_raises(self):
        with pytest.raises(InvalidRecurrenceRuleError) as exc_info:
            generate_occurrences("2025-10-01", {"frequency": "DAILY"}, exceptions=["someday"])
        assert exc_info.value.field == "exceptions"


class TestIsDateInRecurrencePattern:
    RULE = {"frequency": "WEEKLY", "by_weekday": ["MO", "WE", "FR"]}
    ANCHOR = "2025-10-01T18:00:00"

    def test_pattern_weekday_is_member(self):
        assert is_date_in_recurrence_pattern("2025-10-06", self.ANCHOR, self.RULE, NY)

    def test_off_pattern_weekday_is_not_member(self):
        assert not is_date_in_recurrence_pattern("2025-10-07", self.ANCHOR, self.RULE, NY)

    def test_date_before_anchor_is_not_member(self):
        assert not is_date_in_recurrence_pattern("2025-09-29", self.ANCHOR, self.RULE, NY)

    def test_excluded_date_is_not_member(self):
        assert not is_date_in_recurrence_pattern(
            "2025-10-06", self.ANCHOR, self.RULE, NY, exceptions=["2025-10-06"]
        )

    def test_instant_is_compared_by_local_day(self):
        # Tuesday 01:00Z is still Monday evening in New York
        instant = datetime(2025, 10, 7, 1, 0, tzinfo=UTC)
        assert is_date_in_recurrence_pattern(instant, self.ANCHOR, self.RULE, NY)
        assert not is_date_in_recurrence_pattern(instant, self.ANCHOR, self.RULE, "UTC")

    def test_interval_is_enforced(self):
        rule = {"frequency": "WEEKLY", "interval": 2}
        assert is_date_in_recurrence_pattern("2025-10-15", self.ANCHOR, rule, NY)
        assert not is_date_in_recurrence_pattern("2025-10-08", self.ANCHOR, rule, NY)

    def test_until_is_enforced(self):
        rule = {**self.RULE, "until": "2025-10-06"}
        assert is_date_in_recurrence_pattern("2025-10-06", self.ANCHOR, rule, NY)
        assert not is_date_in_recurrence_pattern("2025-10-08", self.ANCHOR, rule, NY)

    def test_count_is_enforced(self):
        rule = {**self.RULE, "count": 3}
        assert is_date_in_recurrence_pattern("2025-10-06", self.ANCHOR, rule, NY)
        assert not is_date_in_recurrence_pattern("2025-10-08", self.ANCHOR, rule, NY)

    def test_monthly_uses_anchor_day_by_default(self):
        rule = {"frequency": "MONTHLY"}
        assert is_date_in_recurrence_pattern("2026-01-15", "2025-10-15", rule)
        assert not is_date_in_recurrence_pattern("2026-01-16", "2025-10-15", rule)

    def test_yearly_with_month_filter(self):
        rule = {"frequency": "YEARLY", "by_month": [3, 9], "by_month_day": [10]}
        assert is_date_in_recurrence_pattern("2026-03-10", "2025-09-10", rule)
        assert not is_date_in_recurrence_pattern("2026-04-10", "2025-09-10", rule)

    def test_invalid_rule_raises(self):
        with pytest.raises(InvalidRecurrenceRuleError):
            is_date_in_recurrence_pattern("2025-10-06", self.ANCHOR, {"frequency": "WEEKLY", "interval": 0})


class TestIsSameDay:
    def test_same_new_york_day(self):
        assert is_same_day("2025-10-05T23:30:00Z", "2025-10-06T01:30:00Z", NY)

    def test_different_utc_days(self):
        assert not is_same_day("2025-10-05T23:30:00Z", "2025-10-06T01:30:00Z", "UTC")

    def test_accepts_datetimes(self):
        a = datetime(2025, 10, 6, 3, 30, tzinfo=UTC)
        b = datetime(2025, 10, 6, 23, 59, tzinfo=UTC)
        assert not is_same_day(a, b, NY)
        assert is_same_day(a, b, "UTC")


class TestResolveCanonicalDate:
    @pytest.mark.parametrize(
        "candidate",
        [
            "2025-10-06",
            date(2025, 10, 6),
            datetime(2025, 10, 6, 22, 0, tzinfo=UTC),
            datetime(2025, 10, 6, 4, 0, tzinfo=UTC),
        ],
    )
    def test_resolves_to_anchor_wall_clock_time(self, candidate):
        key = resolve_canonical_date(candidate, "2025-10-01T18:00:00", NY)
        assert key == datetime(2025, 10, 6, 22, 0, tzinfo=UTC)


class TestDescribePattern:
    @pytest.mark.parametrize(
        "rule,expected",
        [
            ({"frequency": "WEEKLY"}, "Every week"),
            ({"frequency": "WEEKLY", "interval": 2, "until": "2025-12-01"}, "Every 2 weeks until 2025-12-01"),
            ({"frequency": "DAILY", "count": 10}, "Every day (10 times)"),
            ({"frequency": "DAILY", "count": 1}, "Every day (1 time)"),
            (
                {"frequency": "WEEKLY", "by_weekday": ["FR", "MO", "WE"]},
                "Every week on Monday, Wednesday, Friday",
            ),
            ({"frequency": "MONTHLY", "by_month_day": [15, 1]}, "Every month on day 1, 15"),
            ({"frequency": "YEARLY", "by_month": [1]}, "Every year in January"),
        ],
    )
    def test_describes_rule(self, rule, expected):
        assert describe_pattern(rule) == expected


class TestRRuleStrings:
    def test_serializes_with_interval_only_when_repeating(self):
        assert to_rrule_string({"frequency": "WEEKLY", "interval": 2, "by_weekday": ["WE", "MO"]}) == (
            "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE"
        )
        assert to_rrule_string({"frequency": "DAILY", "count": 10}) == "FREQ=DAILY;COUNT=10"

    def test_parses_rrule_with_prefix(self):
        rule = parse_rrule_string("RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE")

        assert rule == RecurrenceRule(frequency="WEEKLY", interval=2, by_weekday=["MO", "WE"])

    def test_parses_bounds_and_month_filters(self):
        rule = parse_rrule_string("FREQ=YEARLY;BYMONTH=3;BYMONTHDAY=10;COUNT=4")

        assert rule.count == 4
        assert rule.by_month == frozenset([3])
        assert rule.by_month_day == frozenset([10])

    def test_round_trips_until(self):
        rule = parse_rrule_string("FREQ=WEEKLY;UNTIL=20251201")
        assert rule.until == date(2025, 12, 1)

    def test_empty_rrule_is_rejected(self):
        with pytest.raises(InvalidRecurrenceRuleError) as exc_info:
            parse_rrule_string("RRULE:")
        assert exc_info.value.field == "frequency"

    def test_malformed_rrule_is_rejected(self):
        with pytest.raises(InvalidRecurrenceRuleError, match="Malformed RRULE"):
            parse_rrule_string("not a rule")

    def test_unsupported_parts_are_rejected(self):
        with pytest.raises(InvalidRecurrenceRuleError, match="BYSETPOS"):
            parse_rrule_string("FREQ=MONTHLY;BYDAY=MO;BYSETPOS=1")

    def test_ordinal_weekdays_are_rejected(self):
        with pytest.raises(InvalidRecurrenceRuleError) as exc_info:
            parse_rrule_string("FREQ=MONTHLY;BYDAY=1MO")
        assert exc_info.value.field == "by_weekday"

    def test_only_monday_week_start_is_supported(self):
        with pytest.raises(InvalidRecurrenceRuleError) as exc_info:
            parse_rrule_string("FREQ=WEEKLY;WKST=SU")
        assert exc_info.value.field == "wkst"


def test_format_date_in_timezone():
    instant = datetime(2025, 10, 6, 2, 0, tzinfo=UTC)
    assert format_date_in_timezone(instant, NY) == "2025-10-05"
    assert format_date_in_timezone(instant, "UTC", "%Y-%m-%d %H:%M") == "2025-10-06 02:00"
