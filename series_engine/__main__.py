"""Command-line entry for series_engine.

Provides a ``preview`` command that expands a recurrence rule and prints
its description, RRULE form and the first local dates, without touching any
store.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, NoReturn, Optional

from dateutil import parser as date_parser

from . import init_logging
from .core.timezone_utils import get_zone
from .exceptions import SeriesValidationError
from .recurrence.pattern_generator import (
    describe_pattern,
    generate_occurrences,
    parse_rrule_string,
    to_rrule_string,
    validate_recurrence_rule,
)

logger = logging.getLogger(__name__)

EXIT_INVALID = 2


def _csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _csv_ints(value: str) -> list[int]:
    try:
        return [int(part) for part in _csv(value)]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma separated integers, got {value!r}") from None


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the series_engine CLI."""
    parser = argparse.ArgumentParser(
        prog="series_engine",
        description="Series engine - recurring series expansion tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m series_engine preview --frequency WEEKLY --by-weekday MO,WE,FR \\
      --anchor 2025-10-01T18:00:00 --tz America/New_York --limit 5
  python -m series_engine preview --rrule "FREQ=DAILY;COUNT=10" --anchor 2025-10-01
        """,
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    preview = subparsers.add_parser("preview", help="Print the dates a rule generates")
    preview.add_argument(
        "--anchor",
        required=True,
        help="Series start (ISO 8601); naive values are wall-clock time in --tz",
    )
    preview.add_argument("--tz", default="UTC", help="IANA timezone (default: UTC)")
    preview.add_argument("--limit", type=int, default=10, help="Dates to print (default: 10)")
    preview.add_argument("--rrule", help="RFC 5545 RRULE value instead of the rule options")
    preview.add_argument("--frequency", help="DAILY, WEEKLY, MONTHLY or YEARLY")
    preview.add_argument("--interval", type=int, help="Repeat every N periods")
    bound = preview.add_mutually_exclusive_group()
    bound.add_argument("--count", type=int, help="Stop after N pattern dates")
    bound.add_argument("--until", help="Last date (inclusive, YYYY-MM-DD)")
    preview.add_argument("--by-weekday", type=_csv, help="Comma separated weekdays, e.g. MO,WE,FR")
    preview.add_argument("--by-month", type=_csv_ints, help="Comma separated months (1-12)")
    preview.add_argument("--by-month-day", type=_csv_ints, help="Comma separated month days (1-31)")
    preview.add_argument(
        "--exclude", action="append", default=[], metavar="DATE", help="Excluded date (repeatable)"
    )
    return parser


def _rule_from_args(args: argparse.Namespace) -> dict[str, Any]:
    rule: dict[str, Any] = {"frequency": args.frequency}
    for option, key in (
        ("interval", "interval"),
        ("count", "count"),
        ("until", "until"),
        ("by_weekday", "by_weekday"),
        ("by_month", "by_month"),
        ("by_month_day", "by_month_day"),
    ):
        value = getattr(args, option)
        if value is not None:
            rule[key] = value
    return rule


def run_preview(args: argparse.Namespace) -> int:
    """Print the description, RRULE and generated dates for the requested rule.

    Returns:
        Process exit code (``2`` when the rule or zone is invalid)
    """
    try:
        anchor = date_parser.isoparse(args.anchor)
    except ValueError:
        print(f"Invalid --anchor {args.anchor!r}: expected ISO 8601", file=sys.stderr)
        return EXIT_INVALID

    try:
        if args.rrule:
            rule = parse_rrule_string(args.rrule)
        else:
            rule = validate_recurrence_rule(_rule_from_args(args))
        zone = get_zone(args.tz)
        dates = generate_occurrences(anchor, rule, args.tz, args.exclude, cap=args.limit)
    except SeriesValidationError as exc:
        print(f"Invalid input: {exc}", file=sys.stderr)
        return EXIT_INVALID

    print(f"Pattern: {describe_pattern(rule)}")
    print(f"RRULE:   {to_rrule_string(rule)}")
    for instant in dates:
        print(instant.astimezone(zone).strftime("%Y-%m-%d %H:%M %Z (%a)"))
    logger.debug("Printed %d dates", len(dates))
    return 0


def main(argv: Optional[list[str]] = None) -> NoReturn:
    """Run the series_engine CLI."""
    parser = _create_parser()
    args = parser.parse_args(argv)

    init_logging("DEBUG" if args.debug else os.environ.get("SERIES_ENGINE_LOG_LEVEL", "WARNING"))

    if args.command == "preview":
        sys.exit(run_preview(args))
    parser.error(f"unknown command {args.command!r}")


if __name__ == "__main__":
    main()
