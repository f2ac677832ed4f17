"""Custom exception hierarchy for the series engine.

Validation and not-found errors carry enough context (slug, date, rule
field) for a caller to correct the request. Concurrency conflicts and
individual batch-item failures are recovered inside the engine and are
only ever seen by store implementations and logs.
"""

from __future__ import annotations

from typing import Any, Optional


class SeriesEngineError(Exception):
    """Base exception for all series engine errors."""


class SeriesValidationError(SeriesEngineError):
    """Client-correctable request error.

    Should result in an HTTP 4xx response at whatever surface wraps the
    engine.
    """


class InvalidRecurrenceRuleError(SeriesValidationError):
    """Recurrence rule failed validation.

    Raised when:
    - frequency is missing or not one of DAILY, WEEKLY, MONTHLY, YEARLY
    - interval or count is not a positive integer
    - until cannot be parsed as a date, or is combined with count
    - a weekday, month or month-day value is outside its domain
    - the rule combines by-month and by-month-day values that never occur
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidTimezoneError(SeriesValidationError):
    """Timezone string is not a known IANA zone."""

    def __init__(self, time_zone: Any):
        super().__init__(f"Invalid timezone: {time_zone!r}")
        self.time_zone = time_zone


class SeriesNotFoundError(SeriesValidationError):
    """No series exists for the requested slug."""

    def __init__(self, slug: str):
        super().__init__(f"Series with slug {slug!r} not found")
        self.slug = slug


class TemplateMissingError(SeriesValidationError):
    """The series has no resolvable template occurrence."""

    def __init__(self, slug: str):
        super().__init__(f"No template occurrence found for series {slug!r}")
        self.slug = slug


class DateNotInPatternError(SeriesValidationError):
    """Requested occurrence date is not part of the series pattern.

    Also raised when the date matches the base pattern but is listed in the
    series' recurrence exceptions.
    """

    def __init__(self, slug: str, date: Any):
        super().__init__(
            f"Invalid occurrence date: {date} is not part of the recurrence "
            f"pattern of series {slug!r}"
        )
        self.slug = slug
        self.date = date


class OccurrenceNotFoundError(SeriesValidationError):
    """No occurrence exists for the requested id."""

    def __init__(self, occurrence_id: str):
        super().__init__(f"Occurrence {occurrence_id!r} not found")
        self.occurrence_id = occurrence_id


class OccurrenceAlreadyInSeriesError(SeriesValidationError):
    """Occurrence already belongs to a series and cannot join another."""

    def __init__(self, occurrence_id: str, series_ref: str):
        super().__init__(f"Occurrence {occurrence_id!r} is already part of series {series_ref!r}")
        self.occurrence_id = occurrence_id
        self.series_ref = series_ref


class SeriesSlugTakenError(SeriesValidationError):
    """Another series already uses the requested slug.

    Raised by series stores on a duplicate create, so a slug claimed between
    the availability check and the insert is reported the same way.
    """

    def __init__(self, slug: str):
        super().__init__(f"Series slug {slug!r} already exists")
        self.slug = slug


class MaterializationConflictError(SeriesEngineError):
    """An occurrence already exists for this (series, canonical date) key.

    Raised by occurrence stores when the uniqueness constraint rejects a
    create. The materializer resolves it by re-reading the existing row;
    it never reaches callers of the engine.
    """

    def __init__(self, series_ref: str, canonical_date: Any):
        super().__init__(
            f"Occurrence for series {series_ref!r} at {canonical_date} already exists"
        )
        self.series_ref = series_ref
        self.canonical_date = canonical_date


class BatchItemTimeoutError(SeriesEngineError):
    """A single eager materialization exceeded its time budget.

    Swallowed and logged by batch generation; never fails series creation.
    """

    def __init__(self, slug: str, date: Any, timeout: float):
        super().__init__(
            f"Materializing {date} for series {slug!r} exceeded timeout of {timeout}s"
        )
        self.slug = slug
        self.date = date
        self.timeout = timeout
