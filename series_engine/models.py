"""Data models for recurring series and their occurrences."""

from __future__ import annotations

import calendar
import uuid
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .core.timezone_utils import (
    ensure_utc,
    normalize_timezone_name,
    now_utc,
    parse_date_like,
    to_civil_date,
)
from .exceptions import InvalidTimezoneError

# Actor identifiers come from an external user directory; numeric or opaque
ActorId = Union[int, str]

# Longest day-of-month each month can have (February counts leap years)
MONTH_MAX_DAYS = {month: calendar.monthrange(2024, month)[1] for month in range(1, 13)}


def _new_id() -> str:
    return uuid.uuid4().hex


class Frequency(str, Enum):
    """Supported recurrence frequencies."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Weekday(str, Enum):
    """Two-letter RFC 5545 weekday codes."""

    MO = "MO"
    TU = "TU"
    WE = "WE"
    TH = "TH"
    FR = "FR"
    SA = "SA"
    SU = "SU"

    @property
    def number(self) -> int:
        """Monday-based index, matching ``date.weekday()``."""
        return list(Weekday).index(self)

    @property
    def full_name(self) -> str:
        return calendar.day_name[self.number]

    @classmethod
    def from_date(cls, value: date) -> Weekday:
        return list(cls)[value.weekday()]


class OccurrenceType(str, Enum):
    """How attendees join an occurrence."""

    IN_PERSON = "in-person"
    ONLINE = "online"
    HYBRID = "hybrid"


def combination_can_occur(months: frozenset[int], month_days: frozenset[int]) -> bool:
    """Return True if some month in ``months`` has some day in ``month_days``.

    Empty sets place no constraint.
    """
    if not months or not month_days:
        return True
    return any(day <= MONTH_MAX_DAYS[month] for month in months for day in month_days)


class RecurrenceRule(BaseModel):
    """Abstract recurrence pattern owned by a series.

    ``count`` and ``until`` are mutually exclusive; both may be absent for
    an open-ended rule. Unknown keys are rejected.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    count: Optional[int] = Field(default=None, ge=1)
    until: Optional[date] = None
    by_weekday: frozenset[Weekday] = Field(
        default_factory=frozenset,
        validation_alias=AliasChoices("by_weekday", "byWeekday", "byweekday", "byday"),
    )
    by_month: frozenset[int] = Field(
        default_factory=frozenset,
        validation_alias=AliasChoices("by_month", "byMonth", "bymonth"),
    )
    by_month_day: frozenset[int] = Field(
        default_factory=frozenset,
        validation_alias=AliasChoices("by_month_day", "byMonthDay", "bymonthday"),
    )

    @field_validator("frequency", mode="before")
    @classmethod
    def normalize_frequency(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("interval", "count", mode="before")
    @classmethod
    def reject_booleans(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("must be an integer, not a boolean")
        return v

    @field_validator("until", mode="before")
    @classmethod
    def parse_until(cls, v: Any, info: ValidationInfo) -> Any:
        """Accept ISO strings and datetimes, keeping only the calendar date.

        Raises:
            ValueError: If the value cannot be parsed or count is also set
        """
        if v is None:
            return None
        if info.data.get("count") is not None:
            raise ValueError("count and until are mutually exclusive")
        try:
            parsed = parse_date_like(v)
        except (ValueError, OverflowError):
            raise ValueError(f"until must be an ISO date, got {v!r}") from None
        if isinstance(parsed, datetime):
            return parsed.date()
        return parsed

    @field_validator("by_weekday", mode="before")
    @classmethod
    def normalize_weekdays(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            v = [part for part in v.split(",") if part.strip()]
        if isinstance(v, (list, tuple, set, frozenset)):
            return frozenset(
                item.strip().upper() if isinstance(item, str) else item for item in v
            )
        return v

    @field_validator("by_month", "by_month_day", mode="before")
    @classmethod
    def coerce_int_sets(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, int) and not isinstance(v, bool):
            return frozenset([v])
        return v

    @field_validator("by_month")
    @classmethod
    def validate_months(cls, v: frozenset[int]) -> frozenset[int]:
        bad = sorted(m for m in v if not 1 <= m <= 12)
        if bad:
            raise ValueError(f"months must be between 1 and 12, got {bad}")
        return v

    @field_validator("by_month_day")
    @classmethod
    def validate_month_days(cls, v: frozenset[int], info: ValidationInfo) -> frozenset[int]:
        bad = sorted(d for d in v if not 1 <= d <= 31)
        if bad:
            raise ValueError(f"month days must be between 1 and 31, got {bad}")
        months = info.data.get("by_month") or frozenset()
        if not combination_can_occur(months, v):
            raise ValueError(
                f"month days {sorted(v)} never occur in months {sorted(months)}"
            )
        return v

    @property
    def is_bounded(self) -> bool:
        return self.count is not None or self.until is not None


class ApprovalPolicy(BaseModel):
    """Attendance approval settings cloned from the template."""

    require_approval: bool = False
    approval_question: Optional[str] = None
    allow_waitlist: bool = False


class AuthorableContent(BaseModel):
    """Fields an organizer edits on a template and on each occurrence."""

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    type: OccurrenceType = OccurrenceType.IN_PERSON
    location: Optional[str] = None
    online_location: Optional[str] = None
    max_attendees: Optional[int] = Field(default=None, ge=0)
    approval_policy: ApprovalPolicy = Field(default_factory=ApprovalPolicy)
    category_refs: list[str] = Field(default_factory=list)


AUTHORABLE_FIELDS = frozenset(AuthorableContent.model_fields)


class TemplateOccurrence(AuthorableContent):
    """Authoring template whose content is cloned into new materializations."""

    start_date: datetime
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_instants(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @model_validator(mode="after")
    def check_end_after_start(self) -> TemplateOccurrence:
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def duration(self) -> timedelta:
        """Template length; zero when the template has no end."""
        if self.end_date is None:
            return timedelta(0)
        return self.end_date - self.start_date

    def authorable_content(self) -> dict[str, Any]:
        return self.model_dump(include=set(AUTHORABLE_FIELDS))


class Occurrence(TemplateOccurrence):
    """A persisted event record, standalone or belonging to a series.

    For series members ``canonical_date`` is the pattern instant the record
    was materialized for; at most one occurrence exists per
    ``(series_ref, canonical_date)``.
    """

    id: str = Field(default_factory=_new_id)
    slug: Optional[str] = None
    series_ref: Optional[str] = None
    canonical_date: Optional[datetime] = None
    materialized: bool = False
    time_zone: str = "UTC"

    created_by: Optional[ActorId] = None
    updated_by: Optional[ActorId] = None
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: Optional[datetime] = None

    @field_validator("canonical_date")
    @classmethod
    def normalize_canonical_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    def to_template(self) -> TemplateOccurrence:
        """Project this occurrence onto the template shape."""
        return TemplateOccurrence.model_validate(
            self.model_dump(include=set(TemplateOccurrence.model_fields))
        )


class OccurrencePatch(BaseModel):
    """Partial update for occurrence content; only explicitly set fields apply."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    type: Optional[OccurrenceType] = None
    location: Optional[str] = None
    online_location: Optional[str] = None
    max_attendees: Optional[int] = Field(default=None, ge=0)
    approval_policy: Optional[ApprovalPolicy] = None
    category_refs: Optional[list[str]] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)

    def is_empty(self) -> bool:
        return not self.model_fields_set


class Series(BaseModel):
    """A named, timezone-aware recurrence definition plus its template reference."""

    id: str = Field(default_factory=_new_id)
    slug: str = Field(..., min_length=1)
    ulid: str = Field(default_factory=_new_id)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    time_zone: str = "UTC"
    recurrence_rule: RecurrenceRule
    recurrence_description: Optional[str] = None
    recurrence_exceptions: list[str] = Field(default_factory=list)
    template_occurrence_ref: Optional[str] = None

    created_at: datetime = Field(default_factory=now_utc)
    created_by: Optional[ActorId] = None
    updated_by: Optional[ActorId] = None

    @field_validator("time_zone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate and canonicalize the IANA zone name.

        Raises:
            ValueError: If timezone is invalid
        """
        try:
            return normalize_timezone_name(v)
        except InvalidTimezoneError:
            raise ValueError(f"Invalid timezone: {v!r}") from None

    @field_validator("recurrence_exceptions", mode="before")
    @classmethod
    def normalize_exceptions(cls, v: Any, info: ValidationInfo) -> Any:
        """Reduce exception dates to sorted unique ISO calendar dates in the series zone."""
        if v is None:
            return []
        if not isinstance(v, (list, tuple, set, frozenset)):
            return v
        return normalize_exception_dates(v, info.data.get("time_zone"))

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


def normalize_exception_dates(values: Any, time_zone: Optional[str] = None) -> list[str]:
    """Convert dates, datetimes or ISO strings into sorted unique ``YYYY-MM-DD`` strings.

    With ``time_zone`` a datetime is reduced to the civil day it falls on in
    that zone (naive values are wall-clock time there). Without a zone it keeps
    its own calendar date.

    Raises:
        ValueError: If a value cannot be parsed
    """
    days: set[date] = set()
    for value in values:
        parsed = parse_date_like(value)
        if isinstance(parsed, datetime):
            parsed = to_civil_date(parsed, time_zone) if time_zone else parsed.date()
        days.add(parsed)
    return [day.isoformat() for day in sorted(days)]


class SeriesCreate(BaseModel):
    """Request to create a series together with its template content."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    slug: Optional[str] = None
    description: Optional[str] = None
    # Falls back to the configured default timezone
    time_zone: Optional[str] = None
    # Validated by the lifecycle so failures carry the offending rule field
    recurrence_rule: Union[RecurrenceRule, dict[str, Any]]
    recurrence_exceptions: list[Union[date, str]] = Field(default_factory=list)
    template: TemplateOccurrence


class SeriesUpdate(BaseModel):
    """Partial series update; template fields are written to the template occurrence."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    time_zone: Optional[str] = None
    recurrence_rule: Optional[Union[RecurrenceRule, dict[str, Any]]] = None
    recurrence_exceptions: Optional[list[Union[date, str]]] = None

    type: Optional[OccurrenceType] = None
    location: Optional[str] = None
    online_location: Optional[str] = None
    max_attendees: Optional[int] = Field(default=None, ge=0)
    approval_policy: Optional[ApprovalPolicy] = None
    category_refs: Optional[list[str]] = None

    def occurrence_patch(self) -> OccurrencePatch:
        """Extract the authorable, non-rule fields as an occurrence patch."""
        changes = self.model_dump(exclude_unset=True, include=set(AUTHORABLE_FIELDS))
        return OccurrencePatch(**changes)


class UpcomingOccurrence(BaseModel):
    """One entry of an upcoming listing: a real occurrence or a virtual pattern date."""

    date: datetime
    materialized: bool
    occurrence: Optional[Occurrence] = None

    @model_validator(mode="after")
    def check_occurrence_presence(self) -> UpcomingOccurrence:
        if self.materialized != (self.occurrence is not None):
            raise ValueError("occurrence must be present exactly when materialized")
        return self
