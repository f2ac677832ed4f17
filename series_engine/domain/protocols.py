"""Protocol definitions for the engine's external collaborators.

Persistence of series and occurrence records lives outside the engine.
These Protocols are the contracts a storage layer has to satisfy; the
in-memory implementations in ``series_engine.stores.memory`` are the
reference.
"""

from __future__ import annotations

import datetime
from typing import Any, Optional, Protocol

from ..models import Occurrence, Series, TemplateOccurrence


class TimeProvider(Protocol):
    """Protocol for time provider callables."""

    def __call__(self) -> datetime.datetime:
        """Return current UTC time."""
        ...


class SeriesStore(Protocol):
    """Protocol for series persistence."""

    async def find_by_slug(self, slug: str) -> Optional[Series]:
        """Return the series with this slug, or None."""
        ...

    async def create(self, series: Series) -> Series:
        """Persist a new series.

        Raises:
            SeriesSlugTakenError: If the slug is already taken
        """
        ...

    async def update(self, series: Series) -> Series:
        """Replace the stored series with ``series`` (matched by id)."""
        ...

    async def delete(self, series_id: str) -> None:
        """Remove the series; occurrences are handled by the caller."""
        ...


class TemplateLookup(Protocol):
    """Protocol for resolving a series' authoring template."""

    async def find_template_for_series(self, series_slug: str) -> Optional[TemplateOccurrence]:
        """Return the template content for the series, or None when none can be resolved."""
        ...


class OccurrenceStore(Protocol):
    """Protocol for occurrence persistence.

    Implementations must enforce uniqueness of ``(series_ref,
    canonical_date)`` and raise ``MaterializationConflictError`` from
    ``create`` (and ``update``) when it would be violated.
    """

    async def find_by_id(self, occurrence_id: str) -> Optional[Occurrence]:
        """Return the occurrence with this id, or None."""
        ...

    async def find_by_series_and_date(
        self, series_id: str, canonical_date: datetime.datetime
    ) -> Optional[Occurrence]:
        """Return the occurrence keyed by exactly this canonical instant, or None."""
        ...

    async def create(self, occurrence: Occurrence) -> Occurrence:
        """Persist a new occurrence.

        Raises:
            MaterializationConflictError: If the (series, canonical date) key exists
        """
        ...

    async def find_by_series_from(
        self, series_id: str, from_date: Optional[datetime.datetime]
    ) -> list[Occurrence]:
        """Return the series' occurrences at or after ``from_date`` (all when None).

        Occurrences are compared by canonical date, falling back to start
        date for one-off members, and returned in ascending order.
        """
        ...

    async def update(self, occurrence_id: str, changes: dict[str, Any]) -> Occurrence:
        """Apply field changes and return the updated occurrence.

        Raises:
            OccurrenceNotFoundError: If no occurrence has this id
        """
        ...

    async def delete(self, occurrence_id: str) -> None:
        """Remove the occurrence."""
        ...

    async def detach_from_series(self, occurrence_id: str) -> Occurrence:
        """Clear the occurrence's series reference, keeping the record."""
        ...
