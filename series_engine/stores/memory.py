"""In-memory reference implementations of the store Protocols.

Suitable for tests, the CLI and single-process embedding. Each store
serializes its mutations with an ``asyncio.Lock`` and can simulate I/O
latency so concurrent callers actually interleave.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from typing import Any, Optional

from ..core.timezone_utils import ensure_utc
from ..exceptions import (
    MaterializationConflictError,
    OccurrenceNotFoundError,
    SeriesNotFoundError,
    SeriesSlugTakenError,
)
from ..models import Occurrence, Series, TemplateOccurrence

logger = logging.getLogger(__name__)


def _date_key(value: datetime.datetime) -> str:
    return ensure_utc(value).isoformat()


class InMemorySeriesStore:
    """Series records keyed by id with a unique slug index."""

    def __init__(self, latency: float = 0.0) -> None:
        self._series: dict[str, Series] = {}
        self._lock = asyncio.Lock()
        self.latency = latency

    async def _pause(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)

    async def find_by_slug(self, slug: str) -> Optional[Series]:
        await self._pause()
        for series in self._series.values():
            if series.slug == slug:
                return series
        return None

    async def create(self, series: Series) -> Series:
        await self._pause()
        async with self._lock:
            if any(existing.slug == series.slug for existing in self._series.values()):
                raise SeriesSlugTakenError(series.slug)
            self._series[series.id] = series
        logger.debug("Stored series %s (%s)", series.slug, series.id)
        return series

    async def update(self, series: Series) -> Series:
        await self._pause()
        async with self._lock:
            if series.id not in self._series:
                raise SeriesNotFoundError(series.slug)
            self._series[series.id] = series
        return series

    async def delete(self, series_id: str) -> None:
        await self._pause()
        async with self._lock:
            self._series.pop(series_id, None)

    def __len__(self) -> int:
        return len(self._series)


class InMemoryOccurrenceStore:
    """Occurrence records with a unique ``(series_ref, canonical_date)`` index."""

    def __init__(self, latency: float = 0.0) -> None:
        self._occurrences: dict[str, Occurrence] = {}
        self._by_key: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()
        self.latency = latency

    async def _pause(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)

    @staticmethod
    def _key(occurrence: Occurrence) -> Optional[tuple[str, str]]:
        if occurrence.series_ref is None or occurrence.canonical_date is None:
            return None
        return occurrence.series_ref, _date_key(occurrence.canonical_date)

    def _store(self, occurrence: Occurrence, previous: Optional[Occurrence] = None) -> None:
        """Write ``occurrence`` and maintain the unique index; caller holds the lock."""
        key = self._key(occurrence)
        if key is not None:
            owner = self._by_key.get(key)
            if owner is not None and owner != occurrence.id:
                raise MaterializationConflictError(*key)
        if previous is not None:
            old_key = self._key(previous)
            if old_key is not None and old_key != key:
                del self._by_key[old_key]
        if key is not None:
            self._by_key[key] = occurrence.id
        self._occurrences[occurrence.id] = occurrence

    async def find_by_id(self, occurrence_id: str) -> Optional[Occurrence]:
        await self._pause()
        return self._occurrences.get(occurrence_id)

    async def find_by_series_and_date(
        self, series_id: str, canonical_date: datetime.datetime
    ) -> Optional[Occurrence]:
        await self._pause()
        occurrence_id = self._by_key.get((series_id, _date_key(canonical_date)))
        if occurrence_id is None:
            return None
        return self._occurrences.get(occurrence_id)

    async def create(self, occurrence: Occurrence) -> Occurrence:
        await self._pause()
        async with self._lock:
            if occurrence.id in self._occurrences:
                raise ValueError(f"Occurrence id {occurrence.id!r} already exists")
            self._store(occurrence)
        logger.debug("Stored occurrence %s", occurrence.slug or occurrence.id)
        return occurrence

    async def find_by_series_from(
        self, series_id: str, from_date: Optional[datetime.datetime]
    ) -> list[Occurrence]:
        await self._pause()
        matches = [
            o
            for o in self._occurrences.values()
            if o.series_ref == series_id
            and (from_date is None or (o.canonical_date or o.start_date) >= from_date)
        ]
        return sorted(matches, key=lambda o: o.canonical_date or o.start_date)

    async def find_by_series(self, series_id: str) -> list[Occurrence]:
        return await self.find_by_series_from(series_id, None)

    async def update(self, occurrence_id: str, changes: dict[str, Any]) -> Occurrence:
        await self._pause()
        async with self._lock:
            current = self._occurrences.get(occurrence_id)
            if current is None:
                raise OccurrenceNotFoundError(occurrence_id)
            updated = Occurrence.model_validate({**current.model_dump(), **changes, "id": occurrence_id})
            self._store(updated, previous=current)
        return updated

    async def delete(self, occurrence_id: str) -> None:
        await self._pause()
        async with self._lock:
            occurrence = self._occurrences.pop(occurrence_id, None)
            if occurrence is None:
                return
            key = self._key(occurrence)
            if key is not None and self._by_key.get(key) == occurrence_id:
                del self._by_key[key]

    async def detach_from_series(self, occurrence_id: str) -> Occurrence:
        return await self.update(occurrence_id, {"series_ref": None})

    def __len__(self) -> int:
        return len(self._occurrences)


class InMemoryTemplateLookup:
    """Resolves templates through the series' template reference.

    Falls back to the most recent occurrence of the series when the
    reference is unset or dangling.
    """

    def __init__(self, series_store: InMemorySeriesStore, occurrence_store: InMemoryOccurrenceStore):
        self.series_store = series_store
        self.occurrence_store = occurrence_store

    async def find_template_for_series(self, series_slug: str) -> Optional[TemplateOccurrence]:
        series = await self.series_store.find_by_slug(series_slug)
        if series is None:
            return None

        if series.template_occurrence_ref:
            occurrence = await self.occurrence_store.find_by_id(series.template_occurrence_ref)
            if occurrence is not None:
                return occurrence.to_template()
            logger.warning(
                "Template %s of series %s not found; falling back to latest occurrence",
                series.template_occurrence_ref,
                series_slug,
            )

        members = await self.occurrence_store.find_by_series(series.id)
        if not members:
            return None
        latest = max(members, key=lambda o: o.start_date)
        return latest.to_template()
