"""Occurrence materialization for recurring series.

Turns virtual pattern dates into persisted occurrences on demand. Each
``(series, canonical date)`` key is materialized at most once: creation runs
inside a per-key critical section, and a uniqueness conflict reported by the
store is treated as "someone else already created it" and converged on by
re-reading.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Mapping
from typing import Any, Callable, Optional, Union

from dateutil.relativedelta import relativedelta

from ..core.async_utils import AsyncOrchestrator, AsyncTimeoutError, KeyedLock
from ..core.config_manager import MaterializationConfig
from ..core.timezone_utils import DateLike, now_utc, start_of_day_utc, to_civil_date, to_utc_instant
from ..engine_logging import series_context
from ..exceptions import (
    BatchItemTimeoutError,
    DateNotInPatternError,
    MaterializationConflictError,
    SeriesNotFoundError,
    TemplateMissingError,
)
from ..models import (
    ActorId,
    Occurrence,
    OccurrencePatch,
    Series,
    TemplateOccurrence,
    UpcomingOccurrence,
)
from ..recurrence.pattern_generator import (
    generate_occurrences,
    is_date_in_recurrence_pattern,
    resolve_canonical_date,
)
from .protocols import OccurrenceStore, SeriesStore, TemplateLookup, TimeProvider

logger = logging.getLogger(__name__)

PatchInput = Union[OccurrencePatch, Mapping[str, Any]]


def occurrence_date(occurrence: Occurrence) -> datetime.datetime:
    """Position of an occurrence in its series: canonical date, else start date."""
    return occurrence.canonical_date or occurrence.start_date


class OccurrenceMaterializer:
    """Idempotent get-or-create, upcoming listings and update propagation."""

    def __init__(
        self,
        series_store: SeriesStore,
        template_lookup: TemplateLookup,
        occurrence_store: OccurrenceStore,
        config: Optional[MaterializationConfig] = None,
        orchestrator: Optional[AsyncOrchestrator] = None,
        now: Optional[TimeProvider] = None,
    ):
        """Initialize the materializer.

        Args:
            series_store: Series persistence
            template_lookup: Resolves each series' authoring template
            occurrence_store: Occurrence persistence enforcing key uniqueness
            config: Caps and timeouts (defaults apply when None)
            orchestrator: Timeout/batch runner for eager materialization
            now: Clock returning aware UTC time (defaults to ``now_utc``)
        """
        self.series_store = series_store
        self.template_lookup = template_lookup
        self.occurrence_store = occurrence_store
        self.config = config or MaterializationConfig()
        self.orchestrator = orchestrator or AsyncOrchestrator(
            default_timeout=self.config.eager_item_timeout_seconds
        )
        self._now: Callable[[], datetime.datetime] = now or now_utc
        self._locks = KeyedLock()

    async def _get_series(self, series_slug: str) -> Series:
        series = await self.series_store.find_by_slug(series_slug)
        if series is None:
            raise SeriesNotFoundError(series_slug)
        return series

    async def _get_template(self, series: Series) -> TemplateOccurrence:
        template = await self.template_lookup.find_template_for_series(series.slug)
        if template is None:
            raise TemplateMissingError(series.slug)
        return template

    def _check_in_pattern(
        self, series: Series, template: TemplateOccurrence, canonical_date: DateLike
    ) -> datetime.datetime:
        """Return the canonical key for ``canonical_date`` or raise if it is off-pattern."""
        if not is_date_in_recurrence_pattern(
            canonical_date,
            template.start_date,
            series.recurrence_rule,
            series.time_zone,
            series.recurrence_exceptions,
        ):
            raise DateNotInPatternError(series.slug, canonical_date)
        return resolve_canonical_date(canonical_date, template.start_date, series.time_zone)

    def _build_occurrence(
        self,
        series: Series,
        template: TemplateOccurrence,
        key: datetime.datetime,
        actor_id: Optional[ActorId],
        materialized: bool = True,
    ) -> Occurrence:
        """Clone the template's content onto the pattern instant ``key``."""
        day = to_civil_date(key, series.time_zone)
        return Occurrence(
            **template.authorable_content(),
            slug=f"{series.slug}-{day:%Y%m%d}",
            series_ref=series.id,
            canonical_date=key,
            materialized=materialized,
            start_date=key,
            end_date=key + template.duration if template.end_date is not None else None,
            time_zone=series.time_zone,
            created_by=actor_id,
            updated_by=actor_id,
            created_at=self._now(),
        )

    async def find_occurrence(
        self, series_slug: str, canonical_date: DateLike
    ) -> Optional[Occurrence]:
        """Look up the persisted occurrence for a pattern date; never creates.

        The date is resolved onto its pattern instant using the template's
        wall-clock time. Without a template the date is used as given.

        Raises:
            SeriesNotFoundError: If the series does not exist
        """
        series = await self._get_series(series_slug)
        template = await self.template_lookup.find_template_for_series(series_slug)
        if template is not None:
            key = resolve_canonical_date(canonical_date, template.start_date, series.time_zone)
        else:
            key = to_utc_instant(canonical_date, series.time_zone)
        return await self.occurrence_store.find_by_series_and_date(series.id, key)

    async def get_or_create_occurrence(
        self, series_slug: str, canonical_date: DateLike, actor_id: ActorId
    ) -> Occurrence:
        """Return the occurrence for this date, materializing it on first request.

        Repeated and concurrent calls for the same key return the same occurrence.
        """
        existing = await self.find_occurrence(series_slug, canonical_date)
        if existing is not None:
            return existing
        return await self.materialize_occurrence(series_slug, canonical_date, actor_id)

    async def materialize_occurrence(
        self, series_slug: str, canonical_date: DateLike, actor_id: ActorId
    ) -> Occurrence:
        """Persist a new occurrence for a pattern date by cloning the template.

        Raises:
            SeriesNotFoundError: If the series does not exist
            TemplateMissingError: If no template can be resolved (the template
                start is the pattern anchor, so this is checked first)
            DateNotInPatternError: If the date is off-pattern or excluded
        """
        with series_context(series_slug):
            series = await self._get_series(series_slug)
            template = await self._get_template(series)
            key = self._check_in_pattern(series, template, canonical_date)

            async with self._locks.acquire((series.id, key)):
                existing = await self.occurrence_store.find_by_series_and_date(series.id, key)
                if existing is not None:
                    logger.debug("Occurrence for %s already exists: %s", key.isoformat(), existing.id)
                    return existing

                occurrence = self._build_occurrence(series, template, key, actor_id)
                try:
                    created = await self.occurrence_store.create(occurrence)
                except MaterializationConflictError:
                    logger.info(
                        "Occurrence for %s was created concurrently; re-reading", key.isoformat()
                    )
                    existing = await self.occurrence_store.find_by_series_and_date(series.id, key)
                    if existing is None:
                        raise
                    return existing

            logger.info("Materialized occurrence %s for %s", created.slug, key.isoformat())
            return created

    async def get_upcoming_occurrences(
        self, series_slug: str, count: int = 10, include_past: bool = False
    ) -> list[UpcomingOccurrence]:
        """Merge persisted and virtual occurrences from the cutoff onward.

        The cutoff is the start of today in the series zone, or
        ``past_lookback_months`` earlier when ``include_past`` is set. Entries
        for pattern dates are unique per civil day of their canonical date (a
        persisted member wins over the virtual date). One-off members carry no
        canonical date and are listed at their start alongside pattern dates.
        The result is strictly ascending and truncated to ``min(count,
        max_upcoming_count)``.

        Raises:
            SeriesNotFoundError: If the series does not exist
        """
        series = await self._get_series(series_slug)
        limit = min(count, self.config.max_upcoming_count)
        if limit <= 0:
            return []

        zone = series.time_zone
        template = await self.template_lookup.find_template_for_series(series_slug)
        anchor = template.start_date if template is not None else series.created_at

        cutoff_day = to_civil_date(self._now(), zone)
        if include_past:
            cutoff_day -= relativedelta(months=self.config.past_lookback_months)
        cutoff = start_of_day_utc(cutoff_day, zone)

        by_day: dict[datetime.date, UpcomingOccurrence] = {}
        for instant in generate_occurrences(
            anchor,
            series.recurrence_rule,
            zone,
            series.recurrence_exceptions,
            cap=min(limit, self.config.generation_cap),
            start_after=cutoff,
            horizon_years=self.config.generation_horizon_years,
        ):
            by_day[to_civil_date(instant, zone)] = UpcomingOccurrence(date=instant, materialized=False)

        one_offs: list[UpcomingOccurrence] = []
        persisted = await self.occurrence_store.find_by_series_from(series.id, cutoff)
        for occurrence in persisted:
            if occurrence.canonical_date is None:
                one_offs.append(
                    UpcomingOccurrence(date=occurrence.start_date, materialized=True, occurrence=occurrence)
                )
                continue
            day = to_civil_date(occurrence.canonical_date, zone)
            current = by_day.get(day)
            if current is not None and current.materialized:
                continue
            by_day[day] = UpcomingOccurrence(
                date=occurrence.canonical_date, materialized=True, occurrence=occurrence
            )

        # Materialized entries sort first so an equal instant keeps the real one
        merged: list[UpcomingOccurrence] = []
        for entry in sorted(
            [*by_day.values(), *one_offs], key=lambda entry: (entry.date, not entry.materialized)
        ):
            if merged and merged[-1].date == entry.date:
                continue
            merged.append(entry)
        merged = merged[:limit]
        logger.debug(
            "Upcoming for %s: %d entries (%d materialized) from %s",
            series_slug,
            len(merged),
            sum(1 for entry in merged if entry.materialized),
            cutoff.isoformat(),
        )
        return merged

    async def materialize_next_occurrence(
        self, series_slug: str, actor_id: ActorId
    ) -> Optional[Occurrence]:
        """Materialize the first virtual entry in the upcoming window.

        Returns None when every entry of the window is already materialized.
        """
        window = await self.get_upcoming_occurrences(
            series_slug, self.config.next_occurrence_window
        )
        for entry in window:
            if not entry.materialized:
                return await self.get_or_create_occurrence(series_slug, entry.date, actor_id)

        logger.debug(
            "All %d upcoming occurrences of %s are materialized", len(window), series_slug
        )
        return None

    async def materialize_next_n_occurrences(
        self, series_slug: str, actor_id: ActorId, n: Optional[int] = None
    ) -> list[Occurrence]:
        """Materialize up to ``n`` upcoming virtual occurrences, one at a time.

        A failure on one date is logged and does not stop the others.
        """
        wanted = self.config.next_n_default if n is None else n
        if wanted <= 0:
            return []

        upcoming = await self.get_upcoming_occurrences(
            series_slug, wanted + self.config.next_occurrence_window
        )
        virtual = [entry for entry in upcoming if not entry.materialized][:wanted]

        produced: list[Occurrence] = []
        for entry in virtual:
            try:
                produced.append(
                    await self.get_or_create_occurrence(series_slug, entry.date, actor_id)
                )
            except Exception:
                logger.warning(
                    "Failed to materialize %s for %s", entry.date.isoformat(), series_slug, exc_info=True
                )
        return produced

    async def update_future_occurrences(
        self,
        series_slug: str,
        from_date: DateLike,
        patch: PatchInput,
        actor_id: ActorId,
    ) -> int:
        """Apply ``patch`` to materialized occurrences on or after ``from_date``.

        Dates are compared by civil day in the series zone, so an occurrence
        later on the same local day as ``from_date`` is included. Occurrences
        are updated individually; a failure is logged and skipped.

        Returns:
            Number of occurrences updated
        """
        if not isinstance(patch, OccurrencePatch):
            patch = OccurrencePatch.model_validate(dict(patch))
        changes = patch.changes()
        if not changes:
            return 0

        with series_context(series_slug):
            series = await self._get_series(series_slug)
            zone = series.time_zone
            from_day = to_civil_date(from_date, zone)
            candidates = await self.occurrence_store.find_by_series_from(
                series.id, start_of_day_utc(from_day, zone)
            )

            updated = 0
            for occurrence in candidates:
                if not occurrence.materialized:
                    continue
                if to_civil_date(occurrence_date(occurrence), zone) < from_day:
                    continue
                try:
                    await self.occurrence_store.update(
                        occurrence.id,
                        {**changes, "updated_by": actor_id, "updated_at": self._now()},
                    )
                except Exception:
                    logger.warning("Failed to update occurrence %s", occurrence.id, exc_info=True)
                    continue
                updated += 1

            logger.info(
                "Updated %d of %d future occurrences from %s", updated, len(candidates), from_day
            )
            return updated

    async def materialize_initial_batch(
        self, series_slug: str, actor_id: ActorId, count: Optional[int] = None
    ) -> list[Occurrence]:
        """Eagerly materialize the first upcoming dates of a new series.

        Dates are processed in batches of ``eager_batch_size`` run
        concurrently, each bounded by ``eager_item_timeout_seconds``. Timeouts
        and failures are logged and skipped.

        Returns:
            The occurrences that were produced, in date order
        """
        wanted = self.config.eager_occurrence_count if count is None else count
        timeout = self.config.eager_item_timeout_seconds

        with series_context(series_slug):
            series = await self._get_series(series_slug)
            template = await self._get_template(series)
            dates = generate_occurrences(
                template.start_date,
                series.recurrence_rule,
                series.time_zone,
                series.recurrence_exceptions,
                cap=min(wanted, self.config.generation_cap),
                start_after=self._now(),
                horizon_years=self.config.generation_horizon_years,
            )

            factories = [
                lambda date=date: self.get_or_create_occurrence(series_slug, date, actor_id)
                for date in dates
            ]
            results = await self.orchestrator.run_in_batches(
                factories, self.config.eager_batch_size, timeout=timeout
            )

            produced: list[Occurrence] = []
            for date, result in zip(dates, results):
                if isinstance(result, AsyncTimeoutError):
                    logger.warning("%s", BatchItemTimeoutError(series_slug, date.isoformat(), timeout))
                elif isinstance(result, BaseException):
                    logger.warning(
                        "Eager materialization of %s failed: %s", date.isoformat(), result
                    )
                else:
                    produced.append(result)

            logger.info("Eagerly materialized %d of %d occurrences", len(produced), len(dates))
            return produced

    async def get_effective_occurrence_for_date(
        self, series_slug: str, date: DateLike
    ) -> Occurrence:
        """Return the occurrence for a pattern date without persisting anything.

        The materialized occurrence when one exists, otherwise an unsaved
        projection of the template (``materialized=False``).

        Raises:
            SeriesNotFoundError: If the series does not exist
            TemplateMissingError: If no template can be resolved
            DateNotInPatternError: If the date is off-pattern or excluded
        """
        series = await self._get_series(series_slug)
        template = await self._get_template(series)
        key = self._check_in_pattern(series, template, date)

        existing = await self.occurrence_store.find_by_series_and_date(series.id, key)
        if existing is not None:
            return existing
        return self._build_occurrence(series, template, key, actor_id=None, materialized=False)

    async def find_occurrences_by_series(
        self, series_slug: str, include_past: bool = False, only_past: bool = False
    ) -> list[Occurrence]:
        """List persisted occurrences of a series in ascending order.

        By default only occurrences starting now or later are returned;
        ``include_past`` returns all of them and ``only_past`` only those
        that started before now.
        """
        series = await self._get_series(series_slug)
        occurrences = await self.occurrence_store.find_by_series_from(series.id, None)
        now = self._now()

        if only_past:
            occurrences = [o for o in occurrences if o.start_date < now]
        elif not include_past:
            occurrences = [o for o in occurrences if o.start_date >= now]

        return sorted(occurrences, key=lambda o: o.start_date)
