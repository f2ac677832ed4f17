"""Series lifecycle: create, update and delete series, and manage their membership.

Creation persists the series, links its template occurrence and then kicks
off eager materialization of the first upcoming dates. That batch runs as
a tracked background task unless ``eager_materialization_blocking`` is
configured; its failures never fail the creation.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import re
import uuid
from collections.abc import Mapping
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from ..core.config_manager import MaterializationConfig
from ..core.timezone_utils import DateLike, normalize_timezone_name, now_utc, to_civil_date
from ..engine_logging import series_context
from ..exceptions import (
    OccurrenceAlreadyInSeriesError,
    OccurrenceNotFoundError,
    SeriesNotFoundError,
    SeriesSlugTakenError,
    SeriesValidationError,
)
from ..models import (
    ActorId,
    Occurrence,
    RecurrenceRule,
    Series,
    SeriesCreate,
    SeriesUpdate,
    normalize_exception_dates,
)
from ..recurrence.pattern_generator import (
    describe_pattern,
    is_date_in_recurrence_pattern,
    validate_recurrence_rule,
)
from .materializer import OccurrenceMaterializer
from .protocols import OccurrenceStore, SeriesStore, TimeProvider

logger = logging.getLogger(__name__)

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Lowercase ``name`` and collapse everything but letters and digits into dashes."""
    return _SLUG_INVALID.sub("-", name.lower()).strip("-") or "series"


def _validation_error(message: str, error: ValidationError) -> SeriesValidationError:
    first = error.errors()[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    return SeriesValidationError(f"{message}: {loc}: {first.get('msg')}")


class SeriesLifecycle:
    """Create/update/delete operations for series, orchestrating the materializer."""

    def __init__(
        self,
        series_store: SeriesStore,
        occurrence_store: OccurrenceStore,
        materializer: OccurrenceMaterializer,
        config: Optional[MaterializationConfig] = None,
        now: Optional[TimeProvider] = None,
    ):
        self.series_store = series_store
        self.occurrence_store = occurrence_store
        self.materializer = materializer
        self.config = config or materializer.config
        self._now: Callable[[], datetime.datetime] = now or now_utc
        self._background: set[asyncio.Task[Any]] = set()

    async def _get_series(self, slug: str) -> Series:
        series = await self.series_store.find_by_slug(slug)
        if series is None:
            raise SeriesNotFoundError(slug)
        return series

    async def _get_occurrence(self, occurrence_id: str) -> Occurrence:
        occurrence = await self.occurrence_store.find_by_id(occurrence_id)
        if occurrence is None:
            raise OccurrenceNotFoundError(occurrence_id)
        return occurrence

    async def _unique_slug(self, requested: Optional[str], name: str) -> str:
        if requested:
            if await self.series_store.find_by_slug(requested) is not None:
                raise SeriesSlugTakenError(requested)
            return requested
        return f"{slugify(name)}-{uuid.uuid4().hex[:6]}"

    async def _run_eager_batch(self, slug: str, actor_id: ActorId) -> None:
        with series_context(slug):
            try:
                await self.materializer.materialize_initial_batch(slug, actor_id)
            except Exception:
                logger.warning("Eager materialization for %s failed", slug, exc_info=True)

    async def _start_eager_batch(self, slug: str, actor_id: ActorId) -> None:
        if self.config.eager_materialization_blocking:
            await self._run_eager_batch(slug, actor_id)
            return
        task = asyncio.create_task(self._run_eager_batch(slug, actor_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @property
    def pending_tasks(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for outstanding eager materialization tasks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def create(self, request: Union[SeriesCreate, Mapping[str, Any]], actor_id: ActorId) -> Series:
        """Create a series with its template occurrence and start eager materialization.

        Raises:
            InvalidRecurrenceRuleError: If the rule is malformed (field-level reason)
            InvalidTimezoneError: If the zone is unknown
            SeriesValidationError: If the request is otherwise invalid
        """
        if not isinstance(request, SeriesCreate):
            try:
                request = SeriesCreate.model_validate(dict(request))
            except ValidationError as e:
                raise _validation_error("Invalid series request", e) from e

        rule = validate_recurrence_rule(request.recurrence_rule)
        time_zone = normalize_timezone_name(request.time_zone or self.config.default_timezone)
        slug = await self._unique_slug(request.slug, request.name)

        try:
            series = Series(
                slug=slug,
                name=request.name,
                description=request.description,
                time_zone=time_zone,
                recurrence_rule=rule,
                recurrence_description=describe_pattern(rule),
                recurrence_exceptions=request.recurrence_exceptions,
                created_at=self._now(),
                created_by=actor_id,
            )
        except ValidationError as e:
            raise _validation_error("Invalid series", e) from e

        with series_context(slug):
            series = await self.series_store.create(series)

            template = request.template
            if not is_date_in_recurrence_pattern(
                template.start_date, template.start_date, rule, time_zone, series.recurrence_exceptions
            ):
                logger.info("Template start %s is not itself a pattern date", template.start_date)

            day = to_civil_date(template.start_date, time_zone)
            try:
                template_occurrence = await self.occurrence_store.create(
                    Occurrence(
                        **template.authorable_content(),
                        slug=f"{slug}-{day:%Y%m%d}",
                        series_ref=series.id,
                        canonical_date=template.start_date,
                        materialized=True,
                        start_date=template.start_date,
                        end_date=template.end_date,
                        time_zone=time_zone,
                        created_by=actor_id,
                        updated_by=actor_id,
                        created_at=self._now(),
                    )
                )
            except Exception:
                logger.warning("Template occurrence for %s could not be stored; removing series", slug)
                await self.series_store.delete(series.id)
                raise
            series = await self.series_store.update(
                series.model_copy(update={"template_occurrence_ref": template_occurrence.id})
            )
            logger.info("Created series %s (%s)", slug, series.recurrence_description)

            await self._start_eager_batch(slug, actor_id)
        return series

    async def create_from_existing_occurrence(
        self,
        occurrence_id: str,
        recurrence_rule: Union[RecurrenceRule, Mapping[str, Any]],
        actor_id: ActorId,
        time_zone: Optional[str] = None,
        name: Optional[str] = None,
        slug: Optional[str] = None,
    ) -> Series:
        """Promote a standalone occurrence into the template of a new series.

        Raises:
            OccurrenceNotFoundError: If the occurrence does not exist
            OccurrenceAlreadyInSeriesError: If it already belongs to a series
            InvalidRecurrenceRuleError: If the rule is malformed
            InvalidTimezoneError: If the zone is unknown
        """
        occurrence = await self._get_occurrence(occurrence_id)
        if occurrence.series_ref is not None:
            raise OccurrenceAlreadyInSeriesError(occurrence_id, occurrence.series_ref)

        rule = validate_recurrence_rule(recurrence_rule)
        zone = normalize_timezone_name(time_zone or self.config.default_timezone)
        series_name = name or occurrence.name
        series_slug = await self._unique_slug(slug, series_name)

        series = await self.series_store.create(
            Series(
                slug=series_slug,
                name=series_name,
                description=occurrence.description,
                time_zone=zone,
                recurrence_rule=rule,
                recurrence_description=describe_pattern(rule),
                template_occurrence_ref=occurrence.id,
                created_at=self._now(),
                created_by=actor_id,
            )
        )

        with series_context(series_slug):
            try:
                await self.occurrence_store.update(
                    occurrence.id,
                    {
                        "series_ref": series.id,
                        "canonical_date": occurrence.start_date,
                        "materialized": True,
                        "time_zone": zone,
                        "updated_by": actor_id,
                        "updated_at": self._now(),
                    },
                )
            except Exception:
                logger.warning("Could not attach occurrence %s; removing series", occurrence.id)
                await self.series_store.delete(series.id)
                raise
            logger.info("Promoted occurrence %s to template of series %s", occurrence.id, series_slug)
            await self._start_eager_batch(series_slug, actor_id)
        return series

    async def update(
        self,
        slug: str,
        patch: Union[SeriesUpdate, Mapping[str, Any]],
        actor_id: ActorId,
        *,
        propagate_changes: bool,
        from_date: Optional[DateLike] = None,
    ) -> Series:
        """Update series metadata and template content.

        Args:
            slug: Series to update
            patch: Fields to change; unset fields are left alone
            actor_id: Who is making the change
            propagate_changes: Also apply the template fields to materialized
                occurrences on or after ``from_date``
            from_date: Propagation cutoff (defaults to now)

        Raises:
            SeriesNotFoundError: If the series does not exist
            InvalidRecurrenceRuleError: If a new rule is malformed
            InvalidTimezoneError: If a new zone is unknown
        """
        if not isinstance(patch, SeriesUpdate):
            try:
                patch = SeriesUpdate.model_validate(dict(patch))
            except ValidationError as e:
                raise _validation_error("Invalid series update", e) from e

        series = await self._get_series(slug)
        fields = patch.model_fields_set
        updates: dict[str, Any] = {"updated_by": actor_id}

        if "recurrence_rule" in fields and patch.recurrence_rule is not None:
            rule = validate_recurrence_rule(patch.recurrence_rule)
            updates["recurrence_rule"] = rule
            updates["recurrence_description"] = describe_pattern(rule)
        if "time_zone" in fields and patch.time_zone is not None:
            updates["time_zone"] = normalize_timezone_name(patch.time_zone)
        if "recurrence_exceptions" in fields:
            try:
                updates["recurrence_exceptions"] = normalize_exception_dates(
                    patch.recurrence_exceptions or [], updates.get("time_zone", series.time_zone)
                )
            except ValueError as e:
                raise SeriesValidationError(f"Invalid recurrence exception: {e}") from e
        if "name" in fields and patch.name is not None:
            updates["name"] = patch.name
        if "description" in fields:
            updates["description"] = patch.description

        with series_context(slug):
            series = await self.series_store.update(series.model_copy(update=updates))
            if "recurrence_rule" in updates:
                logger.info("Recurrence changed to: %s", series.recurrence_description)

            occurrence_patch = patch.occurrence_patch()
            if occurrence_patch.is_empty():
                return series

            changes = occurrence_patch.changes()
            if series.template_occurrence_ref:
                try:
                    await self.occurrence_store.update(
                        series.template_occurrence_ref,
                        {**changes, "updated_by": actor_id, "updated_at": self._now()},
                    )
                except OccurrenceNotFoundError:
                    logger.warning("Template occurrence %s is missing", series.template_occurrence_ref)

            if propagate_changes:
                cutoff = from_date if from_date is not None else self._now()
                await self.materializer.update_future_occurrences(
                    slug, cutoff, occurrence_patch, actor_id
                )
        return series

    async def delete(self, slug: str, actor_id: ActorId, delete_occurrences: bool) -> int:
        """Delete a series, deleting or detaching its occurrences first.

        Detaching clears each occurrence's series reference so the records
        (and their history) survive the series.

        Returns:
            Number of occurrences deleted or detached
        """
        series = await self._get_series(slug)
        with series_context(slug):
            members = await self.occurrence_store.find_by_series_from(series.id, None)
            for occurrence in members:
                if delete_occurrences:
                    await self.occurrence_store.delete(occurrence.id)
                else:
                    await self.occurrence_store.detach_from_series(occurrence.id)

            await self.series_store.delete(series.id)
            logger.info(
                "Deleted series %s by %s (%d occurrences %s)",
                slug,
                actor_id,
                len(members),
                "deleted" if delete_occurrences else "detached",
            )
        return len(members)

    async def associate_occurrence_with_series(
        self, series_slug: str, occurrence_id: str, actor_id: ActorId
    ) -> Occurrence:
        """Attach a standalone occurrence to a series as a one-off member.

        The occurrence keeps its own dates and gets no canonical date, so it
        never collides with a pattern materialization.

        Raises:
            SeriesNotFoundError: If the series does not exist
            OccurrenceNotFoundError: If the occurrence does not exist
            OccurrenceAlreadyInSeriesError: If it belongs to another series
        """
        series = await self._get_series(series_slug)
        occurrence = await self._get_occurrence(occurrence_id)
        if occurrence.series_ref == series.id:
            return occurrence
        if occurrence.series_ref is not None:
            raise OccurrenceAlreadyInSeriesError(occurrence_id, occurrence.series_ref)

        return await self.occurrence_store.update(
            occurrence_id,
            {
                "series_ref": series.id,
                "materialized": True,
                "updated_by": actor_id,
                "updated_at": self._now(),
            },
        )

    async def add_exclusion_date(self, slug: str, date: DateLike, actor_id: ActorId) -> Series:
        """Exclude the civil day of ``date`` from the series pattern.

        Existing occurrences on that day are left as they are.
        """
        series = await self._get_series(slug)
        day = to_civil_date(date, series.time_zone)
        exceptions = normalize_exception_dates([*series.recurrence_exceptions, day])
        logger.debug("Excluding %s from %s", day, slug)
        return await self.series_store.update(
            series.model_copy(update={"recurrence_exceptions": exceptions, "updated_by": actor_id})
        )

    async def remove_exclusion_date(self, slug: str, date: DateLike, actor_id: ActorId) -> Series:
        """Restore a previously excluded civil day; a no-op if it was not excluded."""
        series = await self._get_series(slug)
        day = to_civil_date(date, series.time_zone).isoformat()
        if day not in series.recurrence_exceptions:
            return series
        exceptions = [d for d in series.recurrence_exceptions if d != day]
        return await self.series_store.update(
            series.model_copy(update={"recurrence_exceptions": exceptions, "updated_by": actor_id})
        )
