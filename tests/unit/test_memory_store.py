"""Tests for the in-memory store implementations."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from series_engine.exceptions import (
    MaterializationConflictError,
    OccurrenceNotFoundError,
    SeriesNotFoundError,
    SeriesSlugTakenError,
)
from series_engine.models import Occurrence, RecurrenceRule, Series

pytestmark = pytest.mark.unit

START = datetime(2025, 10, 6, 22, 0, tzinfo=UTC)


def make_series(slug="walks"):
    return Series(slug=slug, name="Walks", recurrence_rule=RecurrenceRule(frequency="DAILY"))


def make_occurrence(series_ref="s1", when=START, **kwargs):
    fields = {
        "name": "Walk",
        "series_ref": series_ref,
        "canonical_date": when,
        "materialized": True,
        "start_date": when,
    }
    return Occurrence(**{**fields, **kwargs})


class TestInMemorySeriesStore:
    @pytest.mark.asyncio
    async def test_create_and_find(self, series_store):
        series = await series_store.create(make_series())

        assert await series_store.find_by_slug("walks") == series
        assert await series_store.find_by_slug("runs") is None
        assert len(series_store) == 1

    @pytest.mark.asyncio
    async def test_duplicate_slug_is_rejected(self, series_store):
        await series_store.create(make_series())
        with pytest.raises(SeriesSlugTakenError, match="already exists"):
            await series_store.create(make_series())

    @pytest.mark.asyncio
    async def test_update_unknown_series_raises(self, series_store):
        with pytest.raises(SeriesNotFoundError):
            await series_store.update(make_series())

    @pytest.mark.asyncio
    async def test_delete(self, series_store):
        series = await series_store.create(make_series())
        await series_store.delete(series.id)
        assert await series_store.find_by_slug("walks") is None


class TestInMemoryOccurrenceStore:
    @pytest.mark.asyncio
    async def test_find_by_key_ignores_offset_representation(self, occurrence_store):
        occurrence = await occurrence_store.create(make_occurrence())
        eastern = START.astimezone(timezone(timedelta(hours=-4)))

        assert await occurrence_store.find_by_series_and_date("s1", eastern) == occurrence

    @pytest.mark.asyncio
    async def test_duplicate_key_conflicts(self, occurrence_store):
        await occurrence_store.create(make_occurrence())

        with pytest.raises(MaterializationConflictError):
            await occurrence_store.create(make_occurrence())
        assert len(occurrence_store) == 1

    @pytest.mark.asyncio
    async def test_one_offs_without_canonical_date_do_not_conflict(self, occurrence_store):
        await occurrence_store.create(make_occurrence(canonical_date=None))
        await occurrence_store.create(make_occurrence(canonical_date=None))
        assert len(occurrence_store) == 2

    @pytest.mark.asyncio
    async def test_find_by_series_from_is_ascending_and_filtered(self, occurrence_store):
        for offset in (14, 0, 7):
            await occurrence_store.create(make_occurrence(when=START + timedelta(days=offset)))
        await occurrence_store.create(make_occurrence(series_ref="other"))

        found = await occurrence_store.find_by_series_from("s1", START + timedelta(days=1))

        assert [o.start_date for o in found] == [
            START + timedelta(days=7),
            START + timedelta(days=14),
        ]
        assert len(await occurrence_store.find_by_series("s1")) == 3

    @pytest.mark.asyncio
    async def test_update_applies_changes(self, occurrence_store):
        occurrence = await occurrence_store.create(make_occurrence())

        updated = await occurrence_store.update(occurrence.id, {"name": "Hike", "updated_by": 7})

        assert updated.id == occurrence.id
        assert updated.name == "Hike"
        assert updated.updated_by == 7
        assert (await occurrence_store.find_by_id(occurrence.id)).name == "Hike"

    @pytest.mark.asyncio
    async def test_update_unknown_occurrence_raises(self, occurrence_store):
        with pytest.raises(OccurrenceNotFoundError):
            await occurrence_store.update("missing", {"name": "Hike"})

    @pytest.mark.asyncio
    async def test_detach_frees_the_key(self, occurrence_store):
        occurrence = await occurrence_store.create(make_occurrence())

        detached = await occurrence_store.detach_from_series(occurrence.id)

        assert detached.series_ref is None
        assert await occurrence_store.find_by_series_and_date("s1", START) is None
        await occurrence_store.create(make_occurrence())

    @pytest.mark.asyncio
    async def test_delete_removes_index_entry(self, occurrence_store):
        occurrence = await occurrence_store.create(make_occurrence())

        await occurrence_store.delete(occurrence.id)
        await occurrence_store.delete(occurrence.id)

        assert await occurrence_store.find_by_id(occurrence.id) is None
        assert await occurrence_store.find_by_series_and_date("s1", START) is None


class TestInMemoryTemplateLookup:
    @pytest.mark.asyncio
    async def test_follows_template_reference(self, seed_series, template_lookup):
        await seed_series()

        template = await template_lookup.find_template_for_series("book-club")

        assert template.name == "Book Club"
        assert template.location == "Library"

    @pytest.mark.asyncio
    async def test_falls_back_to_latest_occurrence(
        self, series_store, occurrence_store, template_lookup
    ):
        series = await series_store.create(make_series())
        await occurrence_store.create(make_occurrence(series_ref=series.id, location="Old"))
        await occurrence_store.create(
            make_occurrence(series_ref=series.id, when=START + timedelta(days=1), location="New")
        )

        template = await template_lookup.find_template_for_series("walks")

        assert template.location == "New"

    @pytest.mark.asyncio
    async def test_missing_series_or_members(self, series_store, template_lookup):
        assert await template_lookup.find_template_for_series("nope") is None
        await series_store.create(make_series())
        assert await template_lookup.find_template_for_series("walks") is None
