from collections.abc import Awaitable, Callable, Generator
from datetime import UTC, datetime, timedelta
from typing import Any, Optional

import pytest

from series_engine.core.config_manager import MaterializationConfig
from series_engine.domain.materializer import OccurrenceMaterializer
from series_engine.domain.series_lifecycle import SeriesLifecycle
from series_engine.models import Occurrence, RecurrenceRule, Series
from series_engine.recurrence.pattern_generator import describe_pattern
from series_engine.stores.memory import (
    InMemoryOccurrenceStore,
    InMemorySeriesStore,
    InMemoryTemplateLookup,
)

# Monday 2025-10-06, 08:00 in New York
FIXED_NOW = datetime(2025, 10, 6, 12, 0, tzinfo=UTC)

# Wednesday 2025-10-01, 18:00 in New York
WEEKLY_ANCHOR = datetime(2025, 10, 1, 22, 0, tzinfo=UTC)

SERIES_TZ = "America/New_York"


def pytest_configure(config: Any) -> None:
    """Register test markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Tests wiring several components together")


class FrozenClock:
    """Callable clock returning a settable instant."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Clear SERIES_ENGINE_* variables so host settings never leak into tests."""
    import os

    for key in list(os.environ):
        if key.startswith("SERIES_ENGINE_"):
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(FIXED_NOW)


@pytest.fixture
def config() -> MaterializationConfig:
    """Defaults, with the eager batch awaited so tests stay deterministic."""
    return MaterializationConfig(eager_materialization_blocking=True)


@pytest.fixture
def series_store() -> InMemorySeriesStore:
    return InMemorySeriesStore()


@pytest.fixture
def occurrence_store() -> InMemoryOccurrenceStore:
    return InMemoryOccurrenceStore()


@pytest.fixture
def template_lookup(
    series_store: InMemorySeriesStore, occurrence_store: InMemoryOccurrenceStore
) -> InMemoryTemplateLookup:
    return InMemoryTemplateLookup(series_store, occurrence_store)


@pytest.fixture
def materializer(
    series_store: InMemorySeriesStore,
    template_lookup: InMemoryTemplateLookup,
    occurrence_store: InMemoryOccurrenceStore,
    config: MaterializationConfig,
    clock: FrozenClock,
) -> OccurrenceMaterializer:
    return OccurrenceMaterializer(
        series_store, template_lookup, occurrence_store, config=config, now=clock
    )


@pytest.fixture
def lifecycle(
    series_store: InMemorySeriesStore,
    occurrence_store: InMemoryOccurrenceStore,
    materializer: OccurrenceMaterializer,
    config: MaterializationConfig,
    clock: FrozenClock,
) -> SeriesLifecycle:
    return SeriesLifecycle(series_store, occurrence_store, materializer, config=config, now=clock)


@pytest.fixture
def weekly_rule() -> RecurrenceRule:
    return RecurrenceRule(frequency="WEEKLY", by_weekday=["MO", "WE", "FR"])


@pytest.fixture
def seed_series(
    series_store: InMemorySeriesStore, occurrence_store: InMemoryOccurrenceStore
) -> Callable[..., Awaitable[Series]]:
    """Factory storing a series plus its template occurrence directly in the stores.

    Bypasses the lifecycle so no eager materialization happens.
    """

    async def _seed(
        slug: str = "book-club",
        rule: Optional[RecurrenceRule] = None,
        anchor: datetime = WEEKLY_ANCHOR,
        time_zone: str = SERIES_TZ,
        exceptions: Optional[list[str]] = None,
        duration: timedelta = timedelta(hours=1),
        with_template: bool = True,
    ) -> Series:
        rule = rule or RecurrenceRule(frequency="WEEKLY", by_weekday=["MO", "WE", "FR"])
        series = Series(
            slug=slug,
            name="Book Club",
            time_zone=time_zone,
            recurrence_rule=rule,
            recurrence_description=describe_pattern(rule),
            recurrence_exceptions=exceptions or [],
            created_at=anchor,
        )
        await series_store.create(series)
        if not with_template:
            return series

        template = Occurrence(
            name="Book Club",
            description="Monthly reads",
            location="Library",
            max_attendees=12,
            category_refs=["books"],
            slug=f"{slug}-template",
            series_ref=series.id,
            canonical_date=anchor,
            materialized=True,
            start_date=anchor,
            end_date=anchor + duration,
            time_zone=time_zone,
        )
        await occurrence_store.create(template)
        series = series.model_copy(update={"template_occurrence_ref": template.id})
        return await series_store.update(series)

    return _seed
