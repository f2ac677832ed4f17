"""series_engine - recurring-series expansion and occurrence materialization.

The pattern functions live in ``series_engine.recurrence``; the stateful
materializer and series lifecycle live in ``series_engine.domain`` and talk
to storage through the Protocols in ``series_engine.domain.protocols``.
"""

from __future__ import annotations

__version__ = "0.1.0"

from typing import TYPE_CHECKING, Optional

from .engine_logging import init_logging

if TYPE_CHECKING:
    from .core.config_manager import MaterializationConfig
    from .domain.protocols import TimeProvider
    from .domain.series_lifecycle import SeriesLifecycle


def create_in_memory_engine(
    config: Optional[MaterializationConfig] = None, now: Optional[TimeProvider] = None
) -> SeriesLifecycle:
    """Wire a lifecycle and materializer to fresh in-memory stores.

    Args:
        config: Optional materialization config (read from the environment when None)
        now: Optional clock callable returning aware UTC time

    Returns:
        The ``SeriesLifecycle``; its ``materializer`` attribute exposes the
        materializer, and both hold the stores.
    """
    from .core.config_manager import MaterializationConfig
    from .domain.materializer import OccurrenceMaterializer
    from .domain.series_lifecycle import SeriesLifecycle
    from .stores.memory import InMemoryOccurrenceStore, InMemorySeriesStore, InMemoryTemplateLookup

    effective_config = config if config is not None else MaterializationConfig.from_env()
    series_store = InMemorySeriesStore()
    occurrence_store = InMemoryOccurrenceStore()
    materializer = OccurrenceMaterializer(
        series_store,
        InMemoryTemplateLookup(series_store, occurrence_store),
        occurrence_store,
        config=effective_config,
        now=now,
    )
    return SeriesLifecycle(
        series_store, occurrence_store, materializer, config=effective_config, now=now
    )


__all__ = ["__version__", "create_in_memory_engine", "init_logging"]
