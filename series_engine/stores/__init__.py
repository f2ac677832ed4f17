"""Reference store implementations."""

from .memory import InMemoryOccurrenceStore, InMemorySeriesStore, InMemoryTemplateLookup

__all__ = ["InMemoryOccurrenceStore", "InMemorySeriesStore", "InMemoryTemplateLookup"]
