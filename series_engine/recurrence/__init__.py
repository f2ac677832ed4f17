"""Recurrence pattern expansion (pure functions, no I/O)."""

from .pattern_generator import (
    describe_pattern,
    generate_occurrences,
    is_date_in_recurrence_pattern,
    is_same_day,
    validate_recurrence_rule,
)

__all__ = [
    "describe_pattern",
    "generate_occurrences",
    "is_date_in_recurrence_pattern",
    "is_same_day",
    "validate_recurrence_rule",
]
