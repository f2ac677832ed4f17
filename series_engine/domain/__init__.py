"""Occurrence materialization and series lifecycle."""
