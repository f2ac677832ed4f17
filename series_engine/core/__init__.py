"""Shared infrastructure: configuration, timezones and async orchestration."""
