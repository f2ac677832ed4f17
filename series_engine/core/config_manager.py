"""Configuration management for the series engine."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .timezone_utils import DEFAULT_SERIES_TIMEZONE

logger = logging.getLogger(__name__)

ENV_PREFIX = "SERIES_ENGINE_"


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env file and return key-value pairs.

    Args:
        path: Path to .env file

    Returns:
        Dictionary of key-value pairs from the .env file.
        Empty dict if file doesn't exist or cannot be read.

    Note:
        - Skips empty lines and comments (lines starting with #)
        - Strips quotes (both single and double) from values
        - Handles KEY=VALUE format with optional whitespace
    """
    if not path.exists():
        return {}

    result: dict[str, str] = {}

    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        logger.debug("Failed to read .env file (continuing): %s", str(path), exc_info=True)
        return {}

    for raw_line in content.splitlines():
        line = raw_line.strip()

        if not line or line.startswith("#"):
            continue

        if "=" not in line:
            continue

        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip().strip('"').strip("'")

        if key:
            result[key] = val

    return result


def _parse_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _positive(parse: Callable[[str], Any]) -> Callable[[str], Any]:
    def parse_positive(raw: str) -> Any:
        value = parse(raw)
        if value <= 0:
            raise ValueError(f"must be positive: {raw!r}")
        return value

    return parse_positive


# Environment variable suffix -> (config key, parser)
_ENV_SETTINGS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "EAGER_OCCURRENCE_COUNT": ("eager_occurrence_count", _positive(int)),
    "EAGER_BATCH_SIZE": ("eager_batch_size", _positive(int)),
    "EAGER_ITEM_TIMEOUT_SECONDS": ("eager_item_timeout_seconds", _positive(float)),
    "EAGER_BLOCKING": ("eager_materialization_blocking", _parse_bool),
    "NEXT_OCCURRENCE_WINDOW": ("next_occurrence_window", _positive(int)),
    "NEXT_N_DEFAULT": ("next_n_default", _positive(int)),
    "MAX_UPCOMING_COUNT": ("max_upcoming_count", _positive(int)),
    "PAST_LOOKBACK_MONTHS": ("past_lookback_months", _positive(int)),
    "GENERATION_CAP": ("generation_cap", _positive(int)),
    "GENERATION_HORIZON_YEARS": ("generation_horizon_years", _positive(int)),
}


class ConfigManager:
    """Manages engine configuration from environment variables and .env files."""

    def __init__(self, env_file_path: Path | None = None):
        """Initialize configuration manager.

        Args:
            env_file_path: Optional path to .env file (defaults to .env in current directory)
        """
        self.env_file_path = env_file_path or Path.cwd() / ".env"

    def load_env_file(self) -> list[str]:
        """Load .env file and set environment variables.

        Only sets variables that are not already in the environment to avoid
        surprising overrides of user's environment.

        Returns:
            List of environment variable keys that were loaded from .env file
        """
        if not self.env_file_path.exists():
            logger.debug("No .env file found at %s", self.env_file_path)
            return []

        parsed = parse_env_file(self.env_file_path)

        set_keys = []
        for key, val in parsed.items():
            if key not in os.environ:
                os.environ[key] = val
                set_keys.append(key)

        if set_keys:
            logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))

        return set_keys

    def build_config_from_env(self) -> dict[str, Any]:
        """Build configuration dictionary from SERIES_ENGINE_* environment variables.

        Recognizes every tunable of ``MaterializationConfig`` (for example
        SERIES_ENGINE_EAGER_BATCH_SIZE -> 'eager_batch_size') plus
        SERIES_ENGINE_DEFAULT_TIMEZONE -> 'default_timezone'. Malformed or
        non-positive values are logged and ignored.

        Returns:
            Configuration dictionary
        """
        cfg: dict[str, Any] = {}

        for suffix, (key, parse) in _ENV_SETTINGS.items():
            env_name = ENV_PREFIX + suffix
            raw = os.environ.get(env_name)
            if raw is None or raw.strip() == "":
                continue
            try:
                cfg[key] = parse(raw)
            except ValueError:
                logger.warning("Invalid %s=%r; ignoring", env_name, raw)

        default_tz = os.environ.get(ENV_PREFIX + "DEFAULT_TIMEZONE")
        if default_tz:
            cfg["default_timezone"] = default_tz

        return cfg

    def load_full_config(self) -> dict[str, Any]:
        """Load .env file and build configuration from environment.

        This is the main entry point for loading configuration.
        """
        self.load_env_file()
        return self.build_config_from_env()


def get_config_value(config: Any, key: str, default: Any = None) -> Any:
    """Get configuration value supporting both dict and dataclass-like objects.

    Args:
        config: Configuration object (dict or object with attributes)
        key: Configuration key to retrieve
        default: Default value if key not found

    Returns:
        Configuration value or default
    """
    if isinstance(config, dict):
        return config.get(key, default)
    return getattr(config, key, default)


@dataclass(frozen=True)
class MaterializationConfig:
    """Tunable caps and timeouts for materialization.

    Consolidates every bound the engine applies to open-ended work with
    explicit defaults.
    """

    # Eager batch at series creation
    eager_occurrence_count: int = 5
    eager_batch_size: int = 2
    eager_item_timeout_seconds: float = 5.0
    eager_materialization_blocking: bool = False

    # Scans and listings
    next_occurrence_window: int = 5
    next_n_default: int = 2
    max_upcoming_count: int = 50
    past_lookback_months: int = 3

    # Pattern expansion bounds for rules without count/until
    generation_cap: int = 100
    generation_horizon_years: int = 100

    default_timezone: str = DEFAULT_SERIES_TIMEZONE

    @classmethod
    def from_settings(cls, settings: Any) -> MaterializationConfig:
        """Extract materialization configuration from a dict or settings object.

        Args:
            settings: Mapping or object with materialization settings

        Returns:
            MaterializationConfig with values from settings or defaults
        """
        defaults = cls()
        return cls(
            **{
                name: get_config_value(settings, name, getattr(defaults, name))
                for name in cls.__dataclass_fields__
            }
        )

    @classmethod
    def from_env(cls, env_file_path: Path | None = None) -> MaterializationConfig:
        """Build configuration from SERIES_ENGINE_* variables and an optional .env file."""
        return cls.from_settings(ConfigManager(env_file_path).load_full_config())
