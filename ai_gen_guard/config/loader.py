"""
Configuration management and loading.

Handles admission control settings from YAML and environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ai_gen_guard.core.rate_limiter import RateLimitCategory, default_categories

MEDIA_ENVIRONMENTS = ("preview", "production")
MEDIA_ENVIRONMENT_VAR = "VEO_ENVIRONMENT"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS = ("colored", "json")


@dataclass(frozen=True)
class RateLimitSettings:
    """Token bucket categories and bucket housekeeping."""
    categories: Dict[str, RateLimitCategory]
    idle_ttl_seconds: float = 600.0
    sweep_batch: int = 32

    def __post_init__(self):
        if not self.categories:
            raise ValueError("at least one rate limit category is required")
        if self.idle_ttl_seconds <= 0:
            raise ValueError("idle_ttl_seconds must be > 0")
        if self.sweep_batch < 1:
            raise ValueError("sweep_batch must be >= 1")


@dataclass(frozen=True)
class BudgetSettings:
    """Monthly spend ceiling per principal."""
    monthly_limit_usd: float = 500.0
    utc_offset_hours: float = 0.0
    spend_cache_ttl_seconds: float = 10.0
    alert_thresholds: Tuple[float, ...] = (0.75, 0.9, 0.95)

    def __post_init__(self):
        if self.monthly_limit_usd <= 0:
            raise ValueError("monthly_limit_usd must be > 0")
        if not -12 <= self.utc_offset_hours <= 14:
            raise ValueError("utc_offset_hours must be between -12 and 14")
        if self.spend_cache_ttl_seconds < 0:
            raise ValueError("spend_cache_ttl_seconds cannot be negative")
        if any(not 0 < t < 1 for t in self.alert_thresholds):
            raise ValueError("alert_thresholds must be between 0 and 1")


@dataclass(frozen=True)
class CacheSettings:
    """Response cache bounds."""
    ttl_seconds: float = 600.0
    max_entries: int = 200
    sweep_batch: int = 64

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if self.max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if self.sweep_batch < 1:
            raise ValueError("sweep_batch must be >= 1")


@dataclass(frozen=True)
class GenerationSettings:
    """Generation job timeouts and retry policy."""
    submit_timeout_seconds: float = 60.0
    max_generation_seconds: float = 900.0
    max_error_length: int = 500
    max_retries: Optional[int] = None

    def __post_init__(self):
        if self.submit_timeout_seconds <= 0:
            raise ValueError("submit_timeout_seconds must be > 0")
        if self.max_generation_seconds <= 0:
            raise ValueError("max_generation_seconds must be > 0")
        if self.max_error_length < 10:
            raise ValueError("max_error_length must be >= 10")
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    format: str = "colored"

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {list(LOG_LEVELS)}")
        if self.format not in LOG_FORMATS:
            raise ValueError(f"logging format must be one of: {list(LOG_FORMATS)}")


@dataclass(frozen=True)
class Settings:
    """Complete admission control configuration."""
    media_environment: str
    rate_limits: RateLimitSettings
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    def __post_init__(self):
        if self.media_environment not in MEDIA_ENVIRONMENTS:
            raise ValueError(f"media_environment must be one of: {list(MEDIA_ENVIRONMENTS)}")


def _media_environment_from_env() -> str:
    value = os.environ.get(MEDIA_ENVIRONMENT_VAR, "preview")
    return "production" if value == "production" else "preview"


def default_settings(media_environment: Optional[str] = None) -> Settings:
    """Built-in settings; media environment falls back to $VEO_ENVIRONMENT."""
    env = media_environment or _media_environment_from_env()
    return Settings(
        media_environment=env,
        rate_limits=RateLimitSettings(categories=default_categories(env)),
    )


def load_settings(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Every section is optional and falls back to the built-in defaults, but
    unknown keys and out-of-range values are rejected so a typo can never
    silently loosen a limit.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    _reject_unknown(
        raw_config,
        {'media_environment', 'rate_limits', 'budget', 'cache', 'generation', 'logging'},
        "configuration",
    )

    media_environment = raw_config.get('media_environment') or _media_environment_from_env()
    if media_environment not in MEDIA_ENVIRONMENTS:
        raise ValueError(f"media_environment must be one of: {list(MEDIA_ENVIRONMENTS)}")

    rate_limits = _parse_rate_limits(_section(raw_config, 'rate_limits'), media_environment)

    budget_data = _section(raw_config, 'budget')
    _reject_unknown(
        budget_data,
        {'monthly_limit_usd', 'utc_offset_hours', 'spend_cache_ttl_seconds', 'alert_thresholds'},
        "budget",
    )
    thresholds = budget_data.get('alert_thresholds', BudgetSettings.alert_thresholds)
    if not isinstance(thresholds, (list, tuple)):
        raise ValueError("'budget.alert_thresholds' must be a list")
    budget = BudgetSettings(
        monthly_limit_usd=_number(budget_data, 'monthly_limit_usd', 500.0, "budget"),
        utc_offset_hours=_number(budget_data, 'utc_offset_hours', 0.0, "budget"),
        spend_cache_ttl_seconds=_number(budget_data, 'spend_cache_ttl_seconds', 10.0, "budget"),
        alert_thresholds=tuple(float(t) for t in thresholds),
    )

    cache_data = _section(raw_config, 'cache')
    _reject_unknown(cache_data, {'ttl_seconds', 'max_entries', 'sweep_batch'}, "cache")
    cache = CacheSettings(
        ttl_seconds=_number(cache_data, 'ttl_seconds', 600.0, "cache"),
        max_entries=_integer(cache_data, 'max_entries', 200, "cache"),
        sweep_batch=_integer(cache_data, 'sweep_batch', 64, "cache"),
    )

    generation_data = _section(raw_config, 'generation')
    _reject_unknown(
        generation_data,
        {'submit_timeout_seconds', 'max_generation_seconds', 'max_error_length', 'max_retries'},
        "generation",
    )
    max_retries = generation_data.get('max_retries')
    if max_retries is not None:
        max_retries = _integer(generation_data, 'max_retries', None, "generation")
    generation = GenerationSettings(
        submit_timeout_seconds=_number(generation_data, 'submit_timeout_seconds', 60.0, "generation"),
        max_generation_seconds=_number(generation_data, 'max_generation_seconds', 900.0, "generation"),
        max_error_length=_integer(generation_data, 'max_error_length', 500, "generation"),
        max_retries=max_retries,
    )

    logging_data = _section(raw_config, 'logging')
    _reject_unknown(logging_data, {'level', 'format'}, "logging")
    logging_settings = LoggingSettings(
        level=str(logging_data.get('level', 'INFO')).upper(),
        format=str(logging_data.get('format', 'colored')).lower(),
    )

    return Settings(
        media_environment=media_environment,
        rate_limits=rate_limits,
        budget=budget,
        cache=cache,
        generation=generation,
        logging=logging_settings,
    )


def _parse_rate_limits(data: Dict[str, Any], media_environment: str) -> RateLimitSettings:
    """Merge configured categories over the built-in ones.

    Raises:
        ValueError: If configuration is invalid
    """
    _reject_unknown(data, {'idle_ttl_seconds', 'sweep_batch', 'categories'}, "rate_limits")

    categories = default_categories(media_environment)
    categories_data = data.get('categories', {}) or {}
    if not isinstance(categories_data, dict):
        raise ValueError("'rate_limits.categories' must be a dictionary")

    for name, category_data in categories_data.items():
        path = f"rate_limits.categories.{name}"
        if not isinstance(category_data, dict):
            raise ValueError(f"Category '{name}' must be a dictionary")
        _reject_unknown(category_data, {'capacity', 'refill_rate'}, path)
        for key in ('capacity', 'refill_rate'):
            if key not in category_data:
                raise ValueError(f"Missing required '{key}' in {path}")
        capacity = _number(category_data, 'capacity', None, path)
        refill_rate = _number(category_data, 'refill_rate', None, path)
        if capacity < 1:
            raise ValueError(f"'capacity' in {path} must be >= 1")
        if refill_rate <= 0:
            raise ValueError(f"'refill_rate' in {path} must be > 0")
        categories[name] = RateLimitCategory(capacity=capacity, refill_rate=refill_rate)

    return RateLimitSettings(
        categories=categories,
        idle_ttl_seconds=_number(data, 'idle_ttl_seconds', 600.0, "rate_limits"),
        sweep_batch=_integer(data, 'sweep_batch', 32, "rate_limits"),
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict[str, Any], key: str, default: Optional[float], path: str) -> float:
    value = data.get(key, default)
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _integer(data: Dict[str, Any], key: str, default: Optional[int], path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value
