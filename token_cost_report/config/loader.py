"""
Configuration management and loading.

Reads report settings (pricing overrides, forecast parameters, limits)
from a YAML file with strict validation.
"""

from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from token_cost_report.core.burn_rate import ForecastConfig
from token_cost_report.core.pipeline import DEFAULT_WORKERS
from token_cost_report.core.pricing import ModelPricing


@dataclass(frozen=True)
class ReportConfig:
    """Complete report configuration."""
    pricing: Dict[str, ModelPricing] = field(default_factory=dict)
    default_pricing: Optional[ModelPricing] = None
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    workers: int = DEFAULT_WORKERS
    timezone: str = "UTC"

    def __post_init__(self):
        """Validate worker count."""
        if self.workers <= 0:
            raise ValueError("workers must be > 0")

    @property
    def tzinfo(self) -> tzinfo:
        """Timezone used for calendar-date bucketing."""
        return _resolve_timezone(self.timezone)


def _resolve_timezone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {name}")


def load_report_config(path: str) -> ReportConfig:
    """Load and validate report configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ReportConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Report config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'pricing', 'default_pricing', 'forecast', 'limits', 'workers', 'timezone'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    # Pricing overrides
    pricing_data = raw_config.get('pricing') or {}
    if not isinstance(pricing_data, dict):
        raise ValueError("'pricing' must be a dictionary")
    pricing = {}
    for model, entry in pricing_data.items():
        pricing[str(model)] = _parse_price_entry(entry, f"pricing.{model}")

    default_pricing = None
    if raw_config.get('default_pricing') is not None:
        default_pricing = _parse_price_entry(raw_config['default_pricing'], "default_pricing")

    forecast = _parse_forecast(raw_config.get('forecast') or {}, raw_config.get('limits') or {})

    workers = raw_config.get('workers', DEFAULT_WORKERS)
    if isinstance(workers, bool) or not isinstance(workers, int) or workers <= 0:
        raise ValueError("'workers' must be an integer > 0")

    tz_name = raw_config.get('timezone', "UTC")
    if not isinstance(tz_name, str):
        raise ValueError("'timezone' must be a string")
    _resolve_timezone(tz_name)

    return ReportConfig(
        pricing=pricing,
        default_pricing=default_pricing,
        forecast=forecast,
        workers=workers,
        timezone=tz_name,
    )


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_price_entry(data, path: str) -> ModelPricing:
    """Parse published per-million prices into ModelPricing.

    Args:
        data: Price entry with input/output and optional cache prices
        path: Path for error messages

    Returns:
        ModelPricing with per-token rates

    Raises:
        ValueError: If the entry is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {'input', 'output', 'cache_creation', 'cache_read'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for required in ('input', 'output'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")

    prices = {}
    for key in ('input', 'output', 'cache_creation', 'cache_read'):
        value = data.get(key, 0)
        if not _is_number(value) or value < 0:
            raise ValueError(f"'{key}' in {path} must be a number >= 0")
        prices[key] = value

    return ModelPricing.from_published(
        prices['input'], prices['output'], prices['cache_creation'], prices['cache_read']
    )


def _parse_forecast(forecast_data, limits_data) -> ForecastConfig:
    """Parse the forecast and limits sections into a ForecastConfig."""
    if not isinstance(forecast_data, dict):
        raise ValueError("'forecast' must be a dictionary")
    if not isinstance(limits_data, dict):
        raise ValueError("'limits' must be a dictionary")

    allowed_forecast = {'active_hours_per_day', 'trend_threshold_percent', 'days_per_month'}
    unknown = set(forecast_data.keys()) - allowed_forecast
    if unknown:
        raise ValueError(f"Unknown forecast keys: {unknown}")

    allowed_limits = {'tokens', 'cost'}
    unknown = set(limits_data.keys()) - allowed_limits
    if unknown:
        raise ValueError(f"Unknown limits keys: {unknown}")

    kwargs = {}
    for key in ('active_hours_per_day', 'trend_threshold_percent'):
        if key in forecast_data:
            if not _is_number(forecast_data[key]):
                raise ValueError(f"'forecast.{key}' must be a number")
            kwargs[key] = float(forecast_data[key])
    if 'days_per_month' in forecast_data:
        days = forecast_data['days_per_month']
        if isinstance(days, bool) or not isinstance(days, int):
            raise ValueError("'forecast.days_per_month' must be an integer")
        kwargs['days_per_month'] = days

    if limits_data.get('tokens') is not None:
        tokens = limits_data['tokens']
        if isinstance(tokens, bool) or not isinstance(tokens, int):
            raise ValueError("'limits.tokens' must be an integer")
        kwargs['token_limit'] = tokens
    if limits_data.get('cost') is not None:
        if not _is_number(limits_data['cost']):
            raise ValueError("'limits.cost' must be a number")
        kwargs['cost_limit'] = float(limits_data['cost'])

    # ForecastConfig performs the range checks
    return ForecastConfig(**kwargs)
