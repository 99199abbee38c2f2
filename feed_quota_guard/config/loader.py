"""
Configuration management and loading.

Handles application settings, platform credentials (optionally read from
environment variables) and schedule definitions.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from ..core.quota import DEFAULT_DAILY_LIMIT, OperationPriority, QuotaThresholds
from ..platforms.base import PlatformCredentials
from ..platforms.registry import ADAPTER_TYPES
from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import ScheduleDefinition, ScheduleSlot


@dataclass(frozen=True)
class QuotaConfig:
    """Daily budget and admission settings."""
    daily_limit: int = DEFAULT_DAILY_LIMIT
    essential_reserve_percent: float = 5.0
    window_timezone: str = "America/Los_Angeles"
    thresholds: QuotaThresholds = field(default_factory=QuotaThresholds)
    operation_costs: Dict[str, int] = field(default_factory=dict)
    operation_priorities: Dict[str, OperationPriority] = field(default_factory=dict)

    def __post_init__(self):
        """Validate quota values."""
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        if not 0 <= self.essential_reserve_percent < 100:
            raise ValueError("essential_reserve_percent must be >= 0 and < 100")
        for operation, cost in self.operation_costs.items():
            if cost < 0:
                raise ValueError(f"cost of operation '{operation}' cannot be negative")


@dataclass(frozen=True)
class FetchConfig:
    """Retry and timeout settings for upstream requests."""
    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    request_timeout: float = 15.0

    def __post_init__(self):
        """Validate fetch values."""
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("delays must satisfy 0 <= base_delay <= max_delay")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    """Content cache TTLs in seconds."""
    default_ttl: int = 3600
    ttl_by_type: Optional[Dict[str, int]] = None


@dataclass(frozen=True)
class LearningConfig:
    """Effectiveness history bounds."""
    window_records: int = 20
    retention_days: int = 30
    max_records: int = 500

    def __post_init__(self):
        """Validate learning values."""
        if self.window_records <= 0 or self.retention_days <= 0 or self.max_records <= 0:
            raise ValueError("learning values must be > 0")


@dataclass(frozen=True)
class SchedulerConfig:
    """Due detection settings."""
    tolerance_minutes: int = 5

    def __post_init__(self):
        """Validate scheduler values."""
        if self.tolerance_minutes <= 0:
            raise ValueError("tolerance_minutes must be > 0")


@dataclass(frozen=True)
class OrchestratorConfig:
    """Worker pool and ticker settings."""
    max_workers: int = 5
    task_timeout: float = 15.0
    tick_interval: float = 60.0

    def __post_init__(self):
        """Validate orchestrator values."""
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        if self.task_timeout <= 0:
            raise ValueError("task_timeout must be > 0")
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be > 0")


@dataclass(frozen=True)
class PrefetchConfig:
    """Predictive prefetch settings."""
    enabled: bool = True
    analysis_window_minutes: int = 120
    pattern_period_hours: int = 24
    confidence_threshold: float = 0.6
    max_items: int = 20

    def __post_init__(self):
        """Validate prefetch values."""
        if not 0 <= self.confidence_threshold <= 1:
            raise ValueError("confidence_threshold must be between 0 and 1")
        if self.max_items < 0:
            raise ValueError("max_items cannot be negative")


@dataclass(frozen=True)
class StorageConfig:
    """Persistence settings."""
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    quota: QuotaConfig
    fetch: FetchConfig = field(default_factory=FetchConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    prefetch: PrefetchConfig = field(default_factory=PrefetchConfig)
    platforms: Dict[str, PlatformCredentials] = field(default_factory=dict)
    schedules: Tuple[ScheduleDefinition, ...] = ()
    storage: StorageConfig = field(default_factory=StorageConfig)


_SECTION_FIELDS = {
    'fetch': (FetchConfig, {'max_retries': int, 'base_delay': float, 'max_delay': float, 'request_timeout': float}),
    'learning': (LearningConfig, {'window_records': int, 'retention_days': int, 'max_records': int}),
    'scheduler': (SchedulerConfig, {'tolerance_minutes': int}),
    'orchestrator': (OrchestratorConfig, {'max_workers': int, 'task_timeout': float, 'tick_interval': float}),
    'prefetch': (PrefetchConfig, {
        'enabled': bool,
        'analysis_window_minutes': int,
        'pattern_period_hours': int,
        'confidence_threshold': float,
        'max_items': int,
    }),
    'storage': (StorageConfig, {'db_path': str}),
}


def load_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys,
    wrong types and out-of-range values are all rejected.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

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
    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> AppConfig:
    """Validate an already decoded configuration mapping.

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'quota', 'platforms', 'schedules', 'cache'} | set(_SECTION_FIELDS)
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'quota' not in raw_config:
        raise ValueError("Missing required 'quota' section")

    sections = {
        name: _parse_section(raw_config[name], name, cls, fields)
        for name, (cls, fields) in _SECTION_FIELDS.items()
        if name in raw_config
    }

    return AppConfig(
        quota=_parse_quota(raw_config['quota']),
        cache=_parse_cache(raw_config.get('cache', {})),
        platforms=_parse_platforms(raw_config.get('platforms', {})),
        schedules=_parse_schedules(raw_config.get('schedules', [])),
        **sections,
    )


def _require_dict(data: Any, path: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _check_keys(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _coerce(value: Any, expected: type, path: str) -> Any:
    """Check a scalar's type, allowing ints where floats are expected."""
    if expected is bool:
        if not isinstance(value, bool):
            raise ValueError(f"'{path}' must be true or false")
        return value
    if expected is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{path}' must be a number")
        return float(value)
    if expected is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{path}' must be an integer")
        return value
    if not isinstance(value, expected):
        raise ValueError(f"'{path}' must be a {expected.__name__}")
    return value


def _parse_section(data: Any, name: str, cls: type, fields: Dict[str, type]):
    data = _require_dict(data, name)
    _check_keys(data, set(fields), name)
    values = {key: _coerce(value, fields[key], f"{name}.{key}") for key, value in data.items()}
    return cls(**values)


def _parse_quota(data: Any) -> QuotaConfig:
    data = _require_dict(data, 'quota')
    allowed = {
        'daily_limit', 'essential_reserve_percent', 'window_timezone',
        'thresholds', 'operation_costs', 'operation_priorities',
    }
    _check_keys(data, allowed, 'quota')

    if 'daily_limit' not in data:
        raise ValueError("Missing required 'daily_limit' in quota")

    thresholds_data = _require_dict(data.get('thresholds'), 'quota.thresholds')
    _check_keys(thresholds_data, {'moderate', 'high', 'critical'}, 'quota.thresholds')
    thresholds = QuotaThresholds(**{
        key: _coerce(value, float, f"quota.thresholds.{key}")
        for key, value in thresholds_data.items()
    })

    costs = {
        str(op): _coerce(cost, int, f"quota.operation_costs.{op}")
        for op, cost in _require_dict(data.get('operation_costs'), 'quota.operation_costs').items()
    }

    priorities = {}
    for op, value in _require_dict(data.get('operation_priorities'), 'quota.operation_priorities').items():
        try:
            priorities[str(op)] = OperationPriority(str(value).lower())
        except ValueError:
            valid = [p.value for p in OperationPriority]
            raise ValueError(f"'quota.operation_priorities.{op}' must be one of: {valid}")

    timezone_name = _coerce(data.get('window_timezone', "America/Los_Angeles"), str, 'quota.window_timezone')
    _check_timezone(timezone_name, 'quota.window_timezone')

    return QuotaConfig(
        daily_limit=_coerce(data['daily_limit'], int, 'quota.daily_limit'),
        essential_reserve_percent=_coerce(
            data.get('essential_reserve_percent', 5.0), float, 'quota.essential_reserve_percent'
        ),
        window_timezone=timezone_name,
        thresholds=thresholds,
        operation_costs=costs,
        operation_priorities=priorities,
    )


def _parse_cache(data: Any) -> CacheConfig:
    data = _require_dict(data, 'cache')
    _check_keys(data, {'default_ttl', 'ttl_by_type'}, 'cache')
    ttl_by_type = None
    if 'ttl_by_type' in data:
        ttl_by_type = {
            str(content_type): _coerce(ttl, int, f"cache.ttl_by_type.{content_type}")
            for content_type, ttl in _require_dict(data['ttl_by_type'], 'cache.ttl_by_type').items()
        }
    return CacheConfig(
        default_ttl=_coerce(data.get('default_ttl', 3600), int, 'cache.default_ttl'),
        ttl_by_type=ttl_by_type,
    )


def _parse_platforms(data: Any) -> Dict[str, PlatformCredentials]:
    """Parse platform credentials.

    ``api_key_env`` and ``access_token_env`` name environment variables
    to read secrets from, so they need not live in the file.
    """
    data = _require_dict(data, 'platforms')
    allowed = {'api_key', 'api_key_env', 'access_token', 'access_token_env', 'base_url', 'enabled'}
    platforms = {}
    for name, platform_data in data.items():
        path = f"platforms.{name}"
        if name not in ADAPTER_TYPES:
            raise ValueError(f"Unknown platform '{name}', expected one of: {sorted(ADAPTER_TYPES)}")
        platform_data = _require_dict(platform_data, path)
        _check_keys(platform_data, allowed, path)

        api_key = platform_data.get('api_key')
        if 'api_key_env' in platform_data:
            api_key = os.environ.get(platform_data['api_key_env'], api_key)
        access_token = platform_data.get('access_token')
        if 'access_token_env' in platform_data:
            access_token = os.environ.get(platform_data['access_token_env'], access_token)

        platforms[name] = PlatformCredentials(
            api_key=api_key,
            access_token=access_token,
            base_url=platform_data.get('base_url'),
            enabled=_coerce(platform_data.get('enabled', True), bool, f"{path}.enabled"),
        )
    return platforms


def _parse_schedules(data: Any) -> Tuple[ScheduleDefinition, ...]:
    if data is None:
        return ()
    if not isinstance(data, list):
        raise ValueError("'schedules' must be a list")

    allowed = {
        'id', 'channel_id', 'platform', 'priority', 'timezone',
        'active', 'content_type', 'operation', 'slots',
    }
    schedules: List[ScheduleDefinition] = []
    seen_ids = set()
    for index, entry in enumerate(data):
        path = f"schedules[{index}]"
        if not isinstance(entry, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _check_keys(entry, allowed, path)
        for key in ('id', 'channel_id', 'platform'):
            if key not in entry:
                raise ValueError(f"Missing required '{key}' in {path}")

        schedule_id = _coerce(entry['id'], int, f"{path}.id")
        if schedule_id in seen_ids:
            raise ValueError(f"Duplicate schedule id {schedule_id} in {path}")
        seen_ids.add(schedule_id)

        slots = []
        for slot_index, slot in enumerate(entry.get('slots') or []):
            slot_path = f"{path}.slots[{slot_index}]"
            if not isinstance(slot, dict):
                raise ValueError(f"'{slot_path}' must be a dictionary")
            _check_keys(slot, {'day', 'time'}, slot_path)
            if 'day' not in slot or 'time' not in slot:
                raise ValueError(f"'{slot_path}' requires 'day' and 'time'")
            try:
                slots.append(ScheduleSlot.parse(slot['day'], _slot_time(slot['time'])))
            except ValueError as e:
                raise ValueError(f"Invalid {slot_path}: {e}")

        try:
            schedules.append(ScheduleDefinition(
                id=schedule_id,
                channel_id=str(entry['channel_id']),
                platform=str(entry['platform']),
                priority=_coerce(entry.get('priority', 3), int, f"{path}.priority"),
                slots=tuple(slots),
                timezone=str(entry.get('timezone', "UTC")),
                active=_coerce(entry.get('active', True), bool, f"{path}.active"),
                content_type=str(entry.get('content_type', "video")),
                operation=entry.get('operation'),
            ))
        except ValueError as e:
            raise ValueError(f"Invalid {path}: {e}")
    return tuple(schedules)


def _slot_time(value: Any) -> str:
    # YAML 1.1 reads an unquoted 9:30 as the sexagesimal integer 570
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value // 60:02d}:{value % 60:02d}"
    return str(value)


def _check_timezone(name: str, path: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"'{path}' is not a known timezone: {name}")
