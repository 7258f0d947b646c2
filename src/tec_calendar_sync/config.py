"""
Loading SyncConfig from the ``[calendar-sync]`` section of an INI file.
"""

import importlib
from collections.abc import Callable
from configparser import ConfigParser
from dataclasses import fields
from pathlib import Path
from typing import Any

from tec_calendar_sync.models import DEFAULT_CONFIG
from tec_calendar_sync.models import CalendarSyncError
from tec_calendar_sync.models import SyncConfig

SECTION = "calendar-sync"

_INT_KEYS = frozenset(
    {
        "max_retries",
        "rate_limit_threshold",
        "max_rate_limit_deferrals",
        "lookback_days",
        "lookahead_days",
        "pull_limit",
        "lock_ttl_seconds",
        "retry_batch_size",
    }
)
_FLOAT_KEYS = frozenset({"retry_base_delay_minutes", "max_throttle_delay", "throttle_step"})
_STR_KEYS = frozenset(
    {
        "default_calendar_id",
        "conflict_policy",
        "identity_context",
        "client_factory",
        "mapper_factory",
    }
)


def load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if SECTION not in parser:
        return {}
    return dict(parser[SECTION])


def _convert(key: str, raw: str) -> Any:
    raw = raw.strip()
    if key in _INT_KEYS:
        try:
            return int(raw)
        except ValueError:
            raise CalendarSyncError(f"Config key {key!r} must be an integer, got {raw!r}") from None
    if key in _FLOAT_KEYS:
        try:
            return float(raw)
        except ValueError:
            raise CalendarSyncError(f"Config key {key!r} must be a number, got {raw!r}") from None
    if key == "state_db_path":
        return Path(raw).expanduser()
    return raw or None


def load_config(config_path: Path = DEFAULT_CONFIG, **overrides) -> SyncConfig:
    """Build a SyncConfig from file values, then apply non-None ``overrides``.

    Unknown keys in the file are ignored.
    """
    known = {f.name for f in fields(SyncConfig)}
    values: dict[str, Any] = {}
    for key, raw in load_config_file(config_path).items():
        if key in _INT_KEYS or key in _FLOAT_KEYS or key in _STR_KEYS or key == "state_db_path":
            converted = _convert(key, raw)
            if converted is not None:
                values[key] = converted

    for key, value in overrides.items():
        if key not in known:
            raise CalendarSyncError(f"Unknown config option {key!r}")
        if value is not None:
            values[key] = value

    return SyncConfig(**values)


def resolve_factory(reference: str) -> Callable[..., Any]:
    """Import a ``package.module:callable`` reference."""
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise CalendarSyncError(f"Factory must look like 'module:callable', got {reference!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise CalendarSyncError(f"Cannot import {module_name!r}: {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise CalendarSyncError(f"{reference!r} is not a callable")
    return factory
