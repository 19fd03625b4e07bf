"""Collector configuration.

Settings come from three layers, later ones winning:
    1. CollectorConfig defaults
    2. A YAML file (path argument or DEPRECATION_COLLECTOR_CONFIG)
    3. DEPRECATION_COLLECTOR_* environment variables

Hooks (context_saver, fingerprinter) are code, so they can only be set
programmatically through DeprecationCollector.configure().

Usage:
    from deprecation_collector.config import load_config

    config = load_config()            # env + optional YAML
    config = load_config("dc.yaml")   # explicit YAML file
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml

from .deprecation import DEFAULT_SHIM_MARKERS
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "DEPRECATION_COLLECTOR_"
CONFIG_PATH_ENV = ENV_PREFIX + "CONFIG"

MessagePattern = Union[str, re.Pattern]

# Fields that can only be set from code.
HOOK_FIELDS = frozenset({"context_saver", "fingerprinter"})

# Fields forwarded to the storage backend.
STORAGE_FIELDS = ("write_interval", "write_interval_jitter", "count")


@dataclass
class CollectorConfig:
    """Effective collector settings.

    write_interval, write_interval_jitter and count are None until set, meaning "keep
    the backend's own value" (900s / 60s by default).
    """

    write_interval: Optional[float] = None
    write_interval_jitter: Optional[float] = None
    count: Optional[bool] = None
    exclude_realms: List[str] = field(default_factory=list)
    ignored_messages: List[MessagePattern] = field(default_factory=list)
    app_root: str = field(default_factory=os.getcwd)
    app_revision: Optional[str] = None
    save_full_backtrace: bool = False
    print_to_stderr: bool = False
    print_recurring: bool = False
    raise_on_deprecation: bool = False
    shim_markers: List[str] = field(default_factory=lambda: list(DEFAULT_SHIM_MARKERS))
    context_saver: Optional[Callable[[], Any]] = None
    fingerprinter: Optional[Callable[[Any], Any]] = None
    # backend selection, used by storage.create_storage()
    storage: str = "log"
    key_prefix: str = "deprecations"
    redis_url: Optional[str] = None
    database_path: Optional[str] = None
    table: str = "deprecations"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        for name in ("write_interval", "write_interval_jitter"):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{name} must be a number, got {value!r}")
            if value < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {value!r}")
        if isinstance(self.exclude_realms, str):
            self.exclude_realms = [self.exclude_realms]
        if isinstance(self.ignored_messages, (str, re.Pattern)):
            self.ignored_messages = [self.ignored_messages]
        for hook in HOOK_FIELDS:
            value = getattr(self, hook)
            if value is not None and not callable(value):
                raise ConfigurationError(f"{hook} must be callable")

    def replace(self, **changes: Any) -> "CollectorConfig":
        """Return a copy with changes applied.

        Raises:
            ConfigurationError: On unknown option names or invalid values.
        """
        unknown = sorted(set(changes) - field_names())
        if unknown:
            raise ConfigurationError(f"unknown configuration option(s): {', '.join(unknown)}")
        return dataclasses.replace(self, **changes)

    def storage_options(self) -> Dict[str, Any]:
        """Backend options that were explicitly set."""
        return {name: getattr(self, name) for name in STORAGE_FIELDS if getattr(self, name) is not None}

    def compiled_ignore_patterns(self) -> List[re.Pattern]:
        return [
            pattern if isinstance(pattern, re.Pattern) else re.compile(re.escape(pattern))
            for pattern in self.ignored_messages
        ]


def field_names() -> frozenset:
    return frozenset(f.name for f in dataclasses.fields(CollectorConfig))


# =============================================================================
# Environment parsing
# =============================================================================


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name.upper()} expects a boolean, got {value!r}")


def _parse_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{name.upper()} expects a number, got {value!r}") from e


def _parse_list(name: str, value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_str(name: str, value: str) -> str:
    return value


_ENV_PARSERS: Dict[str, Callable[[str, str], Any]] = {
    "write_interval": _parse_float,
    "write_interval_jitter": _parse_float,
    "count": _parse_bool,
    "exclude_realms": _parse_list,
    "ignored_messages": _parse_list,
    "app_root": _parse_str,
    "app_revision": _parse_str,
    "save_full_backtrace": _parse_bool,
    "print_to_stderr": _parse_bool,
    "print_recurring": _parse_bool,
    "raise_on_deprecation": _parse_bool,
    "storage": _parse_str,
    "key_prefix": _parse_str,
    "redis_url": _parse_str,
    "database_path": _parse_str,
    "table": _parse_str,
}


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect DEPRECATION_COLLECTOR_* overrides as a dict of field values."""
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    for name, parser in _ENV_PARSERS.items():
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = parser(name, raw)
    return values


def _load_yaml(path: Path) -> Dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping at top level")
    # allow the settings to be nested under a "deprecation_collector" key
    data = data.get("deprecation_collector", data)
    hooks = HOOK_FIELDS & set(data)
    if hooks:
        raise ConfigurationError(f"{path}: {', '.join(sorted(hooks))} cannot be set from YAML")
    return data


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> CollectorConfig:
    """Build a CollectorConfig from YAML and environment variables.

    Args:
        path: YAML file. Defaults to $DEPRECATION_COLLECTOR_CONFIG if set.
        environ: Environment mapping (defaults to os.environ).

    Raises:
        ConfigurationError: Unknown keys or unparsable values.
    """
    environ = os.environ if environ is None else environ
    if path is None and environ.get(CONFIG_PATH_ENV):
        path = environ[CONFIG_PATH_ENV]

    values: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        values.update(_load_yaml(path))
        logger.debug("Loaded collector config from %s", path)

    values.update(config_from_env(environ))
    return CollectorConfig().replace(**values)
