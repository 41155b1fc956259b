"""
Configuration for the elarm registry.

Settings come from layered sources, lowest priority first:
- ~/.elarm/config.yaml and ./elarm.yaml, when present
- files named on the command line (YAML, JSON or TOML)
- dicts passed in by code
- ELARM_* environment variables, which always win

The merged result is validated by pydantic models.
"""

import os
import json
import yaml
import toml
from pathlib import Path
from typing import Optional, Dict, Any, List, Union, Callable
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from .logging import get_logger
from .errors import ConfigurationError, error_context


logger = get_logger("elarm.config")

ENV_PREFIX = "ELARM_"

# Env var sections: ELARM_<SECTION>_<FIELD>
_NESTED_SECTIONS = ("registry", "logging")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _parse_yaml(content: str) -> Dict[str, Any]:
    return yaml.safe_load(content) or {}


_PARSERS: Dict[str, Callable[[str], Dict[str, Any]]] = {
    "json": json.loads,
    "yaml": _parse_yaml,
    "toml": toml.loads,
}

_SUFFIXES = {
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
}


class ConfigSource(BaseModel):
    """A file or an in-memory dict, with its merge priority."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"


class RegistryConfig(BaseModel):
    """Registry settings."""
    name: str = "elarm_registry"
    call_timeout: Optional[float] = 5.0
    pid_poll_interval: float = 1.0

    @field_validator('call_timeout')
    @classmethod
    def validate_call_timeout(cls, v):
        """A timeout must be positive; None waits forever."""
        if v is not None and v <= 0:
            raise ValueError("call_timeout must be positive or null")
        return v

    @field_validator('pid_poll_interval')
    @classmethod
    def validate_poll_interval(cls, v):
        if v <= 0:
            raise ValueError("pid_poll_interval must be positive")
        return v


class LoggingConfig(BaseModel):
    """Arguments for setup_logging()."""
    level: str = "INFO"
    format: str = "json"
    directory: Optional[Path] = None
    enable_sentry: bool = False
    sentry_dsn: Optional[str] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log level must be one of {', '.join(_LOG_LEVELS)}, got {v!r}")
        return level

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v not in ("json", "console"):
            raise ValueError(f"log format must be 'json' or 'console', got {v!r}")
        return v


class ElarmConfig(BaseModel):
    """Top-level configuration."""
    app_name: str = "elarm"
    debug: bool = False

    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(validate_assignment=True)


def _merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; values from update win."""
    merged = dict(base)
    for key, value in update.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce(value: str) -> Any:
    """Turn an environment string into a bool, None, number, path or str."""
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered in ("null", "none"):
        return None

    if any(c.isdigit() for c in value):
        for number in (int, float):
            try:
                return number(value)
            except ValueError:
                pass

    if value.startswith(("/", "~")):
        return Path(value).expanduser()
    return value


class ConfigLoader:
    """Merges configuration sources by priority and validates the result."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[ElarmConfig] = None

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add a file path or a dict.

        Args:
            source: Path to a .json/.yaml/.yml/.toml file, or a dict
            priority: Higher priorities override lower ones
            source_type: File format, taken from the suffix when omitted

        Raises:
            ConfigurationError: The file format cannot be determined
        """
        if isinstance(source, dict):
            entry = ConfigSource(data=source, priority=priority)
        else:
            path = Path(source)
            source_type = source_type or _SUFFIXES.get(path.suffix.lower())
            if source_type not in _PARSERS:
                raise ConfigurationError(
                    f"Unknown config file type: {path.suffix or path.name}"
                )
            entry = ConfigSource(path=path, priority=priority, source_type=source_type)

        self._sources.append(entry)
        self._sources.sort(key=lambda s: s.priority)

    def load(self) -> ElarmConfig:
        """
        Merge every source plus the environment and validate.

        Raises:
            ConfigurationError: A file cannot be read or parsed, or the
                merged settings are invalid
        """
        merged: Dict[str, Any] = {}
        for source in self._sources:
            with error_context("config", "load_source", path=str(source.path or "dict")):
                merged = _merge(merged, self._read(source))

        merged = _merge(merged, self._env_overrides())

        try:
            self._config = ElarmConfig(**merged)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in e.errors()
            )
            raise ConfigurationError(f"Configuration validation failed: {problems}") from e

        logger.info("configuration_loaded", sources=len(self._sources))
        return self._config

    def _read(self, source: ConfigSource) -> Dict[str, Any]:
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        try:
            return _PARSERS[source.source_type](source.path.read_text())
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to parse {source.path}: {e}", cause=e) from e

    def _env_overrides(self) -> Dict[str, Any]:
        """ELARM_REGISTRY_CALL_TIMEOUT=2 -> {"registry": {"call_timeout": 2}}"""
        overrides: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(self.env_prefix):
                continue

            key = key[len(self.env_prefix):].lower()
            section, _, field = key.partition("_")
            if section in _NESTED_SECTIONS and field:
                overrides.setdefault(section, {})[field] = _coerce(value)
            elif key in ElarmConfig.model_fields:
                overrides[key] = _coerce(value)

        return overrides

    def get_config(self) -> ElarmConfig:
        """The configuration produced by the last load()."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> ElarmConfig:
    """
    Load configuration from the standard locations.

    Args:
        config_paths: Files to apply after the default ones, in order
        extra_config: Settings applied last, before the environment
    """
    loader = ConfigLoader()

    for path in (Path.home() / ".elarm" / "config.yaml", Path("elarm.yaml")):
        if path.exists():
            loader.add_source(path, priority=10)

    for offset, path in enumerate(config_paths or []):
        loader.add_source(path, priority=20 + offset)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return loader.load()


__all__ = [
    'ElarmConfig',
    'RegistryConfig',
    'LoggingConfig',
    'ConfigLoader',
    'load_config',
]
