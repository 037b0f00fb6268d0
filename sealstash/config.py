"""
sealstash Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (SEALSTASH_*)
    2. Runtime overrides
    3. User config file (~/.sealstash/config.yaml)
    4. Project config file (./sealstash.yaml)
    5. Default values

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union

import yaml

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        """Drop any runtime override and fall back to the default."""
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == list:
            return value.split(",")  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class ValidationConfig:
    """Configuration for consignment validation."""
    max_consignment_nodes: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100000,
        env_var="SEALSTASH_MAX_CONSIGNMENT_NODES",
        description="Maximum number of revealed nodes accepted in one consignment",
        validator=lambda x: x > 0,
    ))
    require_seal_spend: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="SEALSTASH_REQUIRE_SEAL_SPEND",
        description="Require witness transactions to spend every seal a node closes",
    ))


@dataclass
class CommitmentConfig:
    """Configuration for the Seal & Commitment Layer."""
    default_protocol: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="opret1st",
        env_var="SEALSTASH_COMMITMENT_PROTOCOL",
        description="Commitment embedding scheme used by close() (opret1st, p2c)",
        validator=lambda x: x in ("opret1st", "p2c"),
    ))


@dataclass
class StashConfig:
    """Configuration for stash persistence."""
    backend: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="memory",
        env_var="SEALSTASH_STASH_BACKEND",
        description="Stash backend (memory, file)",
        validator=lambda x: x in ("memory", "file"),
    ))
    path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="dist/stash",
        env_var="SEALSTASH_STASH_PATH",
        description="Directory for the file backend",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="SEALSTASH_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="SEALSTASH_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))
    enable_tracing: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="SEALSTASH_TRACING_ENABLED",
        description="Record tracing spans around validation and building",
    ))


@dataclass
class SealStashConfig:
    """
    Root configuration for sealstash.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    commitment: CommitmentConfig = field(default_factory=CommitmentConfig)
    stash: StashConfig = field(default_factory=StashConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = SealStashConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Tuple[str, Callable[[Any], None]]] = []
        self._initialized = True

    @property
    def config(self) -> SealStashConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration file must contain a mapping: {path}")
            self._apply_dict(data)
            self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("sealstash.yaml"),
            Path.home() / ".sealstash" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any]) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown configuration key: {key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value)

        apply_to_config(self._config, data)

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("validation.max_consignment_nodes", 5000)
        """
        self._value_at(path).set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("commitment.default_protocol")
        """
        parts = path.split(".")
        obj = self._config

        for part in parts:
            obj = getattr(obj, part)

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _value_at(self, path: str) -> ConfigValue:
        obj: Any = self._config
        for part in path.split("."):
            obj = getattr(obj, part, None)
        if not isinstance(obj, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        return obj

    def watch(self, path: str, callback: Callable[[Any], None]) -> None:
        """
        Call ``callback(new_value)`` whenever the value at ``path`` changes.

        Watches survive reset(): the callback is re-attached to the fresh
        configuration and fired with the restored default.
        """
        self._value_at(path).on_change(lambda _old, _new: callback(self.get(path)))
        self._watchers.append((path, callback))

    def reset(self) -> None:
        """Restore defaults and forget loaded files."""
        self._config = SealStashConfig()
        self._config_paths = []
        for path, callback in self._watchers:
            self._value_at(path).on_change(lambda _old, _new, p=path, cb=callback: cb(self.get(p)))
            callback(self.get(path))

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except (TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors


def get_config() -> SealStashConfig:
    """Get the current sealstash configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
