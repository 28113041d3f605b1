"""
iYield Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (IYIELD_*)
    2. Runtime overrides
    3. User config file (~/.iyield/config.yaml)
    4. Project config file (./iyield.yaml)
    5. Default values

Values here seed the components at construction. Administrative updates made
later through the components (thresholds, vault limits) are component state,
not configuration, and are not written back.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

T = TypeVar("T")

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding
    and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == list:
            return [v for v in value.split(",") if v]  # type: ignore
        else:
            return value  # type: ignore


def _positive(x: int) -> bool:
    return isinstance(x, int) and x > 0


def _bps(x: int) -> bool:
    return isinstance(x, int) and 0 <= x <= 10_000


@dataclass
class OracleConfig:
    """Configuration for the Oracle Consensus Engine."""
    min_attestors: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2,
        env_var="IYIELD_ORACLE_MIN_ATTESTORS",
        description="Distinct agreeing attestors required to confirm a valuation",
        validator=_positive,
    ))
    submission_window_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3600,
        env_var="IYIELD_ORACLE_SUBMISSION_WINDOW",
        description="Lifetime of a pending submission in seconds",
        validator=_positive,
    ))
    max_oracle_stale_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=DAY,
        env_var="IYIELD_ORACLE_MAX_STALE",
        description="Age after which a confirmed valuation is unusable",
        validator=_positive,
    ))
    max_clock_skew_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=300,
        env_var="IYIELD_ORACLE_MAX_SKEW",
        description="How far in the future a submission timestamp may be",
        validator=lambda x: isinstance(x, int) and x >= 0,
    ))


@dataclass
class ComplianceConfig:
    """Configuration for the Compliance Registry and Gate."""
    risk_score_ceiling: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=70,
        env_var="IYIELD_COMPLIANCE_RISK_CEILING",
        description="Risk score at or above which an account is non-compliant",
        validator=lambda x: isinstance(x, int) and 0 < x <= 101,
    ))
    blocked_jurisdictions: ConfigValue[list] = field(default_factory=lambda: ConfigValue(
        default=[],
        env_var="IYIELD_COMPLIANCE_BLOCKED",
        description="Jurisdiction codes blocked at startup (comma-separated in env)",
    ))


@dataclass
class VaultConfig:
    """Initial limits for the Vault Risk Engine."""
    max_carrier_concentration_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3000,
        env_var="IYIELD_VAULT_MAX_CONCENTRATION",
        description="Maximum share of pool value per carrier (bps)",
        validator=_bps,
    ))
    min_policy_vintage_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=365 * DAY,
        env_var="IYIELD_VAULT_MIN_VINTAGE",
        description="Minimum policy age at deposit in seconds",
        validator=lambda x: isinstance(x, int) and x >= 0,
    ))
    max_ltv_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=8000,
        env_var="IYIELD_VAULT_MAX_LTV",
        description="LTV at which a position becomes at-risk (bps)",
        validator=_bps,
    ))
    liquidation_threshold_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=9000,
        env_var="IYIELD_VAULT_LIQUIDATION_THRESHOLD",
        description="LTV at which a position becomes liquidatable (bps)",
        validator=_bps,
    ))
    advance_rate_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=7000,
        env_var="IYIELD_VAULT_ADVANCE_RATE",
        description="Tokens issued per unit of deposited CSV (bps)",
        validator=_bps,
    ))
    liquidation_penalty_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=500,
        env_var="IYIELD_VAULT_LIQUIDATION_PENALTY",
        description="Extra CSV released to a liquidator per seized token (bps)",
        validator=_bps,
    ))
    min_carrier_rating: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="IYIELD_VAULT_MIN_CARRIER_RATING",
        description="Minimum carrier rating (1-1000) accepted for deposits",
        validator=lambda x: isinstance(x, int) and 1 <= x <= 1000,
    ))
    concentration_floor: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=0,
        env_var="IYIELD_VAULT_CONCENTRATION_FLOOR",
        description="Pool value below which concentration is not enforced",
        validator=lambda x: isinstance(x, int) and x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="IYIELD_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="IYIELD_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class IYieldConfig:
    """
    Root configuration for iYield.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    oracle: OracleConfig = field(default_factory=OracleConfig)
    compliance: ComplianceConfig = field(default_factory=ComplianceConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
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
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Unlike a process-wide singleton, each manager owns one IYieldConfig so
    several independent systems can coexist in one process (tests, replays).
    """

    def __init__(self, config: Optional[IYieldConfig] = None):
        self._config = config or IYieldConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[IYieldConfig], None]] = []
        self._lock = threading.RLock()

    @property
    def config(self) -> IYieldConfig:
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
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            with self._lock:
                self._apply_dict(data)
                self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("iyield.yaml"),
            Path("config/iyield.yaml"),
            Path.home() / ".iyield" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                try:
                    self.load_from_file(path)
                except (ConfigError, yaml.YAMLError) as e:
                    logger.warning("Skipping unreadable config file %s: %s", path, e)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}.{key}" if prefix else key
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, path)
                else:
                    raise ConfigError(f"Invalid config section: {path}")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("oracle.min_attestors", 3)
        """
        parts = path.split(".")
        obj: Any = self._config

        for part in parts[:-1]:
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)

        attr = getattr(obj, parts[-1], None)
        if isinstance(attr, ConfigValue):
            with self._lock:
                attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: manager.get("vault.max_ltv_bps")
        """
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)

        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[IYieldConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        paths = list(self._config_paths)
        self._config_paths.clear()
        for path in paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

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
                except ValueError as e:
                    errors.append(f"{path}: {e}")
                    return
                if obj.validator and not obj.validator(value):
                    errors.append(f"{path}: validation failed for value {value}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)

        vault = self._config.vault
        if not errors and vault.max_ltv_bps.get() > vault.liquidation_threshold_bps.get():
            errors.append("vault: max_ltv_bps must not exceed liquidation_threshold_bps")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema
