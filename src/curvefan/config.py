"""
Configuration Module

This module defines the validated configuration records handed to the
control loop at startup and loads them from a YAML file.

Sections of the YAML file:
- curve: min_fan, max_fan, min_temp, max_temp, exponent
- loop: interval, force, dry_run, single_shot, verbose, restore_on_exit
- sensors: chips, labels
- ipmi: ipmitool, interface, device, host, username, password, timeout

Every key is optional; missing keys fall back to the defaults below.
"""

import logging
import math
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/curvefan/config.yaml"


class ConfigInvalidError(ValueError):
    """Raised when a configuration value fails validation"""
    pass


def _check_fan(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigInvalidError(f"{name} must be an integer, got {value!r}")
    if not 0 <= value <= 100:
        raise ConfigInvalidError(f"Invalid {name} {value}%, must be 0-100")


def _check_number(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigInvalidError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise ConfigInvalidError(f"{name} must be finite, got {value}")


@dataclass(frozen=True)
class CurveConfig:
    """Power curve parameters.

    Attributes:
        min_fan: Fan duty percentage at or below min_temp
        max_fan: Fan duty percentage at or above max_temp
        min_temp: Temperature (°C) where the curve starts rising
        max_temp: Temperature (°C) where the curve reaches max_fan
        exponent: Power applied to the normalized temperature. 1 is linear,
            larger values keep fans quieter until closer to max_temp.
    """
    min_fan: int = 4
    max_fan: int = 100
    min_temp: float = 40.0
    max_temp: float = 90.0
    exponent: float = 4.0

    def __post_init__(self) -> None:
        _check_fan("min_fan", self.min_fan)
        _check_fan("max_fan", self.max_fan)
        if self.min_fan > self.max_fan:
            raise ConfigInvalidError(
                f"min_fan ({self.min_fan}%) cannot be greater than max_fan ({self.max_fan}%)"
            )
        _check_number("min_temp", self.min_temp)
        _check_number("max_temp", self.max_temp)
        if self.min_temp >= self.max_temp:
            raise ConfigInvalidError(
                f"min_temp ({self.min_temp}) must be less than max_temp ({self.max_temp})"
            )
        _check_number("exponent", self.exponent)
        if self.exponent <= 0:
            raise ConfigInvalidError(f"Invalid exponent {self.exponent}, must be > 0")


@dataclass(frozen=True)
class LoopPolicy:
    """Control loop behaviour, fixed for the lifetime of the process"""
    interval: float = 5.0
    force: bool = False
    dry_run: bool = False
    single_shot: bool = False
    verbose: bool = False
    restore_on_exit: bool = False

    def __post_init__(self) -> None:
        _check_number("interval", self.interval)
        if self.interval <= 0:
            raise ConfigInvalidError(f"Invalid interval {self.interval}s, must be > 0")
        for name in ("force", "dry_run", "single_shot", "verbose", "restore_on_exit"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigInvalidError(f"{name} must be true or false")


@dataclass(frozen=True)
class SensorConfig:
    """Which hardware monitoring entries count as CPU package sensors"""
    chips: Tuple[str, ...] = ("coretemp",)
    labels: Tuple[str, ...] = ("Package",)

    def __post_init__(self) -> None:
        if isinstance(self.chips, str) or isinstance(self.labels, str):
            raise ConfigInvalidError("Sensor chips and labels must be lists")
        # YAML hands us lists
        object.__setattr__(self, "chips", tuple(self.chips))
        object.__setattr__(self, "labels", tuple(self.labels))
        if not self.chips:
            raise ConfigInvalidError("At least one sensor chip prefix is required")
        if not self.labels:
            raise ConfigInvalidError("At least one sensor label is required")
        for value in self.chips + self.labels:
            if not isinstance(value, str) or not value:
                raise ConfigInvalidError(f"Invalid sensor pattern {value!r}")


@dataclass(frozen=True)
class IPMIConfig:
    """How to reach the BMC through ipmitool"""
    ipmitool: str = "ipmitool"
    interface: str = "open"
    device: int = 0
    host: str = "localhost"
    username: str = "ADMIN"
    password: str = "ADMIN"
    timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.interface not in ("open", "lanplus", "lan"):
            raise ConfigInvalidError(f"Unsupported IPMI interface: {self.interface}")
        if isinstance(self.device, bool) or not isinstance(self.device, int) or self.device < 0:
            raise ConfigInvalidError(f"Invalid IPMI device number: {self.device!r}")
        _check_number("timeout", self.timeout)
        if self.timeout <= 0:
            raise ConfigInvalidError(f"Invalid IPMI timeout {self.timeout}s, must be > 0")

    @property
    def is_local(self) -> bool:
        """True when talking to the local BMC through /dev/ipmiN"""
        return self.interface == "open"


@dataclass(frozen=True)
class Config:
    """Complete configuration handed to the control loop"""
    curve: CurveConfig = field(default_factory=CurveConfig)
    loop: LoopPolicy = field(default_factory=LoopPolicy)
    sensors: SensorConfig = field(default_factory=SensorConfig)
    ipmi: IPMIConfig = field(default_factory=IPMIConfig)


_SECTIONS = {
    "curve": CurveConfig,
    "loop": LoopPolicy,
    "sensors": SensorConfig,
    "ipmi": IPMIConfig,
}


def _build_section(name: str, values: Any):
    cls = _SECTIONS[name]
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ConfigInvalidError(f"Section '{name}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigInvalidError(f"Unknown keys in section '{name}': {', '.join(sorted(unknown))}")

    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigInvalidError(f"Invalid section '{name}': {e}") from e


def parse_config(data: Optional[Dict[str, Any]]) -> Config:
    """Build a validated Config from a parsed YAML document.

    Args:
        data: Mapping of section name to section values, or None

    Returns:
        Validated configuration

    Raises:
        ConfigInvalidError: If the document has unknown sections or any
            value fails validation
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigInvalidError("Configuration must be a mapping")

    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ConfigInvalidError(f"Unknown configuration sections: {', '.join(sorted(unknown))}")

    return Config(**{name: _build_section(name, data.get(name)) for name in _SECTIONS})


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from a YAML file.

    When no path is given the default location is used if it exists,
    otherwise built-in defaults apply. An explicitly given path must exist.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration

    Raises:
        ConfigInvalidError: If the file is missing, unreadable, not valid
            YAML or contains invalid values
    """
    if config_path is None:
        if not os.path.exists(DEFAULT_CONFIG_PATH):
            logger.debug(f"No configuration at {DEFAULT_CONFIG_PATH}, using defaults")
            return Config()
        config_path = DEFAULT_CONFIG_PATH

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigInvalidError(f"Cannot read configuration {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigInvalidError(f"Malformed configuration {config_path}: {e}") from e

    config = parse_config(data)
    logger.info(f"Loaded configuration from {config_path}")
    return config


def apply_overrides(config: Config, **overrides: Any) -> Config:
    """Return a copy of config with command-line overrides applied.

    Keyword names are field names of CurveConfig or LoopPolicy. None values
    mean "not given" and are ignored.

    Raises:
        ConfigInvalidError: If an override names an unknown field or the
            resulting values fail validation
    """
    curve_fields = {f.name for f in fields(CurveConfig)}
    loop_fields = {f.name for f in fields(LoopPolicy)}
    curve_changes = {}
    loop_changes = {}

    for name, value in overrides.items():
        if value is None:
            continue
        if name in curve_fields:
            curve_changes[name] = value
        elif name in loop_fields:
            loop_changes[name] = value
        else:
            raise ConfigInvalidError(f"Unknown override: {name}")

    return replace(
        config,
        curve=replace(config.curve, **curve_changes),
        loop=replace(config.loop, **loop_changes),
    )
