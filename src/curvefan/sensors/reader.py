"""
CPU Package Temperature Module

This module reads CPU package temperatures from the kernel hardware
monitoring drivers (through psutil) and reduces them to the single
worst-case value that drives the fan curve.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence, Tuple

import psutil

from ..config import SensorConfig

logger = logging.getLogger(__name__)


class SensorError(Exception):
    """Base exception for temperature sensor errors"""
    pass


class SensorUnavailableError(SensorError):
    """Raised when no temperature-capable device can be enumerated"""
    pass


class NoPackageSensorError(SensorError):
    """Raised when devices exist but none reports a package temperature"""
    pass


@dataclass(frozen=True)
class PackageTemperature:
    """A single package temperature entry.

    Attributes:
        chip: Hardware monitoring chip name (e.g., "coretemp")
        label: Sensor label (e.g., "Package id 0")
        value: Temperature in °C
    """
    chip: str
    label: str
    value: float


@dataclass(frozen=True)
class TemperatureReading:
    """Worst-case package temperature plus optional per-package detail.

    Examples:
        >>> reading = TemperatureReading(58.0)
        >>> print(f"{reading.value:.1f}°C")
        58.0°C
    """
    value: float
    detail: Tuple[PackageTemperature, ...] = ()


def _decode(value) -> Optional[float]:
    """Return a usable temperature or None.

    Drivers report 0 or garbage for sensors that have not produced a
    reading, so only positive finite values count.
    """
    try:
        temp = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(temp) or temp <= 0:
        return None
    return temp


class PackageTemperatureSource:
    """Reads the hottest CPU package temperature.

    Chips are matched by name prefix and their entries by label substring,
    both taken from SensorConfig. On Intel systems the defaults select the
    "Package id N" entries of the coretemp driver; AMD systems can use
    chips ["k10temp"] and labels ["Tctl"].
    """

    def __init__(self, config: Optional[SensorConfig] = None):
        """Initialize temperature source

        Args:
            config: Chip and label patterns identifying package sensors
        """
        self.config = config or SensorConfig()

    def is_package_sensor(self, chip_name: str) -> bool:
        return any(chip_name.startswith(prefix) for prefix in self.config.chips)

    def is_package_temperature_label(self, label: str) -> bool:
        return any(pattern in label for pattern in self.config.labels)

    def _enumerate(self) -> Iterator[Tuple[str, Sequence]]:
        """Yield (chip name, entries) pairs from the hardware monitor.

        Raises:
            SensorUnavailableError: If the backend cannot enumerate sensors
        """
        try:
            chips = psutil.sensors_temperatures()
        except AttributeError as e:
            raise SensorUnavailableError("Temperature sensors are not supported on this platform") from e
        except OSError as e:
            raise SensorUnavailableError(f"Failed to enumerate temperature sensors: {e}") from e

        if not chips:
            raise SensorUnavailableError("No temperature sensors found")

        yield from chips.items()

    def _package_entries(self, chips: Iterable[Tuple[str, Sequence]]) -> Iterator[PackageTemperature]:
        """Yield decodable package entries, skipping malformed ones."""
        for chip_name, entries in chips:
            if not self.is_package_sensor(chip_name):
                continue
            try:
                for entry in entries:
                    label = getattr(entry, "label", None) or ""
                    if not self.is_package_temperature_label(label):
                        continue
                    value = _decode(getattr(entry, "current", None))
                    if value is None:
                        logger.debug(f"Skipping {chip_name} - {label}: no valid reading")
                        continue
                    yield PackageTemperature(chip_name, label, value)
            except (TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed sensor chip {chip_name}: {e}")

    def read(self, verbose: bool = False) -> TemperatureReading:
        """Read the maximum package temperature.

        Args:
            verbose: Also return every package entry found

        Returns:
            TemperatureReading with the maximum value across all packages

        Raises:
            SensorUnavailableError: If sensors cannot be enumerated
            NoPackageSensorError: If no package sensor gives a valid reading
        """
        max_temp: Optional[float] = None
        detail = []

        for entry in self._package_entries(self._enumerate()):
            if verbose:
                detail.append(entry)
            if max_temp is None or entry.value > max_temp:
                max_temp = entry.value

        if max_temp is None:
            raise NoPackageSensorError(
                f"No CPU package temperature found (chips: {', '.join(self.config.chips)}; "
                f"labels: {', '.join(self.config.labels)})"
            )

        logger.debug(f"Package temperature: {max_temp:.1f}°C")
        return TemperatureReading(max_temp, tuple(detail))
