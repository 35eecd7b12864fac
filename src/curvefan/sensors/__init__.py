"""
Sensor package for Curvefan

This package reads CPU package temperatures from the kernel hardware
monitoring drivers.

Example Usage:
    >>> from curvefan.sensors import PackageTemperatureSource
    >>>
    >>> source = PackageTemperatureSource()
    >>> reading = source.read(verbose=True)
    >>> for entry in reading.detail:
    ...     print(f"{entry.chip} - {entry.label}: {entry.value:.1f}°C")
"""

from .reader import (
    PackageTemperature,
    PackageTemperatureSource,
    TemperatureReading,
    SensorError,
    SensorUnavailableError,
    NoPackageSensorError
)

__all__ = [
    'PackageTemperature',
    'PackageTemperatureSource',
    'TemperatureReading',
    'SensorError',
    'SensorUnavailableError',
    'NoPackageSensorError'
]
