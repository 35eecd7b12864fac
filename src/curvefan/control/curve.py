"""Fan curve implementations."""

import math

from ..config import CurveConfig


def _round_half_up(value: float) -> int:
    # round() would turn 32.5 into 32; duty levels round halves upward
    whole = math.floor(value)
    return int(whole) + (value - whole >= 0.5)


def map_duty(temperature: float, config: CurveConfig) -> int:
    """Map a temperature to a fan duty percentage along a power curve.

    The temperature is normalized to [0, 1] between min_temp and max_temp,
    raised to the curve exponent and scaled onto [min_fan, max_fan].

    Args:
        temperature: Temperature in Celsius
        config: Validated curve configuration

    Returns:
        Fan duty percentage between config.min_fan and config.max_fan

    Examples:
        >>> map_duty(65.0, CurveConfig(min_fan=10, max_fan=100, exponent=2.0))
        33
        >>> map_duty(30.0, CurveConfig(min_fan=10, max_fan=100, exponent=2.0))
        10
    """
    x = (temperature - config.min_temp) / (config.max_temp - config.min_temp)
    x = max(0.0, min(1.0, x))
    duty = x ** config.exponent * (config.max_fan - config.min_fan) + config.min_fan
    return _round_half_up(duty)
