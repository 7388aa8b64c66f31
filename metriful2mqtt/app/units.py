"""
Fixed-point readings and unit conversion for MS430 measurements.

The board reports every quantity as an integer part plus a fractional part
with a fixed number of decimal digits; temperature additionally carries a
separate sign flag. Values stay in this form until they are published.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class UnitSystem(str, Enum):
    METRIC = "metric"
    IMPERIAL = "imperial"


class TemperatureUnit(str, Enum):
    CELSIUS = "°C"
    FAHRENHEIT = "°F"


# The board always reports Celsius.
DEVICE_TEMPERATURE_UNIT = TemperatureUnit.CELSIUS


@dataclass(frozen=True)
class FixedPoint:
    integer: int = 0
    fraction: int = 0
    decimals: int = 1
    negative: bool = False

    def to_float(self) -> float:
        return fixed_to_float(self.integer, self.fraction, self.decimals, self.negative)


def fixed_to_float(integer: int, fraction: int, decimals: int = 1, negative: bool = False) -> float:
    if decimals not in (1, 2):
        raise ValueError(f"unsupported fraction precision: {decimals}")
    value = round(float(integer) + float(fraction) / (10 ** decimals), decimals)
    return -value if negative else value


def display_temperature_unit(system: UnitSystem) -> TemperatureUnit:
    if system == UnitSystem.IMPERIAL:
        return TemperatureUnit.FAHRENHEIT
    return TemperatureUnit.CELSIUS


def convert_temperature(value: float, source: TemperatureUnit, target: TemperatureUnit) -> float:
    if source == target:
        return value
    if target == TemperatureUnit.FAHRENHEIT:
        return value * 9.0 / 5.0 + 32.0
    return (value - 32.0) * 5.0 / 9.0


def temperature_for_display(reading: FixedPoint, system: UnitSystem, decimals: int = 1) -> float:
    """Convert a device temperature reading to the configured unit system, rounded for display."""
    target = display_temperature_unit(system)
    return round(convert_temperature(reading.to_float(), DEVICE_TEMPERATURE_UNIT, target), decimals)
