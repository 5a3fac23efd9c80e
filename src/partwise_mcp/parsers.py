"""Parsers for the free-text spec values found in catalog records.

Catalog entries are often typed by hand, so a voltage range may arrive as
"3.3-5V", "1.8V ~ 3.6V", "2.7 to 5.5 V" or a single "5V". Each parser returns
values in base units (volts, amps, degrees C, percent), or None if unparseable.
"""

import re

# =============================================================================
# PRE-COMPILED REGEX PATTERNS
# =============================================================================

_NUMBER = r"([-+]?\d+(?:\.\d+)?)"
_UNIT = r"\s*([a-zA-Zµ°℃%]*)"
_RANGE_PATTERN = re.compile(
    _NUMBER + _UNIT + r"\s*(?:~|to|–|\.\.|-)\s*" + _NUMBER + _UNIT,
    re.IGNORECASE,
)
_SINGLE_PATTERN = re.compile(_NUMBER + _UNIT)
_LIST_SPLIT_PATTERN = re.compile(r"[,;/|]+")

_PREFIXES = {
    "m": 1e-3,
    "u": 1e-6,
    "µ": 1e-6,
    "k": 1e3,
}


def _scale(value: float, unit: str, base: str) -> float:
    """Apply an SI prefix in front of the base unit: ('500', 'mA', 'A') -> 0.5."""
    if not unit or not base:
        return value
    unit_l = unit.lower()
    base_l = base.lower()
    if unit_l == base_l or not unit_l.endswith(base_l):
        return value
    prefix = unit[: len(unit) - len(base)]
    # "M" is mega only when it's uppercase, "m" is milli
    if prefix == "M":
        return value * 1e6
    return value * _PREFIXES.get(prefix.lower() if prefix != "µ" else prefix, 1.0)


def parse_range(s: str | None, base_unit: str = "") -> tuple[float, float] | None:
    """Parse a numeric range: '3.3-5V' -> (3.3, 5.0), '5V' -> (5.0, 5.0).

    The returned tuple keeps the order it was written in; callers validate
    min <= max so a reversed range is reported instead of silently swapped.
    """
    if not s:
        return None
    text = s.strip()
    match = _RANGE_PATTERN.search(text)
    if match:
        lo, lo_unit, hi, hi_unit = match.groups()
        # "3.3-5V": the unit is written once, after the upper bound
        lo_unit = lo_unit or hi_unit
        return (_scale(float(lo), lo_unit, base_unit), _scale(float(hi), hi_unit, base_unit))
    match = _SINGLE_PATTERN.search(text)
    if match:
        value = _scale(float(match.group(1)), match.group(2), base_unit)
        return (value, value)
    return None


def parse_voltage_range(s: str | None) -> tuple[float, float] | None:
    """Parse voltage range in volts: '3.3-5V' -> (3.3, 5.0), '1800-3600mV' -> (1.8, 3.6)"""
    return parse_range(s, "V")


def parse_current_range(s: str | None) -> tuple[float, float] | None:
    """Parse current in amps: '500mA' -> (0.5, 0.5), '0-2A' -> (0, 2)"""
    return parse_range(s, "A")


def parse_temperature_range(s: str | None) -> tuple[float, float] | None:
    """Parse temperature in °C: '-40~85℃' -> (-40, 85), '-40 to +125 °C' -> (-40, 125)"""
    return parse_range(s, "")


def parse_humidity_range(s: str | None) -> tuple[float, float] | None:
    """Parse relative humidity in percent: '10-90%' -> (10, 90)"""
    return parse_range(s, "")


def parse_name_list(value: str | list[str] | None) -> list[str]:
    """Parse a protocol/interface list: 'I2C, SPI' -> ['I2C', 'SPI']"""
    if not value:
        return []
    if isinstance(value, str):
        items = _LIST_SPLIT_PATTERN.split(value)
    else:
        items = list(value)
    return [str(item).strip() for item in items if str(item).strip()]
