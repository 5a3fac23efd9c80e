"""Tests for free-text spec value parsers."""

import pytest

from partwise_mcp.parsers import (
    parse_current_range,
    parse_humidity_range,
    parse_name_list,
    parse_range,
    parse_temperature_range,
    parse_voltage_range,
)


class TestParseVoltageRange:
    @pytest.mark.parametrize("text,expected", [
        ("3.3-5V", (3.3, 5.0)),
        ("3.3V-5V", (3.3, 5.0)),
        ("1.8V ~ 3.6V", (1.8, 3.6)),
        ("2.7 to 5.5 V", (2.7, 5.5)),
        ("5V", (5.0, 5.0)),
        ("12", (12.0, 12.0)),
    ])
    def test_formats(self, text, expected):
        assert parse_voltage_range(text) == pytest.approx(expected)

    def test_millivolts(self):
        assert parse_voltage_range("1800-3600mV") == pytest.approx((1.8, 3.6))

    def test_kilovolts(self):
        assert parse_range("2-4kV", "V") == pytest.approx((2000.0, 4000.0))

    def test_reversed_range_keeps_order(self):
        """A reversed range is reported as written so it can be rejected later."""
        assert parse_voltage_range("5-3.3V") == pytest.approx((5.0, 3.3))

    @pytest.mark.parametrize("text", [None, "", "n/a", "abc"])
    def test_unparseable(self, text):
        assert parse_voltage_range(text) is None


class TestParseOtherRanges:
    def test_current_milliamps(self):
        assert parse_current_range("500mA") == pytest.approx((0.5, 0.5))

    def test_current_range(self):
        assert parse_current_range("0-2A") == pytest.approx((0.0, 2.0))

    def test_current_microamps(self):
        assert parse_current_range("10uA") == pytest.approx((1e-5, 1e-5))

    def test_temperature_tilde(self):
        assert parse_temperature_range("-40~85℃") == (-40.0, 85.0)

    def test_temperature_words(self):
        assert parse_temperature_range("-40 to +125 °C") == (-40.0, 125.0)

    def test_humidity(self):
        assert parse_humidity_range("10-90%") == (10.0, 90.0)


class TestParseNameList:
    def test_comma_string(self):
        assert parse_name_list("I2C, SPI") == ["I2C", "SPI"]

    def test_other_separators(self):
        assert parse_name_list("UART/I2C;SPI") == ["UART", "I2C", "SPI"]

    def test_list_drops_blanks(self):
        assert parse_name_list(["UART", " ", "CAN "]) == ["UART", "CAN"]

    def test_empty(self):
        assert parse_name_list(None) == []
        assert parse_name_list("") == []
