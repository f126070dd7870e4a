"""Tests for base-unit money helpers."""

from decimal import Decimal

import pytest

from purser.money import base_units_to_usdc, format_amount, parse_amount, usdc_to_base_units


class TestParseAmount:
    def test_int_and_digit_string(self):
        assert parse_amount(10_000) == 10_000
        assert parse_amount(" 2500 ") == 2500
        assert parse_amount(str(2 ** 80)) == 2 ** 80

    @pytest.mark.parametrize("value", [1.5, 0.0, True, False])
    def test_rejects_float_and_bool(self, value):
        with pytest.raises(TypeError):
            parse_amount(value)

    @pytest.mark.parametrize("value", ["-1", "1.5", "", "abc", "1e6"])
    def test_rejects_malformed_strings(self, value):
        with pytest.raises(ValueError):
            parse_amount(value)

    def test_rejects_negative_int(self):
        with pytest.raises(ValueError, match="cost must be non-negative"):
            parse_amount(-5, "cost")

    def test_rejects_other_types(self):
        with pytest.raises(TypeError):
            parse_amount(Decimal("1"))


class TestConversion:
    def test_spend_rounds_up(self):
        assert usdc_to_base_units("0.0000001") == 1

    def test_limit_rounds_down(self):
        assert usdc_to_base_units("0.0000019", limit=True) == 1

    def test_exact_values(self):
        assert usdc_to_base_units("1.5") == 1_500_000
        assert base_units_to_usdc(1_500_000) == Decimal("1.5")

    def test_format(self):
        assert format_amount(10_000) == "0.010000 USDC"
        assert format_amount(0, "EURC") == "0.000000 EURC"
