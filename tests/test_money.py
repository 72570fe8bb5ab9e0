"""Integer centavo arithmetic: rounding, splitting and rate application."""

import pytest
from decimal import Decimal

from coopledger.money import (
    allocate_proportionally,
    apply_rate,
    floor_div,
    format_money,
    round_half_up,
    to_rate,
    total,
)


class TestRounding:

    def test_half_rounds_up(self):
        assert round_half_up(Decimal("2.5")) == 3
        assert round_half_up(Decimal("2.49")) == 2

    def test_negative_half_rounds_away_from_zero(self):
        assert round_half_up(Decimal("-2.5")) == -3

    def test_apply_rate_fee(self):
        # 1.5 % processing fee on 1,000.00
        assert apply_rate(100_000, Decimal("0.015")) == 1_500

    def test_apply_rate_rounds_half_up(self):
        assert apply_rate(30, "0.05") == 2       # 1.5
        assert apply_rate(150, "0.015") == 2     # 2.25
        assert apply_rate(50, "0.015") == 1      # 0.75

    def test_float_rates_rejected(self):
        with pytest.raises(TypeError):
            to_rate(0.1)

    def test_string_rate_is_exact(self):
        assert to_rate("0.1") == Decimal("0.1")


class TestSplitting:

    def test_proportional_largest_remainder(self):
        shares = allocate_proportionally(100, [1, 1, 1])
        assert shares == [34, 33, 33]

    def test_proportional_weighted(self):
        shares = allocate_proportionally(1_000, [500, 300, 200])
        assert shares == [500, 300, 200]

    def test_proportional_zero_weights(self):
        assert allocate_proportionally(10, [0, 0]) == [0, 0]

    def test_proportional_always_sums(self):
        for amount in (1, 7, 99, 1_001):
            assert sum(allocate_proportionally(amount, [3, 5, 11])) == amount

    def test_floor_div(self):
        assert floor_div(25_000, 10_000) == 2
        with pytest.raises(ValueError):
            floor_div(1, 0)


class TestFormatting:

    def test_format_major_units(self):
        assert format_money(123_456) == "PHP 1,234.56"

    def test_format_negative(self):
        assert format_money(-5) == "-PHP 0.05"

    def test_total_of_empty(self):
        assert total([]) == 0
