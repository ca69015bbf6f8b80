"""Tests for TON/nano conversions."""

from decimal import Decimal

import pytest

from tonpay.errors import InvalidArgumentError
from tonpay.money import format_ton, nano_to_ton, positive_ton_to_nano, ton_to_nano


@pytest.mark.parametrize(
    "value,expected",
    [
        ("1", 1_000_000_000),
        ("0.25", 250_000_000),
        ("0.000000001", 1),
        (Decimal("2.5"), 2_500_000_000),
        (3, 3_000_000_000),
        (" 0.1 ", 100_000_000),
    ],
)
def test_ton_to_nano(value, expected):
    assert ton_to_nano(value) == expected


@pytest.mark.parametrize("value", ["abc", "", "NaN", "Infinity", "0.0000000001", 0.1])
def test_ton_to_nano_rejects(value):
    with pytest.raises(InvalidArgumentError):
        ton_to_nano(value)


@pytest.mark.parametrize("value", ["100000000000000000000", "1e30", "-1e25"])
def test_ton_to_nano_rejects_out_of_range(value):
    with pytest.raises(InvalidArgumentError, match="out of range"):
        ton_to_nano(value)


def test_positive_ton_to_nano_rejects_zero():
    with pytest.raises(InvalidArgumentError, match="greater than 0"):
        positive_ton_to_nano("0")


def test_nano_to_ton_trims_zeros():
    assert nano_to_ton(1_000_000_000) == "1"
    assert nano_to_ton(250_000_000) == "0.25"
    assert nano_to_ton(1) == "0.000000001"
    assert nano_to_ton(0) == "0"
    assert format_ton(1_500_000_000) == "1.5 TON"
