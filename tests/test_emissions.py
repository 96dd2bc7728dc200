"""Tests for emission factors and credit policies."""

from decimal import Decimal

import pytest

from carbonledger.emissions import ActionRatePolicy, EmissionCalculator, ratio_policy
from carbonledger.errors import InvalidInput


@pytest.fixture
def calculator():
    return EmissionCalculator()


def test_transport_by_vehicle(calculator):
    assert calculator.calculate("transport", 150, "km", "car") == Decimal("25.50")
    assert calculator.calculate("transport", 100, "km", "train") == Decimal("3.50")


def test_electricity_scales_mwh(calculator):
    assert calculator.calculate("electricity", 2, "mwh") == Decimal("1840.00")


def test_waste_in_tonnes(calculator):
    assert calculator.calculate("waste", "1.5", "tonne", "recycling") == Decimal("300.00")


def test_manufacturing_by_fuel(calculator):
    assert calculator.calculate("manufacturing", 10, "litre", "diesel") == Decimal("26.80")
    assert calculator.calculate("manufacturing", 1, "tonne", "cng") == Decimal("2210.00")


@pytest.mark.parametrize("args", [
    ("transport", 10, "kwh", "car"),
    ("transport", 10, "km", "rocket"),
    ("electricity", 10, "parsecs", None),
    ("manufacturing", 10, "km", "diesel"),
    ("transport", -1, "km", "car"),
])
def test_rejects_unknown_combinations(calculator, args):
    with pytest.raises(InvalidInput):
        calculator.calculate(*args)


def test_custom_factor_table():
    calculator = EmissionCalculator(transport={"ebike": Decimal("0.01")})
    assert calculator.calculate("transport", 200, "km", "ebike") == Decimal("2.00")


def test_ratio_policy():
    assert ratio_policy()("recycling", Decimal("12.34")) == Decimal("12.34")
    assert ratio_policy("0.5")("recycling", Decimal("3")) == Decimal("1.50")


def test_action_rate_policy_falls_back_to_default():
    policy = ActionRatePolicy({"solar_installation": "1.2"}, default="0.5")
    assert policy("solar_installation", 100) == Decimal("120.00")
    assert policy("recycling", 100) == Decimal("50.00")
