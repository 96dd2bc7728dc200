"""Emission factors, CO2 calculation and reduction credit policies."""

from decimal import Decimal
from enum import Enum

from .balance import money
from .errors import InvalidInput


class ActivityType(str, Enum):
    TRANSPORT = "transport"
    ELECTRICITY = "electricity"
    WASTE = "waste"
    MANUFACTURING = "manufacturing"


class ActionType(str, Enum):
    SOLAR_INSTALLATION = "solar_installation"
    TREE_PLANTING = "tree_planting"
    RECYCLING = "recycling"
    ENERGY_EFFICIENCY = "energy_efficiency"


class ProjectType(str, Enum):
    REFORESTATION = "reforestation"
    RENEWABLE_ENERGY = "renewable_energy"
    CARBON_CAPTURE = "carbon_capture"


class TransactionType(str, Enum):
    MEASURE = "measure"
    REDUCE = "reduce"
    OFFSET = "offset"
    SHARE = "share"


# kg CO2 per km
transport_factors = {
    "car": Decimal("0.17"),
    "motorcycle": Decimal("0.09"),
    "bus": Decimal("0.09"),
    "taxi": Decimal("0.16"),
    "train": Decimal("0.035"),
    "metro": Decimal("0.04"),
    "flight": Decimal("0.15"),
}
# kg CO2 per kWh, grid mix
electricity_factors = {
    "grid": Decimal("0.92"),
    "coal": Decimal("0.92"),
    "solar": Decimal("0.05"),
}
# kg CO2 per kg of waste
waste_factors = {
    "landfill": Decimal("1.0"),
    "combustion": Decimal("0.7"),
    "recycling": Decimal("0.2"),
    "composting": Decimal("0.1"),
}
# kg CO2 per unit of fuel burned
manufacturing_factors = {
    "cng": {"kg": Decimal("2.21")},
    "png": {"scm": Decimal("2.1")},
    "petrol": {"litre": Decimal("2.315")},
    "diesel": {"litre": Decimal("2.68")},
    "lpg": {"litre": Decimal("1.51")},
}

UNIT_SCALE = {
    "km": ("km", 1),
    "kwh": ("kwh", 1),
    "mwh": ("kwh", 1000),
    "kg": ("kg", 1),
    "tonne": ("kg", 1000),
    "litre": ("litre", 1),
    "liters": ("litre", 1),
    "scm": ("scm", 1),
}

DEFAULT_SUBCATEGORY = {
    ActivityType.TRANSPORT: "car",
    ActivityType.ELECTRICITY: "grid",
    ActivityType.WASTE: "landfill",
    ActivityType.MANUFACTURING: "diesel",
}


def parse_enum(enum_cls, value, field):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidInput(f"Unknown {field}", **{field: value,
                           "allowed": [m.value for m in enum_cls]}) from None


class EmissionCalculator:
    """Computes kg of CO2 for an activity from quantity, unit and sub-category."""

    def __init__(self, transport=None, electricity=None, waste=None, manufacturing=None):
        self.transport = transport or transport_factors
        self.electricity = electricity or electricity_factors
        self.waste = waste or waste_factors
        self.manufacturing = manufacturing or manufacturing_factors

    def calculate(self, activity_type, quantity, unit, subcategory=None):
        activity = parse_enum(ActivityType, activity_type, "activity_type")
        quantity = money(quantity, "quantity")
        if quantity < 0:
            raise InvalidInput("quantity must not be negative", quantity=quantity)
        key = (subcategory or DEFAULT_SUBCATEGORY[activity]).lower()
        base_unit, scale = self._unit(unit)
        amount = quantity * scale

        if activity is ActivityType.MANUFACTURING:
            factor = self.manufacturing.get(key, {}).get(base_unit)
        else:
            table, expected = {
                ActivityType.TRANSPORT: (self.transport, "km"),
                ActivityType.ELECTRICITY: (self.electricity, "kwh"),
                ActivityType.WASTE: (self.waste, "kg"),
            }[activity]
            factor = table.get(key) if base_unit == expected else None
        if factor is None:
            raise InvalidInput("No emission factor for activity",
                               activity_type=activity.value, unit=unit, subcategory=key)
        return (amount * factor).quantize(Decimal("0.01"))

    @staticmethod
    def _unit(unit):
        try:
            return UNIT_SCALE[unit.lower()]
        except (KeyError, AttributeError):
            raise InvalidInput("Unknown unit", unit=unit) from None


def ratio_policy(ratio=Decimal("1")):
    """Credits earned = impact * ratio."""
    ratio = Decimal(ratio)

    def policy(action_type, impact):
        return (Decimal(impact) * ratio).quantize(Decimal("0.01"))
    return policy


class ActionRatePolicy:
    """Per-action credit rates; actions without a rate use ``default``."""

    def __init__(self, rates, default=Decimal("1")):
        self.rates = {ActionType(k): Decimal(v) for k, v in rates.items()}
        self.default = Decimal(default)

    def __call__(self, action_type, impact):
        rate = self.rates.get(ActionType(action_type), self.default)
        return (Decimal(impact) * rate).quantize(Decimal("0.01"))
