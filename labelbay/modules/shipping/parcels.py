"""
Parcel presets and unit conversion

Flat-rate and carrier boxes have fixed inside dimensions (inches). A
"custom" package takes the caller's dimensions; "parcel" falls back to
the generic box when none are given.
"""
from decimal import Decimal
from typing import Dict, Optional, Tuple

# (length, width, height) in inches
PACKAGE_PRESETS: Dict[str, Optional[Tuple[Decimal, Decimal, Decimal]]] = {
    "small_flat_rate_box": (Decimal("8.625"), Decimal("5.375"), Decimal("1.625")),
    "medium_flat_rate_box": (Decimal("11"), Decimal("8.5"), Decimal("5.5")),
    "large_flat_rate_box": (Decimal("12"), Decimal("12"), Decimal("5.5")),
    "regional_a": (Decimal("10.125"), Decimal("7.125"), Decimal("5")),
    "regional_b": (Decimal("12"), Decimal("10.25"), Decimal("5")),
    "ups_small_box": (Decimal("13"), Decimal("11"), Decimal("2")),
    "ups_medium_box": (Decimal("16"), Decimal("11"), Decimal("3")),
    "ups_large_box": (Decimal("18"), Decimal("13"), Decimal("3")),
    "letter": (Decimal("11.5"), Decimal("6.125"), Decimal("0.25")),
    "flat": (Decimal("15"), Decimal("12"), Decimal("0.75")),
    "parcel": (Decimal("12"), Decimal("8"), Decimal("6")),
    "custom": None,
}

# Pounds per unit
MASS_TO_LB: Dict[str, Decimal] = {
    "lb": Decimal("1"),
    "oz": Decimal("0.0625"),
    "g": Decimal("0.00220462"),
    "kg": Decimal("2.20462"),
}

DISTANCE_UNITS = ("in", "cm")
CM_PER_IN = Decimal("2.54")

MAX_WEIGHT_LB = Decimal("150")


def weight_in_lb(weight: Decimal, mass_unit: str) -> Decimal:
    return weight * MASS_TO_LB[mass_unit]


def preset_dimensions(package_type: str, distance_unit: str) -> Optional[Tuple[Decimal, Decimal, Decimal]]:
    """Preset dimensions converted to distance_unit, or None for custom."""
    dims = PACKAGE_PRESETS[package_type]
    if dims is None:
        return None
    if distance_unit == "cm":
        return tuple((d * CM_PER_IN).quantize(Decimal("0.01")) for d in dims)
    return dims
