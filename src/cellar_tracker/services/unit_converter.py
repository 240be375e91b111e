"""
Unit conversion for the cellar ledger.

This module provides:
- Standard unit conversions (weight, volume, count)
- Conversion of any volume to the ledger unit (liters)

Conversion Strategy:
- Weight units convert through grams (base unit)
- Volume units convert through milliliters (base unit)
- Count units convert through single items
- All arithmetic is Decimal; weight and volume never convert into each other

Unit names are case-insensitive ("L", "l" and "liter" are the same unit).
"""

from decimal import Decimal
from typing import Dict, Optional, Union

Number = Union[Decimal, int, str]

# ============================================================================
# Standard Conversion Tables
# ============================================================================

# Weight conversions to grams (base unit)
WEIGHT_TO_GRAMS: Dict[str, Decimal] = {
    "g": Decimal("1"),
    "kg": Decimal("1000"),
    "oz": Decimal("28.349523125"),
    "lb": Decimal("453.59237"),
    # Apple bushel, 42 lb
    "bushel": Decimal("19050"),
}

# Volume conversions to milliliters (base unit)
VOLUME_TO_ML: Dict[str, Decimal] = {
    "ml": Decimal("1"),
    "l": Decimal("1000"),
    "liter": Decimal("1000"),
    "hl": Decimal("100000"),
    "gal": Decimal("3785.411784"),
    # US beer barrel, 31 gal
    "bbl": Decimal("117347.765304"),
}

# Count conversions to individual items (base unit)
COUNT_TO_ITEMS: Dict[str, Decimal] = {
    "each": Decimal("1"),
    "count": Decimal("1"),
    "dozen": Decimal("12"),
}

_TABLES = {
    "weight": WEIGHT_TO_GRAMS,
    "volume": VOLUME_TO_ML,
    "count": COUNT_TO_ITEMS,
}


# ============================================================================
# Unit Type Detection
# ============================================================================


def unit_kind(unit: str) -> Optional[str]:
    """
    Determine the kind of a unit.

    Args:
        unit: Unit string

    Returns:
        "weight", "volume", "count", or None for an unknown unit
    """
    unit_lower = unit.strip().lower()
    for kind, table in _TABLES.items():
        if unit_lower in table:
            return kind
    return None


def is_known_unit(unit: str) -> bool:
    return unit_kind(unit) is not None


def is_volume_unit(unit: str) -> bool:
    return unit_kind(unit) == "volume"


def units_compatible(unit1: str, unit2: str) -> bool:
    """True if both units are known and of the same kind."""
    kind = unit_kind(unit1)
    return kind is not None and kind == unit_kind(unit2)


# ============================================================================
# Conversions
# ============================================================================


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, float):
        return Decimal(str(value))
    return value if isinstance(value, Decimal) else Decimal(str(value))


def convert(quantity: Number, from_unit: str, to_unit: str) -> Decimal:
    """
    Convert a quantity between two units of the same kind.

    Args:
        quantity: Amount to convert
        from_unit: Source unit (e.g., "lb")
        to_unit: Target unit (e.g., "kg")

    Returns:
        Converted quantity as Decimal (exact for same-unit conversions)

    Raises:
        ValueError: If either unit is unknown or the kinds differ
            (weight cannot become volume)
    """
    value = _to_decimal(quantity)
    from_lower = from_unit.strip().lower()
    to_lower = to_unit.strip().lower()

    if from_lower == to_lower:
        return value

    from_kind = unit_kind(from_lower)
    if from_kind is None:
        raise ValueError(f"Unknown unit: {from_unit}")
    to_kind = unit_kind(to_lower)
    if to_kind is None:
        raise ValueError(f"Unknown unit: {to_unit}")
    if from_kind != to_kind:
        raise ValueError(
            f"Cannot convert {from_unit} to {to_unit}: incompatible unit types "
            f"({from_kind} vs {to_kind})"
        )

    table = _TABLES[from_kind]
    if table[from_lower] == table[to_lower]:
        return value
    return value * table[from_lower] / table[to_lower]


def to_liters(quantity: Number, unit: str) -> Decimal:
    """Convert a volume to the ledger unit (liters)."""
    return convert(quantity, unit, "L")
