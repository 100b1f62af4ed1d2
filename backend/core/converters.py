"""
Unit conversion to each product's canonical stock unit.

Stock balances are always integers in the canonical unit of the product's
measure category:

- COUNT  -> UNIT (whole items)
- VOLUME -> ML
- MASS   -> G

Fractional results are rounded UP, so consumption is never under-charged.
"""

import math
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from core.errors import InvalidQuantity, InvalidUnit

Number = Union[int, float, Decimal, str]

# Product kinds
STANDARD = "STANDARD"
BASE = "BASE"
ACCOMP = "ACCOMP"
COCKTAIL = "COCKTAIL"
ALLOWED_KINDS = {STANDARD, BASE, ACCOMP, COCKTAIL}

# Measure categories
COUNT = "COUNT"
VOLUME = "VOLUME"
MASS = "MASS"

VOLUME_TO_ML = {
    "ML": Decimal("1"),
    "CL": Decimal("10"),
    "L": Decimal("1000"),
    "OZ": Decimal("29.57"),
    "SHOT": Decimal("44"),
}
MASS_TO_G = {
    "G": Decimal("1"),
    "KG": Decimal("1000"),
    "LB": Decimal("453.592"),
}
COUNT_UNIT = "UNIT"

CANONICAL_UNIT = {COUNT: COUNT_UNIT, VOLUME: "ML", MASS: "G"}
MEASURE_CATEGORY = {"UNIT": COUNT, "ML": VOLUME, "G": MASS}


def normalize_kind(value: Optional[str]) -> str:
    k = (value or STANDARD).strip().upper()
    return k if k in ALLOWED_KINDS else STANDARD


def normalize_measure_for_kind(kind: str, measure: Optional[str]) -> Optional[str]:
    k = normalize_kind(kind)
    m = (measure or "").strip().upper() or None
    if k == BASE:
        return "ML"
    if k == ACCOMP:
        return m if m in MEASURE_CATEGORY else COUNT_UNIT
    if k == COCKTAIL:
        return None
    return m if m in MEASURE_CATEGORY else COUNT_UNIT


def category_for(kind: str, measure: Optional[str]) -> str:
    """Measure category fixed by a product's kind/measure."""
    k = normalize_kind(kind)
    if k == BASE:
        return VOLUME
    if k == COCKTAIL:
        raise InvalidUnit("COCKTAIL products are not stocked in any unit", kind=k)
    m = (measure or COUNT_UNIT).strip().upper()
    cat = MEASURE_CATEGORY.get(m)
    if cat is None:
        raise InvalidUnit(f"Unsupported measure: {m}", measure=m)
    return cat


def _as_decimal(qty: Number) -> Decimal:
    if isinstance(qty, bool):
        raise InvalidQuantity("Quantity must be a number", qty=qty)
    try:
        d = Decimal(str(qty))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidQuantity(f"Quantity must be a number: {qty!r}", qty=str(qty))
    if not d.is_finite() or d <= 0:
        raise InvalidQuantity(f"Quantity must be a positive finite number: {qty}", qty=str(qty))
    return d


def ceil_int(value: Decimal) -> int:
    return int(math.ceil(value))


def to_canonical_exact(category: str, unit: Optional[str], qty: Number) -> Decimal:
    """Exact (unrounded) quantity in the category's canonical unit."""
    q = _as_decimal(qty)
    u = (unit or CANONICAL_UNIT.get(category, "")).strip().upper()

    if category == COUNT:
        if u != COUNT_UNIT:
            raise InvalidUnit(f"Incompatible unit for COUNT: {u}", unit=u, category=category)
        if q != q.to_integral_value():
            raise InvalidQuantity(f"COUNT quantities must be whole numbers: {qty}", qty=str(qty))
        return q

    if category == VOLUME:
        table = VOLUME_TO_ML
    elif category == MASS:
        table = MASS_TO_G
    else:
        raise InvalidUnit(f"Unsupported category: {category}", category=category)

    factor = table.get(u)
    if factor is None:
        raise InvalidUnit(f"Invalid {category.lower()} unit: {u}", unit=u, category=category)
    return q * factor


def to_canonical(category: str, unit: Optional[str], qty: Number) -> int:
    return ceil_int(to_canonical_exact(category, unit, qty))
