from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from core.errors import InvalidQuantity


def round_int(value) -> int:
    # Half away from zero, like the tills do it (not banker's rounding).
    return int(Decimal(str(value or 0)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _tax_rate(value) -> Decimal:
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise InvalidQuantity("tax_rate must be a number", tax_rate=str(value))
    if not rate.is_finite() or rate < 0:
        raise InvalidQuantity("tax_rate must be a finite number >= 0", tax_rate=str(value))
    return rate


@dataclass(frozen=True)
class LineTotals:
    gross: int
    discount: int
    base: int
    tax: int
    total: int


def calc_line_totals(unit_price: int, qty: int, line_discount: Optional[int] = 0, tax_rate: Optional[float] = None) -> LineTotals:
    gross = int(unit_price) * int(qty)
    discount = max(0, int(line_discount or 0))
    base = max(0, gross - discount)
    tax = round_int(Decimal(base) * _tax_rate(tax_rate) / 100) if tax_rate is not None else 0
    return LineTotals(gross=gross, discount=discount, base=base, tax=tax, total=base + tax)


def unit_refund(unit_price: int, qty_sold: int, line_discount: Optional[int], tax_rate: Optional[float]) -> int:
    """Refund owed for ONE returned unit of a sold line, from its snapshot values."""
    qty_sold = max(1, int(qty_sold or 1))
    per_unit_discount = max(0, int(line_discount or 0)) // qty_sold
    return calc_line_totals(unit_price, 1, per_unit_discount, tax_rate).total
