"""
Inventory ledger.

Models:
- InventoryMove (append-only signed deltas; Product.stock is their running sum)
- StockReservation (soft per-tab claims; never touch Product.stock)
"""

from .move import InventoryMove
from .reservation import StockReservation

__all__ = ["InventoryMove", "StockReservation"]
