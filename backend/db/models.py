"""Every mapped class, imported once so Base.metadata knows all tables."""

from .users import User
from .product import Product
from .product_recipe import ProductRecipe
from .tab import Tab, TabItem
from .sale import Payment, Sale, SaleItem, SaleReturn, SaleReturnItem
from .inventory import InventoryMove, StockReservation

__all__ = [
    "User",
    "Product",
    "ProductRecipe",
    "Tab",
    "TabItem",
    "Sale",
    "SaleItem",
    "Payment",
    "SaleReturn",
    "SaleReturnItem",
    "InventoryMove",
    "StockReservation",
]
