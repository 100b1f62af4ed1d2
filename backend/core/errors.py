"""
Domain errors raised by the inventory engine.

Every error carries a machine-readable `code`, a human message, the HTTP
status the API layer should answer with, and a `context` dict with the
values a cashier needs to act on it (product id, requested, available...).
"""

from typing import Any, Dict, Optional


class InventoryError(Exception):
    code = "INVENTORY_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        out = {"ok": False, "error": self.code, "detail": self.message}
        for k, v in self.context.items():
            out[k] = str(v) if k.endswith("_id") and v is not None else v
        return out


class InvalidUnit(InventoryError):
    code = "INVALID_UNIT"


class InvalidQuantity(InventoryError):
    code = "INVALID_QUANTITY"


class RoleMismatch(InventoryError):
    code = "ROLE_MISMATCH"


class NoRecipe(InventoryError):
    code = "NO_RECIPE"


class InvalidPayment(InventoryError):
    code = "INVALID_PAYMENT"


class ProductNotSellable(InventoryError):
    code = "PRODUCT_NOT_SELLABLE"


class NotFound(InventoryError):
    code = "NOT_FOUND"
    status_code = 404


class SaleNotEligible(InventoryError):
    code = "SALE_NOT_ELIGIBLE"
    status_code = 409


class InsufficientStock(InventoryError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, product_id, requested: int, available: int, name: Optional[str] = None):
        label = name or str(product_id)
        super().__init__(
            f"Insufficient stock for {label}: requested={requested} available={available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ReturnQuantityExceeded(InventoryError):
    code = "RETURN_QUANTITY_EXCEEDED"

    def __init__(self, sale_item_id, requested: int, available: int):
        super().__init__(
            f"Return quantity exceeds what is left to return: requested={requested} available={available}",
            sale_item_id=sale_item_id,
            requested=requested,
            available=available,
        )
        self.sale_item_id = sale_item_id
        self.requested = requested
        self.available = available


class TabNotOpen(InventoryError):
    code = "TAB_NOT_OPEN"
    status_code = 409


class TabNotClosed(InventoryError):
    code = "TAB_NOT_CLOSED"
    status_code = 409


class InvalidRecipe(InventoryError):
    code = "INVALID_RECIPE"
