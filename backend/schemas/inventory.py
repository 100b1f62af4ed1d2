from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator


class _CostFields(BaseModel):
    unit_cost: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    lot: Optional[str] = None
    expiry_date: Optional[datetime] = None

    @field_validator("unit_cost", "discount", "tax")
    @classmethod
    def _non_negative(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v < 0:
            raise ValueError("must be >= 0")
        return v


class InventoryMoveCreate(_CostFields):
    product_id: UUID
    qty: int
    type: str = "ADJUST"
    note: Optional[str] = None
    source_ref: Optional[str] = None
    location: Optional[str] = None
    supplier_id: Optional[int] = None
    supplier_name: Optional[str] = None
    invoice_number: Optional[str] = None

    @field_validator("qty")
    @classmethod
    def _non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("qty cannot be 0")
        return v

    @field_validator("type")
    @classmethod
    def _type(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if not v:
            raise ValueError("type is required")
        return v


class InventoryMoveUpdate(BaseModel):
    qty: Optional[int] = None
    type: Optional[str] = None
    note: Optional[str] = None
    location: Optional[str] = None
    supplier_id: Optional[int] = None
    supplier_name: Optional[str] = None
    invoice_number: Optional[str] = None
    unit_cost: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    lot: Optional[str] = None
    expiry_date: Optional[datetime] = None


class AddStockRequest(_CostFields):
    product_id: UUID
    qty: int
    note: Optional[str] = None
    location: Optional[str] = None

    @field_validator("qty")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("qty must be > 0")
        return v


class AdjustStockRequest(BaseModel):
    product_id: UUID
    target: int
    note: Optional[str] = None
    location: Optional[str] = None


class ReceiptLineIn(_CostFields):
    product_id: UUID
    qty: int

    @field_validator("qty")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("qty must be > 0")
        return v


class ReceiveRequest(BaseModel):
    items: List[ReceiptLineIn]
    location: Optional[str] = None
    supplier_id: Optional[int] = None
    supplier_name: Optional[str] = None
    invoice_number: Optional[str] = None
    note: Optional[str] = None

    @field_validator("items")
    @classmethod
    def _not_empty(cls, v: List[ReceiptLineIn]) -> List[ReceiptLineIn]:
        if not v:
            raise ValueError("at least one item is required")
        return v
