from typing import Any, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class SaleLineIn(BaseModel):
    product_id: UUID
    qty: int
    unit_price: Optional[int] = None
    line_discount: int = 0
    tax_rate: Optional[float] = Field(None, ge=0, allow_inf_nan=False)


class PaymentIn(BaseModel):
    # Method/provider/amount are checked by the sales service so that every
    # payment problem surfaces as one INVALID_PAYMENT error.
    method: str
    amount: Any
    provider: Optional[str] = None
    reference: Optional[str] = None


class SaleCreate(BaseModel):
    items: List[SaleLineIn] = Field(min_length=1)
    payments: List[PaymentIn] = Field(min_length=1)
    notes: Optional[str] = None
    client: Optional[str] = None
    tab_id: Optional[UUID] = None
    location: Optional[str] = None


class ReturnItemIn(BaseModel):
    sale_item_id: UUID
    qty: int


class ReturnCreate(BaseModel):
    sale_id: Optional[UUID] = None
    items: List[ReturnItemIn] = Field(min_length=1)
    note: Optional[str] = None
    record_refund_payment: bool = False
    location: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_single_item(cls, data: Any) -> Any:
        # Older clients send one item inline: {"sale_item": id, "qty": n}.
        if isinstance(data, dict) and not data.get("items") and data.get("sale_item"):
            data = dict(data)
            data["items"] = [{"sale_item_id": data.pop("sale_item"), "qty": data.pop("qty", None)}]
        return data
