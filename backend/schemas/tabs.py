from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class TabCreate(BaseModel):
    name: Optional[str] = None
    notes: Optional[str] = None


class TabRename(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("name is required")
        return v


class TabNotes(BaseModel):
    notes: Optional[str] = None


class TabItemCreate(BaseModel):
    product_id: UUID
    qty: int
    unit_price: Optional[int] = None
    line_discount: Optional[int] = None
    tax_rate: Optional[float] = Field(None, ge=0, allow_inf_nan=False)

    @field_validator("qty")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("qty must be > 0")
        return v

    @field_validator("unit_price", "line_discount")
    @classmethod
    def _non_negative(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("must be >= 0")
        return v


class TabItemUpdate(BaseModel):
    qty: Optional[int] = None
    unit_price: Optional[int] = None
    line_discount: Optional[int] = None
    tax_rate: Optional[float] = Field(None, ge=0, allow_inf_nan=False)

    @field_validator("qty")
    @classmethod
    def _positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("qty must be > 0")
        return v

    @field_validator("unit_price", "line_discount")
    @classmethod
    def _non_negative(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("must be >= 0")
        return v
