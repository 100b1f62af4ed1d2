from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

from core.converters import normalize_kind, normalize_measure_for_kind


class ProductCreate(BaseModel):
    name: str
    category: str = ""
    price: int = 0
    stock: int = 0
    min_stock: int = 0
    kind: Optional[str] = None
    measure: Optional[str] = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("name is required")
        return v

    @field_validator("category")
    @classmethod
    def _strip(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("price", "stock", "min_stock")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @model_validator(mode="after")
    def _normalize_kind_measure(self):
        self.kind = normalize_kind(self.kind)
        self.measure = normalize_measure_for_kind(self.kind, self.measure)
        if self.kind == "COCKTAIL" and self.stock:
            raise ValueError("COCKTAIL products are not stocked; stock must be 0")
        return self


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    price: Optional[int] = None
    min_stock: Optional[int] = None
    kind: Optional[str] = None
    measure: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def _strip_optional(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("cannot be empty")
        return v

    @field_validator("price", "min_stock")
    @classmethod
    def _non_negative(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("must be >= 0")
        return v
