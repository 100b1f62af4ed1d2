from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator


class RecipeRowIn(BaseModel):
    ingredient_id: UUID
    qty: Decimal
    unit: Optional[str] = None
    role: str
    note: Optional[str] = None

    @field_validator("qty")
    @classmethod
    def _positive(cls, v: Decimal) -> Decimal:
        if not v.is_finite() or v <= 0:
            raise ValueError("qty must be > 0")
        return v

    @field_validator("unit")
    @classmethod
    def _unit(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

    @field_validator("role")
    @classmethod
    def _role(cls, v: str) -> str:
        v = (v or "").strip().upper()
        if v not in ("BASE", "ACCOMP"):
            raise ValueError("role must be BASE or ACCOMP")
        return v


class RecipeReplace(BaseModel):
    items: List[RecipeRowIn] = []

    @field_validator("items")
    @classmethod
    def _no_duplicates(cls, v: List[RecipeRowIn]) -> List[RecipeRowIn]:
        seen = set()
        for row in v:
            if row.ingredient_id in seen:
                raise ValueError(f"ingredient {row.ingredient_id} appears more than once")
            seen.add(row.ingredient_id)
        return v
