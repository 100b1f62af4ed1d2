import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class ProductRecipe(Base):
    """One BOM row: how much of `ingredient` one unit of `product` (a COCKTAIL) consumes."""
    __tablename__ = "product_recipes"
    __table_args__ = (
        UniqueConstraint("product_id", "ingredient_id", name="ux_product_recipes_product_ingredient"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    ingredient_id = Column(Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)

    qty = Column(Numeric(10, 3), nullable=False)
    unit = Column(String, nullable=True)  # ML|CL|L|OZ|SHOT|G|KG|LB|UNIT
    role = Column(Text, nullable=False)  # BASE|ACCOMP
    note = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    product = relationship("Product", foreign_keys=[product_id], back_populates="recipe_rows")
    ingredient = relationship("Product", foreign_keys=[ingredient_id])
