import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Product(Base):
    """Sellable or stock-tracked item. `stock` is kept in the canonical unit of its measure."""
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False, index=True)
    category = Column(String, nullable=False, default="")

    price = Column(Integer, nullable=False, default=0)
    # Materialized balance; only the ledger writes it.
    stock = Column(Integer, nullable=False, default=0)
    min_stock = Column(Integer, nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    kind = Column(Text, nullable=False, default="STANDARD", index=True)  # STANDARD|BASE|ACCOMP|COCKTAIL
    measure = Column(Text, nullable=True)  # UNIT|ML|G

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    recipe_rows = relationship(
        "ProductRecipe",
        foreign_keys="ProductRecipe.product_id",
        back_populates="product",
        cascade="all, delete-orphan",
    )

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "price": int(self.price or 0),
            "stock": int(self.stock or 0),
            "min_stock": int(self.min_stock or 0),
            "is_active": bool(self.is_active),
            "kind": self.kind,
            "measure": self.measure,
        }
