import uuid
from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class InventoryMove(Base):
    __tablename__ = "inventory_moves"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    product_id = Column(
        Uuid,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # Canonical units; negative = consumption
    qty = Column(Integer, nullable=False)
    # IN|OUT|ADJUST|SALE|RECIPE_USE|ACCOMP_USE|RETURN|RETURN_RECIPE|RETURN_ACCOMP|VOID_REVERSAL|...
    type = Column(Text, nullable=True, index=True)
    note = Column(Text, nullable=False, default="")
    source_ref = Column(Text, nullable=True, index=True)
    location = Column(Text, nullable=True, index=True)

    supplier_id = Column(Integer, nullable=True, index=True)
    supplier_name = Column(String, nullable=True)
    invoice_number = Column(String, nullable=True)
    unit_cost = Column(Numeric(12, 2), nullable=True)
    discount = Column(Numeric(12, 2), nullable=True)
    tax = Column(Numeric(12, 2), nullable=True)
    lot = Column(String, nullable=True)
    expiry_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
    created_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    product = relationship("Product")

    @property
    def cost_total(self) -> Decimal:
        """unit_cost * qty - discount + tax, derived on read."""
        unit_cost = Decimal(str(self.unit_cost or 0))
        discount = Decimal(str(self.discount or 0))
        tax = Decimal(str(self.tax or 0))
        return unit_cost * int(self.qty or 0) - discount + tax

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "qty": int(self.qty),
            "type": self.type,
            "note": self.note,
            "source_ref": self.source_ref,
            "location": self.location,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier_name,
            "invoice_number": self.invoice_number,
            "unit_cost": float(self.unit_cost) if self.unit_cost is not None else None,
            "discount": float(self.discount) if self.discount is not None else None,
            "tax": float(self.tax) if self.tax is not None else None,
            "lot": self.lot,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "created_by_user_id": self.created_by_user_id,
            "cost_total": float(self.cost_total),
        }
