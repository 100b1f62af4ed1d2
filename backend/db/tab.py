import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Tab(Base):
    __tablename__ = "tabs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    status = Column(Text, nullable=False, default="OPEN", index=True)  # OPEN|CLOSED
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes = Column(Text, nullable=True)

    opened_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    closed_at = Column(DateTime, nullable=True)

    items = relationship("TabItem", back_populates="tab", cascade="all, delete-orphan")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "user_id": self.user_id,
            "notes": self.notes,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


class TabItem(Base):
    """A line on an open tab. Not a stock movement; it only drives a reservation."""
    __tablename__ = "tab_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tab_id = Column(Uuid, ForeignKey("tabs.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)

    qty = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    line_discount = Column(Integer, nullable=False, default=0)
    tax_rate = Column(Float, nullable=True)
    tax_amount = Column(Integer, nullable=False, default=0)
    line_total = Column(Integer, nullable=False)

    name_snapshot = Column(String, nullable=False)
    category_snapshot = Column(String, nullable=True)
    added_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)

    tab = relationship("Tab", back_populates="items")
    product = relationship("Product")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "tab_id": self.tab_id,
            "product_id": self.product_id,
            "qty": int(self.qty),
            "unit_price": int(self.unit_price),
            "line_discount": int(self.line_discount or 0),
            "tax_rate": self.tax_rate,
            "tax_amount": int(self.tax_amount or 0),
            "line_total": int(self.line_total),
            "name_snapshot": self.name_snapshot,
            "category_snapshot": self.category_snapshot,
        }
