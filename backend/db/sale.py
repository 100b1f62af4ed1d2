import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Sale(Base):
    __tablename__ = "sales"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    tab_id = Column(Uuid, ForeignKey("tabs.id", ondelete="SET NULL"), nullable=True, index=True)

    # COMPLETED|PARTIAL_REFUND|REFUNDED|VOIDED (derived, see services.sales)
    status = Column(Text, nullable=False, default="COMPLETED", index=True)

    subtotal = Column(Integer, nullable=False, default=0)
    discount_total = Column(Integer, nullable=False, default=0)
    tax_total = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)

    notes = Column(Text, nullable=True)
    client = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    items = relationship("SaleItem", back_populates="sale", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="sale", cascade="all, delete-orphan")
    returns = relationship("SaleReturn", back_populates="sale", cascade="all, delete-orphan")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "tab_id": self.tab_id,
            "status": self.status,
            "subtotal": int(self.subtotal),
            "discount_total": int(self.discount_total),
            "tax_total": int(self.tax_total),
            "total": int(self.total),
            "notes": self.notes,
            "client": self.client,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class SaleItem(Base):
    """Line snapshot taken at commit time; never changed afterwards."""
    __tablename__ = "sale_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sale_id = Column(Uuid, ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)

    qty = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    line_discount = Column(Integer, nullable=False, default=0)
    tax_rate = Column(Float, nullable=True)
    tax_amount = Column(Integer, nullable=False, default=0)
    line_total = Column(Integer, nullable=False)

    name_snapshot = Column(String, nullable=False)
    category_snapshot = Column(String, nullable=True)

    sale = relationship("Sale", back_populates="items")
    product = relationship("Product")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "sale_id": self.sale_id,
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


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sale_id = Column(Uuid, ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    # Set on refund payments recorded for a return.
    return_id = Column(Uuid, ForeignKey("sale_returns.id", ondelete="SET NULL"), nullable=True, index=True)

    method = Column(Text, nullable=False, index=True)  # CASH|CARD|TRANSFER|OTHER
    provider = Column(Text, nullable=True)
    amount = Column(Integer, nullable=False)  # negative = refund
    change_given = Column(Integer, nullable=False, default=0)
    reference = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    sale = relationship("Sale", back_populates="payments")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "return_id": self.return_id,
            "method": self.method,
            "provider": self.provider,
            "amount": int(self.amount),
            "change_given": int(self.change_given or 0),
            "reference": self.reference,
        }


class SaleReturn(Base):
    __tablename__ = "sale_returns"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    sale_id = Column(Uuid, ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    amount = Column(Integer, nullable=False, default=0)
    note = Column(Text, nullable=True)

    record_refund_payment = Column(Boolean, nullable=False, default=False)
    refund_payment_status = Column(Text, nullable=False, default="NONE", index=True)  # NONE|PENDING|RECORDED
    refund_payment_id = Column(Uuid, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    sale = relationship("Sale", back_populates="returns")
    items = relationship("SaleReturnItem", back_populates="sale_return", cascade="all, delete-orphan")

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "user_id": self.user_id,
            "amount": int(self.amount),
            "note": self.note,
            "record_refund_payment": bool(self.record_refund_payment),
            "refund_payment_status": self.refund_payment_status,
            "refund_payment_id": self.refund_payment_id,
            "items": [it.to_schema for it in (self.items or [])],
        }


class SaleReturnItem(Base):
    __tablename__ = "sale_return_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    return_id = Column(Uuid, ForeignKey("sale_returns.id", ondelete="CASCADE"), nullable=False, index=True)
    sale_item_id = Column(Uuid, ForeignKey("sale_items.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)

    name_snapshot = Column(String, nullable=True)
    qty = Column(Integer, nullable=False)
    unit_total = Column(Integer, nullable=False, default=0)
    amount = Column(Integer, nullable=False, default=0)

    sale_return = relationship("SaleReturn", back_populates="items")

    @property
    def to_schema(self):
        return {
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "name_snapshot": self.name_snapshot,
            "qty": int(self.qty),
            "unit_total": int(self.unit_total),
            "amount": int(self.amount),
        }
