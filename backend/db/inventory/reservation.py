import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, false
from sqlalchemy.sql import func

from ..database import Base


class StockReservation(Base):
    __tablename__ = "stock_reservations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    tab_id = Column(Uuid, ForeignKey("tabs.id", ondelete="CASCADE"), nullable=False, index=True)

    qty = Column(Integer, nullable=False)
    reserved_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    consumed = Column(Boolean, nullable=False, default=False, index=True)
    consumed_at = Column(DateTime, nullable=True)
    source_ref = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def to_schema(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "tab_id": self.tab_id,
            "qty": int(self.qty),
            "consumed": bool(self.consumed),
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
            "source_ref": self.source_ref,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


# At most one active (unconsumed) reservation per (tab, product).
Index(
    "ux_stock_reservations_active_tab_product",
    StockReservation.tab_id,
    StockReservation.product_id,
    unique=True,
    postgresql_where=StockReservation.consumed == false(),
    sqlite_where=StockReservation.consumed == false(),
)
