"""
Soft stock reservations held by open tabs.

Reservations never touch Product.stock. There is at most one active
(consumed = false) row per (tab, product); the partial unique index
`ux_stock_reservations_active_tab_product` enforces it, and `reserve`
merges into the existing row with a single conditional UPDATE before
falling back to an INSERT.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.errors import InvalidQuantity
from db.inventory.reservation import StockReservation
from db.product import Product
from db.tab import Tab

logger = logging.getLogger(__name__)

_res = StockReservation.__table__


def _expires_at() -> Optional[datetime]:
    if not settings.reservation_ttl_minutes:
        return None
    return datetime.utcnow() + timedelta(minutes=settings.reservation_ttl_minutes)


def _active(tab_id: UUID, product_id: UUID):
    return and_(
        _res.c.tab_id == tab_id,
        _res.c.product_id == product_id,
        _res.c.consumed.is_(False),
    )


async def _merge(db: AsyncSession, tab_id: UUID, product_id: UUID, delta: int) -> Optional[int]:
    stmt = (
        update(_res)
        .where(_active(tab_id, product_id))
        .values(qty=_res.c.qty + delta, expires_at=_expires_at(), updated_at=func.now())
        .returning(_res.c.qty)
    )
    row = (await db.execute(stmt)).first()
    return int(row[0]) if row is not None else None


async def reserve(
    db: AsyncSession,
    tab_id: UUID,
    product_id: UUID,
    qty: int,
    user_id: Optional[UUID] = None,
) -> int:
    """Add `qty` to the tab's claim on `product_id`. Returns the reserved total."""
    delta = int(qty)
    if delta <= 0:
        raise InvalidQuantity("Reservation qty must be > 0", qty=qty)

    total = await _merge(db, tab_id, product_id, delta)
    if total is not None:
        return total

    try:
        async with db.begin_nested():
            await db.execute(
                _res.insert().values(
                    id=uuid.uuid4(),
                    tab_id=tab_id,
                    product_id=product_id,
                    qty=delta,
                    reserved_by_user_id=user_id,
                    consumed=False,
                    expires_at=_expires_at(),
                )
            )
        return delta
    except IntegrityError:
        # Another request inserted the row first; merge into it.
        total = await _merge(db, tab_id, product_id, delta)
        if total is None:
            raise
        return total


async def release(db: AsyncSession, tab_id: UUID, product_id: UUID, qty: int) -> int:
    """
    Subtract `qty` from the active claim. A claim that drops to zero or
    below is deleted. Releasing a claim that does not exist is a no-op.
    Returns what remains reserved.
    """
    delta = int(qty)
    if delta <= 0:
        raise InvalidQuantity("Release qty must be > 0", qty=qty)

    remaining = await _merge(db, tab_id, product_id, -delta)
    if remaining is None:
        return 0
    if remaining <= 0:
        await db.execute(delete(_res).where(_active(tab_id, product_id)))
        return 0
    return remaining


async def adjust(db: AsyncSession, tab_id: UUID, product_id: UUID, delta: int, user_id: Optional[UUID] = None) -> int:
    if delta > 0:
        return await reserve(db, tab_id, product_id, delta, user_id)
    if delta < 0:
        return await release(db, tab_id, product_id, -delta)
    return 0


async def release_all(db: AsyncSession, tab_id: UUID) -> int:
    res = await db.execute(
        delete(_res).where(_res.c.tab_id == tab_id).where(_res.c.consumed.is_(False))
    )
    return int(res.rowcount or 0)


async def consume_for_tab(db: AsyncSession, tab_id: UUID, source_ref: str) -> int:
    """Mark the tab's active claims as turned into the sale `source_ref`."""
    res = await db.execute(
        update(_res)
        .where(_res.c.tab_id == tab_id)
        .where(_res.c.consumed.is_(False))
        .values(consumed=True, consumed_at=datetime.utcnow(), source_ref=source_ref, updated_at=func.now())
    )
    return int(res.rowcount or 0)


async def list_for_tab(db: AsyncSession, tab_id: UUID) -> List[StockReservation]:
    res = await db.execute(
        select(StockReservation)
        .where(StockReservation.tab_id == tab_id)
        .where(StockReservation.consumed.is_(False))
        .order_by(StockReservation.created_at)
        .execution_options(populate_existing=True)
    )
    return list(res.scalars().all())


async def summary(db: AsyncSession, status: str = "OPEN") -> List[dict]:
    """Total active reserved qty per product across tabs (status OPEN or ALL)."""
    now = datetime.utcnow()
    q = (
        select(
            StockReservation.product_id,
            Product.name,
            Product.stock,
            func.sum(StockReservation.qty).label("reserved"),
            func.count(func.distinct(StockReservation.tab_id)).label("tabs"),
        )
        .join(Tab, Tab.id == StockReservation.tab_id)
        .join(Product, Product.id == StockReservation.product_id)
        .where(StockReservation.consumed.is_(False))
        .where(or_(StockReservation.expires_at.is_(None), StockReservation.expires_at > now))
        .group_by(StockReservation.product_id, Product.name, Product.stock)
        .order_by(func.sum(StockReservation.qty).desc())
    )
    if (status or "OPEN").strip().upper() != "ALL":
        q = q.where(Tab.status == "OPEN")

    res = await db.execute(q)
    out = []
    for r in res.all():
        reserved = int(r.reserved or 0)
        stock = int(r.stock or 0)
        out.append(
            {
                "product_id": r.product_id,
                "name": r.name,
                "reserved": reserved,
                "stock": stock,
                "available": stock - reserved,
                "oversubscribed": reserved > stock,
                "tabs": int(r.tabs or 0),
            }
        )
    return out


async def purge_expired(db: AsyncSession) -> int:
    res = await db.execute(
        delete(_res)
        .where(_res.c.consumed.is_(False))
        .where(_res.c.expires_at.is_not(None))
        .where(_res.c.expires_at <= datetime.utcnow())
    )
    count = int(res.rowcount or 0)
    if count:
        logger.info("Purged %d expired reservations", count)
    return count
