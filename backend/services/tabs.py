"""
Open tabs: running orders whose lines hold soft reservations until the
tab is turned into a sale, cleared or closed.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InvalidQuantity, NotFound, TabNotClosed, TabNotOpen
from core.money import calc_line_totals
from db.inventory.reservation import StockReservation
from db.product import Product
from db.tab import Tab, TabItem
from services import reservations

logger = logging.getLogger(__name__)

OPEN = "OPEN"
CLOSED = "CLOSED"

_UNSET = object()


def _as_count(qty) -> int:
    if isinstance(qty, bool):
        raise InvalidQuantity("Invalid quantity", qty=qty)
    try:
        q = float(qty)
    except (TypeError, ValueError):
        raise InvalidQuantity("Invalid quantity", qty=str(qty))
    if q <= 0 or q != int(q):
        raise InvalidQuantity("Tab quantities must be whole numbers > 0", qty=qty)
    return int(q)


def _as_money(value, field: str) -> int:
    try:
        v = int(value)
    except (TypeError, ValueError):
        raise InvalidQuantity(f"Invalid {field}", **{field: str(value)})
    if v < 0:
        raise InvalidQuantity(f"{field} cannot be negative", **{field: v})
    return v


def _apply_totals(item: TabItem) -> None:
    t = calc_line_totals(item.unit_price, item.qty, item.line_discount, item.tax_rate)
    item.line_discount = t.discount
    item.tax_amount = t.tax
    item.line_total = t.total


def compute_totals(items: List[TabItem]) -> dict:
    subtotal = discount_total = tax_total = total = count = 0
    for it in items:
        gross = int(it.unit_price or 0) * int(it.qty or 0)
        line_discount = int(it.line_discount or 0)
        subtotal += max(0, gross - line_discount)
        discount_total += line_discount
        tax_total += int(it.tax_amount or 0)
        total += int(it.line_total or 0)
        count += int(it.qty or 0)
    return {
        "subtotal": subtotal,
        "discount_total": discount_total,
        "tax_total": tax_total,
        "total": total,
        "items_count": count,
    }


async def get_tab(db: AsyncSession, tab_id: UUID) -> Tab:
    tab = (await db.execute(select(Tab).where(Tab.id == tab_id))).scalar_one_or_none()
    if tab is None:
        raise NotFound(f"Tab {tab_id} not found", tab_id=tab_id)
    return tab


async def get_open_tab(db: AsyncSession, tab_id: UUID) -> Tab:
    tab = await get_tab(db, tab_id)
    if tab.status != OPEN:
        raise TabNotOpen(f"Tab {tab.name} is not open", tab_id=tab_id)
    return tab


async def list_items(db: AsyncSession, tab_id: UUID) -> List[TabItem]:
    res = await db.execute(select(TabItem).where(TabItem.tab_id == tab_id).order_by(TabItem.added_at, TabItem.id))
    return list(res.scalars().all())


async def get_item(db: AsyncSession, item_id: UUID) -> TabItem:
    item = (await db.execute(select(TabItem).where(TabItem.id == item_id))).scalar_one_or_none()
    if item is None:
        raise NotFound(f"Tab item {item_id} not found", item_id=item_id)
    return item


async def list_tabs(db: AsyncSession, status: Optional[str] = OPEN, q: Optional[str] = None) -> List[Tab]:
    query = select(Tab).order_by(Tab.opened_at.desc())
    s = (status or OPEN).strip().upper()
    if s != "ALL":
        query = query.where(Tab.status == s)
    if q and q.strip():
        like = f"%{q.strip()}%"
        query = query.where(or_(Tab.name.ilike(like), Tab.notes.ilike(like)))
    return list((await db.execute(query)).scalars().all())


async def create_tab(db: AsyncSession, *, name: Optional[str], notes: Optional[str], user_id: Optional[UUID]) -> Tab:
    tab = Tab(name=(name or "").strip() or "Tab", notes=notes, status=OPEN, user_id=user_id)
    db.add(tab)
    await db.flush()
    await db.refresh(tab)
    return tab


async def rename_tab(db: AsyncSession, tab_id: UUID, name: str) -> Tab:
    tab = await get_tab(db, tab_id)
    name = (name or "").strip()
    if not name:
        raise InvalidQuantity("Tab name cannot be empty")
    tab.name = name
    await db.flush()
    return tab


async def set_notes(db: AsyncSession, tab_id: UUID, notes: Optional[str]) -> Tab:
    tab = await get_tab(db, tab_id)
    tab.notes = notes
    await db.flush()
    return tab


async def add_item(
    db: AsyncSession,
    tab_id: UUID,
    *,
    product_id: UUID,
    qty,
    unit_price: Optional[int] = None,
    line_discount: Optional[int] = None,
    tax_rate: Optional[float] = None,
    user_id: Optional[UUID] = None,
) -> TabItem:
    tab = await get_open_tab(db, tab_id)
    product = (await db.execute(select(Product).where(Product.id == product_id))).scalar_one_or_none()
    if product is None or not product.is_active:
        raise NotFound(f"Product {product_id} not found or inactive", product_id=product_id)

    item = TabItem(
        tab_id=tab.id,
        product_id=product.id,
        qty=_as_count(qty),
        unit_price=_as_money(unit_price if unit_price is not None else (product.price or 0), "unit_price"),
        line_discount=_as_money(line_discount or 0, "line_discount"),
        tax_rate=tax_rate,
        name_snapshot=product.name,
        category_snapshot=product.category or None,
    )
    _apply_totals(item)

    await reservations.reserve(db, tab.id, product.id, item.qty, user_id)
    db.add(item)
    await db.flush()
    await db.refresh(item)
    return item


async def update_item(
    db: AsyncSession,
    item_id: UUID,
    *,
    qty=None,
    unit_price: Optional[int] = None,
    line_discount: Optional[int] = None,
    tax_rate=_UNSET,
    user_id: Optional[UUID] = None,
) -> TabItem:
    item = await get_item(db, item_id)
    await get_open_tab(db, item.tab_id)

    original_qty = int(item.qty)
    if qty is not None:
        item.qty = _as_count(qty)
    if unit_price is not None:
        item.unit_price = _as_money(unit_price, "unit_price")
    if line_discount is not None:
        item.line_discount = _as_money(line_discount, "line_discount")
    if tax_rate is not _UNSET:
        item.tax_rate = tax_rate
    _apply_totals(item)

    await reservations.adjust(db, item.tab_id, item.product_id, int(item.qty) - original_qty, user_id)
    await db.flush()
    return item


async def remove_item(db: AsyncSession, item_id: UUID) -> None:
    item = await get_item(db, item_id)
    await get_open_tab(db, item.tab_id)
    await reservations.release(db, item.tab_id, item.product_id, int(item.qty))
    await db.delete(item)
    await db.flush()


async def clear_tab(db: AsyncSession, tab_id: UUID) -> int:
    tab = await get_tab(db, tab_id)
    res = await db.execute(delete(TabItem).where(TabItem.tab_id == tab.id))
    await reservations.release_all(db, tab.id)
    return int(res.rowcount or 0)


async def close_tab(db: AsyncSession, tab_id: UUID) -> Tab:
    tab = await get_tab(db, tab_id)
    if tab.status == CLOSED:
        return tab
    released = await reservations.release_all(db, tab.id)
    tab.status = CLOSED
    tab.closed_at = datetime.utcnow()
    await db.flush()
    logger.info("Tab %s closed (%d reservations released)", tab.id, released)
    return tab


async def reopen_tab(db: AsyncSession, tab_id: UUID, user_id: Optional[UUID] = None) -> Tab:
    tab = await get_tab(db, tab_id)
    if tab.status == OPEN:
        return tab
    tab.status = OPEN
    tab.closed_at = None
    per_product = {}
    for it in await list_items(db, tab.id):
        per_product[it.product_id] = per_product.get(it.product_id, 0) + int(it.qty)
    for product_id, qty in per_product.items():
        await reservations.reserve(db, tab.id, product_id, qty, user_id)
    await db.flush()
    return tab


async def delete_tab(db: AsyncSession, tab_id: UUID) -> None:
    tab = await get_tab(db, tab_id)
    if tab.status != CLOSED:
        raise TabNotClosed("Only closed tabs can be deleted", tab_id=tab_id, status=tab.status)
    await db.execute(delete(TabItem).where(TabItem.tab_id == tab.id))
    await db.execute(delete(StockReservation).where(StockReservation.tab_id == tab.id))
    await db.delete(tab)
    await db.flush()


async def close_after_sale(db: AsyncSession, tab_id: UUID, sale_id: UUID) -> Tab:
    """The tab's claims become the sale's: mark them consumed and close the tab."""
    tab = await get_open_tab(db, tab_id)
    consumed = await reservations.consume_for_tab(db, tab.id, str(sale_id))
    tab.status = CLOSED
    tab.closed_at = datetime.utcnow()
    await db.flush()
    logger.info("Tab %s closed by sale %s (%d reservations consumed)", tab.id, sale_id, consumed)
    return tab


async def payload_for_sale(db: AsyncSession, tab_id: UUID) -> dict:
    tab = await get_tab(db, tab_id)
    items = await list_items(db, tab.id)
    if not items:
        raise InvalidQuantity("Tab has no items", tab_id=tab_id)
    return {
        "tab_id": tab.id,
        "tab_name": tab.name,
        "totals": compute_totals(items),
        "items": [
            {
                "product_id": it.product_id,
                "qty": int(it.qty),
                "unit_price": int(it.unit_price),
                "line_discount": int(it.line_discount or 0),
                "tax_rate": it.tax_rate,
            }
            for it in items
        ],
    }


async def tab_detail(db: AsyncSession, tab_id: UUID) -> dict:
    tab = await get_tab(db, tab_id)
    items = await list_items(db, tab.id)
    out = tab.to_schema
    out["items"] = [it.to_schema for it in items]
    out["totals"] = compute_totals(items)
    return out
