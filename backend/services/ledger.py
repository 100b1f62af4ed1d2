"""
Stock ledger: append-only InventoryMove rows plus the materialized
Product.stock balance.

Every balance change goes through `_apply_delta`, a single conditional
UPDATE (`stock = stock + delta WHERE stock + delta >= 0 RETURNING stock`),
so the non-negative check and the write are one atomic statement per
product. Multi-product operations lock their product rows in id order
(`validate_plan`) and check the whole plan before the first write.

Nothing here commits; the caller owns the transaction.
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.util import identity_key

from core.errors import InsufficientStock, InvalidQuantity, NotFound
from db.inventory.move import InventoryMove
from db.product import Product

logger = logging.getLogger(__name__)

# Move types
IN = "IN"
OUT = "OUT"
ADJUST = "ADJUST"
SALE = "SALE"
RECIPE_USE = "RECIPE_USE"
ACCOMP_USE = "ACCOMP_USE"
RETURN_RECIPE = "RETURN_RECIPE"
RETURN_ACCOMP = "RETURN_ACCOMP"
VOID_REVERSAL = "VOID_REVERSAL"

EDITABLE_FIELDS = {
    "note",
    "type",
    "location",
    "supplier_id",
    "supplier_name",
    "invoice_number",
    "unit_cost",
    "discount",
    "tax",
    "lot",
    "expiry_date",
}

_products = Product.__table__


@dataclass
class PlannedMove:
    product_id: UUID
    qty: int  # signed, canonical units
    move_type: str
    label: Optional[str] = None


@dataclass
class AppliedMove:
    move: InventoryMove
    balance: int


@dataclass
class MoveMeta:
    """Optional audit/cost metadata copied onto each written move."""
    note: str = ""
    location: Optional[str] = None
    supplier_id: Optional[int] = None
    supplier_name: Optional[str] = None
    invoice_number: Optional[str] = None
    unit_cost: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    lot: Optional[str] = None
    expiry_date: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def _sync_cached_stock(db: AsyncSession, product_id: UUID, balance: int) -> None:
    # Keep an already-loaded Product in this session in step with the UPDATE.
    cached = db.identity_map.get(identity_key(Product, product_id))
    if cached is not None:
        set_committed_value(cached, "stock", balance)


async def _apply_delta(db: AsyncSession, product_id: UUID, delta: int) -> int:
    stmt = (
        update(_products)
        .where(_products.c.id == product_id)
        .where(_products.c.stock + delta >= 0)
        .values(stock=_products.c.stock + delta)
        .returning(_products.c.stock)
    )
    row = (await db.execute(stmt)).first()
    if row is None:
        res = await db.execute(select(Product.stock, Product.name).where(Product.id == product_id))
        current = res.first()
        if current is None:
            raise NotFound(f"Product {product_id} not found", product_id=product_id)
        raise InsufficientStock(product_id, requested=-delta, available=int(current.stock), name=current.name)
    balance = int(row[0])
    _sync_cached_stock(db, product_id, balance)
    return balance


async def apply_move(
    db: AsyncSession,
    *,
    product_id: UUID,
    qty: int,
    move_type: str,
    source_ref: Optional[str] = None,
    user_id: Optional[UUID] = None,
    meta: Optional[MoveMeta] = None,
) -> AppliedMove:
    """Apply one signed delta and append its ledger row."""
    delta = int(qty)
    if delta == 0:
        raise InvalidQuantity("Move quantity cannot be zero", product_id=product_id)
    meta = meta or MoveMeta()

    balance = await _apply_delta(db, product_id, delta)

    move = InventoryMove(
        id=uuid.uuid4(),
        product_id=product_id,
        qty=delta,
        type=(move_type or "").strip().upper() or None,
        note=meta.note or "",
        source_ref=source_ref,
        location=meta.location,
        supplier_id=meta.supplier_id,
        supplier_name=meta.supplier_name,
        invoice_number=meta.invoice_number,
        unit_cost=meta.unit_cost,
        discount=meta.discount,
        tax=meta.tax,
        lot=meta.lot,
        expiry_date=meta.expiry_date,
        created_by_user_id=user_id,
    )
    db.add(move)
    await db.flush()
    return AppliedMove(move=move, balance=balance)


def aggregate_plan(plan: Iterable[PlannedMove]) -> "OrderedDict[UUID, int]":
    """Net delta per product, in first-seen order."""
    net: "OrderedDict[UUID, int]" = OrderedDict()
    for mv in plan:
        net[mv.product_id] = net.get(mv.product_id, 0) + int(mv.qty)
    return net


async def validate_plan(db: AsyncSession, plan: List[PlannedMove]) -> Dict[UUID, int]:
    """
    Check that every product touched by `plan` stays >= 0 once the whole
    plan is applied. Rows are locked (FOR UPDATE where supported) in id
    order so concurrent plans serialize instead of deadlocking.
    Returns the current balance per product.
    """
    net = aggregate_plan(plan)
    if not net:
        return {}

    res = await db.execute(
        select(Product.id, Product.stock, Product.name)
        .where(Product.id.in_(list(net.keys())))
        .order_by(Product.id)
        .with_for_update()
    )
    rows = {r.id: r for r in res.all()}

    balances: Dict[UUID, int] = {}
    for product_id, delta in net.items():
        row = rows.get(product_id)
        if row is None:
            raise NotFound(f"Product {product_id} not found", product_id=product_id)
        stock = int(row.stock or 0)
        if stock + delta < 0:
            raise InsufficientStock(product_id, requested=-delta, available=stock, name=row.name)
        balances[product_id] = stock
    return balances


async def apply_moves(
    db: AsyncSession,
    plan: List[PlannedMove],
    *,
    source_ref: Optional[str] = None,
    user_id: Optional[UUID] = None,
    meta: Optional[MoveMeta] = None,
) -> List[AppliedMove]:
    out: List[AppliedMove] = []
    for mv in plan:
        out.append(
            await apply_move(
                db,
                product_id=mv.product_id,
                qty=mv.qty,
                move_type=mv.move_type,
                source_ref=source_ref,
                user_id=user_id,
                meta=meta,
            )
        )
    return out


async def apply_plan(
    db: AsyncSession,
    plan: List[PlannedMove],
    *,
    source_ref: Optional[str] = None,
    user_id: Optional[UUID] = None,
    meta: Optional[MoveMeta] = None,
) -> List[AppliedMove]:
    """Validate the whole plan, then write every move. All-or-nothing within the caller's transaction."""
    await validate_plan(db, plan)
    return await apply_moves(db, plan, source_ref=source_ref, user_id=user_id, meta=meta)


async def get_move(db: AsyncSession, move_id: UUID) -> InventoryMove:
    move = (await db.execute(select(InventoryMove).where(InventoryMove.id == move_id))).scalar_one_or_none()
    if move is None:
        raise NotFound(f"Inventory move {move_id} not found", move_id=move_id)
    return move


async def current_stock(db: AsyncSession, product_id: UUID) -> int:
    stock = (await db.execute(select(Product.stock).where(Product.id == product_id))).scalar_one_or_none()
    if stock is None:
        raise NotFound(f"Product {product_id} not found", product_id=product_id)
    return int(stock)


async def edit_move(
    db: AsyncSession,
    move_id: UUID,
    *,
    qty: Optional[int] = None,
    changes: Optional[Dict[str, Any]] = None,
) -> AppliedMove:
    """
    Manual correction of a ledger row. A new qty re-applies only the
    difference (new - old) to the balance, under the same non-negative check.
    """
    move = await get_move(db, move_id)

    balance: Optional[int] = None
    if qty is not None:
        new_qty = int(qty)
        delta = new_qty - int(move.qty)
        if delta:
            balance = await _apply_delta(db, move.product_id, delta)
        move.qty = new_qty

    for key, value in (changes or {}).items():
        if key not in EDITABLE_FIELDS:
            continue
        if key == "type" and value:
            value = str(value).strip().upper()
        setattr(move, key, value)

    await db.flush()
    if balance is None:
        balance = await current_stock(db, move.product_id)
    return AppliedMove(move=move, balance=balance)


async def delete_move(db: AsyncSession, move_id: UUID) -> int:
    """Remove a ledger row and reverse its effect on the balance."""
    move = await get_move(db, move_id)
    if move.qty:
        balance = await _apply_delta(db, move.product_id, -int(move.qty))
    else:
        balance = await current_stock(db, move.product_id)
    await db.delete(move)
    await db.flush()
    return balance


async def _get_product(db: AsyncSession, product_id: UUID, *, active_only: bool = False) -> Product:
    product = (await db.execute(select(Product).where(Product.id == product_id))).scalar_one_or_none()
    if product is None or (active_only and not product.is_active):
        raise NotFound(f"Product {product_id} not found or inactive", product_id=product_id)
    return product


async def add_stock(
    db: AsyncSession,
    *,
    product_id: UUID,
    qty: int,
    user_id: Optional[UUID] = None,
    meta: Optional[MoveMeta] = None,
) -> AppliedMove:
    if int(qty) <= 0:
        raise InvalidQuantity("qty must be > 0", qty=qty)
    await _get_product(db, product_id, active_only=True)
    meta = meta or MoveMeta()
    meta.note = meta.note or "Quick stock entry"
    return await apply_move(db, product_id=product_id, qty=int(qty), move_type=IN, user_id=user_id, meta=meta)


async def adjust_stock(
    db: AsyncSession,
    *,
    product_id: UUID,
    target: int,
    user_id: Optional[UUID] = None,
    meta: Optional[MoveMeta] = None,
) -> Optional[AppliedMove]:
    """Set the balance to `target` (clamped at 0) with one ADJUST move. None when already there."""
    await _get_product(db, product_id)
    balances = await validate_plan(db, [PlannedMove(product_id=product_id, qty=0, move_type=ADJUST)])
    delta = max(0, int(target)) - balances[product_id]
    if delta == 0:
        return None
    meta = meta or MoveMeta()
    meta.note = meta.note or "Stock adjustment"
    return await apply_move(db, product_id=product_id, qty=delta, move_type=ADJUST, user_id=user_id, meta=meta)


@dataclass
class ReceiptLine:
    product_id: UUID
    qty: int
    unit_cost: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    lot: Optional[str] = None
    expiry_date: Optional[datetime] = None


async def receive(
    db: AsyncSession,
    lines: List[ReceiptLine],
    *,
    user_id: Optional[UUID] = None,
    location: Optional[str] = None,
    supplier_id: Optional[int] = None,
    supplier_name: Optional[str] = None,
    invoice_number: Optional[str] = None,
    note: Optional[str] = None,
) -> List[AppliedMove]:
    """Supplier receipt: one IN move per line, all lines or none."""
    if not lines:
        raise InvalidQuantity("No lines to receive")
    for line in lines:
        if int(line.qty) <= 0:
            raise InvalidQuantity("Every receipt line needs qty > 0", product_id=line.product_id)
        await _get_product(db, line.product_id, active_only=True)

    out: List[AppliedMove] = []
    for line in lines:
        meta = MoveMeta(
            note=note or "Supplier receipt",
            location=location,
            supplier_id=supplier_id,
            supplier_name=supplier_name,
            invoice_number=invoice_number,
            unit_cost=line.unit_cost,
            discount=line.discount,
            tax=line.tax,
            lot=line.lot,
            expiry_date=line.expiry_date,
        )
        out.append(
            await apply_move(db, product_id=line.product_id, qty=int(line.qty), move_type=IN, user_id=user_id, meta=meta)
        )
    logger.info("Received %d lines (invoice=%s)", len(out), invoice_number)
    return out


async def ledger_drift(db: AsyncSession) -> List[dict]:
    """Products whose materialized stock differs from the sum of their ledger rows."""
    sums = (
        select(InventoryMove.product_id, func.sum(InventoryMove.qty).label("ledger_sum"))
        .group_by(InventoryMove.product_id)
        .subquery()
    )
    ledger_sum = func.coalesce(sums.c.ledger_sum, 0)
    res = await db.execute(
        select(Product.id, Product.name, Product.stock, ledger_sum.label("ledger_sum"))
        .outerjoin(sums, sums.c.product_id == Product.id)
        .where(Product.stock != ledger_sum)
        .order_by(Product.name)
    )
    return [
        {
            "product_id": r.id,
            "name": r.name,
            "stock": int(r.stock),
            "ledger_sum": int(r.ledger_sum),
            "difference": int(r.stock) - int(r.ledger_sum),
        }
        for r in res.all()
    ]


async def low_stock(db: AsyncSession) -> List[Product]:
    res = await db.execute(
        select(Product)
        .where(Product.is_active.is_(True))
        .where(Product.min_stock > 0)
        .where(Product.stock <= Product.min_stock)
        .order_by(Product.min_stock, Product.category, Product.name)
    )
    return list(res.scalars().all())


async def list_moves(
    db: AsyncSession,
    *,
    product_id: Optional[UUID] = None,
    move_type: Optional[str] = None,
    location: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    q: Optional[str] = None,
    limit: int = 200,
    offset: int = 0,
) -> List[InventoryMove]:
    query = select(InventoryMove).order_by(InventoryMove.created_at.desc(), InventoryMove.id.desc())
    if product_id is not None:
        query = query.where(InventoryMove.product_id == product_id)
    if move_type:
        query = query.where(InventoryMove.type == move_type.strip().upper())
    if location:
        query = query.where(InventoryMove.location == location)
    if start is not None:
        query = query.where(InventoryMove.created_at >= start)
    if end is not None:
        query = query.where(InventoryMove.created_at < end)
    if q and q.strip():
        like = f"%{q.strip()}%"
        query = query.where(or_(InventoryMove.note.ilike(like), InventoryMove.invoice_number.ilike(like)))
    query = query.offset(max(0, offset)).limit(max(1, min(1000, limit)))
    return list((await db.execute(query)).scalars().all())
