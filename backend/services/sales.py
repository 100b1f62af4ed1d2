"""
Sale, return and void orchestration.

Each public operation builds its full stock plan first, validates the
whole plan against current balances (locking the product rows), and only
then writes the header, line snapshots, ledger moves and payments, all in
one transaction. Any error rolls the session back before it propagates.

Sale status is derived, never set by callers:

    COMPLETED -> VOIDED                      (no returns yet)
    COMPLETED -> PARTIAL_REFUND -> REFUNDED  (one or more returns)
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.config import settings
from core.converters import ACCOMP, CANONICAL_UNIT, COCKTAIL, STANDARD, category_for, normalize_kind, to_canonical
from core.errors import (
    InvalidPayment,
    InvalidQuantity,
    InventoryError,
    NotFound,
    ProductNotSellable,
    ReturnQuantityExceeded,
    SaleNotEligible,
)
from core.money import calc_line_totals, unit_refund
from db.inventory.move import InventoryMove
from db.product import Product
from db.sale import Payment, Sale, SaleItem, SaleReturn, SaleReturnItem
from services import ledger, tabs
from services.ledger import MoveMeta, PlannedMove
from services.recipes import RecipeResolver

logger = logging.getLogger(__name__)

COMPLETED = "COMPLETED"
PARTIAL_REFUND = "PARTIAL_REFUND"
REFUNDED = "REFUNDED"
VOIDED = "VOIDED"

PAYMENT_METHODS = ("CASH", "CARD", "TRANSFER", "OTHER")

REFUND_NONE = "NONE"
REFUND_PENDING = "PENDING"
REFUND_RECORDED = "RECORDED"

SELLABLE_KINDS = {STANDARD, ACCOMP, COCKTAIL}


@dataclass
class SaleLine:
    product_id: UUID
    qty: int
    unit_price: Optional[int] = None
    line_discount: int = 0
    tax_rate: Optional[float] = None


@dataclass
class PaymentLine:
    method: str
    amount: int
    provider: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class ReturnLine:
    sale_item_id: UUID
    qty: int


def _whole_positive(value, what: str) -> int:
    if isinstance(value, bool):
        raise InvalidQuantity(f"Invalid {what}", **{what: value})
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise InvalidQuantity(f"Invalid {what}", **{what: str(value)})
    if f <= 0 or f != int(f):
        raise InvalidQuantity(f"{what} must be a whole number > 0", **{what: value})
    return int(f)


def normalize_payments(payments: List[PaymentLine]) -> Tuple[List[PaymentLine], int]:
    """Upper-case and check every payment. Returns the cleaned list and the amount paid."""
    if not payments:
        raise InvalidPayment("At least one payment is required")
    out: List[PaymentLine] = []
    paid = 0
    for p in payments:
        method = (p.method or "").strip().upper()
        if method not in PAYMENT_METHODS:
            raise InvalidPayment(f"Invalid payment method: {p.method}", method=p.method)
        if isinstance(p.amount, bool) or not isinstance(p.amount, int) or p.amount <= 0:
            raise InvalidPayment("Payment amount must be a positive integer", amount=p.amount)

        provider = None
        if method == "TRANSFER":
            provider = (p.provider or "").strip().upper()
            if provider not in settings.transfer_providers:
                raise InvalidPayment(f"Invalid transfer provider: {p.provider}", provider=p.provider)

        reference = str(p.reference).strip() if p.reference else None
        out.append(PaymentLine(method=method, amount=p.amount, provider=provider, reference=reference or None))
        paid += p.amount
    return out, paid


def assign_change(payments: List[PaymentLine], paid: int, total: int) -> List[int]:
    """Overpayment is handed back on the last CASH payment; other methods never give change."""
    change = [0] * len(payments)
    overpay = paid - total
    if overpay <= 0:
        return change
    cash = [i for i, p in enumerate(payments) if p.method == "CASH"]
    if cash:
        change[cash[-1]] = overpay
    return change


def derive_status(current: str, sold: Dict[UUID, int], returned: Dict[UUID, int]) -> str:
    if current == VOIDED:
        return VOIDED
    if not any(returned.get(k, 0) > 0 for k in sold):
        return current
    if all(returned.get(k, 0) >= qty for k, qty in sold.items()):
        return REFUNDED
    return PARTIAL_REFUND


async def _plan_for_line(
    resolver: RecipeResolver, product: Product, qty: int, *, reverse: bool, label: Optional[str] = None
) -> List[PlannedMove]:
    sign = 1 if reverse else -1
    if normalize_kind(product.kind) == COCKTAIL:
        needs = await resolver.resolve(product, qty, reverse=reverse)
        return [PlannedMove(n.product_id, sign * n.qty, n.move_type, n.name) for n in needs]

    category = category_for(product.kind, product.measure)
    canonical = to_canonical(category, CANONICAL_UNIT[category], qty)
    move_type = ledger.IN if reverse else ledger.SALE
    return [PlannedMove(product.id, sign * canonical, move_type, label or product.name)]


async def _lock_sale(db: AsyncSession, sale_id: UUID) -> Sale:
    sale = (
        await db.execute(select(Sale).where(Sale.id == sale_id).with_for_update())
    ).scalar_one_or_none()
    if sale is None:
        raise NotFound(f"Sale {sale_id} not found", sale_id=sale_id)
    return sale


async def returned_qty_by_item(db: AsyncSession, sale_id: UUID) -> Dict[UUID, int]:
    res = await db.execute(
        select(SaleReturnItem.sale_item_id, func.sum(SaleReturnItem.qty))
        .join(SaleReturn, SaleReturn.id == SaleReturnItem.return_id)
        .where(SaleReturn.sale_id == sale_id)
        .group_by(SaleReturnItem.sale_item_id)
    )
    return {row[0]: int(row[1] or 0) for row in res.all()}


async def get_sale(db: AsyncSession, sale_id: UUID) -> Sale:
    res = await db.execute(
        select(Sale)
        .where(Sale.id == sale_id)
        .options(
            selectinload(Sale.items),
            selectinload(Sale.payments),
            selectinload(Sale.returns).selectinload(SaleReturn.items),
        )
        .execution_options(populate_existing=True)
    )
    sale = res.scalar_one_or_none()
    if sale is None:
        raise NotFound(f"Sale {sale_id} not found", sale_id=sale_id)
    return sale


def sale_detail(sale: Sale) -> dict:
    out = sale.to_schema
    out["items"] = [it.to_schema for it in sale.items]
    out["payments"] = [p.to_schema for p in sale.payments]
    out["returns"] = [r.to_schema for r in sale.returns]
    return out


async def create_sale(
    db: AsyncSession,
    *,
    user_id: Optional[UUID],
    lines: List[SaleLine],
    payments: List[PaymentLine],
    notes: Optional[str] = None,
    client: Optional[str] = None,
    tab_id: Optional[UUID] = None,
    location: Optional[str] = None,
) -> Sale:
    try:
        if not lines:
            raise InvalidQuantity("A sale needs at least one line")
        payments, paid = normalize_payments(payments)

        if tab_id is not None:
            await tabs.get_open_tab(db, tab_id)

        ids = list({ln.product_id for ln in lines})
        products = {p.id: p for p in (await db.execute(select(Product).where(Product.id.in_(ids)))).scalars().all()}
        resolver = RecipeResolver(db)
        resolver.remember(products.values())

        plan: List[PlannedMove] = []
        rows: List[Tuple[Product, int, int, object, Optional[float]]] = []
        subtotal = discount_total = tax_total = total = 0

        for ln in lines:
            product = products.get(ln.product_id)
            if product is None:
                raise NotFound(f"Product {ln.product_id} not found", product_id=ln.product_id)
            kind = normalize_kind(product.kind)
            if not product.is_active:
                raise ProductNotSellable(f"{product.name} is inactive", product_id=product.id)
            if kind not in SELLABLE_KINDS:
                raise ProductNotSellable(f"{product.name} is a {kind} ingredient and cannot be sold", product_id=product.id, kind=kind)

            qty = _whole_positive(ln.qty, "qty")
            price = int(ln.unit_price) if ln.unit_price is not None else int(product.price or 0)
            if price < 0:
                raise InvalidQuantity("unit_price cannot be negative", product_id=product.id)

            totals = calc_line_totals(price, qty, ln.line_discount, ln.tax_rate)
            plan.extend(await _plan_for_line(resolver, product, qty, reverse=False))

            subtotal += totals.base
            discount_total += totals.discount
            tax_total += totals.tax
            total += totals.total
            rows.append((product, qty, price, totals, ln.tax_rate))

        if paid < total:
            raise InvalidPayment("Payments do not cover the sale total", paid=paid, total=total)

        await ledger.validate_plan(db, plan)

        sale = Sale(
            id=uuid.uuid4(),
            user_id=user_id,
            tab_id=tab_id,
            status=COMPLETED,
            subtotal=subtotal,
            discount_total=discount_total,
            tax_total=tax_total,
            total=total,
            notes=notes or None,
            client=client or None,
        )
        db.add(sale)

        for product, qty, price, totals, tax_rate in rows:
            db.add(
                SaleItem(
                    sale_id=sale.id,
                    product_id=product.id,
                    qty=qty,
                    unit_price=price,
                    line_discount=totals.discount,
                    tax_rate=tax_rate,
                    tax_amount=totals.tax,
                    line_total=totals.total,
                    name_snapshot=product.name,
                    category_snapshot=product.category or None,
                )
            )
        await db.flush()

        applied = await ledger.apply_moves(
            db,
            plan,
            source_ref=str(sale.id),
            user_id=user_id,
            meta=MoveMeta(note=f"Sale {sale.id}", location=location),
        )

        change = assign_change(payments, paid, total)
        for p, change_given in zip(payments, change):
            db.add(
                Payment(
                    sale_id=sale.id,
                    method=p.method,
                    provider=p.provider,
                    amount=p.amount,
                    change_given=change_given,
                    reference=p.reference,
                )
            )

        if tab_id is not None:
            await tabs.close_after_sale(db, tab_id, sale.id)

        await db.commit()
    except InventoryError as e:
        await db.rollback()
        logger.warning("Sale rejected: %s %s", e.code, e.context)
        raise
    except Exception:
        await db.rollback()
        raise

    logger.info("Sale %s committed: total=%d, %d moves", sale.id, total, len(applied))
    return await get_sale(db, sale.id)


async def void_sale(db: AsyncSession, sale_id: UUID, *, user_id: Optional[UUID] = None) -> Sale:
    try:
        sale = await _lock_sale(db, sale_id)
        if sale.status != COMPLETED:
            raise SaleNotEligible(f"Only COMPLETED sales can be voided (status {sale.status})", sale_id=sale_id, status=sale.status)
        returns = (
            await db.execute(select(func.count(SaleReturn.id)).where(SaleReturn.sale_id == sale.id))
        ).scalar_one()
        if returns:
            raise SaleNotEligible("Sales with returns cannot be voided", sale_id=sale_id, returns=int(returns))

        moves = (
            await db.execute(
                select(InventoryMove)
                .where(InventoryMove.source_ref == str(sale.id))
                .where(InventoryMove.type != ledger.VOID_REVERSAL)
                .order_by(InventoryMove.created_at, InventoryMove.id)
            )
        ).scalars().all()
        plan = [PlannedMove(m.product_id, -int(m.qty), ledger.VOID_REVERSAL) for m in moves if m.qty]

        await ledger.apply_plan(
            db, plan, source_ref=str(sale.id), user_id=user_id, meta=MoveMeta(note=f"Void sale {sale.id}")
        )
        sale.status = VOIDED
        await db.commit()
    except InventoryError as e:
        await db.rollback()
        logger.warning("Void rejected: %s %s", e.code, e.context)
        raise
    except Exception:
        await db.rollback()
        raise

    logger.info("Sale %s voided, %d moves reversed", sale_id, len(plan))
    return await get_sale(db, sale_id)


async def create_return(
    db: AsyncSession,
    sale_id: UUID,
    lines: List[ReturnLine],
    *,
    user_id: Optional[UUID] = None,
    note: Optional[str] = None,
    with_refund_payment: bool = False,
    location: Optional[str] = None,
) -> SaleReturn:
    """
    Partial or full multi-line return. The return record, its items, the
    stock credits and the new sale status commit together; the optional
    refund payment is recorded afterwards in its own transaction(s).
    """
    try:
        if not lines:
            raise InvalidQuantity("A return needs at least one item")
        sale = await _lock_sale(db, sale_id)
        if sale.status in (VOIDED, REFUNDED):
            raise SaleNotEligible(f"Sale is {sale.status}", sale_id=sale_id, status=sale.status)

        sale_items = {
            si.id: si
            for si in (await db.execute(select(SaleItem).where(SaleItem.sale_id == sale.id))).scalars().all()
        }
        already = await returned_qty_by_item(db, sale.id)

        requested: "OrderedDict[UUID, int]" = OrderedDict()
        for ln in lines:
            if ln.sale_item_id not in sale_items:
                raise NotFound("Sale item not found in this sale", sale_item_id=ln.sale_item_id, sale_id=sale_id)
            requested[ln.sale_item_id] = requested.get(ln.sale_item_id, 0) + _whole_positive(ln.qty, "qty")

        for sale_item_id, qty in requested.items():
            si = sale_items[sale_item_id]
            available = max(0, int(si.qty) - already.get(sale_item_id, 0))
            if qty > available:
                raise ReturnQuantityExceeded(sale_item_id, requested=qty, available=available)

        product_ids = list({sale_items[k].product_id for k in requested})
        products = {
            p.id: p
            for p in (await db.execute(select(Product).where(Product.id.in_(product_ids)))).scalars().all()
        }
        resolver = RecipeResolver(db)
        resolver.remember(products.values())

        sale_return = SaleReturn(
            id=uuid.uuid4(),
            sale_id=sale.id,
            user_id=user_id,
            note=(note or "")[:500] or None,
            record_refund_payment=bool(with_refund_payment),
        )
        plan: List[PlannedMove] = []
        amount = 0
        for sale_item_id, qty in requested.items():
            si = sale_items[sale_item_id]
            product = products.get(si.product_id)
            if product is None:
                raise NotFound(f"Product {si.product_id} not found", product_id=si.product_id)
            plan.extend(await _plan_for_line(resolver, product, qty, reverse=True))

            per_unit = unit_refund(si.unit_price, si.qty, si.line_discount, si.tax_rate)
            amount += per_unit * qty
            sale_return.items.append(
                SaleReturnItem(
                    sale_item_id=si.id,
                    product_id=si.product_id,
                    name_snapshot=si.name_snapshot or product.name,
                    qty=qty,
                    unit_total=per_unit,
                    amount=per_unit * qty,
                )
            )

        sale_return.amount = amount
        sale_return.refund_payment_status = REFUND_PENDING if with_refund_payment and amount > 0 else REFUND_NONE
        db.add(sale_return)
        await db.flush()

        await ledger.apply_plan(
            db,
            plan,
            source_ref=str(sale_return.id),
            user_id=user_id,
            meta=MoveMeta(note=f"Return on sale {sale.id}", location=location),
        )

        for sale_item_id, qty in requested.items():
            already[sale_item_id] = already.get(sale_item_id, 0) + qty
        sold = {k: int(si.qty) for k, si in sale_items.items()}
        sale.status = derive_status(sale.status, sold, already)

        # Read back nothing from the ORM after this point: a failed refund
        # attempt rolls the session back and expires every loaded object.
        return_id = sale_return.id
        sale_status = sale.status
        refund_pending = sale_return.refund_payment_status == REFUND_PENDING

        await db.commit()
    except InventoryError as e:
        await db.rollback()
        logger.warning("Return rejected: %s %s", e.code, e.context)
        raise
    except Exception:
        await db.rollback()
        raise

    logger.info("Return %s on sale %s: amount=%d, sale now %s", return_id, sale_id, amount, sale_status)

    if refund_pending:
        await record_refund_payment(db, return_id)

    return await get_return(db, return_id)


async def get_return(db: AsyncSession, return_id: UUID) -> SaleReturn:
    res = await db.execute(
        select(SaleReturn)
        .where(SaleReturn.id == return_id)
        .options(selectinload(SaleReturn.items))
        .execution_options(populate_existing=True)
    )
    sale_return = res.scalar_one_or_none()
    if sale_return is None:
        raise NotFound(f"Return {return_id} not found", return_id=return_id)
    return sale_return


async def record_refund_payment(db: AsyncSession, return_id: UUID, attempts: Optional[int] = None) -> bool:
    """
    Second phase of a return: write the negative CASH payment. Each
    attempt is its own transaction. A failure leaves the return PENDING
    for `retry_pending_refund_payments`; it never undoes the return.
    """
    attempts = max(1, attempts or settings.refund_payment_attempts)
    for attempt in range(1, attempts + 1):
        try:
            sale_return = (
                await db.execute(select(SaleReturn).where(SaleReturn.id == return_id).with_for_update())
            ).scalar_one_or_none()
            if sale_return is None:
                raise NotFound(f"Return {return_id} not found", return_id=return_id)
            if sale_return.refund_payment_status != REFUND_PENDING:
                recorded = sale_return.refund_payment_status == REFUND_RECORDED
                await db.rollback()
                return recorded

            payment = Payment(
                id=uuid.uuid4(),
                sale_id=sale_return.sale_id,
                return_id=sale_return.id,
                method="CASH",
                provider=None,
                amount=-abs(int(sale_return.amount)),
                change_given=0,
                reference="REFUND",
            )
            db.add(payment)
            sale_return.refund_payment_status = REFUND_RECORDED
            sale_return.refund_payment_id = payment.id
            await db.commit()
            logger.info("Refund payment %s recorded for return %s", payment.id, return_id)
            return True
        except SQLAlchemyError:
            await db.rollback()
            logger.warning(
                "Refund payment for return %s failed (attempt %d/%d)", return_id, attempt, attempts, exc_info=True
            )

    logger.error("Refund payment for return %s still pending after %d attempts", return_id, attempts)
    return False


async def retry_pending_refund_payments(db: AsyncSession) -> int:
    """Sweep returns whose refund payment never got written. Returns how many were recorded."""
    ids = (
        await db.execute(
            select(SaleReturn.id)
            .where(SaleReturn.refund_payment_status == REFUND_PENDING)
            .order_by(SaleReturn.created_at)
        )
    ).scalars().all()
    await db.rollback()
    recorded = 0
    for return_id in ids:
        if await record_refund_payment(db, return_id):
            recorded += 1
    return recorded


def _range_filter(query, column, start: Optional[datetime], end: Optional[datetime]):
    if start is not None:
        query = query.where(column >= start)
    if end is not None:
        query = query.where(column < end)
    return query


async def list_sales(
    db: AsyncSession,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    status: Optional[str] = None,
    user_id: Optional[UUID] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Sale]:
    q = select(Sale).order_by(Sale.created_at.desc(), Sale.id.desc())
    q = _range_filter(q, Sale.created_at, start, end)
    if status:
        q = q.where(Sale.status == status.strip().upper())
    if user_id is not None:
        q = q.where(Sale.user_id == user_id)
    q = q.offset(max(0, offset)).limit(max(1, min(500, limit)))
    return list((await db.execute(q)).scalars().all())


async def sales_report(
    db: AsyncSession,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    status: Optional[str] = None,
    user_id: Optional[UUID] = None,
) -> dict:
    q = select(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.subtotal), 0),
        func.coalesce(func.sum(Sale.discount_total), 0),
        func.coalesce(func.sum(Sale.tax_total), 0),
        func.coalesce(func.sum(Sale.total), 0),
    )
    q = _range_filter(q, Sale.created_at, start, end)
    if status:
        q = q.where(Sale.status == status.strip().upper())
    if user_id is not None:
        q = q.where(Sale.user_id == user_id)
    count, subtotal, discount_total, tax_total, total = (await db.execute(q)).one()
    return {
        "count": int(count),
        "subtotal": int(subtotal),
        "discount_total": int(discount_total),
        "tax_total": int(tax_total),
        "total": int(total),
    }


async def payments_summary(db: AsyncSession, *, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[dict]:
    """Net amount per (method, provider); refunds count negative."""
    q = (
        select(Payment.method, Payment.provider, func.sum(Payment.amount).label("total"))
        .group_by(Payment.method, Payment.provider)
        .order_by(Payment.method, Payment.provider)
    )
    q = _range_filter(q, Payment.created_at, start, end)
    res = await db.execute(q)
    return [{"method": r.method, "provider": r.provider, "total": int(r.total or 0)} for r in res.all()]
