import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.converters import normalize_kind, normalize_measure_for_kind
from core.errors import NotFound
from db.product import Product
from services import ledger
from services.ledger import MoveMeta

logger = logging.getLogger(__name__)


async def get_product(db: AsyncSession, product_id: UUID) -> Product:
    product = (await db.execute(select(Product).where(Product.id == product_id))).scalar_one_or_none()
    if product is None:
        raise NotFound(f"Product {product_id} not found", product_id=product_id)
    return product


async def list_products(
    db: AsyncSession,
    *,
    q: Optional[str] = None,
    kind: Optional[str] = None,
    active: Optional[bool] = True,
) -> List[Product]:
    query = select(Product).order_by(Product.category, Product.name)
    if q and q.strip():
        like = f"%{q.strip()}%"
        query = query.where(or_(Product.name.ilike(like), Product.category.ilike(like)))
    if kind:
        query = query.where(Product.kind == normalize_kind(kind))
    if active is not None:
        query = query.where(Product.is_active.is_(active))
    return list((await db.execute(query)).scalars().all())


async def create_product(db: AsyncSession, data: dict, user_id: Optional[UUID] = None) -> Product:
    """New product; opening stock goes through the ledger as an IN move."""
    kind = normalize_kind(data.get("kind"))
    opening = int(data.get("stock") or 0)
    product = Product(
        name=data["name"],
        category=data.get("category") or "",
        price=int(data.get("price") or 0),
        stock=0,
        min_stock=int(data.get("min_stock") or 0),
        is_active=bool(data.get("is_active", True)),
        kind=kind,
        measure=normalize_measure_for_kind(kind, data.get("measure")),
    )
    db.add(product)
    await db.flush()
    if opening > 0:
        await ledger.apply_move(
            db,
            product_id=product.id,
            qty=opening,
            move_type=ledger.IN,
            user_id=user_id,
            meta=MoveMeta(note="Opening stock"),
        )
    return product


async def update_product(db: AsyncSession, product_id: UUID, changes: dict) -> Product:
    product = await get_product(db, product_id)
    for key in ("name", "category", "price", "min_stock", "is_active"):
        if changes.get(key) is not None:
            setattr(product, key, changes[key])
    if changes.get("kind") is not None or changes.get("measure") is not None:
        kind = normalize_kind(changes.get("kind") or product.kind)
        product.kind = kind
        product.measure = normalize_measure_for_kind(kind, changes.get("measure") or product.measure)
    await db.flush()
    return product


async def set_active(db: AsyncSession, product_id: UUID, active: bool) -> Product:
    product = await get_product(db, product_id)
    product.is_active = active
    await db.flush()
    logger.info("Product %s %s", product.id, "activated" if active else "deactivated")
    return product
