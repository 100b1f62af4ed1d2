import logging
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.errors import InventoryError
from db.database import get_async_session
from db.users import User
from schemas.products import ProductCreate, ProductUpdate
from services import products as product_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=List[Dict])
async def list_products(
    q: Optional[str] = Query(None),
    kind: Optional[str] = Query(None),
    active: Optional[bool] = Query(True),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    rows = await product_service.list_products(db, q=q, kind=kind, active=active)
    return [p.to_schema for p in rows]


@router.get("/{product_id}", response_model=Dict)
async def get_product(
    product_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return (await product_service.get_product(db, product_id)).to_schema


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    try:
        product = await product_service.create_product(db, payload.model_dump(), user_id=user.id)
        await db.commit()
        return product.to_schema
    except InventoryError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("create_product failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to create product: {e}")


@router.patch("/{product_id}", response_model=Dict)
async def update_product(
    product_id: UUID,
    payload: ProductUpdate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    try:
        product = await product_service.update_product(db, product_id, payload.model_dump(exclude_unset=True))
        await db.commit()
        return product.to_schema
    except InventoryError:
        await db.rollback()
        raise


@router.post("/{product_id}/activate", response_model=Dict)
async def activate_product(
    product_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    product = await product_service.set_active(db, product_id, True)
    await db.commit()
    return product.to_schema


@router.post("/{product_id}/deactivate", response_model=Dict)
async def deactivate_product(
    product_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    product = await product_service.set_active(db, product_id, False)
    await db.commit()
    return product.to_schema


@router.delete("/{product_id}", response_model=Dict)
async def delete_product(
    product_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Soft delete: ledger rows and sale snapshots keep pointing at the product."""
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    await product_service.set_active(db, product_id, False)
    await db.commit()
    return {"ok": True}
