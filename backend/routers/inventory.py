import logging
from datetime import date
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.dates import day_range
from core.errors import InventoryError
from db.database import get_async_session
from db.users import User
from schemas.inventory import (
    AddStockRequest,
    AdjustStockRequest,
    InventoryMoveCreate,
    InventoryMoveUpdate,
    ReceiveRequest,
)
from services import ledger
from services.ledger import MoveMeta, ReceiptLine

logger = logging.getLogger(__name__)

router = APIRouter()


def _applied(applied: ledger.AppliedMove) -> dict:
    return {"move": applied.move.to_schema, "balance": int(applied.balance)}


@router.get("/moves", response_model=List[Dict])
async def list_moves(
    product_id: Optional[UUID] = Query(None),
    type: Optional[str] = Query(None),
    location: Optional[str] = Query(None),
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    q: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    lo, hi = day_range(start, end)
    moves = await ledger.list_moves(
        db,
        product_id=product_id,
        move_type=type,
        location=location,
        start=lo,
        end=hi,
        q=q,
        limit=limit,
        offset=offset,
    )
    return [m.to_schema for m in moves]


@router.get("/moves/{move_id}", response_model=Dict)
async def get_move(
    move_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return (await ledger.get_move(db, move_id)).to_schema


@router.post("/moves", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_move(
    payload: InventoryMoveCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    meta = MoveMeta(
        note=payload.note or "",
        location=payload.location,
        supplier_id=payload.supplier_id,
        supplier_name=payload.supplier_name,
        invoice_number=payload.invoice_number,
        unit_cost=payload.unit_cost,
        discount=payload.discount,
        tax=payload.tax,
        lot=payload.lot,
        expiry_date=payload.expiry_date,
    )
    try:
        # `current_active_user` may already have used this session (autobegin),
        # so commit/rollback explicitly instead of `db.begin()`.
        applied = await ledger.apply_move(
            db,
            product_id=payload.product_id,
            qty=payload.qty,
            move_type=payload.type,
            source_ref=payload.source_ref,
            user_id=user.id,
            meta=meta,
        )
        await db.commit()
        return _applied(applied)
    except InventoryError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("create_move failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to create move: {e}")


@router.patch("/moves/{move_id}", response_model=Dict)
async def edit_move(
    move_id: UUID,
    payload: InventoryMoveUpdate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    changes = payload.model_dump(exclude_unset=True)
    qty = changes.pop("qty", None)
    try:
        applied = await ledger.edit_move(db, move_id, qty=qty, changes=changes)
        await db.commit()
        return _applied(applied)
    except InventoryError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("edit_move failed for %s", move_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to edit move: {e}")


@router.delete("/moves/{move_id}", response_model=Dict)
async def delete_move(
    move_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    try:
        balance = await ledger.delete_move(db, move_id)
        await db.commit()
        return {"ok": True, "balance": balance}
    except InventoryError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("delete_move failed for %s", move_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to delete move: {e}")


@router.post("/add-stock", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def add_stock(
    payload: AddStockRequest,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    meta = MoveMeta(
        note=payload.note or "",
        location=payload.location,
        unit_cost=payload.unit_cost,
        discount=payload.discount,
        tax=payload.tax,
        lot=payload.lot,
        expiry_date=payload.expiry_date,
    )
    try:
        applied = await ledger.add_stock(db, product_id=payload.product_id, qty=payload.qty, user_id=user.id, meta=meta)
        await db.commit()
        return _applied(applied)
    except InventoryError:
        await db.rollback()
        raise


@router.post("/adjust", response_model=Dict)
async def adjust_stock(
    payload: AdjustStockRequest,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    try:
        applied = await ledger.adjust_stock(
            db,
            product_id=payload.product_id,
            target=payload.target,
            user_id=user.id,
            meta=MoveMeta(note=payload.note or "", location=payload.location),
        )
        await db.commit()
    except InventoryError:
        await db.rollback()
        raise

    if applied is None:
        return {"ok": True, "changed": False, "balance": max(0, payload.target)}
    return {"ok": True, "changed": True, **_applied(applied)}


@router.post("/receive", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def receive(
    payload: ReceiveRequest,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")

    lines = [
        ReceiptLine(
            product_id=it.product_id,
            qty=it.qty,
            unit_cost=it.unit_cost,
            discount=it.discount,
            tax=it.tax,
            lot=it.lot,
            expiry_date=it.expiry_date,
        )
        for it in payload.items
    ]
    try:
        applied = await ledger.receive(
            db,
            lines,
            user_id=user.id,
            location=payload.location,
            supplier_id=payload.supplier_id,
            supplier_name=payload.supplier_name,
            invoice_number=payload.invoice_number,
            note=payload.note,
        )
        await db.commit()
    except InventoryError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("receive failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to receive stock: {e}")

    invoice_total = sum(a.move.cost_total for a in applied)
    return {
        "ok": True,
        "moves": [_applied(a) for a in applied],
        "invoice_total": float(invoice_total),
    }


@router.get("/low-stock", response_model=List[Dict])
async def low_stock(
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return [p.to_schema for p in await ledger.low_stock(db)]


@router.get("/drift", response_model=List[Dict])
async def ledger_drift(
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Products whose balance no longer equals the sum of their moves. Empty when healthy."""
    return await ledger.ledger_drift(db)
