import logging
from datetime import date
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_superuser, current_active_user
from core.dates import day_range
from core.errors import InvalidQuantity
from db.database import get_async_session
from db.users import User
from schemas.sales import ReturnCreate, SaleCreate
from services import sales as sale_service
from services.sales import PaymentLine, ReturnLine, SaleLine

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=Dict)
async def list_sales(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    status_: Optional[str] = Query(None, alias="status"),
    user_id: Optional[UUID] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    lo, hi = day_range(start, end)
    rows = await sale_service.list_sales(
        db, start=lo, end=hi, status=status_, user_id=user_id, limit=limit, offset=offset
    )
    items = [s.to_schema for s in rows]
    return {"ok": True, "items": items, "total": len(items)}


@router.get("/report", response_model=Dict)
async def sales_report(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    status_: Optional[str] = Query(None, alias="status"),
    user_id: Optional[UUID] = Query(None),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    lo, hi = day_range(start, end)
    summary = await sale_service.sales_report(db, start=lo, end=hi, status=status_, user_id=user_id)
    return {"ok": True, "summary": summary}


@router.get("/payments/summary", response_model=Dict)
async def payments_summary(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    lo, hi = day_range(start, end)
    return {"ok": True, "items": await sale_service.payments_summary(db, start=lo, end=hi)}


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_sale(
    payload: SaleCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    sale = await sale_service.create_sale(
        db,
        user_id=user.id,
        lines=[
            SaleLine(
                product_id=it.product_id,
                qty=it.qty,
                unit_price=it.unit_price,
                line_discount=it.line_discount,
                tax_rate=it.tax_rate,
            )
            for it in payload.items
        ],
        payments=[
            PaymentLine(method=p.method, amount=p.amount, provider=p.provider, reference=p.reference)
            for p in payload.payments
        ],
        notes=payload.notes,
        client=payload.client,
        tab_id=payload.tab_id,
        location=payload.location,
    )
    return {"ok": True, "sale": sale_service.sale_detail(sale)}


@router.post("/returns", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_return_from_body(
    payload: ReturnCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if payload.sale_id is None:
        raise InvalidQuantity("sale_id is required")
    return await _create_return(db, user, payload.sale_id, payload)


@router.post("/{sale_id}/returns", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_return(
    sale_id: UUID,
    payload: ReturnCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await _create_return(db, user, sale_id, payload)


async def _create_return(db: AsyncSession, user: User, sale_id: UUID, payload: ReturnCreate) -> dict:
    sale_return = await sale_service.create_return(
        db,
        sale_id,
        [ReturnLine(sale_item_id=it.sale_item_id, qty=it.qty) for it in payload.items],
        user_id=user.id,
        note=payload.note,
        with_refund_payment=payload.record_refund_payment,
        location=payload.location,
    )
    sale = await sale_service.get_sale(db, sale_id)
    return {"ok": True, "return": sale_return.to_schema, "sale_status": sale.status}


@router.post("/{sale_id}/void", response_model=Dict)
async def void_sale(
    sale_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    sale = await sale_service.void_sale(db, sale_id, user_id=user.id)
    return {"ok": True, "sale": sale_service.sale_detail(sale)}


@router.post("/refunds/retry", response_model=Dict)
async def retry_refund_payments(
    user: User = Depends(current_active_superuser),
    db: AsyncSession = Depends(get_async_session),
):
    recorded = await sale_service.retry_pending_refund_payments(db)
    return {"ok": True, "recorded": recorded}


@router.get("/{sale_id}", response_model=Dict)
async def get_sale(
    sale_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return {"ok": True, "sale": sale_service.sale_detail(await sale_service.get_sale(db, sale_id))}
