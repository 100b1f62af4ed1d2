import logging
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.errors import InventoryError
from db.database import get_async_session
from db.users import User
from schemas.tabs import TabCreate, TabItemCreate, TabItemUpdate, TabNotes, TabRename
from services import reservations
from services import tabs as tab_service

logger = logging.getLogger(__name__)

router = APIRouter()


async def _commit_or_rollback(db: AsyncSession, op):
    try:
        result = await op
        await db.commit()
        return result
    except InventoryError:
        await db.rollback()
        raise
    except Exception:
        await db.rollback()
        logger.exception("tab operation failed")
        raise


@router.get("/", response_model=List[Dict])
async def list_tabs(
    status_: Optional[str] = Query("OPEN", alias="status"),
    q: Optional[str] = Query(None),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return [t.to_schema for t in await tab_service.list_tabs(db, status_, q)]


@router.post("/", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def create_tab(
    payload: TabCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    tab = await _commit_or_rollback(
        db, tab_service.create_tab(db, name=payload.name, notes=payload.notes, user_id=user.id)
    )
    return tab.to_schema


@router.get("/reservations/summary", response_model=List[Dict])
async def reservation_summary(
    status_: str = Query("OPEN", alias="status"),
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    """Reserved qty per product across tabs, next to current stock."""
    return await reservations.summary(db, status_)


@router.get("/{tab_id}", response_model=Dict)
async def get_tab(
    tab_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    out = await tab_service.tab_detail(db, tab_id)
    out["reservations"] = [r.to_schema for r in await reservations.list_for_tab(db, tab_id)]
    return out


@router.put("/{tab_id}/rename", response_model=Dict)
async def rename_tab(
    tab_id: UUID,
    payload: TabRename,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return (await _commit_or_rollback(db, tab_service.rename_tab(db, tab_id, payload.name))).to_schema


@router.put("/{tab_id}/notes", response_model=Dict)
async def set_tab_notes(
    tab_id: UUID,
    payload: TabNotes,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return (await _commit_or_rollback(db, tab_service.set_notes(db, tab_id, payload.notes))).to_schema


@router.post("/{tab_id}/items", response_model=Dict, status_code=status.HTTP_201_CREATED)
async def add_item(
    tab_id: UUID,
    payload: TabItemCreate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    item = await _commit_or_rollback(
        db,
        tab_service.add_item(
            db,
            tab_id,
            product_id=payload.product_id,
            qty=payload.qty,
            unit_price=payload.unit_price,
            line_discount=payload.line_discount,
            tax_rate=payload.tax_rate,
            user_id=user.id,
        ),
    )
    return item.to_schema


@router.put("/items/{item_id}", response_model=Dict)
async def update_item(
    item_id: UUID,
    payload: TabItemUpdate,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    changes = payload.model_dump(exclude_unset=True)
    item = await _commit_or_rollback(db, tab_service.update_item(db, item_id, user_id=user.id, **changes))
    return item.to_schema


@router.delete("/items/{item_id}", response_model=Dict)
async def remove_item(
    item_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    await _commit_or_rollback(db, tab_service.remove_item(db, item_id))
    return {"ok": True}


@router.post("/{tab_id}/clear", response_model=Dict)
async def clear_tab(
    tab_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    removed = await _commit_or_rollback(db, tab_service.clear_tab(db, tab_id))
    return {"ok": True, "removed": removed}


@router.post("/{tab_id}/close", response_model=Dict)
async def close_tab(
    tab_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return (await _commit_or_rollback(db, tab_service.close_tab(db, tab_id))).to_schema


@router.post("/{tab_id}/reopen", response_model=Dict)
async def reopen_tab(
    tab_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return (await _commit_or_rollback(db, tab_service.reopen_tab(db, tab_id, user_id=user.id))).to_schema


@router.get("/{tab_id}/totals", response_model=Dict)
async def tab_totals(
    tab_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    tab = await tab_service.get_tab(db, tab_id)
    return tab_service.compute_totals(await tab_service.list_items(db, tab.id))


@router.get("/{tab_id}/payload-for-sale", response_model=Dict)
async def payload_for_sale(
    tab_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    return await tab_service.payload_for_sale(db, tab_id)


@router.delete("/{tab_id}", response_model=Dict)
async def delete_tab(
    tab_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    await _commit_or_rollback(db, tab_service.delete_tab(db, tab_id))
    return {"ok": True}
