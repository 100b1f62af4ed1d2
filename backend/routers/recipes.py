import logging
from typing import Dict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.errors import InventoryError
from db.database import get_async_session
from db.users import User
from schemas.recipes import RecipeReplace
from services import products as product_service
from services import recipes as recipe_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{product_id}", response_model=Dict)
async def get_recipe(
    product_id: UUID,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    product = await product_service.get_product(db, product_id)
    return {
        "product": product.to_schema,
        "items": await recipe_service.get_recipe(db, product.id),
    }


@router.put("/{product_id}", response_model=Dict)
async def replace_recipe(
    product_id: UUID,
    payload: RecipeReplace,
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
):
    if not user.is_superuser:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    try:
        product = await product_service.get_product(db, product_id)
        await recipe_service.replace_recipe(db, product, [row.model_dump() for row in payload.items])
        await db.commit()
    except InventoryError:
        await db.rollback()
        raise
    except Exception as e:
        await db.rollback()
        logger.exception("replace_recipe failed for %s", product_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to save recipe: {e}")

    logger.info("Recipe for %s replaced (%d rows)", product_id, len(payload.items))
    return {
        "product": product.to_schema,
        "items": await recipe_service.get_recipe(db, product_id),
    }
