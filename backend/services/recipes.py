"""
Recipe (BOM) expansion for COCKTAIL products.

One cocktail line becomes one consumption line per BOM row. Each row is
converted, scaled and rounded on its own and ledgered on its own; the
ledger plan aggregates demand per product before checking stock.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.converters import ACCOMP, BASE, COCKTAIL, ceil_int, category_for, normalize_kind, to_canonical_exact
from core.errors import InvalidRecipe, InvalidUnit, NoRecipe, NotFound, RoleMismatch
from core.money import round_int
from db.product import Product
from db.product_recipe import ProductRecipe
from services.ledger import ACCOMP_USE, RECIPE_USE, RETURN_ACCOMP, RETURN_RECIPE

ROLES = {BASE, ACCOMP}

_TAGS = {
    (BASE, False): RECIPE_USE,
    (ACCOMP, False): ACCOMP_USE,
    (BASE, True): RETURN_RECIPE,
    (ACCOMP, True): RETURN_ACCOMP,
}


@dataclass
class IngredientNeed:
    product_id: UUID
    name: str
    qty: int  # canonical units, always positive
    move_type: str
    role: str


def check_role(ingredient: Product, role: str) -> None:
    """BASE rows need a BASE ingredient, ACCOMP rows an ACCOMP one."""
    r = (role or "").strip().upper()
    if r not in ROLES:
        raise RoleMismatch(f"Unknown recipe role: {role}", role=role, ingredient_id=ingredient.id)
    kind = normalize_kind(ingredient.kind)
    if kind != r:
        raise RoleMismatch(
            f"{ingredient.name} is {kind} but the recipe uses it as {r}",
            ingredient_id=ingredient.id,
            role=r,
            kind=kind,
        )


def canonical_per_unit(ingredient: Product, role: str, qty, unit: Optional[str]) -> Decimal:
    """Exact canonical quantity one cocktail consumes for this BOM row."""
    check_role(ingredient, role)
    category = category_for(ingredient.kind, ingredient.measure)
    try:
        return to_canonical_exact(category, unit, qty)
    except InvalidUnit as e:
        e.context.setdefault("ingredient_id", ingredient.id)
        raise


def scale_factor(sale_qty) -> int:
    return max(1, round_int(sale_qty))


class RecipeResolver:
    """
    Per-request resolver. Recipe rows and ingredient products are cached
    by id, so a sale with several lines of the same cocktail (or cocktails
    sharing ingredients) hits the database once per product.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self._rows: Dict[UUID, List[ProductRecipe]] = {}
        self._products: Dict[UUID, Product] = {}

    def remember(self, products: Iterable[Product]) -> None:
        for p in products:
            self._products[p.id] = p

    async def _load_rows(self, product_id: UUID) -> List[ProductRecipe]:
        rows = self._rows.get(product_id)
        if rows is not None:
            return rows
        res = await self.db.execute(
            select(ProductRecipe).where(ProductRecipe.product_id == product_id).order_by(ProductRecipe.id)
        )
        rows = list(res.scalars().all())
        self._rows[product_id] = rows

        missing = [r.ingredient_id for r in rows if r.ingredient_id not in self._products]
        if missing:
            res = await self.db.execute(select(Product).where(Product.id.in_(missing)))
            self.remember(res.scalars().all())
        return rows

    async def resolve(self, product: Product, qty, *, reverse: bool = False) -> List[IngredientNeed]:
        rows = await self._load_rows(product.id)
        if not rows:
            raise NoRecipe(f"{product.name} has no recipe", product_id=product.id)

        factor = scale_factor(qty)
        needs: List[IngredientNeed] = []
        for row in rows:
            ingredient = self._products.get(row.ingredient_id)
            if ingredient is None:
                raise NotFound(f"Ingredient {row.ingredient_id} not found", ingredient_id=row.ingredient_id)
            role = (row.role or "").strip().upper()
            per_unit = canonical_per_unit(ingredient, role, row.qty, row.unit)
            needs.append(
                IngredientNeed(
                    product_id=ingredient.id,
                    name=ingredient.name,
                    qty=ceil_int(per_unit * factor),
                    move_type=_TAGS[(role, reverse)],
                    role=role,
                )
            )
        return needs


async def get_recipe(db: AsyncSession, product_id: UUID) -> List[dict]:
    res = await db.execute(
        select(ProductRecipe, Product)
        .join(Product, Product.id == ProductRecipe.ingredient_id)
        .where(ProductRecipe.product_id == product_id)
        .order_by(ProductRecipe.role, Product.name)
    )
    return [
        {
            "id": row.id,
            "ingredient_id": row.ingredient_id,
            "ingredient_name": ing.name,
            "ingredient_kind": ing.kind,
            "ingredient_measure": ing.measure,
            "qty": float(row.qty),
            "unit": row.unit,
            "role": row.role,
            "note": row.note,
        }
        for row, ing in res.all()
    ]


async def replace_recipe(db: AsyncSession, product: Product, rows: List[dict]) -> None:
    """
    Swap the whole BOM of a COCKTAIL product. Every row is checked the way
    a sale would resolve it, so a saved recipe is always sellable.
    """
    if normalize_kind(product.kind) != COCKTAIL:
        raise InvalidRecipe(f"{product.name} is not a COCKTAIL and cannot have a recipe", product_id=product.id)

    ids = [r["ingredient_id"] for r in rows]
    if product.id in ids:
        raise InvalidRecipe("A product cannot be its own ingredient", product_id=product.id)
    if len(set(ids)) != len(ids):
        raise InvalidRecipe("Duplicate ingredient in recipe", product_id=product.id)

    ingredients = {}
    if ids:
        res = await db.execute(select(Product).where(Product.id.in_(ids)))
        ingredients = {p.id: p for p in res.scalars().all()}

    new_rows = []
    for r in rows:
        ingredient = ingredients.get(r["ingredient_id"])
        if ingredient is None:
            raise NotFound(f"Ingredient {r['ingredient_id']} not found", ingredient_id=r["ingredient_id"])
        role = (r.get("role") or "").strip().upper()
        canonical_per_unit(ingredient, role, r["qty"], r.get("unit"))
        new_rows.append(
            ProductRecipe(
                product_id=product.id,
                ingredient_id=ingredient.id,
                qty=r["qty"],
                unit=(r.get("unit") or None),
                role=role,
                note=r.get("note"),
            )
        )

    await db.execute(delete(ProductRecipe).where(ProductRecipe.product_id == product.id))
    db.add_all(new_rows)
    await db.flush()
