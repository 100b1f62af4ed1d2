import asyncio
import sys
from pathlib import Path
from decimal import Decimal

"""
Seed a demo bar (admin user, bottles, garnishes, beers, cocktails with
recipes) into the configured database.

This script can be run from either:
- backend/: `python scripts/seed_demo_data.py`
- repo root: `python backend/scripts/seed_demo_data.py`
"""

# Allow running from repo root by ensuring `backend/` is on sys.path
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy import func, select

from db.database import async_session_maker, create_db_and_tables
from db.product import Product
from db.users import User
from services import products as product_service
from services import recipes as recipe_service

from fastapi_users.password import PasswordHelper


password_helper = PasswordHelper()


async def get_or_create_user(session, email: str, password: str) -> User:
    result = await session.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(
        email=email,
        hashed_password=password_helper.hash(password),
        is_active=True,
        is_superuser=True,
        is_verified=True,
        name="Admin",
        role="admin",
    )
    session.add(user)
    await session.flush()
    return user


async def get_or_create_product(session, user_id, **data) -> Product:
    result = await session.execute(
        select(Product).where(func.lower(Product.name) == data["name"].strip().lower())
    )
    product = result.scalar_one_or_none()
    if product:
        return product
    return await product_service.create_product(session, data, user_id=user_id)


async def upsert_cocktail(session, user_id, name: str, price: int, rows):
    cocktail = await get_or_create_product(
        session, user_id, name=name, category="Cocktails", price=price, kind="COCKTAIL"
    )
    await recipe_service.replace_recipe(
        session,
        cocktail,
        [
            {"ingredient_id": ing.id, "qty": qty, "unit": unit, "role": role}
            for ing, qty, unit, role in rows
        ],
    )
    return cocktail


async def seed():
    await create_db_and_tables()
    async with async_session_maker() as session:
        async with session.begin():
            user = await get_or_create_user(session, "admin@admin.com", "admin")

            # Bottles (BASE, stocked in ml)
            tequila = await get_or_create_product(session, user.id, name="Tequila", category="Spirits", kind="BASE", stock=7000)
            rum = await get_or_create_product(session, user.id, name="Rum", category="Spirits", kind="BASE", stock=7000)
            gin = await get_or_create_product(session, user.id, name="Gin", category="Spirits", kind="BASE", stock=7000)
            vodka = await get_or_create_product(session, user.id, name="Vodka", category="Spirits", kind="BASE", stock=7000)
            triple_sec = await get_or_create_product(session, user.id, name="Triple sec", category="Liqueurs", kind="BASE", stock=2100)
            campari = await get_or_create_product(session, user.id, name="Campari", category="Liqueurs", kind="BASE", stock=3000)
            vermouth = await get_or_create_product(session, user.id, name="Sweet vermouth", category="Liqueurs", kind="BASE", stock=3000)

            # Garnishes and mixers (ACCOMP)
            lime = await get_or_create_product(session, user.id, name="Lime", category="Garnish", kind="ACCOMP", measure="UNIT", stock=120, min_stock=20)
            mint = await get_or_create_product(session, user.id, name="Mint", category="Garnish", kind="ACCOMP", measure="G", stock=500, min_stock=100)
            syrup = await get_or_create_product(session, user.id, name="Simple syrup", category="Mixers", kind="ACCOMP", measure="ML", stock=2000)
            soda = await get_or_create_product(session, user.id, name="Soda water", category="Mixers", kind="ACCOMP", measure="ML", stock=6000)

            # Sold as-is (STANDARD)
            await get_or_create_product(session, user.id, name="Lager bottle", category="Beer", kind="STANDARD", price=9000, stock=48, min_stock=12)
            await get_or_create_product(session, user.id, name="Water", category="Soft drinks", kind="STANDARD", price=4000, stock=24, min_stock=6)

            # Cocktails (recipes in bar units; the ledger converts to ml/g/units)
            await upsert_cocktail(session, user.id, "Margarita", 28000, [
                (tequila, Decimal("2"), "OZ", "BASE"),
                (triple_sec, Decimal("1"), "OZ", "BASE"),
                (lime, Decimal("1"), "UNIT", "ACCOMP"),
            ])
            await upsert_cocktail(session, user.id, "Daiquiri", 25000, [
                (rum, Decimal("60"), "ML", "BASE"),
                (lime, Decimal("1"), "UNIT", "ACCOMP"),
                (syrup, Decimal("15"), "ML", "ACCOMP"),
            ])
            await upsert_cocktail(session, user.id, "Negroni", 30000, [
                (gin, Decimal("3"), "CL", "BASE"),
                (campari, Decimal("3"), "CL", "BASE"),
                (vermouth, Decimal("3"), "CL", "BASE"),
            ])
            await upsert_cocktail(session, user.id, "Mojito", 26000, [
                (rum, Decimal("1"), "SHOT", "BASE"),
                (lime, Decimal("1"), "UNIT", "ACCOMP"),
                (syrup, Decimal("15"), "ML", "ACCOMP"),
                (mint, Decimal("5"), "G", "ACCOMP"),
                (soda, Decimal("90"), "ML", "ACCOMP"),
            ])
            await upsert_cocktail(session, user.id, "Vodka Sour", 24000, [
                (vodka, Decimal("60"), "ML", "BASE"),
                (lime, Decimal("1"), "UNIT", "ACCOMP"),
                (syrup, Decimal("15"), "ML", "ACCOMP"),
            ])


if __name__ == "__main__":
    asyncio.run(seed())
