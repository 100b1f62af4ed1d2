"""Pytest configuration and fixtures."""

import os

# Must be set before anything imports db.database (it builds the engine at import time).
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"

import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from fastapi import HTTPException
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core.auth import current_active_superuser, current_active_user
from db.database import Base, get_async_session
# Import all models to ensure they're registered with Base.metadata
from db import models  # noqa: F401
from db.product import Product
from db.product_recipe import ProductRecipe
from db.users import User
from main import app
from services import products as product_service


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    maker = async_sessionmaker(engine, expire_on_commit=False)
    async with maker() as session:
        yield session


async def _create_user(engine, email: str, superuser: bool) -> User:
    # Own session so the returned object is detached and never expired by
    # rollbacks in the test session.
    maker = async_sessionmaker(engine, expire_on_commit=False)
    async with maker() as session:
        user = User(
            id=uuid.uuid4(),
            email=email,
            hashed_password="not-a-real-hash",
            is_active=True,
            is_superuser=superuser,
            is_verified=True,
            name=email.split("@")[0],
            role="admin" if superuser else "cashier",
        )
        session.add(user)
        await session.commit()
        return user


@pytest_asyncio.fixture
async def admin(engine) -> User:
    return await _create_user(engine, "admin@example.com", True)


@pytest_asyncio.fixture
async def cashier(engine) -> User:
    return await _create_user(engine, "cashier@example.com", False)


@pytest.fixture
def auth(admin):
    """Who the API sees as the logged-in user; tests may swap auth["user"]."""
    return {"user": admin}


@pytest_asyncio.fixture
async def client(db, auth):
    async def override_get_async_session():
        yield db

    app.dependency_overrides[get_async_session] = override_get_async_session

    def override_superuser():
        if not auth["user"].is_superuser:
            raise HTTPException(status_code=403, detail="Forbidden")
        return auth["user"]

    app.dependency_overrides[current_active_user] = lambda: auth["user"]
    app.dependency_overrides[current_active_superuser] = override_superuser
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(db, admin):
    """Create a product (opening stock written through the ledger) and return its id."""

    async def _make(name, kind="STANDARD", measure=None, stock=0, price=0, min_stock=0, category=""):
        product = await product_service.create_product(
            db,
            {
                "name": name,
                "kind": kind,
                "measure": measure,
                "stock": stock,
                "price": price,
                "min_stock": min_stock,
                "category": category,
            },
            user_id=admin.id,
        )
        pid = product.id
        await db.commit()
        return pid

    return _make


@pytest.fixture
def add_recipe(db):
    """Insert BOM rows directly (no validation) for COCKTAIL `product_id`."""

    async def _add(product_id, rows):
        for ingredient_id, qty, unit, role in rows:
            db.add(
                ProductRecipe(
                    product_id=product_id,
                    ingredient_id=ingredient_id,
                    qty=Decimal(str(qty)),
                    unit=unit,
                    role=role,
                )
            )
        await db.commit()

    return _add


@pytest_asyncio.fixture
async def bar(make_product, add_recipe):
    """Vodka (BASE, 1000 ml), Lime (ACCOMP unit, 10), Vodka Lime cocktail (45 ml + 1 lime)."""
    vodka = await make_product("Vodka", kind="BASE", stock=1000)
    lime = await make_product("Lime", kind="ACCOMP", measure="UNIT", stock=10)
    cocktail = await make_product("Vodka Lime", kind="COCKTAIL", price=20000)
    await add_recipe(cocktail, [(vodka, 45, "ML", "BASE"), (lime, 1, "UNIT", "ACCOMP")])
    return {"vodka": vodka, "lime": lime, "cocktail": cocktail}


async def stock_of(db, product_id) -> int:
    return int((await db.execute(select(Product.stock).where(Product.id == product_id))).scalar_one())
