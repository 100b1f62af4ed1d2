import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from core.errors import InsufficientStock
from db.database import Base
from db.inventory.move import InventoryMove
from db.product import Product
from db.sale import Sale
from services import ledger
from services import products as product_service
from services import sales as sale_service
from services.sales import PaymentLine, SaleLine

pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def shared(tmp_path):
    """Two independent sessions over one on-disk database, like two tills."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pos.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    maker = async_sessionmaker(engine, expire_on_commit=False)

    async with maker() as setup:
        beer = await product_service.create_product(
            setup, {"name": "Beer", "kind": "STANDARD", "stock": 10, "price": 1000}
        )
        beer_id = beer.id
        await setup.commit()

    yield maker, beer_id
    await engine.dispose()


async def _sell(session, product_id, qty):
    return await sale_service.create_sale(
        session,
        user_id=None,
        lines=[SaleLine(product_id=product_id, qty=qty)],
        payments=[PaymentLine(method="CASH", amount=qty * 1000)],
    )


async def _state(maker, product_id):
    async with maker() as s:
        stock = (await s.execute(select(Product.stock).where(Product.id == product_id))).scalar_one()
        sales = (await s.execute(select(func.count()).select_from(Sale))).scalar_one()
        moves = (
            await s.execute(
                select(InventoryMove.qty)
                .where(InventoryMove.product_id == product_id)
                .where(InventoryMove.type == ledger.SALE)
            )
        ).scalars().all()
    return int(stock), int(sales), list(moves)


async def test_stale_session_cannot_oversell(shared):
    maker, beer = shared
    async with maker() as till_a, maker() as till_b:
        loaded = (await till_a.execute(select(Product).where(Product.id == beer))).scalar_one()
        assert loaded.stock == 10

        await _sell(till_b, beer, 8)

        with pytest.raises(InsufficientStock) as exc:
            await _sell(till_a, beer, 5)
        assert exc.value.context["available"] == 2

    stock, sales, moves = await _state(maker, beer)
    assert stock == 2
    assert sales == 1
    assert moves == [-8]


async def test_sale_committed_between_check_and_write_is_not_overwritten(shared, monkeypatch):
    maker, beer = shared
    real_validate = ledger.validate_plan
    interleaved = {"done": False}

    async def validate_then_other_till_sells(db, plan):
        balances = await real_validate(db, plan)
        if not interleaved["done"]:
            interleaved["done"] = True
            async with maker() as till_b:
                await _sell(till_b, beer, 8)
        return balances

    monkeypatch.setattr(ledger, "validate_plan", validate_then_other_till_sells)

    async with maker() as till_a:
        # Till A's check sees 10 on hand; till B takes 8 before A writes.
        with pytest.raises(InsufficientStock):
            await _sell(till_a, beer, 5)

    stock, sales, moves = await _state(maker, beer)
    assert stock == 2
    assert sales == 1
    assert moves == [-8]
