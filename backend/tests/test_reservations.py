from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from conftest import stock_of
from core.errors import InvalidQuantity, TabNotClosed, TabNotOpen
from db.inventory.reservation import StockReservation
from services import reservations
from services import sales as sale_service
from services import tabs as tab_service
from services.sales import PaymentLine, SaleLine

pytestmark = pytest.mark.asyncio


async def _rows(db, tab_id):
    res = await db.execute(
        select(StockReservation.qty, StockReservation.consumed, StockReservation.source_ref)
        .where(StockReservation.tab_id == tab_id)
    )
    return res.all()


async def _open_tab(db, admin, name="Mesa 1"):
    tab = await tab_service.create_tab(db, name=name, notes=None, user_id=admin.id)
    await db.commit()
    return tab.id


async def test_reserve_merges_into_one_active_row(db, make_product, admin):
    beer = await make_product("Beer", stock=10)
    tab_id = await _open_tab(db, admin)

    assert await reservations.reserve(db, tab_id, beer, 3) == 3
    assert await reservations.reserve(db, tab_id, beer, 2) == 5
    await db.commit()

    rows = await _rows(db, tab_id)
    assert [(r.qty, r.consumed) for r in rows] == [(5, False)]
    # Reservations never move stock.
    assert await stock_of(db, beer) == 10


async def test_release_deletes_row_at_zero(db, make_product, admin):
    beer = await make_product("Beer", stock=10)
    tab_id = await _open_tab(db, admin)
    await reservations.reserve(db, tab_id, beer, 5)

    assert await reservations.release(db, tab_id, beer, 2) == 3
    assert await reservations.release(db, tab_id, beer, 3) == 0
    await db.commit()
    assert await _rows(db, tab_id) == []


async def test_release_without_reservation_is_a_noop(db, make_product, admin):
    beer = await make_product("Beer", stock=10)
    tab_id = await _open_tab(db, admin)
    assert await reservations.release(db, tab_id, beer, 4) == 0
    with pytest.raises(InvalidQuantity):
        await reservations.reserve(db, tab_id, beer, 0)


async def test_summary_by_tab_status(db, make_product, admin):
    beer = await make_product("Beer", stock=4)
    t1 = await _open_tab(db, admin, "Mesa 1")
    t2 = await _open_tab(db, admin, "Mesa 2")
    await reservations.reserve(db, t1, beer, 3)
    await reservations.reserve(db, t2, beer, 2)
    await db.commit()

    [row] = await reservations.summary(db)
    assert row["reserved"] == 5
    assert row["tabs"] == 2
    assert row["available"] == -1
    assert row["oversubscribed"] is True

    await tab_service.close_tab(db, t2)
    await reservations.reserve(db, t2, beer, 1)
    await db.commit()

    [open_only] = await reservations.summary(db, "OPEN")
    assert open_only["reserved"] == 3
    [everything] = await reservations.summary(db, "all")
    assert everything["reserved"] == 4


async def test_expired_reservations_are_ignored_and_purged(db, make_product, admin):
    beer = await make_product("Beer", stock=10)
    tab_id = await _open_tab(db, admin)
    await reservations.reserve(db, tab_id, beer, 2)
    await db.execute(
        update(StockReservation)
        .where(StockReservation.tab_id == tab_id)
        .values(expires_at=datetime.utcnow() - timedelta(minutes=1))
    )
    await db.commit()

    assert await reservations.summary(db) == []
    assert await reservations.purge_expired(db) == 1
    await db.commit()
    assert await _rows(db, tab_id) == []


async def test_tab_items_drive_reservations(db, make_product, admin):
    beer = await make_product("Beer", stock=10, price=9000)
    tab_id = await _open_tab(db, admin)

    first = await tab_service.add_item(db, tab_id, product_id=beer, qty=2, user_id=admin.id)
    await tab_service.add_item(db, tab_id, product_id=beer, qty=1, tax_rate=19)
    await db.commit()
    assert [r.qty for r in await _rows(db, tab_id)] == [3]

    updated = await tab_service.update_item(db, first.id, qty=5)
    await db.commit()
    assert updated.line_total == 45000
    assert [r.qty for r in await _rows(db, tab_id)] == [6]

    await tab_service.remove_item(db, first.id)
    await db.commit()
    assert [r.qty for r in await _rows(db, tab_id)] == [1]

    totals = (await tab_service.tab_detail(db, tab_id))["totals"]
    assert totals == {"subtotal": 9000, "discount_total": 0, "tax_total": 1710, "total": 10710, "items_count": 1}
    assert await stock_of(db, beer) == 10


async def test_close_releases_and_reopen_reserves_again(db, make_product, admin):
    beer = await make_product("Beer", stock=10, price=9000)
    tab_id = await _open_tab(db, admin)
    await tab_service.add_item(db, tab_id, product_id=beer, qty=2)
    await tab_service.add_item(db, tab_id, product_id=beer, qty=3)
    await db.commit()

    await tab_service.close_tab(db, tab_id)
    await db.commit()
    assert await _rows(db, tab_id) == []
    with pytest.raises(TabNotOpen):
        await tab_service.add_item(db, tab_id, product_id=beer, qty=1)

    await tab_service.reopen_tab(db, tab_id)
    await db.commit()
    assert [r.qty for r in await _rows(db, tab_id)] == [5]


async def test_clear_tab(db, make_product, admin):
    beer = await make_product("Beer", stock=10, price=9000)
    tab_id = await _open_tab(db, admin)
    await tab_service.add_item(db, tab_id, product_id=beer, qty=2)
    await db.commit()

    assert await tab_service.clear_tab(db, tab_id) == 1
    await db.commit()
    assert await tab_service.list_items(db, tab_id) == []
    assert await _rows(db, tab_id) == []


async def test_only_closed_tabs_can_be_deleted(db, make_product, admin):
    tab_id = await _open_tab(db, admin)
    with pytest.raises(TabNotClosed):
        await tab_service.delete_tab(db, tab_id)

    await tab_service.close_tab(db, tab_id)
    await tab_service.delete_tab(db, tab_id)
    await db.commit()
    assert await tab_service.list_tabs(db, status="ALL") == []


async def test_sale_from_tab_consumes_reservations_and_closes_it(db, make_product, admin):
    beer = await make_product("Beer", stock=10, price=9000)
    tab_id = await _open_tab(db, admin)
    await tab_service.add_item(db, tab_id, product_id=beer, qty=2)
    await db.commit()

    payload = await tab_service.payload_for_sale(db, tab_id)
    sale = await sale_service.create_sale(
        db,
        user_id=admin.id,
        lines=[SaleLine(product_id=it["product_id"], qty=it["qty"], unit_price=it["unit_price"]) for it in payload["items"]],
        payments=[PaymentLine(method="CASH", amount=payload["totals"]["total"])],
        tab_id=tab_id,
    )

    assert sale.tab_id == tab_id
    assert await stock_of(db, beer) == 8
    rows = await _rows(db, tab_id)
    assert [(r.qty, r.consumed, r.source_ref) for r in rows] == [(2, True, str(sale.id))]
    assert (await tab_service.get_tab(db, tab_id)).status == tab_service.CLOSED
    assert await reservations.summary(db, "ALL") == []
