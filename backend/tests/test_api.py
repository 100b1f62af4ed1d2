import uuid

import pytest

from conftest import stock_of

pytestmark = pytest.mark.asyncio


async def test_create_and_list_products(client, db):
    r = await client.post("/products/", json={"name": " Lager ", "kind": "standard", "stock": 24, "price": 9000})
    assert r.status_code == 201
    body = r.json()
    assert body["name"] == "Lager"
    assert body["kind"] == "STANDARD"
    assert body["measure"] == "UNIT"
    assert body["stock"] == 24

    r = await client.post("/products/", json={"name": "Rum", "kind": "BASE", "measure": "G", "stock": 700})
    assert r.json()["measure"] == "ML"

    r = await client.get("/products/", params={"kind": "BASE"})
    assert [p["name"] for p in r.json()] == ["Rum"]

    moves = (await client.get("/inventory/moves", params={"product_id": body["id"]})).json()
    assert [(m["qty"], m["type"], m["note"]) for m in moves] == [(24, "IN", "Opening stock")]


async def test_cocktail_cannot_have_opening_stock(client):
    r = await client.post("/products/", json={"name": "Mojito", "kind": "COCKTAIL", "stock": 5})
    assert r.status_code == 422


async def test_cashier_cannot_manage_products(client, auth, cashier):
    auth["user"] = cashier
    r = await client.post("/products/", json={"name": "Lager"})
    assert r.status_code == 403
    assert r.json()["detail"] == "Not allowed"


async def test_product_not_found_is_json(client):
    r = await client.get(f"/products/{uuid.uuid4()}")
    assert r.status_code == 404
    assert r.json()["ok"] is False
    assert r.json()["error"] == "NOT_FOUND"


async def test_deactivate_and_soft_delete(client, make_product):
    pid = await make_product("Lager", stock=1)
    r = await client.post(f"/products/{pid}/deactivate")
    assert r.json()["is_active"] is False
    r = await client.post(f"/products/{pid}/activate")
    assert r.json()["is_active"] is True

    assert (await client.delete(f"/products/{pid}")).json() == {"ok": True}
    assert (await client.get("/products/")).json() == []
    assert len((await client.get("/products/", params={"active": False})).json()) == 1


async def test_recipe_put_and_get(client, make_product):
    vodka = await make_product("Vodka", kind="BASE", stock=1000)
    lime = await make_product("Lime", kind="ACCOMP", measure="UNIT", stock=10)
    cocktail = await make_product("Vodka Lime", kind="COCKTAIL", price=20000)

    r = await client.put(
        f"/recipes/{cocktail}",
        json={
            "items": [
                {"ingredient_id": str(vodka), "qty": "1.5", "unit": "oz", "role": "base"},
                {"ingredient_id": str(lime), "qty": 1, "unit": "UNIT", "role": "ACCOMP"},
            ]
        },
    )
    assert r.status_code == 200
    items = r.json()["items"]
    assert {(i["ingredient_name"], i["unit"], i["role"]) for i in items} == {
        ("Vodka", "OZ", "BASE"),
        ("Lime", "UNIT", "ACCOMP"),
    }

    r = await client.get(f"/recipes/{cocktail}")
    assert r.json()["product"]["id"] == str(cocktail)
    assert len(r.json()["items"]) == 2


async def test_recipe_role_mismatch(client, make_product):
    lime = await make_product("Lime", kind="ACCOMP", measure="UNIT", stock=10)
    cocktail = await make_product("Bad", kind="COCKTAIL")
    r = await client.put(
        f"/recipes/{cocktail}",
        json={"items": [{"ingredient_id": str(lime), "qty": 1, "unit": "UNIT", "role": "BASE"}]},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "ROLE_MISMATCH"


async def test_sale_flow(client, db, bar):
    r = await client.post(
        "/sales/",
        json={
            "items": [{"product_id": str(bar["cocktail"]), "qty": 2, "tax_rate": 10}],
            "payments": [{"method": "cash", "amount": 50000}],
        },
    )
    assert r.status_code == 201
    sale = r.json()["sale"]
    assert sale["total"] == 44000
    assert sale["status"] == "COMPLETED"
    assert sale["payments"][0]["change_given"] == 6000
    assert await stock_of(db, bar["vodka"]) == 910

    r = await client.get(f"/sales/{sale['id']}")
    assert r.json()["sale"]["items"][0]["name_snapshot"] == "Vodka Lime"

    listing = (await client.get("/sales/")).json()
    assert listing["total"] == 1

    report = (await client.get("/sales/report")).json()["summary"]
    assert report["total"] == 44000


async def test_insufficient_stock_response(client, db, bar):
    r = await client.post(
        "/sales/",
        json={
            "items": [{"product_id": str(bar["cocktail"]), "qty": 11}],
            "payments": [{"method": "CASH", "amount": 500000}],
        },
    )
    assert r.status_code == 409
    body = r.json()
    assert body["ok"] is False
    assert body["error"] == "INSUFFICIENT_STOCK"
    assert body["product_id"] == str(bar["lime"])
    assert body["requested"] == 11
    assert body["available"] == 10
    assert await stock_of(db, bar["vodka"]) == 1000


async def test_invalid_payment_response(client, bar):
    r = await client.post(
        "/sales/",
        json={
            "items": [{"product_id": str(bar["cocktail"]), "qty": 1}],
            "payments": [{"method": "TRANSFER", "provider": "PAYPAL", "amount": 20000}],
        },
    )
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_PAYMENT"


async def test_sale_rejects_bad_tax_rate(client, db, bar):
    def body(rate):
        return {
            "items": [{"product_id": str(bar["cocktail"]), "qty": 1, "tax_rate": rate}],
            "payments": [{"method": "CASH", "amount": 50000}],
        }

    r = await client.post("/sales/", json=body(-50))
    assert r.status_code == 422

    # Infinity is not valid JSON for httpx to send, so post the raw text.
    raw = (
        '{"items": [{"product_id": "%s", "qty": 1, "tax_rate": Infinity}],'
        ' "payments": [{"method": "CASH", "amount": 50000}]}' % bar["cocktail"]
    )
    r = await client.post("/sales/", content=raw, headers={"Content-Type": "application/json"})
    assert r.status_code == 422
    assert await stock_of(db, bar["vodka"]) == 1000


async def test_tab_item_rejects_bad_tax_rate(client, make_product):
    beer = await make_product("Beer", stock=10, price=9000)
    tab = (await client.post("/tabs/", json={"name": "Mesa 2"})).json()

    r = await client.post(f"/tabs/{tab['id']}/items", json={"product_id": str(beer), "qty": 1, "tax_rate": -1})
    assert r.status_code == 422

    item = (await client.post(f"/tabs/{tab['id']}/items", json={"product_id": str(beer), "qty": 1})).json()
    r = await client.put(f"/tabs/items/{item['id']}", json={"tax_rate": -5})
    assert r.status_code == 422


async def test_returns_modern_and_legacy_bodies(client, db, make_product):
    beer = await make_product("Beer", stock=10, price=1000)
    r = await client.post(
        "/sales/",
        json={"items": [{"product_id": str(beer), "qty": 3}], "payments": [{"method": "CASH", "amount": 3000}]},
    )
    sale = r.json()["sale"]
    item_id = sale["items"][0]["id"]

    r = await client.post(f"/sales/{sale['id']}/returns", json={"items": [{"sale_item_id": item_id, "qty": 1}]})
    assert r.status_code == 201
    assert r.json()["sale_status"] == "PARTIAL_REFUND"
    assert r.json()["return"]["amount"] == 1000

    r = await client.post(
        "/sales/returns",
        json={"sale_id": sale["id"], "sale_item": item_id, "qty": 2, "record_refund_payment": True},
    )
    assert r.status_code == 201
    assert r.json()["sale_status"] == "REFUNDED"
    assert r.json()["return"]["refund_payment_status"] == "RECORDED"
    assert await stock_of(db, beer) == 10

    r = await client.post(f"/sales/{sale['id']}/returns", json={"items": [{"sale_item_id": item_id, "qty": 1}]})
    assert r.status_code == 409
    assert r.json()["error"] == "SALE_NOT_ELIGIBLE"


async def test_return_exceeding_sold_qty(client, make_product):
    beer = await make_product("Beer", stock=10, price=1000)
    sale = (
        await client.post(
            "/sales/",
            json={"items": [{"product_id": str(beer), "qty": 1}], "payments": [{"method": "CARD", "amount": 1000}]},
        )
    ).json()["sale"]
    r = await client.post(
        f"/sales/{sale['id']}/returns", json={"items": [{"sale_item_id": sale["items"][0]["id"], "qty": 2}]}
    )
    assert r.status_code == 400
    assert r.json()["error"] == "RETURN_QUANTITY_EXCEEDED"
    assert r.json()["available"] == 1


async def test_void_requires_superuser(client, db, auth, cashier, make_product):
    beer = await make_product("Beer", stock=10, price=1000)
    sale = (
        await client.post(
            "/sales/",
            json={"items": [{"product_id": str(beer), "qty": 2}], "payments": [{"method": "CASH", "amount": 2000}]},
        )
    ).json()["sale"]

    admin = auth["user"]
    auth["user"] = cashier
    assert (await client.post(f"/sales/{sale['id']}/void")).status_code == 403

    auth["user"] = admin
    r = await client.post(f"/sales/{sale['id']}/void")
    assert r.status_code == 200
    assert r.json()["sale"]["status"] == "VOIDED"
    assert await stock_of(db, beer) == 10


async def test_tab_flow(client, db, make_product):
    beer = await make_product("Beer", stock=10, price=9000)

    tab = (await client.post("/tabs/", json={"name": "Mesa 4"})).json()
    assert tab["status"] == "OPEN"

    item = (await client.post(f"/tabs/{tab['id']}/items", json={"product_id": str(beer), "qty": 2})).json()
    assert item["line_total"] == 18000
    r = await client.put(f"/tabs/items/{item['id']}", json={"qty": 3})
    assert r.json()["qty"] == 3

    summary = (await client.get("/tabs/reservations/summary")).json()
    assert [(s["name"], s["reserved"], s["stock"]) for s in summary] == [("Beer", 3, 10)]

    detail = (await client.get(f"/tabs/{tab['id']}")).json()
    assert detail["totals"]["total"] == 27000
    assert [r["qty"] for r in detail["reservations"]] == [3]

    payload = (await client.get(f"/tabs/{tab['id']}/payload-for-sale")).json()
    r = await client.post(
        "/sales/",
        json={
            "items": payload["items"],
            "payments": [{"method": "CARD", "amount": payload["totals"]["total"]}],
            "tab_id": tab["id"],
        },
    )
    assert r.status_code == 201
    assert await stock_of(db, beer) == 7
    assert (await client.get("/tabs/reservations/summary")).json() == []
    assert (await client.get(f"/tabs/{tab['id']}")).json()["status"] == "CLOSED"

    r = await client.post(f"/tabs/{tab['id']}/items", json={"product_id": str(beer), "qty": 1})
    assert r.status_code == 409
    assert r.json()["error"] == "TAB_NOT_OPEN"

    assert (await client.delete(f"/tabs/{tab['id']}")).json() == {"ok": True}


async def test_delete_open_tab_is_rejected(client):
    tab = (await client.post("/tabs/", json={})).json()
    assert tab["name"] == "Tab"
    r = await client.delete(f"/tabs/{tab['id']}")
    assert r.status_code == 409
    assert r.json()["error"] == "TAB_NOT_CLOSED"


async def test_inventory_endpoints(client, db, make_product):
    pid = await make_product("Lager", stock=5, min_stock=6)

    r = await client.post("/inventory/add-stock", json={"product_id": str(pid), "qty": 10, "unit_cost": "2500"})
    assert r.status_code == 201
    assert r.json()["balance"] == 15

    r = await client.post("/inventory/adjust", json={"product_id": str(pid), "target": 12, "note": "count"})
    assert r.json()["changed"] is True
    assert r.json()["move"]["qty"] == -3
    r = await client.post("/inventory/adjust", json={"product_id": str(pid), "target": 12})
    assert r.json() == {"ok": True, "changed": False, "balance": 12}

    r = await client.post(
        "/inventory/receive",
        json={
            "invoice_number": "F-1",
            "items": [{"product_id": str(pid), "qty": 24, "unit_cost": "2000", "discount": "1000", "tax": "500"}],
        },
    )
    assert r.status_code == 201
    assert r.json()["invoice_total"] == 47500.0
    assert r.json()["moves"][0]["balance"] == 36

    r = await client.post("/inventory/moves", json={"product_id": str(pid), "qty": -40, "type": "out"})
    assert r.status_code == 409
    assert await stock_of(db, pid) == 36

    move = (await client.post("/inventory/moves", json={"product_id": str(pid), "qty": -6, "type": "out"})).json()
    assert move["balance"] == 30
    r = await client.patch(f"/inventory/moves/{move['move']['id']}", json={"qty": -1, "note": "only one broke"})
    assert r.json()["balance"] == 35
    r = await client.delete(f"/inventory/moves/{move['move']['id']}")
    assert r.json() == {"ok": True, "balance": 36}

    assert (await client.get("/inventory/drift")).json() == []
    assert (await client.get("/inventory/low-stock")).json() == []


async def test_moves_validation_errors(client, make_product):
    pid = await make_product("Lager", stock=5)
    r = await client.post("/inventory/moves", json={"product_id": str(pid), "qty": 0})
    assert r.status_code == 422
    r = await client.post("/inventory/add-stock", json={"product_id": str(pid), "qty": -1})
    assert r.status_code == 422
    r = await client.get(f"/inventory/moves/{uuid.uuid4()}")
    assert r.status_code == 404


async def test_refund_retry_is_admin_only(client, auth, cashier):
    admin = auth["user"]
    auth["user"] = cashier
    assert (await client.post("/sales/refunds/retry")).status_code == 403
    auth["user"] = admin
    assert (await client.post("/sales/refunds/retry")).json() == {"ok": True, "recorded": 0}
