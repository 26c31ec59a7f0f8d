"""
HTTP tests for /api/inventory.
"""

from posledger.services import batch_service, ledger_service

from conftest import receive


ACTOR = {"X-Actor-Id": "cashier-7"}


def _stock_in(client, product_id, **overrides):
    payload = {
        "product_id": product_id,
        "quantity": 10,
        "purchase_price_cents": 600,
        "selling_price_cents": 1000,
    }
    payload.update(overrides)
    return client.post("/api/inventory/stock-in", json=payload, headers=ACTOR)


def test_stock_in_creates_batch_and_entry(client, db_session, product):
    response = _stock_in(client, product.id, batch_code="LOT-1", expiry_date="2030-01-31T00:00:00Z")

    assert response.status_code == 201
    body = response.get_json()
    assert body["batch"]["quantity"] == 10
    assert body["batch"]["expiry_date"] == "2030-01-31T00:00:00Z"
    assert body["entry"]["type"] == "IN"
    assert body["entry"]["actor_id"] == "cashier-7"


def test_stock_in_duplicate_code_on_create_path_is_top_up(client, db_session, product):
    _stock_in(client, product.id, batch_code="LOT-1")
    response = _stock_in(client, product.id, batch_code="LOT-1", quantity=5)

    assert response.status_code == 201
    assert response.get_json()["batch"]["quantity"] == 15


def test_stock_in_validation_errors(client, db_session, product):
    response = _stock_in(client, product.id, quantity=0)
    assert response.status_code == 400
    assert response.get_json()["code"] == "invalid_quantity"

    response = _stock_in(client, product.id, unexpected="x")
    assert response.status_code == 400
    assert response.get_json()["code"] == "validation_error"

    response = _stock_in(client, 999)
    assert response.status_code == 404


def test_stock_out_route(client, db_session, product):
    receive(product.id, 3)

    response = client.post("/api/inventory/stock-out", json={"product_id": product.id, "quantity": 2})
    assert response.status_code == 201
    assert [e["quantity_delta"] for e in response.get_json()["entries"]] == [-2]

    response = client.post("/api/inventory/stock-out", json={"product_id": product.id, "quantity": 2})
    assert response.status_code == 409
    body = response.get_json()
    assert body["code"] == "insufficient_stock"
    assert body["details"]["available"] == 1


def test_adjust_route(client, db_session, product):
    receive(product.id, 3, batch_code="LOT-1")

    response = client.post("/api/inventory/adjust", json={
        "product_id": product.id,
        "quantity": 1,
        "direction": "DECREASE",
        "batch_code": "LOT-1",
        "notes": "Dropped",
    })
    assert response.status_code == 201
    assert response.get_json()["entries"][0]["type"] == "ADJUSTMENT"

    response = client.post("/api/inventory/adjust", json={
        "product_id": product.id,
        "quantity": 5,
        "direction": "DECREASE",
        "batch_code": "LOT-1",
        "notes": "Dropped",
    })
    assert response.status_code == 400
    assert response.get_json()["code"] == "invalid_quantity"


def test_stock_listing_and_availability(client, db_session, product, product_b):
    receive(product.id, 2, expiry_days=5)
    receive(product_b.id, 40)

    response = client.get("/api/inventory/stock?low_stock=true")
    assert response.status_code == 200
    body = response.get_json()
    assert [item["product_id"] for item in body["items"]] == [product.id]
    assert body["meta"]["total"] == 1

    response = client.get(f"/api/inventory/{product_b.id}/availability")
    assert response.get_json()["total_quantity"] == 40

    assert client.get("/api/inventory/999/availability").status_code == 404
    assert client.get("/api/inventory/stock?page=0").status_code == 400


def test_history_route_pages(client, db_session, product):
    for qty in (1, 2, 3):
        receive(product.id, qty)

    first = client.get(f"/api/inventory/{product.id}/history?limit=2").get_json()
    assert [e["quantity_delta"] for e in first["items"]] == [3, 2]

    second = client.get(
        f"/api/inventory/{product.id}/history",
        query_string={"limit": 2, "cursor": first["next_cursor"]},
    ).get_json()
    assert [e["quantity_delta"] for e in second["items"]] == [1]
    assert second["next_cursor"] is None

    bad = client.get(f"/api/inventory/{product.id}/history?cursor=garbage")
    assert bad.status_code == 400


def test_expiry_sweep_route(client, db_session, product):
    receive(product.id, 4, expiry_days=-1)

    response = client.post("/api/inventory/expiry-sweep")
    assert response.status_code == 200
    assert response.get_json()["processed_count"] == 1

    response = client.post("/api/inventory/expiry-sweep")
    assert response.get_json()["processed_count"] == 0


def test_read_routes_hide_unexpected_errors(client, db_session, product, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(batch_service, "availability", boom)
    monkeypatch.setattr(ledger_service, "history", boom)

    for url in (f"/api/inventory/{product.id}/availability", f"/api/inventory/{product.id}/history"):
        response = client.get(url)
        assert response.status_code == 500
        assert response.get_json() == {"error": "Internal server error"}


def test_actor_is_resolved_per_request(client, db_session, product):
    assert _stock_in(client, product.id).get_json()["entry"]["actor_id"] == "cashier-7"

    response = client.post(
        "/api/inventory/stock-in",
        json={
            "product_id": product.id,
            "quantity": 1,
            "purchase_price_cents": 600,
            "selling_price_cents": 1000,
        },
    )
    assert response.status_code == 201
    assert response.get_json()["entry"]["actor_id"] is None
