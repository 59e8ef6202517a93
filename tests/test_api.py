"""HTTP layer: routes, envelopes and error rendering."""
from decimal import Decimal
import uuid


USER = {"X-User-Id": str(uuid.uuid4())}


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["checks"]["database"] == "connected"


async def test_branch_stock_listing_envelope(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 12)
    await stock_up(seeded.north, seeded.soap, 3)

    response = await client.get(f"/api/v1/inventory/branches/{seeded.north}/stock", params={"limit": 1})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
    row = body["data"][0]
    assert row["product_name"] == "Basmati Rice 1kg"
    assert row["product_sku"] == "RICE-1KG"
    assert Decimal(row["quantity"]) == Decimal("12")
    assert row["is_low_stock"] is False


async def test_single_stock_row_and_not_found(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 4)

    response = await client.get(f"/api/v1/inventory/branches/{seeded.north}/stock/{seeded.rice}")
    assert response.status_code == 200
    assert response.json()["data"]["is_low_stock"] is True

    response = await client.get(f"/api/v1/inventory/branches/{seeded.south}/stock/{seeded.rice}")
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "NOT_FOUND"


async def test_adjustment_requires_reason(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 4)
    payload = {"branch_id": str(seeded.north), "product_id": str(seeded.rice), "quantity": "-1"}

    response = await client.post("/api/v1/inventory/adjustments", json=payload, headers=USER)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    response = await client.post(
        "/api/v1/inventory/adjustments", json={**payload, "reason": "Broken packet"}, headers=USER
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert Decimal(data["stock"]["quantity"]) == Decimal("3")
    assert data["movement"]["movement_type"] == "ADJUSTMENT_MINUS"
    assert data["movement"]["performed_by"] == USER["X-User-Id"]


async def test_insufficient_stock_returns_current_state(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 2)

    response = await client.post(
        "/api/v1/inventory/shrinkage",
        json={
            "branch_id": str(seeded.north),
            "product_id": str(seeded.rice),
            "quantity": "3",
            "reason": "DAMAGED",
        },
    )

    assert response.status_code == 409
    body = response.json()
    assert body["error"]["code"] == "INSUFFICIENT_STOCK"
    assert Decimal(body["data"]["quantity"]) == Decimal("2")


async def test_sale_movement_and_history(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 10)

    response = await client.post(
        "/api/v1/inventory/movements",
        json={
            "branch_id": str(seeded.north),
            "product_id": str(seeded.rice),
            "movement_type": "SALE",
            "quantity": "2",
            "reference_type": "SALE",
            "reference_id": "POS-42",
        },
    )
    assert response.status_code == 201

    response = await client.get(
        "/api/v1/inventory/movements", params={"branch_id": str(seeded.north), "movement_type": "SALE"}
    )
    body = response.json()
    assert body["pagination"]["total"] == 1
    assert body["data"][0]["reference_id"] == "POS-42"
    assert Decimal(body["data"][0]["quantity"]) == Decimal("-2")

    response = await client.get(f"/api/v1/inventory/branches/{seeded.north}/stock/{seeded.rice}/ledger-check")
    assert response.json()["data"]["consistent"] is True


async def test_inventory_count_endpoint(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 10)

    response = await client.post(
        "/api/v1/inventory/counts",
        json={
            "branch_id": str(seeded.north),
            "entries": [{"product_id": str(seeded.rice), "counted_quantity": "9.5"}],
            "notes": "Spot check",
        },
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["adjustments"] == 1
    assert Decimal(data["details"][0]["variance"]) == Decimal("-0.5")


async def test_transfer_lifecycle_over_http(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 10)

    response = await client.post(
        "/api/v1/transfers",
        json={
            "source_branch_id": str(seeded.north),
            "destination_branch_id": str(seeded.south),
            "items": [{"product_id": str(seeded.rice), "quantity": "10"}],
        },
        headers=USER,
    )
    assert response.status_code == 201
    transfer = response.json()["data"]
    assert transfer["status"] == "PENDING"
    assert transfer["source_branch_name"] == "North Store"
    transfer_id = transfer["id"]
    item_id = transfer["items"][0]["id"]

    response = await client.post(f"/api/v1/transfers/{transfer_id}/approve", headers=USER)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "IN_TRANSIT"

    response = await client.get(f"/api/v1/inventory/branches/{seeded.south}/incoming")
    incoming = response.json()["data"]
    assert Decimal(incoming[0]["in_transit_quantity"]) == Decimal("10")

    response = await client.post(
        f"/api/v1/transfers/{transfer_id}/receive",
        json={"items": [{"item_id": item_id, "quantity_received": "8"}]},
        headers=USER,
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "RECEIVED"
    assert data["has_variance"] is True
    assert Decimal(data["items"][0]["variance_quantity"]) == Decimal("-2")

    response = await client.post(f"/api/v1/transfers/{transfer_id}/cancel", json={"reason": "Too late"})
    assert response.status_code == 409
    body = response.json()
    assert body["error"]["code"] == "INVALID_STATE_TRANSITION"
    assert body["data"]["status"] == "RECEIVED"

    response = await client.get("/api/v1/transfers", params={"has_variance": "true"})
    assert response.json()["pagination"]["total"] == 1


async def test_transfer_to_same_branch_is_rejected(client, seeded):
    response = await client.post(
        "/api/v1/transfers",
        json={
            "source_branch_id": str(seeded.north),
            "destination_branch_id": str(seeded.north),
            "items": [{"product_id": str(seeded.rice), "quantity": "1"}],
        },
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_open_bag_endpoints(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.lentils, 2)

    response = await client.post(
        "/api/v1/open-bags",
        json={"branch_id": str(seeded.north), "product_id": str(seeded.lentils), "original_weight": "20"},
        headers=USER,
    )
    assert response.status_code == 201
    bag = response.json()["data"]
    assert Decimal(bag["low_stock_threshold"]) == Decimal("3")

    response = await client.post(
        "/api/v1/open-bags",
        json={"branch_id": str(seeded.north), "product_id": str(seeded.lentils), "original_weight": "20"},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BAG_ALREADY_OPEN"

    response = await client.patch(f"/api/v1/open-bags/{bag['id']}/deduct", json={"quantity": "17"})
    assert response.status_code == 200
    assert response.json()["data"]["is_low_stock"] is True

    response = await client.get("/api/v1/open-bags/low-stock")
    assert [b["id"] for b in response.json()["data"]] == [bag["id"]]

    response = await client.patch(f"/api/v1/open-bags/{bag['id']}/deduct", json={"quantity": "4"})
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INSUFFICIENT_STOCK"

    response = await client.patch(f"/api/v1/open-bags/{bag['id']}/close", json={"notes": "End of day"})
    data = response.json()["data"]
    assert data["status"] == "EMPTY"
    assert Decimal(data["remaining_weight"]) == Decimal("0")

    response = await client.get("/api/v1/open-bags", params={"branch_id": str(seeded.north)})
    assert response.json()["pagination"]["total"] == 1


async def test_malformed_body_uses_error_envelope(client):
    response = await client.post("/api/v1/inventory/adjustments", json={"quantity": "abc"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["details"]["errors"]


async def test_product_stock_across_branches_endpoint(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 12)
    await stock_up(seeded.south, seeded.rice, 2)

    response = await client.get(f"/api/v1/inventory/products/{seeded.rice}/stock")

    assert response.status_code == 200
    rows = response.json()["data"]
    assert [r["branch_name"] for r in rows] == ["North Store", "South Store"]
    assert [r["branch_code"] for r in rows] == ["NORTH", "SOUTH"]
    assert rows[1]["product_sku"] == "RICE-1KG"
    assert rows[1]["is_low_stock"] is True

    response = await client.get(f"/api/v1/inventory/products/{uuid.uuid4()}/stock")
    assert response.status_code == 404


async def test_quantity_with_four_decimals_is_rejected(client, seeded, stock_up):
    await stock_up(seeded.north, seeded.rice, 2)

    response = await client.post(
        "/api/v1/inventory/movements",
        json={
            "branch_id": str(seeded.north),
            "product_id": str(seeded.rice),
            "movement_type": "SALE",
            "quantity": "0.0005",
        },
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
