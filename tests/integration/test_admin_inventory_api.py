"""Integration tests for the admin inventory ledger endpoints."""

import uuid

import pytest
from services.orders_service.models import Product
from sqlalchemy import update
from tests.factories import BoxFactory, ProductFactory, reload, seed_product


@pytest.mark.asyncio
@pytest.mark.integration
async def test_post_movement_updates_stock(client, db_session):
    product = await seed_product(db_session, stock=3)

    response = await client.post(
        "/admin/inventory/movements",
        json={
            "product_id": str(product.id),
            "movement_type": "restock_received",
            "quantity": 7,
            "reason": "Proveedor Norma",
        },
    )

    assert response.status_code == 201
    data = response.json()
    assert (data["previous_stock"], data["new_stock"]) == (3, 10)
    assert data["created_by"] == "admin"
    assert (await reload(db_session, product)).stock == 10


@pytest.mark.asyncio
@pytest.mark.integration
async def test_post_movement_rejects_overdraw(client, db_session):
    product = await seed_product(db_session, stock=1)

    response = await client.post(
        "/admin/inventory/movements",
        json={"product_id": str(product.id), "movement_type": "damage", "quantity": -2},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "stock_exhausted"
    assert body["details"]["available"] == 1
    assert (await reload(db_session, product)).stock == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_post_movement_rejects_wrong_sign(client, db_session):
    product = await seed_product(db_session, stock=1)

    response = await client.post(
        "/admin/inventory/movements",
        json={"product_id": str(product.id), "movement_type": "return", "quantity": -1},
    )

    assert response.status_code == 422
    assert response.json()["error"] == "invalid_movement"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_list_movements_newest_first(client, db_session):
    product = await seed_product(db_session, stock=5)
    await client.post(
        "/admin/inventory/movements",
        json={"product_id": str(product.id), "movement_type": "store_use", "quantity": -1},
    )

    response = await client.get(
        "/admin/inventory/movements", params={"product_id": str(product.id)}
    )

    assert response.status_code == 200
    types = [movement["movement_type"] for movement in response.json()]
    assert types == ["store_use", "initial_intake"]

    filtered = await client.get(
        "/admin/inventory/movements", params={"movement_type": "initial_intake"}
    )
    assert len(filtered.json()) == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_atomic_batch_rejects_everything(client, db_session):
    first = await seed_product(db_session, stock=5)
    second = await seed_product(db_session, stock=0)

    response = await client.post(
        "/admin/inventory/movements/batch",
        json={
            "movements": [
                {"product_id": str(first.id), "movement_type": "lost", "quantity": -1},
                {"product_id": str(second.id), "movement_type": "lost", "quantity": -1},
            ]
        },
    )

    assert response.status_code == 422
    assert (await reload(db_session, first)).stock == 5


@pytest.mark.asyncio
@pytest.mark.integration
async def test_resilient_batch_reports_failures(client, db_session):
    product = await seed_product(db_session, stock=5)
    missing = uuid.uuid4()

    response = await client.post(
        "/admin/inventory/movements/batch",
        params={"resilient": "true"},
        json={
            "movements": [
                {"product_id": str(product.id), "movement_type": "lost", "quantity": -2},
                {"product_id": str(missing), "movement_type": "lost", "quantity": -1},
            ]
        },
    )

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert len(data["success"]) == 1
    assert data["failed"] == [
        {
            "product_id": str(missing),
            "movement_type": "lost",
            "quantity": -1,
            "error": "product_not_found",
            "message": f"Product {missing} not found",
        }
    ]
    assert (await reload(db_session, product)).stock == 3


@pytest.mark.asyncio
@pytest.mark.integration
async def test_stock_summary(client, db_session):
    product = await seed_product(db_session, stock=6, name="Marcador Borrable")

    response = await client.get(f"/admin/inventory/products/{product.id}/summary")

    assert response.status_code == 200
    data = response.json()
    assert data["product_name"] == "Marcador Borrable"
    assert (data["stock"], data["units_in"], data["units_out"]) == (6, 6, 0)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_and_audit(client, db_session):
    product = await seed_product(db_session, stock=4)

    healthy = await client.get(f"/admin/inventory/products/{product.id}/verify")
    assert healthy.status_code == 200
    assert healthy.json()["consistent"] is True
    assert (await client.get("/admin/inventory/audit")).json() == {
        "consistent": True,
        "mismatches": [],
    }

    await db_session.execute(update(Product).where(Product.id == product.id).values(stock=9))
    await db_session.commit()

    broken = await client.get(f"/admin/inventory/products/{product.id}/verify")
    assert broken.status_code == 500
    assert broken.json()["error"] == "invariant_violation"

    audit = (await client.get("/admin/inventory/audit")).json()
    assert audit["consistent"] is False
    assert audit["mismatches"][0]["stock"] == 9
    assert audit["mismatches"][0]["ledger_total"] == 4
    # Reported, never healed
    assert (await reload(db_session, product)).stock == 9


@pytest.mark.asyncio
@pytest.mark.integration
async def test_initial_migration(client, db_session):
    legacy = ProductFactory.create(stock=15)
    empty = ProductFactory.create(stock=0)
    db_session.add_all([legacy, empty])
    await db_session.commit()

    seeded = await client.post(f"/admin/inventory/products/{legacy.id}/initial-migration")
    assert seeded.status_code == 200
    assert seeded.json()["movement_type"] == "initial_migration"
    assert seeded.json()["quantity"] == 15

    again = await client.post(f"/admin/inventory/products/{legacy.id}/initial-migration")
    assert again.status_code == 422

    nothing = await client.post(f"/admin/inventory/products/{empty.id}/initial-migration")
    assert nothing.status_code == 204


@pytest.mark.asyncio
@pytest.mark.integration
async def test_package_preview_uses_catalog_boxes(client, db_session):
    db_session.add(BoxFactory.create(size="L", width=40, height=15, length=30))
    await db_session.commit()
    product = await seed_product(db_session, stock=5, size_value="XL-L")

    response = await client.post(
        "/admin/inventory/package-preview",
        json={"items": [{"product_id": str(product.id), "quantity": 1}]},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["container_type"] == "box"
    assert (data["width"], data["length"], data["height"]) == (40, 30, 15)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_package_preview_empty_cart(client):
    response = await client.post("/admin/inventory/package-preview", json={"items": []})

    assert response.status_code == 200
    assert response.json()["container_type"] == "bag"
