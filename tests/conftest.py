"""Pytest fixtures for storefront tests."""

from datetime import datetime, timedelta, timezone

import jwt
import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
import main
from database import create_document, utcnow

USER_ID = "user_1"
OTHER_USER_ID = "user_2"


def make_token(sub, expires_in=timedelta(hours=1), **claims):
    payload = {"sub": sub, "exp": datetime.now(timezone.utc) + expires_in}
    payload.update(claims)
    return jwt.encode(payload, main.AUTH_JWT_SECRET, algorithm=main.AUTH_JWT_ALGORITHM)


@pytest.fixture
def mock_db(monkeypatch):
    """In-memory store swapped in for the configured database."""
    store = mongomock.MongoClient().storefront_test
    monkeypatch.setattr(database, "db", store)
    monkeypatch.setattr(main, "db", store)
    return store


@pytest.fixture
def anon_client(mock_db):
    return TestClient(main.app)


@pytest.fixture
def api(mock_db):
    """Client authenticated as USER_ID."""
    return TestClient(main.app, headers={"Authorization": f"Bearer {make_token(USER_ID)}"})


@pytest.fixture
def other_api(mock_db):
    """Client authenticated as OTHER_USER_ID."""
    return TestClient(main.app, headers={"Authorization": f"Bearer {make_token(OTHER_USER_ID)}"})


@pytest.fixture
def catalog(mock_db):
    """A small catalog.

    Tee (base 200): M/Black stock 5, L/Black stock 10 (+50), M/Red out of
    stock, S/Grey unavailable. Shirt (base 900): S/White stock 3.
    """
    tops = create_document("category", {"name": "Tops", "slug": "tops", "is_active": True})
    shirts = create_document("category", {"name": "Shirts", "slug": "shirts", "is_active": True})
    tee = create_document("product", {
        "category_id": tops, "name": "Classic Tee", "slug": "classic-tee",
        "description": "Heavyweight cotton tee", "base_price": 200.0, "is_active": True,
    })
    shirt = create_document("product", {
        "category_id": shirts, "name": "Linen Shirt", "slug": "linen-shirt",
        "description": "Relaxed linen shirt", "base_price": 900.0, "is_active": True,
    })

    def variant(product_id, sku, size, color, stock, adjustment=0.0, available=True):
        return create_document("product_variant", {
            "product_id": product_id, "sku": sku, "size": size, "color": color,
            "price_adjustment": adjustment, "stock_quantity": stock,
            "low_stock_threshold": 2, "is_available": available,
        })

    ids = {
        "tops": tops,
        "shirts": shirts,
        "tee": tee,
        "shirt": shirt,
        "tee_m": variant(tee, "TEE-M-BLK", "M", "Black", 5),
        "tee_l": variant(tee, "TEE-L-BLK", "L", "Black", 10, adjustment=50.0),
        "tee_red": variant(tee, "TEE-M-RED", "M", "Red", 0),
        "tee_gone": variant(tee, "TEE-S-GRY", "S", "Grey", 4, available=False),
        "shirt_s": variant(shirt, "SHR-S-WHT", "S", "White", 3),
    }
    create_document("product_image", {
        "product_id": tee, "variant_id": ids["tee_m"], "object_path": "tees/classic-black.jpg",
        "view_type": "front", "display_order": 0, "is_primary": True,
    })
    return ids


VALID_ADDRESS = {
    "address_type": "shipping",
    "full_name": "Asha Rao",
    "phone_number": "98765 43210",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}


@pytest.fixture
def address_factory():
    def create(client, **overrides):
        payload = dict(VALID_ADDRESS)
        payload.update(overrides)
        response = client.post("/api/account/addresses", json=payload)
        assert response.status_code == 201, response.json()
        return response.json()["address"]
    return create


@pytest.fixture
def order_factory(mock_db):
    """Insert an order (and its items) directly, bypassing checkout."""
    def create(user_id=USER_ID, order_status="pending", payment_status="pending",
               days_ago=0, items=None, payment_method="card", address_id="addr"):
        created_at = utcnow() - timedelta(days=days_ago)
        order_id = mock_db["order"].insert_one({
            "order_number": "ORD-1-TEST",
            "user_id": user_id,
            "shipping_address_id": address_id,
            "billing_address_id": address_id,
            "subtotal": 400.0,
            "shipping_cost": 50.0,
            "tax_amount": 72.0,
            "discount_amount": 0.0,
            "total_amount": 522.0,
            "currency": "INR",
            "payment_method": payment_method,
            "payment_provider": "razorpay",
            "payment_status": payment_status,
            "order_status": order_status,
            "is_paid": payment_status == "completed",
            "notes": None,
            "created_at": created_at,
            "updated_at": created_at,
        }).inserted_id
        item_ids = []
        for variant_id, qty in (items or [(str(ObjectId()), 2)]):
            item_ids.append(str(mock_db["order_item"].insert_one({
                "order_id": str(order_id),
                "product_variant_id": variant_id,
                "product_name": "Classic Tee",
                "variant_sku": "TEE-M-BLK",
                "size": "M",
                "color": "Black",
                "price_at_purchase": 200.0,
                "quantity": qty,
                "subtotal": 200.0 * qty,
                "created_at": created_at,
            }).inserted_id))
        return str(order_id), item_ids
    return create
