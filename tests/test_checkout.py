"""Tests for checkout: totals, stock reservation and rollback."""

import pytest
from bson import ObjectId

import main


def _stock(mock_db, variant_id):
    return mock_db["product_variant"].find_one({"_id": ObjectId(variant_id)})["stock_quantity"]


@pytest.fixture
def address(api, address_factory):
    return address_factory(api)


def _checkout(client, address_id, payment_method="card", **extra):
    body = {
        "shipping_address_id": address_id,
        "billing_address_id": address_id,
        "payment_method": payment_method,
    }
    body.update(extra)
    return client.post("/api/checkout", json=body)


class TestSummary:
    def test_summary_prices_active_lines(self, api, catalog):
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"], "quantity": 2})
        api.post("/api/cart", json={"product_variant_id": catalog["shirt_s"], "item_type": "save_for_later"})
        summary = api.get("/api/checkout/summary").json()
        assert summary == {
            "subtotal": 400.0,
            "shipping_cost": 50.0,
            "tax_amount": 72.0,
            "discount_amount": 0.0,
            "total_amount": 522.0,
            "items_count": 2,
        }

    def test_free_shipping_above_threshold(self, api, catalog):
        api.post("/api/cart", json={"product_variant_id": catalog["shirt_s"]})
        summary = api.get("/api/checkout/summary").json()
        assert summary["shipping_cost"] == 0.0
        assert summary["total_amount"] == 1062.0


class TestCheckoutValidation:
    def test_missing_fields(self, api):
        response = api.post("/api/checkout", json={})
        assert response.status_code == 400
        assert response.json()["details"] == [
            "Shipping address is required",
            "Billing address is required",
            "Payment method is required",
        ]

    def test_empty_cart(self, api, address, mock_db):
        response = _checkout(api, address["id"])
        assert response.status_code == 400
        assert response.json()["message"] == "Cart is empty"
        assert mock_db["order"].count_documents({}) == 0

    def test_saved_items_alone_are_empty_cart(self, api, catalog, address):
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"], "item_type": "save_for_later"})
        assert _checkout(api, address["id"]).json()["message"] == "Cart is empty"

    def test_other_users_address(self, api, other_api, catalog, address_factory, mock_db):
        foreign = address_factory(other_api)
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"]})
        response = _checkout(api, foreign["id"])
        assert response.status_code == 400
        assert response.json()["message"] == "Invalid shipping address"
        assert _stock(mock_db, catalog["tee_m"]) == 5

    def test_invalid_billing_address(self, api, catalog, address):
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"]})
        response = api.post("/api/checkout", json={
            "shipping_address_id": address["id"],
            "billing_address_id": str(ObjectId()),
            "payment_method": "upi",
        })
        assert response.json()["message"] == "Invalid billing address"

    def test_unknown_payment_method(self, api, catalog, address):
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"]})
        response = _checkout(api, address["id"], payment_method="cheque")
        assert response.status_code == 400


class TestCheckout:
    def test_creates_order(self, api, catalog, address, mock_db):
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"], "quantity": 2})
        api.post("/api/cart", json={"product_variant_id": catalog["shirt_s"], "item_type": "save_for_later"})

        response = _checkout(api, address["id"], notes="Leave at the door")
        assert response.status_code == 201
        body = response.json()
        assert body["requires_payment"] is True
        order = body["order"]
        assert order["order_number"].startswith("ORD-")
        assert order["order_status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["payment_provider"] == "razorpay"
        assert order["currency"] == "INR"
        assert order["total_amount"] == 522.0
        assert order["notes"] == "Leave at the door"
        assert order["shipping_address"]["id"] == address["id"]
        assert order["can_cancel"] is True

        [item] = order["order_items"]
        assert item["product_name"] == "Classic Tee"
        assert item["variant_sku"] == "TEE-M-BLK"
        assert item["price_at_purchase"] == 200.0
        assert item["subtotal"] == 400.0

        [history] = order["status_history"]
        assert history["status"] == "pending"
        assert history["changed_by"] == "system"

        assert _stock(mock_db, catalog["tee_m"]) == 3
        remaining = list(mock_db["cart_item"].find({}))
        assert [i["item_type"] for i in remaining] == ["save_for_later"]

    def test_cod_order(self, api, catalog, address):
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"]})
        body = _checkout(api, address["id"], payment_method="cod").json()
        assert body["requires_payment"] is False
        assert body["order"]["payment_status"] == "cod_pending"
        assert body["order"]["payment_provider"] == "cod"

    def test_order_keeps_snapshot_after_price_change(self, api, catalog, address, mock_db):
        api.post("/api/cart", json={"product_variant_id": catalog["tee_l"]})
        order = _checkout(api, address["id"]).json()["order"]
        mock_db["product"].update_one({"_id": ObjectId(catalog["tee"])}, {"$set": {"base_price": 999.0}})
        detail = api.get(f"/api/account/order/{order['id']}").json()["data"]
        assert detail["order_items"][0]["price_at_purchase"] == 250.0
        assert detail["subtotal"] == 250.0

    def test_insufficient_stock_releases_reservations(self, api, catalog, address, mock_db):
        api.post("/api/cart", json={"product_variant_id": catalog["tee_l"], "quantity": 1})
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"], "quantity": 4})
        mock_db["product_variant"].update_one({"_id": ObjectId(catalog["tee_m"])}, {"$set": {"stock_quantity": 2}})

        response = _checkout(api, address["id"])
        assert response.status_code == 400
        assert response.json()["availableStock"] == 2
        assert mock_db["order"].count_documents({}) == 0
        assert _stock(mock_db, catalog["tee_l"]) == 10
        assert _stock(mock_db, catalog["tee_m"]) == 2
        assert mock_db["cart_item"].count_documents({}) == 2

    def test_item_insert_failure_rolls_back(self, api, catalog, address, mock_db, monkeypatch):
        def fail(docs):
            raise RuntimeError("write failed")

        monkeypatch.setattr(main, "_insert_order_items", fail)
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"], "quantity": 2})

        response = _checkout(api, address["id"])
        assert response.status_code == 500
        assert response.json()["message"] == "Failed to create order items"
        assert mock_db["order"].count_documents({}) == 0
        assert _stock(mock_db, catalog["tee_m"]) == 5
        assert mock_db["cart_item"].count_documents({}) == 1

    def test_history_failure_does_not_fail_checkout(self, api, catalog, address, mock_db, monkeypatch, caplog):
        monkeypatch.setattr(main, "create_document", _failing_for("order_status_history", main.create_document))
        api.post("/api/cart", json={"product_variant_id": catalog["tee_m"]})
        response = _checkout(api, address["id"])
        assert response.status_code == 201
        assert mock_db["order_status_history"].count_documents({}) == 0
        warnings = [r for r in caplog.records if r.name == "main" and r.levelname == "WARNING"]
        assert len(warnings) == 1
        assert "Could not write status history" in warnings[0].getMessage()


def _failing_for(collection, create):
    def wrapper(name, data):
        if name == collection:
            raise RuntimeError(f"{collection} unavailable")
        return create(name, data)
    return wrapper
