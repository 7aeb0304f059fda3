from conftest import create_product, customer_details, deliver_and_pay, place_order, verified_bank

import database


def _product(product_id):
    return database.db["product"].find_one({"_id": database.parse_object_id(product_id)})


def test_order_pricing_free_shipping(client, customer, product):
    order = place_order(client, product["id"], headers=customer["headers"])
    assert order["subtotal"] == 600
    assert order["tax"] == 108.0
    assert order["shippingCost"] == 0
    assert order["total"] == 708.0
    assert order["status"] == "pending"
    assert order["orderNumber"].startswith("ORD-")
    assert order["customer"]["userId"] == customer["id"]
    assert order["statusHistory"][0]["status"] == "pending"
    assert order["payment"]["status"] == "pending"


def test_order_pricing_flat_shipping(client, admin, artisan):
    cheap = create_product(client, admin, artisan, price=200, name="Clay Pot", category="Pottery")
    order = place_order(client, cheap["id"], quantity=2)
    assert (order["subtotal"], order["tax"], order["shippingCost"], order["total"]) == (400, 72.0, 40, 512.0)
    assert order["customer"]["userId"] is None


def test_order_decrements_stock_and_updates_artisan(client, product, artisan):
    place_order(client, product["id"], quantity=6)
    stored = _product(product["id"])
    assert stored["stock"] == 4
    assert stored["status"] == "low_stock"
    assert stored["sales"] == 6
    profile = database.db["artisan"].find_one({"_id": database.parse_object_id(artisan["artisan_id"])})
    assert profile["totalOrders"] == 1
    assert profile["totalRevenue"] == 3600
    note = database.db["notification"].find_one({"type": "order_placed"})
    assert str(note["recipientId"]) == artisan["id"]


def test_order_insufficient_stock(client, product):
    res = client.post(
        "/api/orders",
        json={"customerDetails": customer_details(), "items": [{"productId": product["id"], "quantity": 11}]},
    )
    assert res.status_code == 400
    assert database.db["order"].count_documents({}) == 0
    assert _product(product["id"])["stock"] == 10


def test_order_requires_customer_details(client, product):
    res = client.post("/api/orders", json={"items": [{"productId": product["id"]}]})
    assert res.status_code == 400
    assert res.json()["message"] == "Customer details are required"

    res = client.post(
        "/api/orders",
        json={"customerDetails": customer_details(city=""), "items": [{"productId": product["id"]}]},
    )
    assert res.status_code == 400
    assert res.json()["message"] == "Missing required fields: city"


def test_order_for_pending_product_is_refused(client, artisan):
    res = client.post(
        "/api/artisan/products",
        json={"name": "Pending Pot", "price": 300, "category": "Pottery", "stock": 5},
        headers=artisan["headers"],
    )
    pending_id = res.json()["data"]["id"]
    res = client.post(
        "/api/orders",
        json={"customerDetails": customer_details(), "items": [{"productId": pending_id}]},
    )
    assert res.status_code == 400


def test_express_interest_single_product(client, product):
    res = client.post(
        "/api/orders/express-interest",
        json={"customerDetails": customer_details(), "productId": product["id"], "quantity": 2},
    )
    assert res.status_code == 201
    assert res.json()["data"]["items"][0]["quantity"] == 2


def test_other_customer_cannot_view_order(client, customer, other_customer, product):
    order = place_order(client, product["id"], headers=customer["headers"])
    res = client.get(f"/api/orders/{order['id']}", headers=other_customer["headers"])
    assert res.status_code == 403
    res = client.get(f"/api/orders/{order['id']}", headers=customer["headers"])
    assert res.status_code == 200


def test_artisan_and_admin_can_view_order(client, admin, artisan, product):
    order = place_order(client, product["id"])
    assert client.get(f"/api/orders/{order['id']}", headers=artisan["headers"]).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=admin["headers"]).status_code == 200


def test_customer_cancel_restocks(client, customer, product, artisan):
    order = place_order(client, product["id"], quantity=3, headers=customer["headers"])
    res = client.put(
        f"/api/orders/{order['id']}/cancel",
        json={"cancellationReason": "Ordered by mistake"},
        headers=customer["headers"],
    )
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "cancelled"
    assert data["statusHistory"][-1]["reason"] == "Ordered by mistake"
    assert _product(product["id"])["stock"] == 10
    assert database.db["notification"].count_documents({"type": "order_cancelled"}) == 1


def test_customer_cancel_needs_reason_and_ownership(client, customer, other_customer, product):
    order = place_order(client, product["id"], headers=customer["headers"])
    res = client.put(f"/api/orders/{order['id']}/cancel", json={}, headers=customer["headers"])
    assert res.status_code == 400
    res = client.put(
        f"/api/orders/{order['id']}/cancel",
        json={"cancellationReason": "nope"},
        headers=other_customer["headers"],
    )
    assert res.status_code == 403


def test_customer_cannot_cancel_shipped_order(client, admin, customer, product):
    order = place_order(client, product["id"], headers=customer["headers"])
    client.put(f"/api/orders/{order['id']}/status", json={"status": "shipped"}, headers=admin["headers"])
    res = client.put(
        f"/api/orders/{order['id']}/cancel",
        json={"cancellationReason": "too slow"},
        headers=customer["headers"],
    )
    assert res.status_code == 400


def test_admin_status_change_notifies_customer(client, admin, customer, product):
    order = place_order(client, product["id"], headers=customer["headers"])
    res = client.put(
        f"/api/orders/{order['id']}/status",
        json={"status": "confirmed", "reason": "called customer"},
        headers=admin["headers"],
    )
    assert res.status_code == 200
    history = res.json()["data"]["statusHistory"]
    assert [h["status"] for h in history] == ["pending", "confirmed"]
    note = database.db["notification"].find_one({"type": "order_status_update"})
    assert str(note["recipientId"]) == customer["id"]

    res = client.put(f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=admin["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Order is already confirmed"


def test_invalid_status_value(client, admin, product):
    order = place_order(client, product["id"])
    res = client.put(f"/api/orders/{order['id']}/status", json={"status": "lost"}, headers=admin["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid status value"


def test_artisan_follows_transition_table(client, artisan, product):
    order = place_order(client, product["id"])
    url = f"/api/artisan/orders/{order['id']}/status"
    assert client.put(url, json={"status": "shipped"}, headers=artisan["headers"]).status_code == 400
    assert client.put(url, json={"status": "confirmed"}, headers=artisan["headers"]).status_code == 200
    assert client.put(url, json={"status": "processing"}, headers=artisan["headers"]).status_code == 200
    res = client.put(url, json={"status": "shipped"}, headers=artisan["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["shipping"]["shippedAt"]


def test_payment_update(client, admin, customer, product):
    order = place_order(client, product["id"], headers=customer["headers"])
    res = client.put(
        f"/api/orders/{order['id']}/payment",
        json={"status": "paid", "transactionId": "TXN1"},
        headers=admin["headers"],
    )
    assert res.status_code == 200
    payment = res.json()["data"]["payment"]
    assert payment["status"] == "paid"
    assert payment["paidAt"]
    assert database.db["notification"].count_documents({"type": "payment_received"}) == 1


def test_contact_moves_pending_to_contacted(client, admin, product):
    order = place_order(client, product["id"])
    res = client.post(
        f"/api/orders/{order['id']}/contact",
        json={"method": "phone", "notes": "Confirmed address"},
        headers=admin["headers"],
    )
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "contacted"
    assert data["contactHistory"][0]["method"] == "phone"


def test_notes(client, admin, product):
    order = place_order(client, product["id"])
    res = client.post(f"/api/orders/{order['id']}/notes", json={}, headers=admin["headers"])
    assert res.status_code == 400
    res = client.post(f"/api/orders/{order['id']}/notes", json={"note": "Gift wrap"}, headers=admin["headers"])
    assert res.json()["data"]["adminNotes"][0]["note"] == "Gift wrap"


def test_track_order_hides_contact_details(client, product):
    order = place_order(client, product["id"])
    res = client.get(f"/api/orders/track/{order['orderNumber']}")
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "pending"
    assert "customer" not in data
    assert client.get("/api/orders/track/ORD-missing").status_code == 404


def test_admin_listing_and_export(client, admin, product):
    first = place_order(client, product["id"])
    place_order(client, product["id"])
    deliver_and_pay(client, admin, first["id"])

    res = client.get("/api/orders", params={"status": "delivered"}, headers=admin["headers"])
    data = res.json()["data"]
    assert data["pagination"]["total"] == 1
    assert data["stats"]["statusCounts"] == {"delivered": 1, "pending": 1}
    assert data["stats"]["todayOrders"] == 2

    res = client.get("/api/orders", params={"search": "bengaluru"}, headers=admin["headers"])
    assert res.json()["data"]["pagination"]["total"] == 2

    res = client.get("/api/orders/summary/dashboard", headers=admin["headers"])
    assert res.json()["data"]["paidRevenue"] == 708.0

    res = client.get("/api/orders/export/all", headers=admin["headers"])
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    assert "attachment; filename=orders-" in res.headers["content-disposition"]
    assert len(res.text.strip().splitlines()) == 3


def test_admin_listing_requires_admin(client, customer):
    assert client.get("/api/orders", headers=customer["headers"]).status_code == 403
    assert client.get("/api/orders").status_code == 401


def test_cancelled_order_cannot_be_reopened(client, admin, product):
    order = place_order(client, product["id"], quantity=3)
    url = f"/api/orders/{order['id']}"
    assert client.put(f"{url}/cancel", json={"cancellationReason": "Duplicate"}, headers=admin["headers"]).status_code == 200
    res = client.put(f"{url}/status", json={"status": "pending"}, headers=admin["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Cancelled orders cannot be reopened"
    res = client.put(f"{url}/cancel", json={"cancellationReason": "Again"}, headers=admin["headers"])
    assert res.status_code == 400
    stored = _product(product["id"])
    assert stored["stock"] == 10
    assert stored["sales"] == 0


def test_order_claimed_by_payout_is_frozen(client, admin, artisan, product):
    verified_bank(client, admin, artisan)
    order = place_order(client, product["id"])
    deliver_and_pay(client, admin, order["id"])
    res = client.post("/api/artisan/payouts/request", json={"amount": 500}, headers=artisan["headers"])
    assert res.status_code == 201

    url = f"/api/orders/{order['id']}"
    res = client.put(f"{url}/cancel", json={"cancellationReason": "Refund"}, headers=admin["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Order is part of an artisan payout and its status can no longer change"
    stored = database.db["order"].find_one({"_id": database.parse_object_id(order["id"])})
    assert stored["status"] == "delivered"
    assert len(stored["payoutClaims"]) == 1
    assert _product(product["id"])["stock"] == 9
