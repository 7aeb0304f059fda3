import pytest

from conftest import create_product, customer_details, deliver_and_pay, place_order, register_artisan, verified_bank

import database
import payouts


@pytest.fixture
def earning_artisan(client, admin, artisan, product):
    """An approved artisan with verified bank details and two delivered, paid orders (600 each)."""
    verified_bank(client, admin, artisan)
    for _ in range(2):
        order = place_order(client, product["id"])
        deliver_and_pay(client, admin, order["id"])
    return artisan


def _request(client, artisan, amount):
    return client.post("/api/artisan/payouts/request", json={"amount": amount}, headers=artisan["headers"])


def test_balance_counts_only_delivered_paid_orders(client, admin, earning_artisan, product):
    place_order(client, product["id"])
    res = client.get("/api/artisan/payouts", headers=earning_artisan["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["summary"]["availableBalance"] == 1200
    assert res.json()["data"]["summary"]["minimumPayout"] == 500


def test_request_payout_claims_orders(client, earning_artisan):
    res = _request(client, earning_artisan, 600)
    assert res.status_code == 201
    payout = res.json()["data"]
    assert payout["status"] == "pending"
    assert payout["amount"] == 600
    assert payout["processingFee"] == 12.0
    assert payout["gst"] == 2.16
    assert payout["netAmount"] == 585.84
    assert payout["bankDetails"]["accountNumber"] == "XXXXXXXX9012"
    assert len(payout["orders"]) == 1
    assert payout["artisan"] == earning_artisan["id"]
    assert payout["artisanProfile"] == earning_artisan["artisan_id"]

    res = client.get("/api/artisan/payouts", headers=earning_artisan["headers"])
    assert res.json()["data"]["summary"]["availableBalance"] == 600
    assert database.db["notification"].count_documents({"type": "payout_request", "recipientType": "admin"}) == 1


def test_request_over_balance_is_refused(client, earning_artisan):
    res = _request(client, earning_artisan, 5000)
    assert res.status_code == 400
    assert res.json()["message"] == "Requested amount exceeds available payout balance. Available: ₹1200.00"
    assert database.db["payout"].count_documents({}) == 0


def test_minimum_payout(client, earning_artisan):
    res = _request(client, earning_artisan, 100)
    assert res.status_code == 400
    assert res.json()["message"] == "Minimum payout amount is ₹500"


def test_orders_cannot_be_claimed_twice(client, earning_artisan):
    assert _request(client, earning_artisan, 1200).status_code == 201
    res = _request(client, earning_artisan, 600)
    assert res.status_code == 400
    claimed = [o["payoutClaimedBy"] for o in database.db["order"].find()]
    assert all(len(c) == 1 for c in claimed)


def test_claim_orders_skips_already_claimed(client, earning_artisan):
    artisan_id = database.parse_object_id(earning_artisan["artisan_id"])
    first, total = payouts.claim_orders(artisan_id, database.parse_object_id("0" * 24), 1200)
    assert len(first) == 2
    assert total == 1200
    again, total = payouts.claim_orders(artisan_id, database.parse_object_id("1" * 24), 600)
    assert again == []
    assert total == 0


def test_payout_requires_verified_bank(client, admin, artisan, product):
    order = place_order(client, product["id"])
    deliver_and_pay(client, admin, order["id"])
    res = _request(client, artisan, 600)
    assert res.status_code == 400
    assert "bank details" in res.json()["message"]


def test_cancel_payout_releases_orders(client, earning_artisan):
    payout = _request(client, earning_artisan, 1200).json()["data"]
    res = client.put(f"/api/artisan/payouts/{payout['id']}/cancel", headers=earning_artisan["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "cancelled"
    assert all(o["payoutClaimedBy"] == [] for o in database.db["order"].find())
    res = client.put(f"/api/artisan/payouts/{payout['id']}/cancel", headers=earning_artisan["headers"])
    assert res.status_code == 400


def test_admin_processes_payout(client, admin, earning_artisan):
    payout = _request(client, earning_artisan, 600).json()["data"]
    url = f"/api/admin/payouts/{payout['id']}/status"
    assert client.put(url, json={"status": "processed"}, headers=admin["headers"]).status_code == 400
    assert client.put(url, json={"status": "processing"}, headers=admin["headers"]).status_code == 200
    res = client.put(url, json={"status": "processed", "transactionId": "UTR123"}, headers=admin["headers"])
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["referenceNumber"].startswith("PYT-")
    assert data["bankDetails"]["accountNumber"] == "123456789012"
    note = database.db["notification"].find_one({"type": "payout_processed"})
    assert str(note["recipientId"]) == earning_artisan["id"]

    res = client.get("/api/artisan/payouts", headers=earning_artisan["headers"])
    summary = res.json()["data"]["summary"]
    assert summary["processed"] == 600
    assert summary["availableBalance"] == 600


def test_failed_payout_needs_reason_and_releases_orders(client, admin, earning_artisan):
    payout = _request(client, earning_artisan, 1200).json()["data"]
    url = f"/api/admin/payouts/{payout['id']}/status"
    assert client.put(url, json={"status": "failed"}, headers=admin["headers"]).status_code == 400
    res = client.put(url, json={"status": "failed", "failureReason": "Account closed"}, headers=admin["headers"])
    assert res.status_code == 200
    res = client.get("/api/artisan/payouts", headers=earning_artisan["headers"])
    assert res.json()["data"]["summary"]["availableBalance"] == 1200


def test_admin_payout_listing(client, admin, earning_artisan):
    _request(client, earning_artisan, 600)
    res = client.get("/api/admin/payouts", params={"status": "pending"}, headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["pagination"]["total"] == 1
    res = client.get(
        "/api/admin/payouts", params={"artisan": earning_artisan["artisan_id"]}, headers=admin["headers"]
    )
    assert res.json()["data"]["payouts"][0]["artisanName"] == "Varanasi Weaves"


def test_earnings_summary(client, earning_artisan):
    res = client.get("/api/artisan/earnings", params={"period": "all_time"}, headers=earning_artisan["headers"])
    data = res.json()["data"]
    assert data["totalEarnings"] == 1200
    assert data["orderCount"] == 2
    assert data["itemCount"] == 2


def test_multi_artisan_order_counts_only_own_items(client, admin, earning_artisan, product):
    other = register_artisan(client, "kavya", businessName="Kutch Mirrors")
    client.put(f"/api/admin/artisans/{other['artisan_id']}/approve", headers=admin["headers"])
    mirror = create_product(client, admin, other, price=900, name="Mirror Work Bag", category="Bags")
    res = client.post(
        "/api/orders",
        json={
            "customerDetails": customer_details(),
            "items": [{"productId": product["id"]}, {"productId": mirror["id"]}],
        },
    )
    order_id = res.json()["data"]["id"]
    deliver_and_pay(client, admin, order_id)
    res = client.get("/api/artisan/payouts", headers=earning_artisan["headers"])
    assert res.json()["data"]["summary"]["availableBalance"] == 1800

    res = client.get(f"/api/artisan/orders/{order_id}", headers=earning_artisan["headers"])
    view = res.json()["data"]
    assert [i["name"] for i in view["items"]] == ["Silk Saree"]
    assert view["artisanTotal"] == 600
    assert "payoutClaimedBy" not in view


def test_payout_amount_is_exactly_the_request(client, earning_artisan):
    res = _request(client, earning_artisan, 500)
    assert res.status_code == 201
    first = res.json()["data"]
    assert first["amount"] == 500
    assert (first["processingFee"], first["gst"], first["netAmount"]) == (10.0, 1.8, 488.2)
    assert len(first["orders"]) == 1

    summary = client.get("/api/artisan/payouts", headers=earning_artisan["headers"]).json()["data"]["summary"]
    assert summary["availableBalance"] == 700

    second = _request(client, earning_artisan, 700).json()["data"]
    assert second["amount"] == 700
    assert len(second["orders"]) == 2
    assert all(len(o["payoutClaimedBy"]) == 1 for o in database.db["order"].find())

    client.put(f"/api/artisan/payouts/{first['id']}/cancel", headers=earning_artisan["headers"])
    summary = client.get("/api/artisan/payouts", headers=earning_artisan["headers"]).json()["data"]["summary"]
    assert summary["availableBalance"] == 500
    split = database.db["order"].find_one({"_id": database.parse_object_id(first["orders"][0])})
    assert split["payoutClaimedBy"] == []
    assert list(split["payoutClaimed"].values()) == [100]


def test_failed_payout_insert_leaves_no_claims(client, earning_artisan, monkeypatch):
    def broken_insert(*args, **kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr(payouts, "create_document", broken_insert)
    res = _request(client, earning_artisan, 600)
    assert res.status_code == 500
    assert database.db["payout"].count_documents({}) == 0
    assert all(not o.get("payoutClaims") for o in database.db["order"].find())
    assert payouts.available_balance(database.parse_object_id(earning_artisan["artisan_id"])) == 1200
