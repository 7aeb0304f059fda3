import copy
import os
from contextlib import contextmanager

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_NAME", "tantika_test")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import mongomock
import pymongo

pymongo.MongoClient = mongomock.MongoClient

import pytest
from fastapi.testclient import TestClient

import admin_artisans
import auth
import database
import orders
import payouts
from main import app

PASSWORD = "password123"
DESCRIPTION = "Hand woven Banarasi silk sarees made on traditional pit looms in Varanasi."


@contextmanager
def fake_transaction():
    """Stand-in for a MongoDB transaction: restore every collection on error."""
    snapshot = {
        name: copy.deepcopy(list(database.db[name].find()))
        for name in database.db.list_collection_names()
    }
    try:
        yield None
    except BaseException:
        for name in database.db.list_collection_names():
            database.db[name].delete_many({})
        for name, docs in snapshot.items():
            if docs:
                database.db[name].insert_many(docs)
        raise


@pytest.fixture(autouse=True)
def clean_db(monkeypatch):
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    for module in (database, auth, admin_artisans, payouts, orders):
        monkeypatch.setattr(module, "transaction", fake_transaction)
    yield


@pytest.fixture
def client():
    return TestClient(app, raise_server_exceptions=False)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def register_user(client, username, email=None, password=PASSWORD):
    res = client.post(
        "/api/auth/register",
        json={"username": username, "email": email or f"{username}@example.com", "password": password},
    )
    assert res.status_code == 201, res.text
    client.cookies.clear()
    body = res.json()
    return {"id": body["user"]["id"], "headers": bearer(body["token"]), "user": body["user"]}


def artisan_application(**overrides):
    data = {
        "businessName": "Varanasi Weaves",
        "fullName": "Meera Devi",
        "phone": "9876543210",
        "address": {"street": "12 Ghat Road", "city": "Varanasi", "state": "UP", "postalCode": "221001"},
        "idProof": {"type": "aadhaar", "number": "1234-5678-9012"},
        "specialization": ["Sarees"],
        "yearsOfExperience": 12,
        "description": DESCRIPTION,
    }
    data.update(overrides)
    return data


def register_artisan(client, username, **overrides):
    res = client.post(
        "/api/auth/register/artisan",
        json={
            "username": username,
            "email": f"{username}@example.com",
            "password": PASSWORD,
            "artisan": artisan_application(**overrides),
        },
    )
    assert res.status_code == 201, res.text
    client.cookies.clear()
    body = res.json()
    return {
        "id": body["user"]["id"],
        "artisan_id": body["user"]["artisanId"],
        "headers": bearer(body["token"]),
        "user": body["user"],
    }


@pytest.fixture
def admin(client):
    account = register_user(client, "admin")
    database.db["user"].update_one(
        {"_id": database.parse_object_id(account["id"])}, {"$set": {"role": "admin"}}
    )
    return account


@pytest.fixture
def customer(client):
    return register_user(client, "asha")


@pytest.fixture
def other_customer(client):
    return register_user(client, "ravi")


@pytest.fixture
def pending_artisan(client):
    return register_artisan(client, "meera")


@pytest.fixture
def artisan(client, admin, pending_artisan):
    res = client.put(
        f"/api/admin/artisans/{pending_artisan['artisan_id']}/approve", headers=admin["headers"]
    )
    assert res.status_code == 200, res.text
    return pending_artisan


def create_product(client, admin, artisan, price=600, stock=10, **overrides):
    payload = {
        "name": "Silk Saree",
        "description": "Red Banarasi silk",
        "price": price,
        "category": "Sarees",
        "stock": stock,
        "artisanId": artisan["artisan_id"],
    }
    payload.update(overrides)
    res = client.post("/api/products", json=payload, headers=admin["headers"])
    assert res.status_code == 201, res.text
    return res.json()["data"]


@pytest.fixture
def product(client, admin, artisan):
    return create_product(client, admin, artisan)


def customer_details(**overrides):
    data = {
        "name": "Asha Rao",
        "email": "asha@example.com",
        "phone": "9000000001",
        "street": "4 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "postalCode": "560001",
    }
    data.update(overrides)
    return data


def place_order(client, product_id, quantity=1, headers=None):
    res = client.post(
        "/api/orders",
        json={"customerDetails": customer_details(), "items": [{"productId": product_id, "quantity": quantity}]},
        headers=headers or {},
    )
    assert res.status_code == 201, res.text
    return res.json()["data"]


def deliver_and_pay(client, admin, order_id):
    res = client.put(f"/api/orders/{order_id}/status", json={"status": "delivered"}, headers=admin["headers"])
    assert res.status_code == 200, res.text
    res = client.put(f"/api/orders/{order_id}/payment", json={"status": "paid"}, headers=admin["headers"])
    assert res.status_code == 200, res.text


def verified_bank(client, admin, artisan):
    res = client.put(
        "/api/artisan/bank-details",
        json={
            "accountName": "Meera Devi",
            "accountNumber": "123456789012",
            "bankName": "State Bank of India",
            "ifscCode": "sbin0001234",
        },
        headers=artisan["headers"],
    )
    assert res.status_code == 200, res.text
    res = client.put(f"/api/admin/artisans/{artisan['artisan_id']}/verify-bank", headers=admin["headers"])
    assert res.status_code == 200, res.text
