from conftest import PASSWORD, place_order

import database


def test_list_and_filter_users(client, admin, customer, other_customer):
    res = client.get("/api/users", headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["pagination"]["total"] == 3

    res = client.get("/api/users", params={"role": "admin"}, headers=admin["headers"])
    assert [u["username"] for u in res.json()["data"]["users"]] == ["admin"]

    res = client.get("/api/users", params={"search": "rav"}, headers=admin["headers"])
    assert [u["username"] for u in res.json()["data"]["users"]] == ["ravi"]


def test_users_routes_are_admin_only(client, customer):
    assert client.get("/api/users", headers=customer["headers"]).status_code == 403
    assert client.get("/api/users/stats").status_code == 401


def test_search_needs_two_characters(client, admin, customer):
    assert client.get("/api/users/search", params={"q": "a"}, headers=admin["headers"]).status_code == 400
    res = client.get("/api/users/search", params={"q": "as"}, headers=admin["headers"])
    assert [u["username"] for u in res.json()["data"]] == ["asha"]


def test_create_user(client, admin):
    res = client.post(
        "/api/users",
        json={"username": "nikhil", "email": "Nikhil@Example.com", "password": PASSWORD},
        headers=admin["headers"],
    )
    assert res.status_code == 201
    assert res.json()["data"]["email"] == "nikhil@example.com"
    assert client.post("/api/auth/login", json={"username": "nikhil", "password": PASSWORD}).status_code == 200

    res = client.post(
        "/api/users",
        json={"username": "nikhil", "email": "other@example.com", "password": PASSWORD},
        headers=admin["headers"],
    )
    assert res.status_code == 400
    assert res.json()["field"] == "username"


def test_create_user_refuses_artisan_role(client, admin):
    res = client.post(
        "/api/users",
        json={"username": "nikhil", "email": "n@example.com", "password": PASSWORD, "role": "artisan"},
        headers=admin["headers"],
    )
    assert res.status_code == 400


def test_get_user_includes_order_stats(client, admin, customer, product):
    place_order(client, product["id"], headers=customer["headers"])
    res = client.get(f"/api/users/{customer['id']}", headers=admin["headers"])
    stats = res.json()["data"]["orderStats"]
    assert stats == {"totalOrders": 1, "totalAmount": 708.0, "avgOrderValue": 708.0}


def test_update_user(client, admin, customer, other_customer):
    res = client.put(f"/api/users/{customer['id']}", json={"phone": "9111111111"}, headers=admin["headers"])
    assert res.json()["data"]["phone"] == "9111111111"
    res = client.put(f"/api/users/{customer['id']}", json={"email": "ravi@example.com"}, headers=admin["headers"])
    assert res.status_code == 400


def test_delete_rules(client, admin, customer, other_customer, product):
    assert client.delete(f"/api/users/{admin['id']}", headers=admin["headers"]).status_code == 400
    place_order(client, product["id"], headers=customer["headers"])
    res = client.delete(f"/api/users/{customer['id']}", headers=admin["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot delete user with existing orders. Deactivate instead."
    assert client.delete(f"/api/users/{other_customer['id']}", headers=admin["headers"]).status_code == 200
    assert client.get(f"/api/users/{other_customer['id']}", headers=admin["headers"]).status_code == 404


def test_cannot_delete_last_admin(client, admin, customer):
    client.patch(f"/api/users/{customer['id']}/role", json={"role": "admin"}, headers=admin["headers"])
    res = client.delete(f"/api/users/{admin['id']}", headers=customer["headers"])
    assert res.status_code == 200
    res = client.patch(f"/api/users/{customer['id']}/role", json={"role": "user"}, headers=customer["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot remove the last admin user"


def test_role_patch_leaves_artisans_alone(client, admin, pending_artisan):
    res = client.patch(f"/api/users/{pending_artisan['id']}/role", json={"role": "admin"}, headers=admin["headers"])
    assert res.status_code == 400
    res = client.patch(f"/api/users/{pending_artisan['id']}/role", json={"role": "artisan"}, headers=admin["headers"])
    assert res.status_code == 400


def test_status_patch(client, admin, customer):
    res = client.patch(
        f"/api/users/{customer['id']}/status", json={"isActive": False, "reason": "fraud"}, headers=admin["headers"]
    )
    assert res.status_code == 200
    assert res.json()["data"]["isActive"] is False
    assert client.get("/api/auth/me", headers=customer["headers"]).status_code == 401
    res = client.patch(f"/api/users/{admin['id']}/status", json={"isActive": False}, headers=admin["headers"])
    assert res.status_code == 400


def test_bulk_update(client, admin, customer, other_customer):
    res = client.patch(
        "/api/users/bulk/update",
        json={"userIds": [customer["id"], other_customer["id"]], "isActive": False},
        headers=admin["headers"],
    )
    assert res.status_code == 200
    assert res.json()["data"]["modified"] == 2
    assert database.db["user"].count_documents({"isActive": False}) == 2


def test_stats_segments_and_export(client, admin, customer, other_customer, product):
    place_order(client, product["id"], headers=customer["headers"])
    place_order(client, product["id"], headers=customer["headers"])

    stats = client.get("/api/users/stats", headers=admin["headers"]).json()["data"]
    assert stats["totalUsers"] == 4
    assert stats["adminUsers"] == 1
    assert stats["avgOrdersPerCustomer"] == 2

    data = client.get("/api/users/segments", headers=admin["headers"]).json()["data"]
    assert data["segments"]["repeat"] == 1
    assert data["topCustomers"][0]["user"]["username"] == "asha"
    assert data["topCustomers"][0]["totalOrders"] == 2

    res = client.get("/api/users/export", headers=admin["headers"])
    assert res.status_code == 200
    assert len(res.text.strip().splitlines()) == 5

    options = client.get("/api/users/filters/options", headers=admin["headers"]).json()["data"]
    assert options["roles"][0] == "all"
    assert "artisan" in options["roles"]
