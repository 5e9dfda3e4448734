"""End-to-end checks of the HTTP surface: auth gates, inventory and order flows."""
from datetime import timedelta

import jwt
from bson import ObjectId
from pymongo.errors import PyMongoError

import auth
import inventory
from database import now_utc
from helpers import headers, inventory_qty, product_stock
from schemas import RoleName


def admin_token(client):
    resp = client.post("/api/auth/login", json={"username": "admin", "password": "admin"})
    assert resp.status_code == 200
    return resp.json()["token"]


def create_product(client, token, stock, price=10.0, name="P"):
    resp = client.post("/api/products", json={"name": name, "price": price, "stock": stock},
                       headers=headers(token))
    assert resp.status_code == 201
    return resp.json()["id"]


def place_order(client, token, product_id, quantity, total=40.0):
    return client.post("/api/orders", json={"items": [{"product_id": product_id, "quantity": quantity}],
                                            "total_amount": total}, headers=headers(token))


def test_health(client):
    assert client.get("/").json() == {"message": "Shop API running"}


class TestAuth:
    def test_register_then_login(self, client):
        resp = client.post("/api/auth/register",
                           json={"username": "carol", "email": "carol@example.com", "password": "pw"})
        assert resp.status_code == 201
        assert resp.json()["role"] == "user"

        resp = client.post("/api/auth/login", json={"username": "carol", "password": "pw"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "user"

    def test_duplicate_registration(self, client):
        body = {"username": "dave", "email": "dave@example.com", "password": "pw"}
        assert client.post("/api/auth/register", json=body).status_code == 201
        resp = client.post("/api/auth/register", json=body)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "User exists"

    def test_bad_password(self, client):
        resp = client.post("/api/auth/login", json={"username": "admin", "password": "nope"})
        assert resp.status_code == 401

    def test_missing_token(self, client):
        resp = client.get("/api/orders")
        assert resp.status_code == 401
        assert resp.json()["code"] == "unauthorized"

    def test_garbage_token(self, client):
        assert client.get("/api/orders", headers=headers("garbage")).status_code == 401

    def test_expired_token(self, client, make_user):
        user, _ = make_user()
        token = jwt.encode({"id": user.user_id, "role": "user", "exp": now_utc() - timedelta(minutes=1)},
                           auth.SECRET_KEY, algorithm=auth.TOKEN_ALGORITHM)
        resp = client.get("/api/orders", headers=headers(token))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Token expired"

    def test_token_for_deleted_user(self, client, db, make_user):
        user, token = make_user()
        db["user"].delete_one({"_id": ObjectId(user.user_id)})
        assert client.get("/api/orders", headers=headers(token)).status_code == 401

    def test_role_gate(self, client, make_user):
        _, token = make_user(RoleName.USER)
        resp = client.get("/api/inventory", headers=headers(token))
        assert resp.status_code == 403
        assert resp.json()["code"] == "access_denied"


class TestUsers:
    def test_admin_lists_users_without_hashes(self, client):
        resp = client.get("/api/users", headers=headers(admin_token(client)))
        assert resp.status_code == 200
        assert resp.json()[0]["username"] == "admin"
        assert "password_hash" not in resp.json()[0]

    def test_self_access_only(self, client, make_user):
        alice, alice_token = make_user()
        bob, _ = make_user()
        assert client.get(f"/api/users/{alice.user_id}", headers=headers(alice_token)).status_code == 200
        assert client.get(f"/api/users/{bob.user_id}", headers=headers(alice_token)).status_code == 403

    def test_update_password(self, client, make_user):
        alice, token = make_user(username="alice")
        resp = client.put(f"/api/users/{alice.user_id}", json={"password": "new"}, headers=headers(token))
        assert resp.status_code == 200
        assert client.post("/api/auth/login", json={"username": "alice", "password": "new"}).status_code == 200

    def test_change_role(self, client, make_user):
        user, token = make_user()
        admin = headers(admin_token(client))
        resp = client.put(f"/api/users/{user.user_id}/role", json={"role": "warehouse_manager"}, headers=admin)
        assert resp.json()["role"] == "warehouse_manager"
        assert client.get("/api/inventory", headers=headers(token)).status_code == 200

        resp = client.put(f"/api/users/{user.user_id}/role", json={"role": "overlord"}, headers=admin)
        assert resp.status_code == 400

    def test_lookup_by_username_and_delete(self, client, make_user):
        user, token = make_user(username="erin")
        resp = client.get("/api/users/username/erin", headers=headers(token))
        assert resp.json()["id"] == user.user_id
        admin = headers(admin_token(client))
        assert client.delete(f"/api/users/{user.user_id}", headers=admin).status_code == 200
        assert client.get(f"/api/users/{user.user_id}", headers=admin).status_code == 404


class TestInventory:
    def test_product_creation_seeds_inventory(self, client, db):
        token = admin_token(client)
        pid = create_product(client, token, stock=10)

        resp = client.get(f"/api/inventory/{pid}", headers=headers(token))
        assert resp.status_code == 200
        assert resp.json()["quantity"] == 10
        assert resp.json()["product"]["id"] == pid

    def test_absolute_set(self, client, db):
        token = admin_token(client)
        pid = create_product(client, token, stock=10)

        resp = client.put("/api/inventory", json={"product_id": pid, "quantity": 3}, headers=headers(token))
        assert resp.status_code == 200
        assert inventory_qty(db, pid) == 3
        assert product_stock(db, pid) == 3

    def test_negative_set_is_rejected(self, client, db):
        token = admin_token(client)
        pid = create_product(client, token, stock=10)
        resp = client.put("/api/inventory", json={"product_id": pid, "quantity": -1}, headers=headers(token))
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_quantity"

    def test_missing_record(self, client):
        resp = client.get(f"/api/inventory/{ObjectId()}", headers=headers(admin_token(client)))
        assert resp.status_code == 404

    def test_listing(self, client):
        token = admin_token(client)
        create_product(client, token, stock=1, name="A")
        create_product(client, token, stock=2, name="B")
        resp = client.get("/api/inventory", headers=headers(token))
        assert sorted(r["quantity"] for r in resp.json()) == [1, 2]


class TestOrderFlow:
    def test_order_process_and_cancel_gate(self, client, db, make_user):
        admin = admin_token(client)
        pid = create_product(client, admin, stock=10)
        assert inventory_qty(db, pid) == 10

        _, user_token = make_user(RoleName.USER)
        resp = place_order(client, user_token, pid, 4)
        assert resp.status_code == 201
        order = resp.json()
        assert order["status"] == "pending"
        assert product_stock(db, pid) == 6
        assert inventory_qty(db, pid) == 6

        _, manager_token = make_user(RoleName.WAREHOUSE_MANAGER)
        resp = client.put(f"/api/orders/{order['id']}/status", json={"status": "processed"},
                          headers=headers(manager_token))
        assert resp.status_code == 200
        assert resp.json()["status"] == "processed"

        _, agent_token = make_user(RoleName.DELIVERY_AGENT)
        resp = client.put(f"/api/orders/{order['id']}/cancel", headers=headers(agent_token))
        assert resp.status_code == 403
        assert inventory_qty(db, pid) == 6

    def test_insufficient_stock(self, client, db, make_user):
        pid = create_product(client, admin_token(client), stock=3)
        _, token = make_user()

        resp = place_order(client, token, pid, 5)

        assert resp.status_code == 400
        assert resp.json()["code"] == "insufficient_stock"
        assert db["order"].count_documents({}) == 0
        assert inventory_qty(db, pid) == 3

    def test_return_flow_restocks(self, client, db, make_user):
        admin = admin_token(client)
        pid = create_product(client, admin, stock=10)
        _, user_token = make_user()
        order_id = place_order(client, user_token, pid, 4).json()["id"]
        _, agent_token = make_user(RoleName.DELIVERY_AGENT)

        for status in ("processed", "shipped"):
            client.put(f"/api/orders/{order_id}/status", json={"status": status}, headers=headers(admin))
        resp = client.put(f"/api/orders/{order_id}/status", json={"status": "delivered"},
                          headers=headers(agent_token))
        assert resp.json()["status"] == "delivered"

        resp = client.put(f"/api/orders/{order_id}/return", headers=headers(user_token))
        assert resp.json()["return_request"] is True

        client.put(f"/api/orders/{order_id}/status", json={"status": "shipped"}, headers=headers(admin))
        resp = client.put(f"/api/orders/{order_id}/status", json={"status": "returned"},
                          headers=headers(agent_token))
        assert resp.status_code == 200
        assert inventory_qty(db, pid) == 10
        assert product_stock(db, pid) == 10

    def test_return_without_request(self, client, db, make_user):
        admin = admin_token(client)
        pid = create_product(client, admin, stock=10)
        _, user_token = make_user()
        order_id = place_order(client, user_token, pid, 1).json()["id"]
        client.put(f"/api/orders/{order_id}/status", json={"status": "shipped"}, headers=headers(admin))

        resp = client.put(f"/api/orders/{order_id}/status", json={"status": "returned"}, headers=headers(admin))

        assert resp.status_code == 403
        assert resp.json()["code"] == "return_not_requested"

    def test_user_cancels_own_order(self, client, db, make_user):
        pid = create_product(client, admin_token(client), stock=10)
        _, token = make_user()
        order_id = place_order(client, token, pid, 4).json()["id"]

        resp = client.put(f"/api/orders/{order_id}/cancel", headers=headers(token))

        assert resp.json()["status"] == "cancelled"
        assert inventory_qty(db, pid) == 10

    def test_only_users_place_orders(self, client):
        pid = create_product(client, admin_token(client), stock=10)
        assert place_order(client, admin_token(client), pid, 1).status_code == 403

    def test_malformed_order_body(self, client, make_user):
        _, token = make_user()
        resp = client.post("/api/orders", json={"items": [], "total_amount": 1}, headers=headers(token))
        assert resp.status_code == 400
        resp = client.post("/api/orders", json={"items": [{"product_id": "x", "quantity": 0}],
                                                "total_amount": 1}, headers=headers(token))
        assert resp.status_code == 400

    def test_order_visibility(self, client, make_user):
        pid = create_product(client, admin_token(client), stock=10)
        _, owner = make_user()
        _, other = make_user()
        order_id = place_order(client, owner, pid, 1).json()["id"]

        assert client.get(f"/api/orders/{order_id}", headers=headers(owner)).status_code == 200
        assert client.get(f"/api/orders/{order_id}", headers=headers(other)).status_code == 403
        assert client.get(f"/api/orders/{ObjectId()}", headers=headers(owner)).status_code == 404
        assert len(client.get("/api/orders", headers=headers(other)).json()) == 0

    def test_storage_failure_is_a_server_error(self, client, make_user, monkeypatch):
        pid = create_product(client, admin_token(client), stock=10)
        _, token = make_user()

        def broken(*args, **kwargs):
            raise PyMongoError("connection lost")

        monkeypatch.setattr(inventory, "adjust_stock", broken)
        resp = place_order(client, token, pid, 1)

        assert resp.status_code == 500
        assert resp.json()["code"] == "server_error"
