"""
Pytest fixtures for the shop backend test suite.

Every test gets a fresh in-memory MongoDB (mongomock) seeded with roles and
the default admin, and a TestClient whose `get_db` dependency points at it.
"""
import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
from auth import Identity, generate_token, hash_password
from catalog import create_product
from database import create_document, get_db
from inventory import InventoryLedger
from main import app
from orders import OrderService
from schemas import Product, RoleName, User
from seed import seed_all


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(auth, "PBKDF2_ITERATIONS", 1)


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    seed_all(database)
    return database


@pytest.fixture
def ledger(db):
    return InventoryLedger(db)


@pytest.fixture
def service(db, ledger):
    return OrderService(db, ledger)


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Create a user with the given role; returns (identity, bearer token)."""
    counter = {"n": 0}

    def _make(role: RoleName = RoleName.USER, username: str = None):
        counter["n"] += 1
        username = username or f"{role.value}{counter['n']}"
        role_doc = db["role"].find_one({"name": role.value})
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash=hash_password("secret"),
            role_id=str(role_doc["_id"]),
        )
        user_id = create_document(db, "user", user)
        identity = Identity(user_id=user_id, username=username, role=role)
        return identity, generate_token({"_id": user_id}, role)

    return _make


@pytest.fixture
def make_product(db, ledger):
    def _make(stock: int = 10, price: float = 5.0, name: str = "Widget"):
        product = create_product(db, ledger, Product(name=name, price=price, stock=stock))
        return str(product["_id"])

    return _make

