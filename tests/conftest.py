import os
from types import SimpleNamespace

import pytest

# Must be set before config is imported
os.environ.setdefault("JWT_SECRET", "test-secret")

from fastapi.testclient import TestClient

from fakes import (
    MemoryCartStore,
    MemoryOrderStore,
    MemoryProductStore,
    MemoryUserStore,
    RecordingMailer,
    StubDatabase,
)


@pytest.fixture
def stores():
    return SimpleNamespace(
        users=MemoryUserStore(),
        carts=MemoryCartStore(),
        orders=MemoryOrderStore(),
        products=MemoryProductStore(),
    )


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def client(stores, mailer, tmp_path, monkeypatch):
    import config
    from checkout import UserLocks
    from main import app
    from mailer import get_mailer
    from stores import get_cart_store, get_order_store, get_product_store, get_user_store

    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path / "uploads"))
    app.dependency_overrides[get_user_store] = lambda: stores.users
    app.dependency_overrides[get_cart_store] = lambda: stores.carts
    app.dependency_overrides[get_order_store] = lambda: stores.orders
    app.dependency_overrides[get_product_store] = lambda: stores.products
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.state.checkout_locks = UserLocks()
    monkeypatch.setattr(app.state, "database", StubDatabase())

    # https so the Secure auth cookie is sent back
    with TestClient(app, base_url="https://testserver") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(stores):
    from auth import hash_password

    def _make(email="shopper@example.com", password="password123", is_admin=False, user_id=None):
        user = {
            "user_id": user_id or f"user-{len(stores.users.users) + 1}",
            "email": email,
            "password": hash_password(password),
            "profile_picture": "/default-avatar.png",
            "is_verified": True,
            "is_admin": is_admin,
            "verification_token": None,
            "reset_password_token": None,
            "reset_password_expires": None,
        }
        stores.users.users[user["user_id"]] = user
        return user

    return _make


@pytest.fixture
def login(client):
    def _login(email="shopper@example.com", password="password123"):
        res = client.post("/api/login", json={"email": email, "password": password})
        assert res.status_code == 200, res.text
        return {"Authorization": f"Bearer {res.json()['access_token']}"}

    return _login
