"""Shared fixtures: an isolated SQLite database, Flask test clients and seed helpers."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from cryptography.fernet import Fernet

# Settings are read at import time, so the environment is fixed before any store module loads.
_TEST_DIR = Path(tempfile.mkdtemp(prefix="vastra-tests-"))
os.environ["STORE_DATABASE_URL"] = f"sqlite:///{_TEST_DIR / 'store.db'}"
os.environ["SENSITIVE_DATA_KEY"] = Fernet.generate_key().decode()
for _name in (
    "ADMIN_EMAIL",
    "ADMIN_PASSWORD",
    "SMTP_USER",
    "SMTP_PASS",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
    "TWILIO_WHATSAPP_NUMBER",
    "RAZORPAY_KEY_ID",
    "RAZORPAY_KEY_SECRET",
    "RAZORPAY_WEBHOOK_SECRET",
    "SHIPROCKET_EMAIL",
    "SHIPROCKET_PASSWORD",
    "SHIPROCKET_WEBHOOK_TOKEN",
    "CRON_SECRET",
):
    os.environ[_name] = ""
os.environ["STANDARD_SHIPPING_FEE"] = "0"
os.environ["TAX_RATE"] = "0"

import pytest  # noqa: E402

from database import (  # noqa: E402
    Base,
    create_address,
    create_category,
    create_product,
    create_user,
    engine,
)
from security import hash_password  # noqa: E402

# Both apps run init_db() on import; load them once here so no test reseeds mid-run.
from admin_app import admin_app  # noqa: E402
from app import app  # noqa: E402

PASSWORD = "Kurta#2024"

ADDRESS = {
    "name": "Asha Verma",
    "phone": "9876543210",
    "house_no": "12B",
    "street": "MG Road",
    "landmark": "Near City Mall",
    "city": "Jaipur",
    "state": "Rajasthan",
    "postal_code": "302001",
}


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from empty tables."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def store_app():
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(store_app):
    return store_app.test_client()


@pytest.fixture
def admin_client():
    admin_app.config["TESTING"] = True
    return admin_app.test_client()


@pytest.fixture
def make_user():
    def _make(email: str = "asha@example.com", *, is_admin: bool = False, name: str = "Asha Verma") -> int:
        return create_user(email, hash_password(PASSWORD), name=name, phone="9876543210", is_admin=is_admin)

    return _make


@pytest.fixture
def category():
    return create_category("Sarees")


@pytest.fixture
def make_product(category):
    counter = {"n": 0}

    def _make(name: str | None = None, price: float = 1000.0, stock: int = 10, **fields) -> int:
        counter["n"] += 1
        fields.setdefault("category_id", category)
        fields.setdefault("status", "ACTIVE")
        return create_product(name or f"Handloom Saree {counter['n']}", price, stock=stock, **fields)

    return _make


@pytest.fixture
def make_address():
    def _make(user_id: int, **overrides) -> int:
        return create_address(user_id, {**ADDRESS, **overrides})

    return _make


@pytest.fixture
def login():
    def _login(test_client, email: str = "asha@example.com", password: str = PASSWORD):
        response = test_client.post("/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.get_json()
        return response.get_json()

    return _login


@pytest.fixture
def customer(client, make_user, make_address, login):
    """A signed-in customer with a saved address."""
    user_id = make_user()
    address_id = make_address(user_id)
    login(client)
    return {"id": user_id, "address_id": address_id}


@pytest.fixture
def order_for(make_address, make_product):
    """Place an order for a user straight through checkout."""
    from checkout import place_order

    def _order(user_id: int, *, product_id: int | None = None, quantity: int = 1, payment_method: str = "COD", **kw):
        address_id = make_address(user_id)
        pid = product_id or make_product()
        return place_order(user_id, [{"product_id": pid, "quantity": quantity}], address_id, payment_method, **kw)

    return _order


@pytest.fixture
def set_order_fields():
    """Write columns on an order row directly, for states checkout cannot reach on its own."""
    from database import Order, session_scope

    def _set(order_id: int, **fields) -> None:
        with session_scope() as session:
            order = session.get(Order, order_id)
            for key, value in fields.items():
                setattr(order, key, value)

    return _set
