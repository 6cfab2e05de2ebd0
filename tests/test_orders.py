"""Order status changes, cancellation, admin listings and abandoned checkout recovery."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

import app as storefront
from database import StoreError, get_order, get_order_for_user, get_product, utcnow
from orders import (
    cancel_order,
    get_abandoned_cart_stats,
    get_abandoned_checkouts,
    get_order_stats,
    get_orders,
    process_abandoned_carts,
    send_recovery_email,
    update_order_status,
)


class TestStatusChanges:
    def test_admin_moves_order_forward_with_event(self, make_user, order_for):
        order = order_for(make_user())
        updated = update_order_status(order["id"], "processing", "Packed at warehouse")
        assert updated["status"] == "PROCESSING"
        assert updated["events"][-1]["status"] == "PROCESSING"
        assert updated["events"][-1]["note"] == "Packed at warehouse"

    def test_invalid_status(self, make_user, order_for):
        order = order_for(make_user())
        with pytest.raises(StoreError, match="Invalid status"):
            update_order_status(order["id"], "LOST")

    def test_terminal_orders_are_frozen(self, make_user, order_for):
        order = order_for(make_user())
        update_order_status(order["id"], "DELIVERED")
        with pytest.raises(StoreError, match="cannot be changed"):
            update_order_status(order["id"], "PROCESSING")

    def test_cancelling_restocks(self, make_user, make_product, order_for):
        pid = make_product(stock=5)
        order = order_for(make_user(), product_id=pid, quantity=3)
        assert get_product(pid)["stock"] == 2

        cancelled = cancel_order(order["id"], "Changed my mind")
        assert cancelled["status"] == "CANCELLED"
        assert cancelled["cancel_reason"] == "Changed my mind"
        assert get_product(pid)["stock"] == 5

    def test_customer_cannot_cancel_shipped_order(self, make_user, order_for):
        user_id = make_user()
        order = order_for(user_id)
        update_order_status(order["id"], "SHIPPED")
        with pytest.raises(StoreError, match="Only pending or confirmed"):
            cancel_order(order["id"], customer_id=user_id)


class TestCustomerOrderRoutes:
    def test_list_and_detail(self, client, customer, order_for):
        order = order_for(customer["id"])
        assert [o["id"] for o in client.get("/orders").get_json()["orders"]] == [order["id"]]
        assert client.get(f"/orders/{order['id']}").get_json()["order"]["order_number"] == order["order_number"]

    def test_other_customers_order_is_forbidden(self, client, customer, make_user, order_for):
        stranger_order = order_for(make_user("stranger@example.com"))
        assert client.get(f"/orders/{stranger_order['id']}").status_code == 403
        assert client.post(f"/orders/{stranger_order['id']}/cancel").status_code == 403
        assert client.get("/orders/9999").status_code == 404

    def test_owner_scoped_lookup(self, make_user, order_for):
        owner = make_user()
        order = order_for(owner)
        assert get_order_for_user(owner, order["id"])["id"] == order["id"]
        assert get_order_for_user(make_user("stranger@example.com"), order["id"]) is None
        assert get_order_for_user(owner, 9999) is None

    def test_cancel_route(self, client, customer, order_for):
        order = order_for(customer["id"])
        response = client.post(f"/orders/{order['id']}/cancel", json={"reason": "Ordered twice"})
        assert response.status_code == 200
        assert get_order(order["id"])["status"] == "CANCELLED"


class TestAdminListings:
    def test_filters_and_search(self, make_user, order_for):
        first = order_for(make_user("first@example.com"))
        second = order_for(make_user("second@example.com"), payment_method="ONLINE")

        assert get_orders()["total"] == 2
        assert [o["id"] for o in get_orders(status="pending")["orders"]] == [second["id"]]
        assert [o["id"] for o in get_orders(search="first@")["orders"]] == [first["id"]]
        assert [o["id"] for o in get_orders(search=second["order_number"])["orders"]] == [second["id"]]

    def test_pagination(self, make_user, order_for):
        user_id = make_user()
        for _ in range(3):
            order_for(user_id)
        page = get_orders(page=2, limit=2)
        assert page["pages"] == 2
        assert page["current_page"] == 2
        assert len(page["orders"]) == 1

    def test_stats(self, make_user, make_product, order_for):
        user_id = make_user()
        order_for(user_id, product_id=make_product(price=500))
        pending = order_for(user_id, payment_method="ONLINE")
        cancel_order(pending["id"])

        stats = get_order_stats()
        assert stats["total"] == 2
        assert stats["confirmed"] == 1
        assert stats["cancelled"] == 1
        assert stats["revenue"] == 500


class TestAbandonedCheckouts:
    @pytest.fixture
    def stale_order(self, make_user, order_for, set_order_fields):
        order = order_for(make_user(), payment_method="ONLINE")
        set_order_fields(order["id"], created_at=utcnow() - timedelta(hours=3))
        return order

    def test_only_old_pending_orders_count(self, stale_order, make_user, order_for):
        order_for(make_user("fresh@example.com"), payment_method="ONLINE")
        abandoned = get_abandoned_checkouts()
        assert [o["id"] for o in abandoned] == [stale_order["id"]]
        assert abandoned[0]["minutes_abandoned"] >= 179

    def test_recovery_email_marks_order(self, stale_order):
        with patch("orders.Notifier.send_cart_recovery_email", return_value={"sent": True, "error": None}) as send:
            result = send_recovery_email(stale_order["id"])
        assert result["sent"] is True
        assert send.call_args.args[1].endswith(f"/cart/restore/{stale_order['id']}")
        assert get_order(stale_order["id"])["recovery_email_sent"] is True

    def test_failed_email_leaves_order_unmarked(self, stale_order):
        with patch("orders.Notifier.send_cart_recovery_email", return_value={"sent": False, "error": "SMTP down"}):
            assert send_recovery_email(stale_order["id"])["sent"] is False
        assert get_order(stale_order["id"])["recovery_email_sent"] is False

    def test_confirmed_orders_cannot_be_recovered(self, make_user, order_for):
        order = order_for(make_user())
        with pytest.raises(StoreError, match="Only pending orders"):
            send_recovery_email(order["id"])

    def test_batch_skips_already_contacted(self, stale_order, make_user, order_for, set_order_fields):
        contacted = order_for(make_user("again@example.com"), payment_method="ONLINE")
        set_order_fields(contacted["id"], created_at=utcnow() - timedelta(hours=5), recovery_email_sent=True)

        with patch("orders.Notifier.send_cart_recovery_email", return_value={"sent": True, "error": None}):
            result = process_abandoned_carts()
        assert result == {"processed": 1, "sent": 1, "failed": 0}

    def test_stats_recovery_rate(self, stale_order, make_user, order_for, set_order_fields):
        recovered = order_for(make_user("back@example.com"))
        set_order_fields(recovered["id"], recovery_email_sent=True)
        set_order_fields(stale_order["id"], recovery_email_sent=True)

        stats = get_abandoned_cart_stats()
        assert stats["emails_sent"] == 2
        assert stats["recovered"] == 1
        assert stats["recovery_rate"] == 50.0

    def test_cron_endpoint_requires_bearer_secret(self, client, stale_order, monkeypatch):
        monkeypatch.setattr(storefront, "CRON_SECRET", "nightly")
        assert client.post("/api/cron/abandoned-cart").status_code == 401
        with patch("orders.Notifier.send_cart_recovery_email", return_value={"sent": True, "error": None}):
            response = client.post("/api/cron/abandoned-cart", headers={"Authorization": "Bearer nightly"})
        assert response.status_code == 200
        assert response.get_json()["sent"] == 1

    def test_restore_link_refills_cart(self, client, make_product, make_address, make_user, login):
        from checkout import place_order
        from database import fetch_user_cart

        user_id = make_user()
        pid = make_product(stock=4)
        order = place_order(user_id, [{"product_id": pid, "quantity": 2}], make_address(user_id), "ONLINE")
        login(client)

        response = client.post(f"/cart/restore/{order['id']}")
        assert response.status_code == 200
        assert fetch_user_cart(user_id) == [{"product_id": pid, "variant_id": None, "quantity": 2}]
