"""Coupon administration and validation, automatic offers and the newsletter list."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest

from database import StoreError, utcnow
from marketing import (
    cart_offer_preview,
    create_coupon,
    create_offer,
    delete_coupon,
    fetch_coupons,
    fetch_offers,
    fetch_subscribers,
    get_coupon_stats,
    get_public_coupons,
    parse_datetime,
    subscribe,
    toggle_coupon,
    toggle_offer,
    toggle_subscriber,
    unsubscribe,
    update_coupon,
    update_offer,
    validate_coupon,
)

CART = [{"product_id": 1, "price": 1500.0, "quantity": 2, "category_id": 1}]


def _coupon(code: str = "WELCOME15", **fields) -> int:
    now = utcnow()
    data = {
        "code": code,
        "type": "PERCENTAGE",
        "value": 15,
        "valid_from": (now - timedelta(days=1)).isoformat(),
        "valid_until": (now + timedelta(days=7)).isoformat(),
    }
    data.update(fields)
    return create_coupon(data)


def test_parse_datetime_accepts_utc_suffix():
    assert parse_datetime("2024-10-19T10:30:00Z").hour == 10
    assert parse_datetime("") is None
    with pytest.raises(StoreError, match="Invalid date"):
        parse_datetime("next tuesday")


class TestCouponAdmin:
    def test_create_normalizes_code(self):
        _coupon(" welcome15 ")
        assert fetch_coupons()[0]["code"] == "WELCOME15"

    def test_duplicate_code(self):
        _coupon()
        with pytest.raises(StoreError, match="already exists"):
            _coupon("welcome15")

    @pytest.mark.parametrize(
        "fields,message",
        [
            ({"type": "CASHBACK"}, "Coupon type must be"),
            ({"value": 120}, "cannot exceed 100%"),
            ({"value": -5}, "zero or more"),
            ({"valid_until": None}, "Valid until is required"),
        ],
    )
    def test_rejects_bad_fields(self, fields, message):
        with pytest.raises(StoreError, match=message):
            _coupon(**fields)

    def test_window_must_be_ordered(self):
        now = utcnow()
        with pytest.raises(StoreError, match="must be after"):
            _coupon(valid_from=now.isoformat(), valid_until=(now - timedelta(days=1)).isoformat())

    def test_partial_update_keeps_rules(self):
        coupon_id = _coupon()
        update_coupon(coupon_id, {"value": 20, "description": "Festive special"})
        coupon = fetch_coupons()[0]
        assert coupon["value"] == 20
        assert coupon["description"] == "Festive special"
        with pytest.raises(StoreError, match="cannot exceed 100%"):
            update_coupon(coupon_id, {"value": 150})

    def test_toggle_and_delete(self):
        coupon_id = _coupon()
        assert toggle_coupon(coupon_id) is False
        assert toggle_coupon(coupon_id) is True
        delete_coupon(coupon_id)
        assert fetch_coupons() == []
        with pytest.raises(StoreError, match="Coupon not found"):
            delete_coupon(coupon_id)


class TestCouponValidation:
    def test_valid_coupon_prices_the_cart(self):
        _coupon()
        result = validate_coupon("welcome15", CART)
        assert result["valid"] is True
        assert result["discount_total"] == 450
        assert result["final_total"] == 2550

    def test_fixed_amount_coupon(self):
        _coupon("FLAT300", type="FIXED_AMOUNT", value=300)
        assert validate_coupon("FLAT300", CART)["discount_total"] == 300

    def test_free_shipping_coupon(self):
        _coupon("SHIPFREE", type="FREE_SHIPPING", value=0)
        result = validate_coupon("SHIPFREE", CART)
        assert result["free_shipping"] is True
        assert result["discount_total"] == 0

    @pytest.mark.parametrize(
        "code,error",
        [("", "No code provided"), ("GHOST", "Invalid coupon code")],
    )
    def test_missing_codes(self, code, error):
        assert validate_coupon(code, CART) == {"valid": False, "error": error}

    def test_inactive(self):
        toggle_coupon(_coupon())
        assert validate_coupon("WELCOME15", CART)["error"] == "Coupon is inactive"

    def test_not_yet_active_and_expired(self):
        _coupon()
        now = utcnow()
        assert validate_coupon("WELCOME15", CART, now - timedelta(days=3))["error"] == "Coupon not yet active"
        assert validate_coupon("WELCOME15", CART, now + timedelta(days=30))["error"] == "Coupon expired"

    def test_usage_limit(self):
        _coupon(usage_limit=0)
        assert validate_coupon("WELCOME15", CART)["error"] == "Coupon usage limit reached"

    def test_fractional_minimum_in_message(self):
        _coupon(min_order_value=3999.5)
        assert validate_coupon("WELCOME15", CART)["error"] == "Minimum order amount of ₹3999.5 not met"

    def test_public_list_hides_spent_and_inactive_coupons(self, client):
        _coupon("OPEN")
        toggle_coupon(_coupon("PAUSED"))
        _coupon("SPENT", usage_limit=0)
        coupons = client.get("/coupons").get_json()["coupons"]
        assert [c["code"] for c in coupons] == ["OPEN"]
        assert "usage_count" not in coupons[0]
        assert [c["code"] for c in get_public_coupons()] == ["OPEN"]


class TestCouponStats:
    def test_counts_only_paid_orders(self, make_user, make_address, make_product):
        from checkout import place_order

        user_id = make_user()
        address_id = make_address(user_id)
        _coupon("SAVE10", value=10)
        place_order(user_id, [{"product_id": make_product(price=1000), "quantity": 1}], address_id, coupon_code="SAVE10")
        place_order(user_id, [{"product_id": make_product(price=3000), "quantity": 1}], address_id, coupon_code="SAVE10")
        place_order(
            user_id, [{"product_id": make_product(price=500), "quantity": 1}], address_id, "ONLINE", coupon_code="SAVE10"
        )

        stats = get_coupon_stats("save10")
        assert stats == {
            "code": "SAVE10",
            "total_orders": 2,
            "total_revenue": 3600,
            "total_discount": 400,
            "average_order_value": 1800,
        }


class TestOffers:
    def test_create_and_update(self):
        offer_id = create_offer(
            {"code": "kurta3", "title": "Any 3 Kurtas", "type": "bundle", "bundle_quantity": 3, "bundle_price": 2999}
        )
        update_offer(offer_id, {"applicable_type": "category", "applicable_ids": [4, "5", "x"], "priority": 5})
        offer = fetch_offers()[0]
        assert offer["code"] == "KURTA3"
        assert offer["type"] == "BUNDLE"
        assert offer["applicable_type"] == "CATEGORY"
        assert offer["applicable_ids"] == "[4, 5]"

    def test_unknown_type_and_target(self):
        with pytest.raises(StoreError, match="Unknown offer type"):
            create_offer({"code": "X", "type": "LOTTERY"})
        with pytest.raises(StoreError, match="Unknown offer target"):
            create_offer({"code": "Y", "applicable_type": "BRAND"})

    def test_tiers_are_normalized(self):
        create_offer({"code": "TIER", "type": "TIERED", "tiers": '[{"quantity": "2", "discount": "5"}]'})
        assert fetch_offers()[0]["tiers"] == '[{"quantity": 2, "discount": 5.0}]'

    def test_preview_picks_biggest_saving(self):
        create_offer({"code": "TENOFF", "title": "10% off", "type": "PERCENTAGE", "value": 10})
        create_offer({"code": "FLAT500", "title": "₹500 off", "type": "FIXED", "value": 500, "badge_text": "Flat 500"})
        preview = cart_offer_preview(CART)
        assert preview["best_offer"]["code"] == "FLAT500"
        assert preview["best_offer"]["discount"] == 500
        assert [o["code"] for o in preview["applicable_offers"]] == ["FLAT500", "TENOFF"]

    def test_paused_and_spent_offers_are_ignored(self):
        toggle_offer(create_offer({"code": "PAUSED", "type": "FIXED", "value": 100}))
        create_offer({"code": "SPENT", "type": "FIXED", "value": 100, "usage_limit": 0})
        assert cart_offer_preview(CART) == {"best_offer": None, "applicable_offers": []}

    def test_empty_cart(self):
        assert cart_offer_preview([]) == {"best_offer": None, "applicable_offers": []}

    def test_cart_route_previews_session_cart(self, client, make_product):
        create_offer({"code": "TENOFF", "type": "PERCENTAGE", "value": 10})
        client.post("/cart/add", json={"product_id": make_product(price=1200)})
        assert client.get("/offers/cart").get_json()["best_offer"]["discount"] == 120


class TestNewsletter:
    def test_subscribe_sends_welcome(self):
        with patch("marketing.Notifier.send_newsletter_welcome", return_value={"sent": True, "error": None}) as welcome:
            assert subscribe(" Asha@Example.com ") == {"created": True, "message": "Thank you for subscribing!"}
        welcome.assert_called_once_with("asha@example.com")

    def test_resubscribe_flows(self):
        subscribe("asha@example.com")
        assert subscribe("asha@example.com")["message"] == "You are already subscribed!"
        assert unsubscribe("ASHA@example.com") is True
        assert unsubscribe("asha@example.com") is False
        assert subscribe("asha@example.com")["message"].startswith("Welcome back")

    def test_invalid_email(self):
        with pytest.raises(StoreError, match="Invalid email address"):
            subscribe("not-an-email")

    def test_admin_listing(self):
        for name in ("asha", "ravi", "meera"):
            subscribe(f"{name}@example.com")
        subscriber_id = fetch_subscribers(search="ravi")["subscribers"][0]["id"]
        toggle_subscriber(subscriber_id)

        assert fetch_subscribers(status="active")["total"] == 2
        assert [s["email"] for s in fetch_subscribers(status="inactive")["subscribers"]] == ["ravi@example.com"]
        page = fetch_subscribers(page=2, limit=2)
        assert page["pages"] == 2
        assert len(page["subscribers"]) == 1

    def test_routes(self, client):
        assert client.post("/newsletter/subscribe", json={"email": "asha@example.com"}).status_code == 201
        assert client.post("/newsletter/subscribe", json={"email": "asha@example.com"}).status_code == 200
        assert client.get("/newsletter/unsubscribe?email=asha@example.com").status_code == 200
        assert client.get("/newsletter/unsubscribe?email=asha@example.com").status_code == 404
