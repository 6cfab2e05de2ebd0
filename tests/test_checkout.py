"""Placing orders, coupon redemption and marketing attribution."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from checkout import attribution_from_request, parse_attribution, place_order, source_from_referrer
from database import StoreError, add_variant, fetch_user_cart, get_product, utcnow
from marketing import create_coupon, fetch_coupons


def _coupon(code: str = "FESTIVE10", **fields) -> int:
    now = utcnow()
    data = {
        "code": code,
        "type": "PERCENTAGE",
        "value": 10,
        "valid_from": (now - timedelta(days=1)).isoformat(),
        "valid_until": (now + timedelta(days=30)).isoformat(),
    }
    data.update(fields)
    return create_coupon(data)


class TestAttribution:
    @pytest.mark.parametrize(
        "referrer,expected",
        [
            (None, {"source": "DIRECT", "medium": "none"}),
            ("https://l.instagram.com/", {"source": "instagram", "medium": "social"}),
            ("https://www.google.co.in/search?q=saree", {"source": "google", "medium": "organic"}),
            ("https://www.bing.com/", {"source": "bing", "medium": "organic"}),
            ("https://blog.example.org/post", {"source": "blog.example.org", "medium": "referral"}),
        ],
    )
    def test_referrer_classification(self, referrer, expected):
        assert source_from_referrer(referrer) == expected

    def test_lookalike_hosts_are_not_social(self):
        assert source_from_referrer("https://notfacebook.com.evil.io/")["medium"] == "referral"

    def test_utm_tags_win_over_referrer(self):
        result = attribution_from_request(
            {"utm_source": "newsletter", "utm_medium": "email", "utm_campaign": "diwali"},
            "https://facebook.com/",
        )
        assert result["source"] == "newsletter"
        assert result["medium"] == "email"
        assert result["campaign"] == "diwali"
        assert result["utm_campaign"] == "diwali"

    def test_parse_rejects_garbage(self):
        assert parse_attribution(None) == {}
        assert parse_attribution("{not json") == {}
        assert parse_attribution('["list"]') == {}
        assert parse_attribution(json.dumps({"source": "x", "evil": "y"})) == {"source": "x"}


class TestPlaceOrder:
    def test_cash_on_delivery_confirms_and_reserves_stock(self, make_user, make_address, make_product):
        user_id = make_user()
        pid = make_product(price=1500, stock=5)
        order = place_order(user_id, [{"product_id": pid, "quantity": 2}], make_address(user_id), "COD")

        assert order["status"] == "CONFIRMED"
        assert order["order_number"].startswith("ORD-")
        assert order["total"] == 3000
        assert order["items"][0]["quantity"] == 2
        assert order["shipping_address"]["city"] == "Jaipur"
        assert order["contact_email"] == "asha@example.com"
        assert [event["status"] for event in order["events"]] == ["CONFIRMED"]
        assert get_product(pid)["stock"] == 3

    def test_online_order_waits_for_payment(self, make_user, make_address, make_product):
        user_id = make_user()
        order = place_order(user_id, [{"product_id": make_product(), "quantity": 1}], make_address(user_id), "ONLINE")
        assert order["status"] == "PENDING"

    def test_insufficient_stock_rolls_back(self, make_user, make_address, make_product):
        user_id = make_user()
        pid = make_product(name="Rare Patola", stock=1)
        with pytest.raises(StoreError, match="Insufficient stock for Rare Patola"):
            place_order(user_id, [{"product_id": pid, "quantity": 2}], make_address(user_id))
        assert get_product(pid)["stock"] == 1

    def test_variant_stock_is_decremented(self, make_user, make_address, make_product):
        user_id = make_user()
        pid = make_product(stock=0, sku="VS-KUR-9")
        small = add_variant(pid, "S", stock=2, sku_suffix="S")
        add_variant(pid, "M", stock=5, sku_suffix="M")

        order = place_order(user_id, [{"product_id": pid, "variant_id": small, "quantity": 2}], make_address(user_id))

        assert order["items"][0]["variant_name"] == "S"
        assert order["items"][0]["product_sku"] == "VS-KUR-9-S"
        product = get_product(pid)
        assert product["stock"] == 5
        assert {v["name"]: v["stock"] for v in product["variants"]} == {"S": 0, "M": 5}

    def test_sized_product_without_size(self, make_user, make_address, make_product):
        user_id = make_user()
        pid = make_product(name="Block Print Kurta", stock=0)
        add_variant(pid, "M", stock=3)
        with pytest.raises(StoreError, match="Choose a size for Block Print Kurta"):
            place_order(user_id, [{"product_id": pid, "quantity": 1}], make_address(user_id))

    def test_inactive_product(self, make_user, make_address, make_product):
        user_id = make_user()
        pid = make_product(name="Old Stock", status="ARCHIVED")
        with pytest.raises(StoreError, match="Old Stock is no longer available"):
            place_order(user_id, [{"product_id": pid, "quantity": 1}], make_address(user_id))

    def test_someone_elses_address(self, make_user, make_address, make_product):
        owner = make_user("owner@example.com")
        other = make_user("other@example.com")
        with pytest.raises(StoreError, match="Address not found"):
            place_order(other, [{"product_id": make_product(), "quantity": 1}], make_address(owner))

    def test_coupon_discount_and_usage(self, make_user, make_address, make_product):
        user_id = make_user()
        coupon_id = _coupon()
        order = place_order(
            user_id, [{"product_id": make_product(price=2000), "quantity": 1}], make_address(user_id), coupon_code="festive10"
        )
        assert order["coupon_code"] == "FESTIVE10"
        assert order["coupon_id"] == coupon_id
        assert order["discount_total"] == 200
        assert order["total"] == 1800
        assert order["items"][0]["discount"] == 200
        assert fetch_coupons()[0]["usage_count"] == 1

    def test_exhausted_coupon_blocks_the_order(self, make_user, make_address, make_product):
        user_id = make_user()
        _coupon("ONCE", usage_limit=1)
        address_id = make_address(user_id)
        pid = make_product(stock=5)
        place_order(user_id, [{"product_id": pid, "quantity": 1}], address_id, coupon_code="ONCE")

        with pytest.raises(StoreError, match="Coupon usage limit reached"):
            place_order(user_id, [{"product_id": pid, "quantity": 1}], address_id, coupon_code="ONCE")
        assert get_product(pid)["stock"] == 4

    def test_minimum_order_message(self, make_user, make_address, make_product):
        user_id = make_user()
        _coupon("BIGSPEND", min_order_value=5000)
        with pytest.raises(StoreError, match="Minimum order amount of ₹5000 not met"):
            place_order(
                user_id, [{"product_id": make_product(price=999), "quantity": 1}], make_address(user_id), coupon_code="BIGSPEND"
            )

    def test_bad_payment_method(self, make_user, make_address, make_product):
        user_id = make_user()
        with pytest.raises(StoreError, match="COD or ONLINE"):
            place_order(user_id, [{"product_id": make_product(), "quantity": 1}], make_address(user_id), "CHEQUE")


class TestCheckoutRoute:
    def test_requires_sign_in(self, client):
        assert client.post("/checkout", json={"address_id": 1}).status_code == 401

    def test_empty_cart(self, client, customer):
        response = client.post("/checkout", json={"address_id": customer["address_id"]})
        assert response.status_code == 400
        assert response.get_json()["error"] == "Your cart is empty."

    def test_checkout_clears_cart_and_records_attribution(self, client, customer, make_product):
        pid = make_product(price=1200)
        client.get("/?utm_source=instagram&utm_medium=social&utm_campaign=diwali")
        client.post("/cart/add", json={"product_id": pid, "quantity": 1})

        response = client.post("/checkout", json={"address_id": customer["address_id"], "payment_method": "COD"})

        assert response.status_code == 201
        order = response.get_json()["order"]
        assert order["status"] == "CONFIRMED"
        assert order["attribution"]["source"] == "instagram"
        assert order["attribution"]["utm_campaign"] == "diwali"
        assert fetch_user_cart(customer["id"]) == []

    def test_applied_coupon_is_used_then_forgotten(self, client, customer, make_product):
        _coupon("SAVE10")
        pid = make_product(price=1000)
        client.post("/cart/add", json={"product_id": pid})
        applied = client.post("/cart/coupon", json={"code": "save10"}).get_json()
        assert applied["cart"]["coupon"] == "SAVE10"
        assert applied["cart"]["total"] == 900

        order = client.post("/checkout", json={"address_id": customer["address_id"]}).get_json()["order"]
        assert order["total"] == 900
        with client.session_transaction() as sess:
            assert "cart_coupon" not in sess

    def test_invalid_coupon_is_rejected(self, client, make_product):
        client.post("/cart/add", json={"product_id": make_product()})
        response = client.post("/cart/coupon", json={"code": "NOPE"})
        assert response.status_code == 400
        assert response.get_json()["error"] == "Invalid coupon code"
