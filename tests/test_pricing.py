"""Coupon pricing and the automatic offer calculator."""

from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest

from pricing import calculate_offer_discount, calculate_pricing, find_best_offer, get_applicable_offers, is_product_eligible


def _line(product_id: int, price: float, quantity: int = 1, category_id: int | None = 1) -> dict:
    return {"product_id": product_id, "price": price, "quantity": quantity, "category_id": category_id}


def _offer(**fields) -> dict:
    base = {
        "id": 1,
        "code": "AUTO",
        "type": "PERCENTAGE",
        "value": 0,
        "min_amount": 0,
        "is_active": True,
        "applicable_type": "ALL",
        "applicable_ids": "[]",
        "start_date": None,
        "end_date": None,
    }
    base.update(fields)
    return base


class TestCalculatePricing:
    def test_no_offer_leaves_totals_untouched(self):
        result = calculate_pricing([_line(1, 500, 2)])
        assert result["subtotal"] == 1000
        assert result["discount_total"] == 0
        assert result["final_total"] == 1000
        assert result["free_shipping"] is False

    def test_percentage_discount_is_prorated_by_line_share(self):
        items = [_line(1, 300, 1), _line(2, 700, 1)]
        result = calculate_pricing(items, {"type": "PERCENTAGE", "value": 10})
        assert result["discount_total"] == 100
        assert [item["line_discount"] for item in result["items"]] == [30, 70]
        assert result["items"][0]["final_price"] == 270

    def test_percentage_discount_respects_cap(self):
        result = calculate_pricing([_line(1, 5000)], {"type": "PERCENTAGE", "value": 50, "max_discount": 500})
        assert result["discount_total"] == 500
        assert result["final_total"] == 4500

    def test_fixed_discount_never_exceeds_subtotal(self):
        result = calculate_pricing([_line(1, 200)], {"type": "FIXED_AMOUNT", "value": 500})
        assert result["discount_total"] == 200
        assert result["final_total"] == 0

    def test_free_shipping_sets_flag_without_discount(self):
        result = calculate_pricing([_line(1, 900)], {"type": "FREE_SHIPPING", "value": 0})
        assert result["free_shipping"] is True
        assert result["discount_total"] == 0

    def test_minimum_not_met_gives_no_discount(self):
        result = calculate_pricing([_line(1, 900)], {"type": "PERCENTAGE", "value": 10, "min_amount": 1000})
        assert result["discount_total"] == 0

    def test_per_unit_discount_splits_line_discount(self):
        result = calculate_pricing([_line(1, 500, 4)], {"type": "FIXED", "value": 200})
        assert result["items"][0]["discount_per_unit"] == 50
        assert result["items"][0]["final_price"] == 450


class TestOfferEligibility:
    def test_inactive_or_expired_offers_do_not_apply(self):
        now = datetime(2026, 5, 1)
        assert not is_product_eligible(_line(1, 100), _offer(is_active=False), now)
        assert not is_product_eligible(_line(1, 100), _offer(end_date=now - timedelta(days=1)), now)
        assert not is_product_eligible(_line(1, 100), _offer(start_date=now + timedelta(days=1)), now)

    def test_product_and_category_targeting(self):
        by_product = _offer(applicable_type="PRODUCT", applicable_ids=json.dumps([2]))
        by_category = _offer(applicable_type="CATEGORY", applicable_ids=[7])
        assert is_product_eligible(_line(2, 100), by_product)
        assert not is_product_eligible(_line(3, 100), by_product)
        assert is_product_eligible(_line(3, 100, category_id=7), by_category)
        assert not is_product_eligible(_line(3, 100, category_id=None), by_category)

    def test_combined_needs_category_and_price(self):
        offer = _offer(applicable_type="COMBINED", applicable_ids=[7], min_price=500, max_price=2000)
        assert is_product_eligible(_line(1, 800, category_id=7), offer)
        assert not is_product_eligible(_line(1, 300, category_id=7), offer)
        assert not is_product_eligible(_line(1, 800, category_id=8), offer)


class TestOfferCalculators:
    def test_minimum_amount_shortfall_message(self):
        result = calculate_offer_discount([_line(1, 750)], _offer(value=10, min_amount=1000))
        assert result["discount"] == 0
        assert result["description"] == "Add ₹250 more to qualify"

    def test_bundle_prices_complete_sets_only(self):
        offer = _offer(type="BUNDLE", bundle_quantity=3, bundle_price=999)
        result = calculate_offer_discount([_line(1, 500, 4)], offer)
        assert result["discount"] == 501
        assert result["description"] == "Buy 3 @ ₹999"

    def test_bundle_asks_for_more_items(self):
        offer = _offer(type="BUNDLE", bundle_quantity=3, bundle_price=999)
        result = calculate_offer_discount([_line(1, 500, 1)], offer)
        assert result["discount"] == 0
        assert result["description"] == "Add 2 more items"

    def test_bogo_frees_the_cheapest_units(self):
        offer = _offer(type="BOGO", buy_quantity=1, get_quantity=1, get_discount=100)
        result = calculate_offer_discount([_line(1, 1000), _line(2, 400)], offer)
        assert result["discount"] == 400
        assert result["description"] == "Buy 1 Get 1 Free"

    def test_bogo_partial_discount(self):
        offer = _offer(type="BOGO", buy_quantity=1, get_quantity=1, get_discount=50)
        result = calculate_offer_discount([_line(1, 1000), _line(2, 400)], offer)
        assert result["discount"] == 200
        assert result["description"] == "Buy 1 Get 1 50% off"

    def test_tiered_uses_highest_reached_tier(self):
        offer = _offer(type="TIERED", tiers=json.dumps([{"quantity": 2, "discount": 5}, {"quantity": 4, "discount": 10}]))
        result = calculate_offer_discount([_line(1, 100, 4)], offer)
        assert result["discount"] == 40
        assert result["description"] == "10% off on 4 items"

    def test_tiered_below_first_tier_explains_shortfall(self):
        offer = _offer(type="TIERED", tiers=[{"quantity": 3, "discount": 5}])
        result = calculate_offer_discount([_line(1, 100, 1)], offer)
        assert result["discount"] == 0
        assert result["description"] == "Add 2 more for 5% off"

    def test_unknown_type(self):
        assert calculate_offer_discount([_line(1, 100)], _offer(type="MYSTERY"))["description"] == "Unknown offer type"

    @pytest.mark.parametrize("offer_type", ["MIX_MATCH", "QUANTITY_DISCOUNT"])
    def test_bundle_aliases(self, offer_type):
        offer = _offer(type=offer_type, bundle_quantity=2, bundle_price=150)
        assert calculate_offer_discount([_line(1, 100, 2)], offer)["discount"] == 50


class TestBestOffer:
    def test_best_offer_is_biggest_saving(self):
        small = _offer(id=1, code="TEN", value=10)
        big = _offer(id=2, code="FLAT", type="FIXED", value=300)
        items = [_line(1, 1000)]
        assert find_best_offer(items, [small, big])["offer"]["code"] == "FLAT"
        assert [r["offer"]["code"] for r in get_applicable_offers(items, [small, big])] == ["FLAT", "TEN"]

    def test_offers_without_savings_are_left_out(self):
        assert find_best_offer([_line(1, 100)], [_offer(value=0)]) is None
