"""Cart pricing: coupon discounts prorated across lines, and the automatic offer calculator.

Everything here is pure: callers pass plain dicts for cart lines, coupons and
offers, so the same code prices the live cart, the checkout transaction and
the admin previews.

A cart line is ``{"product_id", "price", "quantity", "category_id"?}``.
"""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence

PERCENT_TYPES = {"PERCENTAGE"}
FIXED_TYPES = {"FIXED", "FIXED_AMOUNT"}


def _money(value: float) -> float:
    return round(value, 2)


def _format_rupees(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def _subtotal(items: Iterable[Mapping[str, Any]]) -> float:
    return sum(float(item["price"]) * int(item["quantity"]) for item in items)


def calculate_pricing(items: Sequence[Mapping[str, Any]], offer: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """Price a cart against an optional coupon-like offer.

    The discount is spread over lines in proportion to each line's share of
    the subtotal, so a partial return refunds what the customer actually paid.
    """

    subtotal = _subtotal(items)
    discount = 0.0
    free_shipping = False

    if offer and subtotal >= float(offer.get("min_amount") or 0):
        offer_type = str(offer.get("type") or "").upper()
        value = float(offer.get("value") or 0)
        if offer_type in PERCENT_TYPES:
            discount = subtotal * value / 100
            max_discount = offer.get("max_discount")
            if max_discount and discount > float(max_discount):
                discount = float(max_discount)
        elif offer_type in FIXED_TYPES:
            discount = value
        elif offer_type == "FREE_SHIPPING":
            free_shipping = True

    discount = min(max(discount, 0.0), subtotal)

    priced_items = []
    for item in items:
        price = float(item["price"])
        quantity = int(item["quantity"])
        line_total = price * quantity
        share = line_total / subtotal if subtotal > 0 else 0.0
        line_discount = share * discount
        per_unit = _money(line_discount / quantity) if quantity else 0.0
        priced_items.append(
            {
                **item,
                "line_total": _money(line_total),
                "line_discount": _money(line_discount),
                "discount_per_unit": per_unit,
                "final_price": _money(price - per_unit),
            }
        )

    return {
        "subtotal": _money(subtotal),
        "discount_total": _money(discount),
        "final_total": _money(subtotal - discount),
        "free_shipping": free_shipping,
        "items": priced_items,
    }


# --------------------------------------------------------------------------------------
# Automatic offers
# --------------------------------------------------------------------------------------


def _id_list(raw: Any) -> list[int]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw or "[]")
        except json.JSONDecodeError:
            return []
    ids = []
    for value in raw or []:
        try:
            ids.append(int(value))
        except (TypeError, ValueError):
            continue
    return ids


def _offer_is_live(offer: Mapping[str, Any], now: datetime) -> bool:
    if not offer.get("is_active"):
        return False
    start, end = offer.get("start_date"), offer.get("end_date")
    if start and start > now:
        return False
    if end and end < now:
        return False
    return True


def is_product_eligible(item: Mapping[str, Any], offer: Mapping[str, Any], now: Optional[datetime] = None) -> bool:
    """Whether one cart line qualifies for an offer's targeting rules."""

    if not _offer_is_live(offer, now or datetime.now(timezone.utc).replace(tzinfo=None)):
        return False

    price = float(item["price"])
    min_price, max_price = offer.get("min_price"), offer.get("max_price")
    price_ok = (not min_price or price >= float(min_price)) and (not max_price or price <= float(max_price))
    applicable_type = offer.get("applicable_type") or "ALL"

    if applicable_type == "ALL":
        return True
    if applicable_type == "PRODUCT":
        return int(item["product_id"]) in _id_list(offer.get("applicable_ids"))
    if applicable_type == "CATEGORY":
        category_id = item.get("category_id")
        return category_id is not None and int(category_id) in _id_list(offer.get("applicable_ids"))
    if applicable_type == "PRICE_RANGE":
        return price_ok
    if applicable_type == "COMBINED":
        category_id = item.get("category_id")
        category_ok = category_id is not None and int(category_id) in _id_list(offer.get("applicable_ids"))
        return category_ok and price_ok
    return False


def eligible_items(items: Sequence[Mapping[str, Any]], offer: Mapping[str, Any], now: Optional[datetime] = None) -> list:
    return [item for item in items if is_product_eligible(item, offer, now)]


def _result(offer: Mapping[str, Any], discount: float, description: str, applied: Sequence[Mapping[str, Any]] = ()) -> dict:
    discount = _money(max(discount, 0.0))
    return {
        "offer": offer,
        "discount": discount,
        "savings": discount,
        "description": description,
        "applied_items": [int(item["product_id"]) for item in applied] if discount > 0 else [],
    }


def _units(items: Sequence[Mapping[str, Any]]) -> list[float]:
    """Expand lines into one price per unit, keeping cart order."""

    units: list[float] = []
    for item in items:
        units.extend([float(item["price"])] * int(item["quantity"]))
    return units


def _percentage(items, offer, now):
    eligible = eligible_items(items, offer, now)
    value = float(offer.get("value") or 0)
    discount = _subtotal(eligible) * value / 100
    max_discount = offer.get("max_discount")
    if max_discount and discount > float(max_discount):
        discount = float(max_discount)
    return _result(offer, discount, f"{_format_rupees(value)}% off on eligible items", eligible)


def _fixed(items, offer, now):
    eligible = eligible_items(items, offer, now)
    value = float(offer.get("value") or 0)
    return _result(offer, min(value, _subtotal(eligible)), f"₹{_format_rupees(value)} off", eligible)


def _bundle(items, offer, now):
    size = int(offer.get("bundle_quantity") or 0)
    bundle_price = offer.get("bundle_price")
    if size <= 0 or not bundle_price:
        return _result(offer, 0, "Invalid bundle configuration")

    eligible = eligible_items(items, offer, now)
    units = _units(eligible)
    if len(units) < size:
        return _result(offer, 0, f"Add {size - len(units)} more items")

    bundles = len(units) // size
    bundled_cost = sum(units[: bundles * size])
    discount = bundled_cost - bundles * float(bundle_price)
    return _result(offer, discount, f"Buy {size} @ ₹{_format_rupees(float(bundle_price))}", eligible)


def _bogo(items, offer, now):
    buy, get = int(offer.get("buy_quantity") or 0), int(offer.get("get_quantity") or 0)
    if buy <= 0 or get <= 0:
        return _result(offer, 0, "Invalid BOGO configuration")

    eligible = eligible_items(items, offer, now)
    units = _units(eligible)
    set_size = buy + get
    if len(units) < set_size:
        return _result(offer, 0, f"Add {set_size - len(units)} more items")

    get_discount = offer.get("get_discount")
    percent = 100.0 if get_discount is None else float(get_discount)
    free_units = (len(units) // set_size) * get
    discount = sum(sorted(units)[:free_units]) * percent / 100
    reward = "Free" if percent == 100 else f"{_format_rupees(percent)}% off"
    return _result(offer, discount, f"Buy {buy} Get {get} {reward}", eligible)


def _tiered(items, offer, now):
    tiers_raw = offer.get("tiers")
    try:
        tiers = json.loads(tiers_raw) if isinstance(tiers_raw, str) else list(tiers_raw or [])
    except json.JSONDecodeError:
        tiers = []
    tiers = [t for t in tiers if isinstance(t, Mapping) and "quantity" in t and "discount" in t]
    if not tiers:
        return _result(offer, 0, "Invalid tier configuration")

    eligible = eligible_items(items, offer, now)
    units = sum(int(item["quantity"]) for item in eligible)
    reached = [t for t in tiers if units >= int(t["quantity"])]
    if not reached:
        nearest = min(tiers, key=lambda t: int(t["quantity"]))
        shortfall = int(nearest["quantity"]) - units
        return _result(offer, 0, f"Add {shortfall} more for {_format_rupees(float(nearest['discount']))}% off")

    tier = max(reached, key=lambda t: int(t["quantity"]))
    percent = float(tier["discount"])
    discount = _subtotal(eligible) * percent / 100
    return _result(offer, discount, f"{_format_rupees(percent)}% off on {units} items", eligible)


_CALCULATORS = {
    "PERCENTAGE": _percentage,
    "FIXED": _fixed,
    "BUNDLE": _bundle,
    "MIX_MATCH": _bundle,
    "QUANTITY_DISCOUNT": _bundle,
    "BOGO": _bogo,
    "TIERED": _tiered,
}


def calculate_offer_discount(
    items: Sequence[Mapping[str, Any]], offer: Mapping[str, Any], now: Optional[datetime] = None
) -> dict[str, Any]:
    """Work out what one offer saves on the cart, with a customer-facing description."""

    cart_total = _subtotal(items)
    min_amount = float(offer.get("min_amount") or 0)
    if min_amount and cart_total < min_amount:
        shortfall = math.ceil((min_amount - cart_total) * 100) / 100
        return _result(offer, 0, f"Add ₹{_format_rupees(shortfall)} more to qualify")

    calculator = _CALCULATORS.get(str(offer.get("type") or "").upper())
    if calculator is None:
        return _result(offer, 0, "Unknown offer type")
    return calculator(items, offer, now)


def get_applicable_offers(
    items: Sequence[Mapping[str, Any]], offers: Iterable[Mapping[str, Any]], now: Optional[datetime] = None
) -> list[dict[str, Any]]:
    """Every live offer that saves money on this cart, biggest saving first."""

    results = [calculate_offer_discount(items, offer, now) for offer in offers if offer.get("is_active")]
    results = [result for result in results if result["discount"] > 0]
    results.sort(key=lambda result: result["savings"], reverse=True)
    return results


def find_best_offer(
    items: Sequence[Mapping[str, Any]], offers: Iterable[Mapping[str, Any]], now: Optional[datetime] = None
) -> Optional[dict[str, Any]]:
    results = get_applicable_offers(items, offers, now)
    return results[0] if results else None
