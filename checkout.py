"""Order placement and marketing attribution capture."""

from __future__ import annotations

import json
import logging
import random
import time
from typing import Mapping, Optional, Sequence
from urllib.parse import urlparse

from config import STANDARD_SHIPPING_FEE, TAX_RATE
from database import (
    Address,
    Order,
    OrderItem,
    Product,
    ProductVariant,
    StoreError,
    User,
    _as_int,
    _serialize_address,
    _serialize_order,
    add_order_event,
    clear_user_cart,
    reserve_stock,
    session_scope,
)
from marketing import check_coupon, increment_coupon_usage
from notifications import Notifier
from pricing import calculate_pricing
from security import encrypt_json, encrypt_sensitive_value

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("COD", "ONLINE")

ATTRIBUTION_COOKIE = "marketing_attribution"
ATTRIBUTION_MAX_AGE = 30 * 24 * 60 * 60
UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term")
ATTRIBUTION_FIELDS = ("source", "medium", "campaign", *UTM_KEYS)

SOCIAL_HOSTS = {
    "facebook.com": "facebook",
    "fb.com": "facebook",
    "instagram.com": "instagram",
    "twitter.com": "twitter",
    "t.co": "twitter",
    "linkedin.com": "linkedin",
    "pinterest.com": "pinterest",
}
SEARCH_HOSTS = {"bing.com": "bing", "yahoo.com": "yahoo"}


def new_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{random.randint(0, 999)}"


# --------------------------------------------------------------------------------------
# Attribution
# --------------------------------------------------------------------------------------


def _host_matches(hostname: str, domain: str) -> bool:
    return hostname == domain or hostname.endswith(f".{domain}")


def source_from_referrer(referrer: Optional[str]) -> dict[str, str]:
    """Classify a visit by its referrer when no UTM tags are present."""

    hostname = (urlparse(referrer).hostname or "").lower() if referrer else ""
    if not hostname:
        return {"source": "DIRECT", "medium": "none"}
    for domain, name in SOCIAL_HOSTS.items():
        if _host_matches(hostname, domain):
            return {"source": name, "medium": "social"}
    if "google." in hostname:
        return {"source": "google", "medium": "organic"}
    for domain, name in SEARCH_HOSTS.items():
        if _host_matches(hostname, domain):
            return {"source": name, "medium": "organic"}
    return {"source": hostname, "medium": "referral"}


def has_utm_params(args: Mapping[str, str]) -> bool:
    return any((args.get(key) or "").strip() for key in UTM_KEYS)


def attribution_from_request(args: Mapping[str, str], referrer: Optional[str]) -> dict[str, str]:
    """UTM tags win; without them the referrer decides."""

    utm = {key: (args.get(key) or "").strip() for key in UTM_KEYS}
    if any(utm.values()):
        attribution = {
            "source": utm["utm_source"] or "UNKNOWN",
            "medium": utm["utm_medium"] or "UNKNOWN",
            **{key: value for key, value in utm.items() if value},
        }
        if utm["utm_campaign"]:
            attribution["campaign"] = utm["utm_campaign"]
        return attribution
    return source_from_referrer(referrer)


def parse_attribution(raw: Optional[str]) -> dict[str, str]:
    """Read the attribution cookie, ignoring anything malformed."""

    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(data, dict):
        return {}
    return {key: str(data[key])[:255] for key in ATTRIBUTION_FIELDS if data.get(key)}


# --------------------------------------------------------------------------------------
# Placing orders
# --------------------------------------------------------------------------------------


def _load_lines(session, items: Sequence[Mapping[str, object]]) -> list[dict[str, object]]:
    """Resolve cart lines against current catalogue rows and check stock."""

    lines: list[dict[str, object]] = []
    for raw in items:
        product_id = _as_int(raw.get("product_id"))
        variant_id = _as_int(raw.get("variant_id")) or None
        quantity = _as_int(raw.get("quantity"))
        if quantity < 1:
            raise StoreError("Quantity must be at least 1.")

        product = session.get(Product, product_id)
        if not product:
            raise StoreError("Product not found")
        if product.status != "ACTIVE":
            raise StoreError(f"{product.name} is no longer available")

        variant = None
        if variant_id is not None:
            variant = session.get(ProductVariant, variant_id)
            if not variant or variant.product_id != product.id:
                raise StoreError("Product not found")
        elif product.variants:
            raise StoreError(f"Choose a size for {product.name}")

        available = variant.stock if variant else product.stock
        if available < quantity:
            raise StoreError(f"Insufficient stock for {product.name}")

        price = variant.price if variant and variant.price is not None else product.price
        sku = product.sku
        if variant and product.sku:
            sku = f"{product.sku}-{variant.sku_suffix or variant.id}"
        lines.append(
            {
                "product_id": product.id,
                "variant_id": variant.id if variant else None,
                "category_id": product.category_id,
                "name": product.name,
                "variant_name": variant.name if variant else None,
                "sku": sku,
                "price": float(price),
                "quantity": quantity,
            }
        )
    return lines


def place_order(
    user_id: int,
    items: Sequence[Mapping[str, object]],
    address_id: int,
    payment_method: str = "COD",
    coupon_code: Optional[str] = None,
    attribution: Optional[Mapping[str, str]] = None,
) -> dict[str, object]:
    """Create an order, reserve stock and redeem the coupon in one transaction.

    Cash-on-delivery orders are confirmed immediately; online orders wait in
    ``PENDING`` for the payment gateway. Any failure rolls the whole order back.
    """

    if not items:
        raise StoreError("Your cart is empty.")
    method = (payment_method or "").upper()
    if method not in PAYMENT_METHODS:
        raise StoreError("Payment method must be COD or ONLINE.")
    attribution = attribution or {}

    with session_scope() as session:
        user = session.get(User, user_id)
        if not user:
            raise StoreError("Please sign in to place an order.")
        address = session.get(Address, address_id)
        if not address or address.user_id != user_id:
            raise StoreError("Address not found.")

        lines = _load_lines(session, items)

        coupon_id = None
        if coupon_code:
            pricing = check_coupon(session, coupon_code, lines)
            if not pricing["valid"]:
                raise StoreError(str(pricing["error"]))
            coupon_id = pricing["coupon_id"]
            coupon_code = pricing["code"]
        else:
            pricing = calculate_pricing(lines)

        shipping_cost = 0.0 if pricing["free_shipping"] else STANDARD_SHIPPING_FEE
        tax = round(pricing["subtotal"] * TAX_RATE, 2)
        total = round(pricing["final_total"] + shipping_cost + tax, 2)

        address_snapshot = _serialize_address(address)
        order = Order(
            order_number=new_order_number(),
            user_id=user_id,
            address_id=address.id,
            status="CONFIRMED" if method == "COD" else "PENDING",
            subtotal=pricing["subtotal"],
            tax=tax,
            shipping_cost=shipping_cost,
            discount_total=pricing["discount_total"],
            total=total,
            coupon_code=coupon_code if coupon_id else None,
            coupon_id=coupon_id,
            payment_method=method,
            contact_name=encrypt_sensitive_value(address_snapshot["name"] or user.name),
            contact_email=encrypt_sensitive_value(user.email),
            contact_phone=encrypt_sensitive_value(address_snapshot["phone"] or user.phone or ""),
            shipping_address=encrypt_json(address_snapshot),
            **{key: attribution.get(key) for key in ATTRIBUTION_FIELDS},
        )
        for line in pricing["items"]:
            order.items.append(
                OrderItem(
                    product_id=line["product_id"],
                    variant_id=line["variant_id"],
                    product_name=line["name"],
                    product_sku=line["sku"],
                    variant_name=line["variant_name"],
                    quantity=line["quantity"],
                    unit_price=line["price"],
                    discount=line["line_discount"],
                    attributes=json.dumps({"size": line["variant_name"]} if line["variant_name"] else {}),
                )
            )
        session.add(order)
        session.flush()

        for line in lines:
            reserve_stock(session, line["product_id"], line["variant_id"], line["quantity"], line["name"])

        note = "Cash on delivery order confirmed" if method == "COD" else "Awaiting online payment"
        add_order_event(session, order, order.status, note)
        if coupon_id:
            increment_coupon_usage(session, coupon_id)

        session.flush()
        session.refresh(order)
        placed = _serialize_order(order)

    logger.info("Order %s placed by user %s (%s).", placed["order_number"], user_id, method)
    clear_user_cart(user_id)

    if method == "COD":
        results = Notifier.send_order_confirmation(placed)
        if not any(result["sent"] for result in results.values()):
            logger.warning("No confirmation was delivered for order %s.", placed["order_number"])
    return placed
