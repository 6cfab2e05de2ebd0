"""Shiprocket shipments, pincode serviceability and carrier status updates."""

from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

import requests
from sqlalchemy import select

from config import (
    SHIPROCKET_EMAIL,
    SHIPROCKET_PASSWORD,
    SHIPROCKET_PICKUP_LOCATION,
    SHIPROCKET_PICKUP_PINCODE,
)
from database import Order, StoreError, _serialize_order, add_order_event, session_scope, utcnow
from orders import STATUS_RANK, TERMINAL_STATUSES, apply_status, notify_status_change

logger = logging.getLogger(__name__)

SHIPROCKET_BASE_URL = "https://apiv2.shiprocket.in/v1/external"
PINCODE_API_URL = "https://api.postalpincode.in/pincode/"
REQUEST_TIMEOUT = 20
TOKEN_LIFETIME = timedelta(days=9)
FALLBACK_PHONE = "9999999999"
SHIPPABLE_STATUSES = ("CONFIRMED", "PROCESSING")
PARCEL_DEFAULTS = {"length": 10, "breadth": 10, "height": 10, "weight": 0.5}

CARRIER_STATUS_MAP = {
    "DELIVERED": "DELIVERED",
    "CANCELED": "CANCELLED",
    "CANCELLED": "CANCELLED",
    "SHIPPED": "SHIPPED",
    "PICKED UP": "SHIPPED",
    "IN TRANSIT": "SHIPPED",
    "OUT FOR DELIVERY": "SHIPPED",
}

_token_cache: dict[str, Any] = {"token": None, "expires_at": None}


def shiprocket_configured() -> bool:
    return bool(SHIPROCKET_EMAIL and SHIPROCKET_PASSWORD)


def normalize_phone(raw: Optional[str]) -> str:
    """Last ten digits of a phone number, or a placeholder the carrier accepts."""

    digits = "".join(ch for ch in (raw or "") if ch.isdigit())
    if len(digits) < 10:
        return FALLBACK_PHONE
    return digits[-10:]


# --------------------------------------------------------------------------------------
# REST client
# --------------------------------------------------------------------------------------


def get_token(*, force: bool = False) -> Optional[str]:
    """Log in to Shiprocket, reusing the cached token while it is fresh."""

    if not shiprocket_configured():
        return None
    now = utcnow()
    if not force and _token_cache["token"] and _token_cache["expires_at"] > now:
        return _token_cache["token"]

    try:
        resp = requests.post(
            f"{SHIPROCKET_BASE_URL}/auth/login",
            json={"email": SHIPROCKET_EMAIL, "password": SHIPROCKET_PASSWORD},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException:
        logger.exception("Shiprocket login request failed.")
        return None

    data = resp.json() if resp.content else {}
    token = data.get("token") if resp.ok else None
    if not token:
        logger.error("Shiprocket login rejected (%s): %s", resp.status_code, data.get("message"))
        return None
    _token_cache.update(token=token, expires_at=now + TOKEN_LIFETIME)
    return token


def _call(method: str, path: str, **kwargs: Any) -> tuple[Optional[dict[str, Any]], Optional[str]]:
    """Authenticated request; one retry with a fresh token when the cached one is rejected."""

    for attempt in range(2):
        token = get_token(force=attempt > 0)
        if not token:
            return None, "Shiprocket authentication failed"
        try:
            resp = requests.request(
                method,
                f"{SHIPROCKET_BASE_URL}{path}",
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                timeout=REQUEST_TIMEOUT,
                **kwargs,
            )
        except requests.RequestException as exc:
            logger.exception("Shiprocket %s %s failed.", method, path)
            return None, str(exc)

        if resp.status_code == 401 and attempt == 0:
            _token_cache.update(token=None, expires_at=None)
            continue
        data = resp.json() if resp.content else {}
        if not resp.ok:
            logger.error("Shiprocket %s %s rejected (%s): %s", method, path, resp.status_code, data)
            return None, str(data.get("message") or f"HTTP {resp.status_code}")
        return data, None
    return None, "Shiprocket authentication failed"


def build_shipment_payload(order: Mapping[str, Any]) -> dict[str, Any]:
    address = order.get("shipping_address") or {}
    first, _, last = str(address.get("name") or order.get("contact_name") or "Customer").partition(" ")
    created = order.get("created_at") or utcnow()
    return {
        "order_id": order["order_number"],
        "order_date": created.strftime("%Y-%m-%d %H:%M"),
        "pickup_location": SHIPROCKET_PICKUP_LOCATION,
        "billing_customer_name": first,
        "billing_last_name": last or ".",
        "billing_address": f"{address.get('house_no', '')}, {address.get('street', '')}".strip(", "),
        "billing_address_2": address.get("landmark") or "",
        "billing_city": address.get("city", ""),
        "billing_pincode": address.get("postal_code", ""),
        "billing_state": address.get("state", ""),
        "billing_country": "India",
        "billing_email": order.get("contact_email") or "",
        "billing_phone": normalize_phone(address.get("phone") or order.get("contact_phone")),
        "shipping_is_billing": True,
        "order_items": [
            {
                "name": item["product_name"] + (f" ({item['variant_name']})" if item.get("variant_name") else ""),
                "sku": item.get("product_sku") or f"SKU-{item['product_id']}",
                "units": item["quantity"],
                "selling_price": item["unit_price"],
                "discount": round(item["discount"] / item["quantity"], 2) if item["quantity"] else 0,
            }
            for item in order.get("items") or []
        ],
        "payment_method": "Prepaid" if order.get("payment_method") == "RAZORPAY" else "COD",
        "shipping_charges": order.get("shipping_cost") or 0,
        "sub_total": order["total"],
        **PARCEL_DEFAULTS,
    }


def create_shipment(order: Mapping[str, Any]) -> tuple[Optional[dict[str, Any]], Optional[str]]:
    """Create the carrier order, assign a courier and book the pickup."""

    created, error = _call("POST", "/orders/create/adhoc", json=build_shipment_payload(order))
    if error:
        return None, error
    if not created.get("order_id") or not created.get("shipment_id"):
        return None, str(created.get("message") or "Failed to create Shiprocket order")
    shipment_id = created["shipment_id"]

    assigned, error = _call("POST", "/courier/assign/awb", json={"shipment_id": shipment_id})
    awb_data = ((assigned or {}).get("response") or {}).get("data") or {}
    if assigned and assigned.get("awb_assign_status") == 1 and awb_data.get("awb_code"):
        awb = str(awb_data["awb_code"])
        courier = awb_data.get("courier_name") or "Unknown"
    else:
        logger.warning("AWB assignment for shipment %s failed: %s", shipment_id, error or assigned)
        awb = f"SR-{created['order_id']}"
        courier = "Unknown"

    _, pickup_error = _call("POST", "/courier/generate/pickup", json={"shipment_id": [shipment_id]})
    if pickup_error:
        logger.warning("Pickup generation for shipment %s failed: %s", shipment_id, pickup_error)

    return {
        "awb": awb,
        "courier": courier,
        "shiprocket_order_id": created["order_id"],
        "shipment_id": shipment_id,
    }, None


def check_serviceability(pincode: str, *, cod: bool = False) -> list[dict[str, Any]]:
    data, error = _call(
        "GET",
        "/courier/serviceability/",
        params={
            "pickup_postcode": SHIPROCKET_PICKUP_PINCODE,
            "delivery_postcode": pincode,
            "weight": PARCEL_DEFAULTS["weight"],
            "cod": 1 if cod else 0,
        },
    )
    if error:
        return []
    return list(((data or {}).get("data") or {}).get("available_courier_companies") or [])


def lookup_pincode(pincode: str) -> tuple[str, str]:
    """District and state for an Indian pincode from the public postal API."""

    try:
        resp = requests.get(f"{PINCODE_API_URL}{pincode}", timeout=REQUEST_TIMEOUT)
        data = resp.json() if resp.ok and resp.content else []
    except (requests.RequestException, ValueError):
        logger.exception("Pincode lookup for %s failed.", pincode)
        return "", ""
    if not data or data[0].get("Status") != "Success":
        return "", ""
    office = (data[0].get("PostOffice") or [{}])[0]
    return office.get("District") or "", office.get("State") or ""


def check_pincode(pincode: str) -> dict[str, Any]:
    pincode = (pincode or "").strip()
    if not (pincode.isdigit() and len(pincode) == 6):
        raise StoreError("Enter a valid 6-digit pincode.")

    city, state = lookup_pincode(pincode)
    couriers: list[dict[str, Any]] = []
    if shiprocket_configured():
        couriers = check_serviceability(pincode)
        serviceable = bool(city) and bool(couriers)
    else:
        serviceable = bool(city)

    estimated_days = None
    if couriers:
        estimated_days = couriers[0].get("estimated_delivery_days")
    return {
        "serviceable": serviceable,
        "city": city,
        "state": state,
        "couriers": [
            {"name": c.get("courier_name"), "etd": c.get("etd"), "rate": c.get("rate")} for c in couriers
        ],
        "estimated_days": estimated_days,
    }


# --------------------------------------------------------------------------------------
# Order fulfilment
# --------------------------------------------------------------------------------------


def ship_order(order_id: int) -> dict[str, object]:
    """Hand a confirmed order to the carrier and mark it shipped.

    Without Shiprocket credentials a simulated tracking number is issued. A
    carrier failure leaves the order untouched.
    """

    with session_scope() as session:
        entity = session.get(Order, order_id)
        if not entity:
            raise StoreError("Order not found")
        if entity.status not in SHIPPABLE_STATUSES:
            raise StoreError("Order must be CONFIRMED or PROCESSING to ship")
        order = _serialize_order(entity)

    if shiprocket_configured():
        shipment, error = create_shipment(order)
        if error:
            raise StoreError(f"Shiprocket API failed: {error}")
        provider = "Shiprocket"
    else:
        shipment = {"awb": f"TRACK-{secrets.token_hex(4).upper()}", "courier": "Simulated"}
        provider = "Simulated"

    shipping_data = {**shipment, "provider": provider, "shipped_at": utcnow().isoformat()}
    with session_scope() as session:
        entity = session.get(Order, order_id)
        if entity.status not in SHIPPABLE_STATUSES:
            raise StoreError("Order must be CONFIRMED or PROCESSING to ship")
        entity.shipping_provider = provider
        entity.shipment_awb = shipment["awb"]
        entity.shipping_data = json.dumps(shipping_data)
        apply_status(session, entity, "SHIPPED", f"Shipped via {shipment['courier']} (AWB: {shipment['awb']})")
        session.flush()
        session.refresh(entity)
        shipped = _serialize_order(entity)

    logger.info("Order %s shipped with AWB %s.", shipped["order_number"], shipment["awb"])
    notify_status_change(shipped)
    return shipped


def deliver_order(order_id: int) -> dict[str, object]:
    with session_scope() as session:
        entity = session.get(Order, order_id)
        if not entity:
            raise StoreError("Order not found")
        if entity.status != "SHIPPED":
            raise StoreError("Only shipped orders can be marked delivered.")
        apply_status(session, entity, "DELIVERED", "Marked delivered")
        session.flush()
        session.refresh(entity)
        delivered = _serialize_order(entity)

    notify_status_change(delivered)
    return delivered


# --------------------------------------------------------------------------------------
# Carrier webhook
# --------------------------------------------------------------------------------------


def map_carrier_status(raw_status: Optional[str]) -> Optional[str]:
    """Order status for a carrier status; RTO and unknown statuses map to None."""

    return CARRIER_STATUS_MAP.get((raw_status or "").strip().upper())


def _moves_forward(current: str, target: str) -> bool:
    if current in TERMINAL_STATUSES or current == target:
        return False
    if target == "CANCELLED":
        return True
    return STATUS_RANK[target] > STATUS_RANK[current]


def handle_carrier_update(awb: str, current_status: Optional[str]) -> Optional[dict[str, object]]:
    """Apply a carrier status update to the order holding this AWB.

    Returns None when no order matches. Every update is recorded as an event,
    even when the order status does not change.
    """

    label = (current_status or "").strip().upper() or "UNKNOWN"
    note = f"Shiprocket Update: {label} (AWB: {awb})"
    target = map_carrier_status(current_status)

    with session_scope() as session:
        entity = session.execute(select(Order).where(Order.shipment_awb == awb)).scalars().first()
        if not entity:
            return None
        changed = False
        if target and _moves_forward(entity.status, target):
            changed = apply_status(session, entity, target, note)
            if target == "CANCELLED":
                entity.cancel_reason = f"Cancelled by carrier (AWB: {awb})"
        else:
            add_order_event(session, entity, entity.status, note)
        session.flush()
        session.refresh(entity)
        updated = _serialize_order(entity)

    if changed and updated["status"] == "DELIVERED":
        notify_status_change(updated)
    return {"order_id": updated["id"], "status": updated["status"], "changed": changed}
