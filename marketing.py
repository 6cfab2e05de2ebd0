"""Coupons, automatic offers and newsletter subscribers."""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from database import (
    Coupon,
    NewsletterSubscriber,
    Offer,
    Order,
    StoreError,
    _as_float,
    _as_int,
    session_scope,
    utcnow,
)
from notifications import Notifier
from pricing import calculate_pricing, find_best_offer, get_applicable_offers

logger = logging.getLogger(__name__)

COUPON_TYPES = ("PERCENTAGE", "FIXED_AMOUNT", "FREE_SHIPPING")
OFFER_TYPES = ("PERCENTAGE", "FIXED", "BUNDLE", "BOGO", "MIX_MATCH", "QUANTITY_DISCOUNT", "TIERED")
OFFER_TARGETS = ("ALL", "CATEGORY", "PRODUCT", "PRICE_RANGE", "COMBINED")
COUPON_REVENUE_STATUSES = ("CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED")


def parse_datetime(value: object) -> Optional[datetime]:
    """Accept datetimes or ISO-8601 strings from JSON payloads."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise StoreError(f"Invalid date: {value}") from exc
    return parsed.replace(tzinfo=None)


def _optional_float(value: object) -> Optional[float]:
    return None if value in (None, "") else _as_float(value)


def _optional_int(value: object) -> Optional[int]:
    return None if value in (None, "") else _as_int(value)


# --------------------------------------------------------------------------------------
# Coupons
# --------------------------------------------------------------------------------------


def _serialize_coupon(coupon: Coupon) -> dict[str, object]:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "description": coupon.description,
        "type": coupon.type,
        "value": float(coupon.value),
        "min_order_value": float(coupon.min_order_value or 0),
        "max_discount": coupon.max_discount,
        "usage_limit": coupon.usage_limit,
        "usage_count": coupon.usage_count,
        "valid_from": coupon.valid_from,
        "valid_until": coupon.valid_until,
        "is_active": coupon.is_active,
        "created_at": coupon.created_at,
    }


def _coupon_fields(data: Mapping[str, Any], *, partial: bool = False) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if "code" in data or not partial:
        code = str(data.get("code") or "").strip().upper()
        if not code:
            raise StoreError("Coupon code is required.")
        fields["code"] = code
    if "type" in data or not partial:
        coupon_type = str(data.get("type") or "").upper()
        if coupon_type not in COUPON_TYPES:
            raise StoreError("Coupon type must be PERCENTAGE, FIXED_AMOUNT or FREE_SHIPPING.")
        fields["type"] = coupon_type
    if "value" in data or not partial:
        value = _as_float(data.get("value"), -1)
        if value < 0:
            raise StoreError("Coupon value must be zero or more.")
        fields["value"] = value
    for key in ("valid_from", "valid_until"):
        if key in data or not partial:
            parsed = parse_datetime(data.get(key))
            if parsed is None:
                raise StoreError(f"{key.replace('_', ' ').capitalize()} is required.")
            fields[key] = parsed
    if "min_order_value" in data:
        fields["min_order_value"] = max(0.0, _as_float(data.get("min_order_value")))
    if "max_discount" in data:
        fields["max_discount"] = _optional_float(data.get("max_discount"))
    if "usage_limit" in data:
        fields["usage_limit"] = _optional_int(data.get("usage_limit"))
    if "description" in data:
        fields["description"] = (str(data.get("description") or "").strip() or None)
    if "is_active" in data:
        fields["is_active"] = bool(data.get("is_active"))
    return fields


def _check_coupon_rules(fields: Mapping[str, Any]) -> None:
    if fields.get("type") == "PERCENTAGE" and float(fields.get("value") or 0) > 100:
        raise StoreError("A percentage coupon cannot exceed 100%.")
    if fields.get("valid_from") and fields.get("valid_until") and fields["valid_from"] >= fields["valid_until"]:
        raise StoreError("Valid until must be after valid from.")


def create_coupon(data: Mapping[str, Any]) -> int:
    fields = _coupon_fields(data)
    _check_coupon_rules(fields)
    with session_scope() as session:
        if session.execute(select(Coupon.id).where(Coupon.code == fields["code"])).first():
            raise StoreError("Coupon code already exists")
        coupon = Coupon(**fields)
        session.add(coupon)
        session.flush()
        return int(coupon.id)


def update_coupon(coupon_id: int, data: Mapping[str, Any]) -> None:
    fields = _coupon_fields(data, partial=True)
    with session_scope() as session:
        coupon = session.get(Coupon, coupon_id)
        if not coupon:
            raise StoreError("Coupon not found")
        if "code" in fields and fields["code"] != coupon.code:
            if session.execute(select(Coupon.id).where(Coupon.code == fields["code"])).first():
                raise StoreError("Coupon code already exists")
        merged = {**_serialize_coupon(coupon), **fields}
        _check_coupon_rules(merged)
        for key, value in fields.items():
            setattr(coupon, key, value)


def delete_coupon(coupon_id: int) -> None:
    with session_scope() as session:
        coupon = session.get(Coupon, coupon_id)
        if not coupon:
            raise StoreError("Coupon not found")
        session.delete(coupon)


def toggle_coupon(coupon_id: int) -> bool:
    with session_scope() as session:
        coupon = session.get(Coupon, coupon_id)
        if not coupon:
            raise StoreError("Coupon not found")
        coupon.is_active = not coupon.is_active
        return coupon.is_active


def fetch_coupons() -> list[dict[str, object]]:
    with session_scope() as session:
        coupons = session.execute(select(Coupon).order_by(Coupon.created_at.desc(), Coupon.id.desc())).scalars()
        return [_serialize_coupon(coupon) for coupon in coupons]


def get_public_coupons(now: Optional[datetime] = None) -> list[dict[str, object]]:
    """Coupons a shopper can use right now."""

    moment = now or utcnow()
    stmt = (
        select(Coupon)
        .where(
            Coupon.is_active.is_(True),
            Coupon.valid_from <= moment,
            Coupon.valid_until >= moment,
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        )
        .order_by(Coupon.value.desc())
    )
    with session_scope() as session:
        return [
            {key: value for key, value in _serialize_coupon(c).items() if key not in {"usage_count", "usage_limit"}}
            for c in session.execute(stmt).scalars()
        ]


def check_coupon(
    session: Session, code: Optional[str], items: Sequence[Mapping[str, Any]], now: Optional[datetime] = None
) -> dict[str, Any]:
    """Validate a code against a cart inside an open session.

    Returns ``{"valid": False, "error": ...}`` or the priced result with
    ``valid=True``.
    """

    normalized = (code or "").strip().upper()
    if not normalized:
        return {"valid": False, "error": "No code provided"}

    coupon = session.execute(select(Coupon).where(Coupon.code == normalized)).scalar_one_or_none()
    if coupon is None:
        return {"valid": False, "error": "Invalid coupon code"}
    if not coupon.is_active:
        return {"valid": False, "error": "Coupon is inactive"}
    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return {"valid": False, "error": "Coupon usage limit reached"}

    moment = now or utcnow()
    if moment < coupon.valid_from:
        return {"valid": False, "error": "Coupon not yet active"}
    if moment > coupon.valid_until:
        return {"valid": False, "error": "Coupon expired"}

    pricing = calculate_pricing(
        items,
        {
            "type": coupon.type,
            "value": coupon.value,
            "min_amount": coupon.min_order_value,
            "max_discount": coupon.max_discount,
        },
    )
    minimum = float(coupon.min_order_value or 0)
    if minimum and pricing["subtotal"] < minimum:
        display = int(minimum) if minimum.is_integer() else minimum
        return {"valid": False, "error": f"Minimum order amount of ₹{display} not met"}

    return {
        "valid": True,
        "coupon_id": coupon.id,
        "code": coupon.code,
        "type": coupon.type,
        "description": coupon.description,
        **pricing,
    }


def validate_coupon(code: Optional[str], items: Sequence[Mapping[str, Any]], now: Optional[datetime] = None) -> dict:
    with session_scope() as session:
        return check_coupon(session, code, items, now)


def increment_coupon_usage(session: Session, coupon_id: int) -> None:
    """Count one redemption, refusing to go past the usage limit."""

    result = session.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
        )
        .values(usage_count=Coupon.usage_count + 1)
    )
    if result.rowcount == 0:
        raise StoreError("Coupon usage limit reached")


def get_coupon_stats(code: str) -> dict[str, object]:
    """Revenue and order counts for orders that used a coupon."""

    normalized = (code or "").strip().upper()
    stmt = select(
        func.count(Order.id),
        func.coalesce(func.sum(Order.total), 0),
        func.coalesce(func.sum(Order.discount_total), 0),
    ).where(Order.coupon_code == normalized, Order.status.in_(COUPON_REVENUE_STATUSES))
    with session_scope() as session:
        count, revenue, discount = session.execute(stmt).one()
    count = int(count or 0)
    revenue = float(revenue or 0)
    return {
        "code": normalized,
        "total_orders": count,
        "total_revenue": round(revenue, 2),
        "total_discount": round(float(discount or 0), 2),
        "average_order_value": round(revenue / count, 2) if count else 0.0,
    }


# --------------------------------------------------------------------------------------
# Offers
# --------------------------------------------------------------------------------------


def _serialize_offer(offer: Offer) -> dict[str, object]:
    return {
        "id": offer.id,
        "code": offer.code,
        "title": offer.title,
        "description": offer.description,
        "type": offer.type,
        "value": float(offer.value or 0),
        "min_amount": float(offer.min_amount or 0),
        "max_discount": offer.max_discount,
        "bundle_quantity": offer.bundle_quantity,
        "bundle_price": offer.bundle_price,
        "buy_quantity": offer.buy_quantity,
        "get_quantity": offer.get_quantity,
        "get_discount": offer.get_discount,
        "tiers": offer.tiers,
        "applicable_type": offer.applicable_type,
        "applicable_ids": offer.applicable_ids,
        "min_price": offer.min_price,
        "max_price": offer.max_price,
        "start_date": offer.start_date,
        "end_date": offer.end_date,
        "usage_limit": offer.usage_limit,
        "used_count": offer.used_count,
        "is_active": offer.is_active,
        "badge_text": offer.badge_text,
        "priority": offer.priority,
    }


def _offer_fields(data: Mapping[str, Any], *, partial: bool = False) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if "code" in data or not partial:
        code = str(data.get("code") or "").strip().upper()
        if not code:
            raise StoreError("Offer code is required.")
        fields["code"] = code
    if "type" in data or not partial:
        offer_type = str(data.get("type") or "PERCENTAGE").upper()
        if offer_type not in OFFER_TYPES:
            raise StoreError("Unknown offer type.")
        fields["type"] = offer_type
    if "applicable_type" in data:
        target = str(data.get("applicable_type") or "ALL").upper()
        if target not in OFFER_TARGETS:
            raise StoreError("Unknown offer target.")
        fields["applicable_type"] = target
    if "applicable_ids" in data:
        raw_ids = data.get("applicable_ids")
        ids = json.loads(raw_ids) if isinstance(raw_ids, str) else list(raw_ids or [])
        fields["applicable_ids"] = json.dumps([_as_int(i) for i in ids if _as_int(i) > 0])
    if "tiers" in data:
        raw_tiers = data.get("tiers")
        if raw_tiers in (None, "", []):
            fields["tiers"] = None
        else:
            tiers = json.loads(raw_tiers) if isinstance(raw_tiers, str) else list(raw_tiers)
            fields["tiers"] = json.dumps(
                [{"quantity": _as_int(t.get("quantity")), "discount": _as_float(t.get("discount"))} for t in tiers]
            )
    for key in ("value", "min_amount"):
        if key in data:
            fields[key] = max(0.0, _as_float(data.get(key)))
    for key in ("max_discount", "bundle_price", "get_discount", "min_price", "max_price"):
        if key in data:
            fields[key] = _optional_float(data.get(key))
    for key in ("bundle_quantity", "buy_quantity", "get_quantity", "usage_limit"):
        if key in data:
            fields[key] = _optional_int(data.get(key))
    for key in ("start_date", "end_date"):
        if key in data:
            fields[key] = parse_datetime(data.get(key))
    for key in ("title", "description", "badge_text"):
        if key in data:
            fields[key] = str(data.get(key) or "").strip() or None
    if "priority" in data:
        fields["priority"] = _as_int(data.get("priority"))
    if "is_active" in data:
        fields["is_active"] = bool(data.get("is_active"))
    return fields


def create_offer(data: Mapping[str, Any]) -> int:
    fields = _offer_fields(data)
    with session_scope() as session:
        if session.execute(select(Offer.id).where(Offer.code == fields["code"])).first():
            raise StoreError("Offer code already exists")
        offer = Offer(**fields)
        session.add(offer)
        session.flush()
        return int(offer.id)


def update_offer(offer_id: int, data: Mapping[str, Any]) -> None:
    fields = _offer_fields(data, partial=True)
    with session_scope() as session:
        offer = session.get(Offer, offer_id)
        if not offer:
            raise StoreError("Offer not found")
        if "code" in fields and fields["code"] != offer.code:
            if session.execute(select(Offer.id).where(Offer.code == fields["code"])).first():
                raise StoreError("Offer code already exists")
        for key, value in fields.items():
            setattr(offer, key, value)


def delete_offer(offer_id: int) -> None:
    with session_scope() as session:
        offer = session.get(Offer, offer_id)
        if not offer:
            raise StoreError("Offer not found")
        session.delete(offer)


def toggle_offer(offer_id: int) -> bool:
    with session_scope() as session:
        offer = session.get(Offer, offer_id)
        if not offer:
            raise StoreError("Offer not found")
        offer.is_active = not offer.is_active
        return offer.is_active


def fetch_offers() -> list[dict[str, object]]:
    with session_scope() as session:
        offers = session.execute(select(Offer).order_by(Offer.priority.desc(), Offer.id.desc())).scalars()
        return [_serialize_offer(offer) for offer in offers]


def load_live_offers() -> list[dict[str, object]]:
    """Active offers still under their usage limit, highest priority first."""

    stmt = (
        select(Offer)
        .where(
            Offer.is_active.is_(True),
            or_(Offer.usage_limit.is_(None), Offer.used_count < Offer.usage_limit),
        )
        .order_by(Offer.priority.desc(), Offer.id.asc())
    )
    with session_scope() as session:
        return [_serialize_offer(offer) for offer in session.execute(stmt).scalars()]


def cart_offer_preview(lines: Sequence[Mapping[str, Any]]) -> dict[str, object]:
    """Best automatic offer and every other qualifying offer for a hydrated cart."""

    if not lines:
        return {"best_offer": None, "applicable_offers": []}
    offers = load_live_offers()
    applicable = get_applicable_offers(lines, offers)
    best = find_best_offer(lines, offers)

    def _public(result: Mapping[str, Any]) -> dict[str, object]:
        offer = result["offer"]
        return {
            "offer_id": offer["id"],
            "code": offer["code"],
            "title": offer["title"],
            "badge_text": offer["badge_text"],
            "discount": result["discount"],
            "description": result["description"],
            "applied_items": result["applied_items"],
        }

    return {
        "best_offer": _public(best) if best else None,
        "applicable_offers": [_public(result) for result in applicable],
    }


# --------------------------------------------------------------------------------------
# Newsletter
# --------------------------------------------------------------------------------------


def subscribe(email: str) -> dict[str, object]:
    """Add or reactivate a subscriber; new subscribers get a welcome email."""

    normalized = (email or "").strip().lower()
    if not normalized or "@" not in normalized:
        raise StoreError("Invalid email address")

    with session_scope() as session:
        existing = session.execute(
            select(NewsletterSubscriber).where(NewsletterSubscriber.email == normalized)
        ).scalar_one_or_none()
        if existing and existing.is_active:
            return {"created": False, "message": "You are already subscribed!"}
        if existing:
            existing.is_active = True
            return {"created": False, "message": "Welcome back! Your subscription is active again."}
        session.add(NewsletterSubscriber(email=normalized))

    result = Notifier.send_newsletter_welcome(normalized)
    if not result["sent"]:
        logger.warning("Welcome email to %s not sent: %s", normalized, result["error"])
    return {"created": True, "message": "Thank you for subscribing!"}


def unsubscribe(email: str) -> bool:
    normalized = (email or "").strip().lower()
    with session_scope() as session:
        subscriber = session.execute(
            select(NewsletterSubscriber).where(NewsletterSubscriber.email == normalized)
        ).scalar_one_or_none()
        if not subscriber or not subscriber.is_active:
            return False
        subscriber.is_active = False
        return True


def fetch_subscribers(
    *, search: Optional[str] = None, status: str = "all", page: int = 1, limit: int = 50
) -> dict[str, object]:
    stmt = select(NewsletterSubscriber)
    if search:
        stmt = stmt.where(func.lower(NewsletterSubscriber.email).like(f"%{search.lower()}%"))
    if status in ("active", "inactive"):
        stmt = stmt.where(NewsletterSubscriber.is_active.is_(status == "active"))

    page = max(1, page)
    with session_scope() as session:
        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = session.execute(
            stmt.order_by(NewsletterSubscriber.created_at.desc(), NewsletterSubscriber.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars()
        subscribers = [
            {"id": s.id, "email": s.email, "is_active": s.is_active, "created_at": s.created_at} for s in rows
        ]
    return {
        "subscribers": subscribers,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 1,
        "current_page": page,
    }


def toggle_subscriber(subscriber_id: int) -> bool:
    with session_scope() as session:
        subscriber = session.get(NewsletterSubscriber, subscriber_id)
        if not subscriber:
            raise StoreError("Subscriber not found")
        subscriber.is_active = not subscriber.is_active
        return subscriber.is_active


def delete_subscriber(subscriber_id: int) -> None:
    with session_scope() as session:
        subscriber = session.get(NewsletterSubscriber, subscriber_id)
        if not subscriber:
            raise StoreError("Subscriber not found")
        session.delete(subscriber)
