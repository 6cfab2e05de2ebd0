"""Order status flow, cancellations, admin listings and abandoned checkout recovery."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from config import ABANDONED_AFTER_MINUTES, ABANDONED_BATCH_LIMIT, SITE_URL
from database import (
    ORDER_STATUSES,
    Order,
    StoreError,
    User,
    _serialize_order,
    add_order_event,
    restock_items,
    session_scope,
    utcnow,
)
from notifications import Notifier

logger = logging.getLogger(__name__)

STATUS_RANK = {"PENDING": 0, "CONFIRMED": 1, "PROCESSING": 2, "SHIPPED": 3, "DELIVERED": 4}
TERMINAL_STATUSES = ("CANCELLED", "DELIVERED")
CUSTOMER_CANCELLABLE = ("PENDING", "CONFIRMED")
RECOVERED_STATUSES = ("CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED")


def restock_order(session: Session, order: Order) -> None:
    restock_items(session, [(item.product_id, item.variant_id, item.quantity) for item in order.items])


def apply_status(session: Session, order: Order, status: str, note: Optional[str] = None) -> bool:
    """Move an order to ``status`` inside an open transaction.

    Returns False when the order is already there. Cancelling puts the items
    back on the shelf.
    """

    if status not in ORDER_STATUSES:
        raise StoreError("Invalid status")
    if order.status == status:
        return False
    if order.status in TERMINAL_STATUSES:
        raise StoreError(f"A {order.status.lower()} order cannot be changed.")

    if status == "CANCELLED":
        restock_order(session, order)
    previous = order.status
    order.status = status
    add_order_event(session, order, status, note)
    logger.info("Order %s moved from %s to %s.", order.order_number, previous, status)
    return True


def notify_status_change(order: dict[str, object]) -> None:
    """Send the customer message that goes with a shipping milestone."""

    status = order.get("status")
    if status == "SHIPPED":
        shipping = order.get("shipping_data") or {}
        results = Notifier.send_shipping_update(order, order.get("shipment_awb"), shipping.get("courier"))
    elif status == "DELIVERED":
        results = Notifier.send_delivery_confirmation(order)
    else:
        return
    if not any(result["sent"] for result in results.values()):
        logger.warning("No %s notification was delivered for order %s.", str(status).lower(), order.get("order_number"))


def update_order_status(order_id: int, status: str, note: Optional[str] = None) -> dict[str, object]:
    """Admin status change; shipping milestones notify the customer after commit."""

    status = (status or "").upper()
    with session_scope() as session:
        order = session.get(Order, order_id)
        if not order:
            raise StoreError("Order not found")
        changed = apply_status(session, order, status, note)
        if changed and status == "CANCELLED":
            order.cancel_reason = note or order.cancel_reason
        session.flush()
        session.refresh(order)
        updated = _serialize_order(order)

    if changed:
        notify_status_change(updated)
    return updated


def cancel_order(order_id: int, reason: Optional[str] = None, *, customer_id: Optional[int] = None) -> dict[str, object]:
    """Cancel and restock. Customers may only cancel before the order is processed."""

    with session_scope() as session:
        order = session.get(Order, order_id)
        if not order or (customer_id is not None and order.user_id != customer_id):
            raise StoreError("Order not found")
        if customer_id is not None and order.status not in CUSTOMER_CANCELLABLE:
            raise StoreError("Only pending or confirmed orders can be cancelled.")
        if order.status == "CANCELLED":
            raise StoreError("This order is already cancelled.")
        apply_status(session, order, "CANCELLED", reason or "Order cancelled")
        order.cancel_reason = reason or None
        session.flush()
        session.refresh(order)
        return _serialize_order(order)


# --------------------------------------------------------------------------------------
# Admin listings
# --------------------------------------------------------------------------------------


def _parse_day(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d")
    except ValueError as exc:
        raise StoreError(f"Invalid date: {value}") from exc


def get_orders(
    *,
    status: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> dict[str, object]:
    """Paginated order list filtered by status, order number or customer email, and date range."""

    stmt = select(Order).join(User, Order.user, isouter=True)
    if status and status.lower() != "all":
        stmt = stmt.where(Order.status == status.upper())
    if search:
        like_term = f"%{search.strip().lower()}%"
        stmt = stmt.where(or_(func.lower(Order.order_number).like(like_term), func.lower(User.email).like(like_term)))
    start = _parse_day(date_from)
    if start:
        stmt = stmt.where(Order.created_at >= start)
    end = _parse_day(date_to)
    if end:
        stmt = stmt.where(Order.created_at < end + timedelta(days=1))

    page = max(1, page)
    limit = max(1, limit)
    with session_scope() as session:
        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = session.execute(
            stmt.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars()
        orders = [_serialize_order(order) for order in rows]
    return {"orders": orders, "total": total, "pages": math.ceil(total / limit), "current_page": page}


def get_order_stats() -> dict[str, object]:
    with session_scope() as session:
        counts = dict(session.execute(select(Order.status, func.count(Order.id)).group_by(Order.status)).all())
        revenue = session.scalar(
            select(func.coalesce(func.sum(Order.total), 0)).where(Order.status != "CANCELLED")
        )
    stats: dict[str, object] = {status.lower(): int(counts.get(status, 0)) for status in ORDER_STATUSES}
    stats["total"] = sum(int(count) for count in counts.values())
    stats["revenue"] = round(float(revenue or 0), 2)
    return stats


# --------------------------------------------------------------------------------------
# Abandoned checkouts
# --------------------------------------------------------------------------------------


def _abandoned_cutoff(now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) - timedelta(minutes=ABANDONED_AFTER_MINUTES)


def get_abandoned_checkouts(now: Optional[datetime] = None) -> list[dict[str, object]]:
    """Pending orders left unpaid for longer than the abandonment window."""

    moment = now or utcnow()
    stmt = (
        select(Order)
        .where(Order.status == "PENDING", Order.created_at < _abandoned_cutoff(moment))
        .order_by(Order.created_at.desc())
    )
    with session_scope() as session:
        orders = [_serialize_order(order) for order in session.execute(stmt).scalars()]
    for order in orders:
        order["minutes_abandoned"] = int((moment - order["created_at"]).total_seconds() // 60)
    return orders


def send_recovery_email(order_id: int) -> dict[str, object]:
    """Email the customer a link that restores the abandoned order into their cart."""

    order = None
    with session_scope() as session:
        entity = session.get(Order, order_id)
        if entity:
            order = _serialize_order(entity)
    if not order:
        raise StoreError("Order not found")
    if order["status"] != "PENDING":
        raise StoreError("Only pending orders can be recovered.")

    result = Notifier.send_cart_recovery_email(order, f"{SITE_URL}/cart/restore/{order_id}")
    if result["sent"]:
        with session_scope() as session:
            entity = session.get(Order, order_id)
            entity.recovery_email_sent = True
            entity.recovery_email_sent_at = utcnow()
        logger.info("Recovery email sent for order %s.", order["order_number"])
    else:
        logger.warning("Recovery email for order %s failed: %s", order["order_number"], result["error"])
    return result


def process_abandoned_carts(limit: int = ABANDONED_BATCH_LIMIT, now: Optional[datetime] = None) -> dict[str, int]:
    """Email every abandoned checkout that has not been contacted yet, in batches."""

    stmt = (
        select(Order.id)
        .where(
            Order.status == "PENDING",
            Order.created_at < _abandoned_cutoff(now),
            Order.recovery_email_sent.is_(False),
        )
        .order_by(Order.created_at.asc())
        .limit(limit)
    )
    with session_scope() as session:
        order_ids = list(session.execute(stmt).scalars())

    sent = failed = 0
    for order_id in order_ids:
        if send_recovery_email(order_id)["sent"]:
            sent += 1
        else:
            failed += 1
    return {"processed": len(order_ids), "sent": sent, "failed": failed}


def get_abandoned_cart_stats(now: Optional[datetime] = None) -> dict[str, object]:
    moment = now or utcnow()
    with session_scope() as session:
        last_24h = session.scalar(
            select(func.count(Order.id)).where(
                Order.status == "PENDING", Order.created_at >= moment - timedelta(days=1)
            )
        )
        last_7_days = session.scalar(
            select(func.count(Order.id)).where(
                Order.status == "PENDING", Order.created_at >= moment - timedelta(days=7)
            )
        )
        emails_sent = session.scalar(select(func.count(Order.id)).where(Order.recovery_email_sent.is_(True)))
        recovered = session.scalar(
            select(func.count(Order.id)).where(
                Order.recovery_email_sent.is_(True), Order.status.in_(RECOVERED_STATUSES)
            )
        )
    emails_sent = int(emails_sent or 0)
    recovered = int(recovered or 0)
    return {
        "last_24h": int(last_24h or 0),
        "last_7_days": int(last_7_days or 0),
        "emails_sent": emails_sent,
        "recovered": recovered,
        "recovery_rate": round(recovered / emails_sent * 100, 1) if emails_sent else 0.0,
    }
