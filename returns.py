"""Customer return requests and their admin review."""

from __future__ import annotations

import logging
from typing import Mapping, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from database import (
    RETURN_STATUSES,
    Order,
    OrderItem,
    ReturnItem,
    ReturnRequest,
    StoreError,
    User,
    _as_float,
    _as_int,
    _serialize_order,
    restock_items,
    session_scope,
)
from notifications import Notifier
from payments import refund_payment

logger = logging.getLogger(__name__)

RESTOCK_STATUSES = ("APPROVED", "REFUNDED")


def _serialize_return(request: ReturnRequest) -> dict[str, object]:
    return {
        "id": request.id,
        "order_id": request.order_id,
        "order_number": request.order.order_number if request.order else None,
        "user_id": request.user_id,
        "status": request.status,
        "reason": request.reason,
        "comment": request.comment,
        "refund_amount": request.refund_amount,
        "refund_id": request.refund_id,
        "restocked": request.restocked,
        "created_at": request.created_at,
        "updated_at": request.updated_at,
        "items": [
            {
                "order_item_id": item.order_item_id,
                "product_id": item.order_item.product_id,
                "product_name": item.order_item.product_name,
                "variant_name": item.order_item.variant_name,
                "quantity": item.quantity,
                "unit_price": float(item.order_item.unit_price),
            }
            for item in request.items
        ],
    }


def _already_requested(session: Session, order_id: int) -> dict[int, int]:
    """Quantities per order item tied up in returns that were not rejected."""

    rows = session.execute(
        select(ReturnItem.order_item_id, func.sum(ReturnItem.quantity))
        .join(ReturnRequest, ReturnItem.request)
        .where(ReturnRequest.order_id == order_id, ReturnRequest.status != "REJECTED")
        .group_by(ReturnItem.order_item_id)
    ).all()
    return {int(item_id): int(quantity or 0) for item_id, quantity in rows}


def create_return_request(
    user_id: int,
    order_id: int,
    items: Sequence[Mapping[str, object]],
    reason: str,
    comment: Optional[str] = None,
) -> dict[str, object]:
    reason = (reason or "").strip()
    if not reason:
        raise StoreError("Please tell us why you are returning these items.")
    if not items:
        raise StoreError("Select at least one item to return.")

    with session_scope() as session:
        order = session.get(Order, order_id)
        if not order or order.user_id != user_id:
            raise StoreError("Order not found")
        if order.status != "DELIVERED":
            raise StoreError("Only delivered orders can be returned.")

        order_items = {item.id: item for item in order.items}
        requested = _already_requested(session, order_id)
        request = ReturnRequest(order_id=order_id, user_id=user_id, reason=reason, comment=comment or None)

        for raw in items:
            item_id = _as_int(raw.get("order_item_id"))
            quantity = _as_int(raw.get("quantity"))
            order_item = order_items.get(item_id)
            if order_item is None:
                raise StoreError("That item is not part of this order.")
            if quantity < 1:
                raise StoreError("Return quantity must be at least 1.")
            remaining = order_item.quantity - requested.get(item_id, 0)
            if quantity > remaining:
                raise StoreError(f"You can return at most {max(remaining, 0)} of {order_item.product_name}.")
            requested[item_id] = requested.get(item_id, 0) + quantity
            request.items.append(ReturnItem(order_item_id=item_id, quantity=quantity))

        session.add(request)
        session.flush()
        session.refresh(request)
        logger.info("Return request %s opened for order %s.", request.id, order.order_number)
        return _serialize_return(request)


def default_refund_amount(request: ReturnRequest) -> float:
    """What the customer paid for the returned units, net of prorated discounts."""

    total = 0.0
    for item in request.items:
        order_item: OrderItem = item.order_item
        per_unit_discount = float(order_item.discount) / order_item.quantity if order_item.quantity else 0.0
        total += (float(order_item.unit_price) - per_unit_discount) * item.quantity
    return round(total, 2)


def _restock_return(session: Session, request: ReturnRequest) -> None:
    if request.restocked:
        return
    restock_items(
        session,
        [(item.order_item.product_id, item.order_item.variant_id, item.quantity) for item in request.items],
    )
    request.restocked = True


def _reviewable_request(session: Session, request_id: int, status: str) -> ReturnRequest:
    request = session.get(ReturnRequest, request_id)
    if not request:
        raise StoreError("Return request not found")
    if request.status == "REFUNDED":
        raise StoreError("This return has already been refunded.")
    if request.restocked and status not in RESTOCK_STATUSES:
        raise StoreError("These items are already back in stock, so the return can only be refunded.")
    return request


def update_return_status(
    request_id: int,
    status: str,
    comment: Optional[str] = None,
    refund_amount: Optional[float] = None,
) -> dict[str, object]:
    """Admin decision on a return.

    Approving or refunding puts the items back in stock exactly once, after
    which the request can no longer be rejected or reopened. Refunding an order
    paid online asks the gateway first; a gateway failure leaves the request
    untouched.
    """

    status = (status or "").upper()
    if status not in RETURN_STATUSES:
        raise StoreError("Invalid return status")

    amount: Optional[float] = None
    gateway_payment_id: Optional[str] = None
    with session_scope() as session:
        request = _reviewable_request(session, request_id, status)
        if status == "REFUNDED":
            amount = _as_float(refund_amount)
            if amount <= 0:
                amount = default_refund_amount(request)
            order = request.order
            if order.payment_method == "RAZORPAY" and order.payment_id and amount > 0:
                gateway_payment_id = order.payment_id

    refund_id: Optional[str] = None
    if gateway_payment_id:
        refund_id, error = refund_payment(gateway_payment_id, amount)
        if error:
            raise StoreError(f"Refund failed at gateway: {error}")
        logger.info("Gateway refund %s issued for return request %s.", refund_id, request_id)

    with session_scope() as session:
        request = session.get(ReturnRequest, request_id)
        if status == "REFUNDED":
            request.refund_amount = amount
            request.refund_id = refund_id
        if status in RESTOCK_STATUSES:
            _restock_return(session, request)

        request.status = status
        if comment:
            request.comment = comment
        session.flush()
        session.refresh(request)
        updated = _serialize_return(request)
        order_payload = _serialize_order(request.order, include_items=False)

    logger.info("Return request %s is now %s.", request_id, status)
    Notifier.send_return_update(order_payload, updated)
    return updated


def mark_refund_processed(payment_id: str, refund_id: Optional[str], amount_paise: object) -> Optional[int]:
    """Settle the approved return behind a gateway refund; returns its id when one matched."""

    with session_scope() as session:
        order = session.execute(select(Order).where(Order.payment_id == payment_id)).scalars().first()
        if not order:
            return None
        request = session.execute(
            select(ReturnRequest)
            .where(ReturnRequest.order_id == order.id, ReturnRequest.status == "APPROVED")
            .order_by(ReturnRequest.id.asc())
        ).scalars().first()
        if not request:
            return None
        _restock_return(session, request)
        request.status = "REFUNDED"
        request.refund_amount = round(_as_float(amount_paise) / 100, 2)
        request.refund_id = refund_id or request.refund_id
        request.comment = f"Refund processed: {refund_id}"
        return int(request.id)


def fetch_returns(*, status: Optional[str] = None) -> list[dict[str, object]]:
    """Admin list, newest first, with the customer's name and email."""

    stmt = (
        select(ReturnRequest, User.name, User.email)
        .join(User, ReturnRequest.user_id == User.id)
        .order_by(ReturnRequest.created_at.desc(), ReturnRequest.id.desc())
    )
    if status and status.lower() != "all":
        stmt = stmt.where(ReturnRequest.status == status.upper())
    with session_scope() as session:
        return [
            {**_serialize_return(request), "customer_name": name, "customer_email": email}
            for request, name, email in session.execute(stmt).all()
        ]


def fetch_returns_for_user(user_id: int) -> list[dict[str, object]]:
    with session_scope() as session:
        requests = session.execute(
            select(ReturnRequest)
            .where(ReturnRequest.user_id == user_id)
            .order_by(ReturnRequest.created_at.desc(), ReturnRequest.id.desc())
        ).scalars()
        return [_serialize_return(request) for request in requests]
