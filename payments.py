"""Razorpay online payments: gateway orders, signature checks, refunds and webhook events."""

from __future__ import annotations

import json
import logging
from typing import Optional

import razorpay
import requests
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import CURRENCY, RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET, RAZORPAY_WEBHOOK_SECRET
from database import Order, StoreError, _serialize_order, session_scope
from notifications import Notifier
from orders import apply_status
from shipping import ship_order

logger = logging.getLogger(__name__)

GATEWAY_ERRORS = (BadRequestError, GatewayError, ServerError, requests.RequestException)


def to_paise(amount: float) -> int:
    return int(round(float(amount) * 100))


def _client() -> Optional[razorpay.Client]:
    if not (RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET):
        return None
    return razorpay.Client(auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET))


def create_payment_order(user_id: int, order_id: int) -> tuple[Optional[dict[str, object]], Optional[str]]:
    """Open a gateway order for the customer's pending order.

    Returns ``(checkout_payload, None)`` or ``(None, error)``.
    """

    client = _client()
    if client is None:
        logger.warning("Online payment requested but Razorpay keys are not configured.")
        return None, "Online payments are not available right now."

    with session_scope() as session:
        order = session.get(Order, order_id)
        if not order or order.user_id != user_id:
            return None, "Order not found"
        if order.status != "PENDING":
            return None, "This order is not awaiting payment."

        try:
            gateway_order = client.order.create(
                data={
                    "amount": to_paise(order.total),
                    "currency": CURRENCY,
                    "receipt": order.order_number,
                    "payment_capture": 1,
                }
            )
        except GATEWAY_ERRORS as exc:
            logger.exception("Razorpay order creation failed for %s.", order.order_number)
            return None, f"Payment gateway error: {exc}"

        order.payment_method = "RAZORPAY"
        order.gateway_order_id = gateway_order["id"]
        return (
            {
                "key_id": RAZORPAY_KEY_ID,
                "razorpay_order_id": gateway_order["id"],
                "amount": gateway_order.get("amount", to_paise(order.total)),
                "currency": CURRENCY,
                "order_number": order.order_number,
            },
            None,
        )


def _signature_valid(razorpay_order_id: str, razorpay_payment_id: str, signature: str) -> bool:
    client = razorpay.Client(auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET))
    try:
        client.utility.verify_payment_signature(
            {
                "razorpay_order_id": razorpay_order_id,
                "razorpay_payment_id": razorpay_payment_id,
                "razorpay_signature": signature,
            }
        )
    except SignatureVerificationError:
        return False
    return True


def _confirm_paid_order(session: Session, order: Order, payment_id: str, payment_data: dict[str, object], note: str) -> bool:
    order.payment_id = payment_id
    order.payment_data = json.dumps(payment_data)
    return apply_status(session, order, "CONFIRMED", note)


def _after_confirmation(order: dict[str, object]) -> None:
    """Confirmation message, then hand the parcel to the carrier."""

    results = Notifier.send_order_confirmation(order)
    if not any(result["sent"] for result in results.values()):
        logger.warning("No confirmation was delivered for order %s.", order["order_number"])
    try:
        ship_order(int(order["id"]))
    except StoreError as exc:
        logger.warning("Automatic shipping for order %s failed: %s", order["order_number"], exc)


def verify_payment(
    user_id: int, order_id: int, razorpay_order_id: str, razorpay_payment_id: str, signature: str
) -> dict[str, object]:
    """Check the checkout signature and confirm the order it paid for."""

    if not RAZORPAY_KEY_SECRET:
        raise StoreError("Online payments are not available right now.")
    if not (razorpay_order_id and razorpay_payment_id and signature):
        raise StoreError("Missing payment details.")

    with session_scope() as session:
        order = session.get(Order, order_id)
        if not order or order.user_id != user_id:
            raise StoreError("Order not found")
        if order.gateway_order_id != razorpay_order_id:
            raise StoreError("Payment does not match this order.")
        if not _signature_valid(razorpay_order_id, razorpay_payment_id, signature):
            logger.warning("Payment signature mismatch for order %s.", order.order_number)
            raise StoreError("Payment verification failed.")
        if order.payment_id == razorpay_payment_id and order.status != "PENDING":
            return _serialize_order(order)
        if order.status != "PENDING":
            raise StoreError("This order is not awaiting payment.")

        _confirm_paid_order(
            session,
            order,
            razorpay_payment_id,
            {
                "razorpay_order_id": razorpay_order_id,
                "razorpay_payment_id": razorpay_payment_id,
                "razorpay_signature": signature,
            },
            "Payment received via Razorpay",
        )
        session.flush()
        session.refresh(order)
        confirmed = _serialize_order(order)

    logger.info("Payment %s verified for order %s.", razorpay_payment_id, confirmed["order_number"])
    _after_confirmation(confirmed)
    return confirmed


def refund_payment(payment_id: str, amount: float) -> tuple[Optional[str], Optional[str]]:
    """Ask the gateway to refund part or all of a payment; returns ``(refund_id, error)``."""

    client = _client()
    if client is None:
        return None, "Razorpay keys are not configured"
    try:
        refund = client.payment.refund(payment_id, {"amount": to_paise(amount), "speed": "optimum"})
    except GATEWAY_ERRORS as exc:
        logger.exception("Refund of %.2f on payment %s failed.", amount, payment_id)
        return None, str(exc)
    logger.info("Refund %s requested on payment %s.", refund.get("id"), payment_id)
    return refund.get("id"), None


# --------------------------------------------------------------------------------------
# Webhook events
# --------------------------------------------------------------------------------------


def verify_webhook_signature(body: str, signature: Optional[str]) -> bool:
    if not (RAZORPAY_WEBHOOK_SECRET and signature):
        return False
    client = razorpay.Client(auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET))
    try:
        client.utility.verify_webhook_signature(body, signature, RAZORPAY_WEBHOOK_SECRET)
    except SignatureVerificationError:
        return False
    return True


def capture_payment(gateway_order_id: str, payment_id: str) -> bool:
    """Confirm a pending order once the gateway reports the money captured."""

    with session_scope() as session:
        order = session.execute(select(Order).where(Order.gateway_order_id == gateway_order_id)).scalars().first()
        if not order or order.status != "PENDING":
            return False
        _confirm_paid_order(
            session,
            order,
            payment_id,
            {"razorpay_order_id": gateway_order_id, "razorpay_payment_id": payment_id, "source": "webhook"},
            "Payment captured",
        )
        session.flush()
        session.refresh(order)
        confirmed = _serialize_order(order)

    _after_confirmation(confirmed)
    return True


def fail_payment(gateway_order_id: str, reason: Optional[str] = None) -> bool:
    """Cancel a still-pending order whose payment failed, returning its stock."""

    with session_scope() as session:
        order = session.execute(select(Order).where(Order.gateway_order_id == gateway_order_id)).scalars().first()
        if not order or order.status != "PENDING":
            return False
        apply_status(session, order, "CANCELLED", f"Payment failed: {reason}" if reason else "Payment failed")
        order.cancel_reason = "Payment failed"
        return True
