"""Customer notifications over WhatsApp, SMS and email.

WhatsApp is tried first, SMS only when WhatsApp did not go out, and email is
always attempted. Every channel reports ``{"sent": bool, "error": str | None}``
and a missing credential is a skipped channel, never an exception.
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Mapping, Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from config import (
    EMAIL_DOMAIN,
    SITE_URL,
    SMTP_HOST,
    SMTP_PASS,
    SMTP_PORT,
    SMTP_USER,
    STORE_NAME,
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_PHONE_NUMBER,
    TWILIO_WHATSAPP_NUMBER,
)

logger = logging.getLogger(__name__)

SENDER_IDENTITIES = {
    "orders": ("Orders", "orders"),
    "support": ("Support", "support"),
    "marketing": ("", "hello"),
}


def _ok() -> dict[str, object]:
    return {"sent": True, "error": None}


def _failed(error: str) -> dict[str, object]:
    return {"sent": False, "error": error}


def format_phone(phone: Optional[str]) -> str:
    """E.164-style number; bare ten-digit numbers are treated as Indian mobiles."""

    raw = (phone or "").strip().replace(" ", "").replace("-", "")
    if not raw:
        return ""
    if raw.startswith("+"):
        return raw
    digits = "".join(ch for ch in raw if ch.isdigit())
    if len(digits) == 12 and digits.startswith("91"):
        return f"+{digits}"
    return f"+91{digits.lstrip('0')}"


def _sender(category: str) -> str:
    label, mailbox = SENDER_IDENTITIES.get(category, SENDER_IDENTITIES["support"])
    display = f"{STORE_NAME} {label}".strip()
    return f"{display} <{mailbox}@{EMAIL_DOMAIN}>"


class Notifier:
    """Outbound messaging for order and marketing events."""

    @staticmethod
    def _twilio_client() -> Optional[Client]:
        if not (TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN):
            return None
        return Client(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)

    @classmethod
    def send_email(cls, to: str, subject: str, html: str, category: str = "support") -> dict[str, object]:
        if not to:
            return _failed("No recipient email")
        if not (SMTP_USER and SMTP_PASS):
            logger.warning("Email to %s skipped: SMTP credentials missing.", to)
            return _failed("SMTP credentials missing")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = _sender(category)
        msg["To"] = to
        msg.attach(MIMEText("This email contains HTML content. Please use an HTML-compatible email client.", "plain"))
        msg.attach(MIMEText(html, "html"))

        try:
            server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=20)
            try:
                server.starttls()
                server.login(SMTP_USER, SMTP_PASS)
                server.sendmail(SMTP_USER, [to], msg.as_string())
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as exc:
            logger.exception("Email to %s failed.", to)
            return _failed(str(exc))

        logger.info("Email sent to %s: %s", to, subject)
        return _ok()

    @classmethod
    def send_whatsapp(cls, phone: str, body: str) -> dict[str, object]:
        client = cls._twilio_client()
        if client is None or not TWILIO_WHATSAPP_NUMBER:
            return _failed("WhatsApp not configured")
        to = format_phone(phone)
        if not to:
            return _failed("No phone number")
        try:
            client.messages.create(
                body=body,
                from_=f"whatsapp:{TWILIO_WHATSAPP_NUMBER}",
                to=f"whatsapp:{to}",
            )
        except (TwilioException, OSError) as exc:
            logger.exception("WhatsApp message to %s failed.", to)
            return _failed(str(exc))
        logger.info("WhatsApp message sent to %s", to)
        return _ok()

    @classmethod
    def send_sms(cls, phone: str, body: str) -> dict[str, object]:
        client = cls._twilio_client()
        if client is None or not TWILIO_PHONE_NUMBER:
            logger.warning("SMS skipped: Twilio not configured.")
            return _failed("SMS not configured")
        to = format_phone(phone)
        if not to:
            return _failed("No phone number")
        try:
            client.messages.create(body=body, from_=TWILIO_PHONE_NUMBER, to=to)
        except (TwilioException, OSError) as exc:
            logger.exception("SMS to %s failed.", to)
            return _failed(str(exc))
        logger.info("SMS sent to %s", to)
        return _ok()

    @classmethod
    def notify(
        cls,
        *,
        email: Optional[str],
        phone: Optional[str],
        subject: str,
        message: str,
        html: Optional[str] = None,
        category: str = "orders",
    ) -> dict[str, dict[str, object]]:
        """Fan a message out over every configured channel."""

        results: dict[str, dict[str, object]] = {
            "whatsapp": _failed("No phone number"),
            "sms": _failed("Skipped"),
            "email": _failed("No recipient email"),
        }
        if phone:
            results["whatsapp"] = cls.send_whatsapp(phone, message)
            if not results["whatsapp"]["sent"]:
                results["sms"] = cls.send_sms(phone, message)
        if email:
            results["email"] = cls.send_email(email, subject, html or f"<p>{escape(message)}</p>", category)
        return results

    # --- Business event methods ---

    @classmethod
    def send_order_confirmation(cls, order: Mapping[str, object]) -> dict[str, dict[str, object]]:
        number = order.get("order_number")
        message = (
            f"Hi {order.get('contact_name') or 'there'}, your {STORE_NAME} order {number} is confirmed. "
            f"Total: ₹{float(order.get('total') or 0):.2f}."
        )
        return cls.notify(
            email=str(order.get("contact_email") or ""),
            phone=str(order.get("contact_phone") or ""),
            subject=f"Order confirmed: {number}",
            message=message,
            html=order_confirmation_html(order),
        )

    @classmethod
    def send_shipping_update(
        cls, order: Mapping[str, object], awb: Optional[str], courier: Optional[str] = None
    ) -> dict[str, dict[str, object]]:
        number = order.get("order_number")
        carrier = f" via {courier}" if courier else ""
        message = f"Your order {number} has shipped{carrier}. Tracking number: {awb or 'to follow'}."
        return cls.notify(
            email=str(order.get("contact_email") or ""),
            phone=str(order.get("contact_phone") or ""),
            subject=f"Your order {number} is on its way",
            message=message,
        )

    @classmethod
    def send_delivery_confirmation(cls, order: Mapping[str, object]) -> dict[str, dict[str, object]]:
        number = order.get("order_number")
        message = (
            f"Your order {number} was delivered. We hope you love it! "
            f"Share a review at {SITE_URL}/account/orders/{order.get('id')}."
        )
        return cls.notify(
            email=str(order.get("contact_email") or ""),
            phone=str(order.get("contact_phone") or ""),
            subject=f"Delivered: {number}",
            message=message,
        )

    @classmethod
    def send_return_update(cls, order: Mapping[str, object], request: Mapping[str, object]) -> dict[str, dict[str, object]]:
        status = str(request.get("status") or "").lower()
        message = f"Your return request #{request.get('id')} for order {order.get('order_number')} is now {status}."
        if request.get("status") == "REFUNDED" and request.get("refund_amount"):
            message += f" Refund: ₹{float(request['refund_amount']):.2f}."
        return cls.notify(
            email=str(order.get("contact_email") or ""),
            phone=str(order.get("contact_phone") or ""),
            subject=f"Return update for {order.get('order_number')}",
            message=message,
            category="support",
        )

    @classmethod
    def send_cart_recovery_email(cls, order: Mapping[str, object], restore_url: str) -> dict[str, object]:
        return cls.send_email(
            str(order.get("contact_email") or ""),
            "You left something behind",
            cart_recovery_html(order, restore_url),
            category="marketing",
        )

    @classmethod
    def send_newsletter_welcome(cls, email: str) -> dict[str, object]:
        html = (
            f"<h2>Welcome to {escape(STORE_NAME)}</h2>"
            "<p>Thanks for subscribing. New collections and offers will land in your inbox first.</p>"
            f'<p><a href="{SITE_URL}/newsletter/unsubscribe?email={escape(email)}">Unsubscribe</a></p>'
        )
        return cls.send_email(email, f"Welcome to {STORE_NAME}", html, category="marketing")


def _items_table(order: Mapping[str, object]) -> str:
    rows = "".join(
        f"<tr><td>{escape(str(item['product_name']))}"
        f"{' (' + escape(str(item['variant_name'])) + ')' if item.get('variant_name') else ''}</td>"
        f"<td>{item['quantity']}</td><td>₹{float(item['unit_price']):.2f}</td></tr>"
        for item in order.get("items") or []
    )
    return f"<table><tr><th>Item</th><th>Qty</th><th>Price</th></tr>{rows}</table>"


def order_confirmation_html(order: Mapping[str, object]) -> str:
    discount = float(order.get("discount_total") or 0)
    discount_row = f"<p>Discount: -₹{discount:.2f}</p>" if discount else ""
    return (
        f"<h2>Thank you for your order, {escape(str(order.get('contact_name') or ''))}!</h2>"
        f"<p>Order number: <strong>{escape(str(order.get('order_number')))}</strong></p>"
        f"{_items_table(order)}"
        f"<p>Subtotal: ₹{float(order.get('subtotal') or 0):.2f}</p>"
        f"{discount_row}"
        f"<p>Shipping: ₹{float(order.get('shipping_cost') or 0):.2f}</p>"
        f"<p><strong>Total: ₹{float(order.get('total') or 0):.2f}</strong></p>"
        f"<p>Payment: {escape(str(order.get('payment_method') or ''))}</p>"
    )


def cart_recovery_html(order: Mapping[str, object], restore_url: str) -> str:
    return (
        f"<h2>Your {escape(STORE_NAME)} bag is waiting</h2>"
        "<p>You were just a step away from checking out. Your items are saved:</p>"
        f"{_items_table(order)}"
        f"<p><strong>Total: ₹{float(order.get('total') or 0):.2f}</strong></p>"
        f'<p><a href="{escape(restore_url)}">Complete your order</a></p>'
    )
