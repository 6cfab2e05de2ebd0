"""Razorpay gateway orders, checkout verification, refunds and webhook events."""

from __future__ import annotations

import hashlib
import hmac
import json
from unittest.mock import MagicMock, patch

import pytest
from razorpay.errors import BadRequestError

import payments
from database import StoreError, get_order, get_product
from payments import create_payment_order, refund_payment, to_paise, verify_payment

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def online_order(customer, order_for):
    return order_for(customer["id"], payment_method="ONLINE")


@pytest.fixture
def gateway_keys(monkeypatch):
    monkeypatch.setattr(payments, "RAZORPAY_KEY_ID", "rzp_test_key")
    monkeypatch.setattr(payments, "RAZORPAY_KEY_SECRET", "rzp_test_secret")


def test_to_paise_rounds():
    assert to_paise(499.99) == 49999
    assert to_paise("12.5") == 1250


class TestGatewayOrder:
    def test_unconfigured_gateway(self, customer, online_order):
        assert create_payment_order(customer["id"], online_order["id"]) == (
            None,
            "Online payments are not available right now.",
        )

    def test_opens_gateway_order(self, customer, online_order):
        gateway = MagicMock()
        gateway.order.create.return_value = {"id": "order_G1", "amount": 100000}
        with patch("payments._client", return_value=gateway):
            payload, error = create_payment_order(customer["id"], online_order["id"])

        assert error is None
        assert payload["razorpay_order_id"] == "order_G1"
        assert payload["amount"] == 100000
        sent = gateway.order.create.call_args.kwargs["data"]
        assert sent["receipt"] == online_order["order_number"]
        assert sent["amount"] == 100000
        stored = get_order(online_order["id"])
        assert stored["payment_method"] == "RAZORPAY"
        assert stored["gateway_order_id"] == "order_G1"

    def test_confirmed_order_is_not_payable(self, customer, order_for):
        order = order_for(customer["id"])
        with patch("payments._client", return_value=MagicMock()):
            assert create_payment_order(customer["id"], order["id"]) == (None, "This order is not awaiting payment.")

    def test_gateway_error_is_reported(self, customer, online_order):
        gateway = MagicMock()
        gateway.order.create.side_effect = BadRequestError("Authentication failed")
        with patch("payments._client", return_value=gateway):
            payload, error = create_payment_order(customer["id"], online_order["id"])
        assert payload is None
        assert error == "Payment gateway error: Authentication failed"

    def test_route_checks_ownership(self, client, customer, make_user, order_for):
        other = order_for(make_user("other@example.com"), payment_method="ONLINE")
        assert client.post("/payments/razorpay/order", json={"order_id": other["id"]}).status_code == 403


class TestVerifyPayment:
    @pytest.fixture
    def awaiting(self, online_order, set_order_fields, gateway_keys):
        set_order_fields(online_order["id"], gateway_order_id="order_G1")
        return online_order

    def _verify(self, client, order, signature="sig"):
        return client.post(
            "/payments/razorpay/verify",
            json={
                "order_id": order["id"],
                "razorpay_order_id": "order_G1",
                "razorpay_payment_id": "pay_42",
                "razorpay_signature": signature,
            },
        )

    def test_valid_signature_confirms_and_ships(self, client, awaiting):
        with patch("payments._signature_valid", return_value=True):
            response = self._verify(client, awaiting)

        assert response.status_code == 200
        assert response.get_json()["order"]["status"] == "CONFIRMED"
        stored = get_order(awaiting["id"])
        assert stored["payment_id"] == "pay_42"
        assert stored["status"] == "SHIPPED"
        assert stored["shipment_awb"].startswith("TRACK-")

    def test_repeat_verification_is_harmless(self, client, awaiting):
        with patch("payments._signature_valid", return_value=True):
            self._verify(client, awaiting)
            response = self._verify(client, awaiting)
        assert response.status_code == 200
        assert response.get_json()["order"]["status"] == "SHIPPED"

    def test_bad_signature(self, client, awaiting):
        with patch("payments._signature_valid", return_value=False):
            response = self._verify(client, awaiting, signature="forged")
        assert response.status_code == 400
        assert response.get_json()["error"] == "Payment verification failed."
        assert get_order(awaiting["id"])["status"] == "PENDING"

    def test_mismatched_gateway_order(self, customer, awaiting):
        with pytest.raises(StoreError, match="does not match"):
            verify_payment(customer["id"], awaiting["id"], "order_other", "pay_42", "sig")

    def test_missing_details(self, customer, awaiting):
        with pytest.raises(StoreError, match="Missing payment details"):
            verify_payment(customer["id"], awaiting["id"], "order_G1", "", "sig")


class TestRefunds:
    def test_refund_in_paise(self):
        gateway = MagicMock()
        gateway.payment.refund.return_value = {"id": "rfnd_1"}
        with patch("payments._client", return_value=gateway):
            assert refund_payment("pay_1", 500.5) == ("rfnd_1", None)
        gateway.payment.refund.assert_called_once_with("pay_1", {"amount": 50050, "speed": "optimum"})

    def test_gateway_rejection(self):
        gateway = MagicMock()
        gateway.payment.refund.side_effect = BadRequestError("The refund amount provided is greater than amount captured")
        with patch("payments._client", return_value=gateway):
            refund_id, error = refund_payment("pay_1", 99999)
        assert refund_id is None
        assert "greater than amount captured" in error

    def test_unconfigured(self):
        assert refund_payment("pay_1", 10) == (None, "Razorpay keys are not configured")


class TestRazorpayWebhook:
    @pytest.fixture(autouse=True)
    def webhook_secret(self, monkeypatch):
        monkeypatch.setattr(payments, "RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)

    def _post(self, client, event: dict, *, secret: str = WEBHOOK_SECRET):
        body = json.dumps(event)
        signature = hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()
        return client.post(
            "/api/webhooks/razorpay",
            data=body,
            content_type="application/json",
            headers={"X-Razorpay-Signature": signature},
        )

    @staticmethod
    def _payment_event(name: str, **entity) -> dict:
        return {"event": name, "payload": {"payment": {"entity": {"order_id": "order_W1", "id": "pay_W1", **entity}}}}

    def test_captured_payment_confirms_order(self, client, online_order, set_order_fields):
        set_order_fields(online_order["id"], gateway_order_id="order_W1")
        response = self._post(client, self._payment_event("payment.captured"))
        assert response.status_code == 200
        assert response.get_json() == {"received": True}
        stored = get_order(online_order["id"])
        assert stored["payment_id"] == "pay_W1"
        assert stored["status"] == "SHIPPED"
        assert stored["payment_data"]["source"] == "webhook"

    def test_failed_payment_cancels_and_restocks(self, client, customer, make_product, order_for, set_order_fields):
        pid = make_product(stock=4)
        order = order_for(customer["id"], product_id=pid, quantity=2, payment_method="ONLINE")
        set_order_fields(order["id"], gateway_order_id="order_W1")

        self._post(client, self._payment_event("payment.failed", error_description="Card declined"))

        stored = get_order(order["id"])
        assert stored["status"] == "CANCELLED"
        assert stored["cancel_reason"] == "Payment failed"
        assert stored["events"][-1]["note"] == "Payment failed: Card declined"
        assert get_product(pid)["stock"] == 4

    def test_bad_signature_is_rejected(self, client, online_order, set_order_fields):
        set_order_fields(online_order["id"], gateway_order_id="order_W1")
        response = self._post(client, self._payment_event("payment.captured"), secret="not-the-secret")
        assert response.status_code == 401
        assert get_order(online_order["id"])["status"] == "PENDING"

    def test_unknown_events_are_acknowledged(self, client):
        assert self._post(client, {"event": "order.paid", "payload": {}}).status_code == 200

    def test_capture_for_unknown_order_is_ignored(self, client):
        response = self._post(client, self._payment_event("payment.captured", order_id="order_missing"))
        assert response.status_code == 200
