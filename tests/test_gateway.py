import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

import gateway
from errors import UnverifiedEvent, ValidationError

SECRET = "whsec_test"


def _sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_webhook_signature_round_trip():
    body = json.dumps({"event": "subscription.activated"}).encode()

    assert gateway.verify_webhook_signature(body, _sign(body), SECRET) is True
    # body tampered after signing
    assert gateway.verify_webhook_signature(body + b" ", _sign(body), SECRET) is False
    assert gateway.verify_webhook_signature(body, _sign(body, "other"), SECRET) is False
    assert gateway.verify_webhook_signature(body, None, SECRET) is False


def test_webhook_rejected_when_secret_not_configured():
    body = b"{}"
    assert gateway.verify_webhook_signature(body, _sign(body, ""), "") is False

    with pytest.raises(UnverifiedEvent):
        gateway.require_verified_webhook(body, _sign(body), None)


def test_payment_signature():
    signature = hmac.new(b"key_secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert gateway.verify_payment_signature("order_1", "pay_1", signature, "key_secret") is True
    assert gateway.verify_payment_signature("order_1", "pay_2", signature, "key_secret") is False


def test_plan_catalog():
    assert gateway.get_plan("1year")["amount"] == Decimal("899")
    assert gateway.get_plan("3months")["duration_days"] == 90
    with pytest.raises(ValidationError):
        gateway.get_plan("2years")


def test_parse_subscription_activated():
    data = {
        "event": "subscription.activated",
        "payload": {
            "subscription": {
                "entity": {
                    "id": "sub_1",
                    "current_start": 1704067200,
                    "current_end": 1735689600,
                    "latest_invoice": {"payment_id": "pay_1"},
                }
            }
        },
    }
    event = gateway.parse_webhook_event(data)

    assert event["event"] == "subscription.activated"
    assert event["gateway_subscription_id"] == "sub_1"
    assert event["payment_id"] == "pay_1"
    assert event["start_at"] == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert event["end_at"] == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_parse_subscription_event_payment_id_from_payment_entity():
    data = {
        "event": "subscription.activated",
        "payload": {
            "subscription": {"id": "sub_1"},
            "payment": {"entity": {"id": "pay_9"}},
        },
    }
    event = gateway.parse_webhook_event(data)
    assert event["payment_id"] == "pay_9"
    assert event["start_at"] is None


def test_parse_payment_event_converts_paise():
    data = {
        "event": "payment.failed",
        "payload": {
            "payment": {
                "entity": {
                    "id": "pay_1",
                    "amount": 89900,
                    "subscription_id": "sub_1",
                    "error_description": "Card declined",
                }
            }
        },
    }
    event = gateway.parse_webhook_event(data)

    assert event["amount"] == Decimal("899.00")
    assert event["gateway_subscription_id"] == "sub_1"
    assert event["error_description"] == "Card declined"


def test_parse_rejects_malformed_payloads():
    with pytest.raises(ValidationError):
        gateway.parse_webhook_event({"payload": {}})
    with pytest.raises(ValidationError):
        gateway.parse_webhook_event({"event": "subscription.cancelled", "payload": {}})
    with pytest.raises(ValidationError):
        gateway.parse_webhook_event({"event": "payment.captured", "payload": {"payment": {"entity": {}}}})


def test_parse_other_events_pass_through():
    assert gateway.parse_webhook_event({"event": "order.paid", "payload": {}}) == {"event": "order.paid"}
