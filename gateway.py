import hashlib
import hmac
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from errors import UnverifiedEvent, ValidationError
from money import quantize

logger = logging.getLogger(__name__)

SUBSCRIPTION_ACTIVATED = "subscription.activated"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"

SUBSCRIPTION_EVENTS = (SUBSCRIPTION_ACTIVATED, SUBSCRIPTION_CANCELLED)
PAYMENT_EVENTS = (PAYMENT_CAPTURED, PAYMENT_FAILED)

SUBSCRIPTION_PLANS: Dict[str, Dict[str, Any]] = {
    "3months": {
        "name": "3 Months Plan",
        "amount": Decimal("559"),
        "currency": "INR",
        "duration_days": 90,
        "features": {"max_products": 50, "max_images": 200, "priority_support": False, "featured_listing": False},
    },
    "6months": {
        "name": "6 Months Plan",
        "amount": Decimal("779"),
        "currency": "INR",
        "duration_days": 180,
        "features": {"max_products": 100, "max_images": 500, "priority_support": True, "featured_listing": False},
    },
    "1year": {
        "name": "12 Months Plan",
        "amount": Decimal("899"),
        "currency": "INR",
        "duration_days": 365,
        "features": {"max_products": 200, "max_images": 1000, "priority_support": True, "featured_listing": True},
    },
}


def get_plan(plan: str) -> Dict[str, Any]:
    try:
        return SUBSCRIPTION_PLANS[plan]
    except KeyError:
        raise ValidationError(f"Invalid plan type {plan!r}; expected one of {sorted(SUBSCRIPTION_PLANS)}")


def _sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    body: raw request body, exactly as received
    signature: X-Razorpay-Signature header value
    """
    if not secret:
        logger.warning("Webhook secret not configured; rejecting event")
        return False
    if not signature:
        return False
    return hmac.compare_digest(_sign(secret, body), signature)


def require_verified_webhook(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    if not verify_webhook_signature(body, signature, secret):
        raise UnverifiedEvent("Invalid webhook signature")


def verify_payment_signature(entity_id: str, payment_id: str, signature: Optional[str], key_secret: Optional[str]) -> bool:
    """checkout callback check: HMAC of "<order or subscription id>|<payment id>"."""
    if not key_secret or not signature:
        return False
    return hmac.compare_digest(_sign(key_secret, f"{entity_id}|{payment_id}".encode()), signature)


def _entity(payload: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    # payloads arrive either as {"subscription": {"entity": {...}}} or {"subscription": {...}}
    obj = payload.get(name)
    if not obj:
        return None
    return obj.get("entity", obj)


def _timestamp(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def from_paise(value) -> Decimal:
    return quantize(Decimal(int(value or 0)) / Decimal("100"))


def parse_webhook_event(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    turn a verified webhook body into a flat event dict:

      subscription events:
        {"event", "gateway_subscription_id", "payment_id", "start_at", "end_at"}
      payment events:
        {"event", "payment_id", "gateway_subscription_id", "amount", "error_description"}

    other event types come back as {"event": ...} only.
    """
    event_type = data.get("event")
    if not event_type:
        raise ValidationError("Webhook payload has no event type")

    payload = data.get("payload") or {}
    event: Dict[str, Any] = {"event": event_type}

    if event_type in SUBSCRIPTION_EVENTS:
        subscription = _entity(payload, "subscription")
        if not subscription or not subscription.get("id"):
            raise ValidationError(f"{event_type} payload has no subscription id")
        payment = _entity(payload, "payment") or {}
        payment_id = (subscription.get("latest_invoice") or {}).get("payment_id") or payment.get("id")
        event.update(
            gateway_subscription_id=subscription["id"],
            payment_id=payment_id,
            start_at=_timestamp(subscription.get("start_at") or subscription.get("current_start")),
            end_at=_timestamp(subscription.get("end_at") or subscription.get("current_end")),
        )

    elif event_type in PAYMENT_EVENTS:
        payment = _entity(payload, "payment")
        if not payment or not payment.get("id"):
            raise ValidationError(f"{event_type} payload has no payment id")
        event.update(
            payment_id=payment["id"],
            gateway_subscription_id=payment.get("subscription_id"),
            amount=from_paise(payment.get("amount")),
            error_description=payment.get("error_description"),
        )

    return event
