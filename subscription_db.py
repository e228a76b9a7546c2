import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from psycopg import Connection

import gateway
from commission_engine import calculate_employee_commission, referral_terms, resolve_employee_payee
from db.db import get_conn
from db.repositories import (
    clear_vendor_subscription_flag,
    ensure_employee_commission,
    ensure_referral_commission,
    expire_due_subscriptions,
    find_subscription_for_update,
    get_employee,
    get_system_settings,
    get_vendor,
    get_vendor_commission_settings,
    increment_sellers_assigned,
    insert_subscription,
    insert_subscription_payment,
    mark_subscription_active,
    set_subscription_status,
    set_vendor_subscription_summary,
)
from errors import NotFound
from subscription_engine import activation_window, should_activate, should_cancel, status_after_failed_payment

logger = logging.getLogger(__name__)


def create_subscription(
    vendor_id: int,
    plan: str,
    gateway_subscription_id: Optional[str],
    gateway_order_id: Optional[str] = None,
) -> Dict[str, Any]:
    """pending subscription priced from the plan catalog."""
    plan_info = gateway.get_plan(plan)
    with get_conn() as conn:
        try:
            get_vendor(conn, vendor_id)
            subscription = insert_subscription(
                conn,
                vendor_id=vendor_id,
                plan=plan,
                amount=plan_info["amount"],
                currency=plan_info["currency"],
                gateway_subscription_id=gateway_subscription_id,
                gateway_order_id=gateway_order_id,
            )
            conn.commit()
            return subscription
        except Exception:
            conn.rollback()
            raise


def handle_event(event: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    DB-backed variant of subscription_engine.handle_event.

    event: flat dict from gateway.parse_webhook_event
    returns {"status": applied|duplicate|unknown_subscription|ignored, "event", "subscription_id", ...}
    """
    handler = HANDLERS.get(event["event"])
    if handler is None:
        logger.info("Ignoring gateway event %s", event["event"])
        return _result("ignored", event)

    now = now or datetime.now(timezone.utc)
    with get_conn() as conn:
        try:
            result = handler(conn, event, now)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    if result["status"] == "unknown_subscription":
        logger.warning(
            "%s for unknown subscription (gateway_subscription_id=%s, payment_id=%s)",
            event["event"], event.get("gateway_subscription_id"), event.get("payment_id"),
        )
    else:
        logger.info("%s -> %s (subscription %s)", event["event"], result["status"], result["subscription_id"])
    return result


def _result(status, event, subscription=None, **extra):
    out = {
        "status": status,
        "event": event["event"],
        "subscription_id": subscription["id"] if subscription else None,
    }
    out.update(extra)
    return out


def _on_activated_in_tx(conn: Connection, event: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    subscription = find_subscription_for_update(conn, gateway_subscription_id=event["gateway_subscription_id"])
    if subscription is None:
        return _result("unknown_subscription", event)

    payment_id = event.get("payment_id")
    if not should_activate(subscription, payment_id):
        return _result("duplicate", event, subscription)

    start, end = activation_window(event, subscription["plan"], now)
    subscription = mark_subscription_active(conn, subscription["id"], start, end, payment_id)
    set_vendor_subscription_summary(
        conn,
        subscription["vendor_id"],
        start,
        end,
        subscription["gateway_subscription_id"],
        payment_id,
    )

    vendor = get_vendor(conn, subscription["vendor_id"])
    referral_id = _create_referral_commission(conn, vendor, subscription)
    employee_id = _create_employee_commission(conn, vendor, subscription)

    return _result(
        "applied",
        event,
        subscription,
        referral_commission_id=referral_id,
        employee_commission_id=employee_id,
    )


def _create_referral_commission(conn: Connection, vendor: Dict[str, Any], subscription: Dict[str, Any]) -> Optional[int]:
    referrer_id = vendor["referred_by"]
    if referrer_id is None:
        return None

    terms = referral_terms(
        subscription["amount"],
        get_vendor_commission_settings(conn, referrer_id),
        get_system_settings(conn),
    )
    if terms is None:
        return None
    percentage, amount = terms

    commission_id, created = ensure_referral_commission(
        conn,
        referrer_id=referrer_id,
        referred_vendor_id=vendor["id"],
        referral_code=vendor["referred_by_code"],
        subscription=subscription,
        percentage=percentage,
        amount=amount,
    )
    if not created:
        return None
    logger.info(
        "Referral commission %s created: %s (%s%%) for referrer %s on subscription %s",
        commission_id, amount, percentage, referrer_id, subscription["id"],
    )
    return commission_id


def _create_employee_commission(conn: Connection, vendor: Dict[str, Any], subscription: Dict[str, Any]) -> Optional[int]:
    if vendor["assigned_employee_id"] is None:
        return None

    assigned = get_employee(conn, vendor["assigned_employee_id"])
    super_employee = None
    if assigned["role"] == "employee":
        super_employee = get_employee(conn, assigned["super_employee_id"])

    resolved = resolve_employee_payee(assigned, super_employee)
    if resolved is None:
        return None
    payee, percentage = resolved

    amount = calculate_employee_commission(subscription["amount"], percentage)
    if amount <= 0:
        return None

    commission_id, created = ensure_employee_commission(conn, payee["id"], vendor, subscription, percentage, amount)
    if not created:
        return None

    increment_sellers_assigned(conn, payee["id"])
    if assigned["id"] != payee["id"]:
        increment_sellers_assigned(conn, assigned["id"])

    logger.info(
        "Employee commission %s created: %s (%s%%) for super employee %s on seller %s",
        commission_id, amount, percentage, payee["id"], vendor["id"],
    )
    return commission_id


def _on_cancelled_in_tx(conn: Connection, event: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    subscription = find_subscription_for_update(conn, gateway_subscription_id=event["gateway_subscription_id"])
    if subscription is None:
        return _result("unknown_subscription", event)

    if not should_cancel(subscription):
        return _result("duplicate", event, subscription)

    set_subscription_status(conn, subscription["id"], "cancelled", cancelled_at=now)
    clear_vendor_subscription_flag(conn, subscription["vendor_id"])
    return _result("applied", event, subscription)


def _on_payment_captured_in_tx(conn: Connection, event: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    subscription = find_subscription_for_update(
        conn,
        gateway_subscription_id=event.get("gateway_subscription_id"),
        payment_id=event["payment_id"],
    )
    if subscription is None:
        return _result("unknown_subscription", event)

    created = insert_subscription_payment(
        conn, subscription["id"], event.get("amount"), "success", event["payment_id"], "Subscription payment"
    )
    return _result("applied" if created else "duplicate", event, subscription)


def _on_payment_failed_in_tx(conn: Connection, event: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    subscription = find_subscription_for_update(
        conn,
        gateway_subscription_id=event.get("gateway_subscription_id"),
        payment_id=event["payment_id"],
    )
    if subscription is None:
        return _result("unknown_subscription", event)

    description = event.get("error_description") or "Payment failed"
    created = insert_subscription_payment(
        conn, subscription["id"], event.get("amount"), "failed", event["payment_id"], description
    )

    new_status = status_after_failed_payment(subscription["status"])
    if new_status != subscription["status"]:
        set_subscription_status(conn, subscription["id"], new_status)
        clear_vendor_subscription_flag(conn, subscription["vendor_id"])
        created = True
    return _result("applied" if created else "duplicate", event, subscription)


def record_verified_payment(entity_id: str, payment_id: str) -> Dict[str, Any]:
    """
    checkout callback after its signature has been checked. entity_id is the
    gateway subscription id or order id; the payment lands in history once.
    """
    with get_conn() as conn:
        try:
            subscription = find_subscription_for_update(
                conn, gateway_subscription_id=entity_id, gateway_order_id=entity_id
            )
            if subscription is None:
                raise NotFound(f"No subscription for gateway entity {entity_id}")
            created = insert_subscription_payment(
                conn,
                subscription["id"],
                subscription["amount"],
                "success",
                payment_id,
                "Subscription payment verified",
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    logger.info("Payment %s verified for subscription %s", payment_id, subscription["id"])
    return {
        "verified": True,
        "status": "recorded" if created else "duplicate",
        "subscription_id": subscription["id"],
        "payment_id": payment_id,
    }


HANDLERS = {
    gateway.SUBSCRIPTION_ACTIVATED: _on_activated_in_tx,
    gateway.SUBSCRIPTION_CANCELLED: _on_cancelled_in_tx,
    gateway.PAYMENT_CAPTURED: _on_payment_captured_in_tx,
    gateway.PAYMENT_FAILED: _on_payment_failed_in_tx,
}


def expire_subscriptions(now: Optional[datetime] = None) -> Dict[str, Any]:
    """active subscriptions past their end date -> expired."""
    now = now or datetime.now(timezone.utc)
    with get_conn() as conn:
        try:
            expired = expire_due_subscriptions(conn, now)
            for row in expired:
                clear_vendor_subscription_flag(conn, row["vendor_id"])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    if expired:
        logger.info("Expired %d subscriptions", len(expired))
    return {"expired": len(expired), "subscription_ids": [row["id"] for row in expired]}
