from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import gateway
from commission_engine import (
    calculate_employee_commission,
    referral_terms,
    resolve_employee_payee,
)
from errors import InvalidState
from ledger_engine import new_employee_commission, new_referral_commission

TERMINAL_STATUSES = ("expired", "cancelled", "failed")


def new_tables() -> Dict[str, Any]:
    """fresh in-memory 'tables' for the in-memory ingestor."""
    return {
        "subscriptions": {},
        "vendors": {},
        "employees": {},
        "vendor_commission_settings": {},
        "system_settings": None,
        "referral_commissions": {},
        "employee_commissions": {},
    }


# ---------
# transition rules (shared with subscription_db)
# ---------

def should_activate(subscription: Dict[str, Any], payment_id: Optional[str]) -> bool:
    """
    True  -> apply the activation
    False -> redelivery of an activation we already applied
    raises InvalidState for anything else.
    """
    status = subscription["status"]
    if status == "active":
        if subscription.get("gateway_payment_id") == payment_id:
            return False
        raise InvalidState(
            f"Subscription {subscription['id']} is already active with payment "
            f"{subscription.get('gateway_payment_id')!r}, got {payment_id!r}"
        )
    if status != "pending":
        raise InvalidState(f"Subscription {subscription['id']} cannot be activated from status {status!r}")
    return True


def activation_window(event: Dict[str, Any], plan: str, now: datetime):
    """start/end from the event, falling back to now + plan duration."""
    start = event.get("start_at") or now
    end = event.get("end_at") or start + timedelta(days=gateway.get_plan(plan)["duration_days"])
    return start, end


def should_cancel(subscription: Dict[str, Any]) -> bool:
    status = subscription["status"]
    if status == "cancelled":
        return False
    if status in TERMINAL_STATUSES:
        raise InvalidState(f"Subscription {subscription['id']} cannot be cancelled from status {status!r}")
    return True


def status_after_failed_payment(status: str) -> str:
    # only a live subscription is forced into failed; terminal states stay put
    return "failed" if status in ("pending", "active") else status


# ---------
# in-memory ingestor
# ---------

def _find_subscription(tables, gateway_subscription_id=None, payment_id=None):
    subs = tables["subscriptions"].values()
    if payment_id:
        for sub in subs:
            if sub.get("gateway_payment_id") == payment_id:
                return sub
    if gateway_subscription_id:
        for sub in subs:
            if sub.get("gateway_subscription_id") == gateway_subscription_id:
                return sub
    return None


def _result(status, event, subscription=None, **extra):
    out = {
        "status": status,
        "event": event["event"],
        "subscription_id": subscription["id"] if subscription else None,
    }
    out.update(extra)
    return out


def _create_referral_commission(tables, vendor, subscription, now):
    referrer_id = vendor.get("referred_by")
    if referrer_id is None or referrer_id not in tables["vendors"]:
        return None

    terms = referral_terms(
        subscription["amount"],
        tables["vendor_commission_settings"].get(referrer_id),
        tables["system_settings"],
    )
    if terms is None:
        return None
    percentage, amount = terms

    # one commission per (referrer, subscription)
    for existing in tables["referral_commissions"].values():
        if existing["referrer_id"] == referrer_id and existing["subscription_id"] == subscription["id"]:
            return None

    commission_id = len(tables["referral_commissions"]) + 1
    commission = new_referral_commission(
        commission_id, referrer_id, vendor, subscription, percentage, amount, now=now
    )
    tables["referral_commissions"][commission_id] = commission
    return commission


def _create_employee_commission(tables, vendor, subscription, now):
    assigned = tables["employees"].get(vendor.get("assigned_employee_id"))
    super_employee = None
    if assigned and assigned["role"] == "employee":
        super_employee = tables["employees"].get(assigned.get("super_employee_id"))

    resolved = resolve_employee_payee(assigned, super_employee)
    if resolved is None:
        return None
    payee, percentage = resolved

    amount = calculate_employee_commission(subscription["amount"], percentage)
    if amount <= 0:
        return None

    for existing in tables["employee_commissions"].values():
        if (
            existing["employee_id"] == payee["id"]
            and existing["seller_id"] == vendor["id"]
            and existing["subscription_id"] == subscription["id"]
        ):
            return None

    commission_id = len(tables["employee_commissions"]) + 1
    commission = new_employee_commission(
        commission_id, payee["id"], vendor, subscription, percentage, amount, now=now
    )
    tables["employee_commissions"][commission_id] = commission

    payee["total_sellers_assigned"] = payee.get("total_sellers_assigned", 0) + 1
    if assigned is not payee:
        assigned["total_sellers_assigned"] = assigned.get("total_sellers_assigned", 0) + 1
    return commission


def handle_subscription_activated(event: Dict[str, Any], tables: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    pending -> active, mirror onto the vendor, then create (at most once)
    the pending referral and employee commissions for this subscription.
    """
    now = now or datetime.now(timezone.utc)
    subscription = _find_subscription(tables, gateway_subscription_id=event["gateway_subscription_id"])
    if subscription is None:
        return _result("unknown_subscription", event)

    payment_id = event.get("payment_id")
    if not should_activate(subscription, payment_id):
        return _result("duplicate", event, subscription)

    start, end = activation_window(event, subscription["plan"], now)
    subscription.update(status="active", start_date=start, end_date=end, gateway_payment_id=payment_id)

    vendor = tables["vendors"][subscription["vendor_id"]]
    vendor["subscription"] = {
        "is_active": True,
        "start_date": start,
        "end_date": end,
        "gateway_subscription_id": subscription["gateway_subscription_id"],
        "gateway_payment_id": payment_id,
    }

    referral = _create_referral_commission(tables, vendor, subscription, now)
    employee = _create_employee_commission(tables, vendor, subscription, now)

    return _result(
        "applied",
        event,
        subscription,
        referral_commission_id=referral["id"] if referral else None,
        employee_commission_id=employee["id"] if employee else None,
    )


def handle_subscription_cancelled(event: Dict[str, Any], tables: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    subscription = _find_subscription(tables, gateway_subscription_id=event["gateway_subscription_id"])
    if subscription is None:
        return _result("unknown_subscription", event)

    if not should_cancel(subscription):
        return _result("duplicate", event, subscription)

    subscription.update(status="cancelled", cancelled_at=now)
    tables["vendors"][subscription["vendor_id"]].setdefault("subscription", {})["is_active"] = False
    return _result("applied", event, subscription)


def _record_payment(event, tables, payment_status, description, now):
    subscription = _find_subscription(
        tables,
        gateway_subscription_id=event.get("gateway_subscription_id"),
        payment_id=event["payment_id"],
    )
    if subscription is None:
        return None, False

    history = subscription.setdefault("payment_history", [])
    for entry in history:
        if entry["gateway_payment_id"] == event["payment_id"] and entry["status"] == payment_status:
            return subscription, False

    history.append(
        {
            "amount": event.get("amount"),
            "status": payment_status,
            "gateway_payment_id": event["payment_id"],
            "description": description,
            "created_at": now,
        }
    )
    return subscription, True


def handle_payment_captured(event: Dict[str, Any], tables: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    subscription, created = _record_payment(event, tables, "success", "Subscription payment", now)
    if subscription is None:
        return _result("unknown_subscription", event)
    return _result("applied" if created else "duplicate", event, subscription)


def handle_payment_failed(event: Dict[str, Any], tables: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    description = event.get("error_description") or "Payment failed"
    subscription, created = _record_payment(event, tables, "failed", description, now)
    if subscription is None:
        return _result("unknown_subscription", event)

    new_status = status_after_failed_payment(subscription["status"])
    if new_status != subscription["status"]:
        subscription["status"] = new_status
        tables["vendors"][subscription["vendor_id"]].setdefault("subscription", {})["is_active"] = False
        created = True
    return _result("applied" if created else "duplicate", event, subscription)


HANDLERS = {
    gateway.SUBSCRIPTION_ACTIVATED: handle_subscription_activated,
    gateway.SUBSCRIPTION_CANCELLED: handle_subscription_cancelled,
    gateway.PAYMENT_CAPTURED: handle_payment_captured,
    gateway.PAYMENT_FAILED: handle_payment_failed,
}


def handle_event(event: Dict[str, Any], tables: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    handler = HANDLERS.get(event["event"])
    if handler is None:
        return _result("ignored", event)
    return handler(event, tables, now=now)
