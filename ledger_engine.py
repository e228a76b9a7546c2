from datetime import datetime, timezone
from typing import Any, Dict, Optional

from errors import InvalidState
from wallet_engine import credit

REFERRAL_STATUSES = ("pending", "paid", "cancelled", "refunded")
EMPLOYEE_STATUSES = ("pending", "paid", "cancelled")


TRANSACTION_PREFIXES = {"referral": "REF", "employee": "EMP"}


def generate_transaction_id(kind: str, commission_id, now: Optional[datetime] = None) -> str:
    """TXN_REF_<ms>_<id> or TXN_EMP_<ms>_<id>; ids of the two tables never collide."""
    now = now or datetime.now(timezone.utc)
    return f"TXN_{TRANSACTION_PREFIXES[kind]}_{int(now.timestamp() * 1000)}_{commission_id}"


def referral_credit_description(referred_vendor: Dict[str, Any]) -> str:
    return f"Referral commission for {referred_vendor['name']} ({referred_vendor['shop_name']})"


def employee_credit_description(seller: Dict[str, Any]) -> str:
    return f"Commission for seller: {seller['name']} ({seller['shop_name']})"


def new_referral_commission(
    commission_id,
    referrer_id,
    referred_vendor: Dict[str, Any],
    subscription: Dict[str, Any],
    percentage,
    amount,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "id": commission_id,
        "kind": "referral",
        "referrer_id": referrer_id,
        "referred_vendor_id": referred_vendor["id"],
        "referral_code": referred_vendor.get("referred_by_code"),
        "subscription_id": subscription["id"],
        "plan": subscription["plan"],
        "percentage": percentage,
        "amount": amount,
        "subscription_amount": subscription["amount"],
        "currency": subscription.get("currency", "INR"),
        "status": "pending",
        "paid_at": None,
        "transaction_id": None,
        "approved_by": None,
        "approved_at": None,
        "admin_notes": None,
        "created_at": now or datetime.now(timezone.utc),
    }


def new_employee_commission(
    commission_id,
    payee_id,
    seller: Dict[str, Any],
    subscription: Dict[str, Any],
    percentage,
    amount,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    return {
        "id": commission_id,
        "kind": "employee",
        "employee_id": payee_id,
        "seller_id": seller["id"],
        "subscription_id": subscription["id"],
        "percentage": percentage,
        "amount": amount,
        "subscription_amount": subscription["amount"],
        "status": "pending",
        "payment_method": "wallet",
        "paid_at": None,
        "transaction_id": None,
        "approved_by": None,
        "approved_at": None,
        "admin_notes": None,
        "district_name": seller.get("city") or "Unknown",
        "district_state": seller.get("state") or "Unknown",
        "period_start": subscription.get("start_date"),
        "period_end": subscription.get("end_date"),
        "created_at": now or datetime.now(timezone.utc),
    }


def _ensure_pending(commission: Dict[str, Any]) -> None:
    if commission["status"] != "pending":
        raise InvalidState(
            f"Commission {commission['id']} has already been processed (status={commission['status']})"
        )


def approve_commission(
    commission: Dict[str, Any],
    wallet: Dict[str, Any],
    approver_id,
    description: str,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    pending -> paid, crediting `wallet` with the commission amount.
    the wallet is credited before the status flips, so a failed credit
    leaves the commission pending.
    """
    _ensure_pending(commission)
    now = now or datetime.now(timezone.utc)
    transaction_id = generate_transaction_id(commission["kind"], commission["id"], now)

    credit(wallet, commission["amount"], description, reference=transaction_id, now=now)

    commission.update(
        status="paid",
        paid_at=now,
        transaction_id=transaction_id,
        approved_by=approver_id,
        approved_at=now,
        admin_notes=notes,
    )
    return commission


def reject_commission(
    commission: Dict[str, Any],
    approver_id,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """pending -> cancelled. no wallet is touched."""
    _ensure_pending(commission)
    now = now or datetime.now(timezone.utc)
    commission.update(
        status="cancelled",
        approved_by=approver_id,
        approved_at=now,
        admin_notes=notes,
    )
    return commission
