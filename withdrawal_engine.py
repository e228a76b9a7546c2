import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from errors import InsufficientBalance, InvalidState, MissingTransactionId, NotFound, ValidationError
from money import to_amount
from wallet_engine import debit, record_audit_entry

PAYMENT_METHODS = ("upi", "bank")
WITHDRAWAL_STATUSES = ("pending", "approved", "rejected")

UPI_RE = re.compile(r"^[a-zA-Z0-9._-]+@[a-zA-Z]{3,}$")
IFSC_RE = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_RE = re.compile(r"^[0-9]{9,18}$")

BANK_FIELDS = ("account_number", "ifsc_code", "account_holder_name", "bank_name")


def validate_payment_details(method: str, details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    check method-specific payout details and return them normalised:
      upi  -> {"upi_id": ...}
      bank -> {"account_number", "ifsc_code" (upper-cased), "account_holder_name", "bank_name"}
    """
    details = details or {}

    if method not in PAYMENT_METHODS:
        raise ValidationError('Payment method must be either "upi" or "bank"')

    if method == "upi":
        upi_id = (details.get("upi_id") or "").strip()
        if not upi_id:
            raise ValidationError("UPI ID is required for UPI payment method")
        if not UPI_RE.match(upi_id):
            raise ValidationError("Invalid UPI ID format. Use format: name@upi")
        return {"upi_id": upi_id}

    cleaned = {field: (details.get(field) or "").strip() for field in BANK_FIELDS}
    missing = [field for field, value in cleaned.items() if not value]
    if missing:
        raise ValidationError(f"All bank details are required, missing: {', '.join(missing)}")

    cleaned["ifsc_code"] = cleaned["ifsc_code"].upper()
    if not IFSC_RE.match(cleaned["ifsc_code"]):
        raise ValidationError("Invalid IFSC code format")
    if not ACCOUNT_RE.match(cleaned["account_number"]):
        raise ValidationError("Invalid account number format")
    return cleaned


def check_request_amount(amount, balance, pending_total, minimum, maximum=None) -> Decimal:
    """
    a new request must fit in what is left of the balance after every
    other pending request is honoured.
    """
    amount = to_amount(amount)
    if amount < Decimal(minimum):
        raise ValidationError(f"Minimum withdrawal amount is {minimum}")
    if maximum is not None and amount > Decimal(maximum):
        raise ValidationError(f"Maximum withdrawal amount is {maximum}")

    available = Decimal(balance) - Decimal(pending_total)
    if amount > available:
        raise InsufficientBalance(
            f"Insufficient wallet balance: requested {amount}, available {available} "
            f"(balance {balance}, pending withdrawals {pending_total})"
        )
    return amount


def require_transaction_id(transaction_id: Optional[str]) -> str:
    transaction_id = (transaction_id or "").strip()
    if not transaction_id:
        raise MissingTransactionId("Transaction ID is required for approved withdrawals")
    return transaction_id


def debit_description(method: str) -> str:
    return f"Withdrawal processed via {method.upper()}"


def rejection_description(notes: Optional[str]) -> str:
    return f"Withdrawal request rejected: {notes or 'No reason provided'}"


# ---------
# in-memory workflow; owner = {"wallet": {...}, "withdrawal_requests": [...]}
# ---------

def _pending_total(owner) -> Decimal:
    return sum(
        (r["amount"] for r in owner["withdrawal_requests"] if r["status"] == "pending"),
        Decimal("0"),
    )


def find_request(owner: Dict[str, Any], request_id) -> Dict[str, Any]:
    for request in owner["withdrawal_requests"]:
        if request["id"] == request_id:
            return request
    raise NotFound(f"Withdrawal request {request_id} not found")


def request_withdrawal(
    owner: Dict[str, Any],
    amount,
    method: str,
    details: Optional[Dict[str, Any]],
    minimum=Decimal("100"),
    maximum=None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    payout_details = validate_payment_details(method, details)
    amount = check_request_amount(amount, owner["wallet"]["balance"], _pending_total(owner), minimum, maximum)

    request = {
        "id": len(owner["withdrawal_requests"]) + 1,
        "amount": amount,
        "payment_method": method,
        "details": payout_details,
        "status": "pending",
        "requested_at": now or datetime.now(timezone.utc),
        "processed_at": None,
        "processed_by": None,
        "admin_notes": None,
        "transaction_id": None,
    }
    owner["withdrawal_requests"].append(request)
    return request


def _ensure_pending(request):
    if request["status"] != "pending":
        raise InvalidState(
            f"Withdrawal request {request['id']} has already been processed (status={request['status']})"
        )


def approve_withdrawal(
    owner: Dict[str, Any],
    request_id,
    approver_id,
    transaction_id: Optional[str],
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    pending -> approved, debiting the owner's wallet. the balance is checked
    now, not at request time; on InsufficientBalance nothing changes.
    """
    request = find_request(owner, request_id)
    _ensure_pending(request)
    transaction_id = require_transaction_id(transaction_id)
    now = now or datetime.now(timezone.utc)

    debit(owner["wallet"], request["amount"], debit_description(request["payment_method"]), reference=transaction_id, now=now)

    request.update(
        status="approved",
        processed_at=now,
        processed_by=approver_id,
        admin_notes=notes,
        transaction_id=transaction_id,
    )
    return request


def reject_withdrawal(
    owner: Dict[str, Any],
    request_id,
    approver_id,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    request = find_request(owner, request_id)
    _ensure_pending(request)
    now = now or datetime.now(timezone.utc)

    request.update(status="rejected", processed_at=now, processed_by=approver_id, admin_notes=notes)
    record_audit_entry(owner["wallet"], rejection_description(notes), reference=f"WDR_{request['id']}", now=now)
    return request
