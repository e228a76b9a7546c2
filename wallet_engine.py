from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from errors import InsufficientBalance
from money import ZERO, to_amount


def new_wallet() -> Dict[str, Any]:
    """an empty wallet: {"balance": Decimal, "transactions": [...]}"""
    return {"balance": ZERO, "transactions": []}


def _append(wallet, kind: str, amount: Decimal, description: str, reference, now) -> Dict[str, Any]:
    entry = {
        "type": kind,
        "amount": amount,
        "description": description,
        "reference": reference,
        "created_at": now or datetime.now(timezone.utc),
    }
    wallet["transactions"].append(entry)
    return entry


def credit(
    wallet: Dict[str, Any],
    amount,
    description: str,
    reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    add `amount` to the wallet and log a credit entry.
    never fails for a positive amount.
    """
    amount = to_amount(amount)
    entry = _append(wallet, "credit", amount, description, reference, now)
    wallet["balance"] += amount
    return entry


def debit(
    wallet: Dict[str, Any],
    amount,
    description: str,
    reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    remove `amount` from the wallet. rejects (never clamps) a debit larger
    than the current balance, leaving the wallet untouched.
    """
    amount = to_amount(amount)
    if amount > wallet["balance"]:
        raise InsufficientBalance(
            f"Insufficient wallet balance: requested {amount}, available {wallet['balance']}"
        )
    entry = _append(wallet, "debit", amount, description, reference, now)
    wallet["balance"] -= amount
    return entry


def record_audit_entry(
    wallet: Dict[str, Any],
    description: str,
    reference: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """zero-amount credit entry, kept only so the log shows what happened."""
    return _append(wallet, "credit", ZERO, description, reference, now)


def wallet_summary(wallet: Dict[str, Any], recent: int = 10) -> Dict[str, Any]:
    credits = [t["amount"] for t in wallet["transactions"] if t["type"] == "credit"]
    debits = [t["amount"] for t in wallet["transactions"] if t["type"] == "debit"]
    recent_entries = sorted(wallet["transactions"], key=lambda t: t["created_at"], reverse=True)[:recent]
    return {
        "balance": wallet["balance"],
        "total_credits": sum(credits, Decimal("0")),
        "total_debits": sum(debits, Decimal("0")),
        "transaction_count": len(wallet["transactions"]),
        "recent_transactions": recent_entries,
    }
