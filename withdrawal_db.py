import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from psycopg import Connection

from config import get_settings
from db.db import get_conn
from db.repositories import (
    append_wallet_audit,
    debit_wallet,
    get_owner_wallet_id,
    get_system_settings,
    get_wallet,
    get_wallet_owner,
    get_withdrawal_request,
    insert_withdrawal_request,
    list_withdrawal_requests,
    mark_withdrawal_processed,
    pending_withdrawal_total,
    withdrawal_totals_by_status,
)
from errors import InvalidState, ValidationError
from money import quantize
from withdrawal_engine import (
    WITHDRAWAL_STATUSES,
    check_request_amount,
    debit_description,
    rejection_description,
    require_transaction_id,
    validate_payment_details,
)

logger = logging.getLogger(__name__)


def request_withdrawal(
    owner_kind: str,
    owner_id: int,
    amount,
    method: str,
    details: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    owner_kind: "vendor" | "super_employee"
    details: {"upi_id"} for upi, bank fields for bank

    the wallet row is locked while the request is checked, so two
    concurrent requests cannot both count the same balance.
    """
    payout_details = validate_payment_details(method, details)
    with get_conn() as conn:
        try:
            request = _request_withdrawal_in_tx(conn, owner_kind, owner_id, amount, method, payout_details)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    logger.info(
        "Withdrawal request %s: %s via %s from %s %s",
        request["id"], request["amount"], method, owner_kind, owner_id,
    )
    return request


def _request_withdrawal_in_tx(conn: Connection, owner_kind, owner_id, amount, method, payout_details) -> Dict[str, Any]:
    wallet_id = get_owner_wallet_id(conn, owner_kind, owner_id)
    wallet = get_wallet(conn, wallet_id, for_update=True)
    settings = get_system_settings(conn)

    # the configured minimum is a floor the settings row cannot go below
    minimum = max(settings["minimum_withdrawal"], get_settings().minimum_withdrawal)
    amount = check_request_amount(
        amount,
        wallet["balance"],
        pending_withdrawal_total(conn, wallet_id),
        minimum,
        settings["maximum_withdrawal"],
    )
    return insert_withdrawal_request(conn, wallet_id, amount, method, payout_details)


def approve_withdrawal(
    request_id: int,
    approver_id: str,
    transaction_id: Optional[str],
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """
    pending -> approved and debit the wallet. the balance is re-checked by
    the debit itself; on InsufficientBalance the request stays pending.
    """
    with get_conn() as conn:
        try:
            current = get_withdrawal_request(conn, request_id)
            if current["status"] != "pending":
                raise InvalidState(
                    f"Withdrawal request {request_id} has already been processed (status={current['status']})"
                )
            transaction_id = require_transaction_id(transaction_id)
            result = _approve_withdrawal_in_tx(conn, request_id, approver_id, transaction_id, notes)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    logger.info("Withdrawal request %s approved by %s (txn %s)", request_id, approver_id, transaction_id)
    return result


def _ensure_processed(conn: Connection, request_id: int, processed: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if processed is None:
        current = get_withdrawal_request(conn, request_id)
        raise InvalidState(
            f"Withdrawal request {request_id} has already been processed (status={current['status']})"
        )
    return processed


def _approve_withdrawal_in_tx(conn: Connection, request_id, approver_id, transaction_id, notes) -> Dict[str, Any]:
    processed = mark_withdrawal_processed(
        conn, request_id, "approved", approver_id, notes, transaction_id=transaction_id
    )
    request = _ensure_processed(conn, request_id, processed)

    debit = debit_wallet(
        conn,
        request["wallet_id"],
        request["amount"],
        debit_description(request["payment_method"]),
        reference=transaction_id,
    )
    return {"status": "approved", "request": request, "wallet_balance": debit["balance"]}


def reject_withdrawal(request_id: int, approver_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
    """pending -> rejected; only a zero-amount audit entry reaches the wallet."""
    with get_conn() as conn:
        try:
            processed = mark_withdrawal_processed(conn, request_id, "rejected", approver_id, notes)
            request = _ensure_processed(conn, request_id, processed)
            append_wallet_audit(
                conn,
                request["wallet_id"],
                rejection_description(notes),
                reference=f"WDR_{request_id}",
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    logger.info("Withdrawal request %s rejected by %s", request_id, approver_id)
    return {"status": "rejected", "request": request}


def list_withdrawals(
    status: Optional[str] = None,
    owner_kind: Optional[str] = None,
    owner_id: Optional[int] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        wallet_id = None
        if owner_kind is not None and owner_id is not None:
            wallet_id = get_owner_wallet_id(conn, owner_kind, owner_id)
        return list_withdrawal_requests(conn, status=status, wallet_id=wallet_id, limit=limit)


def get_withdrawal(request_id: int) -> Dict[str, Any]:
    """the request with its owner and the wallet's current balance."""
    with get_conn() as conn:
        request = get_withdrawal_request(conn, request_id)
        owner = get_wallet_owner(conn, request["wallet_id"])
        wallet = get_wallet(conn, request["wallet_id"])
        conn.commit()
    return {**request, "owner": owner, "wallet_balance": wallet["balance"]}


STATISTICS_PERIODS = {
    "month": timedelta(days=30),
    "quarter": timedelta(days=90),
    "year": timedelta(days=365),
}


def withdrawal_statistics(period: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    count, amount and average per status, plus an overall total.
    period: None (all time) | "month" | "quarter" | "year"
    """
    if period is not None and period not in STATISTICS_PERIODS:
        raise ValidationError(f"Unknown period {period!r}")
    since = None
    if period is not None:
        since = (now or datetime.now(timezone.utc)) - STATISTICS_PERIODS[period]

    with get_conn() as conn:
        rows = withdrawal_totals_by_status(conn, since=since)
        conn.commit()

    by_status = {
        status: {"count": 0, "amount": Decimal("0.00"), "average_amount": Decimal("0.00")}
        for status in WITHDRAWAL_STATUSES
    }
    for row in rows:
        by_status[row["status"]] = {
            "count": row["count"],
            "amount": quantize(row["amount"]),
            "average_amount": quantize(row["average_amount"]),
        }
    return {
        "period": period or "all",
        "by_status": by_status,
        "total_count": sum(s["count"] for s in by_status.values()),
        "total_amount": sum((s["amount"] for s in by_status.values()), Decimal("0.00")),
    }
