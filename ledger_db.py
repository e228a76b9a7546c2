import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from psycopg import Connection

from db.db import get_conn
from db.repositories import (
    commission_totals_by_status,
    credit_wallet,
    get_commission,
    get_commission_credit_target,
    list_commissions as _list_commissions,
    mark_commission_cancelled,
    mark_commission_paid,
    record_employee_earning,
)
from errors import CommissionError, InvalidState
from ledger_engine import (
    EMPLOYEE_STATUSES,
    REFERRAL_STATUSES,
    employee_credit_description,
    generate_transaction_id,
    referral_credit_description,
)
from money import ZERO

logger = logging.getLogger(__name__)

KINDS = ("referral", "employee")


def _check_kind(kind: str) -> None:
    if kind not in KINDS:
        raise CommissionError(f"Unknown commission kind {kind!r}")


def _already_processed(conn: Connection, kind: str, commission_id: int) -> InvalidState:
    # raises NotFound when the row is missing altogether
    current = get_commission(conn, kind, commission_id)
    return InvalidState(
        f"Commission {commission_id} has already been processed (status={current['status']})"
    )


def approve_commission(kind: str, commission_id: int, approver_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
    """
    pending -> paid and credit the payee's wallet, in one transaction.
    a second approval finds no pending row and fails with InvalidState.
    """
    _check_kind(kind)
    with get_conn() as conn:
        try:
            result = _approve_commission_in_tx(conn, kind, commission_id, approver_id, notes)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    logger.info(
        "%s commission %s approved by %s; credited %s to wallet %s",
        kind, commission_id, approver_id, result["commission"]["amount"], result["wallet_id"],
    )
    return result


def _approve_commission_in_tx(conn: Connection, kind: str, commission_id: int, approver_id: str, notes) -> Dict[str, Any]:
    commission = get_commission(conn, kind, commission_id)
    target = get_commission_credit_target(conn, kind, commission)

    paid = mark_commission_paid(
        conn,
        kind,
        commission_id,
        transaction_id=generate_transaction_id(kind, commission_id),
        approver_id=approver_id,
        notes=notes,
    )
    if paid is None:
        raise _already_processed(conn, kind, commission_id)

    if kind == "referral":
        description = referral_credit_description(target)
    else:
        description = employee_credit_description(target)

    credit = credit_wallet(
        conn,
        target["wallet_id"],
        paid["amount"],
        description,
        reference=paid["transaction_id"],
    )

    if kind == "employee":
        record_employee_earning(conn, paid["employee_id"], paid["amount"])

    return {
        "status": "paid",
        "commission": paid,
        "wallet_id": target["wallet_id"],
        "wallet_balance": credit["balance"],
    }


def reject_commission(kind: str, commission_id: int, approver_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
    """pending -> cancelled. no wallet is touched."""
    _check_kind(kind)
    with get_conn() as conn:
        try:
            cancelled = mark_commission_cancelled(conn, kind, commission_id, approver_id, notes)
            if cancelled is None:
                raise _already_processed(conn, kind, commission_id)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    logger.info("%s commission %s rejected by %s", kind, commission_id, approver_id)
    return {"status": "cancelled", "commission": cancelled}


def bulk_approve_employee_commissions(
    commission_ids: Iterable[int],
    approver_id: str,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """
    approve each id in its own transaction; one failure does not
    undo the others.
    """
    results: List[Dict[str, Any]] = []
    succeeded = 0
    for commission_id in commission_ids:
        try:
            approved = approve_commission("employee", commission_id, approver_id, notes)
        except CommissionError as e:
            results.append({"id": commission_id, "status": "failed", "error": str(e)})
            continue
        succeeded += 1
        results.append({"id": commission_id, "status": "paid", "amount": approved["commission"]["amount"]})

    return {
        "results": results,
        "success_count": succeeded,
        "failure_count": len(results) - succeeded,
    }


def list_commissions(
    kind: str,
    status: Optional[str] = None,
    payee_id: Optional[int] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    _check_kind(kind)
    with get_conn() as conn:
        return _list_commissions(conn, kind, status=status, payee_id=payee_id, limit=limit)


def commission_summary(kind: str, payee_id: Optional[int] = None) -> Dict[str, Any]:
    """count and amount per status, every status present (zeros where empty)."""
    _check_kind(kind)
    statuses = REFERRAL_STATUSES if kind == "referral" else EMPLOYEE_STATUSES
    summary: Dict[str, Any] = {s: {"count": 0, "amount": ZERO} for s in statuses}

    with get_conn() as conn:
        rows = commission_totals_by_status(conn, kind, payee_id)

    total_count = 0
    total_amount = Decimal("0")
    for row in rows:
        summary[row["status"]] = {"count": row["count"], "amount": row["amount"]}
        total_count += row["count"]
        total_amount += row["amount"]

    summary["total"] = {"count": total_count, "amount": total_amount}
    return summary
