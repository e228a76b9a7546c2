from typing import Any, Dict

from db.db import get_conn
from db.repositories import (
    get_owner_wallet_id,
    get_wallet,
    get_wallet_totals,
    get_wallet_transactions,
    pending_withdrawal_total,
)


def get_wallet_summary(owner_kind: str, owner_id: int, recent: int = 10) -> Dict[str, Any]:
    """balance, credit/debit totals and the most recent entries for a wallet owner."""
    with get_conn() as conn:
        wallet_id = get_owner_wallet_id(conn, owner_kind, owner_id)
        wallet = get_wallet(conn, wallet_id)
        totals = get_wallet_totals(conn, wallet_id)
        return {
            "owner_kind": owner_kind,
            "owner_id": owner_id,
            "wallet_id": wallet_id,
            "balance": wallet["balance"],
            "total_credits": totals["total_credits"],
            "total_debits": totals["total_debits"],
            "transaction_count": totals["transaction_count"],
            "pending_withdrawals": pending_withdrawal_total(conn, wallet_id),
            "recent_transactions": get_wallet_transactions(conn, wallet_id, recent),
        }
