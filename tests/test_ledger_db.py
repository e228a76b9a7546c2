from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from db.db import get_conn
from db.repositories import (
    ensure_employee_commission,
    ensure_referral_commission,
    get_commission,
    get_employee,
    get_subscription,
    get_vendor,
)
from errors import CommissionError, InvalidState, NotFound
from ledger_db import (
    approve_commission,
    bulk_approve_employee_commissions,
    commission_summary,
    list_commissions,
    reject_commission,
)
from owners_db import assign_vendor_to_employee, create_employee, create_vendor
from subscription_db import create_subscription, handle_event
from wallet_db import get_wallet_summary

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _activate(vendor_id, gateway_subscription_id, payment_id, plan="1year"):
    create_subscription(vendor_id, plan, gateway_subscription_id)
    return handle_event(
        {
            "event": "subscription.activated",
            "gateway_subscription_id": gateway_subscription_id,
            "payment_id": payment_id,
            "start_at": None,
            "end_at": None,
        },
        now=NOW,
    )


def _referral_flow():
    referrer = create_vendor("Ravi", "Ravi Textiles")
    vendor = create_vendor("Vikram", "Vikram Stores", referral_code=referrer["referral_code"])
    result = _activate(vendor["id"], "sub_1", "pay_1")
    return referrer, vendor, result["referral_commission_id"]


def test_end_to_end_approval_credits_referrer(db):
    """
    899 at 3% -> 26.97 pending; approval pays exactly 26.97 into R's wallet.
    """
    referrer, _, commission_id = _referral_flow()

    result = approve_commission("referral", commission_id, "admin_1", notes="ok")
    assert result["status"] == "paid"
    assert result["commission"]["status"] == "paid"
    assert result["commission"]["transaction_id"].startswith("TXN_REF_")
    assert result["commission"]["approved_by"] == "admin_1"
    assert result["wallet_balance"] == Decimal("26.97")

    summary = get_wallet_summary("vendor", referrer["id"])
    assert summary["balance"] == Decimal("26.97")
    assert summary["total_credits"] == Decimal("26.97")
    entry = summary["recent_transactions"][0]
    assert entry["type"] == "credit"
    assert entry["description"] == "Referral commission for Vikram (Vikram Stores)"
    assert entry["reference"] == result["commission"]["transaction_id"]


def test_second_approval_fails_and_credits_once(db):
    referrer, _, commission_id = _referral_flow()
    approve_commission("referral", commission_id, "admin_1")

    with pytest.raises(InvalidState):
        approve_commission("referral", commission_id, "admin_2")
    with pytest.raises(InvalidState):
        reject_commission("referral", commission_id, "admin_2")

    summary = get_wallet_summary("vendor", referrer["id"])
    assert summary["balance"] == Decimal("26.97")
    assert summary["transaction_count"] == 1


def test_reject_is_balance_neutral(db):
    referrer, _, commission_id = _referral_flow()

    result = reject_commission("referral", commission_id, "admin_1", notes="duplicate shop")
    assert result["commission"]["status"] == "cancelled"
    assert result["commission"]["admin_notes"] == "duplicate shop"

    summary = get_wallet_summary("vendor", referrer["id"])
    assert summary["balance"] == Decimal("0.00")
    assert summary["transaction_count"] == 0

    with pytest.raises(InvalidState):
        approve_commission("referral", commission_id, "admin_1")


def test_missing_commission_and_bad_kind(db):
    with pytest.raises(NotFound):
        approve_commission("referral", 9999, "admin_1")
    with pytest.raises(CommissionError):
        approve_commission("bonus", 1, "admin_1")


def _employee_flow():
    boss = create_employee("Asha", "super_employee", commission_percentage=Decimal("8"))
    worker = create_employee("Kiran", "employee", super_employee_id=boss["id"], employee_commission_percentage=Decimal("5"))
    vendor = create_vendor("Vikram", "Vikram Stores", city="Pune", state="Maharashtra")
    assign_vendor_to_employee(vendor["id"], worker["id"])
    result = _activate(vendor["id"], "sub_e1", "pay_e1")
    return boss, worker, vendor, result["employee_commission_id"]


def test_employee_commission_approval_updates_statistics(db):
    boss, worker, vendor, commission_id = _employee_flow()

    commissions = list_commissions("employee", payee_id=boss["id"])
    assert len(commissions) == 1
    assert commissions[0]["amount"] == Decimal("44.95")
    assert commissions[0]["percentage"] == Decimal("5.00")
    assert commissions[0]["district_name"] == "Pune"

    with get_conn() as conn:
        assert get_employee(conn, boss["id"])["total_sellers_assigned"] == 1
        assert get_employee(conn, worker["id"])["total_sellers_assigned"] == 1

    approve_commission("employee", commission_id, "admin_1")

    summary = get_wallet_summary("super_employee", boss["id"])
    assert summary["balance"] == Decimal("44.95")
    assert summary["recent_transactions"][0]["description"] == "Commission for seller: Vikram (Vikram Stores)"

    with get_conn() as conn:
        boss_row = get_employee(conn, boss["id"])
    assert boss_row["total_commission_earned"] == Decimal("44.95")
    assert boss_row["last_commission_at"] is not None


def test_bulk_approve_reports_each_outcome(db):
    boss, _, _, commission_id = _employee_flow()

    result = bulk_approve_employee_commissions([commission_id, 9999, commission_id], "admin_1")

    assert result["success_count"] == 1
    assert result["failure_count"] == 2
    assert [r["status"] for r in result["results"]] == ["paid", "failed", "failed"]
    assert get_wallet_summary("super_employee", boss["id"])["balance"] == Decimal("44.95")


def test_commission_summary(db):
    referrer, _, first_id = _referral_flow()
    other = create_vendor("Meena", "Meena Foods", referral_code=referrer["referral_code"])
    second = _activate(other["id"], "sub_2", "pay_2", plan="3months")["referral_commission_id"]

    approve_commission("referral", first_id, "admin_1")

    summary = commission_summary("referral", payee_id=referrer["id"])
    assert summary["paid"] == {"count": 1, "amount": Decimal("26.97")}
    # 559 at 3%
    assert summary["pending"] == {"count": 1, "amount": Decimal("16.77")}
    assert summary["cancelled"]["count"] == 0
    assert summary["total"]["count"] == 2
    assert summary["total"]["amount"] == Decimal("43.74")

    reject_commission("referral", second, "admin_1")
    assert commission_summary("referral")["cancelled"]["count"] == 1


def test_ensure_referral_commission_is_idempotent(db):
    referrer, vendor, commission_id = _referral_flow()

    with get_conn() as conn:
        commission = get_commission(conn, "referral", commission_id)
        subscription = get_subscription(conn, commission["subscription_id"])
        for _ in range(2):
            again = ensure_referral_commission(
                conn,
                referrer["id"],
                vendor["id"],
                referrer["referral_code"],
                subscription,
                Decimal("3.00"),
                Decimal("26.97"),
            )
            assert again == (commission_id, False)
        conn.commit()

    assert len(list_commissions("referral", payee_id=referrer["id"])) == 1


def test_ensure_employee_commission_is_idempotent(db):
    boss, _, vendor, commission_id = _employee_flow()

    with get_conn() as conn:
        commission = get_commission(conn, "employee", commission_id)
        subscription = get_subscription(conn, commission["subscription_id"])
        seller = get_vendor(conn, vendor["id"])
        again = ensure_employee_commission(
            conn, boss["id"], seller, subscription, Decimal("5.00"), Decimal("44.95")
        )
        assert again == (commission_id, False)
        conn.commit()

    assert len(list_commissions("employee", payee_id=boss["id"])) == 1


def _approve_or_error(kind, commission_id, approver_id):
    try:
        return approve_commission(kind, commission_id, approver_id)["status"]
    except InvalidState:
        return "invalid_state"


def test_concurrent_approvals_credit_once(db):
    referrer, _, commission_id = _referral_flow()

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(
            pool.map(_approve_or_error, ["referral", "referral"], [commission_id, commission_id], ["admin_1", "admin_2"])
        )

    assert sorted(outcomes) == ["invalid_state", "paid"]
    summary = get_wallet_summary("vendor", referrer["id"])
    assert summary["balance"] == Decimal("26.97")
    assert summary["transaction_count"] == 1
