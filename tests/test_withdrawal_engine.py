from decimal import Decimal

import pytest

from errors import InsufficientBalance, InvalidState, MissingTransactionId, NotFound, ValidationError
from wallet_engine import credit, debit, new_wallet
from withdrawal_engine import (
    approve_withdrawal,
    reject_withdrawal,
    request_withdrawal,
    validate_payment_details,
)

UPI = {"upi_id": "vikram.stores@okaxis"}
BANK = {
    "account_number": "123456789012",
    "ifsc_code": "hdfc0001234",
    "account_holder_name": "Vikram",
    "bank_name": "HDFC Bank",
}


def _owner(balance="0"):
    owner = {"wallet": new_wallet(), "withdrawal_requests": []}
    if Decimal(balance) > 0:
        credit(owner["wallet"], Decimal(balance), "seed")
    return owner


def test_upi_details_validated():
    assert validate_payment_details("upi", UPI) == {"upi_id": "vikram.stores@okaxis"}

    with pytest.raises(ValidationError):
        validate_payment_details("upi", {"upi_id": "not-a-upi"})
    with pytest.raises(ValidationError):
        validate_payment_details("upi", {})


def test_bank_details_validated_and_ifsc_uppercased():
    cleaned = validate_payment_details("bank", BANK)
    assert cleaned["ifsc_code"] == "HDFC0001234"

    with pytest.raises(ValidationError):
        validate_payment_details("bank", dict(BANK, account_number="12ab"))
    with pytest.raises(ValidationError):
        validate_payment_details("bank", dict(BANK, ifsc_code="HDFC1001234"))
    with pytest.raises(ValidationError):
        validate_payment_details("bank", dict(BANK, bank_name=""))


def test_unknown_method_rejected():
    with pytest.raises(ValidationError):
        validate_payment_details("paypal", {})


def test_request_limits():
    owner = _owner("1000")

    with pytest.raises(ValidationError):
        request_withdrawal(owner, Decimal("99"), "upi", UPI, minimum=Decimal("100"))
    with pytest.raises(ValidationError):
        request_withdrawal(owner, Decimal("900"), "upi", UPI, minimum=Decimal("100"), maximum=Decimal("500"))
    with pytest.raises(InsufficientBalance):
        request_withdrawal(owner, Decimal("1000.01"), "upi", UPI)

    assert owner["withdrawal_requests"] == []


def test_pending_requests_count_against_balance():
    owner = _owner("500")
    request_withdrawal(owner, Decimal("300"), "upi", UPI)

    with pytest.raises(InsufficientBalance):
        request_withdrawal(owner, Decimal("300"), "upi", UPI)

    # requesting does not move money
    assert owner["wallet"]["balance"] == Decimal("500")


def test_approve_debits_wallet():
    owner = _owner("500")
    request = request_withdrawal(owner, Decimal("200"), "bank", BANK)

    approve_withdrawal(owner, request["id"], "admin_1", "UTR123456")

    assert request["status"] == "approved"
    assert request["transaction_id"] == "UTR123456"
    assert owner["wallet"]["balance"] == Decimal("300")
    last = owner["wallet"]["transactions"][-1]
    assert last["type"] == "debit"
    assert last["description"] == "Withdrawal processed via BANK"

    with pytest.raises(InvalidState):
        approve_withdrawal(owner, request["id"], "admin_1", "UTR999")
    assert owner["wallet"]["balance"] == Decimal("300")


def test_approval_rechecks_balance():
    """
    500 requested while the balance was 600; by approval time it is 300.
    approval fails and nothing changes.
    """
    owner = _owner("600")
    request = request_withdrawal(owner, Decimal("500"), "upi", UPI)
    debit(owner["wallet"], Decimal("300"), "elsewhere")

    with pytest.raises(InsufficientBalance):
        approve_withdrawal(owner, request["id"], "admin_1", "UTR1")

    assert owner["wallet"]["balance"] == Decimal("300")
    assert request["status"] == "pending"


def test_approve_requires_transaction_id():
    owner = _owner("500")
    request = request_withdrawal(owner, Decimal("200"), "upi", UPI)

    with pytest.raises(MissingTransactionId):
        approve_withdrawal(owner, request["id"], "admin_1", "  ")
    assert request["status"] == "pending"


def test_processed_request_reports_state_before_transaction_id():
    owner = _owner("500")
    request = request_withdrawal(owner, Decimal("200"), "upi", UPI)
    approve_withdrawal(owner, request["id"], "admin_1", "UTR1")

    with pytest.raises(InvalidState):
        approve_withdrawal(owner, request["id"], "admin_1", None)
    assert owner["wallet"]["balance"] == Decimal("300")


def test_reject_is_balance_neutral_with_audit_entry():
    owner = _owner("500")
    request = request_withdrawal(owner, Decimal("200"), "upi", UPI)

    reject_withdrawal(owner, request["id"], "admin_1")

    assert request["status"] == "rejected"
    assert owner["wallet"]["balance"] == Decimal("500")
    audit = owner["wallet"]["transactions"][-1]
    assert audit["amount"] == Decimal("0")
    assert audit["description"] == "Withdrawal request rejected: No reason provided"

    with pytest.raises(InvalidState):
        reject_withdrawal(owner, request["id"], "admin_1")


def test_unknown_request():
    with pytest.raises(NotFound):
        reject_withdrawal(_owner(), 42, "admin_1")
