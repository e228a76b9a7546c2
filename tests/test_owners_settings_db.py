from decimal import Decimal

import pytest

from db.db import get_conn
from db.repositories import get_vendor_commission_settings
from errors import NotFound, ValidationError
from owners_db import assign_vendor_to_employee, create_employee, create_vendor
from settings_db import (
    get_system_settings,
    reset_vendor_commission,
    set_employee_commission_percentage,
    set_super_employee_commission,
    set_vendor_commission,
    set_vendor_commissions_bulk,
    update_referral_settings,
)


def test_create_vendor_with_and_without_referral_code(db):
    referrer = create_vendor("Ravi", "Ravi Textiles", city="Surat", state="Gujarat")
    assert referrer["referral_code"].startswith("REF_")
    assert len(referrer["referral_code"]) == 12
    assert referrer["referred_by"] is None
    assert referrer["wallet_id"] is not None

    vendor = create_vendor("Vikram", "Vikram Stores", referral_code=referrer["referral_code"])
    assert vendor["referred_by"] == referrer["id"]
    assert vendor["referred_by_code"] == referrer["referral_code"]
    assert vendor["referral_code"] != referrer["referral_code"]


def test_create_vendor_with_unknown_code(db):
    with pytest.raises(NotFound):
        create_vendor("Vikram", "Vikram Stores", referral_code="REF_NOPE0000")


def test_create_employees(db):
    boss = create_employee("Asha", "super_employee", commission_percentage=Decimal("8"))
    assert boss["wallet_id"] is not None
    assert boss["commission_percentage"] == Decimal("8.00")

    worker = create_employee(
        "Kiran", "employee", super_employee_id=boss["id"], employee_commission_percentage=Decimal("5")
    )
    assert worker["wallet_id"] is None
    assert worker["super_employee_id"] == boss["id"]

    # a regular employee needs a super-employee above it
    with pytest.raises(ValidationError):
        create_employee("Lone", "employee")
    with pytest.raises(ValidationError):
        create_employee("Chain", "employee", super_employee_id=worker["id"])
    with pytest.raises(ValidationError):
        create_employee("Bad", "super_employee", commission_percentage=Decimal("120"))


def test_assign_vendor(db):
    boss = create_employee("Asha", "super_employee", commission_percentage=Decimal("8"))
    vendor = create_vendor("Vikram", "Vikram Stores")

    assigned = assign_vendor_to_employee(vendor["id"], boss["id"])
    assert assigned["assigned_employee_id"] == boss["id"]

    with pytest.raises(NotFound):
        assign_vendor_to_employee(vendor["id"], 9999)


def test_system_settings_defaults_and_update(db):
    settings = get_system_settings()
    assert settings["referral_percentage"] == Decimal("3.00")
    assert settings["referral_active"] is True
    assert settings["minimum_subscription_amount"] == Decimal("100.00")
    assert settings["maximum_commission_per_referral"] == Decimal("1000.00")
    assert settings["maximum_withdrawal"] == Decimal("50000.00")

    updated = update_referral_settings(
        {"referral_percentage": Decimal("5"), "referral_active": False}, updated_by="admin_1"
    )
    assert updated["referral_percentage"] == Decimal("5.00")
    assert updated["referral_active"] is False
    assert updated["updated_by"] == "admin_1"
    # untouched fields keep their values
    assert updated["maximum_commission_per_referral"] == Decimal("1000.00")


def test_system_settings_validation(db):
    with pytest.raises(ValidationError):
        update_referral_settings({"referral_percentage": Decimal("101")})
    with pytest.raises(ValidationError):
        update_referral_settings({"minimum_withdrawal": Decimal("60000")})
    with pytest.raises(ValidationError):
        update_referral_settings({"surprise": 1})

    assert get_system_settings()["referral_percentage"] == Decimal("3.00")


def test_vendor_commission_override(db):
    vendor = create_vendor("Ravi", "Ravi Textiles")

    row = set_vendor_commission(vendor["id"], Decimal("10"), set_by="admin_1")
    assert row["is_custom_commission"] is False

    row = set_vendor_commission(vendor["id"], Decimal("12.5"), set_by="admin_1", notes="top referrer")
    assert row["commission_percentage"] == Decimal("12.50")
    assert row["is_custom_commission"] is True
    assert row["notes"] == "top referrer"

    with pytest.raises(NotFound):
        set_vendor_commission(9999, Decimal("5"))


def test_reset_vendor_commission(db):
    vendor = create_vendor("Ravi", "Ravi Textiles")
    set_vendor_commission(vendor["id"], Decimal("12.5"), set_by="admin_1")

    row = reset_vendor_commission(vendor["id"], set_by="admin_2")
    assert row["commission_percentage"] == Decimal("10.00")
    assert row["is_custom_commission"] is False
    assert row["set_by"] == "admin_2"
    assert row["notes"] == "Reset to default commission rate"

    with pytest.raises(NotFound):
        reset_vendor_commission(9999)


def test_bulk_vendor_commission(db):
    first = create_vendor("Ravi", "Ravi Textiles")
    second = create_vendor("Meena", "Meena Foods")

    result = set_vendor_commissions_bulk([first["id"], second["id"]], Decimal("7.5"), set_by="admin_1")
    assert result["total_vendors"] == 2
    assert [r["vendor_id"] for r in result["results"]] == [first["id"], second["id"]]
    assert all(r["commission_percentage"] == Decimal("7.50") for r in result["results"])
    assert all(r["is_custom_commission"] is True for r in result["results"])
    assert result["results"][0]["notes"] == "Bulk commission setting: 7.5%"

    # one unknown vendor: nothing is written
    with pytest.raises(ValidationError, match="Some vendors not found"):
        set_vendor_commissions_bulk([first["id"], 9999], Decimal("20"))
    with get_conn() as conn:
        assert get_vendor_commission_settings(conn, first["id"])["commission_percentage"] == Decimal("7.50")

    with pytest.raises(ValidationError):
        set_vendor_commissions_bulk([], Decimal("5"))
    with pytest.raises(ValidationError):
        set_vendor_commissions_bulk([first["id"]], Decimal("101"))


def test_employee_commission_updates(db):
    boss = create_employee("Asha", "super_employee")
    worker = create_employee("Kiran", "employee", super_employee_id=boss["id"])

    row = set_super_employee_commission(boss["id"], Decimal("6"), active=False, set_by="admin_1")
    assert row["commission_percentage"] == Decimal("6.00")
    assert row["commission_active"] is False

    row = set_employee_commission_percentage(worker["id"], Decimal("4"))
    assert row["employee_commission_percentage"] == Decimal("4.00")

    # role must match
    with pytest.raises(NotFound):
        set_super_employee_commission(worker["id"], Decimal("6"))
    with pytest.raises(NotFound):
        set_employee_commission_percentage(boss["id"], Decimal("4"))
