from decimal import Decimal
from typing import Any, Dict, Optional

from psycopg import Connection

from commission_engine import validate_percentage
from db.db import get_conn
from db.repositories import (
    create_wallet,
    get_employee,
    get_vendor,
    get_vendor_by_referral_code,
    insert_employee,
    insert_vendor,
    set_vendor_assigned_employee,
)
from errors import ValidationError


def create_vendor(
    name: str,
    shop_name: str,
    city: Optional[str] = None,
    state: Optional[str] = None,
    referral_code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    register a vendor with a fresh wallet and its own referral code.
    `referral_code` is the code the vendor signed up with (the referrer's).
    """
    with get_conn() as conn:
        try:
            result = _create_vendor_in_tx(conn, name, shop_name, city, state, referral_code)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise


def _create_vendor_in_tx(conn: Connection, name, shop_name, city, state, referral_code) -> Dict[str, Any]:
    if not name or not shop_name:
        raise ValidationError("Vendor name and shop name are required")

    referred_by = None
    if referral_code:
        referred_by = get_vendor_by_referral_code(conn, referral_code)["id"]

    wallet_id = create_wallet(conn, "vendor")
    return insert_vendor(
        conn,
        name=name,
        shop_name=shop_name,
        city=city,
        state=state,
        referred_by=referred_by,
        referred_by_code=referral_code if referred_by else None,
        wallet_id=wallet_id,
    )


def create_employee(
    name: str,
    role: str,
    super_employee_id: Optional[int] = None,
    employee_commission_percentage=Decimal("0"),
    commission_percentage=Decimal("0"),
    commission_active: bool = True,
) -> Dict[str, Any]:
    """
    regular employees report to a super-employee; super-employees get a wallet.
    """
    if role not in ("employee", "super_employee"):
        raise ValidationError(f"Unknown employee role {role!r}")

    employee_pct = validate_percentage(employee_commission_percentage, "employee_commission_percentage")
    super_pct = validate_percentage(commission_percentage, "commission_percentage")

    with get_conn() as conn:
        try:
            wallet_id = None
            if role == "super_employee":
                wallet_id = create_wallet(conn, "super_employee")
            else:
                if super_employee_id is None:
                    raise ValidationError("A regular employee must report to a super employee")
                boss = get_employee(conn, super_employee_id)
                if boss["role"] != "super_employee":
                    raise ValidationError(f"Employee {super_employee_id} is not a super employee")

            employee = insert_employee(
                conn,
                name=name,
                role=role,
                super_employee_id=super_employee_id if role == "employee" else None,
                employee_commission_percentage=employee_pct,
                commission_percentage=super_pct,
                commission_active=commission_active,
                wallet_id=wallet_id,
            )
            conn.commit()
            return employee
        except Exception:
            conn.rollback()
            raise


def assign_vendor_to_employee(vendor_id: int, employee_id: Optional[int]) -> Dict[str, Any]:
    with get_conn() as conn:
        try:
            if employee_id is not None:
                get_employee(conn, employee_id)
            set_vendor_assigned_employee(conn, vendor_id, employee_id)
            vendor = get_vendor(conn, vendor_id)
            conn.commit()
            return vendor
        except Exception:
            conn.rollback()
            raise
