import logging
from typing import Any, Dict, List, Optional

from commission_engine import DEFAULT_REFERRAL_PERCENTAGE, validate_percentage
from db.db import get_conn
from db.repositories import (
    get_existing_vendor_ids,
    get_system_settings as _get_system_settings,
    get_vendor,
    update_employee_commission,
    update_system_settings,
    upsert_vendor_commission_settings,
)
from errors import ValidationError
from money import to_decimal

logger = logging.getLogger(__name__)

MONEY_SETTINGS = (
    "minimum_subscription_amount",
    "maximum_commission_per_referral",
    "minimum_withdrawal",
    "maximum_withdrawal",
)


def get_system_settings() -> Dict[str, Any]:
    with get_conn() as conn:
        settings = _get_system_settings(conn)
        conn.commit()
        return settings


def update_referral_settings(changes: Dict[str, Any], updated_by: Optional[str] = None) -> Dict[str, Any]:
    """
    partial update of the singleton system settings row.
    only keys with a non-None value are written.
    """
    fields: Dict[str, Any] = {}
    for key, value in changes.items():
        if value is None:
            continue
        if key == "referral_percentage":
            fields[key] = validate_percentage(value, key)
        elif key == "referral_active":
            fields[key] = bool(value)
        elif key in MONEY_SETTINGS:
            amount = to_decimal(value, key)
            if amount < 0:
                raise ValidationError(f"{key} cannot be negative")
            fields[key] = amount
        else:
            raise ValidationError(f"Unknown setting {key!r}")

    minimum = fields.get("minimum_withdrawal")
    maximum = fields.get("maximum_withdrawal")

    with get_conn() as conn:
        try:
            if not fields:
                settings = _get_system_settings(conn)
            else:
                current = _get_system_settings(conn)
                minimum = minimum if minimum is not None else current["minimum_withdrawal"]
                maximum = maximum if maximum is not None else current["maximum_withdrawal"]
                if minimum > maximum:
                    raise ValidationError("minimum_withdrawal cannot exceed maximum_withdrawal")
                settings = update_system_settings(conn, fields, updated_by)
                logger.info("System settings updated by %s: %s", updated_by, sorted(fields))
            conn.commit()
            return settings
        except Exception:
            conn.rollback()
            raise


def set_vendor_commission(
    vendor_id: int,
    percentage,
    set_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """per-referrer override of the referral percentage."""
    pct = validate_percentage(percentage, "commission_percentage")
    with get_conn() as conn:
        try:
            get_vendor(conn, vendor_id)
            row = upsert_vendor_commission_settings(
                conn,
                vendor_id,
                pct,
                is_custom=pct != DEFAULT_REFERRAL_PERCENTAGE,
                set_by=set_by,
                notes=notes,
            )
            conn.commit()
            return row
        except Exception:
            conn.rollback()
            raise


def set_super_employee_commission(
    employee_id: int,
    percentage,
    active: bool = True,
    set_by: Optional[str] = None,
) -> Dict[str, Any]:
    pct = validate_percentage(percentage, "commission_percentage")
    with get_conn() as conn:
        try:
            row = update_employee_commission(
                conn,
                employee_id,
                "super_employee",
                {"commission_percentage": pct, "commission_active": active, "commission_set_by": set_by},
            )
            conn.commit()
            return row
        except Exception:
            conn.rollback()
            raise


def set_employee_commission_percentage(employee_id: int, percentage, set_by: Optional[str] = None) -> Dict[str, Any]:
    pct = validate_percentage(percentage, "employee_commission_percentage")
    with get_conn() as conn:
        try:
            row = update_employee_commission(
                conn,
                employee_id,
                "employee",
                {"employee_commission_percentage": pct, "commission_set_by": set_by},
            )
            conn.commit()
            return row
        except Exception:
            conn.rollback()
            raise


def reset_vendor_commission(vendor_id: int, set_by: Optional[str] = None) -> Dict[str, Any]:
    """back to the default referral rate; the row stays, marked non-custom."""
    return set_vendor_commission(
        vendor_id,
        DEFAULT_REFERRAL_PERCENTAGE,
        set_by=set_by,
        notes="Reset to default commission rate",
    )


def set_vendor_commissions_bulk(
    vendor_ids: List[int],
    percentage,
    set_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """
    one rate for many referrers, all in one transaction.
    every vendor must exist, otherwise nothing is written.
    """
    if not vendor_ids:
        raise ValidationError("Vendor IDs are required")
    pct = validate_percentage(percentage, "commission_percentage")
    vendor_ids = list(dict.fromkeys(vendor_ids))
    notes = notes or f"Bulk commission setting: {pct}%"

    with get_conn() as conn:
        try:
            missing = set(vendor_ids) - set(get_existing_vendor_ids(conn, vendor_ids))
            if missing:
                raise ValidationError(f"Some vendors not found: {sorted(missing)}")

            rows = [
                upsert_vendor_commission_settings(
                    conn,
                    vendor_id,
                    pct,
                    is_custom=pct != DEFAULT_REFERRAL_PERCENTAGE,
                    set_by=set_by,
                    notes=notes,
                )
                for vendor_id in vendor_ids
            ]
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    logger.info("Commission set to %s%% for %d vendors by %s", pct, len(rows), set_by)
    return {"total_vendors": len(rows), "results": rows}
