from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from errors import ValidationError
from money import quantize, to_decimal

# used when neither a vendor override nor a system settings row exists
DEFAULT_REFERRAL_PERCENTAGE = Decimal("10")

# defaults for a freshly created system settings row
DEFAULT_SYSTEM_SETTINGS: Dict[str, Any] = {
    "referral_percentage": Decimal("3"),
    "referral_active": True,
    "minimum_subscription_amount": Decimal("100"),
    "maximum_commission_per_referral": Decimal("1000"),
    "minimum_withdrawal": Decimal("100"),
    "maximum_withdrawal": Decimal("50000"),
}


def validate_percentage(value, field: str = "percentage") -> Decimal:
    pct = to_decimal(value, field)
    if pct < 0 or pct > 100:
        raise ValidationError(f"{field} must be between 0 and 100, got {pct}")
    return pct


def calculate_referral_commission(subscription_amount, percentage, min_qualifying, max_cap) -> Optional[Decimal]:
    """
    subscription_amount: Decimal (INR)
    percentage: Decimal, 0..100
    min_qualifying: subscriptions below this earn nothing
    max_cap: upper bound on the payout for a single referral (None = no cap)

    returns the commission amount, or None when the subscription does not qualify.
    """
    amount = to_decimal(subscription_amount, "subscription_amount")
    pct = validate_percentage(percentage)

    if min_qualifying is not None and amount < Decimal(min_qualifying):
        return None

    commission = quantize(amount * pct / Decimal("100"))
    if max_cap is not None and commission > Decimal(max_cap):
        commission = quantize(max_cap)
    return commission


def calculate_employee_commission(subscription_amount, percentage) -> Decimal:
    # no qualifying minimum and no cap on the employee side
    amount = to_decimal(subscription_amount, "subscription_amount")
    pct = validate_percentage(percentage)
    return quantize(amount * pct / Decimal("100"))


def resolve_referral_percentage(
    vendor_override: Optional[Dict[str, Any]],
    system_settings: Optional[Dict[str, Any]],
) -> Decimal:
    """
    resolution order:
      1) the referrer's own commission settings (if present and active)
      2) global referral percentage from system settings
      3) DEFAULT_REFERRAL_PERCENTAGE
    """
    if vendor_override and vendor_override.get("is_active", True):
        return Decimal(vendor_override["commission_percentage"])
    if system_settings and system_settings.get("referral_percentage") is not None:
        return Decimal(system_settings["referral_percentage"])
    return DEFAULT_REFERRAL_PERCENTAGE


def referral_terms(
    subscription_amount,
    vendor_override: Optional[Dict[str, Any]],
    system_settings: Optional[Dict[str, Any]],
) -> Optional[Tuple[Decimal, Decimal]]:
    """
    everything the ingestor needs to price a referral: (percentage, amount),
    or None when referrals are switched off or the subscription does not qualify.
    """
    settings = system_settings or {}
    if not settings.get("referral_active", True):
        return None

    percentage = resolve_referral_percentage(vendor_override, system_settings)
    amount = calculate_referral_commission(
        subscription_amount,
        percentage,
        settings.get("minimum_subscription_amount", DEFAULT_SYSTEM_SETTINGS["minimum_subscription_amount"]),
        settings.get("maximum_commission_per_referral", DEFAULT_SYSTEM_SETTINGS["maximum_commission_per_referral"]),
    )
    if amount is None or amount <= 0:
        return None
    return percentage, amount


def resolve_employee_payee(
    assigned: Optional[Dict[str, Any]],
    super_employee: Optional[Dict[str, Any]] = None,
) -> Optional[Tuple[Dict[str, Any], Decimal]]:
    """
    assigned: the employee the vendor is assigned to
    super_employee: the assigned employee's super-employee (only looked at
                    when `assigned` is a regular employee)

    returns (payee, percentage) or None.
      - super-employee with active commission settings -> itself, at its own rate
      - regular employee with a rate > 0 under an active super-employee
        -> the super-employee, at the regular employee's rate
    """
    if not assigned:
        return None

    if assigned["role"] == "super_employee":
        if not assigned.get("commission_active"):
            return None
        pct = Decimal(assigned.get("commission_percentage") or 0)
        return (assigned, pct) if pct > 0 else None

    if assigned["role"] == "employee":
        pct = Decimal(assigned.get("employee_commission_percentage") or 0)
        if pct <= 0 or not super_employee:
            return None
        if super_employee.get("id") != assigned.get("super_employee_id"):
            return None
        if super_employee["role"] != "super_employee" or not super_employee.get("commission_active"):
            return None
        return super_employee, pct

    return None
