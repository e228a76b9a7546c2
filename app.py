import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

import gateway
from config import configure_logging, get_settings
from errors import CommissionError, InvalidState, NotFound, UnverifiedEvent
from ledger_db import approve_commission, bulk_approve_employee_commissions, commission_summary, list_commissions, reject_commission
from money import fmt
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
from subscription_db import create_subscription, expire_subscriptions, handle_event, record_verified_payment
from wallet_db import get_wallet_summary
from withdrawal_db import (
    approve_withdrawal,
    get_withdrawal,
    list_withdrawals,
    reject_withdrawal,
    request_withdrawal,
    withdrawal_statistics,
)

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Vendor Commission Ledger", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

CommissionKind = Literal["referral", "employee"]
OwnerKind = Literal["vendor", "super_employee"]


# ---------
# pydantic models (requests)
# ---------

class VendorCreateRequest(BaseModel):
    name: str
    shop_name: str
    city: Optional[str] = None
    state: Optional[str] = None
    referral_code: Optional[str] = Field(None, description="Referral code used on signup")


class EmployeeCreateRequest(BaseModel):
    name: str
    role: Literal["employee", "super_employee"]
    super_employee_id: Optional[int] = None
    employee_commission_percentage: Decimal = Decimal("0")
    commission_percentage: Decimal = Decimal("0")
    commission_active: bool = True


class VendorAssignRequest(BaseModel):
    employee_id: Optional[int] = Field(None, description="Employee to assign; null to unassign")


class SubscriptionCreateRequest(BaseModel):
    vendor_id: int
    plan: str = Field(..., description="3months | 6months | 1year")
    gateway_subscription_id: str
    gateway_order_id: Optional[str] = None


class PaymentVerifyRequest(BaseModel):
    entity_id: str = Field(..., description="Gateway order or subscription id")
    payment_id: str
    signature: str


class CommissionDecisionRequest(BaseModel):
    approver_id: str = Field(..., description="Authenticated admin performing the action")
    notes: Optional[str] = None


class BulkApproveRequest(BaseModel):
    commission_ids: List[int] = Field(..., min_length=1)
    approver_id: str
    notes: Optional[str] = None


class WithdrawalCreateRequest(BaseModel):
    owner_kind: OwnerKind
    owner_id: int
    amount: Decimal
    payment_method: Literal["upi", "bank"]
    upi_id: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    account_holder_name: Optional[str] = None
    bank_name: Optional[str] = None


class WithdrawalApproveRequest(BaseModel):
    approver_id: str
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class WithdrawalRejectRequest(BaseModel):
    approver_id: str
    notes: Optional[str] = None


class SystemSettingsUpdateRequest(BaseModel):
    referral_percentage: Optional[Decimal] = None
    referral_active: Optional[bool] = None
    minimum_subscription_amount: Optional[Decimal] = None
    maximum_commission_per_referral: Optional[Decimal] = None
    minimum_withdrawal: Optional[Decimal] = None
    maximum_withdrawal: Optional[Decimal] = None
    updated_by: Optional[str] = None


class VendorCommissionRequest(BaseModel):
    commission_percentage: Decimal
    set_by: Optional[str] = None
    notes: Optional[str] = None


class BulkVendorCommissionRequest(BaseModel):
    vendor_ids: List[int] = Field(..., min_length=1)
    commission_percentage: Decimal
    set_by: Optional[str] = None
    notes: Optional[str] = None


class VendorCommissionResetRequest(BaseModel):
    set_by: Optional[str] = None


class SuperEmployeeCommissionRequest(BaseModel):
    commission_percentage: Decimal
    is_active: bool = True
    set_by: Optional[str] = None


class EmployeeCommissionRequest(BaseModel):
    employee_commission_percentage: Decimal
    set_by: Optional[str] = None


# ---------
# helpers
# ---------

def _jsonable(value: Any) -> Any:
    """decimals as 2dp strings, datetimes as ISO 8601."""
    if isinstance(value, Decimal):
        return fmt(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _to_http(e: CommissionError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidState):
        return HTTPException(status_code=409, detail=str(e))
    # ValidationError, UnverifiedEvent, InsufficientBalance
    return HTTPException(status_code=400, detail=str(e))


def _run(operation, *args, **kwargs):
    """call a core operation and translate its failures into HTTP errors."""
    try:
        return _jsonable(operation(*args, **kwargs))
    except CommissionError as e:
        raise _to_http(e)
    except Exception:
        logger.exception("Unexpected error in %s", operation.__name__)
        raise HTTPException(status_code=500, detail="Internal server error")


# ---------
# gateway
# ---------

@app.post("/api/webhooks/gateway")
async def gateway_webhook(request: Request):
    """
    subscription lifecycle notifications from the payment gateway.

    the signature is checked against the raw body before anything else.
    unknown subscriptions and already-handled transitions are acknowledged
    with 200 so the gateway does not keep redelivering.
    """
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")
    try:
        gateway.require_verified_webhook(body, signature, get_settings().gateway_webhook_secret)
    except UnverifiedEvent as e:
        logger.warning("Rejected gateway webhook: %s", e)
        raise _to_http(e)

    try:
        event = gateway.parse_webhook_event(json.loads(body))
    except (ValueError, AttributeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid webhook payload: {e}")

    logger.info("Gateway webhook received: %s", event["event"])
    try:
        result = await run_in_threadpool(handle_event, event)
    except InvalidState as e:
        logger.warning("Gateway event %s not applied: %s", event["event"], e)
        return {"status": "invalid_state", "event": event["event"], "detail": str(e)}
    except CommissionError as e:
        raise _to_http(e)
    except Exception:
        logger.exception("Unexpected error handling gateway event %s", event["event"])
        raise HTTPException(status_code=500, detail="Internal server error")

    return _jsonable(result)


@app.post("/api/payments/verify")
def payment_verify(payload: PaymentVerifyRequest):
    """checkout callback signature check."""
    verified = gateway.verify_payment_signature(
        payload.entity_id,
        payload.payment_id,
        payload.signature,
        get_settings().gateway_key_secret,
    )
    if not verified:
        raise HTTPException(status_code=400, detail="Invalid payment signature")
    return _run(record_verified_payment, payload.entity_id, payload.payment_id)


@app.get("/api/plans")
def plans():
    return _jsonable(gateway.SUBSCRIPTION_PLANS)


# ---------
# owners
# ---------

@app.post("/api/vendors")
def vendor_create(payload: VendorCreateRequest):
    return _run(
        create_vendor,
        name=payload.name,
        shop_name=payload.shop_name,
        city=payload.city,
        state=payload.state,
        referral_code=payload.referral_code,
    )


@app.post("/api/employees")
def employee_create(payload: EmployeeCreateRequest):
    return _run(create_employee, **payload.model_dump())


@app.post("/api/vendors/{vendor_id}/assign")
def vendor_assign(vendor_id: int, payload: VendorAssignRequest):
    return _run(assign_vendor_to_employee, vendor_id, payload.employee_id)


# ---------
# subscriptions
# ---------

@app.post("/api/subscriptions")
def subscription_create(payload: SubscriptionCreateRequest):
    return _run(
        create_subscription,
        vendor_id=payload.vendor_id,
        plan=payload.plan,
        gateway_subscription_id=payload.gateway_subscription_id,
        gateway_order_id=payload.gateway_order_id,
    )


@app.post("/api/subscriptions/expire")
def subscriptions_expire():
    return _run(expire_subscriptions)


# ---------
# commissions
# ---------

@app.get("/api/commissions/{kind}")
def commissions_list(
    kind: CommissionKind,
    status: Optional[str] = Query(None, description="Filter by status"),
    payee_id: Optional[int] = Query(None, description="Referrer id or super-employee id"),
    limit: int = Query(50, ge=1, le=500),
):
    return _run(list_commissions, kind, status=status, payee_id=payee_id, limit=limit)


@app.get("/api/commissions/{kind}/summary")
def commissions_summary(kind: CommissionKind, payee_id: Optional[int] = Query(None)):
    return _run(commission_summary, kind, payee_id=payee_id)


@app.post("/api/commissions/{kind}/{commission_id}/approve")
def commission_approve(kind: CommissionKind, commission_id: int, payload: CommissionDecisionRequest):
    return _run(approve_commission, kind, commission_id, payload.approver_id, payload.notes)


@app.post("/api/commissions/{kind}/{commission_id}/reject")
def commission_reject(kind: CommissionKind, commission_id: int, payload: CommissionDecisionRequest):
    return _run(reject_commission, kind, commission_id, payload.approver_id, payload.notes)


@app.post("/api/commissions/employee/bulk-approve")
def commissions_bulk_approve(payload: BulkApproveRequest):
    return _run(bulk_approve_employee_commissions, payload.commission_ids, payload.approver_id, payload.notes)


# ---------
# withdrawals
# ---------

@app.post("/api/withdrawals")
def withdrawal_create(payload: WithdrawalCreateRequest):
    details: Dict[str, Any] = {}
    if payload.payment_method == "upi":
        details["upi_id"] = payload.upi_id
    else:
        details.update(
            account_number=payload.account_number,
            ifsc_code=payload.ifsc_code,
            account_holder_name=payload.account_holder_name,
            bank_name=payload.bank_name,
        )
    return _run(
        request_withdrawal,
        payload.owner_kind,
        payload.owner_id,
        payload.amount,
        payload.payment_method,
        details,
    )


@app.post("/api/withdrawals/{request_id}/approve")
def withdrawal_approve(request_id: int, payload: WithdrawalApproveRequest):
    return _run(approve_withdrawal, request_id, payload.approver_id, payload.transaction_id, payload.notes)


@app.post("/api/withdrawals/{request_id}/reject")
def withdrawal_reject(request_id: int, payload: WithdrawalRejectRequest):
    return _run(reject_withdrawal, request_id, payload.approver_id, payload.notes)


@app.get("/api/withdrawals")
def withdrawals_list(
    status: Optional[Literal["pending", "approved", "rejected"]] = Query(None),
    owner_kind: Optional[OwnerKind] = Query(None),
    owner_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    return _run(list_withdrawals, status=status, owner_kind=owner_kind, owner_id=owner_id, limit=limit)


@app.get("/api/withdrawals/statistics")
def withdrawals_statistics(period: Optional[Literal["month", "quarter", "year"]] = Query(None)):
    return _run(withdrawal_statistics, period)


@app.get("/api/withdrawals/{request_id}")
def withdrawal_detail(request_id: int):
    return _run(get_withdrawal, request_id)


# ---------
# wallets
# ---------

@app.get("/api/wallets/{owner_kind}/{owner_id}")
def wallet_summary(owner_kind: OwnerKind, owner_id: int, recent: int = Query(10, ge=1, le=100)):
    return _run(get_wallet_summary, owner_kind, owner_id, recent)


# ---------
# settings
# ---------

@app.get("/api/settings/system")
def system_settings():
    return _run(get_system_settings)


@app.put("/api/settings/system")
def system_settings_update(payload: SystemSettingsUpdateRequest):
    changes = payload.model_dump(exclude={"updated_by"})
    return _run(update_referral_settings, changes, updated_by=payload.updated_by)


@app.put("/api/settings/vendors/{vendor_id}/commission")
def vendor_commission_update(vendor_id: int, payload: VendorCommissionRequest):
    return _run(set_vendor_commission, vendor_id, payload.commission_percentage, payload.set_by, payload.notes)


@app.post("/api/settings/vendors/{vendor_id}/commission/reset")
def vendor_commission_reset(vendor_id: int, payload: VendorCommissionResetRequest):
    return _run(reset_vendor_commission, vendor_id, payload.set_by)


@app.put("/api/settings/vendors/commission/bulk")
def vendor_commission_bulk_update(payload: BulkVendorCommissionRequest):
    return _run(
        set_vendor_commissions_bulk,
        payload.vendor_ids,
        payload.commission_percentage,
        set_by=payload.set_by,
        notes=payload.notes,
    )


@app.put("/api/settings/super-employees/{employee_id}/commission")
def super_employee_commission_update(employee_id: int, payload: SuperEmployeeCommissionRequest):
    return _run(
        set_super_employee_commission,
        employee_id,
        payload.commission_percentage,
        active=payload.is_active,
        set_by=payload.set_by,
    )


@app.put("/api/settings/employees/{employee_id}/commission")
def employee_commission_update(employee_id: int, payload: EmployeeCommissionRequest):
    return _run(set_employee_commission_percentage, employee_id, payload.employee_commission_percentage, payload.set_by)
