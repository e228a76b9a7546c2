from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import secrets
import string

from psycopg import Connection, sql

from errors import InsufficientBalance, NotFound

COMMISSION_TABLES = {
    "referral": "referral_commissions",
    "employee": "employee_commissions",
}

# payee column per commission kind
PAYEE_COLUMNS = {
    "referral": "referrer_id",
    "employee": "employee_id",
}


def _commission_table(kind: str) -> sql.Identifier:
    if kind not in COMMISSION_TABLES:
        raise ValueError(f"unknown commission kind {kind!r}")
    return sql.Identifier(COMMISSION_TABLES[kind])


# ---------
# wallets
# ---------

def create_wallet(conn: Connection, owner_kind: str) -> int:
    with conn.cursor() as cur:
        cur.execute(
            "INSERT INTO wallets (owner_kind) VALUES (%s) RETURNING id",
            (owner_kind,),
        )
        return cur.fetchone()["id"]


def get_wallet(conn: Connection, wallet_id: int, for_update: bool = False) -> Dict[str, Any]:
    query = "SELECT id, owner_kind, balance, created_at, updated_at FROM wallets WHERE id = %s"
    if for_update:
        query += " FOR UPDATE"
    with conn.cursor() as cur:
        cur.execute(query, (wallet_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Wallet {wallet_id} not found")
    return row


def credit_wallet(
    conn: Connection,
    wallet_id: int,
    amount: Decimal,
    description: str,
    reference: Optional[str] = None,
) -> Dict[str, Any]:
    """
    increment the balance and append the credit entry in ONE statement,
    so concurrent credits can never lose an update.
    returns {"balance", "transaction_id", "created_at"}.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH updated AS (
                UPDATE wallets
                SET balance = balance + %(amount)s,
                    updated_at = NOW()
                WHERE id = %(wallet_id)s
                RETURNING id, balance
            ), entry AS (
                INSERT INTO wallet_transactions (wallet_id, type, amount, description, reference)
                SELECT id, 'credit', %(amount)s, %(description)s, %(reference)s FROM updated
                RETURNING id, created_at
            )
            SELECT updated.balance, entry.id AS transaction_id, entry.created_at
            FROM updated, entry
            """,
            {"wallet_id": wallet_id, "amount": amount, "description": description, "reference": reference},
        )
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Wallet {wallet_id} not found")
    return row


def debit_wallet(
    conn: Connection,
    wallet_id: int,
    amount: Decimal,
    description: str,
    reference: Optional[str] = None,
) -> Dict[str, Any]:
    """
    conditional decrement: only applies while balance >= amount.
    zero rows back means either no wallet or not enough money.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH updated AS (
                UPDATE wallets
                SET balance = balance - %(amount)s,
                    updated_at = NOW()
                WHERE id = %(wallet_id)s
                  AND balance >= %(amount)s
                RETURNING id, balance
            ), entry AS (
                INSERT INTO wallet_transactions (wallet_id, type, amount, description, reference)
                SELECT id, 'debit', %(amount)s, %(description)s, %(reference)s FROM updated
                RETURNING id, created_at
            )
            SELECT updated.balance, entry.id AS transaction_id, entry.created_at
            FROM updated, entry
            """,
            {"wallet_id": wallet_id, "amount": amount, "description": description, "reference": reference},
        )
        row = cur.fetchone()
    if row is None:
        wallet = get_wallet(conn, wallet_id)
        raise InsufficientBalance(
            f"Insufficient wallet balance: requested {amount}, available {wallet['balance']}"
        )
    return row


def append_wallet_audit(conn: Connection, wallet_id: int, description: str, reference: Optional[str] = None) -> None:
    """zero-amount entry; the balance is untouched."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO wallet_transactions (wallet_id, type, amount, description, reference)
            VALUES (%s, 'credit', 0, %s, %s)
            """,
            (wallet_id, description, reference),
        )


def get_wallet_totals(conn: Connection, wallet_id: int) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT
                COALESCE(SUM(amount) FILTER (WHERE type = 'credit'), 0) AS total_credits,
                COALESCE(SUM(amount) FILTER (WHERE type = 'debit'), 0)  AS total_debits,
                COUNT(*) AS transaction_count
            FROM wallet_transactions
            WHERE wallet_id = %s
            """,
            (wallet_id,),
        )
        return cur.fetchone()


def get_wallet_transactions(conn: Connection, wallet_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, type, amount, description, reference, created_at
            FROM wallet_transactions
            WHERE wallet_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (wallet_id, limit),
        )
        return cur.fetchall()


# ---------
# vendors / employees (wallet owners)
# ---------

def _generate_unique_referral_code(conn: Connection) -> str:
    """
    generate a unique referral code (REF_XXXXXXXX).
    uses DB uniqueness check to guarantee no collisions.
    """
    alphabet = string.ascii_uppercase + string.digits
    while True:
        candidate = "REF_" + "".join(secrets.choice(alphabet) for _ in range(8))
        with conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM vendors WHERE referral_code = %s",
                (candidate,),
            )
            if cur.fetchone() is None:
                return candidate


def get_vendor_by_referral_code(conn: Connection, referral_code: str) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id, name, referral_code FROM vendors WHERE referral_code = %s",
            (referral_code,),
        )
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"No vendor found with referral_code={referral_code}")
    return row


def insert_vendor(
    conn: Connection,
    name: str,
    shop_name: str,
    wallet_id: int,
    city: Optional[str] = None,
    state: Optional[str] = None,
    referred_by: Optional[int] = None,
    referred_by_code: Optional[str] = None,
) -> Dict[str, Any]:
    referral_code = _generate_unique_referral_code(conn)
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO vendors
                (name, shop_name, city, state, referral_code, referred_by, referred_by_code, wallet_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (name, shop_name, city, state, referral_code, referred_by, referred_by_code, wallet_id),
        )
        return cur.fetchone()


def get_vendor(conn: Connection, vendor_id: int, for_update: bool = False) -> Dict[str, Any]:
    query = "SELECT * FROM vendors WHERE id = %s"
    if for_update:
        query += " FOR UPDATE"
    with conn.cursor() as cur:
        cur.execute(query, (vendor_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Vendor {vendor_id} not found")
    return row


def get_existing_vendor_ids(conn: Connection, vendor_ids: List[int]) -> List[int]:
    with conn.cursor() as cur:
        cur.execute("SELECT id FROM vendors WHERE id = ANY(%s)", (list(vendor_ids),))
        return [row["id"] for row in cur.fetchall()]


def set_vendor_assigned_employee(conn: Connection, vendor_id: int, employee_id: Optional[int]) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE vendors SET assigned_employee_id = %s, updated_at = NOW() WHERE id = %s",
            (employee_id, vendor_id),
        )
        if cur.rowcount != 1:
            raise NotFound(f"Vendor {vendor_id} not found")


def insert_employee(
    conn: Connection,
    name: str,
    role: str,
    super_employee_id: Optional[int] = None,
    employee_commission_percentage: Decimal = Decimal("0"),
    commission_percentage: Decimal = Decimal("0"),
    commission_active: bool = True,
    wallet_id: Optional[int] = None,
) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO employees
                (name, role, super_employee_id, employee_commission_percentage,
                 commission_percentage, commission_active, wallet_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                name,
                role,
                super_employee_id,
                employee_commission_percentage,
                commission_percentage,
                commission_active,
                wallet_id,
            ),
        )
        return cur.fetchone()


def get_employee(conn: Connection, employee_id: int) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute("SELECT * FROM employees WHERE id = %s", (employee_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Employee {employee_id} not found")
    return row


def get_owner_wallet_id(conn: Connection, owner_kind: str, owner_id: int) -> int:
    """
    resolve the wallet of a wallet owner. only vendors and super-employees hold one.
    """
    if owner_kind == "vendor":
        return get_vendor(conn, owner_id)["wallet_id"]
    if owner_kind == "super_employee":
        employee = get_employee(conn, owner_id)
        if employee["role"] != "super_employee" or employee["wallet_id"] is None:
            raise NotFound(f"Employee {owner_id} is not a super employee and has no wallet")
        return employee["wallet_id"]
    raise NotFound(f"Unknown wallet owner kind {owner_kind!r}")


def increment_sellers_assigned(conn: Connection, employee_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE employees
            SET total_sellers_assigned = total_sellers_assigned + 1,
                updated_at = NOW()
            WHERE id = %s
            """,
            (employee_id,),
        )


def record_employee_earning(conn: Connection, employee_id: int, amount: Decimal) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE employees
            SET total_commission_earned = total_commission_earned + %s,
                last_commission_at = NOW(),
                updated_at = NOW()
            WHERE id = %s
            """,
            (amount, employee_id),
        )


# ---------
# settings
# ---------

def get_system_settings(conn: Connection) -> Dict[str, Any]:
    """the singleton row, created with defaults on first use."""
    with conn.cursor() as cur:
        cur.execute("INSERT INTO system_settings (id) VALUES (1) ON CONFLICT (id) DO NOTHING")
        cur.execute("SELECT * FROM system_settings WHERE id = 1")
        return cur.fetchone()


SYSTEM_SETTINGS_FIELDS = (
    "referral_percentage",
    "referral_active",
    "minimum_subscription_amount",
    "maximum_commission_per_referral",
    "minimum_withdrawal",
    "maximum_withdrawal",
)


def update_system_settings(conn: Connection, fields: Dict[str, Any], updated_by: Optional[str]) -> Dict[str, Any]:
    get_system_settings(conn)
    unknown = set(fields) - set(SYSTEM_SETTINGS_FIELDS)
    if unknown:
        raise ValueError(f"unknown settings fields: {sorted(unknown)}")

    assignments = [
        sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name)) for name in fields
    ]
    assignments.append(sql.SQL("updated_by = {}").format(sql.Placeholder("updated_by")))
    assignments.append(sql.SQL("updated_at = NOW()"))
    query = sql.SQL("UPDATE system_settings SET {} WHERE id = 1 RETURNING *").format(
        sql.SQL(", ").join(assignments)
    )
    with conn.cursor() as cur:
        cur.execute(query, {**fields, "updated_by": updated_by})
        return cur.fetchone()


def get_vendor_commission_settings(conn: Connection, vendor_id: int) -> Optional[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT * FROM vendor_commission_settings WHERE vendor_id = %s",
            (vendor_id,),
        )
        return cur.fetchone()


def upsert_vendor_commission_settings(
    conn: Connection,
    vendor_id: int,
    percentage: Decimal,
    is_custom: bool,
    set_by: Optional[str],
    notes: Optional[str],
) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO vendor_commission_settings
                (vendor_id, commission_percentage, is_custom_commission, set_by, notes)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (vendor_id)
            DO UPDATE SET
                commission_percentage = EXCLUDED.commission_percentage,
                is_custom_commission = EXCLUDED.is_custom_commission,
                is_active = TRUE,
                set_by = EXCLUDED.set_by,
                notes = EXCLUDED.notes,
                updated_at = NOW()
            RETURNING *
            """,
            (vendor_id, percentage, is_custom, set_by, notes),
        )
        return cur.fetchone()


def update_employee_commission(
    conn: Connection,
    employee_id: int,
    role: str,
    fields: Dict[str, Any],
) -> Dict[str, Any]:
    """update commission columns on an employee of the given role."""
    assignments = [
        sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name)) for name in fields
    ]
    assignments.append(sql.SQL("updated_at = NOW()"))
    query = sql.SQL("UPDATE employees SET {} WHERE id = {} AND role = {} RETURNING *").format(
        sql.SQL(", ").join(assignments),
        sql.Placeholder("employee_id"),
        sql.Placeholder("role"),
    )
    with conn.cursor() as cur:
        cur.execute(query, {**fields, "employee_id": employee_id, "role": role})
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"No {role} with id {employee_id}")
    return row


# ---------
# subscriptions
# ---------

def insert_subscription(
    conn: Connection,
    vendor_id: int,
    plan: str,
    amount: Decimal,
    currency: str,
    gateway_subscription_id: Optional[str],
    gateway_order_id: Optional[str] = None,
) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO subscriptions
                (vendor_id, plan, amount, currency, gateway_subscription_id, gateway_order_id)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (vendor_id, plan, amount, currency, gateway_subscription_id, gateway_order_id),
        )
        return cur.fetchone()


def get_subscription(conn: Connection, subscription_id: int) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute("SELECT * FROM subscriptions WHERE id = %s", (subscription_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Subscription {subscription_id} not found")
    return row


def find_subscription_for_update(
    conn: Connection,
    gateway_subscription_id: Optional[str] = None,
    payment_id: Optional[str] = None,
    gateway_order_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    lock the subscription row an event refers to, matching by payment id,
    then gateway subscription id, then order id. None if nothing matches.
    """
    with conn.cursor() as cur:
        if payment_id:
            cur.execute(
                "SELECT * FROM subscriptions WHERE gateway_payment_id = %s ORDER BY id LIMIT 1 FOR UPDATE",
                (payment_id,),
            )
            row = cur.fetchone()
            if row is not None:
                return row
        if gateway_subscription_id:
            cur.execute(
                "SELECT * FROM subscriptions WHERE gateway_subscription_id = %s FOR UPDATE",
                (gateway_subscription_id,),
            )
            row = cur.fetchone()
            if row is not None:
                return row
        if gateway_order_id:
            cur.execute(
                "SELECT * FROM subscriptions WHERE gateway_order_id = %s ORDER BY id LIMIT 1 FOR UPDATE",
                (gateway_order_id,),
            )
            return cur.fetchone()
    return None


def mark_subscription_active(
    conn: Connection,
    subscription_id: int,
    start_date: datetime,
    end_date: datetime,
    payment_id: Optional[str],
) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE subscriptions
            SET status = 'active',
                start_date = %s,
                end_date = %s,
                gateway_payment_id = %s,
                updated_at = NOW()
            WHERE id = %s AND status = 'pending'
            RETURNING *
            """,
            (start_date, end_date, payment_id, subscription_id),
        )
        return cur.fetchone()


def set_subscription_status(
    conn: Connection,
    subscription_id: int,
    status: str,
    cancelled_at: Optional[datetime] = None,
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE subscriptions
            SET status = %s,
                cancelled_at = COALESCE(%s, cancelled_at),
                updated_at = NOW()
            WHERE id = %s
            """,
            (status, cancelled_at, subscription_id),
        )


def set_vendor_subscription_summary(
    conn: Connection,
    vendor_id: int,
    start_date: datetime,
    end_date: datetime,
    gateway_subscription_id: Optional[str],
    payment_id: Optional[str],
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE vendors
            SET subscription_active = TRUE,
                subscription_start = %s,
                subscription_end = %s,
                gateway_subscription_id = %s,
                gateway_payment_id = %s,
                updated_at = NOW()
            WHERE id = %s
            """,
            (start_date, end_date, gateway_subscription_id, payment_id, vendor_id),
        )


def clear_vendor_subscription_flag(conn: Connection, vendor_id: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE vendors SET subscription_active = FALSE, updated_at = NOW() WHERE id = %s",
            (vendor_id,),
        )


def insert_subscription_payment(
    conn: Connection,
    subscription_id: int,
    amount: Optional[Decimal],
    status: str,
    gateway_payment_id: str,
    description: str,
) -> bool:
    """append to payment history; False when this (payment, status) is already recorded."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO subscription_payments
                (subscription_id, amount, status, gateway_payment_id, description)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (subscription_id, gateway_payment_id, status) DO NOTHING
            RETURNING id
            """,
            (subscription_id, amount, status, gateway_payment_id, description),
        )
        return cur.fetchone() is not None


def get_payment_history(conn: Connection, subscription_id: int) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT amount, status, gateway_payment_id, description, created_at
            FROM subscription_payments
            WHERE subscription_id = %s
            ORDER BY id
            """,
            (subscription_id,),
        )
        return cur.fetchall()


def expire_due_subscriptions(conn: Connection, now: datetime) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE subscriptions
            SET status = 'expired', updated_at = NOW()
            WHERE status = 'active' AND end_date < %s
            RETURNING id, vendor_id
            """,
            (now,),
        )
        return cur.fetchall()


# ---------
# commissions
# ---------

def ensure_referral_commission(
    conn: Connection,
    referrer_id: int,
    referred_vendor_id: int,
    referral_code: Optional[str],
    subscription: Dict[str, Any],
    percentage: Decimal,
    amount: Decimal,
) -> Tuple[Optional[int], bool]:
    """
    insert a pending referral commission unless one already exists for
    (referrer, subscription). returns (commission_id, created).
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO referral_commissions
                (referrer_id, referred_vendor_id, referral_code, subscription_id, plan,
                 percentage, amount, subscription_amount, currency)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (referrer_id, subscription_id) DO NOTHING
            RETURNING id
            """,
            (
                referrer_id,
                referred_vendor_id,
                referral_code,
                subscription["id"],
                subscription["plan"],
                percentage,
                amount,
                subscription["amount"],
                subscription["currency"],
            ),
        )
        row = cur.fetchone()
        if row is not None:
            return row["id"], True
        cur.execute(
            "SELECT id FROM referral_commissions WHERE referrer_id = %s AND subscription_id = %s",
            (referrer_id, subscription["id"]),
        )
        existing = cur.fetchone()
        return (existing["id"] if existing else None, False)


def ensure_employee_commission(
    conn: Connection,
    employee_id: int,
    seller: Dict[str, Any],
    subscription: Dict[str, Any],
    percentage: Decimal,
    amount: Decimal,
) -> Tuple[Optional[int], bool]:
    """same as ensure_referral_commission, keyed on (employee, seller, subscription)."""
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO employee_commissions
                (employee_id, seller_id, subscription_id, percentage, amount, subscription_amount,
                 district_name, district_state, period_start, period_end)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (employee_id, seller_id, subscription_id) DO NOTHING
            RETURNING id
            """,
            (
                employee_id,
                seller["id"],
                subscription["id"],
                percentage,
                amount,
                subscription["amount"],
                seller.get("city") or "Unknown",
                seller.get("state") or "Unknown",
                subscription["start_date"],
                subscription["end_date"],
            ),
        )
        row = cur.fetchone()
        if row is not None:
            return row["id"], True
        cur.execute(
            """
            SELECT id FROM employee_commissions
            WHERE employee_id = %s AND seller_id = %s AND subscription_id = %s
            """,
            (employee_id, seller["id"], subscription["id"]),
        )
        existing = cur.fetchone()
        return (existing["id"] if existing else None, False)


def get_commission(conn: Connection, kind: str, commission_id: int) -> Dict[str, Any]:
    query = sql.SQL("SELECT * FROM {} WHERE id = %s").format(_commission_table(kind))
    with conn.cursor() as cur:
        cur.execute(query, (commission_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"{kind.capitalize()} commission {commission_id} not found")
    return row


def mark_commission_paid(
    conn: Connection,
    kind: str,
    commission_id: int,
    transaction_id: str,
    approver_id: str,
    notes: Optional[str],
) -> Optional[Dict[str, Any]]:
    """
    pending -> paid, only if still pending. None when nothing matched
    (missing, or someone else already processed it).
    """
    query = sql.SQL(
        """
        UPDATE {}
        SET status = 'paid',
            paid_at = NOW(),
            transaction_id = %s,
            approved_by = %s,
            approved_at = NOW(),
            admin_notes = %s,
            updated_at = NOW()
        WHERE id = %s AND status = 'pending'
        RETURNING *
        """
    ).format(_commission_table(kind))
    with conn.cursor() as cur:
        cur.execute(query, (transaction_id, approver_id, notes, commission_id))
        return cur.fetchone()


def mark_commission_cancelled(
    conn: Connection,
    kind: str,
    commission_id: int,
    approver_id: str,
    notes: Optional[str],
) -> Optional[Dict[str, Any]]:
    query = sql.SQL(
        """
        UPDATE {}
        SET status = 'cancelled',
            approved_by = %s,
            approved_at = NOW(),
            admin_notes = %s,
            updated_at = NOW()
        WHERE id = %s AND status = 'pending'
        RETURNING *
        """
    ).format(_commission_table(kind))
    with conn.cursor() as cur:
        cur.execute(query, (approver_id, notes, commission_id))
        return cur.fetchone()


def get_commission_credit_target(conn: Connection, kind: str, commission: Dict[str, Any]) -> Dict[str, Any]:
    """
    wallet to credit plus the seller / referred vendor named in the description.
    returns {"wallet_id", "name", "shop_name"}.
    """
    with conn.cursor() as cur:
        if kind == "referral":
            cur.execute(
                """
                SELECT r.wallet_id, v.name, v.shop_name
                FROM vendors r, vendors v
                WHERE r.id = %s AND v.id = %s
                """,
                (commission["referrer_id"], commission["referred_vendor_id"]),
            )
        else:
            cur.execute(
                """
                SELECT e.wallet_id, v.name, v.shop_name
                FROM employees e, vendors v
                WHERE e.id = %s AND e.role = 'super_employee' AND v.id = %s
                """,
                (commission["employee_id"], commission["seller_id"]),
            )
        row = cur.fetchone()
    if row is None or row["wallet_id"] is None:
        raise NotFound(f"No wallet to credit for {kind} commission {commission['id']}")
    return row


def list_commissions(
    conn: Connection,
    kind: str,
    status: Optional[str] = None,
    payee_id: Optional[int] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    where = [sql.SQL("TRUE")]
    params: List[Any] = []
    if status is not None:
        where.append(sql.SQL("status = %s"))
        params.append(status)
    if payee_id is not None:
        where.append(sql.SQL("{} = %s").format(sql.Identifier(PAYEE_COLUMNS[kind])))
        params.append(payee_id)

    query = sql.SQL("SELECT * FROM {} WHERE {} ORDER BY created_at DESC, id DESC LIMIT %s").format(
        _commission_table(kind), sql.SQL(" AND ").join(where)
    )
    with conn.cursor() as cur:
        cur.execute(query, (*params, limit))
        return cur.fetchall()


def commission_totals_by_status(conn: Connection, kind: str, payee_id: Optional[int] = None) -> List[Dict[str, Any]]:
    where = sql.SQL("TRUE")
    params: Tuple[Any, ...] = ()
    if payee_id is not None:
        where = sql.SQL("{} = %s").format(sql.Identifier(PAYEE_COLUMNS[kind]))
        params = (payee_id,)

    query = sql.SQL(
        """
        SELECT status, COUNT(*) AS count, COALESCE(SUM(amount), 0) AS amount
        FROM {}
        WHERE {}
        GROUP BY status
        """
    ).format(_commission_table(kind), where)
    with conn.cursor() as cur:
        cur.execute(query, params)
        return cur.fetchall()


# ---------
# withdrawals
# ---------

def pending_withdrawal_total(conn: Connection, wallet_id: int) -> Decimal:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT COALESCE(SUM(amount), 0) AS total
            FROM withdrawal_requests
            WHERE wallet_id = %s AND status = 'pending'
            """,
            (wallet_id,),
        )
        return cur.fetchone()["total"]


def insert_withdrawal_request(
    conn: Connection,
    wallet_id: int,
    amount: Decimal,
    method: str,
    details: Dict[str, Any],
) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO withdrawal_requests
                (wallet_id, amount, payment_method, upi_id,
                 account_number, ifsc_code, account_holder_name, bank_name)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                wallet_id,
                amount,
                method,
                details.get("upi_id"),
                details.get("account_number"),
                details.get("ifsc_code"),
                details.get("account_holder_name"),
                details.get("bank_name"),
            ),
        )
        return cur.fetchone()


def get_withdrawal_request(conn: Connection, request_id: int) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute("SELECT * FROM withdrawal_requests WHERE id = %s", (request_id,))
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"Withdrawal request {request_id} not found")
    return row


def mark_withdrawal_processed(
    conn: Connection,
    request_id: int,
    status: str,
    processed_by: str,
    notes: Optional[str],
    transaction_id: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """pending -> approved|rejected, only if still pending."""
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE withdrawal_requests
            SET status = %s,
                processed_at = NOW(),
                processed_by = %s,
                admin_notes = %s,
                transaction_id = %s
            WHERE id = %s AND status = 'pending'
            RETURNING *
            """,
            (status, processed_by, notes, transaction_id, request_id),
        )
        return cur.fetchone()


def list_withdrawal_requests(
    conn: Connection,
    status: Optional[str] = None,
    wallet_id: Optional[int] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    where = [sql.SQL("TRUE")]
    params: List[Any] = []
    if status is not None:
        where.append(sql.SQL("status = %s"))
        params.append(status)
    if wallet_id is not None:
        where.append(sql.SQL("wallet_id = %s"))
        params.append(wallet_id)

    query = sql.SQL(
        "SELECT * FROM withdrawal_requests WHERE {} ORDER BY requested_at DESC, id DESC LIMIT %s"
    ).format(sql.SQL(" AND ").join(where))
    with conn.cursor() as cur:
        cur.execute(query, (*params, limit))
        return cur.fetchall()


def withdrawal_totals_by_status(conn: Connection, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT status,
                   COUNT(*) AS count,
                   COALESCE(SUM(amount), 0) AS amount,
                   COALESCE(AVG(amount), 0) AS average_amount
            FROM withdrawal_requests
            WHERE %(since)s::timestamptz IS NULL OR requested_at >= %(since)s::timestamptz
            GROUP BY status
            """,
            {"since": since},
        )
        return cur.fetchall()


def get_wallet_owner(conn: Connection, wallet_id: int) -> Dict[str, Any]:
    """{"owner_kind", "owner_id", "name", "shop_name"} for a wallet."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT 'vendor' AS owner_kind, id AS owner_id, name, shop_name
            FROM vendors WHERE wallet_id = %(wallet_id)s
            UNION ALL
            SELECT 'super_employee', id, name, NULL
            FROM employees WHERE wallet_id = %(wallet_id)s
            """,
            {"wallet_id": wallet_id},
        )
        row = cur.fetchone()
    if row is None:
        raise NotFound(f"No owner for wallet {wallet_id}")
    return row
