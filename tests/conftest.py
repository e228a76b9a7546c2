import psycopg
import pytest

from db.db import apply_schema, get_conn

TABLES = (
    "withdrawal_requests",
    "employee_commissions",
    "referral_commissions",
    "subscription_payments",
    "subscriptions",
    "vendor_commission_settings",
    "vendors",
    "employees",
    "wallet_transactions",
    "wallets",
    "system_settings",
)


@pytest.fixture
def db():
    """
    fresh schema + empty tables. skips when Postgres is not reachable
    (COMMISSIONS_DATABASE_DSN).
    """
    try:
        with get_conn() as conn:
            apply_schema(conn)
            with conn.cursor() as cur:
                cur.execute(f"TRUNCATE {', '.join(TABLES)} RESTART IDENTITY CASCADE")
            conn.commit()
    except psycopg.OperationalError as e:
        pytest.skip(f"PostgreSQL not available: {e}")
