from contextlib import contextmanager
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

from config import get_settings

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@contextmanager
def get_conn():
    """
    simple context manager to get a Postgres connection.
    autocommit is disabled so we can manage transactions explicitly.
    rows come back as dicts.
    """
    with psycopg.connect(get_settings().database_dsn, row_factory=dict_row) as conn:
        conn.autocommit = False
        yield conn


def apply_schema(conn) -> None:
    conn.execute(SCHEMA_PATH.read_text())
