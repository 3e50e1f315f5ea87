from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from typing import Any

from . import settings

try:
    import psycopg2  # type: ignore
    from psycopg2.extras import RealDictCursor  # type: ignore
except Exception:  # pragma: no cover - optional dependency at runtime
    psycopg2 = None
    RealDictCursor = None

logger = logging.getLogger("mockview.db")

# Serializes balance-changing writes.
DB_WRITE_LOCK = threading.Lock()

DB_INTEGRITY_ERRORS: tuple[type[Exception], ...] = (sqlite3.IntegrityError,)
if psycopg2 is not None:
    DB_INTEGRITY_ERRORS = DB_INTEGRITY_ERRORS + (psycopg2.IntegrityError,)


def db_backend() -> str:
    return "postgres" if settings.DATABASE_URL.startswith("postgresql://") else "sqlite"


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def dump_json(value: Any) -> str:
    return json.dumps(value or {}, separators=(",", ":"), sort_keys=True)


def parse_json(raw: Any) -> dict[str, Any]:
    try:
        return json.loads(raw or "{}")
    except Exception:
        return {}


def row_to_dict(row: Any) -> dict[str, Any] | None:
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def adapt_query_for_backend(query: str, params: Any = None) -> tuple[str, Any]:
    if db_backend() != "postgres" or params is None:
        return query, params
    converted_query = query.replace("?", "%s")
    if isinstance(params, list):
        return converted_query, tuple(params)
    return converted_query, params


class DBCursor:
    def __init__(self, raw_cursor: Any):
        self._raw_cursor = raw_cursor

    def execute(self, query: str, params: Any = None) -> "DBCursor":
        converted_query, converted_params = adapt_query_for_backend(query, params)
        if converted_params is None:
            self._raw_cursor.execute(converted_query)
        else:
            self._raw_cursor.execute(converted_query, converted_params)
        return self

    def fetchone(self) -> Any:
        return self._raw_cursor.fetchone()

    def fetchall(self) -> list[Any]:
        return self._raw_cursor.fetchall()

    def close(self) -> None:
        self._raw_cursor.close()

    @property
    def rowcount(self) -> int:
        return int(getattr(self._raw_cursor, "rowcount", 0))


class DBConnection:
    def __init__(self, raw_connection: Any):
        self._raw_connection = raw_connection

    def cursor(self) -> DBCursor:
        if db_backend() == "postgres":
            if RealDictCursor is None:
                raise RuntimeError("RealDictCursor unavailable while DATABASE_URL is configured.")
            return DBCursor(self._raw_connection.cursor(cursor_factory=RealDictCursor))
        return DBCursor(self._raw_connection.cursor())

    def execute(self, query: str, params: Any = None) -> DBCursor:
        cursor = self.cursor()
        cursor.execute(query, params)
        return cursor

    def commit(self) -> None:
        self._raw_connection.commit()

    def rollback(self) -> None:
        self._raw_connection.rollback()

    def close(self) -> None:
        self._raw_connection.close()

    def __enter__(self) -> "DBConnection":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()


def db_connection() -> DBConnection:
    if db_backend() == "postgres":
        if psycopg2 is None:
            raise RuntimeError("DATABASE_URL is configured but psycopg2 is not installed.")
        raw_connection = psycopg2.connect(settings.DATABASE_URL, connect_timeout=10)
        return DBConnection(raw_connection)
    db_dir = os.path.dirname(settings.DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    raw_connection = sqlite3.connect(settings.DB_PATH, timeout=15, check_same_thread=False)
    raw_connection.row_factory = sqlite3.Row
    return DBConnection(raw_connection)


def begin_write_transaction(cursor: DBCursor) -> None:
    if db_backend() == "postgres":
        cursor.execute("BEGIN")
        return
    cursor.execute("BEGIN IMMEDIATE")


def fetch_one(query: str, params: Any = None) -> dict[str, Any] | None:
    with db_connection() as connection:
        return row_to_dict(connection.execute(query, params).fetchone())


def fetch_all(query: str, params: Any = None) -> list[dict[str, Any]]:
    with db_connection() as connection:
        return [row_to_dict(row) for row in connection.execute(query, params).fetchall()]


def execute_write(query: str, params: Any = None) -> int:
    with db_connection() as connection:
        cursor = connection.execute(query, params)
        connection.commit()
        return cursor.rowcount


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        password_hash TEXT NOT NULL,
        password_salt TEXT NOT NULL,
        tokens INTEGER NOT NULL DEFAULT 0,
        is_admin INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interviews (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES profiles (id),
        candidate_name TEXT NOT NULL DEFAULT '',
        company_name TEXT NOT NULL DEFAULT '',
        position TEXT NOT NULL DEFAULT '',
        job_posting TEXT NOT NULL DEFAULT '',
        cover_letter TEXT NOT NULL DEFAULT '',
        resume TEXT NOT NULL DEFAULT '',
        company_info TEXT NOT NULL DEFAULT '',
        expected_questions TEXT NOT NULL DEFAULT '',
        company_evaluation TEXT NOT NULL DEFAULT '',
        other TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interview_questions (
        id TEXT PRIMARY KEY,
        interview_id TEXT NOT NULL REFERENCES interviews (id),
        question_text TEXT NOT NULL,
        comment TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS interview_answers (
        id TEXT PRIMARY KEY,
        interview_id TEXT NOT NULL REFERENCES interviews (id),
        question_id TEXT NOT NULL REFERENCES interview_questions (id),
        answer_text TEXT NOT NULL,
        comment TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES profiles (id),
        type TEXT NOT NULL,
        message TEXT NOT NULL,
        interview_id TEXT,
        payment_id TEXT,
        metadata_json TEXT,
        is_read INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES profiles (id),
        order_id TEXT NOT NULL UNIQUE,
        gateway TEXT NOT NULL,
        package_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        tokens INTEGER NOT NULL,
        status TEXT NOT NULL,
        payment_key TEXT,
        payment_method TEXT,
        created_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_transactions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES profiles (id),
        action TEXT NOT NULL,
        delta INTEGER NOT NULL,
        balance_after INTEGER NOT NULL,
        meta_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reports (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES profiles (id),
        interview_id TEXT NOT NULL REFERENCES interviews (id),
        description TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        admin_response TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS report_items (
        id TEXT PRIMARY KEY,
        report_id TEXT NOT NULL REFERENCES reports (id),
        item_type TEXT NOT NULL,
        item_id TEXT NOT NULL,
        refunded INTEGER NOT NULL DEFAULT 0,
        refund_amount INTEGER,
        refunded_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_interviews_user_time ON interviews (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_questions_interview_time ON interview_questions (interview_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_answers_question_time ON interview_answers (question_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user_time ON notifications (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_payments_user_time ON payments (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_token_tx_user_time ON token_transactions (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_reports_user_time ON reports (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_report_items_report ON report_items (report_id)",
]


def init_db() -> None:
    with DB_WRITE_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)
            connection.commit()
        finally:
            connection.close()
    if db_backend() == "postgres":
        logger.info("Database schema ready on external Postgres.")
    else:
        logger.info("Database schema ready at %s", settings.DB_PATH)
