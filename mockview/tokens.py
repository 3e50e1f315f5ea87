from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from .auth import require_user, wallet_payload
from .db import DB_WRITE_LOCK, DBCursor, begin_write_transaction, db_connection, dump_json, fetch_one, new_id, now_utc_iso

logger = logging.getLogger("mockview.tokens")
router = APIRouter()


def get_user_tokens(user_id: str) -> int:
    row = fetch_one("SELECT tokens FROM profiles WHERE id = ?", (user_id,))
    if not row:
        return 0
    return int(row["tokens"] or 0)


def insufficient_tokens_error(balance: int, required: int) -> HTTPException:
    return HTTPException(
        status_code=402,
        detail={
            "message": f"Insufficient tokens. Required: {required}, available: {balance}.",
            "wallet": wallet_payload(balance),
        },
    )


def apply_token_delta(
    cursor: DBCursor,
    user_id: str,
    action: str,
    meta: dict[str, Any] | None,
    delta: int = 0,
    target: int | None = None,
) -> tuple[int, int]:
    """Moves a balance inside an open write transaction and writes the ledger row.

    Returns ``(delta, balance_after)``. The caller owns the lock, the
    transaction and the commit; on an error the caller must roll back.
    """
    row = cursor.execute("SELECT id, tokens FROM profiles WHERE id = ?", (user_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")

    current = int(row["tokens"] or 0)
    if target is not None:
        delta = max(0, int(target)) - current
    updated = current + delta
    if updated < 0:
        raise insufficient_tokens_error(current, -delta)

    cursor.execute(
        "UPDATE profiles SET tokens = ?, updated_at = ? WHERE id = ?",
        (updated, now_utc_iso(), user_id),
    )
    cursor.execute(
        """
        INSERT INTO token_transactions (id, user_id, action, delta, balance_after, meta_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (new_id(), user_id, action, delta, updated, dump_json(meta), now_utc_iso()),
    )
    return delta, updated


def _apply_delta(user_id: str, action: str, meta: dict[str, Any] | None, delta: int = 0, target: int | None = None) -> dict[str, Any]:
    with DB_WRITE_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            try:
                delta, updated = apply_token_delta(cursor, user_id, action, meta, delta=delta, target=target)
            except Exception:
                connection.rollback()
                raise
            connection.commit()
        finally:
            connection.close()

    logger.info("Token balance for %s changed by %s via %s (now %s)", user_id, delta, action, updated)
    return {"delta": delta, "wallet": wallet_payload(updated)}


def spend_tokens(user_id: str, amount: int, action: str, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    if amount <= 0:
        raise ValueError("amount must be positive")
    return _apply_delta(user_id, action, meta, delta=-int(amount))


def add_tokens(user_id: str, amount: int, action: str, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    if amount <= 0:
        raise ValueError("amount must be positive")
    return _apply_delta(user_id, action, meta, delta=int(amount))


def refund_tokens(user_id: str, amount: int, action: str, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    result = add_tokens(user_id, amount, f"refund:{action}", meta)
    logger.info("Refunded %s tokens to %s for %s", amount, user_id, action)
    return result


def set_tokens(user_id: str, target: int, action: str, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    return _apply_delta(user_id, action, meta, target=target)


def fetch_token_transactions(user_id: str, limit: int = 50) -> list[dict[str, Any]]:
    connection = db_connection()
    try:
        rows = connection.execute(
            """
            SELECT id, action, delta, balance_after, created_at
            FROM token_transactions
            WHERE user_id = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (user_id, max(1, min(200, int(limit)))),
        ).fetchall()
    finally:
        connection.close()
    return [
        {
            "id": str(row["id"]),
            "action": str(row["action"]),
            "delta": int(row["delta"]),
            "balance_after": int(row["balance_after"]),
            "created_at": str(row["created_at"]),
        }
        for row in rows
    ]


@router.get("/tokens")
def read_tokens(request: Request) -> dict[str, Any]:
    user = require_user(request)
    return {"tokens": get_user_tokens(str(user["id"]))}


@router.get("/tokens/history")
def read_token_history(request: Request, limit: int = 50) -> dict[str, Any]:
    user = require_user(request)
    return {"transactions": fetch_token_transactions(str(user["id"]), limit)}
