from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from .auth import require_user
from .db import db_connection, dump_json, fetch_all, fetch_one, new_id, now_utc_iso, parse_json
from .schemas import NotificationReadRequest

logger = logging.getLogger("mockview.notifications")
router = APIRouter()

NOTIFICATION_MESSAGES = {
    "questions_generated": lambda company_name, count: f"{count} questions were generated for the {company_name} interview.",
    "answer_generated": lambda company_name: f"A new answer was generated for the {company_name} interview.",
    "question_regenerated": lambda company_name: f"A question was regenerated for the {company_name} interview.",
    "question_edited": lambda company_name: f"A question was revised for the {company_name} interview.",
    "answer_regenerated": lambda company_name: f"An answer was regenerated for the {company_name} interview.",
    "answer_edited": lambda company_name: f"An answer was revised for the {company_name} interview.",
    "payment_complete": lambda tokens: f"{tokens} tokens were added to your balance.",
    "tokens_adjusted": lambda tokens: f"An administrator set your token balance to {tokens}.",
    "report_comment": lambda company_name: f"An administrator replied to your report on the {company_name} interview.",
    "report_refund": lambda company_name, tokens: f"Your report on the {company_name} interview was refunded with {tokens} tokens.",
}


def notification_payload(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "user_id": str(row["user_id"]),
        "type": str(row["type"]),
        "message": str(row["message"]),
        "interview_id": row.get("interview_id"),
        "payment_id": row.get("payment_id"),
        "metadata": parse_json(row.get("metadata_json")),
        "is_read": bool(int(row.get("is_read") or 0)),
        "created_at": str(row["created_at"]),
    }


def create_notification(
    user_id: str,
    notification_type: str,
    message: str,
    interview_id: str | None = None,
    payment_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    notification_id = new_id()
    connection = db_connection()
    try:
        connection.execute(
            """
            INSERT INTO notifications (id, user_id, type, message, interview_id, payment_id, metadata_json, is_read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (notification_id, user_id, notification_type, message, interview_id, payment_id, dump_json(metadata), now_utc_iso()),
        )
        connection.commit()
    finally:
        connection.close()
    row = fetch_one("SELECT * FROM notifications WHERE id = ?", (notification_id,))
    return notification_payload(row)


def notify(user_id: str, notification_type: str, *args: Any, **kwargs: Any) -> dict[str, Any] | None:
    """Creates a templated notification. Errors are logged and swallowed."""
    try:
        message = NOTIFICATION_MESSAGES[notification_type](*args)
        return create_notification(user_id, notification_type, message, **kwargs)
    except Exception:
        logger.exception("Failed to create %s notification for %s", notification_type, user_id)
        return None


def fetch_notifications(user_id: str, limit: int = 50) -> list[dict[str, Any]]:
    rows = fetch_all(
        "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
        (user_id, max(1, min(200, int(limit)))),
    )
    return [notification_payload(row) for row in rows]


def get_unread_count(user_id: str) -> int:
    row = fetch_one("SELECT COUNT(*) AS count FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,))
    return int(row["count"]) if row else 0


def set_notification_read(notification_id: str, user_id: str, is_read: bool) -> bool:
    connection = db_connection()
    try:
        cursor = connection.execute(
            "UPDATE notifications SET is_read = ? WHERE id = ? AND user_id = ?",
            (1 if is_read else 0, notification_id, user_id),
        )
        connection.commit()
        return cursor.rowcount > 0
    finally:
        connection.close()


def mark_all_notifications_read(user_id: str) -> int:
    connection = db_connection()
    try:
        cursor = connection.execute(
            "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0",
            (user_id,),
        )
        connection.commit()
        return cursor.rowcount
    finally:
        connection.close()


@router.get("/api/notifications")
def list_notifications(request: Request, limit: int = 50) -> dict[str, Any]:
    user = require_user(request)
    try:
        notifications = fetch_notifications(str(user["id"]), limit)
        unread_count = get_unread_count(str(user["id"]))
    except Exception as exc:
        logger.exception("Error in GET /api/notifications")
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    return {"notifications": notifications, "unread_count": unread_count}


@router.post("/api/notifications/mark-read")
def mark_read(data: NotificationReadRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    notification_id = (data.notification_id or "").strip()
    if not notification_id:
        raise HTTPException(status_code=400, detail="notification_id is required")
    if not set_notification_read(notification_id, str(user["id"]), data.is_read):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


@router.post("/api/notifications/mark-all-read")
def mark_all_read(request: Request) -> dict[str, Any]:
    user = require_user(request)
    updated = mark_all_notifications_read(str(user["id"]))
    return {"success": True, "updated": updated}
