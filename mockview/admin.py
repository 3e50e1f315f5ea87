from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from . import settings
from .auth import PROFILE_COLUMNS, delete_account, fetch_profile_by_id, profile_payload, require_admin, safe_text
from .db import DB_WRITE_LOCK, begin_write_transaction, db_connection, fetch_all, fetch_one, now_utc_iso
from .notifications import notify
from .schemas import (
    AdminReportUpdateRequest,
    AdminUserUpdateRequest,
    AnswerUpdateRequest,
    InterviewUpdateRequest,
    QuestionUpdateRequest,
)
from .services import (
    DEFAULT_PAGE_SIZE,
    INTERVIEW_FIELDS,
    REPORT_STATUSES,
    delete_answer,
    delete_interview,
    delete_question,
    fetch_answer_by_id,
    fetch_interview_by_id,
    fetch_question_by_id,
    fetch_report_by_id,
    paginate,
    report_payload,
    update_answer,
    update_interview,
    update_question,
)
from .tokens import apply_token_delta, set_tokens

logger = logging.getLogger("mockview.admin")
router = APIRouter(prefix="/admin")


def admin_user_payload(profile: dict[str, Any]) -> dict[str, Any]:
    payload = profile_payload(profile)
    payload["tokens"] = int(profile["tokens"] or 0)
    return payload


def require_profile(user_id: str) -> dict[str, Any]:
    profile = fetch_profile_by_id(user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")
    return profile


@router.get("/users")
def admin_list_users(
    request: Request,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: str | None = None,
    order_by: str = "created_at",
    order_direction: str = "desc",
) -> dict[str, Any]:
    require_admin(request)
    page = paginate("profiles", limit, cursor, order_by, order_direction, columns=PROFILE_COLUMNS)
    return {
        "users": [admin_user_payload(row) for row in page["items"]],
        "next_cursor": page["next_cursor"],
        "has_more": page["has_more"],
    }


@router.get("/users/{user_id}")
def admin_get_user(user_id: str, request: Request) -> dict[str, Any]:
    require_admin(request)
    profile = require_profile(user_id)
    interviews = fetch_all("SELECT * FROM interviews WHERE user_id = ? ORDER BY created_at DESC", (user_id,))
    return {"user": admin_user_payload(profile), "interviews": interviews}


@router.patch("/users/{user_id}")
def admin_update_user(user_id: str, data: AdminUserUpdateRequest, request: Request) -> dict[str, Any]:
    admin = require_admin(request)
    require_profile(user_id)

    if data.name is not None:
        name = safe_text(data.name)
        if len(name) < 2 or len(name) > 50:
            raise HTTPException(status_code=400, detail="Name must be between 2 and 50 characters.")
        connection = db_connection()
        try:
            connection.execute("UPDATE profiles SET name = ?, updated_at = ? WHERE id = ?", (name, now_utc_iso(), user_id))
            connection.commit()
        finally:
            connection.close()

    if data.tokens is not None:
        if data.tokens < 0:
            raise HTTPException(status_code=400, detail="tokens cannot be negative.")
        set_tokens(user_id, data.tokens, "admin_set_tokens", {"admin_id": str(admin["id"])})
        notify(user_id, "tokens_adjusted", data.tokens)
        logger.info("Admin %s set tokens for %s to %s", admin["id"], user_id, data.tokens)

    return {"user": admin_user_payload(require_profile(user_id))}


@router.delete("/users/{user_id}")
def admin_delete_user(user_id: str, request: Request) -> dict[str, Any]:
    admin = require_admin(request)
    require_profile(user_id)
    try:
        delete_account(user_id)
    except Exception as exc:
        logger.exception("Admin %s failed to delete account %s", admin["id"], user_id)
        raise HTTPException(status_code=500, detail="Failed to delete account.") from exc
    return {"success": True}


@router.get("/interviews")
def admin_list_interviews(
    request: Request,
    user_id: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: str | None = None,
    order_by: str = "created_at",
    order_direction: str = "desc",
) -> dict[str, Any]:
    require_admin(request)
    page = paginate("interviews", limit, cursor, order_by, order_direction, filters={"user_id": user_id})
    return {"interviews": page["items"], "next_cursor": page["next_cursor"], "has_more": page["has_more"]}


@router.get("/interviews/{interview_id}")
def admin_get_interview(interview_id: str, request: Request) -> dict[str, Any]:
    require_admin(request)
    interview = fetch_interview_by_id(interview_id)
    if not interview:
        raise HTTPException(status_code=404, detail="Interview not found")
    return interview


@router.patch("/interviews/{interview_id}")
def admin_update_interview(interview_id: str, data: InterviewUpdateRequest, request: Request) -> dict[str, Any]:
    require_admin(request)
    if not fetch_interview_by_id(interview_id):
        raise HTTPException(status_code=404, detail="Interview not found")
    return update_interview(interview_id, {field: getattr(data, field) for field in INTERVIEW_FIELDS})


@router.delete("/interviews/{interview_id}")
def admin_delete_interview(interview_id: str, request: Request) -> dict[str, Any]:
    require_admin(request)
    if not fetch_interview_by_id(interview_id):
        raise HTTPException(status_code=404, detail="Interview not found")
    try:
        delete_interview(interview_id)
    except Exception as exc:
        logger.exception("Admin failed to delete interview %s", interview_id)
        raise HTTPException(status_code=500, detail="Failed to delete interview") from exc
    return {"success": True}


@router.get("/questions")
def admin_list_questions(
    request: Request,
    interview_id: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: str | None = None,
    order_by: str = "created_at",
    order_direction: str = "desc",
) -> dict[str, Any]:
    require_admin(request)
    page = paginate("interview_questions", limit, cursor, order_by, order_direction, filters={"interview_id": interview_id})
    return {"questions": page["items"], "next_cursor": page["next_cursor"], "has_more": page["has_more"]}


@router.patch("/questions/{question_id}")
def admin_update_question(question_id: str, data: QuestionUpdateRequest, request: Request) -> dict[str, Any]:
    require_admin(request)
    if not fetch_question_by_id(question_id):
        raise HTTPException(status_code=404, detail="Question not found")
    return update_question(question_id, data.question_text, data.comment)


@router.delete("/questions/{question_id}")
def admin_delete_question(question_id: str, request: Request) -> dict[str, Any]:
    require_admin(request)
    if not fetch_question_by_id(question_id):
        raise HTTPException(status_code=404, detail="Question not found")
    try:
        delete_question(question_id)
    except Exception as exc:
        logger.exception("Admin failed to delete question %s", question_id)
        raise HTTPException(status_code=500, detail="Failed to delete question") from exc
    return {"success": True}


@router.get("/answers")
def admin_list_answers(
    request: Request,
    question_id: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: str | None = None,
    order_by: str = "created_at",
    order_direction: str = "desc",
) -> dict[str, Any]:
    require_admin(request)
    page = paginate("interview_answers", limit, cursor, order_by, order_direction, filters={"question_id": question_id})
    return {"answers": page["items"], "next_cursor": page["next_cursor"], "has_more": page["has_more"]}


@router.patch("/answers/{answer_id}")
def admin_update_answer(answer_id: str, data: AnswerUpdateRequest, request: Request) -> dict[str, Any]:
    require_admin(request)
    if not fetch_answer_by_id(answer_id):
        raise HTTPException(status_code=404, detail="Answer not found")
    return update_answer(answer_id, data.answer_text, data.comment)


@router.delete("/answers/{answer_id}")
def admin_delete_answer(answer_id: str, request: Request) -> dict[str, Any]:
    require_admin(request)
    if not fetch_answer_by_id(answer_id):
        raise HTTPException(status_code=404, detail="Answer not found")
    try:
        delete_answer(answer_id)
    except Exception as exc:
        logger.exception("Admin failed to delete answer %s", answer_id)
        raise HTTPException(status_code=500, detail="Failed to delete answer") from exc
    return {"success": True}


@router.get("/payments")
def admin_list_payments(
    request: Request,
    status: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: str | None = None,
    order_by: str = "created_at",
    order_direction: str = "desc",
) -> dict[str, Any]:
    require_admin(request)
    page = paginate("payments", limit, cursor, order_by, order_direction, filters={"status": safe_text(status).lower()})
    return {"payments": page["items"], "next_cursor": page["next_cursor"], "has_more": page["has_more"]}


def require_report(report_id: str) -> dict[str, Any]:
    report = fetch_report_by_id(report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


def report_company_name(report: dict[str, Any]) -> str:
    interview = fetch_interview_by_id(str(report["interview_id"]))
    return safe_text(interview.get("company_name")) if interview else ""


def refund_report_item(report: dict[str, Any], item: dict[str, Any], admin_id: str) -> tuple[int, int]:
    """Marks a reported item refunded and credits its regeneration cost in one transaction.

    Returns ``(amount, balance_after)``. A second refund of the same item is a 409.
    """
    user_id = str(report["user_id"])
    amount = settings.TOKEN_COSTS[f"{item['item_type']}_regeneration"]
    with DB_WRITE_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            try:
                claimed = cursor.execute(
                    """
                    UPDATE report_items
                    SET refunded = 1, refund_amount = ?, refunded_at = ?
                    WHERE id = ? AND refunded = 0
                    """,
                    (amount, now_utc_iso(), str(item["id"])),
                ).rowcount
                if not claimed:
                    raise HTTPException(status_code=409, detail="Item was already refunded")
                cursor.execute("UPDATE reports SET updated_at = ? WHERE id = ?", (now_utc_iso(), str(report["id"])))
                _, updated = apply_token_delta(
                    cursor,
                    user_id,
                    "report_refund",
                    {
                        "report_id": str(report["id"]),
                        "item_type": str(item["item_type"]),
                        "item_id": str(item["item_id"]),
                        "admin_id": admin_id,
                    },
                    delta=amount,
                )
            except Exception:
                connection.rollback()
                raise
            connection.commit()
        finally:
            connection.close()
    return amount, updated


@router.get("/reports")
def admin_list_reports(
    request: Request,
    status: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: str | None = None,
    order_by: str = "created_at",
    order_direction: str = "desc",
) -> dict[str, Any]:
    require_admin(request)
    page = paginate("reports", limit, cursor, order_by, order_direction, filters={"status": safe_text(status).lower()})
    return {
        "reports": [report_payload(row) for row in page["items"]],
        "next_cursor": page["next_cursor"],
        "has_more": page["has_more"],
    }


@router.get("/reports/{report_id}")
def admin_get_report(report_id: str, request: Request) -> dict[str, Any]:
    require_admin(request)
    return report_payload(require_report(report_id))


@router.patch("/reports/{report_id}")
def admin_update_report(report_id: str, data: AdminReportUpdateRequest, request: Request) -> dict[str, Any]:
    admin = require_admin(request)
    report = require_report(report_id)

    updates: list[str] = []
    params: list[Any] = []
    if data.status is not None:
        status = safe_text(data.status).lower()
        if status not in REPORT_STATUSES:
            raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(REPORT_STATUSES)}.")
        updates.append("status = ?")
        params.append(status)
    admin_response = safe_text(data.admin_response) if data.admin_response is not None else None
    if admin_response is not None:
        updates.append("admin_response = ?")
        params.append(admin_response or None)
    if updates:
        updates.append("updated_at = ?")
        params.extend([now_utc_iso(), report_id])
        connection = db_connection()
        try:
            connection.execute(f"UPDATE reports SET {', '.join(updates)} WHERE id = ?", tuple(params))
            connection.commit()
        finally:
            connection.close()
        logger.info("Admin %s updated report %s", admin["id"], report_id)

    if admin_response and admin_response != safe_text(report.get("admin_response")):
        notify(
            str(report["user_id"]),
            "report_comment",
            report_company_name(report),
            interview_id=str(report["interview_id"]),
            metadata={"report_id": report_id},
        )
    return report_payload(require_report(report_id))


@router.post("/reports/{report_id}/items/{item_id}/refund")
def admin_refund_report_item(report_id: str, item_id: str, request: Request) -> dict[str, Any]:
    admin = require_admin(request)
    report = require_report(report_id)
    item = fetch_one("SELECT * FROM report_items WHERE id = ? AND report_id = ?", (item_id, report_id))
    if not item:
        raise HTTPException(status_code=404, detail="Report item not found")

    amount, updated = refund_report_item(report, item, str(admin["id"]))
    logger.info("Admin %s refunded %s tokens on report %s item %s", admin["id"], amount, report_id, item_id)
    notify(
        str(report["user_id"]),
        "report_refund",
        report_company_name(report),
        amount,
        interview_id=str(report["interview_id"]),
        metadata={"report_id": report_id, "item_id": item_id},
    )
    return {"report": report_payload(require_report(report_id)), "refunded": amount, "tokens": updated}
