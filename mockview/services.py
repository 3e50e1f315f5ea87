from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from .auth import b64url_decode, b64url_encode, require_user, safe_text
from .db import db_connection, fetch_all, fetch_one, new_id, now_utc_iso
from .schemas import (
    AnswerCreateRequest,
    AnswerUpdateRequest,
    InterviewCreateRequest,
    InterviewUpdateRequest,
    QuestionCreateRequest,
    QuestionUpdateRequest,
    ReportCreateRequest,
)

logger = logging.getLogger("mockview.services")
router = APIRouter()

INTERVIEW_FIELDS = [
    "candidate_name",
    "company_name",
    "position",
    "job_posting",
    "cover_letter",
    "resume",
    "company_info",
    "expected_questions",
    "company_evaluation",
    "other",
]
ORDERABLE_COLUMNS: dict[str, set[str]] = {
    "interviews": {"created_at", "updated_at", "candidate_name"},
    "interview_questions": {"created_at", "updated_at"},
    "interview_answers": {"created_at", "updated_at"},
    "profiles": {"created_at", "name"},
    "payments": {"created_at", "completed_at"},
    "reports": {"created_at", "updated_at"},
}
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
REPORT_STATUSES = ("pending", "in_review", "resolved", "rejected")
REPORT_ITEM_TYPES = ("question", "answer")


def encode_cursor(sort_value: Any, row_id: Any) -> str:
    return b64url_encode(json.dumps([sort_value, str(row_id)], separators=(",", ":")).encode("utf-8"))


def decode_cursor(cursor: str) -> tuple[str, str]:
    try:
        sort_value, row_id = json.loads(b64url_decode(cursor).decode("utf-8"))
    except Exception as exc:
        raise HTTPException(status_code=400, detail="Invalid cursor.") from exc
    return str(sort_value), str(row_id)


def paginate(
    table: str,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: str | None = None,
    order_by: str = "created_at",
    order_direction: str = "desc",
    filters: dict[str, Any] | None = None,
    columns: str = "*",
) -> dict[str, Any]:
    """Keyset pagination over ``table``.

    Rows are ordered by ``(order_by, id)`` with NULL sorting as the empty
    string, so every row has a distinct position. Fetches one extra row to
    learn whether another page exists. The cursor is an opaque encoding of the
    last returned row's position; a cursor selects rows strictly after it in
    the requested direction.
    """
    if order_by not in ORDERABLE_COLUMNS.get(table, set()):
        raise HTTPException(status_code=400, detail=f"Cannot order by {order_by}.")
    direction = safe_text(order_direction).lower()
    if direction not in {"asc", "desc"}:
        raise HTTPException(status_code=400, detail="order_direction must be asc or desc.")
    limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
    sort_key = f"COALESCE({order_by}, '')"
    comparison = ">" if direction == "asc" else "<"

    clauses: list[str] = []
    values: list[Any] = []
    for column, value in (filters or {}).items():
        if value is None or value == "":
            continue
        clauses.append(f"{column} = ?")
        values.append(value)
    if cursor:
        sort_value, row_id = decode_cursor(cursor)
        clauses.append(f"({sort_key} {comparison} ? OR ({sort_key} = ? AND id {comparison} ?))")
        values.extend([sort_value, sort_value, row_id])
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    values.append(limit + 1)

    rows = fetch_all(
        f"SELECT {columns} FROM {table} {where_sql} ORDER BY {sort_key} {direction.upper()}, id {direction.upper()} LIMIT ?",
        tuple(values),
    )
    has_more = len(rows) > limit
    items = rows[:limit]
    next_cursor = None
    if has_more:
        last = items[-1]
        next_cursor = encode_cursor(last[order_by] or "", last["id"])
    return {
        "items": items,
        "next_cursor": next_cursor,
        "has_more": has_more,
    }


def fetch_interview_by_id(interview_id: str) -> dict[str, Any] | None:
    return fetch_one("SELECT * FROM interviews WHERE id = ?", (interview_id,))


def fetch_question_by_id(question_id: str) -> dict[str, Any] | None:
    return fetch_one("SELECT * FROM interview_questions WHERE id = ?", (question_id,))


def fetch_answer_by_id(answer_id: str) -> dict[str, Any] | None:
    return fetch_one("SELECT * FROM interview_answers WHERE id = ?", (answer_id,))


def require_owned_interview(interview_id: str, user_id: str) -> dict[str, Any]:
    interview = fetch_interview_by_id(interview_id)
    if not interview:
        raise HTTPException(status_code=404, detail="Interview not found")
    if str(interview["user_id"]) != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return interview


def require_owned_question(question_id: str, user_id: str) -> tuple[dict[str, Any], dict[str, Any]]:
    question = fetch_question_by_id(question_id)
    if not question:
        raise HTTPException(status_code=404, detail="Question not found")
    interview = require_owned_interview(str(question["interview_id"]), user_id)
    return question, interview


def require_owned_answer(answer_id: str, user_id: str) -> dict[str, Any]:
    answer = fetch_answer_by_id(answer_id)
    if not answer:
        raise HTTPException(status_code=404, detail="Answer not found")
    require_owned_interview(str(answer["interview_id"]), user_id)
    return answer


def create_interview(user_id: str, values: dict[str, Any]) -> dict[str, Any]:
    interview_id = new_id()
    created_at = now_utc_iso()
    fields = {field: safe_text(values.get(field)) for field in INTERVIEW_FIELDS}
    columns = ", ".join(["id", "user_id", *INTERVIEW_FIELDS, "created_at", "updated_at"])
    placeholders = ", ".join(["?"] * (len(INTERVIEW_FIELDS) + 4))
    connection = db_connection()
    try:
        connection.execute(
            f"INSERT INTO interviews ({columns}) VALUES ({placeholders})",
            (interview_id, user_id, *[fields[field] for field in INTERVIEW_FIELDS], created_at, created_at),
        )
        connection.commit()
    finally:
        connection.close()
    interview = fetch_interview_by_id(interview_id)
    if not interview:
        raise HTTPException(status_code=500, detail="Failed to create interview")
    logger.info("Created interview %s for %s", interview_id, user_id)
    return interview


def update_interview(interview_id: str, values: dict[str, Any]) -> dict[str, Any]:
    updates: list[str] = []
    params: list[Any] = []
    for field in INTERVIEW_FIELDS:
        if values.get(field) is not None:
            updates.append(f"{field} = ?")
            params.append(safe_text(values[field]))
    if updates:
        updates.append("updated_at = ?")
        params.extend([now_utc_iso(), interview_id])
        connection = db_connection()
        try:
            connection.execute(f"UPDATE interviews SET {', '.join(updates)} WHERE id = ?", tuple(params))
            connection.commit()
        finally:
            connection.close()
    interview = fetch_interview_by_id(interview_id)
    if not interview:
        raise HTTPException(status_code=404, detail="Interview not found")
    return interview


def delete_interview(interview_id: str) -> None:
    connection = db_connection()
    try:
        connection.execute(
            "DELETE FROM report_items WHERE report_id IN (SELECT id FROM reports WHERE interview_id = ?)",
            (interview_id,),
        )
        connection.execute("DELETE FROM reports WHERE interview_id = ?", (interview_id,))
        connection.execute("DELETE FROM interview_answers WHERE interview_id = ?", (interview_id,))
        connection.execute("DELETE FROM interview_questions WHERE interview_id = ?", (interview_id,))
        connection.execute("DELETE FROM interviews WHERE id = ?", (interview_id,))
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()
    logger.info("Deleted interview %s", interview_id)


def search_interviews_by_candidate_name(user_id: str | None, candidate_name: str, limit: int = DEFAULT_PAGE_SIZE) -> list[dict[str, Any]]:
    clauses = ["lower(candidate_name) LIKE ?"]
    values: list[Any] = [f"%{safe_text(candidate_name).lower()}%"]
    if user_id:
        clauses.append("user_id = ?")
        values.append(user_id)
    values.append(max(1, min(MAX_PAGE_SIZE, int(limit))))
    return fetch_all(
        f"SELECT * FROM interviews WHERE {' AND '.join(clauses)} ORDER BY created_at DESC LIMIT ?",
        tuple(values),
    )


def create_question(interview_id: str, question_text: str, comment: str | None = None) -> dict[str, Any]:
    return create_questions(interview_id, [(question_text, comment)])[0]


def create_questions(interview_id: str, items: list[tuple[str, str | None]]) -> list[dict[str, Any]]:
    created_ids: list[str] = []
    connection = db_connection()
    try:
        for question_text, comment in items:
            question_id = new_id()
            created_at = now_utc_iso()
            connection.execute(
                """
                INSERT INTO interview_questions (id, interview_id, question_text, comment, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (question_id, interview_id, question_text, comment, created_at, created_at),
            )
            created_ids.append(question_id)
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()
    return [fetch_question_by_id(question_id) for question_id in created_ids]


def update_question(question_id: str, question_text: str | None = None, comment: str | None = None) -> dict[str, Any]:
    updates: list[str] = []
    params: list[Any] = []
    if question_text is not None:
        text = safe_text(question_text)
        if not text:
            raise HTTPException(status_code=400, detail="question_text cannot be empty")
        updates.append("question_text = ?")
        params.append(text)
    if comment is not None:
        updates.append("comment = ?")
        params.append(safe_text(comment))
    if updates:
        updates.append("updated_at = ?")
        params.extend([now_utc_iso(), question_id])
        connection = db_connection()
        try:
            connection.execute(f"UPDATE interview_questions SET {', '.join(updates)} WHERE id = ?", tuple(params))
            connection.commit()
        finally:
            connection.close()
    question = fetch_question_by_id(question_id)
    if not question:
        raise HTTPException(status_code=404, detail="Question not found")
    return question


def delete_question(question_id: str) -> None:
    connection = db_connection()
    try:
        connection.execute("DELETE FROM interview_answers WHERE question_id = ?", (question_id,))
        connection.execute("DELETE FROM interview_questions WHERE id = ?", (question_id,))
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def create_answer(interview_id: str, question_id: str, answer_text: str, comment: str | None = None) -> dict[str, Any]:
    answer_id = new_id()
    created_at = now_utc_iso()
    connection = db_connection()
    try:
        connection.execute(
            """
            INSERT INTO interview_answers (id, interview_id, question_id, answer_text, comment, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (answer_id, interview_id, question_id, answer_text, comment, created_at, created_at),
        )
        connection.commit()
    finally:
        connection.close()
    answer = fetch_answer_by_id(answer_id)
    if not answer:
        raise HTTPException(status_code=500, detail="Failed to create answer")
    return answer


def update_answer(answer_id: str, answer_text: str | None = None, comment: str | None = None) -> dict[str, Any]:
    updates: list[str] = []
    params: list[Any] = []
    if answer_text is not None:
        text = safe_text(answer_text)
        if not text:
            raise HTTPException(status_code=400, detail="answer_text cannot be empty")
        updates.append("answer_text = ?")
        params.append(text)
    if comment is not None:
        updates.append("comment = ?")
        params.append(safe_text(comment))
    if updates:
        updates.append("updated_at = ?")
        params.extend([now_utc_iso(), answer_id])
        connection = db_connection()
        try:
            connection.execute(f"UPDATE interview_answers SET {', '.join(updates)} WHERE id = ?", tuple(params))
            connection.commit()
        finally:
            connection.close()
    answer = fetch_answer_by_id(answer_id)
    if not answer:
        raise HTTPException(status_code=404, detail="Answer not found")
    return answer


def delete_answer(answer_id: str) -> None:
    connection = db_connection()
    try:
        connection.execute("DELETE FROM interview_answers WHERE id = ?", (answer_id,))
        connection.commit()
    finally:
        connection.close()


def replace_question_text(question_id: str, question_text: str) -> dict[str, Any]:
    """Rewrites a question and drops the answers written for its old text."""
    text = safe_text(question_text)
    if not text:
        raise ValueError("question_text cannot be empty")
    connection = db_connection()
    try:
        connection.execute("DELETE FROM interview_answers WHERE question_id = ?", (question_id,))
        connection.execute(
            "UPDATE interview_questions SET question_text = ?, updated_at = ? WHERE id = ?",
            (text, now_utc_iso(), question_id),
        )
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()
    question = fetch_question_by_id(question_id)
    if not question:
        raise HTTPException(status_code=404, detail="Question not found")
    return question


def fetch_latest_interview(user_id: str) -> dict[str, Any] | None:
    return fetch_one(
        "SELECT * FROM interviews WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
        (user_id,),
    )


def fetch_report_by_id(report_id: str) -> dict[str, Any] | None:
    return fetch_one("SELECT * FROM reports WHERE id = ?", (report_id,))


def report_item_payload(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row["id"]),
        "item_type": str(row["item_type"]),
        "item_id": str(row["item_id"]),
        "refunded": bool(int(row.get("refunded") or 0)),
        "refund_amount": row.get("refund_amount"),
        "refunded_at": row.get("refunded_at"),
    }


def report_payload(report: dict[str, Any]) -> dict[str, Any]:
    items = fetch_all(
        "SELECT * FROM report_items WHERE report_id = ? ORDER BY item_type DESC, id",
        (report["id"],),
    )
    payload = dict(report)
    payload["items"] = [report_item_payload(item) for item in items]
    return payload


def unique_ids(values: list[str]) -> list[str]:
    cleaned = [safe_text(value) for value in values]
    return list(dict.fromkeys(value for value in cleaned if value))


def create_report(
    user_id: str,
    interview_id: str,
    question_ids: list[str],
    answer_ids: list[str],
    description: str,
) -> dict[str, Any]:
    """Files a report against questions and answers of one interview.

    Every reported item must belong to ``interview_id``; a foreign or missing
    item is a 404 and nothing is written.
    """
    if not safe_text(interview_id):
        raise HTTPException(status_code=400, detail="interview_id is required")
    description = safe_text(description)
    if not description:
        raise HTTPException(status_code=400, detail="Description is required")
    question_ids = unique_ids(question_ids)
    answer_ids = unique_ids(answer_ids)
    if not question_ids and not answer_ids:
        raise HTTPException(status_code=400, detail="At least one question or answer must be selected")

    require_owned_interview(interview_id, user_id)
    for question_id in question_ids:
        question = fetch_question_by_id(question_id)
        if not question or str(question["interview_id"]) != interview_id:
            raise HTTPException(status_code=404, detail="Question not found")
    for answer_id in answer_ids:
        answer = fetch_answer_by_id(answer_id)
        if not answer or str(answer["interview_id"]) != interview_id:
            raise HTTPException(status_code=404, detail="Answer not found")

    report_id = new_id()
    created_at = now_utc_iso()
    items = [("question", item_id) for item_id in question_ids] + [("answer", item_id) for item_id in answer_ids]
    connection = db_connection()
    try:
        connection.execute(
            """
            INSERT INTO reports (id, user_id, interview_id, description, status, admin_response, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'pending', NULL, ?, ?)
            """,
            (report_id, user_id, interview_id, description, created_at, created_at),
        )
        for item_type, item_id in items:
            connection.execute(
                "INSERT INTO report_items (id, report_id, item_type, item_id, refunded) VALUES (?, ?, ?, ?, 0)",
                (new_id(), report_id, item_type, item_id),
            )
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()
    logger.info("User %s reported %s item(s) on interview %s", user_id, len(items), interview_id)
    return report_payload(fetch_report_by_id(report_id))


def require_owned_report(report_id: str, user_id: str) -> dict[str, Any]:
    report = fetch_report_by_id(report_id)
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    if str(report["user_id"]) != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return report


@router.get("/api/interviews")
def list_interviews(
    request: Request,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: str | None = None,
    order_by: str = "created_at",
    order_direction: str = "desc",
) -> dict[str, Any]:
    user = require_user(request)
    page = paginate("interviews", limit, cursor, order_by, order_direction, filters={"user_id": str(user["id"])})
    return {"interviews": page["items"], "next_cursor": page["next_cursor"], "has_more": page["has_more"]}


@router.post("/api/interviews")
def post_interview(data: InterviewCreateRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    if not safe_text(data.company_name) or not safe_text(data.position):
        raise HTTPException(status_code=400, detail="Company name and position are required")
    values = {field: getattr(data, field) for field in INTERVIEW_FIELDS}
    try:
        return create_interview(str(user["id"]), values)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Error in POST /api/interviews")
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.get("/api/interviews/search")
def search_interviews(request: Request, q: str = "", limit: int = DEFAULT_PAGE_SIZE) -> dict[str, Any]:
    user = require_user(request)
    return {"interviews": search_interviews_by_candidate_name(str(user["id"]), q, limit)}


@router.get("/api/interviews/latest")
def get_latest_interview(request: Request) -> dict[str, Any]:
    user = require_user(request)
    interview = fetch_latest_interview(str(user["id"]))
    if not interview:
        raise HTTPException(status_code=404, detail="No interviews found")
    return interview


@router.get("/api/interviews/{interview_id}")
def get_interview(interview_id: str, request: Request) -> dict[str, Any]:
    user = require_user(request)
    return require_owned_interview(interview_id, str(user["id"]))


@router.patch("/api/interviews/{interview_id}")
def patch_interview(interview_id: str, data: InterviewUpdateRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_interview(interview_id, str(user["id"]))
    return update_interview(interview_id, {field: getattr(data, field) for field in INTERVIEW_FIELDS})


@router.delete("/api/interviews/{interview_id}")
def remove_interview(interview_id: str, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_interview(interview_id, str(user["id"]))
    try:
        delete_interview(interview_id)
    except Exception as exc:
        logger.exception("Error deleting interview %s", interview_id)
        raise HTTPException(status_code=500, detail="Failed to delete interview") from exc
    return {"success": True}


@router.get("/api/interviews/{interview_id}/questions")
def list_questions(interview_id: str, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_interview(interview_id, str(user["id"]))
    questions = fetch_all(
        "SELECT * FROM interview_questions WHERE interview_id = ? ORDER BY created_at DESC, id DESC",
        (interview_id,),
    )
    return {"questions": questions}


@router.post("/api/interviews/{interview_id}/questions")
def post_question(interview_id: str, data: QuestionCreateRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_interview(interview_id, str(user["id"]))
    question_text = safe_text(data.question_text)
    if not question_text:
        raise HTTPException(status_code=400, detail="question_text is required")
    try:
        return create_question(interview_id, question_text, safe_text(data.comment) or None)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Error in POST /api/interviews/%s/questions", interview_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.patch("/api/questions/{question_id}")
def patch_question(question_id: str, data: QuestionUpdateRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_question(question_id, str(user["id"]))
    try:
        return update_question(question_id, data.question_text, data.comment)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Error in PATCH /api/questions/%s", question_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.delete("/api/questions/{question_id}")
def remove_question(question_id: str, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_question(question_id, str(user["id"]))
    try:
        delete_question(question_id)
    except Exception as exc:
        logger.exception("Error deleting question %s", question_id)
        raise HTTPException(status_code=500, detail="Failed to delete question") from exc
    return {"success": True}


@router.get("/api/interviews/{interview_id}/answers")
def list_answers(interview_id: str, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_interview(interview_id, str(user["id"]))
    answers = fetch_all(
        "SELECT * FROM interview_answers WHERE interview_id = ? ORDER BY created_at DESC, id DESC",
        (interview_id,),
    )
    return {"answers": answers}


@router.post("/api/interviews/{interview_id}/answers")
def post_answer(interview_id: str, data: AnswerCreateRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_interview(interview_id, str(user["id"]))
    question = fetch_question_by_id(safe_text(data.question_id))
    if not question or str(question["interview_id"]) != interview_id:
        raise HTTPException(status_code=404, detail="Question not found")
    answer_text = safe_text(data.answer_text)
    if not answer_text:
        raise HTTPException(status_code=400, detail="answer_text is required")
    try:
        return create_answer(interview_id, str(question["id"]), answer_text, safe_text(data.comment) or None)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Error in POST /api/interviews/%s/answers", interview_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.patch("/api/answers/{answer_id}")
def patch_answer(answer_id: str, data: AnswerUpdateRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_answer(answer_id, str(user["id"]))
    try:
        return update_answer(answer_id, data.answer_text, data.comment)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Error in PATCH /api/answers/%s", answer_id)
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.delete("/api/answers/{answer_id}")
def remove_answer(answer_id: str, request: Request) -> dict[str, Any]:
    user = require_user(request)
    require_owned_answer(answer_id, str(user["id"]))
    try:
        delete_answer(answer_id)
    except Exception as exc:
        logger.exception("Error deleting answer %s", answer_id)
        raise HTTPException(status_code=500, detail="Failed to delete answer") from exc
    return {"success": True}


@router.post("/api/reports")
def post_report(data: ReportCreateRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    try:
        return create_report(str(user["id"]), safe_text(data.interview_id), data.question_ids, data.answer_ids, data.description)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Error in POST /api/reports")
        raise HTTPException(status_code=500, detail="Internal server error") from exc


@router.get("/api/reports")
def list_reports(request: Request) -> dict[str, Any]:
    user = require_user(request)
    reports = fetch_all(
        "SELECT * FROM reports WHERE user_id = ? ORDER BY created_at DESC, id DESC",
        (str(user["id"]),),
    )
    return {"reports": [report_payload(report) for report in reports]}


@router.get("/api/reports/{report_id}")
def get_report(report_id: str, request: Request) -> dict[str, Any]:
    user = require_user(request)
    return report_payload(require_owned_report(report_id, str(user["id"])))
