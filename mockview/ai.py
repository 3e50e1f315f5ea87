from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable

from fastapi import APIRouter, HTTPException, Request
from openai import OpenAI

from . import settings
from .auth import require_user, safe_text
from .notifications import notify
from .schemas import GenerationRequest
from .services import (
    create_answer,
    create_questions,
    replace_question_text,
    require_owned_answer,
    require_owned_interview,
    require_owned_question,
    update_answer,
)
from .tokens import refund_tokens, spend_tokens

logger = logging.getLogger("mockview.ai")
router = APIRouter()

QUESTION_CATEGORIES = ["general_personality", "cover_letter_personality", "cover_letter_competency"]
CATEGORY_LABELS = {
    "general_personality": "General personality",
    "cover_letter_personality": "Personality based on the cover letter",
    "cover_letter_competency": "Competency based on the cover letter",
}
CODE_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n([\s\S]*?)\n\s*```")

_client: OpenAI | None = None


def get_client() -> OpenAI | None:
    global _client
    if not settings.OPENAI_API_KEY:
        return None
    if _client is None:
        _client = OpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


def extract_llm_text(message_content: Any) -> str:
    if isinstance(message_content, str):
        return safe_text(message_content)

    if isinstance(message_content, list):
        parts: list[str] = []
        for item in message_content:
            if isinstance(item, str):
                parts.append(item)
                continue
            text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
            if isinstance(text, str):
                parts.append(text)
        return safe_text("\n".join(parts))

    return safe_text(message_content)


def is_transient_openai_error(exc: Exception) -> bool:
    return type(exc).__name__ in {"APIConnectionError", "APITimeoutError", "InternalServerError", "RateLimitError"}


def generate_with_llm(system_prompt: str, user_prompt: str, temperature: float) -> tuple[str, str | None]:
    """Runs one chat completion, walking the configured model list.

    Transient errors are retried up to three times per model with a short
    linear backoff. Returns ``(text, None)`` on success and ``("", reason)``
    once every model has been tried.
    """
    client = get_client()
    if client is None:
        return "", "OPENAI_API_KEY not configured"

    models: list[str] = []
    for model in [settings.OPENAI_MODEL, *settings.OPENAI_FALLBACK_MODELS]:
        if model and model not in models:
            models.append(model)

    last_error: str | None = None
    for model in models:
        for attempt in range(3):
            try:
                response = client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=temperature,
                )
                content = extract_llm_text(response.choices[0].message.content if response.choices else "")
                if content:
                    return content, None
                last_error = f"empty response from model {model}"
                logger.error("OpenAI returned empty content for model '%s'.", model)
                break
            except Exception as exc:
                last_error = f"{type(exc).__name__} on model {model}"
                logger.exception("OpenAI request failed for model '%s' (attempt %s).", model, attempt + 1)
                if attempt < 2 and is_transient_openai_error(exc):
                    time.sleep(0.35 * (attempt + 1))
                    continue
                break

    return "", last_error


def strip_code_fences(text: str) -> str:
    cleaned = safe_text(text)
    match = CODE_FENCE_PATTERN.search(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def parse_generated_questions(raw: str) -> dict[str, list[str]]:
    data = json.loads(strip_code_fences(raw))
    if not isinstance(data, dict):
        raise ValueError("Generated questions must be a JSON object")

    parsed: dict[str, list[str]] = {}
    for category in QUESTION_CATEGORIES:
        items = data.get(category)
        if not isinstance(items, list) or not items:
            raise ValueError(f"Missing question list for {category}")
        if not all(isinstance(item, str) and item.strip() for item in items):
            raise ValueError(f"Empty question in {category}")
        parsed[category] = [item.strip() for item in items[: settings.QUESTIONS_PER_CATEGORY]]
    return parsed


def interview_context(interview: dict[str, Any]) -> str:
    sections = [
        ("Company information", interview.get("company_info")),
        ("Position", interview.get("position")),
        ("Job posting", interview.get("job_posting")),
        ("Cover letter", interview.get("cover_letter")),
        ("Resume", interview.get("resume")),
        ("Expected questions", interview.get("expected_questions")),
        ("Evaluation criteria", interview.get("company_evaluation")),
        ("Other", interview.get("other")),
    ]
    return "\n\n".join(f"<{title}>\n{safe_text(value)}" for title, value in sections)


def build_questions_prompt(interview: dict[str, Any], comment: str | None) -> str:
    count = settings.QUESTIONS_PER_CATEGORY
    return f"""
Company: {safe_text(interview.get('company_name'))}

{interview_context(interview)}

Additional request from the candidate:
{safe_text(comment) or 'None'}

Instructions:
- Write {count} interview questions for each category below.
- general_personality: attitude, values and teamwork questions any interviewer could ask.
- cover_letter_personality: personality questions that dig into claims made in the cover letter.
- cover_letter_competency: skill and experience questions grounded in the cover letter and resume.
- Return only a JSON object with the keys general_personality, cover_letter_personality and cover_letter_competency, each a list of {count} strings.
"""


def build_answer_prompt(interview: dict[str, Any], question: dict[str, Any], comment: str | None) -> str:
    category = safe_text(question.get("comment"))
    label = CATEGORY_LABELS.get(category, "Interview question")
    return f"""
{interview_context(interview)}

Question [{label}]:
{safe_text(question.get('question_text'))}

Additional request from the candidate:
{safe_text(comment) or 'None'}

Instructions:
- Answer in 450 to 500 characters.
- Lead with the conclusion, then support it.
- Use concrete experience and numbers from the material above.
- Do not invent experience the candidate does not have.
- Return the answer text only.
"""


def build_question_rewrite_prompt(interview: dict[str, Any], question: dict[str, Any], comment: str | None, editing: bool) -> str:
    category = safe_text(question.get("comment"))
    label = CATEGORY_LABELS.get(category, "Interview question")
    if editing:
        task = "- Revise the previous question as the candidate requests. Keep everything the request does not ask to change."
    else:
        task = "- Write one new question of the same category to replace the previous question. Do not repeat it."
    return f"""
Company: {safe_text(interview.get('company_name'))}

{interview_context(interview)}

Previous question [{label}]:
{safe_text(question.get('question_text'))}

Request from the candidate:
{safe_text(comment) or 'None'}

Instructions:
{task}
- Return only a JSON object of the form {{"question": "..."}}.
"""


def build_answer_rewrite_prompt(
    interview: dict[str, Any],
    question: dict[str, Any],
    answer: dict[str, Any],
    comment: str | None,
    editing: bool,
) -> str:
    if editing:
        task = "- Revise the previous answer as the candidate requests. Keep everything the request does not ask to change."
    else:
        task = "- Write a new answer to the question in 450 to 500 characters, leading with the conclusion."
    return f"""
{interview_context(interview)}

Question:
{safe_text(question.get('question_text'))}

Previous answer:
{safe_text(answer.get('answer_text'))}

Request from the candidate:
{safe_text(comment) or 'None'}

Instructions:
{task}
- Do not invent experience the candidate does not have.
- Return only a JSON object of the form {{"answer": "..."}}.
"""


def parse_generated_field(raw: str, key: str) -> str:
    data = json.loads(strip_code_fences(raw))
    value = data.get(key) if isinstance(data, dict) else None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Generated output is missing {key}")
    return value.strip()


def require_generation_available() -> None:
    if not settings.OPENAI_API_KEY:
        raise HTTPException(status_code=503, detail="AI generation is not configured.")


def complete(system_prompt: str, user_prompt: str, temperature: float) -> str:
    text, error = generate_with_llm(system_prompt, user_prompt, temperature)
    if error:
        raise RuntimeError(error)
    return text


def run_charged(
    user_id: str,
    action: str,
    meta: dict[str, Any],
    produce: Callable[[], Any],
    failure_detail: str,
) -> tuple[Any, dict[str, Any]]:
    """Charges ``TOKEN_COSTS[action]`` up front, then runs ``produce``.

    Any failure inside ``produce`` refunds the full charge under
    ``refund:<action>`` and surfaces as a 502. Returns the produced value and
    the wallet after the charge.
    """
    cost = settings.TOKEN_COSTS[action]
    charge = spend_tokens(user_id, cost, action, meta)
    try:
        result = produce()
    except Exception as exc:
        logger.exception("%s failed (%s)", action, meta)
        refund_tokens(user_id, cost, action, meta)
        raise HTTPException(status_code=502, detail=f"{failure_detail} Your tokens were refunded.") from exc
    return result, charge["wallet"]


@router.post("/api/interviews/{interview_id}/generate-questions")
def generate_questions(interview_id: str, data: GenerationRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    user_id = str(user["id"])
    interview = require_owned_interview(interview_id, user_id)
    require_generation_available()

    def produce() -> list[dict[str, Any]]:
        raw = complete(
            "You are an experienced interviewer preparing a candidate for a job interview.",
            build_questions_prompt(interview, data.comment),
            0.7,
        )
        generated = parse_generated_questions(raw)
        return create_questions(
            interview_id,
            [(text, category) for category in QUESTION_CATEGORIES for text in generated[category]],
        )

    questions, wallet = run_charged(
        user_id,
        "question_generation",
        {"interview_id": interview_id},
        produce,
        "Question generation failed.",
    )
    notify(
        user_id,
        "questions_generated",
        safe_text(interview.get("company_name")),
        len(questions),
        interview_id=interview_id,
    )
    return {"questions": questions, "wallet": wallet}


@router.post("/api/questions/{question_id}/generate-answer")
def generate_answer(question_id: str, data: GenerationRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    user_id = str(user["id"])
    question, interview = require_owned_question(question_id, user_id)
    require_generation_available()

    def produce() -> dict[str, Any]:
        answer_text = complete(
            "You are an interview coach writing a model answer in the candidate's voice.",
            build_answer_prompt(interview, question, data.comment),
            0.6,
        )
        return create_answer(str(interview["id"]), question_id, strip_code_fences(answer_text), safe_text(data.comment) or None)

    answer, wallet = run_charged(
        user_id,
        "answer_generation",
        {"interview_id": str(interview["id"]), "question_id": question_id},
        produce,
        "Answer generation failed.",
    )
    notify(
        user_id,
        "answer_generated",
        safe_text(interview.get("company_name")),
        interview_id=str(interview["id"]),
    )
    return {"answer": answer, "wallet": wallet}


def rewrite_question(user_id: str, question_id: str, comment: str | None, action: str) -> dict[str, Any]:
    question, interview = require_owned_question(question_id, user_id)
    require_generation_available()
    prompt = build_question_rewrite_prompt(interview, question, comment, editing=action == "question_edit")

    def produce() -> dict[str, Any]:
        raw = complete("You are an experienced interviewer refining one interview question.", prompt, 0.7)
        return replace_question_text(question_id, parse_generated_field(raw, "question"))

    meta = {"interview_id": str(interview["id"]), "question_id": question_id}
    updated, wallet = run_charged(user_id, action, meta, produce, "Question rewrite failed.")
    notify(
        user_id,
        "question_edited" if action == "question_edit" else "question_regenerated",
        safe_text(interview.get("company_name")),
        interview_id=str(interview["id"]),
        metadata={"question_id": question_id},
    )
    return {"question": updated, "wallet": wallet}


def rewrite_answer(user_id: str, answer_id: str, comment: str | None, action: str) -> dict[str, Any]:
    answer = require_owned_answer(answer_id, user_id)
    question, interview = require_owned_question(str(answer["question_id"]), user_id)
    require_generation_available()
    prompt = build_answer_rewrite_prompt(interview, question, answer, comment, editing=action == "answer_edit")

    def produce() -> dict[str, Any]:
        raw = complete("You are an interview coach refining a model answer in the candidate's voice.", prompt, 0.6)
        return update_answer(answer_id, answer_text=parse_generated_field(raw, "answer"))

    meta = {"interview_id": str(interview["id"]), "question_id": str(question["id"]), "answer_id": answer_id}
    updated, wallet = run_charged(user_id, action, meta, produce, "Answer rewrite failed.")
    notify(
        user_id,
        "answer_edited" if action == "answer_edit" else "answer_regenerated",
        safe_text(interview.get("company_name")),
        interview_id=str(interview["id"]),
        metadata={"question_id": str(question["id"]), "answer_id": answer_id},
    )
    return {"answer": updated, "wallet": wallet}


def require_edit_comment(comment: str | None) -> str:
    text = safe_text(comment)
    if not text:
        raise HTTPException(status_code=400, detail="comment is required to edit")
    return text


@router.post("/api/questions/{question_id}/regenerate")
def regenerate_question(question_id: str, data: GenerationRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    return rewrite_question(str(user["id"]), question_id, data.comment, "question_regeneration")


@router.post("/api/questions/{question_id}/edit")
def edit_question(question_id: str, data: GenerationRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    comment = require_edit_comment(data.comment)
    return rewrite_question(str(user["id"]), question_id, comment, "question_edit")


@router.post("/api/answers/{answer_id}/regenerate")
def regenerate_answer(answer_id: str, data: GenerationRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    return rewrite_answer(str(user["id"]), answer_id, data.comment, "answer_regeneration")


@router.post("/api/answers/{answer_id}/edit")
def edit_answer(answer_id: str, data: GenerationRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    comment = require_edit_comment(data.comment)
    return rewrite_answer(str(user["id"]), answer_id, comment, "answer_edit")
