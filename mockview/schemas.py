from __future__ import annotations

from pydantic import BaseModel


class SignupRequest(BaseModel):
    email: str
    password: str
    name: str


class LoginRequest(BaseModel):
    email: str
    password: str


class ProfileUpdateRequest(BaseModel):
    name: str | None = None


class InterviewCreateRequest(BaseModel):
    company_name: str | None = None
    position: str | None = None
    candidate_name: str | None = None
    job_posting: str | None = None
    cover_letter: str | None = None
    resume: str | None = None
    company_info: str | None = None
    expected_questions: str | None = None
    company_evaluation: str | None = None
    other: str | None = None


class InterviewUpdateRequest(BaseModel):
    candidate_name: str | None = None
    company_name: str | None = None
    position: str | None = None
    job_posting: str | None = None
    cover_letter: str | None = None
    resume: str | None = None
    company_info: str | None = None
    expected_questions: str | None = None
    company_evaluation: str | None = None
    other: str | None = None


class QuestionCreateRequest(BaseModel):
    question_text: str
    comment: str | None = None


class QuestionUpdateRequest(BaseModel):
    question_text: str | None = None
    comment: str | None = None


class AnswerCreateRequest(BaseModel):
    question_id: str
    answer_text: str
    comment: str | None = None


class AnswerUpdateRequest(BaseModel):
    answer_text: str | None = None
    comment: str | None = None


class GenerationRequest(BaseModel):
    comment: str | None = None


class NotificationReadRequest(BaseModel):
    notification_id: str
    is_read: bool


class PaymentCheckoutRequest(BaseModel):
    package_id: str


class PaymentConfirmRequest(BaseModel):
    payment_key: str
    order_id: str
    amount: int


class AdminUserUpdateRequest(BaseModel):
    name: str | None = None
    tokens: int | None = None


class ReportCreateRequest(BaseModel):
    interview_id: str
    question_ids: list[str] = []
    answer_ids: list[str] = []
    description: str = ""


class AdminReportUpdateRequest(BaseModel):
    status: str | None = None
    admin_response: str | None = None
