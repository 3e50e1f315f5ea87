from __future__ import annotations

import os
from typing import Any

import pytest
from fastapi.testclient import TestClient

from mockview import settings
from mockview.db import execute_write, init_db
from mockview.main import app


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "")
    monkeypatch.setattr(settings, "DB_PATH", os.path.join(str(tmp_path), "mockview-test.db"))
    monkeypatch.setattr(settings, "WELCOME_TOKENS", 3)
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")
    monkeypatch.setattr(settings, "PAYMENT_GATEWAY_ACTIVE", "none")
    init_db()
    yield


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def signup(client):
    def _signup(email: str = "candidate@example.com", password: str = "password123", name: str = "Candidate") -> dict[str, Any]:
        response = client.post("/auth/signup", json={"email": email, "password": password, "name": name})
        assert response.status_code == 200, response.text
        body = response.json()
        body["headers"] = auth_headers(body["auth_token"])
        return body

    return _signup


@pytest.fixture
def user(signup) -> dict[str, Any]:
    return signup()


@pytest.fixture
def admin_user(signup) -> dict[str, Any]:
    body = signup(email="admin@example.com", name="Admin")
    execute_write("UPDATE profiles SET is_admin = 1 WHERE id = ?", (body["user"]["id"],))
    return body


@pytest.fixture
def interview(client, user) -> dict[str, Any]:
    response = client.post(
        "/api/interviews",
        json={
            "candidate_name": "Kim Minji",
            "company_name": "Acme",
            "position": "Backend Engineer",
            "cover_letter": "I led a migration of our billing system.",
        },
        headers=user["headers"],
    )
    assert response.status_code == 200, response.text
    return response.json()


def set_tokens_directly(user_id: str, tokens: int) -> None:
    execute_write("UPDATE profiles SET tokens = ? WHERE id = ?", (tokens, user_id))
