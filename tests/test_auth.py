from __future__ import annotations

from conftest import auth_headers

from mockview import settings
from mockview.auth import create_auth_token


def test_signup_returns_token_and_welcome_wallet(client):
    response = client.post("/auth/signup", json={"email": " New@Example.com ", "password": "password123", "name": "New User"})
    assert response.status_code == 200
    body = response.json()
    assert body["user"]["email"] == "new@example.com"
    assert body["user"]["is_admin"] is False
    assert body["wallet"]["tokens"] == 3
    assert body["wallet"]["pricing"] == {"question_generation": 3, "answer_generation": 2}
    assert body["auth_token"]


def test_signup_validation(client):
    bad_email = client.post("/auth/signup", json={"email": "nope", "password": "password123", "name": "Name"})
    short_password = client.post("/auth/signup", json={"email": "a@b.com", "password": "short", "name": "Name"})
    short_name = client.post("/auth/signup", json={"email": "a@b.com", "password": "password123", "name": "N"})
    assert bad_email.status_code == 400
    assert short_password.status_code == 400
    assert short_name.status_code == 400


def test_duplicate_signup_conflicts(client, signup):
    signup(email="dup@example.com")
    response = client.post("/auth/signup", json={"email": "DUP@example.com", "password": "password123", "name": "Again"})
    assert response.status_code == 409


def test_login(client, signup):
    signup(email="login@example.com", password="correct-horse")
    ok = client.post("/auth/login", json={"email": "login@example.com", "password": "correct-horse"})
    wrong = client.post("/auth/login", json={"email": "login@example.com", "password": "wrong-horse"})
    missing = client.post("/auth/login", json={"email": "ghost@example.com", "password": "whatever1"})
    assert ok.status_code == 200
    assert ok.json()["auth_token"]
    assert wrong.status_code == 401
    assert missing.status_code == 401


def test_me_requires_valid_token(client, user):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers=auth_headers("garbage")).status_code == 401
    assert client.get("/auth/me", headers=auth_headers(user["auth_token"] + "x")).status_code == 401

    response = client.get("/auth/me", headers=user["headers"])
    assert response.status_code == 200
    assert response.json()["user"]["id"] == user["user"]["id"]
    assert "auth_token" not in response.json()


def test_query_param_token_is_accepted(client, user):
    response = client.get("/tokens", params={"auth_token": user["auth_token"]})
    assert response.status_code == 200


def test_expired_token_is_rejected(client, user, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_TOKEN_TTL_HOURS", -1)
    expired = create_auth_token(user["user"]["id"], user["user"]["email"])
    assert client.get("/auth/me", headers=auth_headers(expired)).status_code == 401


def test_update_profile_name(client, user):
    response = client.patch("/auth/me", json={"name": "Renamed"}, headers=user["headers"])
    assert response.status_code == 200
    assert response.json()["user"]["name"] == "Renamed"
    assert client.patch("/auth/me", json={"name": "x"}, headers=user["headers"]).status_code == 400


def test_delete_account_removes_everything(client, user, interview):
    response = client.delete("/auth/me", headers=user["headers"])
    assert response.status_code == 200
    assert client.get("/auth/me", headers=user["headers"]).status_code == 401
    login = client.post("/auth/login", json={"email": "candidate@example.com", "password": "password123"})
    assert login.status_code == 401
