from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import re
import secrets
import time
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from . import settings
from .db import DB_INTEGRITY_ERRORS, db_connection, dump_json, fetch_one, new_id, now_utc_iso
from .schemas import LoginRequest, ProfileUpdateRequest, SignupRequest

logger = logging.getLogger("mockview.auth")
router = APIRouter()

PROFILE_COLUMNS = "id, email, name, tokens, is_admin, created_at, updated_at"


def safe_text(value: str | None) -> str:
    return (value or "").strip()


def normalize_email(value: str | None) -> str:
    return safe_text(value).lower()


def b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("utf-8").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padding = "=" * ((4 - (len(value) % 4)) % 4)
    return base64.urlsafe_b64decode(value + padding)


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), 190_000).hex()


def display_name_from_email(email: str) -> str:
    local = normalize_email(email).split("@", 1)[0]
    cleaned = re.sub(r"[^a-z0-9]+", " ", local).strip()
    if not cleaned:
        return "User"
    return " ".join(part.capitalize() for part in cleaned.split(" ")[:3])


def create_auth_token(user_id: str, email: str) -> str:
    payload = {
        "uid": user_id,
        "email": normalize_email(email),
        "exp": int(time.time()) + settings.AUTH_TOKEN_TTL_HOURS * 3600,
    }
    payload_b64 = b64url_encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    signature = hmac.new(settings.AUTH_TOKEN_SECRET.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    return f"{payload_b64}.{b64url_encode(signature)}"


def decode_auth_token(token: str) -> dict[str, Any]:
    parts = safe_text(token).split(".")
    if len(parts) != 2:
        raise HTTPException(status_code=401, detail="Invalid authentication token.")

    payload_b64, signature_b64 = parts
    expected = hmac.new(settings.AUTH_TOKEN_SECRET.encode("utf-8"), payload_b64.encode("utf-8"), hashlib.sha256).digest()
    try:
        provided = b64url_decode(signature_b64)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token signature.") from exc

    if not hmac.compare_digest(expected, provided):
        raise HTTPException(status_code=401, detail="Invalid authentication token signature.")

    try:
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token payload.") from exc

    if int(payload.get("exp", 0)) < int(time.time()):
        raise HTTPException(status_code=401, detail="Authentication token expired. Please log in again.")

    return payload


def fetch_profile_by_id(user_id: str) -> dict[str, Any] | None:
    return fetch_one(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = ?", (user_id,))


def fetch_profile_by_email(email: str) -> dict[str, Any] | None:
    return fetch_one(
        f"SELECT {PROFILE_COLUMNS}, password_hash, password_salt FROM profiles WHERE email = ?",
        (normalize_email(email),),
    )


def extract_bearer_token(request: Request) -> str | None:
    auth_header = safe_text(request.headers.get("authorization"))
    if auth_header.lower().startswith("bearer "):
        return safe_text(auth_header[7:])
    return None


def require_user(request: Request, explicit_auth_token: str | None = None) -> dict[str, Any]:
    token = safe_text(explicit_auth_token) or safe_text(extract_bearer_token(request)) or safe_text(
        request.query_params.get("auth_token")
    )
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")

    payload = decode_auth_token(token)
    user = fetch_profile_by_id(safe_text(str(payload.get("uid", ""))))
    if not user:
        raise HTTPException(status_code=401, detail="Account not found. Please log in again.")
    if normalize_email(str(user["email"])) != normalize_email(str(payload.get("email", ""))):
        raise HTTPException(status_code=401, detail="Invalid authentication token.")
    return user


def is_admin(profile: dict[str, Any] | None) -> bool:
    if not profile:
        return False
    try:
        return bool(int(profile.get("is_admin") or 0))
    except (TypeError, ValueError):
        return False


def require_admin(request: Request) -> dict[str, Any]:
    user = require_user(request)
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def wallet_payload(tokens: int) -> dict[str, Any]:
    return {
        "tokens": max(0, int(tokens)),
        "pricing": dict(settings.TOKEN_COSTS),
    }


def profile_payload(profile: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(profile["id"]),
        "email": str(profile["email"]),
        "name": safe_text(profile.get("name")) or display_name_from_email(str(profile["email"])),
        "is_admin": is_admin(profile),
        "created_at": str(profile["created_at"]),
        "updated_at": str(profile["updated_at"]),
    }


def auth_response_payload(profile: dict[str, Any], token: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "user": profile_payload(profile),
        "wallet": wallet_payload(int(profile["tokens"])),
    }
    if token:
        payload["auth_token"] = token
    return payload


def create_profile(email: str, password: str, name: str) -> dict[str, Any]:
    salt = secrets.token_hex(16)
    user_id = new_id()
    created_at = now_utc_iso()
    welcome = settings.WELCOME_TOKENS
    connection = db_connection()
    try:
        cursor = connection.cursor()
        cursor.execute(
            """
            INSERT INTO profiles (id, email, name, password_hash, password_salt, tokens, is_admin, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (user_id, email, name, hash_password(password, salt), salt, welcome, created_at, created_at),
        )
        if welcome > 0:
            cursor.execute(
                """
                INSERT INTO token_transactions (id, user_id, action, delta, balance_after, meta_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (new_id(), user_id, "welcome_tokens", welcome, welcome, dump_json({"source": "signup"}), created_at),
            )
        connection.commit()
    except DB_INTEGRITY_ERRORS as exc:
        connection.rollback()
        raise HTTPException(status_code=409, detail="Account already exists. Please log in.") from exc
    finally:
        connection.close()

    profile = fetch_profile_by_id(user_id)
    if not profile:
        raise HTTPException(status_code=500, detail="Unable to create account.")
    return profile


def delete_account(user_id: str) -> None:
    connection = db_connection()
    try:
        cursor = connection.cursor()
        interview_ids = [
            row["id"]
            for row in cursor.execute("SELECT id FROM interviews WHERE user_id = ?", (user_id,)).fetchall()
        ]
        for interview_id in interview_ids:
            cursor.execute("DELETE FROM interview_answers WHERE interview_id = ?", (interview_id,))
            cursor.execute("DELETE FROM interview_questions WHERE interview_id = ?", (interview_id,))
        cursor.execute(
            "DELETE FROM report_items WHERE report_id IN (SELECT id FROM reports WHERE user_id = ?)",
            (user_id,),
        )
        cursor.execute("DELETE FROM reports WHERE user_id = ?", (user_id,))
        cursor.execute("DELETE FROM interviews WHERE user_id = ?", (user_id,))
        cursor.execute("DELETE FROM notifications WHERE user_id = ?", (user_id,))
        cursor.execute("DELETE FROM token_transactions WHERE user_id = ?", (user_id,))
        cursor.execute("DELETE FROM payments WHERE user_id = ?", (user_id,))
        cursor.execute("DELETE FROM profiles WHERE id = ?", (user_id,))
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


@router.post("/auth/signup")
def signup(data: SignupRequest) -> dict[str, Any]:
    email = normalize_email(data.email)
    password = safe_text(data.password)
    name = safe_text(data.name)

    if not email or "@" not in email:
        raise HTTPException(status_code=400, detail="Enter a valid email address.")
    if len(password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters.")
    if len(name) < 2 or len(name) > 50:
        raise HTTPException(status_code=400, detail="Name must be between 2 and 50 characters.")
    if fetch_profile_by_email(email):
        raise HTTPException(status_code=409, detail="Account already exists. Please log in.")

    profile = create_profile(email, password, name)
    logger.info("Created profile %s", profile["id"])
    return auth_response_payload(profile, create_auth_token(str(profile["id"]), str(profile["email"])))


@router.post("/auth/login")
def login(data: LoginRequest) -> dict[str, Any]:
    email = normalize_email(data.email)
    password = safe_text(data.password)
    user = fetch_profile_by_email(email)
    if not user:
        raise HTTPException(status_code=401, detail="Account not found. Please sign up.")

    expected = hash_password(password, str(user["password_salt"]))
    if not hmac.compare_digest(expected, str(user["password_hash"])):
        logger.info("Rejected login for %s: wrong password", email)
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    return auth_response_payload(user, create_auth_token(str(user["id"]), str(user["email"])))


@router.get("/auth/me")
def auth_me(request: Request) -> dict[str, Any]:
    return auth_response_payload(require_user(request))


@router.patch("/auth/me")
def update_me(data: ProfileUpdateRequest, request: Request) -> dict[str, Any]:
    user = require_user(request)
    if data.name is not None:
        name = safe_text(data.name)
        if len(name) < 2 or len(name) > 50:
            raise HTTPException(status_code=400, detail="Name must be between 2 and 50 characters.")
        connection = db_connection()
        try:
            connection.execute(
                "UPDATE profiles SET name = ?, updated_at = ? WHERE id = ?",
                (name, now_utc_iso(), str(user["id"])),
            )
            connection.commit()
        finally:
            connection.close()
    refreshed = fetch_profile_by_id(str(user["id"]))
    if not refreshed:
        raise HTTPException(status_code=500, detail="Unable to refresh profile.")
    return auth_response_payload(refreshed)


@router.delete("/auth/me")
def delete_me(request: Request) -> dict[str, Any]:
    user = require_user(request)
    try:
        delete_account(str(user["id"]))
    except Exception as exc:
        logger.exception("Failed to delete account %s", user["id"])
        raise HTTPException(status_code=500, detail="Failed to delete account.") from exc
    logger.info("Deleted account %s", user["id"])
    return {"success": True}
