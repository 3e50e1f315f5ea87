from __future__ import annotations

import logging
import os
from typing import Any

from dotenv import load_dotenv

load_dotenv()

TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
logger = logging.getLogger("mockview.settings")


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUTHY_ENV_VALUES


def env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer. Falling back to %s.", name, raw, default)
        return default


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number. Falling back to %s.", name, raw, default)
        return default


DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def parse_cors_origins(value: str | None) -> list[str]:
    if not value:
        return DEFAULT_CORS_ORIGINS
    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    return origins or DEFAULT_CORS_ORIGINS


def normalize_database_url(value: str | None) -> str:
    raw = (value or "").strip()
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://") :]
    return raw


def resolve_db_path() -> str:
    explicit = (os.getenv("MOCKVIEW_DB_PATH") or "").strip()
    if explicit:
        return explicit
    return os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "mockview.db")


LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
CORS_ALLOW_ORIGINS = parse_cors_origins(os.getenv("CORS_ALLOW_ORIGINS"))
CORS_ALLOW_ORIGIN_REGEX = os.getenv("CORS_ALLOW_ORIGIN_REGEX")

DATABASE_URL = normalize_database_url(os.getenv("DATABASE_URL"))
DB_PATH = resolve_db_path()

AUTH_TOKEN_SECRET = (os.getenv("AUTH_TOKEN_SECRET") or "replace-this-in-production").strip()
AUTH_TOKEN_TTL_HOURS = max(1, env_int("AUTH_TOKEN_TTL_HOURS", 720))
if AUTH_TOKEN_SECRET == "replace-this-in-production":
    logger.warning("AUTH_TOKEN_SECRET is using a default value. Set AUTH_TOKEN_SECRET in production.")

WELCOME_TOKENS = max(0, env_int("WELCOME_TOKENS", 3))
TOKEN_COSTS: dict[str, int] = {
    "question_generation": 3,
    "answer_generation": 2,
    "question_regeneration": 1,
    "question_edit": 1,
    "answer_regeneration": 1,
    "answer_edit": 1,
}

OPENAI_API_KEY = (os.getenv("OPENAI_API_KEY") or "").strip()
OPENAI_MODEL = (os.getenv("OPENAI_MODEL") or "gpt-4o-mini").strip()
configured_fallback_models = [model.strip() for model in (os.getenv("OPENAI_FALLBACK_MODELS") or "").split(",") if model.strip()]
if configured_fallback_models:
    OPENAI_FALLBACK_MODELS = configured_fallback_models
else:
    OPENAI_FALLBACK_MODELS = [model for model in ["gpt-4.1-mini", "gpt-4o-mini"] if model != OPENAI_MODEL]
QUESTIONS_PER_CATEGORY = max(1, env_int("QUESTIONS_PER_CATEGORY", 10))
if not OPENAI_API_KEY:
    logger.warning("OPENAI_API_KEY is missing. Question and answer generation will be unavailable.")

# Amounts are in KRW.
TOKEN_PACKAGES: dict[str, dict[str, Any]] = {
    "bundle_3": {"name": "3 token pack", "tokens": 3, "price": 27000},
    "bundle_5": {"name": "5 token pack", "tokens": 5, "price": 45000},
    "bundle_10": {"name": "10 token pack", "tokens": 10, "price": 80000},
    "bundle_20": {"name": "20 token pack", "tokens": 20, "price": 150000},
    "bundle_50": {"name": "50 token pack", "tokens": 50, "price": 360000},
    "bundle_100": {"name": "100 token pack", "tokens": 100, "price": 702000},
}
PAYMENT_CURRENCY = (os.getenv("PAYMENT_CURRENCY") or "krw").strip().lower()
PAYMENT_SUCCESS_URL = (os.getenv("PAYMENT_SUCCESS_URL") or "").strip() or "http://localhost:3000/payments/success"
PAYMENT_CANCEL_URL = (os.getenv("PAYMENT_CANCEL_URL") or "").strip() or "http://localhost:3000/payments/fail"
TOSS_CLIENT_KEY = (os.getenv("TOSS_CLIENT_KEY") or "").strip()
TOSS_SECRET_KEY = (os.getenv("TOSS_SECRET_KEY") or "").strip()
TOSS_API_BASE = (os.getenv("TOSS_API_BASE") or "https://api.tosspayments.com/v1").strip().rstrip("/")
TOSS_ENABLED = bool(TOSS_SECRET_KEY)
STRIPE_SECRET_KEY = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
STRIPE_WEBHOOK_SECRET = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
STRIPE_ENABLED = bool(STRIPE_SECRET_KEY)
PAYMENT_GATEWAY = (os.getenv("PAYMENT_GATEWAY") or "auto").strip().lower()
if PAYMENT_GATEWAY == "toss" and TOSS_ENABLED:
    PAYMENT_GATEWAY_ACTIVE = "toss"
elif PAYMENT_GATEWAY == "stripe" and STRIPE_ENABLED:
    PAYMENT_GATEWAY_ACTIVE = "stripe"
elif TOSS_ENABLED:
    PAYMENT_GATEWAY_ACTIVE = "toss"
elif STRIPE_ENABLED:
    PAYMENT_GATEWAY_ACTIVE = "stripe"
else:
    PAYMENT_GATEWAY_ACTIVE = "none"

CHECKOUT_PATH = "/payments/checkout"
POPUP_WIDTH = 700
POPUP_HEIGHT = 700
POPUP_POLL_INTERVAL_SECONDS = max(0.05, env_float("POPUP_POLL_INTERVAL_SECONDS", 1.0))
API_BASE_URL = (os.getenv("MOCKVIEW_API_BASE_URL") or "http://localhost:8000").strip()
