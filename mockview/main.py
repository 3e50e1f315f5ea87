from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import admin, ai, auth, notifications, payments, services, settings, tokens
from .db import init_db

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("mockview.main")


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    logger.info("MockView backend started (payment gateway: %s)", settings.PAYMENT_GATEWAY_ACTIVE)
    yield


app = FastAPI(title="MockView", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_origin_regex=settings.CORS_ALLOW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(tokens.router)
app.include_router(services.router)
app.include_router(ai.router)
app.include_router(notifications.router)
app.include_router(payments.router)
app.include_router(admin.router)


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "MockView backend running"}
