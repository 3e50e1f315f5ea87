from __future__ import annotations

import base64
import json
import logging
import time
import urllib.error
import urllib.request
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from . import settings
from .auth import require_user, safe_text, wallet_payload
from .db import (
    DB_INTEGRITY_ERRORS,
    DB_WRITE_LOCK,
    begin_write_transaction,
    db_connection,
    fetch_one,
    new_id,
    now_utc_iso,
)
from .notifications import notify
from .schemas import PaymentCheckoutRequest, PaymentConfirmRequest
from .tokens import apply_token_delta

try:
    import stripe  # type: ignore
except Exception:  # pragma: no cover - optional dependency at runtime
    stripe = None

logger = logging.getLogger("mockview.payments")
router = APIRouter()


def package_payload(package_id: str) -> dict[str, Any]:
    package = settings.TOKEN_PACKAGES[package_id]
    return {
        "id": package_id,
        "name": package["name"],
        "tokens": int(package["tokens"]),
        "price": int(package["price"]),
    }


def resolve_package(package_id: str | None) -> tuple[str, dict[str, Any]]:
    package_id = safe_text(package_id)
    package = settings.TOKEN_PACKAGES.get(package_id)
    if not package:
        raise HTTPException(status_code=400, detail="Invalid payment package.")
    return package_id, package


def build_order_id(user_id: str) -> str:
    return f"order_{user_id[:8]}_{int(time.time() * 1000)}"


def insert_pending_payment(user_id: str, gateway: str, package_id: str, package: dict[str, Any]) -> dict[str, Any]:
    # Order ids are millisecond-based; back off and retry on a same-millisecond collision.
    for attempt in range(3):
        order_id = build_order_id(user_id)
        payment_id = new_id()
        connection = db_connection()
        try:
            connection.execute(
                """
                INSERT INTO payments (id, user_id, order_id, gateway, package_id, amount, tokens, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?)
                """,
                (payment_id, user_id, order_id, gateway, package_id, int(package["price"]), int(package["tokens"]), now_utc_iso()),
            )
            connection.commit()
        except DB_INTEGRITY_ERRORS:
            connection.rollback()
            logger.warning("Order id %s collided (attempt %s)", order_id, attempt + 1)
            time.sleep(0.002)
            continue
        finally:
            connection.close()
        return fetch_one("SELECT * FROM payments WHERE id = ?", (payment_id,))
    raise HTTPException(status_code=500, detail="Failed to create payment")


def fetch_pending_payment(order_id: str, user_id: str | None = None, gateway: str | None = None) -> dict[str, Any] | None:
    clauses = ["order_id = ?", "status = 'pending'"]
    values: list[Any] = [order_id]
    if user_id:
        clauses.append("user_id = ?")
        values.append(user_id)
    if gateway:
        clauses.append("gateway = ?")
        values.append(gateway)
    return fetch_one(f"SELECT * FROM payments WHERE {' AND '.join(clauses)}", tuple(values))


def mark_payment_failed(payment_id: str, payment_key: str | None) -> None:
    connection = db_connection()
    try:
        connection.execute(
            "UPDATE payments SET status = 'failed', payment_key = ? WHERE id = ? AND status = 'pending'",
            (payment_key, payment_id),
        )
        connection.commit()
    finally:
        connection.close()


def complete_payment(payment: dict[str, Any], payment_key: str | None, payment_method: str | None) -> int | None:
    """Marks a pending payment completed and credits its tokens in one transaction.

    Returns the new balance, or ``None`` when the payment was no longer
    pending (already completed or failed by another request).
    """
    user_id = str(payment["user_id"])
    with DB_WRITE_LOCK:
        connection = db_connection()
        try:
            cursor = connection.cursor()
            begin_write_transaction(cursor)
            try:
                claimed = cursor.execute(
                    """
                    UPDATE payments
                    SET status = 'completed', payment_key = ?, payment_method = ?, completed_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (payment_key, payment_method, now_utc_iso(), str(payment["id"])),
                ).rowcount
                if not claimed:
                    connection.rollback()
                    return None
                _, updated = apply_token_delta(
                    cursor,
                    user_id,
                    f"{payment['gateway']}_token_pack",
                    {
                        "order_id": str(payment["order_id"]),
                        "package_id": str(payment["package_id"]),
                        "amount": int(payment["amount"]),
                        "payment_key": payment_key,
                    },
                    delta=int(payment["tokens"]),
                )
            except Exception:
                connection.rollback()
                raise
            connection.commit()
        finally:
            connection.close()

    logger.info("Completed payment %s for %s (+%s tokens)", payment["order_id"], user_id, payment["tokens"])
    notify(user_id, "payment_complete", int(payment["tokens"]), payment_id=str(payment["id"]))
    return updated


def toss_request(path: str, payload: dict[str, Any]) -> tuple[bool, dict[str, Any]]:
    """POSTs to the Toss Payments API.

    Returns ``(ok, body)``. A gateway rejection (HTTP 4xx/5xx) comes back as
    ``(False, body)``; network failures raise 502.
    """
    if not settings.TOSS_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Toss Payments is not configured yet.")
    url = f"{settings.TOSS_API_BASE}/{path.lstrip('/')}"
    basic_token = base64.b64encode(f"{settings.TOSS_SECRET_KEY}:".encode("utf-8")).decode("utf-8")
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={
            "Authorization": f"Basic {basic_token}",
            "Content-Type": "application/json",
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=20) as resp:
            raw = resp.read().decode("utf-8", errors="ignore")
            return int(resp.getcode() or 0) < 400, json.loads(raw or "{}")
    except urllib.error.HTTPError as exc:
        try:
            details = json.loads(exc.read().decode("utf-8", errors="ignore") or "{}")
        except Exception:
            details = {}
        logger.warning("Toss rejected %s with HTTP %s: %s", path, exc.code, details)
        return False, details
    except urllib.error.URLError as exc:
        logger.exception("Toss network error on %s", path)
        raise HTTPException(status_code=502, detail="Unable to reach Toss Payments right now. Please retry.") from exc
    except TimeoutError as exc:
        logger.exception("Toss timeout on %s", path)
        raise HTTPException(status_code=502, detail="Toss Payments timed out. Please retry.") from exc


@router.get("/payments/packages")
def payment_packages() -> dict[str, Any]:
    return {
        "payment_gateway": settings.PAYMENT_GATEWAY_ACTIVE,
        "payment_enabled": settings.PAYMENT_GATEWAY_ACTIVE in {"toss", "stripe"},
        "toss_enabled": settings.TOSS_ENABLED,
        "stripe_enabled": settings.STRIPE_ENABLED,
        "toss_client_key": settings.TOSS_CLIENT_KEY if settings.TOSS_ENABLED else "",
        "currency": settings.PAYMENT_CURRENCY,
        "packages": [package_payload(package_id) for package_id in settings.TOKEN_PACKAGES],
    }


@router.get("/payments/checkout")
def checkout_descriptor(packageId: str | None = None) -> dict[str, Any]:
    package = None
    if safe_text(packageId):
        package_id, _ = resolve_package(packageId)
        package = package_payload(package_id)
    return {
        "package": package,
        "packages": [package_payload(package_id) for package_id in settings.TOKEN_PACKAGES],
        "payment_gateway": settings.PAYMENT_GATEWAY_ACTIVE,
        "toss_client_key": settings.TOSS_CLIENT_KEY if settings.PAYMENT_GATEWAY_ACTIVE == "toss" else "",
        "success_url": settings.PAYMENT_SUCCESS_URL,
        "fail_url": settings.PAYMENT_CANCEL_URL,
    }


@router.post("/api/payments/checkout")
def create_payment_checkout(data: PaymentCheckoutRequest, request: Request) -> dict[str, Any]:
    package_id, package = resolve_package(data.package_id)
    user = require_user(request)
    user_id = str(user["id"])
    gateway = settings.PAYMENT_GATEWAY_ACTIVE
    if gateway not in {"toss", "stripe"}:
        raise HTTPException(status_code=503, detail="Payment gateway is not configured yet.")

    if gateway == "stripe":
        if stripe is None:
            raise HTTPException(status_code=503, detail="Stripe is not configured yet.")
        payment = insert_pending_payment(user_id, "stripe", package_id, package)
        stripe.api_key = settings.STRIPE_SECRET_KEY
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": settings.PAYMENT_CURRENCY,
                            "unit_amount": int(package["price"]),
                            "product_data": {
                                "name": f"MockView Tokens - {package['name']}",
                                "description": f"{package['tokens']} token pack",
                            },
                        },
                        "quantity": 1,
                    }
                ],
                success_url=settings.PAYMENT_SUCCESS_URL,
                cancel_url=settings.PAYMENT_CANCEL_URL,
                metadata={
                    "user_id": user_id,
                    "package_id": package_id,
                    "tokens": str(int(package["tokens"])),
                    "order_id": str(payment["order_id"]),
                },
            )
        except Exception as exc:
            logger.exception("Stripe checkout session failed for %s", payment["order_id"])
            mark_payment_failed(str(payment["id"]), None)
            raise HTTPException(status_code=502, detail="Unable to initialize payment session right now.") from exc

        return {
            "provider": "stripe",
            "checkout_url": safe_text(session.get("url")),
            "session_id": safe_text(session.get("id")),
            "order_id": str(payment["order_id"]),
        }

    payment = insert_pending_payment(user_id, "toss", package_id, package)
    logger.info("Created pending Toss payment %s for %s", payment["order_id"], user_id)
    return {
        "provider": "toss",
        "order_id": str(payment["order_id"]),
        "amount": int(payment["amount"]),
        "tokens": int(payment["tokens"]),
        "name": str(package["name"]),
        "client_key": settings.TOSS_CLIENT_KEY,
        "success_url": settings.PAYMENT_SUCCESS_URL,
        "fail_url": settings.PAYMENT_CANCEL_URL,
    }


@router.post("/api/payments/confirm")
def confirm_payment(data: PaymentConfirmRequest, request: Request) -> dict[str, Any]:
    payment_key = safe_text(data.payment_key)
    order_id = safe_text(data.order_id)
    if not payment_key or not order_id or not data.amount:
        raise HTTPException(status_code=400, detail="Missing required parameters")

    user = require_user(request)
    payment = fetch_pending_payment(order_id, user_id=str(user["id"]))
    if not payment:
        raise HTTPException(status_code=404, detail="Payment record not found")
    if int(payment["amount"]) != int(data.amount):
        raise HTTPException(status_code=400, detail="Amount mismatch")

    ok, toss_data = toss_request(
        "/payments/confirm",
        {"paymentKey": payment_key, "orderId": order_id, "amount": int(data.amount)},
    )
    if not ok:
        mark_payment_failed(str(payment["id"]), payment_key)
        raise HTTPException(
            status_code=400,
            detail={"message": "Payment confirmation failed", "details": toss_data},
        )

    balance = complete_payment(payment, payment_key, safe_text(toss_data.get("method")) or None)
    if balance is None:
        raise HTTPException(status_code=409, detail="Payment was already processed.")
    return {
        "success": True,
        "tokens": int(payment["tokens"]),
        "wallet": wallet_payload(balance),
        "payment_method": safe_text(toss_data.get("method")),
    }


@router.post("/payments/webhook")
async def stripe_webhook(request: Request) -> dict[str, bool]:
    if not settings.STRIPE_ENABLED or stripe is None:
        raise HTTPException(status_code=503, detail="Payment gateway is not configured.")
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Stripe webhook secret is not configured.")

    payload = await request.body()
    signature = safe_text(request.headers.get("stripe-signature"))
    try:
        event = stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=settings.STRIPE_WEBHOOK_SECRET)
    except Exception as exc:
        raise HTTPException(status_code=400, detail="Invalid webhook signature.") from exc

    if safe_text(event.get("type")) != "checkout.session.completed":
        return {"received": True}

    session = event.get("data", {}).get("object", {})
    metadata = session.get("metadata") or {}
    order_id = safe_text(metadata.get("order_id"))
    payment = fetch_pending_payment(order_id, gateway="stripe") if order_id else None
    if not payment:
        logger.info("Ignoring Stripe session %s: no pending payment for order %r", session.get("id"), order_id)
        return {"received": True}

    complete_payment(payment, safe_text(session.get("id")) or None, "card")
    return {"received": True}
