"""
Billing webhooks
================
Signed subscription events from Stripe:
  • ``Stripe-Signature`` header checked with the Stripe SDK
  • at-most-once processing keyed by event id
  • product id -> plan tier, mirrored onto the user's profile
"""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

import stripe

from . import store
from .config import settings
from .errors import SignatureError
from .logging import log_event

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
FREE_TIER = "free"


def verify_event(
    payload: bytes,
    signature_header: str | None,
    secret: str | None = None,
    tolerance: int | None = None,
) -> dict[str, Any]:
    """Verify the ``Stripe-Signature`` header and return the decoded event."""
    secret = secret if secret is not None else settings.billing_webhook_secret
    tolerance = settings.billing_tolerance_seconds if tolerance is None else tolerance
    if not secret:
        raise SignatureError("Billing webhook secret is not configured", status_code=500)
    if not signature_header:
        raise SignatureError("Missing billing signature", status_code=401)

    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(body, signature_header, secret, tolerance)
    except UnicodeDecodeError as exc:
        raise ValueError("Billing payload is not valid UTF-8") from exc
    except stripe.SignatureVerificationError as exc:
        logger.warning("Rejected billing webhook: %s", exc)
        raise SignatureError("Invalid billing signature", status_code=403) from exc

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise ValueError("Billing payload is not valid JSON") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise ValueError("Billing event must carry an id and a type")
    return event


def tier_for_product(product_id: str | None, tiers: dict[str, str] | None = None) -> str:
    mapping = settings.billing_product_tiers if tiers is None else tiers
    return mapping.get(product_id or "", FREE_TIER)


def _product_id(subscription: dict[str, Any]) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    product = price.get("product")
    if isinstance(product, dict):
        return product.get("id")
    return product


def _set_user_tier(conn: sqlite3.Connection, email: str | None, tier: str) -> None:
    if email:
        conn.execute(
            "UPDATE users SET subscription_tier = ? WHERE email = ?",
            (tier, email.lower()),
        )


def _subscription_email(conn: sqlite3.Connection, customer_id: str) -> str | None:
    row = conn.execute(
        "SELECT user_email FROM subscriptions WHERE customer_id = ?", (customer_id,)
    ).fetchone()
    return row["user_email"] if row else None


def handle_event(event: dict[str, Any], tiers: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Apply one billing event. Returns ``{"received": True, "duplicate": bool}``.

    The idempotency record is written in the same transaction as the side
    effects, so a replayed event id never reapplies them.
    """
    event_id = event["id"]
    event_type = event["type"]
    obj = (event.get("data") or {}).get("object") or {}

    with store.get_conn() as conn:
        try:
            conn.execute(
                "INSERT INTO webhook_events (event_id, event_type) VALUES (?, ?)",
                (event_id, event_type),
            )
        except sqlite3.IntegrityError:
            logger.info("Billing event %s already processed", event_id)
            return {"received": True, "duplicate": True, "type": event_type}

        customer_id = obj.get("customer")
        if customer_id is None and event_type != "checkout.session.completed":
            logger.warning("Billing event %s (%s) has no customer", event_id, event_type)
        elif event_type == "checkout.session.completed":
            if not customer_id:
                raise ValueError("Checkout session has no customer")
            email = (obj.get("customer_details") or {}).get("email") or obj.get("customer_email")
            conn.execute(
                "INSERT INTO subscriptions (customer_id, user_email, subscription_id) VALUES (?, ?, ?) "
                "ON CONFLICT(customer_id) DO UPDATE SET user_email = excluded.user_email, "
                "subscription_id = COALESCE(excluded.subscription_id, subscriptions.subscription_id), "
                "updated_at = datetime('now')",
                (customer_id, email.lower() if email else None, obj.get("subscription")),
            )

        elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
            product_id = _product_id(obj)
            tier = tier_for_product(product_id, tiers)
            email = (obj.get("metadata") or {}).get("user_email") or _subscription_email(conn, customer_id)
            period_end = obj.get("current_period_end")
            conn.execute(
                "INSERT INTO subscriptions (customer_id, user_email, subscription_id, product_id, "
                "tier, status, current_period_end) VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(customer_id) DO UPDATE SET "
                "user_email = COALESCE(excluded.user_email, subscriptions.user_email), "
                "subscription_id = excluded.subscription_id, product_id = excluded.product_id, "
                "tier = excluded.tier, status = excluded.status, "
                "current_period_end = excluded.current_period_end, updated_at = datetime('now')",
                (
                    customer_id,
                    email.lower() if email else None,
                    obj.get("id"),
                    product_id,
                    tier,
                    obj.get("status") or "active",
                    period_end,
                ),
            )
            _set_user_tier(conn, email, tier)
            logger.info("Subscription %s for %s -> %s", obj.get("id"), customer_id, tier)

        elif event_type == "customer.subscription.deleted":
            conn.execute(
                "UPDATE subscriptions SET tier = ?, status = 'canceled', updated_at = datetime('now') "
                "WHERE customer_id = ?",
                (FREE_TIER, customer_id),
            )
            _set_user_tier(conn, _subscription_email(conn, customer_id), FREE_TIER)
            logger.info("Subscription cancelled for %s", customer_id)

        elif event_type == "invoice.payment_succeeded":
            conn.execute(
                "UPDATE subscriptions SET status = 'active', updated_at = datetime('now') "
                "WHERE customer_id = ? AND status != 'active'",
                (customer_id,),
            )

        elif event_type == "invoice.payment_failed":
            conn.execute(
                "UPDATE subscriptions SET status = 'past_due', updated_at = datetime('now') "
                "WHERE customer_id = ?",
                (customer_id,),
            )
            logger.warning("Payment failed for %s", customer_id)

        else:
            logger.info("Unhandled billing event type %s", event_type)

    log_event("billing_event", {
        "id": event_id,
        "type": event_type,
        "customer": customer_id,
        "processed_at": datetime.now(timezone.utc).isoformat(),
    })
    return {"received": True, "duplicate": False, "type": event_type}


def get_subscription(customer_id: str) -> dict[str, Any] | None:
    with store.get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE customer_id = ?", (customer_id,)
        ).fetchone()
    return dict(row) if row else None


def subscription_for_email(email: str) -> dict[str, Any] | None:
    """Most recently updated subscription linked to a user's email."""
    with store.get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE user_email = ? ORDER BY updated_at DESC LIMIT 1",
            (email.lower(),),
        ).fetchone()
    return dict(row) if row else None
