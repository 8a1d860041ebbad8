# routers/stripe_webhook.py

from __future__ import annotations

import logging
from typing import Any, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.config import EngineConfig, settings
from app.db import get_db
from app.deps import get_engine_config
from app.email_service import (
    send_dispute_alert_email,
    send_payment_failed_email,
    send_payment_received_email,
)
from app.errors import NotFoundError
from app.order_service import handle_charge_dispute, handle_payment_failed, handle_payment_succeeded
from app.promo_service import money2
from models.orders import Order, PaymentStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

SUCCEEDED_EVENTS = {"payment_intent.succeeded", "checkout.session.completed"}
FAILED_EVENTS = {"payment_intent.payment_failed"}
DISPUTE_EVENTS = {"charge.dispute.created"}


def _order_id_from(obj: Any) -> Optional[int]:
    metadata = obj.get("metadata") or {}
    raw = metadata.get("order_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _payment_ref(obj: Any) -> Optional[str]:
    # checkout.session -> payment_intent, payment_intent -> id
    if obj.get("object") == "checkout.session":
        return obj.get("payment_intent") or obj.get("id")
    return obj.get("id")


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
):
    """
    Stripe webhook (consegna at-least-once):
    - verifica firma con STRIPE_WEBHOOK_SECRET
    - payment_intent.succeeded / checkout.session.completed -> pagato + commissione (idempotente)
    - payment_intent.payment_failed -> failed (solo se ancora pending)
    - charge.dispute.created -> log + alert admin
    Risponde sempre 200 agli eventi validi, anche se ignorati.
    """
    webhook_secret = settings.stripe_webhook_secret.strip()
    if not webhook_secret:
        raise HTTPException(
            status_code=500,
            detail="Stripe webhook not configured (missing STRIPE_WEBHOOK_SECRET)",
        )

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=webhook_secret,
        )
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid webhook signature: {str(e)}")

    event_type = event.get("type")
    obj = event["data"]["object"]

    # -----------------------------------
    # dispute
    # -----------------------------------
    if event_type in DISPUTE_EVENTS:
        order = handle_charge_dispute(db, obj.get("payment_intent"), obj)
        if order is None:
            return {"ok": True, "ignored": "order not found"}
        try:
            send_dispute_alert_email(order.order_number, obj.get("id"), obj.get("reason"))
        except Exception:
            logger.exception("Dispute alert email failed for order %s", order.id)
        return {"ok": True, "order_id": order.id, "dispute": obj.get("id")}

    if event_type not in SUCCEEDED_EVENTS | FAILED_EVENTS:
        return {"ok": True, "ignored": event_type}

    order_id = _order_id_from(obj)
    if order_id is None:
        # senza order_id non processiamo (evita mapping random)
        logger.warning("Stripe %s %s without metadata.order_id, ignored", event_type, obj.get("id"))
        return {"ok": True, "ignored": "missing order_id metadata"}

    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        logger.warning("Stripe %s for unknown order %s, ignored", event_type, order_id)
        return {"ok": True, "ignored": "order not found"}

    was_paid = order.payment_status == PaymentStatus.PAID
    payment_ref = _payment_ref(obj)

    # -----------------------------------
    # payment failed
    # -----------------------------------
    if event_type in FAILED_EVENTS:
        was_pending = order.payment_status == PaymentStatus.PENDING
        order = handle_payment_failed(db, order.id, payment_ref)
        # replay: la mail parte solo se questa consegna ha cambiato lo stato
        if was_pending and order.payment_status == PaymentStatus.FAILED and order.customer_email:
            try:
                send_payment_failed_email(order.customer_email, order.order_number)
            except Exception:
                logger.exception("Payment failed email failed for order %s", order.id)
        return {"ok": True, "order_id": order.id, "status": order.payment_status.value}

    # -----------------------------------
    # payment succeeded
    # -----------------------------------
    try:
        order = handle_payment_succeeded(db, config, order.id, payment_ref)
    except NotFoundError:
        return {"ok": True, "ignored": "order not found"}

    if not was_paid and order.customer_email:
        try:
            send_payment_received_email(order.customer_email, order.order_number, money2(order.total_price))
        except Exception:
            logger.exception("Payment received email failed for order %s", order.id)

    return {
        "ok": True,
        "order_id": order.id,
        "status": order.payment_status.value,
        "was_already_paid": was_paid,
    }
