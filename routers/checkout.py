# routers/checkout.py

from __future__ import annotations

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

import stripe
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.attribution_service import COOKIE_NAME
from app.config import EngineConfig, settings
from app.db import get_db
from app.deps import get_current_user, get_engine_config, get_optional_user
from app.email_service import send_order_received_email
from app.errors import ConflictError, NotFoundError, UpstreamError, ValidationError, unwrap
from app.order_service import create_order, run_with_retry
from app.promo_service import PromoCodeValidator, calculate_pricing, money2
from app.workflow_service import OrderPatch, apply_patch
from models.orders import Order, PaymentStatus
from models.users import User
from schemas.checkout import (
    ApplyPromoRequest,
    ApplyPromoResponse,
    CheckoutSummary,
    CreateOrderRequest,
    CreateOrderResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/checkout", tags=["Checkout"])


def _to_cents(amount: Decimal) -> int:
    a = money2(amount)
    return int((a * 100).to_integral_value(rounding=ROUND_HALF_UP))


# -------------------------------------------------
# POST /checkout/apply-promo  (anteprima, non consuma il codice)
# -------------------------------------------------
@router.post("/apply-promo", response_model=ApplyPromoResponse)
def apply_promo(
    payload: ApplyPromoRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: Optional[User] = Depends(get_optional_user),
):
    if not payload.code.strip():
        raise ValidationError("Promo code is required", reason="CODE_REQUIRED")

    preview = unwrap(
        PromoCodeValidator(db, config).preview(
            payload.code,
            payload.order_value,
            user_id=current_user.id if current_user else None,
        )
    )
    return ApplyPromoResponse(**preview)


# -------------------------------------------------
# GET /checkout/summary  (prezzo pacchetto + addon, codice opzionale)
# -------------------------------------------------
@router.get("/summary", response_model=CheckoutSummary)
def checkout_summary(
    package_type: str,
    addons: List[str] = Query(default=[]),
    promo_code: Optional[str] = None,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: Optional[User] = Depends(get_optional_user),
):
    pricing = calculate_pricing(package_type, addons)
    summary = CheckoutSummary(
        package_type=pricing["package_type"].value,
        package_price=pricing["package_price"],
        addons=pricing["addons"],
        subtotal=pricing["subtotal"],
        final_total=pricing["subtotal"],
    )

    if promo_code and promo_code.strip():
        preview = unwrap(
            PromoCodeValidator(db, config).preview(
                promo_code,
                pricing["subtotal"],
                user_id=current_user.id if current_user else None,
            )
        )
        summary.discount_code = preview["discount_code"]
        summary.discount_amount = preview["discount_amount"]
        summary.final_total = preview["final_total"]

    return summary


# -------------------------------------------------
# POST /checkout/create-order  (ordine reale, PENDING)
# -------------------------------------------------
@router.post("/create-order", response_model=CreateOrderResponse)
def create_order_real(
    payload: CreateOrderRequest,
    request: Request,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: User = Depends(get_current_user),
):
    cookie = request.cookies.get(COOKIE_NAME)
    customer = payload.customer.model_dump()
    if not customer.get("email"):
        customer["email"] = current_user.email
    if not customer.get("name"):
        customer["name"] = current_user.name

    def _create():
        created = create_order(
            db,
            config,
            user_id=current_user.id,
            package_type=payload.package_type,
            addons=payload.addons,
            promo_code=payload.promo_code,
            cookie=cookie,
            provide_lyrics=payload.provide_lyrics,
            lyrics=payload.lyrics,
            show_in_gallery=payload.show_in_gallery,
            brief=payload.brief.model_dump(),
            customer=customer,
        )
        db.commit()
        return created

    try:
        created = run_with_retry(db, _create)
    except Exception:
        db.rollback()
        raise

    order = created.order
    db.refresh(order)

    # Email "Order received" (best effort)
    try:
        if order.customer_email:
            send_order_received_email(
                to_email=order.customer_email,
                order_number=order.order_number,
                package_type=order.package_type.value,
                total=money2(order.total_price),
                discount=created.discount_applied or None,
                customer_name=order.customer_name,
            )
    except Exception:
        logger.exception("Order received email failed for order %s", order.id)

    return CreateOrderResponse(
        order_id=order.id,
        order_number=order.order_number,
        original_price=money2(order.original_price),
        final_price=money2(order.total_price),
        discount_applied=created.discount_applied,
        affiliate_attributed=created.attribution is not None,
    )


# -------------------------------------------------
# POST /checkout/stripe/payment-intent
# -------------------------------------------------
@router.post("/stripe/payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    payload: PaymentIntentRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if not settings.stripe_secret_key:
        raise UpstreamError("Stripe not configured (missing STRIPE_SECRET_KEY)", reason="PAYMENT_NOT_CONFIGURED")

    order = (
        db.query(Order)
        .filter(Order.id == payload.order_id, Order.user_id == current_user.id)
        .first()
    )
    if not order:
        raise NotFoundError("Order not found", reason="NOT_FOUND")
    if order.payment_status == PaymentStatus.PAID:
        raise ConflictError("Order already paid", reason="ALREADY_PAID")

    amount_cents = _to_cents(Decimal(str(order.total_price)))
    if amount_cents <= 0:
        raise ValidationError("Order total must be > 0", reason="INVALID_AMOUNT")

    currency = settings.stripe_currency.strip().lower()
    stripe.api_key = settings.stripe_secret_key

    try:
        intent = stripe.PaymentIntent.create(
            amount=amount_cents,
            currency=currency,
            metadata={"order_id": str(order.id), "order_number": order.order_number},
            receipt_email=order.customer_email or None,
        )
    except stripe.StripeError as e:
        logger.error("Stripe PaymentIntent failed for order %s: %s", order.id, e)
        raise UpstreamError("Payment provider error, please retry", reason="PAYMENT_GATEWAY_ERROR") from e

    apply_patch(order, OrderPatch(payment_id=intent["id"]))
    db.commit()

    return PaymentIntentResponse(
        order_id=order.id,
        payment_intent_id=intent["id"],
        client_secret=intent.get("client_secret"),
        amount=amount_cents,
        currency=currency,
    )
