# app/order_service.py

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional, TypeVar

from sqlalchemy.orm import Session

from app.attribution_service import Attribution, AttributionResolver
from app.commission_service import CommissionLedger
from app.config import EngineConfig
from app.errors import NotFoundError, Rejection, TransientError
from app.promo_service import PromoCodeValidator, PromoValidation, calculate_pricing, money2
from app.workflow_service import OrderPatch, apply_patch
from models.orders import Order, OrderAddon, OrderStatus, PaymentStatus, WORKFLOW_STAGES
from models.promo_codes import PromoCodeKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

BRIEF_FIELDS = (
    "song_purpose",
    "recipient_name",
    "emotion",
    "music_style",
    "song_theme",
    "personal_story",
    "additional_notes",
)
CUSTOMER_FIELDS = ("name", "email", "address", "city", "postcode", "country")


@dataclass(frozen=True)
class CreatedOrder:
    order: Order
    discount_applied: Decimal
    attribution: Optional[Attribution]


def generate_order_number() -> str:
    # ORD-<ultime 6 cifre timestamp ms>-<3 cifre random>
    stamp = str(int(time.time() * 1000))[-6:]
    return f"ORD-{stamp}-{random.randint(0, 999):03d}"


def run_with_retry(
    db: Session,
    operation: Callable[[], T],
    max_attempts: int = 3,
    backoff_factor: float = 0.05,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Ritenta operation() sui TransientError (contesa lock), con backoff esponenziale.
    Ogni tentativo riparte da una transazione pulita.
    """
    for attempt in range(max_attempts):
        try:
            return operation()
        except TransientError as e:
            db.rollback()
            if attempt >= max_attempts - 1:
                logger.error("Giving up after %d attempts: %s", max_attempts, e.message)
                raise
            wait = backoff_factor * (2 ** attempt)
            logger.warning("Attempt %d failed (%s), retrying in %.2fs", attempt + 1, e.message, wait)
            sleep(wait)
    raise RuntimeError("unreachable")


# -------------------------------------------------
# createOrder: unico punto che consuma il codice e fissa l'attribuzione
# -------------------------------------------------
def create_order(
    db: Session,
    config: EngineConfig,
    user_id: int,
    package_type: str,
    addons: Iterable[str] = (),
    promo_code: Optional[str] = None,
    cookie: Optional[str] = None,
    provide_lyrics: bool = False,
    lyrics: Optional[str] = None,
    show_in_gallery: bool = False,
    brief: Optional[Dict[str, Any]] = None,
    customer: Optional[Dict[str, Any]] = None,
) -> CreatedOrder:
    """
    Crea l'ordine (pending) nella transazione corrente. Nessun commit qui.
    Codice promo non valido -> eccezione (nessuna scrittura).
    """
    pricing = calculate_pricing(package_type, addons)
    subtotal = pricing["subtotal"]

    validation: Optional[PromoValidation] = None
    if promo_code and promo_code.strip():
        outcome = PromoCodeValidator(db, config).validate(promo_code, user_id, subtotal)
        if isinstance(outcome, Rejection):
            raise outcome.to_error()
        validation = outcome

    resolver = AttributionResolver(db, config)
    attribution: Optional[Attribution] = None
    if validation is not None and validation.code.kind == PromoCodeKind.AFFILIATE:
        # il codice affiliato digitato vince sul cookie
        if config.affiliates_enabled:
            attribution = Attribution(
                affiliate_id=validation.code.affiliate_id,
                code_id=validation.code.id,
                source="code",
            )
    else:
        attribution = resolver.resolve(user_id, cookie)

    discount = validation.discount_amount if validation else Decimal("0.00")
    final_total = validation.final_total if validation else subtotal

    brief = brief or {}
    customer = customer or {}

    order = Order(
        order_number=generate_order_number(),
        user_id=user_id,
        package_type=pricing["package_type"],
        original_price=subtotal,
        total_price=final_total,
        payment_status=PaymentStatus.PENDING,
        status=OrderStatus.PENDING,
        workflow_stage=WORKFLOW_STAGES[OrderStatus.PENDING],
        provide_lyrics=bool(provide_lyrics),
        lyrics=(lyrics or "").strip() or None,
        show_in_gallery=bool(show_in_gallery),
        used_promo_code=validation.code.code if validation else None,
        promo_discount_amount=discount,
        referring_affiliate_id=attribution.affiliate_id if attribution else None,
        referral_code_id=attribution.code_id if attribution else None,
        **{f: brief.get(f) for f in BRIEF_FIELDS},
        **{f"customer_{f}": customer.get(f) for f in CUSTOMER_FIELDS},
    )
    db.add(order)
    db.flush()

    for line in pricing["addons"]:
        db.add(OrderAddon(order_id=order.id, addon_type=line["addon_type"], price=line["price"]))

    if validation is not None:
        PromoCodeValidator(db, config).record_usage(validation.code.id, user_id, order.id, discount)

    if attribution is not None:
        resolver.record_purchase(attribution, user_id, order.id, final_total)

    db.flush()
    logger.info(
        "Order %s created: user=%s total=%s discount=%s affiliate=%s",
        order.order_number, user_id, final_total, discount,
        attribution.affiliate_id if attribution else None,
    )
    return CreatedOrder(order=order, discount_applied=discount, attribution=attribution)


# -------------------------------------------------
# Pagamenti (webhook at-least-once)
# -------------------------------------------------
def _load_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", reason="NOT_FOUND")
    return order


def handle_payment_succeeded(
    db: Session,
    config: EngineConfig,
    order_id: int,
    payment_ref: Optional[str] = None,
) -> Order:
    """
    Idempotente: il pagamento viene segnato una volta sola, la commissione
    creata/approvata al massimo una volta. Errori sulla commissione non
    annullano il pagamento. Commit incluso.
    """
    order = _load_order(db, order_id)
    was_paid = order.payment_status == PaymentStatus.PAID

    if not was_paid:
        apply_patch(order, OrderPatch(payment_status=PaymentStatus.PAID, payment_id=payment_ref or order.payment_id))
        db.commit()
        logger.info("Payment succeeded for order %s (%s)", order.order_number, payment_ref)

    if order.referring_affiliate_id and config.affiliates_enabled:
        ledger = CommissionLedger(db, config)
        try:
            commission = ledger.record_commission(
                affiliate_id=order.referring_affiliate_id,
                order_id=order.id,
                code_id=order.referral_code_id,
                order_total=order.original_price,
                discount_amount=order.promo_discount_amount,
            )
            if commission is not None:
                ledger.approve_commission(commission)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Commission crediting failed for order %s, left for retry", order.id)

    db.refresh(order)
    return order


def handle_payment_failed(db: Session, order_id: int, payment_ref: Optional[str] = None) -> Order:
    order = _load_order(db, order_id)
    # un ordine gia' pagato non torna indietro
    if order.payment_status == PaymentStatus.PENDING:
        apply_patch(order, OrderPatch(payment_status=PaymentStatus.FAILED, payment_id=payment_ref or order.payment_id))
        db.commit()
        logger.info("Payment failed for order %s (%s)", order.order_number, payment_ref)
    return order


def handle_charge_dispute(db: Session, payment_ref: Optional[str], dispute: Dict[str, Any]) -> Optional[Order]:
    order = None
    if payment_ref:
        order = db.query(Order).filter(Order.payment_id == payment_ref).first()
    if order is None:
        logger.error("Order not found for disputed charge %s", payment_ref)
        return None

    logger.warning(
        "Dispute %s created for order %s: amount=%s reason=%s status=%s",
        dispute.get("id"),
        order.order_number,
        money2(Decimal(str(dispute.get("amount") or 0)) / 100),
        dispute.get("reason"),
        dispute.get("status"),
    )
    return order

