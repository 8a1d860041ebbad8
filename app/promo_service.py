# app/promo_service.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, Optional, Union

from sqlalchemy import func, or_, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.config import EngineConfig
from app.errors import ConflictError, Rejection, RejectionReason, TransientError, ValidationError
from models.affiliates import AffiliateStatus
from models.orders import PackageType
from models.promo_codes import PromoCode, PromoCodeKind, PromoCodeUsage

logger = logging.getLogger(__name__)


# -------------------------------------------------
# Listino (prezzi fissi, GBP)
# -------------------------------------------------
PACKAGE_PRICES: Dict[PackageType, Decimal] = {
    PackageType.ESSENTIAL: Decimal("99.99"),
    PackageType.SIGNATURE: Decimal("199.99"),
    PackageType.MASTERPIECE: Decimal("359.99"),
}

ADDON_PRICES: Dict[str, Decimal] = {
    "expedited": Decimal("29.99"),
    "physical-cd": Decimal("34.99"),
    "physical-vinyl": Decimal("119.99"),
    "streaming": Decimal("34.99"),
}


def money2(value: Any) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite restituisce datetime naive: li consideriamo UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def calculate_pricing(package_type: str, addons: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Subtotale = pacchetto + addon (nessuno sconto qui).
    Pacchetti / addon sconosciuti -> ValidationError.
    """
    try:
        package = PackageType(str(package_type).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown package type: {package_type}", reason="INVALID_PACKAGE")

    lines = []
    seen = set()
    for raw in addons or ():
        key = str(raw).strip().lower()
        if key in seen:
            continue
        if key not in ADDON_PRICES:
            raise ValidationError(f"Unknown addon: {raw}", reason="INVALID_ADDON")
        seen.add(key)
        lines.append({"addon_type": key, "price": ADDON_PRICES[key]})

    package_price = PACKAGE_PRICES[package]
    subtotal = money2(package_price + sum((line["price"] for line in lines), Decimal("0")))

    return {
        "package_type": package,
        "package_price": package_price,
        "addons": lines,
        "subtotal": subtotal,
    }


@dataclass(frozen=True)
class PromoValidation:
    code: PromoCode
    order_value: Decimal
    discount_amount: Decimal
    final_total: Decimal

    @property
    def discount_type(self) -> str:
        return "percentage" if self.code.is_percentage else "fixed"


class PromoCodeValidator:
    """
    Valuta un codice promo contro utente + valore ordine.
    validate() non consuma mai utilizzi: solo record_usage() lo fa,
    dentro la transazione di creazione ordine.
    """

    def __init__(self, db: Session, config: EngineConfig):
        self.db = db
        self.config = config

    # -----------------------------
    # Lookup
    # -----------------------------
    def get_code(self, code: Optional[str]) -> Optional[PromoCode]:
        normalized = (code or "").strip().upper()
        if not normalized:
            return None
        return (
            self.db.query(PromoCode)
            .filter(PromoCode.code == normalized)
            .filter(PromoCode.kind.in_([PromoCodeKind.DISCOUNT, PromoCodeKind.AFFILIATE]))
            .first()
        )

    def _usage_count(self, code_id: int, user_id: int) -> int:
        return (
            self.db.query(func.count(PromoCodeUsage.id))
            .filter(PromoCodeUsage.code_id == code_id, PromoCodeUsage.user_id == user_id)
            .scalar()
            or 0
        )

    # -----------------------------
    # Rules
    # -----------------------------
    def validate(
        self,
        code: Optional[str],
        user_id: Optional[int],
        order_value: Any,
        now: Optional[datetime] = None,
    ) -> Union[PromoValidation, Rejection]:
        if not self.config.discounts_enabled:
            return Rejection(RejectionReason.FEATURE_DISABLED, "Discount feature is currently disabled")

        value = money2(order_value)
        now = as_utc(now) or datetime.now(timezone.utc)

        promo = self.get_code(code)
        if promo is None:
            return Rejection(RejectionReason.NOT_FOUND, "Invalid promo code")

        if not promo.is_active:
            return Rejection(RejectionReason.INACTIVE, "This promo code is no longer active")
        if promo.kind == PromoCodeKind.AFFILIATE and (
            promo.affiliate is None or promo.affiliate.status != AffiliateStatus.APPROVED
        ):
            return Rejection(RejectionReason.INACTIVE, "This promo code is no longer active")

        starts_at = as_utc(promo.starts_at)
        expires_at = as_utc(promo.expires_at)
        if starts_at and starts_at > now:
            return Rejection(RejectionReason.NOT_YET_ACTIVE, "This promo code is not yet valid")
        if expires_at and expires_at < now:
            return Rejection(RejectionReason.EXPIRED, "This promo code has expired")

        min_value = money2(promo.min_order_value or 0)
        if value < min_value:
            return Rejection(
                RejectionReason.BELOW_MINIMUM,
                f"Minimum order value of {min_value} required",
            )

        if promo.max_uses and promo.current_uses >= promo.max_uses:
            return Rejection(RejectionReason.USAGE_LIMIT_REACHED, "This promo code has reached its usage limit")

        if user_id and promo.max_uses_per_user:
            if self._usage_count(promo.id, user_id) >= promo.max_uses_per_user:
                return Rejection(
                    RejectionReason.PER_USER_LIMIT_REACHED,
                    "You have already used this promo code the maximum number of times",
                )

        if promo.kind == PromoCodeKind.AFFILIATE and user_id and promo.affiliate is not None:
            if promo.affiliate.user_id == user_id:
                return Rejection(RejectionReason.SELF_REFERRAL, "You cannot use your own affiliate code")

        discount = self.calculate_discount(promo.discount_value, promo.is_percentage, value)
        return PromoValidation(
            code=promo,
            order_value=value,
            discount_amount=discount,
            final_total=max(Decimal("0.00"), money2(value - discount)),
        )

    @staticmethod
    def calculate_discount(discount_value: Any, is_percentage: bool, order_value: Any) -> Decimal:
        value = money2(order_value)
        if value <= 0:
            return Decimal("0.00")
        amount = Decimal(str(discount_value or 0))
        if is_percentage:
            discount = money2(value * amount / Decimal("100"))
        else:
            discount = money2(min(amount, value))
        # mai oltre il valore dell'ordine, mai negativo
        return max(Decimal("0.00"), min(discount, value))

    # -----------------------------
    # Usage (solo in create_order)
    # -----------------------------
    def record_usage(
        self,
        code_id: int,
        user_id: Optional[int],
        order_id: int,
        discount: Any,
    ) -> PromoCodeUsage:
        """
        Incremento atomico con guardia sul tetto globale + riga di utilizzo.
        Il tetto per utente viene ricontrollato sotto lock: validate() da solo non basta.
        Nessun commit: lo fa chi crea l'ordine.
        """
        try:
            # serializza gli ordini concorrenti sullo stesso codice (no-op su SQLite)
            per_user_limit = (
                self.db.query(PromoCode.max_uses_per_user)
                .filter(PromoCode.id == code_id)
                .with_for_update()
                .scalar()
            )
            if user_id and per_user_limit and self._usage_count(code_id, user_id) >= per_user_limit:
                raise ConflictError(
                    "You have already used this promo code the maximum number of times",
                    reason=RejectionReason.PER_USER_LIMIT_REACHED.value,
                )

            result = self.db.execute(
                update(PromoCode)
                .where(PromoCode.id == code_id)
                .where(or_(PromoCode.max_uses == 0, PromoCode.current_uses < PromoCode.max_uses))
                .values(current_uses=PromoCode.current_uses + 1)
                .execution_options(synchronize_session=False)
            )
        except OperationalError as e:
            logger.warning("Promo code %s counter contention: %s", code_id, e)
            raise TransientError(
                "The promo code is busy, please retry",
                reason="LOCK_CONTENTION",
            ) from e

        if result.rowcount != 1:
            raise ConflictError(
                "This promo code has reached its usage limit",
                reason=RejectionReason.USAGE_LIMIT_REACHED.value,
            )

        cached = self.db.get(PromoCode, code_id)
        if cached is not None:
            self.db.expire(cached, ["current_uses"])

        usage = PromoCodeUsage(
            code_id=code_id,
            user_id=user_id,
            order_id=order_id,
            discount_applied=money2(discount),
        )
        self.db.add(usage)
        self.db.flush()

        logger.info("Promo code %s used on order %s (discount %s)", code_id, order_id, usage.discount_applied)
        return usage

    # -----------------------------
    # applyPromo (preview)
    # -----------------------------
    def preview(
        self,
        code: Optional[str],
        order_value: Any,
        user_id: Optional[int] = None,
    ) -> Union[Dict[str, Any], Rejection]:
        outcome = self.validate(code, user_id, order_value)
        if isinstance(outcome, Rejection):
            return outcome

        return {
            "original_total": outcome.order_value,
            "discount_code": outcome.code.code,
            "discount_name": outcome.code.name,
            "discount_amount": outcome.discount_amount,
            "discount_type": outcome.discount_type,
            "discount_value": money2(outcome.code.discount_value),
            "final_total": outcome.final_total,
        }


# -------------------------------------------------
# Admin: codici sconto
# -------------------------------------------------
@dataclass(frozen=True)
class PromoCodePatch:
    name: Optional[str] = None
    discount_value: Optional[Decimal] = None
    is_percentage: Optional[bool] = None
    min_order_value: Optional[Decimal] = None
    max_uses: Optional[int] = None
    max_uses_per_user: Optional[int] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None


def _check_discount(value: Decimal, is_percentage: bool) -> Decimal:
    value = money2(value)
    if value <= 0:
        raise ValidationError("Discount amount must be greater than 0", reason="INVALID_DISCOUNT")
    if is_percentage and value > 100:
        raise ValidationError("Percentage discount cannot be greater than 100%", reason="INVALID_DISCOUNT")
    return value


def create_discount_code(db: Session, code: str, name: str, discount_value: Any, **options: Any) -> PromoCode:
    normalized = (code or "").strip().upper()
    if not normalized or not (name or "").strip():
        raise ValidationError("Code, name, and discount amount are required", reason="INVALID_CODE")

    if db.query(PromoCode.id).filter(PromoCode.code == normalized).first() is not None:
        raise ConflictError("A promo code with this code already exists", reason="DUPLICATE_CODE")

    is_percentage = bool(options.get("is_percentage", True))
    promo = PromoCode(
        code=normalized,
        name=name.strip(),
        kind=PromoCodeKind.DISCOUNT,
        discount_value=_check_discount(Decimal(str(discount_value)), is_percentage),
        is_percentage=is_percentage,
        min_order_value=money2(options.get("min_order_value") or 0),
        max_uses=int(options.get("max_uses") or 0),
        max_uses_per_user=int(options.get("max_uses_per_user", 1) or 0),
        starts_at=options.get("starts_at"),
        expires_at=options.get("expires_at"),
        is_active=True,
    )
    db.add(promo)
    db.flush()
    logger.info("Discount code %s created", promo.code)
    return promo


def update_promo_code(db: Session, promo: PromoCode, patch: PromoCodePatch) -> PromoCode:
    is_percentage = promo.is_percentage if patch.is_percentage is None else patch.is_percentage

    if patch.name is not None:
        promo.name = patch.name
    if patch.discount_value is not None or patch.is_percentage is not None:
        value = promo.discount_value if patch.discount_value is None else patch.discount_value
        promo.discount_value = _check_discount(Decimal(str(value)), is_percentage)
        promo.is_percentage = is_percentage
    if patch.min_order_value is not None:
        promo.min_order_value = money2(patch.min_order_value)
    if patch.max_uses is not None:
        if patch.max_uses and patch.max_uses < promo.current_uses:
            raise ValidationError("max_uses cannot be lower than current uses", reason="INVALID_LIMIT")
        promo.max_uses = patch.max_uses
    if patch.max_uses_per_user is not None:
        promo.max_uses_per_user = patch.max_uses_per_user
    if patch.starts_at is not None:
        promo.starts_at = patch.starts_at
    if patch.expires_at is not None:
        promo.expires_at = patch.expires_at
    if patch.is_active is not None:
        promo.is_active = patch.is_active

    db.flush()
    return promo
