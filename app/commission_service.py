# app/commission_service.py

from __future__ import annotations

import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import CommissionBasis, EngineConfig
from app.errors import AuthorizationError, ConflictError, NotFoundError, RateLimitError, ValidationError
from app.promo_service import as_utc, money2
from models.affiliate_payouts import AffiliatePayout, PayoutMethod, PayoutStatus
from models.affiliates import Affiliate, AffiliateStatus
from models.commissions import COMMISSION_STATUS_RANK, Commission, CommissionStatus
from models.promo_codes import PromoCode, PromoCodeKind
from models.referral_events import ReferralEvent, ReferralEventType
from models.users import User

logger = logging.getLogger(__name__)

MAX_COMMISSION_RATE = Decimal("50")
MIN_PAYOUT_THRESHOLD = Decimal("10.00")
AFFILIATE_CODE_PREFIX = "SONG"
REAPPLICATION_COOLDOWN_DAYS = 30
CODE_REGENERATION_COOLDOWN_HOURS = 24
ANALYTICS_PERIODS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365, "all": None}


@dataclass(frozen=True)
class AffiliateSettingsPatch:
    commission_rate: Optional[Decimal] = None
    payout_threshold: Optional[Decimal] = None
    status: Optional[AffiliateStatus] = None
    admin_notes: Optional[str] = None

    def is_empty(self) -> bool:
        return all(v is None for v in (self.commission_rate, self.payout_threshold, self.status, self.admin_notes))


def _check_rate(rate: Decimal) -> Decimal:
    rate = money2(rate)
    if rate < 0 or rate > MAX_COMMISSION_RATE:
        raise ValidationError("Commission rate must be between 0% and 50%", reason="INVALID_RATE")
    return rate


def _mask_payment_info(info: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    # del conto teniamo solo le ultime 4 cifre
    clean = dict(info or {})
    account = clean.get("account_number")
    if account:
        clean["account_number"] = str(account)[-4:]
    return clean


class CommissionLedger:
    """
    Commissioni affiliati + saldo.
    - record_commission: idempotente su (affiliato, ordine)
    - approve_commission: UNICO punto che accredita il saldo
    - payout: il saldo viene scalato una sola volta, alla richiesta
    """

    def __init__(self, db: Session, config: EngineConfig):
        self.db = db
        self.config = config

    # -------------------------------------------------
    # Calcolo
    # -------------------------------------------------
    def basis_for(self, order_total: Any, discount_amount: Any = 0) -> Decimal:
        total = money2(order_total or 0)
        if self.config.commission_basis == CommissionBasis.PRE_DISCOUNT:
            return total
        return max(Decimal("0.00"), money2(total - money2(discount_amount or 0)))

    @staticmethod
    def compute_amount(basis: Any, rate: Any) -> Decimal:
        return money2(money2(basis) * Decimal(str(rate)) / Decimal("100"))

    def _advance(self, commission: Commission, new_status: CommissionStatus) -> None:
        current = commission.status or CommissionStatus.PENDING
        if COMMISSION_STATUS_RANK[new_status] < COMMISSION_STATUS_RANK[current]:
            raise ConflictError(
                f"Commission {commission.id} cannot go back from {current.value} to {new_status.value}",
                reason="COMMISSION_STATUS_REGRESSION",
            )
        commission.status = new_status

    # -------------------------------------------------
    # Ledger
    # -------------------------------------------------
    def _find(self, affiliate_id: int, order_id: int) -> Optional[Commission]:
        return (
            self.db.query(Commission)
            .filter(Commission.affiliate_id == affiliate_id, Commission.order_id == order_id)
            .first()
        )

    def _refresh_pending(self, commission: Commission, amount: Decimal, rate: Decimal, basis: Decimal) -> Commission:
        # gia' accreditata: importo congelato (saldo = somma approvate)
        if commission.status == CommissionStatus.PENDING:
            commission.amount = amount
            commission.rate = rate
            commission.order_total = basis
            self.db.flush()
        return commission

    def record_commission(
        self,
        affiliate_id: int,
        order_id: int,
        code_id: Optional[int],
        order_total: Any,
        discount_amount: Any = 0,
    ) -> Optional[Commission]:
        affiliate = self.db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()
        if affiliate is None or affiliate.status != AffiliateStatus.APPROVED:
            logger.info("No commission for order %s: affiliate %s not approved", order_id, affiliate_id)
            return None

        rate = money2(
            affiliate.commission_rate if affiliate.commission_rate is not None
            else self.config.default_commission_rate
        )
        basis = self.basis_for(order_total, discount_amount)
        amount = self.compute_amount(basis, rate)

        existing = self._find(affiliate_id, order_id)
        if existing is not None:
            return self._refresh_pending(existing, amount, rate, basis)

        commission = Commission(
            affiliate_id=affiliate_id,
            order_id=order_id,
            code_id=code_id,
            amount=amount,
            rate=rate,
            order_total=basis,
            status=CommissionStatus.PENDING,
        )
        try:
            with self.db.begin_nested():
                self.db.add(commission)
        except IntegrityError:
            # webhook concorrente: vince l'altra insert
            logger.info("Commission for affiliate %s / order %s already inserted", affiliate_id, order_id)
            winner = self._find(affiliate_id, order_id)
            if winner is None:
                raise
            return self._refresh_pending(winner, amount, rate, basis)

        logger.info(
            "Commission %s recorded: affiliate=%s order=%s amount=%s",
            commission.id, affiliate_id, order_id, amount,
        )
        return commission

    def approve_commission(self, commission: Commission) -> bool:
        """
        pending -> approved con UPDATE condizionale.
        Il saldo si incrementa solo se questa chiamata ha cambiato la riga.
        """
        self.db.flush()
        result = self.db.execute(
            update(Commission)
            .where(Commission.id == commission.id)
            .where(Commission.status == CommissionStatus.PENDING)
            .values(status=CommissionStatus.APPROVED, approved_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.expire(commission)
            return False

        self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == commission.affiliate_id)
            .values(balance=Affiliate.balance + commission.amount)
            .execution_options(synchronize_session=False)
        )

        self.db.expire(commission)
        affiliate = self.db.get(Affiliate, commission.affiliate_id)
        if affiliate is not None:
            self.db.expire(affiliate, ["balance"])

        logger.info("Commission %s approved, affiliate %s credited", commission.id, commission.affiliate_id)
        return True

    # -------------------------------------------------
    # Payouts
    # -------------------------------------------------
    def eligible_commissions(self, affiliate: Affiliate, now: Optional[datetime] = None) -> List[Commission]:
        now = as_utc(now) or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.config.commission_holding_days)
        return (
            self.db.query(Commission)
            .filter(Commission.affiliate_id == affiliate.id)
            .filter(Commission.status.in_([CommissionStatus.APPROVED, CommissionStatus.PROCESSING]))
            .filter(Commission.payout_id.is_(None))
            .filter(Commission.created_at <= cutoff)
            .order_by(Commission.created_at.asc(), Commission.id.asc())
            .all()
        )

    def request_payout(
        self,
        affiliate: Affiliate,
        payment_method: PayoutMethod = PayoutMethod.STRIPE,
        payment_info: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> AffiliatePayout:
        if affiliate.status != AffiliateStatus.APPROVED:
            raise AuthorizationError("Approved affiliate account not found", reason="AFFILIATE_NOT_APPROVED")

        balance = money2(affiliate.balance or 0)
        threshold = max(
            money2(affiliate.payout_threshold or 0),
            money2(self.config.min_payout_threshold),
        )
        if balance < threshold:
            raise ValidationError(
                f"Minimum payout threshold is £{threshold}. Your current balance is £{balance}",
                reason="BELOW_PAYOUT_THRESHOLD",
            )

        picked: List[Commission] = []
        total = Decimal("0.00")
        for commission in self.eligible_commissions(affiliate, now):
            amount = money2(commission.amount)
            if total + amount > balance:
                break
            total += amount
            picked.append(commission)

        if not picked or total <= 0:
            raise ValidationError(
                "No eligible commissions. Commissions must be "
                f"{self.config.commission_holding_days} days old to be eligible for payout.",
                reason="NO_ELIGIBLE_COMMISSIONS",
            )

        payout = AffiliatePayout(
            affiliate_id=affiliate.id,
            amount=total,
            status=PayoutStatus.PENDING,
            payment_method=payment_method,
            payment_info=_mask_payment_info(payment_info),
        )
        self.db.add(payout)
        self.db.flush()

        for commission in picked:
            self._advance(commission, CommissionStatus.PROCESSING)
            commission.payout_id = payout.id

        self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate.id)
            .values(balance=Affiliate.balance - total)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        self.db.expire(affiliate, ["balance"])

        logger.info("Payout %s requested by affiliate %s: %s (%d commissions)", payout.id, affiliate.id, total, len(picked))
        return payout

    def process_payout(
        self,
        payout: AffiliatePayout,
        action: str,
        admin_id: Optional[int] = None,
        transaction_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AffiliatePayout:
        if action not in ("approve", "reject"):
            raise ValidationError("Action must be either approve or reject", reason="INVALID_ACTION")
        if payout.status != PayoutStatus.PENDING:
            raise ConflictError("Only pending payouts can be processed", reason="PAYOUT_NOT_PENDING")

        now = datetime.now(timezone.utc)
        commissions = self.db.query(Commission).filter(Commission.payout_id == payout.id).all()
        amount = money2(payout.amount)

        payout.processed_by = admin_id
        payout.processed_at = now

        if action == "approve":
            payout.status = PayoutStatus.PAID
            payout.transaction_id = transaction_id
            payout.processing_notes = notes
            for commission in commissions:
                self._advance(commission, CommissionStatus.PAID)
                commission.paid_at = now
            self.db.execute(
                update(Affiliate)
                .where(Affiliate.id == payout.affiliate_id)
                .values(total_paid=Affiliate.total_paid + amount)
                .execution_options(synchronize_session=False)
            )
        else:
            payout.status = PayoutStatus.REJECTED
            payout.processing_notes = notes or "Payout rejected by admin"
            # restano "processing" ma tornano prelevabili
            for commission in commissions:
                commission.payout_id = None
            self.db.execute(
                update(Affiliate)
                .where(Affiliate.id == payout.affiliate_id)
                .values(balance=Affiliate.balance + amount)
                .execution_options(synchronize_session=False)
            )

        self.db.flush()
        affiliate = self.db.get(Affiliate, payout.affiliate_id)
        if affiliate is not None:
            self.db.expire(affiliate, ["balance", "total_paid"])

        logger.info("Payout %s %s by admin %s", payout.id, payout.status.value, admin_id)
        return payout

    # -------------------------------------------------
    # Gestione affiliati
    # -------------------------------------------------
    def apply(
        self,
        user: User,
        website: Optional[str] = None,
        promotion_plan: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Affiliate:
        now = as_utc(now) or datetime.now(timezone.utc)
        existing = self.db.query(Affiliate).filter(Affiliate.user_id == user.id).first()

        if existing is not None and existing.status == AffiliateStatus.DENIED:
            allowed_from = as_utc(existing.next_allowed_application_date)
            if allowed_from is not None and now < allowed_from:
                raise ValidationError(
                    f"You can reapply on {allowed_from.date().isoformat()}",
                    reason="REAPPLY_TOO_SOON",
                )
            # la riga e' unica per utente: la candidatura negata torna pending
            existing.status = AffiliateStatus.PENDING
            existing.commission_rate = money2(self.config.default_commission_rate)
            existing.website = website
            existing.promotion_plan = promotion_plan
            existing.admin_notes = None
            existing.next_allowed_application_date = None
            self.db.flush()
            logger.info("Affiliate %s reapplied after denial", existing.id)
            return existing

        if existing is not None:
            raise ConflictError(
                f"An affiliate application already exists (status: {existing.status.value})",
                reason="ALREADY_APPLIED",
            )

        affiliate = Affiliate(
            user_id=user.id,
            status=AffiliateStatus.PENDING,
            commission_rate=money2(self.config.default_commission_rate),
            payout_threshold=money2(self.config.min_payout_threshold),
            website=website,
            promotion_plan=promotion_plan,
        )
        self.db.add(affiliate)
        self.db.flush()
        return affiliate

    def _unique_code(self) -> str:
        for _ in range(10):
            candidate = f"{AFFILIATE_CODE_PREFIX}{secrets.token_hex(4).upper()}"
            if self.db.query(PromoCode.id).filter(PromoCode.code == candidate).first() is None:
                return candidate
        raise RuntimeError("Failed to generate unique affiliate code")

    def approve_affiliate(
        self,
        affiliate: Affiliate,
        rate: Optional[Any] = None,
        admin_notes: Optional[str] = None,
    ) -> PromoCode:
        if affiliate.status != AffiliateStatus.PENDING:
            raise ConflictError("Only pending applications can be approved", reason="AFFILIATE_NOT_PENDING")

        rate = _check_rate(Decimal(str(rate)) if rate is not None else Decimal(str(self.config.default_commission_rate)))

        affiliate.status = AffiliateStatus.APPROVED
        affiliate.commission_rate = rate
        affiliate.admin_notes = admin_notes
        affiliate.approved_at = datetime.now(timezone.utc)

        owner = self.db.get(User, affiliate.user_id)
        owner_name = (owner.name or owner.email) if owner is not None else f"Affiliate {affiliate.id}"

        # il codice affiliato da' al cliente uno sconto pari alla percentuale
        code = PromoCode(
            code=self._unique_code(),
            name=f"{owner_name}'s Affiliate Code",
            kind=PromoCodeKind.AFFILIATE,
            affiliate_id=affiliate.id,
            discount_value=rate,
            is_percentage=rate > 0,
            is_active=True,
        )
        self.db.add(code)
        self.db.flush()

        logger.info("Affiliate %s approved at %s%% with code %s", affiliate.id, rate, code.code)
        return code

    def deny_affiliate(self, affiliate: Affiliate, reason: str) -> Affiliate:
        reason = (reason or "").strip()
        if len(reason) < 10:
            raise ValidationError("Denial reason must be at least 10 characters long", reason="INVALID_REASON")
        if affiliate.status != AffiliateStatus.PENDING:
            raise ConflictError("Only pending applications can be denied", reason="AFFILIATE_NOT_PENDING")

        affiliate.status = AffiliateStatus.DENIED
        affiliate.admin_notes = reason
        affiliate.next_allowed_application_date = (
            datetime.now(timezone.utc) + timedelta(days=REAPPLICATION_COOLDOWN_DAYS)
        )
        self.db.flush()
        return affiliate

    def regenerate_code(self, affiliate: Affiliate, now: Optional[datetime] = None) -> PromoCode:
        """
        Nuova stringa per il codice affiliato, al massimo una volta ogni 24 ore.
        La riga PromoCode resta la stessa: storico, commissioni e cookie gia' emessi
        continuano a puntare al suo id, il vecchio testo smette di funzionare.
        """
        if affiliate.status != AffiliateStatus.APPROVED:
            raise AuthorizationError("Approved affiliate account not found", reason="AFFILIATE_NOT_APPROVED")

        now = as_utc(now) or datetime.now(timezone.utc)
        last = as_utc(affiliate.code_regenerated_at)
        if last is not None:
            next_allowed = last + timedelta(hours=CODE_REGENERATION_COOLDOWN_HOURS)
            if now < next_allowed:
                hours_left = math.ceil((next_allowed - now).total_seconds() / 3600)
                raise RateLimitError(
                    f"Code regeneration is limited to once per day. Try again in {hours_left} hours.",
                    reason="REGENERATION_COOLDOWN",
                )

        code = (
            self.db.query(PromoCode)
            .filter(PromoCode.affiliate_id == affiliate.id)
            .filter(PromoCode.kind == PromoCodeKind.AFFILIATE)
            .order_by(PromoCode.id.asc())
            .first()
        )
        if code is None:
            raise NotFoundError("Affiliate code not found", reason="NOT_FOUND")

        old_code = code.code
        code.code = self._unique_code()
        affiliate.code_regenerated_at = now
        self.db.flush()

        logger.info("Affiliate %s regenerated code %s -> %s", affiliate.id, old_code, code.code)
        return code

    def update_affiliate_settings(self, affiliate: Affiliate, patch: AffiliateSettingsPatch) -> Affiliate:
        if patch.is_empty():
            raise ValidationError("No valid fields to update", reason="EMPTY_PATCH")

        if patch.commission_rate is not None:
            affiliate.commission_rate = _check_rate(patch.commission_rate)

        if patch.payout_threshold is not None:
            threshold = money2(patch.payout_threshold)
            if threshold < MIN_PAYOUT_THRESHOLD:
                raise ValidationError("Payout threshold must be at least £10", reason="INVALID_THRESHOLD")
            affiliate.payout_threshold = threshold

        if patch.status is not None:
            if patch.status not in (AffiliateStatus.APPROVED, AffiliateStatus.SUSPENDED):
                raise ValidationError("Invalid status. Must be approved or suspended", reason="INVALID_STATUS")
            affiliate.status = patch.status

        if patch.admin_notes is not None:
            affiliate.admin_notes = patch.admin_notes

        self.db.flush()
        return affiliate

    # -------------------------------------------------
    # Dashboard
    # -------------------------------------------------
    def affiliate_summary(self, affiliate: Affiliate, now: Optional[datetime] = None) -> Dict[str, Any]:
        def _sum(*statuses: CommissionStatus) -> Decimal:
            total = (
                self.db.query(func.coalesce(func.sum(Commission.amount), 0))
                .filter(Commission.affiliate_id == affiliate.id)
                .filter(Commission.status.in_(statuses))
                .scalar()
            )
            return money2(total or 0)

        def _events(event_type: ReferralEventType) -> int:
            return (
                self.db.query(func.count(ReferralEvent.id))
                .join(PromoCode, ReferralEvent.code_id == PromoCode.id)
                .filter(PromoCode.affiliate_id == affiliate.id)
                .filter(ReferralEvent.event_type == event_type)
                .scalar()
                or 0
            )

        codes = (
            self.db.query(PromoCode)
            .filter(PromoCode.affiliate_id == affiliate.id)
            .order_by(PromoCode.id.asc())
            .all()
        )

        clicks = _events(ReferralEventType.CLICK)
        purchases = _events(ReferralEventType.PURCHASE)
        balance = money2(affiliate.balance or 0)
        threshold = money2(affiliate.payout_threshold or self.config.min_payout_threshold)

        return {
            "affiliate_id": affiliate.id,
            "status": affiliate.status,
            "commission_rate": money2(affiliate.commission_rate or 0),
            "balance": balance,
            "total_paid": money2(affiliate.total_paid or 0),
            "total_earned": _sum(*CommissionStatus),
            "pending_commissions": _sum(CommissionStatus.PENDING),
            "approved_commissions": _sum(CommissionStatus.APPROVED),
            "processing_commissions": _sum(CommissionStatus.PROCESSING),
            "eligible_for_payout": money2(sum(
                (money2(c.amount) for c in self.eligible_commissions(affiliate, now)),
                Decimal("0"),
            )),
            "clicks": clicks,
            "signups": _events(ReferralEventType.SIGNUP),
            "purchases": purchases,
            "conversion_rate": round(purchases * 100.0 / clicks, 2) if clicks else 0.0,
            "payout_threshold": threshold,
            "can_request_payout": affiliate.status == AffiliateStatus.APPROVED and balance >= threshold,
            "codes": [c.code for c in codes if c.is_active],
        }

    # -------------------------------------------------
    # Analytics (admin)
    # -------------------------------------------------
    def program_analytics(
        self,
        period: str = "30d",
        affiliate_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        if period not in ANALYTICS_PERIODS:
            raise ValidationError(
                f"Invalid period. Must be one of: {', '.join(ANALYTICS_PERIODS)}",
                reason="INVALID_PERIOD",
            )
        now = as_utc(now) or datetime.now(timezone.utc)
        days = ANALYTICS_PERIODS[period]
        since = now - timedelta(days=days) if days is not None else None

        # query separate per tabella: un join unico moltiplicherebbe le righe
        affiliates_q = self.db.query(Affiliate)
        if affiliate_id is not None:
            affiliates_q = affiliates_q.filter(Affiliate.id == affiliate_id)
        affiliates = affiliates_q.all()

        def _commissions(*columns):
            q = self.db.query(*columns)
            if affiliate_id is not None:
                q = q.filter(Commission.affiliate_id == affiliate_id)
            if since is not None:
                q = q.filter(Commission.created_at >= since)
            return q

        def _events(*columns):
            q = (
                self.db.query(*columns)
                .select_from(ReferralEvent)
                .join(PromoCode, ReferralEvent.code_id == PromoCode.id)
            )
            q = q.filter(PromoCode.affiliate_id.isnot(None))
            if affiliate_id is not None:
                q = q.filter(PromoCode.affiliate_id == affiliate_id)
            if since is not None:
                q = q.filter(ReferralEvent.created_at >= since)
            return q

        commission_count = _commissions(func.count(Commission.id)).scalar() or 0
        paid = _commissions(func.coalesce(func.sum(Commission.amount), 0)).filter(
            Commission.status == CommissionStatus.PAID
        ).scalar()
        unpaid = _commissions(func.coalesce(func.sum(Commission.amount), 0)).filter(
            Commission.status != CommissionStatus.PAID
        ).scalar()

        counts = dict(
            _events(ReferralEvent.event_type, func.count(ReferralEvent.id))
            .group_by(ReferralEvent.event_type)
            .all()
        )
        clicks = counts.get(ReferralEventType.CLICK, 0)
        signups = counts.get(ReferralEventType.SIGNUP, 0)
        purchases = counts.get(ReferralEventType.PURCHASE, 0)
        revenue = _events(func.coalesce(func.sum(ReferralEvent.conversion_value), 0)).filter(
            ReferralEvent.event_type == ReferralEventType.PURCHASE
        ).scalar()

        def _rate(part: int, whole: int) -> float:
            return round(part * 100.0 / whole, 2) if whole else 0.0

        return {
            "period": period,
            "overview": {
                "total_affiliates": len(affiliates),
                "active_affiliates": sum(1 for a in affiliates if a.status == AffiliateStatus.APPROVED),
                "pending_affiliates": sum(1 for a in affiliates if a.status == AffiliateStatus.PENDING),
                "unpaid_balance": money2(sum((money2(a.balance or 0) for a in affiliates), Decimal("0"))),
                "total_paid_out": money2(sum((money2(a.total_paid or 0) for a in affiliates), Decimal("0"))),
                "total_commissions": commission_count,
                "commissions_paid": money2(paid or 0),
                "commissions_pending": money2(unpaid or 0),
                "clicks": clicks,
                "signups": signups,
                "purchases": purchases,
                "revenue": money2(revenue or 0),
            },
            "conversion_rates": {
                "click_to_signup": _rate(signups, clicks),
                "signup_to_purchase": _rate(purchases, signups),
                "click_to_purchase": _rate(purchases, clicks),
            },
            "top_affiliates": self._top_affiliates(affiliates, since),
        }

    def _top_affiliates(
        self, affiliates: List[Affiliate], since: Optional[datetime], limit: int = 10
    ) -> List[Dict[str, Any]]:
        approved = {a.id: a for a in affiliates if a.status == AffiliateStatus.APPROVED}
        if not approved:
            return []

        events_q = (
            self.db.query(
                PromoCode.affiliate_id,
                ReferralEvent.event_type,
                func.count(ReferralEvent.id),
                func.coalesce(func.sum(ReferralEvent.conversion_value), 0),
            )
            .select_from(ReferralEvent)
            .join(PromoCode, ReferralEvent.code_id == PromoCode.id)
            .filter(PromoCode.affiliate_id.in_(list(approved)))
            .filter(ReferralEvent.event_type.in_([ReferralEventType.CLICK, ReferralEventType.PURCHASE]))
        )
        if since is not None:
            events_q = events_q.filter(ReferralEvent.created_at >= since)

        stats: Dict[int, Dict[str, Any]] = {
            a_id: {"clicks": 0, "conversions": 0, "revenue": Decimal("0.00")} for a_id in approved
        }
        for a_id, event_type, count, value in events_q.group_by(PromoCode.affiliate_id, ReferralEvent.event_type):
            if event_type == ReferralEventType.CLICK:
                stats[a_id]["clicks"] = count
            else:
                stats[a_id]["conversions"] = count
                stats[a_id]["revenue"] = money2(value or 0)

        codes: Dict[int, str] = {}
        for a_id, code in (
            self.db.query(PromoCode.affiliate_id, PromoCode.code)
            .filter(PromoCode.affiliate_id.in_(list(approved)))
            .filter(PromoCode.kind == PromoCodeKind.AFFILIATE)
            .order_by(PromoCode.id.asc())
        ):
            codes.setdefault(a_id, code)

        owners = {
            u.id: u for u in self.db.query(User).filter(User.id.in_([a.user_id for a in approved.values()]))
        }

        ranked = sorted(approved.values(), key=lambda a: (-stats[a.id]["revenue"], a.id))[:limit]
        top = []
        for affiliate in ranked:
            owner = owners.get(affiliate.user_id)
            top.append({
                "affiliate_id": affiliate.id,
                "name": (owner.name or owner.email) if owner is not None else None,
                "code": codes.get(affiliate.id),
                "commission_rate": money2(affiliate.commission_rate or 0),
                "clicks": stats[affiliate.id]["clicks"],
                "conversions": stats[affiliate.id]["conversions"],
                "revenue_generated": stats[affiliate.id]["revenue"],
                "commissions_paid": money2(affiliate.total_paid or 0),
            })
        return top
