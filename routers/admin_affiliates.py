# routers/admin_affiliates.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.commission_service import AffiliateSettingsPatch, CommissionLedger
from app.config import EngineConfig
from app.db import get_db
from app.deps import get_current_admin, get_engine_config
from app.email_service import send_affiliate_approved_email
from app.errors import NotFoundError, ValidationError
from app.promo_service import PromoCodePatch, create_discount_code, update_promo_code
from models.affiliate_payouts import AffiliatePayout, PayoutStatus
from models.affiliates import Affiliate, AffiliateStatus
from models.promo_codes import PromoCode, PromoCodeKind
from models.users import User
from schemas.affiliates import (
    AffiliateAnalytics,
    AffiliateOut,
    AffiliateSettingsRequest,
    ApproveAffiliateRequest,
    DenyAffiliateRequest,
    DiscountCodeCreate,
    PayoutOut,
    ProcessPayoutRequest,
    PromoCodeOut,
    PromoCodeUpdate,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/affiliates",
    tags=["Admin Affiliates"],
)


def _get_affiliate(db: Session, affiliate_id: int) -> Affiliate:
    affiliate = db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()
    if not affiliate:
        raise NotFoundError("Affiliate not found", reason="NOT_FOUND")
    return affiliate


# ---------------------------------------------------------
# AFFILIATI
# ---------------------------------------------------------
@router.get("", response_model=List[AffiliateOut])
def list_affiliates(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    q = db.query(Affiliate)
    if status:
        try:
            q = q.filter(Affiliate.status == AffiliateStatus(status))
        except ValueError:
            raise ValidationError(f"Invalid status: {status}", reason="INVALID_STATUS")
    return q.order_by(Affiliate.created_at.desc(), Affiliate.id.desc()).all()


@router.get("/analytics", response_model=AffiliateAnalytics)
def analytics(
    period: str = "30d",
    affiliate_id: Optional[int] = None,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    return CommissionLedger(db, config).program_analytics(period, affiliate_id)


@router.post("/{affiliate_id}/approve", response_model=PromoCodeOut)
def approve_affiliate(
    affiliate_id: int,
    payload: ApproveAffiliateRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    affiliate = _get_affiliate(db, affiliate_id)
    code = CommissionLedger(db, config).approve_affiliate(affiliate, payload.commission_rate, payload.admin_notes)
    db.commit()
    db.refresh(code)

    # email best effort
    try:
        owner = db.query(User).filter(User.id == affiliate.user_id).first()
        if owner is not None:
            send_affiliate_approved_email(owner.email, code.code, affiliate.commission_rate, owner.name)
    except Exception:
        logger.exception("Affiliate approved email failed for affiliate %s", affiliate.id)

    return code


@router.post("/{affiliate_id}/deny", response_model=AffiliateOut)
def deny_affiliate(
    affiliate_id: int,
    payload: DenyAffiliateRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    affiliate = CommissionLedger(db, config).deny_affiliate(_get_affiliate(db, affiliate_id), payload.reason)
    db.commit()
    db.refresh(affiliate)
    return affiliate


@router.patch("/{affiliate_id}/settings", response_model=AffiliateOut)
def update_settings(
    affiliate_id: int,
    payload: AffiliateSettingsRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    try:
        status = AffiliateStatus(payload.status) if payload.status is not None else None
    except ValueError:
        raise ValidationError("Invalid status. Must be approved or suspended", reason="INVALID_STATUS")

    affiliate = CommissionLedger(db, config).update_affiliate_settings(
        _get_affiliate(db, affiliate_id),
        AffiliateSettingsPatch(
            commission_rate=payload.commission_rate,
            payout_threshold=payload.payout_threshold,
            status=status,
            admin_notes=payload.admin_notes,
        ),
    )
    db.commit()
    db.refresh(affiliate)
    return affiliate


# ---------------------------------------------------------
# CODICI SCONTO
# ---------------------------------------------------------
@router.get("/discount-codes", response_model=List[PromoCodeOut])
def list_discount_codes(
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    return (
        db.query(PromoCode)
        .filter(PromoCode.kind == PromoCodeKind.DISCOUNT)
        .order_by(PromoCode.created_at.desc(), PromoCode.id.desc())
        .all()
    )


@router.post("/discount-codes", response_model=PromoCodeOut)
def create_code(
    payload: DiscountCodeCreate,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    promo = create_discount_code(db, **payload.model_dump())
    db.commit()
    db.refresh(promo)
    return promo


@router.patch("/promo-codes/{code_id}", response_model=PromoCodeOut)
def update_code(
    code_id: int,
    payload: PromoCodeUpdate,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    promo = db.query(PromoCode).filter(PromoCode.id == code_id).first()
    if not promo:
        raise NotFoundError("Promo code not found", reason="NOT_FOUND")
    promo = update_promo_code(db, promo, PromoCodePatch(**payload.model_dump()))
    db.commit()
    db.refresh(promo)
    return promo


# ---------------------------------------------------------
# PAYOUTS
# ---------------------------------------------------------
@router.get("/payouts", response_model=List[PayoutOut])
def list_payouts(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    q = db.query(AffiliatePayout)
    if status:
        try:
            q = q.filter(AffiliatePayout.status == PayoutStatus(status))
        except ValueError:
            raise ValidationError(f"Invalid status: {status}", reason="INVALID_STATUS")
    return q.order_by(AffiliatePayout.requested_at.desc(), AffiliatePayout.id.desc()).all()


@router.post("/payouts/{payout_id}/process", response_model=PayoutOut)
def process_payout(
    payout_id: int,
    payload: ProcessPayoutRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin: User = Depends(get_current_admin),
):
    payout = db.query(AffiliatePayout).filter(AffiliatePayout.id == payout_id).first()
    if not payout:
        raise NotFoundError("Payout not found", reason="NOT_FOUND")

    payout = CommissionLedger(db, config).process_payout(
        payout,
        payload.action,
        admin_id=admin.id,
        transaction_id=payload.transaction_id,
        notes=payload.processing_notes,
    )
    db.commit()
    db.refresh(payout)
    return payout
