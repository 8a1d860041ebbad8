# routers/affiliates.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from app.attribution_service import COOKIE_NAME, AttributionResolver
from app.commission_service import CommissionLedger
from app.config import EngineConfig
from app.db import get_db
from app.deps import get_current_affiliate, get_current_user, get_engine_config, get_optional_user
from app.errors import ConflictError, ValidationError
from models.affiliate_payouts import AffiliatePayout, PayoutMethod
from models.affiliates import Affiliate
from models.users import User
from schemas.affiliates import (
    AffiliateApplyRequest,
    AffiliateDashboard,
    AffiliateOut,
    PayoutOut,
    PayoutRequest,
    RegenerateCodeOut,
)

router = APIRouter(prefix="/affiliate", tags=["Affiliate"])


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# -------------------------------------------------
# Tracking (pubblico)
# -------------------------------------------------
@router.get("/track/{code}")
def track_click(
    code: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: Optional[User] = Depends(get_optional_user),
):
    click = AttributionResolver(db, config).track_click(
        code,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        referrer=request.headers.get("referer"),
        user_id=current_user.id if current_user else None,
    )
    db.commit()

    response.set_cookie(
        key=COOKIE_NAME,
        value=click.cookie_value,
        max_age=click.max_age,
        httponly=True,
        samesite="lax",
    )
    return {"success": True, "code_id": click.code_id, "session_id": click.session_id}


@router.post("/track-signup")
def track_signup(
    request: Request,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: User = Depends(get_current_user),
):
    code_id = AttributionResolver(db, config).track_signup(
        current_user.id,
        request.cookies.get(COOKIE_NAME),
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    db.commit()
    return {"success": True, "attributed": code_id is not None}


# -------------------------------------------------
# Candidatura
# -------------------------------------------------
@router.post("/apply", response_model=AffiliateOut)
def apply(
    payload: AffiliateApplyRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: User = Depends(get_current_user),
):
    if not config.affiliates_enabled:
        raise ConflictError("Affiliate feature is disabled", reason="FEATURE_DISABLED")
    affiliate = CommissionLedger(db, config).apply(current_user, payload.website, payload.promotion_plan)
    db.commit()
    db.refresh(affiliate)
    return affiliate


# -------------------------------------------------
# Dashboard / payout (affiliato approvato)
# -------------------------------------------------
@router.get("/dashboard", response_model=AffiliateDashboard)
def dashboard(
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    affiliate: Affiliate = Depends(get_current_affiliate),
):
    return CommissionLedger(db, config).affiliate_summary(affiliate)


@router.post("/regenerate-code", response_model=RegenerateCodeOut)
def regenerate_code(
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    affiliate: Affiliate = Depends(get_current_affiliate),
):
    code = CommissionLedger(db, config).regenerate_code(affiliate)
    db.commit()
    return {"success": True, "new_code": code.code}


@router.post("/payouts", response_model=PayoutOut)
def request_payout(
    payload: PayoutRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    affiliate: Affiliate = Depends(get_current_affiliate),
):
    try:
        method = PayoutMethod(payload.payment_method)
    except ValueError:
        raise ValidationError("Invalid payment method", reason="INVALID_PAYMENT_METHOD")

    if method == PayoutMethod.STRIPE:
        if not payload.stripe_email:
            raise ValidationError("Stripe email is required", reason="PAYMENT_INFO_REQUIRED")
        info = {"full_name": payload.full_name, "stripe_email": payload.stripe_email}
    else:
        if not (payload.account_holder_name and payload.account_number and payload.sort_code):
            raise ValidationError("Bank account details are required", reason="PAYMENT_INFO_REQUIRED")
        info = {
            "account_holder_name": payload.account_holder_name,
            "bank_name": payload.bank_name,
            "account_number": payload.account_number,
            "sort_code": payload.sort_code,
        }

    payout = CommissionLedger(db, config).request_payout(affiliate, method, info)
    db.commit()
    db.refresh(payout)
    return payout


@router.get("/payouts", response_model=List[PayoutOut])
def my_payouts(
    db: Session = Depends(get_db),
    affiliate: Affiliate = Depends(get_current_affiliate),
):
    return (
        db.query(AffiliatePayout)
        .filter(AffiliatePayout.affiliate_id == affiliate.id)
        .order_by(AffiliatePayout.requested_at.desc(), AffiliatePayout.id.desc())
        .all()
    )
