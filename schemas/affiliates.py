from pydantic import BaseModel, EmailStr, Field
from decimal import Decimal
from datetime import datetime
from typing import Any, Dict, List, Optional

from models.affiliate_payouts import PayoutMethod, PayoutStatus
from models.affiliates import AffiliateStatus
from models.promo_codes import PromoCodeKind


class AffiliateApplyRequest(BaseModel):
    website: Optional[str] = None
    promotion_plan: Optional[str] = Field(default=None, max_length=1000)


class AffiliateOut(BaseModel):
    id: int
    user_id: int
    status: AffiliateStatus
    commission_rate: Decimal
    balance: Decimal
    total_paid: Decimal
    payout_threshold: Decimal
    website: Optional[str] = None
    admin_notes: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AffiliateDashboard(BaseModel):
    affiliate_id: int
    status: AffiliateStatus
    commission_rate: Decimal
    balance: Decimal
    total_paid: Decimal
    total_earned: Decimal
    pending_commissions: Decimal
    approved_commissions: Decimal
    processing_commissions: Decimal
    eligible_for_payout: Decimal
    clicks: int
    signups: int
    purchases: int
    conversion_rate: float
    payout_threshold: Decimal
    can_request_payout: bool
    codes: List[str] = []


class PayoutRequest(BaseModel):
    payment_method: str = "stripe"  # stripe | bank_transfer
    full_name: Optional[str] = None
    stripe_email: Optional[EmailStr] = None
    account_holder_name: Optional[str] = None
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    sort_code: Optional[str] = None


class PayoutOut(BaseModel):
    id: int
    affiliate_id: int
    amount: Decimal
    status: PayoutStatus
    payment_method: PayoutMethod
    payment_info: Optional[Dict[str, Any]] = None
    transaction_id: Optional[str] = None
    processing_notes: Optional[str] = None
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# --------- ADMIN ---------


class ApproveAffiliateRequest(BaseModel):
    commission_rate: Optional[Decimal] = None
    admin_notes: Optional[str] = None


class DenyAffiliateRequest(BaseModel):
    reason: str


class AffiliateSettingsRequest(BaseModel):
    commission_rate: Optional[Decimal] = None
    payout_threshold: Optional[Decimal] = None
    status: Optional[str] = None
    admin_notes: Optional[str] = None


class ProcessPayoutRequest(BaseModel):
    action: str  # approve | reject
    transaction_id: Optional[str] = None
    processing_notes: Optional[str] = None


class DiscountCodeCreate(BaseModel):
    code: str
    name: str
    discount_value: Decimal
    is_percentage: bool = True
    min_order_value: Decimal = Decimal("0")
    max_uses: int = 0
    max_uses_per_user: int = 1
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class PromoCodeUpdate(BaseModel):
    name: Optional[str] = None
    discount_value: Optional[Decimal] = None
    is_percentage: Optional[bool] = None
    min_order_value: Optional[Decimal] = None
    max_uses: Optional[int] = None
    max_uses_per_user: Optional[int] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None


class PromoCodeOut(BaseModel):
    id: int
    code: str
    name: Optional[str] = None
    kind: PromoCodeKind
    discount_value: Decimal
    is_percentage: bool
    min_order_value: Decimal
    max_uses: int
    max_uses_per_user: int
    current_uses: int
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool
    affiliate_id: Optional[int] = None

    class Config:
        from_attributes = True


class RegenerateCodeOut(BaseModel):
    success: bool = True
    new_code: str


class AnalyticsOverview(BaseModel):
    total_affiliates: int
    active_affiliates: int
    pending_affiliates: int
    unpaid_balance: Decimal
    total_paid_out: Decimal
    total_commissions: int
    commissions_paid: Decimal
    commissions_pending: Decimal
    clicks: int
    signups: int
    purchases: int
    revenue: Decimal


class ConversionRates(BaseModel):
    click_to_signup: float
    signup_to_purchase: float
    click_to_purchase: float


class TopAffiliate(BaseModel):
    affiliate_id: int
    name: Optional[str] = None
    code: Optional[str] = None
    commission_rate: Decimal
    clicks: int
    conversions: int
    revenue_generated: Decimal
    commissions_paid: Decimal


class AffiliateAnalytics(BaseModel):
    period: str
    overview: AnalyticsOverview
    conversion_rates: ConversionRates
    top_affiliates: List[TopAffiliate] = []
