from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.commission_service import AffiliateSettingsPatch, CommissionLedger
from app.config import CommissionBasis
from app.errors import AuthorizationError, ConflictError, RateLimitError, Rejection, RejectionReason, ValidationError
from app.promo_service import PromoCodeValidator, as_utc
from models.affiliate_payouts import AffiliatePayout, PayoutMethod, PayoutStatus
from models.affiliates import Affiliate, AffiliateStatus
from models.commissions import Commission, CommissionStatus
from models.promo_codes import PromoCode, PromoCodeKind
from models.referral_events import ReferralEvent, ReferralEventType


def _balance(db, affiliate_id):
    db.expire_all()
    return db.get(Affiliate, affiliate_id).balance


def test_basis_pre_and_post_discount(db, config):
    post = CommissionLedger(db, config)
    pre = CommissionLedger(db, config.model_copy(update={"commission_basis": CommissionBasis.PRE_DISCOUNT}))

    assert post.basis_for("199.99", "20.00") == Decimal("179.99")
    assert pre.basis_for("199.99", "20.00") == Decimal("199.99")
    assert post.compute_amount(Decimal("179.99"), Decimal("10")) == Decimal("18.00")


def test_record_is_idempotent_and_credits_once(db, config, make_affiliate, make_order):
    affiliate = make_affiliate(rate="10")
    order = make_order()
    ledger = CommissionLedger(db, config)

    for _ in range(3):
        commission = ledger.record_commission(affiliate.id, order.id, None, "199.99", "20.00")
        ledger.approve_commission(commission)
        db.commit()

    assert db.query(Commission).count() == 1
    commission = db.query(Commission).one()
    assert commission.status == CommissionStatus.APPROVED
    assert commission.amount == Decimal("18.00")
    assert _balance(db, affiliate.id) == Decimal("18.00")


def test_zero_rate_is_respected(db, config, make_affiliate, make_order):
    affiliate = make_affiliate(rate="0", with_code=False)
    commission = CommissionLedger(db, config).record_commission(affiliate.id, make_order().id, None, "100.00")
    assert commission.amount == Decimal("0.00")
    assert commission.rate == Decimal("0.00")


def test_unapproved_affiliate_earns_nothing(db, config, make_affiliate, make_order):
    affiliate = make_affiliate(status=AffiliateStatus.SUSPENDED)
    assert CommissionLedger(db, config).record_commission(affiliate.id, make_order().id, None, "100") is None
    assert db.query(Commission).count() == 0


def test_status_never_regresses(db, config, make_affiliate, make_order):
    affiliate = make_affiliate()
    ledger = CommissionLedger(db, config)
    commission = ledger.record_commission(affiliate.id, make_order().id, None, "100")
    ledger.approve_commission(commission)
    db.commit()

    db.refresh(commission)
    with pytest.raises(ConflictError):
        ledger._advance(commission, CommissionStatus.PENDING)


def test_approved_amount_is_frozen(db, config, make_affiliate, make_order):
    affiliate = make_affiliate(rate="10")
    order = make_order()
    ledger = CommissionLedger(db, config)
    commission = ledger.record_commission(affiliate.id, order.id, None, "100")
    ledger.approve_commission(commission)
    db.commit()

    affiliate.commission_rate = Decimal("20")
    db.commit()
    again = ledger.record_commission(affiliate.id, order.id, None, "100")
    assert again.amount == Decimal("10.00")
    assert _balance(db, affiliate.id) == Decimal("10.00")


# -------------------------------------------------
# Payouts
# -------------------------------------------------
def _approved_commissions(db, config, affiliate, make_order, amounts, age_days=20):
    ledger = CommissionLedger(db, config)
    created = datetime.now(timezone.utc) - timedelta(days=age_days)
    for amount in amounts:
        commission = ledger.record_commission(affiliate.id, make_order().id, None, amount)
        commission.created_at = created
        ledger.approve_commission(commission)
    db.commit()
    return ledger


def test_payout_below_threshold(db, config, make_affiliate, make_order):
    affiliate = make_affiliate(rate="10")
    ledger = _approved_commissions(db, config, affiliate, make_order, ["50.00"])
    db.refresh(affiliate)
    with pytest.raises(ValidationError) as exc:
        ledger.request_payout(affiliate)
    assert exc.value.reason == "BELOW_PAYOUT_THRESHOLD"


def test_payout_only_takes_aged_commissions(db, config, make_affiliate, make_order):
    affiliate = make_affiliate(rate="10")
    ledger = _approved_commissions(db, config, affiliate, make_order, ["200.00"], age_days=2)
    db.refresh(affiliate)
    with pytest.raises(ValidationError) as exc:
        ledger.request_payout(affiliate)
    assert exc.value.reason == "NO_ELIGIBLE_COMMISSIONS"


def test_payout_approve_flow(db, config, make_affiliate, make_order):
    affiliate = make_affiliate(rate="10")
    ledger = _approved_commissions(db, config, affiliate, make_order, ["100.00", "150.00"])
    db.refresh(affiliate)
    assert affiliate.balance == Decimal("25.00")

    payout = ledger.request_payout(
        affiliate,
        PayoutMethod.BANK_TRANSFER,
        {"account_holder_name": "A", "account_number": "12345678", "sort_code": "00-00-00"},
    )
    db.commit()

    assert payout.amount == Decimal("25.00")
    assert payout.payment_info["account_number"] == "5678"
    assert _balance(db, affiliate.id) == Decimal("0.00")
    assert {c.status for c in db.query(Commission)} == {CommissionStatus.PROCESSING}

    ledger.process_payout(payout, "approve", transaction_id="tx_1")
    db.commit()

    db.expire_all()
    affiliate = db.get(Affiliate, affiliate.id)
    assert affiliate.total_paid == Decimal("25.00")
    assert affiliate.balance == Decimal("0.00")
    assert {c.status for c in db.query(Commission)} == {CommissionStatus.PAID}
    assert db.get(AffiliatePayout, payout.id).status == PayoutStatus.PAID

    with pytest.raises(ConflictError):
        ledger.process_payout(db.get(AffiliatePayout, payout.id), "approve")


def test_payout_reject_restores_balance(db, config, make_affiliate, make_order):
    affiliate = make_affiliate(rate="10")
    ledger = _approved_commissions(db, config, affiliate, make_order, ["120.00"])
    db.refresh(affiliate)

    payout = ledger.request_payout(affiliate)
    db.commit()
    ledger.process_payout(payout, "reject", notes="wrong details")
    db.commit()

    assert _balance(db, affiliate.id) == Decimal("12.00")
    commission = db.query(Commission).one()
    assert commission.payout_id is None
    # di nuovo prelevabile
    affiliate = db.get(Affiliate, affiliate.id)
    assert [c.id for c in ledger.eligible_commissions(affiliate)] == [commission.id]


# -------------------------------------------------
# Gestione affiliati
# -------------------------------------------------
def test_apply_approve_deny(db, config, make_user):
    ledger = CommissionLedger(db, config)
    user = make_user(name="Mario")
    affiliate = ledger.apply(user, website="https://example.com")
    db.commit()
    assert affiliate.status == AffiliateStatus.PENDING

    with pytest.raises(ConflictError):
        ledger.apply(user)

    code = ledger.approve_affiliate(affiliate, Decimal("15"))
    db.commit()
    assert affiliate.status == AffiliateStatus.APPROVED
    assert code.kind == PromoCodeKind.AFFILIATE
    assert code.code.startswith("SONG")
    assert code.discount_value == Decimal("15.00")
    assert code.name == "Mario's Affiliate Code"

    with pytest.raises(ConflictError):
        ledger.approve_affiliate(affiliate)

    other = ledger.apply(make_user())
    with pytest.raises(ValidationError):
        ledger.deny_affiliate(other, "too short")
    ledger.deny_affiliate(other, "Website does not match our audience")
    assert other.status == AffiliateStatus.DENIED
    assert db.query(PromoCode).filter(PromoCode.affiliate_id == other.id).count() == 0


def test_approve_rejects_rate_over_50(db, config, make_user):
    ledger = CommissionLedger(db, config)
    affiliate = ledger.apply(make_user())
    with pytest.raises(ValidationError):
        ledger.approve_affiliate(affiliate, 60)


def test_denied_affiliate_reapplies_after_cooldown(db, config, make_user):
    ledger = CommissionLedger(db, config)
    user = make_user()
    affiliate = ledger.apply(user, website="https://first.example.com")
    ledger.deny_affiliate(affiliate, "Website does not match our audience")
    db.commit()

    allowed_from = as_utc(affiliate.next_allowed_application_date)
    assert (allowed_from - datetime.now(timezone.utc)).days in (29, 30)

    with pytest.raises(ValidationError) as exc:
        ledger.apply(user)
    assert exc.value.reason == "REAPPLY_TOO_SOON"
    assert exc.value.message == f"You can reapply on {allowed_from.date().isoformat()}"

    again = ledger.apply(user, website="https://second.example.com", now=allowed_from + timedelta(days=1))
    db.commit()

    assert again.id == affiliate.id
    assert again.status == AffiliateStatus.PENDING
    assert again.website == "https://second.example.com"
    assert again.admin_notes is None
    assert again.next_allowed_application_date is None
    assert db.query(Affiliate).filter(Affiliate.user_id == user.id).count() == 1

    # di nuovo pending: nessuna seconda candidatura
    with pytest.raises(ConflictError):
        ledger.apply(user)


def test_regenerate_code_once_per_day(db, config, make_affiliate):
    affiliate = make_affiliate(code="SONGOLD01")
    ledger = CommissionLedger(db, config)
    validator = PromoCodeValidator(db, config)
    now = datetime.now(timezone.utc)

    code = ledger.regenerate_code(affiliate, now=now)
    db.commit()
    code_id, new_code = code.id, code.code

    assert new_code.startswith("SONG") and new_code != "SONGOLD01"
    assert validator.validate("SONGOLD01", None, "100").reason == RejectionReason.NOT_FOUND
    assert not isinstance(validator.validate(new_code, None, "100"), Rejection)

    with pytest.raises(RateLimitError) as exc:
        ledger.regenerate_code(affiliate, now=now + timedelta(hours=23))
    assert exc.value.status_code == 429
    assert exc.value.message == "Code regeneration is limited to once per day. Try again in 1 hours."
    db.rollback()

    later = ledger.regenerate_code(affiliate, now=now + timedelta(hours=25))
    db.commit()
    assert later.id == code_id
    assert later.code != new_code
    assert db.query(PromoCode).filter(PromoCode.affiliate_id == affiliate.id).count() == 1


def test_regenerate_code_requires_approved_affiliate(db, config, make_affiliate):
    affiliate = make_affiliate(status=AffiliateStatus.SUSPENDED, code="SONGSUSP1")
    with pytest.raises(AuthorizationError):
        CommissionLedger(db, config).regenerate_code(affiliate)
    assert db.query(PromoCode).filter(PromoCode.code == "SONGSUSP1").count() == 1


def test_update_settings(db, config, make_affiliate):
    affiliate = make_affiliate()
    ledger = CommissionLedger(db, config)

    with pytest.raises(ValidationError):
        ledger.update_affiliate_settings(affiliate, AffiliateSettingsPatch())
    with pytest.raises(ValidationError):
        ledger.update_affiliate_settings(affiliate, AffiliateSettingsPatch(payout_threshold=Decimal("5")))
    with pytest.raises(ValidationError):
        ledger.update_affiliate_settings(affiliate, AffiliateSettingsPatch(status=AffiliateStatus.DENIED))

    ledger.update_affiliate_settings(
        affiliate,
        AffiliateSettingsPatch(commission_rate=Decimal("12.5"), status=AffiliateStatus.SUSPENDED),
    )
    db.commit()
    assert affiliate.commission_rate == Decimal("12.50")
    assert affiliate.status == AffiliateStatus.SUSPENDED


def test_summary(db, config, make_affiliate, make_order):
    affiliate = make_affiliate(rate="10")
    ledger = _approved_commissions(db, config, affiliate, make_order, ["100.00", "100.00"])
    ledger.record_commission(affiliate.id, make_order().id, None, "50.00")
    db.commit()
    db.refresh(affiliate)

    summary = ledger.affiliate_summary(affiliate)
    assert summary["balance"] == Decimal("20.00")
    assert summary["approved_commissions"] == Decimal("20.00")
    assert summary["pending_commissions"] == Decimal("5.00")
    assert summary["total_earned"] == Decimal("25.00")
    assert summary["eligible_for_payout"] == Decimal("20.00")
    assert summary["can_request_payout"] is True
    assert len(summary["codes"]) == 1


# -------------------------------------------------
# Analytics
# -------------------------------------------------
def _event(db, code, event_type, value=None, days_ago=0):
    promo = db.query(PromoCode).filter(PromoCode.code == code).one()
    db.add(
        ReferralEvent(
            code_id=promo.id,
            event_type=event_type,
            conversion_value=Decimal(value) if value else None,
            created_at=datetime.now(timezone.utc) - timedelta(days=days_ago),
        )
    )


def _commission(db, affiliate, order, amount, status):
    db.add(
        Commission(
            affiliate_id=affiliate.id,
            order_id=order.id,
            amount=Decimal(amount),
            rate=affiliate.commission_rate,
            order_total=order.total_price,
            status=status,
        )
    )


def test_program_analytics(db, config, make_affiliate, make_order):
    star = make_affiliate(rate="10", code="SONGSTAR")
    quiet = make_affiliate(rate="5", code="SONGQUIET")
    make_affiliate(status=AffiliateStatus.PENDING, with_code=False)

    for _ in range(4):
        _event(db, "SONGSTAR", ReferralEventType.CLICK)
    _event(db, "SONGSTAR", ReferralEventType.CLICK, days_ago=60)
    _event(db, "SONGSTAR", ReferralEventType.SIGNUP)
    _event(db, "SONGSTAR", ReferralEventType.SIGNUP)
    _event(db, "SONGSTAR", ReferralEventType.PURCHASE, value="199.99")
    _event(db, "SONGQUIET", ReferralEventType.CLICK)
    _commission(db, star, make_order(), "20.00", CommissionStatus.PAID)
    _commission(db, quiet, make_order(), "5.00", CommissionStatus.PENDING)
    db.commit()

    ledger = CommissionLedger(db, config)
    report = ledger.program_analytics()

    overview = report["overview"]
    assert report["period"] == "30d"
    assert (overview["total_affiliates"], overview["active_affiliates"], overview["pending_affiliates"]) == (3, 2, 1)
    assert (overview["clicks"], overview["signups"], overview["purchases"]) == (5, 2, 1)
    assert overview["revenue"] == Decimal("199.99")
    assert overview["total_commissions"] == 2
    assert overview["commissions_paid"] == Decimal("20.00")
    assert overview["commissions_pending"] == Decimal("5.00")
    assert report["conversion_rates"] == {
        "click_to_signup": 40.0,
        "signup_to_purchase": 50.0,
        "click_to_purchase": 20.0,
    }

    top = report["top_affiliates"]
    assert [t["code"] for t in top] == ["SONGSTAR", "SONGQUIET"]
    assert (top[0]["clicks"], top[0]["conversions"]) == (4, 1)
    assert top[0]["revenue_generated"] == Decimal("199.99")

    assert ledger.program_analytics("all")["overview"]["clicks"] == 6

    only_quiet = ledger.program_analytics("7d", affiliate_id=quiet.id)
    assert only_quiet["overview"]["total_affiliates"] == 1
    assert only_quiet["overview"]["clicks"] == 1
    assert only_quiet["overview"]["commissions_pending"] == Decimal("5.00")
    assert [t["affiliate_id"] for t in only_quiet["top_affiliates"]] == [quiet.id]


def test_program_analytics_rejects_unknown_period(db, config):
    with pytest.raises(ValidationError) as exc:
        CommissionLedger(db, config).program_analytics("2w")
    assert exc.value.reason == "INVALID_PERIOD"


def test_program_analytics_empty(db, config):
    report = CommissionLedger(db, config).program_analytics("1y")
    assert report["overview"]["clicks"] == 0
    assert report["conversion_rates"]["click_to_purchase"] == 0.0
    assert report["top_affiliates"] == []
