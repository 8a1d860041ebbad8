from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.errors import ConflictError, Rejection, RejectionReason, ValidationError
from app.promo_service import (
    PromoCodePatch,
    PromoCodeValidator,
    calculate_pricing,
    create_discount_code,
    update_promo_code,
)
from models.affiliates import AffiliateStatus
from models.promo_codes import PromoCode, PromoCodeUsage


def test_welcome10_on_199_99(db, config, make_user, make_promo):
    make_promo("WELCOME10", 10, is_percentage=True)
    user = make_user()

    outcome = PromoCodeValidator(db, config).validate("WELCOME10", user.id, Decimal("199.99"))

    assert not isinstance(outcome, Rejection)
    assert outcome.discount_amount == Decimal("20.00")
    assert outcome.final_total == Decimal("179.99")
    assert outcome.discount_type == "percentage"


def test_save25_below_minimum(db, config, make_promo):
    make_promo("SAVE25", 25, is_percentage=False, min_order_value="100")

    outcome = PromoCodeValidator(db, config).validate("SAVE25", None, Decimal("40.00"))

    assert isinstance(outcome, Rejection)
    assert outcome.reason == RejectionReason.BELOW_MINIMUM
    assert outcome.to_error().status_code == 400


def test_code_lookup_is_case_insensitive(db, config, make_promo):
    make_promo("SUMMER15", 15)
    outcome = PromoCodeValidator(db, config).validate("  summer15 ", None, "100")
    assert not isinstance(outcome, Rejection)
    assert outcome.discount_amount == Decimal("15.00")


@pytest.mark.parametrize(
    "value,is_percentage,order_value",
    [
        ("50", False, "30.00"),
        ("100", True, "12.34"),
        ("0.01", False, "0.00"),
        ("33.33", True, "0.03"),
        ("5", False, "5.00"),
    ],
)
def test_discount_never_exceeds_order_value(value, is_percentage, order_value):
    discount = PromoCodeValidator.calculate_discount(Decimal(value), is_percentage, Decimal(order_value))
    assert Decimal("0") <= discount <= Decimal(order_value)
    assert Decimal(order_value) - discount >= 0


def test_fixed_discount_capped_at_order_value(db, config, make_promo):
    make_promo("BIGFIX", 50, is_percentage=False)
    outcome = PromoCodeValidator(db, config).validate("BIGFIX", None, "30.00")
    assert outcome.discount_amount == Decimal("30.00")
    assert outcome.final_total == Decimal("0.00")


def test_per_user_limit_regardless_of_order_value(db, config, make_user, make_promo, make_order):
    promo = make_promo("ONCE", 10, max_uses_per_user=1)
    user = make_user()
    order = make_order(user=user)
    validator = PromoCodeValidator(db, config)

    validator.record_usage(promo.id, user.id, order.id, Decimal("20.00"))
    db.commit()

    for value in ("10.00", "199.99", "5000.00"):
        outcome = validator.validate("ONCE", user.id, value)
        assert isinstance(outcome, Rejection)
        assert outcome.reason == RejectionReason.PER_USER_LIMIT_REACHED

    # altri utenti non sono toccati
    assert not isinstance(validator.validate("ONCE", make_user().id, "10.00"), Rejection)


def test_per_user_limit_rechecked_when_recording(db, config, make_user, make_promo, make_order):
    # due checkout paralleli dello stesso utente: entrambi validano prima di registrare
    promo = make_promo("ONCE", 10, max_uses_per_user=1)
    user = make_user()
    first, second = make_order(user=user), make_order(user=user)
    validator = PromoCodeValidator(db, config)

    assert not isinstance(validator.validate("ONCE", user.id, "100.00"), Rejection)
    assert not isinstance(validator.validate("ONCE", user.id, "100.00"), Rejection)

    validator.record_usage(promo.id, user.id, first.id, Decimal("10.00"))
    db.commit()

    with pytest.raises(ConflictError) as exc:
        validator.record_usage(promo.id, user.id, second.id, Decimal("10.00"))
    assert exc.value.reason == "PER_USER_LIMIT_REACHED"
    db.rollback()

    db.refresh(promo)
    assert promo.current_uses == 1
    assert db.query(PromoCodeUsage).filter(PromoCodeUsage.user_id == user.id).count() == 1


def test_global_cap_guards_the_counter(db, config, make_user, make_promo, make_order):
    promo = make_promo("LIMITED", 10, max_uses=1)
    validator = PromoCodeValidator(db, config)
    first, second = make_order(), make_order()

    validator.record_usage(promo.id, first.user_id, first.id, Decimal("1.00"))
    db.commit()

    with pytest.raises(ConflictError) as exc:
        validator.record_usage(promo.id, second.user_id, second.id, Decimal("1.00"))
    assert exc.value.reason == "USAGE_LIMIT_REACHED"
    db.rollback()

    db.refresh(promo)
    assert promo.current_uses == 1
    outcome = validator.validate("LIMITED", make_user().id, "50.00")
    assert outcome.reason == RejectionReason.USAGE_LIMIT_REACHED


def test_validate_does_not_consume_uses(db, config, make_promo):
    promo = make_promo("PEEK", 10, max_uses=1)
    validator = PromoCodeValidator(db, config)
    for _ in range(3):
        assert not isinstance(validator.validate("PEEK", None, "50"), Rejection)
    db.refresh(promo)
    assert promo.current_uses == 0


def test_validity_window(db, config, make_promo):
    now = datetime.now(timezone.utc)
    make_promo("OLD", 10, expires_at=now - timedelta(days=1))
    make_promo("FUTURE", 10, starts_at=now + timedelta(days=1))
    make_promo("OFF", 10, is_active=False)
    validator = PromoCodeValidator(db, config)

    assert validator.validate("OLD", None, "50").reason == RejectionReason.EXPIRED
    assert validator.validate("FUTURE", None, "50").reason == RejectionReason.NOT_YET_ACTIVE
    assert validator.validate("OFF", None, "50").reason == RejectionReason.INACTIVE
    assert validator.validate("NOPE", None, "50").reason == RejectionReason.NOT_FOUND

    rejection = validator.validate("OLD", None, "50")
    assert rejection.message == "This promo code has expired"


def test_feature_flag_disables_discounts(db, config, make_promo):
    make_promo("WELCOME10", 10)
    disabled = config.model_copy(update={"discounts_enabled": False})
    outcome = PromoCodeValidator(db, disabled).validate("WELCOME10", None, "100")
    assert outcome.reason == RejectionReason.FEATURE_DISABLED


def test_affiliate_code_self_referral_and_suspension(db, config, make_user, make_affiliate):
    owner = make_user()
    affiliate = make_affiliate(user=owner, code="SONGSELF")
    validator = PromoCodeValidator(db, config)

    assert validator.validate("SONGSELF", owner.id, "100").reason == RejectionReason.SELF_REFERRAL
    assert validator.validate("SONGSELF", owner.id, "100").to_error().status_code == 403
    assert not isinstance(validator.validate("SONGSELF", make_user().id, "100"), Rejection)

    affiliate.status = AffiliateStatus.SUSPENDED
    db.commit()
    assert validator.validate("SONGSELF", make_user().id, "100").reason == RejectionReason.INACTIVE


def test_preview_shape(db, config, make_promo):
    make_promo("WELCOME10", 10, name="Welcome offer")
    preview = PromoCodeValidator(db, config).preview("welcome10", "199.99")
    assert preview == {
        "original_total": Decimal("199.99"),
        "discount_code": "WELCOME10",
        "discount_name": "Welcome offer",
        "discount_amount": Decimal("20.00"),
        "discount_type": "percentage",
        "discount_value": Decimal("10.00"),
        "final_total": Decimal("179.99"),
    }


def test_calculate_pricing():
    pricing = calculate_pricing("Signature", ["streaming", "expedited", "streaming"])
    assert pricing["package_price"] == Decimal("199.99")
    assert [a["addon_type"] for a in pricing["addons"]] == ["streaming", "expedited"]
    assert pricing["subtotal"] == Decimal("264.97")

    with pytest.raises(ValidationError):
        calculate_pricing("platinum")
    with pytest.raises(ValidationError):
        calculate_pricing("essential", ["karaoke"])


def test_discount_code_admin(db):
    promo = create_discount_code(db, "spring20", "Spring sale", "20", max_uses=100)
    db.commit()
    assert promo.code == "SPRING20"
    assert promo.max_uses_per_user == 1

    with pytest.raises(ConflictError):
        create_discount_code(db, "SPRING20", "Again", "5")
    db.rollback()

    with pytest.raises(ValidationError):
        create_discount_code(db, "HUGE", "Too much", "150", is_percentage=True)
    db.rollback()

    update_promo_code(db, promo, PromoCodePatch(discount_value=Decimal("25"), is_active=False))
    db.commit()
    refreshed = db.query(PromoCode).filter(PromoCode.code == "SPRING20").first()
    assert refreshed.discount_value == Decimal("25.00")
    assert refreshed.is_active is False
