# models/referral_events.py

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, event
import enum

from models import Base


class ReferralEventType(str, enum.Enum):
    CLICK = "click"
    SIGNUP = "signup"
    PURCHASE = "purchase"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReferralEvent(Base):
    """Log append-only: click / signup / purchase. Mai modificato dopo l'insert."""

    __tablename__ = "referral_events"

    id = Column(Integer, primary_key=True, index=True)

    code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)

    event_type = Column(Enum(ReferralEventType), nullable=False)

    session_id = Column(String(64), nullable=True)

    # hash (privacy)
    ip_hash = Column(String(32), nullable=True)
    user_agent_hash = Column(String(32), nullable=True)
    referrer_url = Column(String(500), nullable=True)

    conversion_value = Column(Numeric(10, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


@event.listens_for(ReferralEvent, "before_update")
def _referral_events_are_append_only(mapper, connection, target):
    raise RuntimeError("referral_events is append-only")
