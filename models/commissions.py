from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    Numeric,
    DateTime,
    Enum,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from models import Base


class CommissionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    PAID = "paid"


# Ordine di avanzamento: lo stato non torna mai indietro
COMMISSION_STATUS_RANK = {
    CommissionStatus.PENDING: 0,
    CommissionStatus.APPROVED: 1,
    CommissionStatus.PROCESSING: 2,
    CommissionStatus.PAID: 3,
}


class Commission(Base):
    __tablename__ = "commissions"
    __table_args__ = (
        # chiave di idempotenza: 1 commissione per (affiliato, ordine)
        UniqueConstraint("affiliate_id", "order_id", name="uq_commissions_affiliate_order"),
    )

    id = Column(Integer, primary_key=True, index=True)

    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=True)

    # Commissione spettante su quell'ordine
    amount = Column(Numeric(10, 2), nullable=False)
    rate = Column(Numeric(5, 2), nullable=False)
    # Base di calcolo (pre o post sconto)
    order_total = Column(Numeric(10, 2), nullable=False)

    status = Column(Enum(CommissionStatus), nullable=False, default=CommissionStatus.PENDING)

    payout_id = Column(Integer, ForeignKey("affiliate_payouts.id"), nullable=True)

    approved_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    affiliate = relationship("Affiliate")
