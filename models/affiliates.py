from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    text,
)
from sqlalchemy.sql import func
import enum

from models import Base


class AffiliateStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    SUSPENDED = "suspended"


class Affiliate(Base):
    __tablename__ = "affiliates"
    __table_args__ = (
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 50",
            name="ck_affiliates_commission_rate",
        ),
        CheckConstraint("payout_threshold >= 10", name="ck_affiliates_payout_threshold"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # 1:1 con l'account utente
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    status = Column(Enum(AffiliateStatus), nullable=False, default=AffiliateStatus.PENDING)

    # Percentuale di commissione (0-50)
    commission_rate = Column(Numeric(5, 2), nullable=False, default=10, server_default=text("10"))

    # Commissioni approvate e non ancora richieste in payout
    balance = Column(Numeric(10, 2), nullable=False, default=0, server_default=text("0"))

    # Totale pagato (storico)
    total_paid = Column(Numeric(10, 2), nullable=False, default=0, server_default=text("0"))

    payout_threshold = Column(Numeric(10, 2), nullable=False, default=10, server_default=text("10"))

    website = Column(String(255), nullable=True)
    promotion_plan = Column(String(1000), nullable=True)
    admin_notes = Column(String(1000), nullable=True)

    approved_at = Column(DateTime(timezone=True), nullable=True)

    # candidatura negata: prima data utile per ricandidarsi
    next_allowed_application_date = Column(DateTime(timezone=True), nullable=True)
    code_regenerated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
