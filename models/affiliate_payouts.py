# models/affiliate_payouts.py

from sqlalchemy import Column, Integer, Numeric, DateTime, Enum, ForeignKey, String, JSON
from sqlalchemy.sql import func
import enum

from models import Base


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REJECTED = "rejected"


class PayoutMethod(str, enum.Enum):
    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"


class AffiliatePayout(Base):
    """
    Richiesta di pagamento REALE dell'affiliato.
    Raggruppa piu' commissioni (Commission.payout_id).
    Il saldo viene scalato una sola volta, alla richiesta.
    """
    __tablename__ = "affiliate_payouts"

    id = Column(Integer, primary_key=True, index=True)

    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)

    status = Column(Enum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)
    payment_method = Column(Enum(PayoutMethod), nullable=False, default=PayoutMethod.STRIPE)

    # dati di pagamento (solo ultime 4 cifre del conto)
    payment_info = Column(JSON, nullable=True)

    transaction_id = Column(String(255), nullable=True)
    processing_notes = Column(String(1000), nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    requested_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
