from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func
import enum

from models import Base


class PromoCodeKind(str, enum.Enum):
    DISCOUNT = "discount"
    AFFILIATE = "affiliate"


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint(
            "max_uses = 0 OR current_uses <= max_uses",
            name="ck_promo_codes_global_cap",
        ),
        CheckConstraint(
            "is_percentage = false OR (discount_value > 0 AND discount_value <= 100)",
            name="ck_promo_codes_percentage_range",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Salvato sempre in MAIUSCOLO: lookup case-insensitive
    code = Column(String(50), nullable=False, unique=True, index=True)
    name = Column(String(150), nullable=True)

    kind = Column(Enum(PromoCodeKind), nullable=False, default=PromoCodeKind.DISCOUNT)

    discount_value = Column(Numeric(10, 2), nullable=False, default=0, server_default=text("0"))
    is_percentage = Column(Boolean, nullable=False, default=True)

    min_order_value = Column(Numeric(10, 2), nullable=False, default=0, server_default=text("0"))

    # 0 = illimitato
    max_uses = Column(Integer, nullable=False, default=0, server_default=text("0"))
    max_uses_per_user = Column(Integer, nullable=False, default=0, server_default=text("0"))
    current_uses = Column(Integer, nullable=False, default=0, server_default=text("0"))

    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    # Solo per kind=affiliate
    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    affiliate = relationship("Affiliate")

    @validates("code")
    def _normalize_code(self, key, value):
        return value.strip().upper() if value else value


class PromoCodeUsage(Base):
    """
    Una riga per (codice, utente, ordine).
    Scritta solo da record_usage, nella stessa transazione della creazione ordine.
    """
    __tablename__ = "promo_code_usage"
    __table_args__ = (
        UniqueConstraint("code_id", "order_id", name="uq_promo_code_usage_code_order"),
    )

    id = Column(Integer, primary_key=True, index=True)

    code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)

    discount_applied = Column(Numeric(10, 2), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
