from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Integer,
    String,
    Text,
    Numeric,
    DateTime,
    Enum,
    ForeignKey,
    text,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship, validates
import enum

from models import Base


class PackageType(str, enum.Enum):
    ESSENTIAL = "essential"
    SIGNATURE = "signature"
    MASTERPIECE = "masterpiece"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PRODUCTION = "in_production"
    LYRICS_REVIEW = "lyrics_review"
    SONG_PRODUCTION = "song_production"
    SONG_REVIEW = "song_review"
    COMPLETED = "completed"


# status -> workflow_stage (1..6). I due campi si scrivono SEMPRE insieme.
WORKFLOW_STAGES = {
    OrderStatus.PENDING: 1,
    OrderStatus.IN_PRODUCTION: 2,
    OrderStatus.LYRICS_REVIEW: 3,
    OrderStatus.SONG_PRODUCTION: 4,
    OrderStatus.SONG_REVIEW: 5,
    OrderStatus.COMPLETED: 6,
}

_STAGE_CHECK = " OR ".join(
    f"(status = '{s.name}' AND workflow_stage = {n})" for s, n in WORKFLOW_STAGES.items()
)

# Fissati alla creazione (checkout), poi immutabili
ATTRIBUTION_FIELDS = (
    "used_promo_code",
    "promo_discount_amount",
    "referring_affiliate_id",
    "referral_code_id",
)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(_STAGE_CHECK, name="ck_orders_status_stage"),
        CheckConstraint("total_price >= 0", name="ck_orders_total_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), nullable=False, unique=True, index=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    package_type = Column(Enum(PackageType), nullable=False)

    # Prezzo di listino (pacchetto + addon) prima dello sconto
    original_price = Column(Numeric(10, 2), nullable=False)
    # Importo pagato dal cliente (dopo sconto)
    total_price = Column(Numeric(10, 2), nullable=False)

    payment_status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    payment_id = Column(String(255), nullable=True)

    # ==============================
    # WORKFLOW
    # ==============================
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    workflow_stage = Column(Integer, nullable=False, default=1)

    provide_lyrics = Column(Boolean, nullable=False, default=False)
    lyrics = Column(Text, nullable=True)  # testo fornito dal cliente
    system_generated_lyrics = Column(Text, nullable=True)
    lyrics_approved = Column(Boolean, nullable=False, default=False)

    lyrics_revisions = Column(Integer, nullable=False, default=0, server_default=text("0"))
    song_revisions = Column(Integer, nullable=False, default=0, server_default=text("0"))
    allow_more_revisions = Column(Boolean, nullable=False, default=False)

    # ==============================
    # PROMO / AFFILIATE (immutabili)
    # ==============================
    used_promo_code = Column(String(50), nullable=True)
    promo_discount_amount = Column(Numeric(10, 2), nullable=False, default=0, server_default=text("0"))
    referring_affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=True)
    referral_code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=True)

    # ==============================
    # SONG BRIEF
    # ==============================
    song_purpose = Column(String(255), nullable=True)
    recipient_name = Column(String(150), nullable=True)
    emotion = Column(String(100), nullable=True)
    music_style = Column(String(100), nullable=True)
    song_theme = Column(String(255), nullable=True)
    personal_story = Column(Text, nullable=True)
    additional_notes = Column(Text, nullable=True)
    show_in_gallery = Column(Boolean, nullable=False, default=False)

    # Contatti cliente
    customer_name = Column(String(150), nullable=True)
    customer_email = Column(String(255), nullable=True)
    customer_address = Column(String(255), nullable=True)
    customer_city = Column(String(100), nullable=True)
    customer_postcode = Column(String(20), nullable=True)
    customer_country = Column(String(2), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # ==============================
    # RELATIONSHIPS
    # ==============================
    addons = relationship(
        "OrderAddon",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    revisions = relationship(
        "OrderRevision",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OrderRevision.id",
    )
    song_versions = relationship(
        "SongVersion",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SongVersion.id",
    )

    @validates(*ATTRIBUTION_FIELDS)
    def _freeze_attribution(self, key, value):
        # una volta salvato l'ordine questi campi non cambiano piu'
        if self.id is not None:
            current = getattr(self, key)
            if current != value:
                raise ValueError(f"orders.{key} is immutable after creation")
        return value

    @property
    def has_lyrics(self) -> bool:
        return bool((self.system_generated_lyrics or "").strip() or (self.lyrics or "").strip())


class OrderAddon(Base):
    __tablename__ = "order_addons"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    addon_type = Column(String(50), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="addons")
