# models/order_revisions.py

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, Text, event
from sqlalchemy.orm import relationship
import enum

from models import Base


class RevisionType(str, enum.Enum):
    LYRICS = "lyrics"
    SONG = "song"


class RevisionKind(str, enum.Enum):
    NOTE = "note"
    LYRICS_APPROVED = "lyrics_approved"
    LYRICS_CHANGE_REQUEST = "lyrics_change_request"
    SONG_APPROVED = "song_approved"
    SONG_CHANGE_REQUEST = "song_change_request"


class RevisionAuthor(str, enum.Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"


class OrderRevision(Base):
    """Storico note / approvazioni / richieste di modifica. Append-only."""

    __tablename__ = "order_revisions"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    # obbligatorio: e' l'unica fonte per classificare la revisione
    revision_type = Column(Enum(RevisionType), nullable=False)
    kind = Column(Enum(RevisionKind), nullable=False, default=RevisionKind.NOTE)
    author = Column(Enum(RevisionAuthor), nullable=False, default=RevisionAuthor.ADMIN)

    comment = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    order = relationship("Order", back_populates="revisions")


@event.listens_for(OrderRevision, "before_update")
def _order_revisions_are_append_only(mapper, connection, target):
    raise RuntimeError("order_revisions is append-only")
