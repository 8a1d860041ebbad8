# models/song_versions.py

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from models import Base


class SongVersion(Base):
    __tablename__ = "song_versions"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)

    # "A", "B", "A2"... etichetta libera decisa dallo staff
    version = Column(String(20), nullable=False)
    title = Column(String(255), nullable=True)

    # path restituito dallo storage (upload fuori da questo servizio)
    storage_path = Column(String(500), nullable=False)

    is_selected = Column(Boolean, nullable=False, default=False)
    is_downloaded = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="song_versions")
