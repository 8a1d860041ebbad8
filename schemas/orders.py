from pydantic import BaseModel
from decimal import Decimal
from datetime import datetime
from typing import List, Optional

from models.order_revisions import RevisionAuthor, RevisionKind, RevisionType
from models.orders import OrderStatus, PackageType, PaymentStatus


class LyricsReviewRequest(BaseModel):
    approved: bool
    feedback: Optional[str] = None


class SongReviewRequest(BaseModel):
    approved: bool
    feedback: Optional[str] = None
    selected_version_id: Optional[int] = None


class SongVersionOut(BaseModel):
    id: int
    version: str
    title: Optional[str] = None
    storage_path: str
    is_selected: bool
    is_downloaded: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RevisionOut(BaseModel):
    id: int
    revision_type: RevisionType
    kind: RevisionKind
    author: RevisionAuthor
    comment: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    package_type: PackageType
    original_price: Decimal
    total_price: Decimal
    payment_status: PaymentStatus
    status: OrderStatus
    workflow_stage: int

    provide_lyrics: bool
    lyrics: Optional[str] = None
    system_generated_lyrics: Optional[str] = None
    lyrics_approved: bool

    lyrics_revisions: int
    song_revisions: int
    allow_more_revisions: bool
    lyrics_revisions_remaining: Optional[int] = None
    song_revisions_remaining: Optional[int] = None

    used_promo_code: Optional[str] = None
    promo_discount_amount: Decimal
    referring_affiliate_id: Optional[int] = None

    recipient_name: Optional[str] = None
    song_purpose: Optional[str] = None
    music_style: Optional[str] = None

    song_versions: List[SongVersionOut] = []
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# --------- ADMIN ---------


class StatusUpdateRequest(BaseModel):
    status: str
    lyrics_approved: Optional[bool] = None


class LyricsUpdateRequest(BaseModel):
    lyrics: str
    status: Optional[str] = None


class RevisionSettingsRequest(BaseModel):
    allow_more_revisions: bool


class SongUploadRequest(BaseModel):
    version: str
    title: Optional[str] = None
    storage_path: str  # path restituito dallo storage


class RevisionNoteRequest(BaseModel):
    comment: str
    revision_type: str  # lyrics | song
    kind: str = "note"
