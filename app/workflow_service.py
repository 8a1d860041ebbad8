# app/workflow_service.py

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Union

from sqlalchemy.orm import Session

from app.config import EngineConfig, TransitionPolicy
from app.errors import Rejection, RejectionReason, ValidationError
from app.revision_tracker import RevisionTracker
from models.order_revisions import OrderRevision, RevisionAuthor, RevisionKind, RevisionType
from models.orders import Order, OrderStatus, PaymentStatus, WORKFLOW_STAGES
from models.song_versions import SongVersion

logger = logging.getLogger(__name__)

# Flusso standard + ritorni per le revisioni
STRICT_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.IN_PRODUCTION}),
    OrderStatus.IN_PRODUCTION: frozenset({OrderStatus.LYRICS_REVIEW}),
    OrderStatus.LYRICS_REVIEW: frozenset({OrderStatus.SONG_PRODUCTION, OrderStatus.IN_PRODUCTION}),
    OrderStatus.SONG_PRODUCTION: frozenset({OrderStatus.SONG_REVIEW}),
    OrderStatus.SONG_REVIEW: frozenset({OrderStatus.COMPLETED, OrderStatus.SONG_PRODUCTION}),
    OrderStatus.COMPLETED: frozenset(),
}

# coppia iniziale A/B: dal terzo file in poi sono revisioni
INITIAL_SONG_VERSIONS = 2


@dataclass(frozen=True)
class OrderPatch:
    """Modifica parziale di un ordine: None = campo non toccato."""

    status: Optional[OrderStatus] = None
    lyrics_approved: Optional[bool] = None
    system_generated_lyrics: Optional[str] = None
    lyrics_revisions: Optional[int] = None
    song_revisions: Optional[int] = None
    allow_more_revisions: Optional[bool] = None
    payment_status: Optional[PaymentStatus] = None
    payment_id: Optional[str] = None


def apply_patch(order: Order, patch: OrderPatch) -> Order:
    """Unico punto che scrive sull'ordine. status e workflow_stage sempre insieme."""
    for field in dataclasses.fields(patch):
        value = getattr(patch, field.name)
        if value is None:
            continue
        if field.name == "status":
            order.status = value
            order.workflow_stage = WORKFLOW_STAGES[value]
        else:
            setattr(order, field.name, value)
    return order


def parse_status(value: Union[str, OrderStatus, None]) -> Optional[OrderStatus]:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value or "").strip().lower())
    except ValueError:
        return None


class OrderWorkflowStateMachine:
    def __init__(self, db: Session, config: EngineConfig, tracker: Optional[RevisionTracker] = None):
        self.db = db
        self.config = config
        self.tracker = tracker or RevisionTracker(config.max_revisions)

    # -------------------------------------------------
    # Transizioni
    # -------------------------------------------------
    def allowed_targets(self, current: OrderStatus) -> FrozenSet[OrderStatus]:
        if self.config.transition_policy == TransitionPolicy.PERMISSIVE:
            return frozenset(s for s in OrderStatus if s != current)
        return STRICT_TRANSITIONS.get(current, frozenset())

    def check_transition(
        self,
        order: Order,
        new_status: Union[str, OrderStatus, None],
        pending_lyrics: Optional[str] = None,
    ) -> Union[OrderStatus, Rejection]:
        target = parse_status(new_status)
        if target is None:
            return Rejection(RejectionReason.INVALID_STATUS, f"Invalid status: {new_status}")

        current = OrderStatus(order.status)
        if target == current:
            return Rejection(RejectionReason.REDUNDANT_STATUS, f"Order is already in {current.value}")

        if target not in self.allowed_targets(current):
            return Rejection(
                RejectionReason.INVALID_TRANSITION,
                f"Cannot move order from {current.value} to {target.value}",
            )

        if target == OrderStatus.LYRICS_REVIEW:
            if not (order.has_lyrics or (pending_lyrics or "").strip()):
                return Rejection(RejectionReason.MISSING_LYRICS, "Lyrics are required before review")

        return target

    def _enter(self, order: Order, target: OrderStatus, **changes) -> Order:
        # dalla produzione canzone in poi il testo e' per forza approvato
        if WORKFLOW_STAGES[target] >= WORKFLOW_STAGES[OrderStatus.SONG_PRODUCTION]:
            changes["lyrics_approved"] = True
        previous = order.status
        apply_patch(order, OrderPatch(status=target, **changes))
        logger.info("Order %s: %s -> %s", order.id, getattr(previous, "value", previous), target.value)
        return order

    def transition(
        self,
        order: Order,
        new_status: Union[str, OrderStatus, None],
        lyrics_approved: Optional[bool] = None,
    ) -> Union[Order, Rejection]:
        checked = self.check_transition(order, new_status)
        if isinstance(checked, Rejection):
            return checked
        return self._enter(order, checked, lyrics_approved=lyrics_approved)

    def _append_revision(
        self,
        order: Order,
        revision_type: RevisionType,
        kind: RevisionKind,
        author: RevisionAuthor,
        comment: Optional[str],
    ) -> OrderRevision:
        revision = OrderRevision(
            order_id=order.id,
            revision_type=revision_type,
            kind=kind,
            author=author,
            comment=comment,
        )
        self.db.add(revision)
        return revision

    # -------------------------------------------------
    # Azioni cliente
    # -------------------------------------------------
    @staticmethod
    def _owned(order: Order, user_id: int) -> Optional[Rejection]:
        if order.user_id != user_id:
            return Rejection(RejectionReason.NOT_FOUND, "Order not found")
        return None

    def approve_lyrics(self, order: Order, user_id: int, feedback: Optional[str] = None) -> Union[Order, Rejection]:
        rejection = self._owned(order, user_id)
        if rejection:
            return rejection
        if order.status != OrderStatus.LYRICS_REVIEW:
            return Rejection(RejectionReason.NOT_IN_REVIEW, "Order is not ready for lyrics review")

        self._enter(order, OrderStatus.SONG_PRODUCTION)
        self._append_revision(
            order, RevisionType.LYRICS, RevisionKind.LYRICS_APPROVED, RevisionAuthor.CUSTOMER,
            (feedback or "").strip() or None,
        )
        return order

    def request_lyrics_changes(self, order: Order, user_id: int, feedback: Optional[str]) -> Union[Order, Rejection]:
        rejection = self._owned(order, user_id)
        if rejection:
            return rejection
        if order.status != OrderStatus.LYRICS_REVIEW:
            return Rejection(RejectionReason.NOT_IN_REVIEW, "Order is not ready for lyrics review")
        if not (feedback or "").strip():
            return Rejection(RejectionReason.FEEDBACK_REQUIRED, "Feedback is required when requesting changes")

        rejection = self.tracker.check(order, RevisionType.LYRICS)
        if rejection:
            return rejection

        self._enter(
            order,
            OrderStatus.IN_PRODUCTION,
            lyrics_revisions=self.tracker.next_count(order, RevisionType.LYRICS),
            lyrics_approved=False,
        )
        self._append_revision(
            order, RevisionType.LYRICS, RevisionKind.LYRICS_CHANGE_REQUEST, RevisionAuthor.CUSTOMER,
            feedback.strip(),
        )
        return order

    def approve_song(
        self,
        order: Order,
        user_id: int,
        selected_version_id: Optional[int],
        feedback: Optional[str] = None,
    ) -> Union[Order, Rejection]:
        rejection = self._owned(order, user_id)
        if rejection:
            return rejection
        if order.status != OrderStatus.SONG_REVIEW:
            return Rejection(RejectionReason.NOT_IN_REVIEW, "Order is not ready for song review")
        if not selected_version_id:
            return Rejection(RejectionReason.VERSION_REQUIRED, "Please select a song version")

        versions = self.db.query(SongVersion).filter(SongVersion.order_id == order.id).all()
        chosen = next((v for v in versions if v.id == selected_version_id), None)
        if chosen is None:
            return Rejection(RejectionReason.VERSION_NOT_FOUND, "Song version not found")

        for version in versions:
            version.is_selected = version.id == chosen.id

        self._enter(order, OrderStatus.COMPLETED)
        self._append_revision(
            order, RevisionType.SONG, RevisionKind.SONG_APPROVED, RevisionAuthor.CUSTOMER,
            (feedback or "").strip() or None,
        )
        return order

    def request_song_changes(self, order: Order, user_id: int, feedback: Optional[str]) -> Union[Order, Rejection]:
        rejection = self._owned(order, user_id)
        if rejection:
            return rejection
        if order.status != OrderStatus.SONG_REVIEW:
            return Rejection(RejectionReason.NOT_IN_REVIEW, "Order is not ready for song review")
        if not (feedback or "").strip():
            return Rejection(RejectionReason.FEEDBACK_REQUIRED, "Feedback is required when requesting changes")

        rejection = self.tracker.check(order, RevisionType.SONG)
        if rejection:
            return rejection

        self._enter(
            order,
            OrderStatus.SONG_PRODUCTION,
            song_revisions=self.tracker.next_count(order, RevisionType.SONG),
        )
        self._append_revision(
            order, RevisionType.SONG, RevisionKind.SONG_CHANGE_REQUEST, RevisionAuthor.CUSTOMER,
            feedback.strip(),
        )
        return order

    # -------------------------------------------------
    # Azioni staff
    # -------------------------------------------------
    def update_order_status(
        self,
        order: Order,
        new_status: Union[str, OrderStatus, None],
        lyrics_approved: Optional[bool] = None,
    ) -> Union[Order, Rejection]:
        return self.transition(order, new_status, lyrics_approved=lyrics_approved)

    def update_lyrics(
        self,
        order: Order,
        lyrics: Optional[str],
        new_status: Union[str, OrderStatus, None] = None,
    ) -> Union[Order, Rejection]:
        text = (lyrics or "").strip()
        if not text:
            return Rejection(RejectionReason.MISSING_LYRICS, "Lyrics cannot be empty")

        if new_status is None:
            apply_patch(order, OrderPatch(system_generated_lyrics=text))
            return order

        checked = self.check_transition(order, new_status, pending_lyrics=text)
        if isinstance(checked, Rejection):
            return checked
        return self._enter(order, checked, system_generated_lyrics=text)

    def set_allow_more_revisions(self, order: Order, allow: bool) -> Order:
        apply_patch(order, OrderPatch(allow_more_revisions=bool(allow)))
        logger.info("Order %s: allow_more_revisions=%s", order.id, order.allow_more_revisions)
        return order

    def upload_song_version(
        self,
        order: Order,
        version: str,
        title: Optional[str],
        storage_path: str,
    ) -> Union[SongVersion, Rejection]:
        if not (version or "").strip() or not (storage_path or "").strip():
            raise ValidationError("version and storage_path are required", reason="INVALID_UPLOAD")

        existing = self.db.query(SongVersion).filter(SongVersion.order_id == order.id).count()
        total = existing + 1

        changes = {}
        if total > INITIAL_SONG_VERSIONS:
            # ogni coppia oltre la prima = 1 revisione
            from_uploads = max(1, (total - INITIAL_SONG_VERSIONS) // 2)
            current = self.tracker.count(order, RevisionType.SONG)
            if from_uploads > current:
                rejection = self.tracker.check(order, RevisionType.SONG)
                if rejection:
                    return rejection
                changes["song_revisions"] = from_uploads

        song = SongVersion(
            order_id=order.id,
            version=version.strip(),
            title=(title or "").strip() or None,
            storage_path=storage_path.strip(),
        )
        self.db.add(song)

        # avanza solo dalla produzione canzone: prima di li' il file resta in archivio
        if order.status == OrderStatus.SONG_PRODUCTION:
            self._enter(order, OrderStatus.SONG_REVIEW, **changes)
        elif changes:
            apply_patch(order, OrderPatch(**changes))

        self.db.flush()
        return song

    def add_revision_note(
        self,
        order: Order,
        comment: Optional[str],
        revision_type: Union[str, RevisionType],
        kind: Union[str, RevisionKind] = RevisionKind.NOTE,
        author: Union[str, RevisionAuthor] = RevisionAuthor.ADMIN,
    ) -> Union[OrderRevision, Rejection]:
        if not (comment or "").strip():
            return Rejection(RejectionReason.FEEDBACK_REQUIRED, "Comment is required")
        try:
            revision_type = RevisionType(revision_type)
            kind = RevisionKind(kind)
            author = RevisionAuthor(author)
        except ValueError as e:
            raise ValidationError(str(e), reason="INVALID_REVISION") from e

        revision = self._append_revision(order, revision_type, kind, author, comment.strip())
        self.db.flush()
        return revision

    def revision_history(self, order: Order) -> List[OrderRevision]:
        return (
            self.db.query(OrderRevision)
            .filter(OrderRevision.order_id == order.id)
            .order_by(OrderRevision.created_at.desc(), OrderRevision.id.desc())
            .all()
        )
