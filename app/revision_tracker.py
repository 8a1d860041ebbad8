# app/revision_tracker.py

from typing import Optional

from app.errors import Rejection, RejectionReason
from models.order_revisions import OrderRevision, RevisionType
from models.orders import Order

MAX_REVISIONS = 5

_COUNTERS = {
    RevisionType.LYRICS: "lyrics_revisions",
    RevisionType.SONG: "song_revisions",
}


class RevisionTracker:
    """
    Contatori revisioni testo / canzone, indipendenti, stesso tetto.
    allow_more_revisions (deciso dallo staff) toglie il tetto.
    """

    def __init__(self, max_revisions: int = MAX_REVISIONS):
        self.max_revisions = max_revisions

    @staticmethod
    def classify(revision: OrderRevision) -> RevisionType:
        if revision.revision_type is None:
            raise ValueError(f"Revision {revision.id} has no revision_type")
        return RevisionType(revision.revision_type)

    def count(self, order: Order, revision_type: RevisionType) -> int:
        return int(getattr(order, _COUNTERS[RevisionType(revision_type)]) or 0)

    def can_revise(self, order: Order, revision_type: RevisionType) -> bool:
        return bool(order.allow_more_revisions) or self.count(order, revision_type) < self.max_revisions

    def remaining(self, order: Order, revision_type: RevisionType) -> Optional[int]:
        # None = illimitate
        if order.allow_more_revisions:
            return None
        return max(0, self.max_revisions - self.count(order, revision_type))

    def check(self, order: Order, revision_type: RevisionType) -> Optional[Rejection]:
        if self.can_revise(order, revision_type):
            return None
        label = "lyrics" if RevisionType(revision_type) == RevisionType.LYRICS else "song"
        return Rejection(
            RejectionReason.REVISION_LIMIT_REACHED,
            f"You have reached the maximum of {self.max_revisions} {label} revisions",
        )

    def next_count(self, order: Order, revision_type: RevisionType) -> int:
        return self.count(order, revision_type) + 1
