import pytest

from app.errors import RejectionReason
from app.revision_tracker import MAX_REVISIONS, RevisionTracker
from models.order_revisions import OrderRevision, RevisionType
from models.orders import Order


def _order(**fields):
    base = dict(lyrics_revisions=0, song_revisions=0, allow_more_revisions=False)
    base.update(fields)
    return Order(**base)


def test_counters_are_independent():
    tracker = RevisionTracker()
    order = _order(lyrics_revisions=MAX_REVISIONS, song_revisions=1)

    assert tracker.can_revise(order, RevisionType.LYRICS) is False
    assert tracker.can_revise(order, RevisionType.SONG) is True
    assert tracker.remaining(order, RevisionType.SONG) == 4
    assert tracker.next_count(order, RevisionType.SONG) == 2


def test_check_message_and_override():
    tracker = RevisionTracker(max_revisions=2)
    order = _order(song_revisions=2)

    rejection = tracker.check(order, RevisionType.SONG)
    assert rejection.reason == RejectionReason.REVISION_LIMIT_REACHED
    assert rejection.message == "You have reached the maximum of 2 song revisions"

    order.allow_more_revisions = True
    assert tracker.check(order, RevisionType.SONG) is None
    assert tracker.remaining(order, RevisionType.SONG) is None


def test_classify_requires_explicit_type():
    assert RevisionTracker.classify(OrderRevision(revision_type=RevisionType.SONG)) == RevisionType.SONG
    with pytest.raises(ValueError):
        RevisionTracker.classify(OrderRevision(revision_type=None))
