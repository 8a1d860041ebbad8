from decimal import Decimal

import pytest

from app.config import TransitionPolicy
from app.errors import Rejection, RejectionReason, ValidationError
from app.workflow_service import OrderPatch, OrderWorkflowStateMachine, apply_patch
from models.order_revisions import OrderRevision, RevisionAuthor, RevisionKind, RevisionType
from models.orders import OrderStatus, WORKFLOW_STAGES
from models.song_versions import SongVersion


@pytest.fixture()
def machine(db, config):
    return OrderWorkflowStateMachine(db, config)


def test_stage_always_follows_status(make_order):
    order = make_order()
    for status in OrderStatus:
        apply_patch(order, OrderPatch(status=status))
        assert order.workflow_stage == WORKFLOW_STAGES[status]


def test_lyrics_review_requires_lyrics(db, machine, make_order):
    order = make_order(status=OrderStatus.IN_PRODUCTION)

    outcome = machine.update_order_status(order, "lyrics_review")
    assert isinstance(outcome, Rejection)
    assert outcome.reason == RejectionReason.MISSING_LYRICS
    assert outcome.message == "Lyrics are required before review"
    assert order.status == OrderStatus.IN_PRODUCTION

    order.system_generated_lyrics = "Verse one..."
    machine.update_order_status(order, "lyrics_review")
    db.commit()
    assert order.status == OrderStatus.LYRICS_REVIEW
    assert order.workflow_stage == 3


def test_customer_lyrics_count_as_lyrics(machine, make_order):
    order = make_order(status=OrderStatus.IN_PRODUCTION, provide_lyrics=True, lyrics="My own words")
    assert machine.update_order_status(order, OrderStatus.LYRICS_REVIEW) is order


def test_update_lyrics_with_status(db, machine, make_order):
    order = make_order(status=OrderStatus.IN_PRODUCTION)
    machine.update_lyrics(order, "  New lyrics  ", new_status="lyrics_review")
    db.commit()
    assert order.system_generated_lyrics == "New lyrics"
    assert order.status == OrderStatus.LYRICS_REVIEW

    assert machine.update_lyrics(order, "   ").reason == RejectionReason.MISSING_LYRICS


def test_song_production_forces_lyrics_approved(db, machine, make_order):
    order = make_order(status=OrderStatus.LYRICS_REVIEW, system_generated_lyrics="x")
    assert order.lyrics_approved is False

    machine.update_order_status(order, "song_production", lyrics_approved=False)
    db.commit()
    assert order.status == OrderStatus.SONG_PRODUCTION
    assert order.workflow_stage == 4
    assert order.lyrics_approved is True


def test_redundant_invalid_and_unknown_status(machine, make_order):
    order = make_order(status=OrderStatus.PENDING)
    assert machine.update_order_status(order, "pending").reason == RejectionReason.REDUNDANT_STATUS
    assert machine.update_order_status(order, "completed").reason == RejectionReason.INVALID_TRANSITION
    assert machine.update_order_status(order, "shipped").reason == RejectionReason.INVALID_STATUS


def test_permissive_policy_allows_jumps(db, config, make_order):
    permissive = OrderWorkflowStateMachine(
        db, config.model_copy(update={"transition_policy": TransitionPolicy.PERMISSIVE})
    )
    order = make_order(status=OrderStatus.PENDING)
    permissive.update_order_status(order, "completed")
    assert order.status == OrderStatus.COMPLETED
    assert order.workflow_stage == 6
    assert order.lyrics_approved is True


# -------------------------------------------------
# Cliente
# -------------------------------------------------
def test_approve_lyrics(db, machine, make_order):
    order = make_order(status=OrderStatus.LYRICS_REVIEW, system_generated_lyrics="x")
    machine.approve_lyrics(order, order.user_id, "Love it")
    db.commit()

    assert order.status == OrderStatus.SONG_PRODUCTION
    assert order.lyrics_approved is True
    revision = db.query(OrderRevision).one()
    assert revision.revision_type == RevisionType.LYRICS
    assert revision.kind == RevisionKind.LYRICS_APPROVED
    assert revision.author == RevisionAuthor.CUSTOMER


def test_other_customer_sees_not_found(machine, make_user, make_order):
    order = make_order(status=OrderStatus.LYRICS_REVIEW, system_generated_lyrics="x")
    outcome = machine.approve_lyrics(order, make_user().id)
    assert outcome.reason == RejectionReason.NOT_FOUND


def test_lyrics_change_requires_feedback_and_review(machine, make_order):
    order = make_order(status=OrderStatus.LYRICS_REVIEW, system_generated_lyrics="x")
    assert machine.request_lyrics_changes(order, order.user_id, "  ").reason == RejectionReason.FEEDBACK_REQUIRED

    elsewhere = make_order(status=OrderStatus.SONG_PRODUCTION)
    assert machine.request_lyrics_changes(elsewhere, elsewhere.user_id, "x").reason == RejectionReason.NOT_IN_REVIEW


def test_lyrics_revision_cap_and_override(db, machine, make_order):
    order = make_order(status=OrderStatus.LYRICS_REVIEW, system_generated_lyrics="x", lyrics_revisions=5)

    outcome = machine.request_lyrics_changes(order, order.user_id, "Change the chorus")
    assert outcome.reason == RejectionReason.REVISION_LIMIT_REACHED
    assert outcome.message == "You have reached the maximum of 5 lyrics revisions"
    assert order.lyrics_revisions == 5

    machine.set_allow_more_revisions(order, True)
    machine.request_lyrics_changes(order, order.user_id, "Change the chorus")
    db.commit()

    assert order.lyrics_revisions == 6
    assert order.status == OrderStatus.IN_PRODUCTION
    assert order.workflow_stage == 2
    assert order.lyrics_approved is False


def test_two_song_change_requests(db, machine, make_order):
    order = make_order(status=OrderStatus.SONG_REVIEW, system_generated_lyrics="x", lyrics_approved=True)

    for expected in (1, 2):
        machine.request_song_changes(order, order.user_id, "Slower tempo please")
        db.commit()
        assert order.song_revisions == expected
        assert order.status == OrderStatus.SONG_PRODUCTION
        assert order.lyrics_approved is True

        machine.update_order_status(order, "song_review")
        db.commit()
        assert order.status != OrderStatus.COMPLETED

    kinds = [r.kind for r in machine.revision_history(order)]
    assert kinds == [RevisionKind.SONG_CHANGE_REQUEST, RevisionKind.SONG_CHANGE_REQUEST]


def test_approve_song_selects_one_version(db, machine, make_order):
    order = make_order(status=OrderStatus.SONG_PRODUCTION, lyrics_approved=True)
    a = machine.upload_song_version(order, "A", "Version A", "orders/1/a.mp3")
    b = machine.upload_song_version(order, "B", "Version B", "orders/1/b.mp3")
    db.commit()
    assert order.status == OrderStatus.SONG_REVIEW

    assert machine.approve_song(order, order.user_id, None).reason == RejectionReason.VERSION_REQUIRED
    assert machine.approve_song(order, order.user_id, 9999).reason == RejectionReason.VERSION_NOT_FOUND

    machine.approve_song(order, order.user_id, b.id, "Perfect")
    db.commit()

    assert order.status == OrderStatus.COMPLETED
    assert order.workflow_stage == 6
    selected = {v.id: v.is_selected for v in db.query(SongVersion).all()}
    assert selected == {a.id: False, b.id: True}


def test_upload_counts_revision_pairs(db, machine, make_order):
    order = make_order(status=OrderStatus.SONG_PRODUCTION, lyrics_approved=True)
    for version in ["A", "B", "C", "D", "E"]:
        machine.upload_song_version(order, version, None, f"orders/{order.id}/{version}.mp3")
        db.commit()

    # A/B iniziali, C-D = 1 revisione, E = 1 (mai scende, max(1, 3 // 2))
    assert order.song_revisions == 1
    assert db.query(SongVersion).filter(SongVersion.order_id == order.id).count() == 5

    with pytest.raises(ValidationError):
        machine.upload_song_version(order, "", None, "x.mp3")


def test_upload_respects_cap(db, machine, make_order):
    order = make_order(status=OrderStatus.SONG_REVIEW, lyrics_approved=True, song_revisions=5)
    for version in ("A", "B"):
        machine.upload_song_version(order, version, None, f"{version}.mp3")
    db.commit()
    # le prime due non contano come revisioni
    assert order.song_revisions == 5


@pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.IN_PRODUCTION, OrderStatus.LYRICS_REVIEW])
def test_upload_before_song_production_keeps_status(db, machine, make_order, status):
    order = make_order(status=status)

    song = machine.upload_song_version(order, "A", None, "a.mp3")
    db.commit()

    assert song.id is not None
    assert order.status == status
    assert order.workflow_stage == WORKFLOW_STAGES[status]
    assert order.lyrics_approved is False
    assert db.query(SongVersion).filter(SongVersion.order_id == order.id).count() == 1


def test_revision_notes(db, machine, make_order):
    order = make_order(status=OrderStatus.IN_PRODUCTION)
    assert machine.add_revision_note(order, " ", "lyrics").reason == RejectionReason.FEEDBACK_REQUIRED
    with pytest.raises(ValidationError):
        machine.add_revision_note(order, "note", "melody")

    machine.add_revision_note(order, "Called the customer", "lyrics")
    machine.add_revision_note(order, "Mix is ready", RevisionType.SONG)
    db.commit()

    history = machine.revision_history(order)
    assert [r.comment for r in history] == ["Mix is ready", "Called the customer"]
    assert all(r.author == RevisionAuthor.ADMIN for r in history)

    # append-only
    history[0].comment = "edited"
    with pytest.raises(RuntimeError):
        db.flush()
    db.rollback()


def test_attribution_fields_are_immutable(db, make_order):
    order = make_order(used_promo_code="WELCOME10", promo_discount_amount=Decimal("20.00"))
    with pytest.raises(ValueError):
        order.used_promo_code = "OTHER"
