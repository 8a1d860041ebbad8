# routers/orders.py
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.config import EngineConfig
from app.db import get_db
from app.deps import get_current_user, get_engine_config
from app.errors import NotFoundError, unwrap
from app.revision_tracker import RevisionTracker
from app.workflow_service import OrderWorkflowStateMachine
from models.order_revisions import RevisionType
from models.orders import Order
from models.users import User
from schemas.orders import LyricsReviewRequest, OrderOut, RevisionOut, SongReviewRequest

router = APIRouter(prefix="/orders", tags=["Orders"])


def order_out(order: Order, tracker: RevisionTracker) -> OrderOut:
    out = OrderOut.model_validate(order)
    out.lyrics_revisions_remaining = tracker.remaining(order, RevisionType.LYRICS)
    out.song_revisions_remaining = tracker.remaining(order, RevisionType.SONG)
    return out


def _own_order(db: Session, order_id: int, user: User) -> Order:
    # ordini di altri utenti = 404, non 403
    order = db.query(Order).filter(Order.id == order_id, Order.user_id == user.id).first()
    if not order:
        raise NotFoundError("Order not found", reason="NOT_FOUND")
    return order


@router.get("/mine", response_model=List[OrderOut])
def my_orders(
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: User = Depends(get_current_user),
):
    tracker = RevisionTracker(config.max_revisions)
    orders = (
        db.query(Order)
        .filter(Order.user_id == current_user.id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
    return [order_out(o, tracker) for o in orders]


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: User = Depends(get_current_user),
):
    return order_out(_own_order(db, order_id, current_user), RevisionTracker(config.max_revisions))


@router.post("/{order_id}/lyrics/review", response_model=OrderOut)
def review_lyrics(
    order_id: int,
    payload: LyricsReviewRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: User = Depends(get_current_user),
):
    order = _own_order(db, order_id, current_user)
    machine = OrderWorkflowStateMachine(db, config)

    if payload.approved:
        outcome = machine.approve_lyrics(order, current_user.id, payload.feedback)
    else:
        outcome = machine.request_lyrics_changes(order, current_user.id, payload.feedback)
    unwrap(outcome)

    db.commit()
    db.refresh(order)
    return order_out(order, machine.tracker)


@router.post("/{order_id}/song/review", response_model=OrderOut)
def review_song(
    order_id: int,
    payload: SongReviewRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: User = Depends(get_current_user),
):
    order = _own_order(db, order_id, current_user)
    machine = OrderWorkflowStateMachine(db, config)

    if payload.approved:
        outcome = machine.approve_song(order, current_user.id, payload.selected_version_id, payload.feedback)
    else:
        outcome = machine.request_song_changes(order, current_user.id, payload.feedback)
    unwrap(outcome)

    db.commit()
    db.refresh(order)
    return order_out(order, machine.tracker)


@router.get("/{order_id}/revisions", response_model=List[RevisionOut])
def order_revisions(
    order_id: int,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    current_user: User = Depends(get_current_user),
):
    order = _own_order(db, order_id, current_user)
    return OrderWorkflowStateMachine(db, config).revision_history(order)
