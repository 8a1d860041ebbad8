# routers/admin_orders.py
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.config import EngineConfig
from app.db import get_db
from app.deps import get_current_admin, get_engine_config
from app.errors import NotFoundError, ValidationError, unwrap
from app.workflow_service import OrderWorkflowStateMachine, parse_status
from models.orders import Order
from routers.orders import order_out
from schemas.orders import (
    LyricsUpdateRequest,
    OrderOut,
    RevisionNoteRequest,
    RevisionOut,
    RevisionSettingsRequest,
    SongUploadRequest,
    SongVersionOut,
    StatusUpdateRequest,
)

router = APIRouter(
    prefix="/admin/orders",
    tags=["Admin Orders"],
)


def _get_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise NotFoundError("Order not found", reason="NOT_FOUND")
    return order


# ---------------------------------------------------------
# LISTA / DETTAGLIO
# ---------------------------------------------------------
@router.get("", response_model=List[OrderOut])
def list_orders(
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    machine = OrderWorkflowStateMachine(db, config)
    q = db.query(Order)
    if status:
        parsed = parse_status(status)
        if parsed is None:
            raise ValidationError(f"Invalid status: {status}", reason="INVALID_STATUS")
        q = q.filter(Order.status == parsed)
    orders = q.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(min(limit, 500)).all()
    return [order_out(o, machine.tracker) for o in orders]


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    return order_out(_get_order(db, order_id), OrderWorkflowStateMachine(db, config).tracker)


# ---------------------------------------------------------
# WORKFLOW
# ---------------------------------------------------------
@router.patch("/{order_id}/status", response_model=OrderOut)
def update_status(
    order_id: int,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    order = _get_order(db, order_id)
    machine = OrderWorkflowStateMachine(db, config)
    unwrap(machine.update_order_status(order, payload.status, lyrics_approved=payload.lyrics_approved))
    db.commit()
    db.refresh(order)
    return order_out(order, machine.tracker)


@router.put("/{order_id}/lyrics", response_model=OrderOut)
def update_lyrics(
    order_id: int,
    payload: LyricsUpdateRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    order = _get_order(db, order_id)
    machine = OrderWorkflowStateMachine(db, config)
    unwrap(machine.update_lyrics(order, payload.lyrics, new_status=payload.status))
    db.commit()
    db.refresh(order)
    return order_out(order, machine.tracker)


@router.patch("/{order_id}/revision-settings", response_model=OrderOut)
def update_revision_settings(
    order_id: int,
    payload: RevisionSettingsRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    order = _get_order(db, order_id)
    machine = OrderWorkflowStateMachine(db, config)
    machine.set_allow_more_revisions(order, payload.allow_more_revisions)
    db.commit()
    db.refresh(order)
    return order_out(order, machine.tracker)


@router.post("/{order_id}/song-versions", response_model=SongVersionOut)
def upload_song_version(
    order_id: int,
    payload: SongUploadRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    order = _get_order(db, order_id)
    song = unwrap(
        OrderWorkflowStateMachine(db, config).upload_song_version(
            order, payload.version, payload.title, payload.storage_path
        )
    )
    db.commit()
    db.refresh(song)
    return song


# ---------------------------------------------------------
# REVISIONI
# ---------------------------------------------------------
@router.post("/{order_id}/revisions", response_model=RevisionOut)
def add_revision_note(
    order_id: int,
    payload: RevisionNoteRequest,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    order = _get_order(db, order_id)
    revision = unwrap(
        OrderWorkflowStateMachine(db, config).add_revision_note(
            order, payload.comment, payload.revision_type, kind=payload.kind
        )
    )
    db.commit()
    db.refresh(revision)
    return revision


@router.get("/{order_id}/revisions", response_model=List[RevisionOut])
def revision_history(
    order_id: int,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_engine_config),
    admin=Depends(get_current_admin),
):
    return OrderWorkflowStateMachine(db, config).revision_history(_get_order(db, order_id))
