from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db
from backend.app.api.v1.endpoints.orders import fulfillment_lines
from backend.app.db.models.core_types import DispatchStatus
from backend.app.schemas.dispatches import DispatchRead, DispatchResultRead
from backend.services import dispatch as dispatch_service
from backend.services.orders import get_order

router = APIRouter(prefix="/dispatches")


class DispatchApprove(BaseModel):
    approver: str = Field(min_length=1, max_length=128)
    remarks: str | None = Field(default=None, max_length=500)


class DispatchAction(BaseModel):
    actor: str | None = None


class DispatchCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=255)
    actor: str | None = None


@router.get("", response_model=list[DispatchRead])
def list_dispatches(
    order_id: int | None = None,
    status: DispatchStatus | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    auto_generated: bool | None = None,
    db: Session = Depends(get_db),
):
    filters = dispatch_service.DispatchFilters(
        order_id=order_id,
        status=status,
        date_from=date_from,
        date_to=date_to,
        auto_generated=auto_generated,
    )
    return dispatch_service.list_dispatches(db, filters)


@router.get("/{dispatch_id}", response_model=DispatchRead)
def get_dispatch(dispatch_id: int, db: Session = Depends(get_db)):
    return dispatch_service.get_dispatch(db, dispatch_id)


@router.post("/{dispatch_id}/approve", response_model=DispatchRead)
def approve_dispatch(dispatch_id: int, payload: DispatchApprove, db: Session = Depends(get_db)):
    return dispatch_service.approve_dispatch(db, dispatch_id, approver=payload.approver, remarks=payload.remarks)


@router.post("/{dispatch_id}/execute", response_model=DispatchResultRead)
def execute_dispatch(dispatch_id: int, payload: DispatchAction | None = None, db: Session = Depends(get_db)):
    result = dispatch_service.execute_dispatch(db, dispatch_id, actor=payload.actor if payload else None)
    order = get_order(db, result.dispatch.order_id)
    return DispatchResultRead(
        dispatch=DispatchRead.model_validate(result.dispatch),
        continuation=DispatchRead.model_validate(result.continuation) if result.continuation else None,
        superseded=[r.human_number for r in result.superseded],
        order_status=order.status,
        fulfillment=fulfillment_lines(result.fulfillment),
    )


@router.post("/{dispatch_id}/mark-dispatched", response_model=DispatchRead)
def mark_dispatched(dispatch_id: int, payload: DispatchAction | None = None, db: Session = Depends(get_db)):
    return dispatch_service.mark_dispatched(db, dispatch_id, actor=payload.actor if payload else None)


@router.post("/{dispatch_id}/mark-delivered", response_model=DispatchRead)
def mark_delivered(dispatch_id: int, payload: DispatchAction | None = None, db: Session = Depends(get_db)):
    return dispatch_service.mark_delivered(db, dispatch_id, actor=payload.actor if payload else None)


@router.post("/{dispatch_id}/cancel", response_model=DispatchRead)
def cancel_dispatch(dispatch_id: int, payload: DispatchCancel | None = None, db: Session = Depends(get_db)):
    """Cancelling never returns stock to the ledger; use POST /stock/{id}/increment for that."""
    payload = payload or DispatchCancel()
    return dispatch_service.cancel_dispatch(db, dispatch_id, reason=payload.reason, actor=payload.actor)
