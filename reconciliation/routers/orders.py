from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from reconciliation.db import get_db
from reconciliation.errors import NotFoundError, UpstreamError, ValidationError
from reconciliation.models import Inconsistency, WorkflowState
from reconciliation.services.consistency_service import list_open_inconsistencies
from reconciliation.services.order_sync_service import get_order, resync_order
from reconciliation.services.payment_state_service import change_workflow_state, record_cash_payment, recompute_order_payment
from reconciliation.services.provider_factory import get_platform_provider
from reconciliation.services.receipt_service import normalize_order_number, validate_order

router = APIRouter(prefix='/orders', tags=['orders'])


def _inconsistency_payload(row: Inconsistency) -> dict:
    return {
        'id': row.id,
        'order_number': row.order_number,
        'type': row.type.value,
        'detail': row.detail,
        'detected_at': row.detected_at.isoformat() if row.detected_at else None,
    }


@router.post('/validate')
async def validate(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    try:
        order = validate_order(db, get_platform_provider(), str(form.get('order_number', '')))
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamError as exc:
        db.rollback()
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    snapshot = recompute_order_payment(db, order.order_number)
    db.commit()
    return {
        'order_number': order.order_number,
        'customer_name': order.customer_name,
        **snapshot.as_dict(),
    }


@router.get('/inconsistencies')
def all_inconsistencies(db: Session = Depends(get_db)):
    return [_inconsistency_payload(row) for row in list_open_inconsistencies(db)]


@router.get('/{order_number}/inconsistencies')
def order_inconsistencies(order_number: str, db: Session = Depends(get_db)):
    if get_order(db, order_number) is None:
        raise HTTPException(status_code=404, detail=f'Order {order_number} not found')
    return [_inconsistency_payload(row) for row in list_open_inconsistencies(db, order_number)]


@router.post('/{order_number}/status')
async def update_status(order_number: str, request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    try:
        target = WorkflowState(str(form.get('status', '')).strip().upper())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Unknown workflow state') from exc
    actor = str(form.get('actor', '')).strip() or None
    try:
        order = change_workflow_state(db, order_number=order_number, target=target, actor=actor)
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'order_number': order.order_number, 'workflow_state': order.workflow_state.value}


@router.post('/{order_number}/cash-payments', status_code=201)
async def add_cash_payment(order_number: str, request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    try:
        number = normalize_order_number(order_number)
        payment, snapshot = record_cash_payment(
            db,
            order_number=number,
            amount=form.get('amount'),
            recorded_by=str(form.get('recorded_by', '')).strip() or None,
            notes=str(form.get('notes', '')).strip() or None,
        )
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'payment_id': payment.id, **snapshot.as_dict()}


@router.post('/{order_number}/resync')
def resync(order_number: str, db: Session = Depends(get_db)):
    try:
        result = resync_order(db, get_platform_provider(), order_number)
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UpstreamError as exc:
        db.rollback()
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    db.commit()
    return {
        'order_number': order_number,
        'inserted': result.inserted,
        'updated': result.updated,
        'deleted': result.deleted,
        'skipped': result.skipped,
    }
