from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile

from reconciliation.db import get_db
from reconciliation.errors import DestinationRejectedError, DuplicateError, NotFoundError, UpstreamError, ValidationError
from reconciliation.services.payment_state_service import confirm_receipt, reject_receipt
from reconciliation.services.provider_factory import get_platform_provider, get_text_extractor
from reconciliation.services.receipt_service import MAX_UPLOAD_BYTES, submit_receipt

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/receipts', tags=['receipts'])


def _duplicate_status(exc: DuplicateError) -> int:
    return 429 if exc.reason == 'debounced' else 409


@router.post('', status_code=201)
async def upload_receipt(request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    order_number = str(form.get('order_number', '')).strip()
    upload = form.get('file')
    if not isinstance(upload, UploadFile):
        raise HTTPException(status_code=400, detail='A receipt file is required')
    content = await upload.read(MAX_UPLOAD_BYTES + 1)

    try:
        submission = submit_receipt(
            db,
            client=get_platform_provider(),
            extractor=get_text_extractor(),
            order_number=order_number,
            content=content,
            filename=upload.filename,
        )
    except DuplicateError as exc:
        raise HTTPException(
            status_code=_duplicate_status(exc),
            detail={'message': str(exc), 'reason': exc.reason, 'existing_id': exc.existing_id},
        ) from exc
    except DestinationRejectedError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail={'message': str(exc), 'extracted': exc.extracted}) from exc
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamError as exc:
        db.rollback()
        logger.warning('Receipt upload for order %s failed upstream: %s', order_number, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return submission.as_dict()


@router.post('/{receipt_id}/confirm')
async def confirm(receipt_id: int, request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    actor = str(form.get('actor', '')).strip() or None
    try:
        snapshot = confirm_receipt(db, receipt_id=receipt_id, actor=actor)
    except DuplicateError as exc:
        raise HTTPException(status_code=_duplicate_status(exc), detail=str(exc)) from exc
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return snapshot.as_dict()


@router.post('/{receipt_id}/reject')
async def reject(receipt_id: int, request: Request, db: Session = Depends(get_db)):
    form = await request.form()
    actor = str(form.get('actor', '')).strip() or None
    reason = str(form.get('reason', '')).strip() or None
    try:
        snapshot = reject_receipt(db, receipt_id=receipt_id, reason=reason, actor=actor)
    except DuplicateError as exc:
        raise HTTPException(status_code=_duplicate_status(exc), detail=str(exc)) from exc
    except NotFoundError as exc:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return snapshot.as_dict()
