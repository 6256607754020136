from __future__ import annotations

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from reconciliation.config import settings
from reconciliation.db import get_db
from reconciliation.errors import ValidationError
from reconciliation.services.sync_orchestrator import orchestrator
from reconciliation.services.webhook_service import SIGNATURE_HEADER, record_webhook_event, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/webhooks', tags=['webhooks'])


def _run_sync_in_background() -> None:
    orchestrator.trigger('webhook')


@router.post('/platform')
async def platform_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    raw_body = await request.body()
    if not verify_signature(raw_body, request.headers.get(SIGNATURE_HEADER), settings.platform_webhook_secret):
        logger.warning('Rejected platform webhook with an invalid signature')
        raise HTTPException(status_code=401, detail='Invalid signature')

    try:
        payload = json.loads(raw_body or b'{}')
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid JSON body') from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail='Invalid JSON body')

    try:
        item = record_webhook_event(db, payload)
        db.commit()
    except ValidationError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        db.rollback()
        logger.exception('Could not record platform webhook %s', payload.get('event'))
        # a non-2xx answer makes the platform deliver the event again
        raise HTTPException(status_code=500, detail='Could not record the event') from exc

    if item is not None:
        background_tasks.add_task(_run_sync_in_background)
    return {'ok': True, 'queued': item is not None}
