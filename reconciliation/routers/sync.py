from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from reconciliation.db import SessionLocal, get_db
from reconciliation.services.order_sync_service import (
    LAST_ORDER_SYNC_KEY,
    resync_all_orders,
    resync_inconsistent_orders,
    sync_cancelled_orders,
)
from reconciliation.services.provider_factory import get_platform_provider
from reconciliation.services.receipt_service import backfill_receipt_entities
from reconciliation.services.sync_orchestrator import TRIGGER_QUEUED, orchestrator
from reconciliation.services.sync_queue_service import get_sync_state, queue_stats

router = APIRouter(prefix='/sync', tags=['sync'])


@router.get('/status')
def sync_status(db: Session = Depends(get_db)):
    return {
        'queue': queue_stats(db),
        'orchestrator': orchestrator.status(),
        'last_order_sync': get_sync_state(db, LAST_ORDER_SYNC_KEY),
    }


@router.post('/run', status_code=202)
def run_sync(background_tasks: BackgroundTasks):
    run_id = orchestrator.try_start('manual')
    if run_id is None:
        return {'status': TRIGGER_QUEUED, 'run_id': None, 'source': 'manual'}
    background_tasks.add_task(orchestrator.run_claimed, run_id, 'manual')
    return {'status': 'started', 'run_id': run_id, 'source': 'manual'}


@router.post('/resync-inconsistent')
def resync_inconsistent(limit: int = Query(default=50, ge=1, le=500)):
    return resync_inconsistent_orders(SessionLocal, get_platform_provider(), limit=limit)


@router.post('/resync-all')
def resync_all(limit: int = Query(default=200, ge=1, le=2000)):
    return resync_all_orders(SessionLocal, get_platform_provider(), limit=limit)


@router.post('/sync-cancelled')
def sync_cancelled(limit: int = Query(default=200, ge=1, le=2000)):
    return sync_cancelled_orders(SessionLocal, get_platform_provider(), limit=limit)


@router.post('/backfill-entities')
def backfill_entities(limit: int = Query(default=500, ge=1, le=5000), db: Session = Depends(get_db)):
    result = backfill_receipt_entities(db, limit=limit)
    db.commit()
    return result
