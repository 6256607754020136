from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reconciliation.config import settings
from reconciliation.models import QueueStatus, SyncQueueItem, SyncState

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING)
BASE_RETRY_DELAY = timedelta(minutes=1)
MAX_ERROR_LENGTH = 2000


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def backoff_delay(attempts: int) -> timedelta:
    """1, 2, 4, 8... minutes for attempts 1, 2, 3, 4..."""
    return BASE_RETRY_DELAY * (2 ** max(attempts - 1, 0))


def _find_active(db: Session, *, item_type: str, resource_id: str) -> SyncQueueItem | None:
    return db.execute(
        select(SyncQueueItem)
        .where(
            SyncQueueItem.type == item_type,
            SyncQueueItem.resource_id == resource_id,
            SyncQueueItem.status.in_(ACTIVE_STATUSES),
        )
        .order_by(SyncQueueItem.id)
        .limit(1)
    ).scalar_one_or_none()


def enqueue(
    db: Session,
    *,
    item_type: str,
    resource_id: str,
    order_number: str | None = None,
    payload: dict | None = None,
    max_attempts: int | None = None,
    now: datetime | None = None,
) -> SyncQueueItem:
    """Add a unit of work, or refresh the payload of the same work already pending or in flight."""
    resource_id = str(resource_id)
    existing = _find_active(db, item_type=item_type, resource_id=resource_id)
    if existing:
        existing.payload = payload or {}
        if order_number and not existing.order_number:
            existing.order_number = order_number
        db.flush()
        logger.info('Sync item %s already queued for %s', item_type, order_number or resource_id)
        return existing

    moment = now or _now()
    item = SyncQueueItem(
        type=item_type,
        resource_id=resource_id,
        order_number=order_number,
        payload=payload or {},
        status=QueueStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts or settings.queue_max_attempts,
        next_retry_at=moment,
        created_at=moment,
    )
    try:
        with db.begin_nested():
            db.add(item)
    except IntegrityError:
        # a concurrent writer inserted the same work between the lookup and the insert
        existing = _find_active(db, item_type=item_type, resource_id=resource_id)
        if existing is None:
            raise
        existing.payload = payload or {}
        db.flush()
        return existing

    logger.info('Queued sync item %s for %s', item_type, order_number or resource_id)
    return item


def reclaim_stale_items(db: Session, *, lease_seconds: int | None = None, now: datetime | None = None) -> int:
    """Release items a worker claimed but never finished, e.g. because the process died mid-item.

    Items with attempts left go back to ``PENDING`` and are due at once; the rest
    fail permanently. A stale item whose work was queued again alongside it is failed
    so the fresh row carries the work.
    """
    moment = now or _now()
    lease = settings.queue_processing_lease_seconds if lease_seconds is None else lease_seconds
    stale = db.execute(
        select(SyncQueueItem)
        .where(
            SyncQueueItem.status == QueueStatus.PROCESSING,
            SyncQueueItem.claimed_at < moment - timedelta(seconds=lease),
        )
        .order_by(SyncQueueItem.id)
        .with_for_update(skip_locked=True)
    ).scalars().all()

    for item in stale:
        sibling = db.execute(
            select(SyncQueueItem.id).where(
                SyncQueueItem.type == item.type,
                SyncQueueItem.resource_id == item.resource_id,
                SyncQueueItem.status == QueueStatus.PENDING,
            )
        ).first()
        item.claimed_at = None
        item.last_error = 'claim expired before the item finished'
        if sibling is not None or item.attempts >= item.max_attempts:
            item.status = QueueStatus.FAILED
            item.next_retry_at = None
            logger.error('Sync item %s (%s) was abandoned mid-processing and will not be retried', item.id, item.type)
        else:
            item.status = QueueStatus.PENDING
            item.next_retry_at = moment
            logger.warning('Sync item %s (%s) was abandoned mid-processing, queued again', item.id, item.type)
    if stale:
        db.flush()
    return len(stale)


def dequeue_next(db: Session, *, now: datetime | None = None) -> SyncQueueItem | None:
    moment = now or _now()
    reclaim_stale_items(db, now=moment)
    item = db.execute(
        select(SyncQueueItem)
        .where(
            SyncQueueItem.status == QueueStatus.PENDING,
            SyncQueueItem.next_retry_at <= moment,
        )
        .order_by(SyncQueueItem.created_at, SyncQueueItem.id)
        .limit(1)
        .with_for_update(skip_locked=True)
    ).scalar_one_or_none()
    if not item:
        return None

    item.status = QueueStatus.PROCESSING
    item.attempts = item.attempts + 1
    item.claimed_at = moment
    db.flush()
    return item


def mark_completed(db: Session, item: SyncQueueItem, *, now: datetime | None = None) -> None:
    item.status = QueueStatus.COMPLETED
    item.processed_at = now or _now()
    item.claimed_at = None
    item.last_error = None
    db.flush()


def mark_failed(db: Session, item: SyncQueueItem, error: str, *, now: datetime | None = None) -> None:
    moment = now or _now()
    item.last_error = (error or 'unknown error')[:MAX_ERROR_LENGTH]
    item.claimed_at = None
    if item.attempts >= item.max_attempts:
        item.status = QueueStatus.FAILED
        item.next_retry_at = None
        logger.error('Sync item %s (%s) failed permanently after %s attempts: %s', item.id, item.type, item.attempts, error)
    else:
        item.status = QueueStatus.PENDING
        item.next_retry_at = moment + backoff_delay(item.attempts)
        logger.warning('Sync item %s (%s) failed on attempt %s, retrying: %s', item.id, item.type, item.attempts, error)
    db.flush()


def cleanup_old_items(db: Session, *, retention_days: int | None = None, now: datetime | None = None) -> int:
    days = settings.queue_retention_days if retention_days is None else retention_days
    cutoff = (now or _now()) - timedelta(days=days)
    reclaim_stale_items(db, now=now)
    result = db.execute(
        delete(SyncQueueItem).where(
            SyncQueueItem.status == QueueStatus.COMPLETED,
            SyncQueueItem.processed_at < cutoff,
        )
    )
    removed = result.rowcount or 0
    if removed:
        logger.info('Removed %s completed sync items older than %s days', removed, days)
    return removed


def queue_stats(db: Session, *, window_hours: int | None = None, now: datetime | None = None) -> dict[str, int]:
    hours = settings.queue_stats_window_hours if window_hours is None else window_hours
    since = (now or _now()) - timedelta(hours=hours)
    rows = db.execute(
        select(SyncQueueItem.status, func.count(SyncQueueItem.id))
        .where(SyncQueueItem.created_at > since)
        .group_by(SyncQueueItem.status)
    ).all()

    stats = {status.value.lower(): 0 for status in QueueStatus}
    stats['total'] = 0
    for status, count in rows:
        stats[status.value.lower()] = count
        stats['total'] += count
    return stats


def get_sync_state(db: Session, key: str) -> dict | None:
    state = db.execute(select(SyncState).where(SyncState.key == key)).scalar_one_or_none()
    return state.value if state else None


def update_sync_state(db: Session, key: str, value: dict) -> None:
    state = db.execute(select(SyncState).where(SyncState.key == key)).scalar_one_or_none()
    if state:
        state.value = value
        state.updated_at = _now()
    else:
        db.add(SyncState(key=key, value=value, updated_at=_now()))
    db.flush()
