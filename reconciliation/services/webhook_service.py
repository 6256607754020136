from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from reconciliation.errors import ValidationError
from reconciliation.models import SyncQueueItem
from reconciliation.services.sync_queue_service import enqueue

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'x-linkedstore-hmac-sha256'
SUPPORTED_EVENTS = frozenset({'order/created', 'order/updated', 'order/paid', 'order/cancelled'})


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, received: str | None, secret: str | None) -> bool:
    if not received or not secret:
        return False
    expected = compute_signature(raw_body, secret)
    received = received.strip()
    if len(received) != len(expected):
        return False
    return hmac.compare_digest(received.encode('utf-8'), expected.encode('utf-8'))


def queue_type_for_event(event: str) -> str:
    return event.replace('/', '_')


def record_webhook_event(db: Session, payload: dict) -> SyncQueueItem | None:
    """Durably record a platform event as queued work. Unsupported events are acknowledged and dropped."""
    event = str(payload.get('event') or '').strip()
    remote_id = payload.get('id')
    if not event or remote_id in (None, ''):
        raise ValidationError('Webhook payload needs an event and an id')
    if event not in SUPPORTED_EVENTS:
        logger.info('Ignoring unsupported webhook event %s', event)
        return None

    item = enqueue(
        db,
        item_type=queue_type_for_event(event),
        resource_id=str(remote_id),
        payload={
            'order_id': str(remote_id),
            'event': event,
            'store_id': payload.get('store_id'),
            'source': 'webhook',
            'received_at': datetime.now(tz=timezone.utc).isoformat(),
        },
    )
    logger.info('Recorded webhook %s for platform order %s', event, remote_id)
    return item
